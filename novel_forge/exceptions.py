"""Error taxonomy for the generation pipeline."""


class NovelForgeError(Exception):
    """Base class for all pipeline errors."""


class ModelCallError(NovelForgeError):
    """Transient model failure: network error, timeout, rate limit or empty reply."""


class StructuredOutputError(NovelForgeError):
    """Model text could not be turned into the expected structured object."""

    def __init__(self, message: str, raw: str = "", tried: list[str] | None = None):
        super().__init__(message)
        self.raw = raw
        self.tried = tried or []


class OutlineIncompleteError(StructuredOutputError):
    """Outline still misses chapters after the completion pass."""

    def __init__(self, message: str, missing: list[int]):
        super().__init__(message)
        self.missing = missing


class StageFailure(NovelForgeError):
    """A stage failed after its retry budget was exhausted."""

    def __init__(self, stage: str, chapter: int | None, cause: Exception):
        where = f" for chapter {chapter}" if chapter is not None else ""
        super().__init__(f"{stage} failed{where}: {cause}")
        self.stage = stage
        self.chapter = chapter
        self.cause = cause


class InvalidTransition(NovelForgeError):
    """Operation not allowed from the project's current status."""


class PipelineStopped(NovelForgeError):
    """A pause or cancel request was observed between stages."""

    def __init__(self, status: str):
        super().__init__(f"Generation stopped ({status})")
        self.status = status


class ImmutableFactError(NovelForgeError):
    """Attempt to contradict an immutable World Bible attribute."""


class ProjectNotFound(NovelForgeError):
    pass
