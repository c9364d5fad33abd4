"""Base agent: one model client, the shared structured-output parser, a call log."""

import time
from dataclasses import dataclass
from typing import Callable, Type, TypeVar

from loguru import logger
from pydantic import BaseModel

from ..llm import ModelClient, ModelOptions, ModelResponse, TokenUsage
from ..normalize import Aliases
from ..recovery import StructuredOutputParser

T = TypeVar("T", bound=BaseModel)

JSON_ONLY = "\n\nRespond with valid JSON only. No commentary, no markdown."


@dataclass
class AgentLog:
    agent_name: str = ""
    action: str = ""
    prompt_preview: str = ""
    response_preview: str = ""
    elapsed_seconds: float = 0.0


class BaseAgent:
    """Base class for all stage agents."""

    def __init__(
        self,
        name: str,
        client: ModelClient,
        parser: StructuredOutputParser | None = None,
    ):
        self.name = name
        self.client = client
        self.parser = parser or StructuredOutputParser()
        self.logs: list[AgentLog] = []
        self.on_usage: Callable[[TokenUsage], None] | None = None

    def call(
        self,
        system: str,
        prompt: str,
        options: ModelOptions | None = None,
        action: str = "call",
    ) -> ModelResponse:
        """Issue one model request and record it."""
        logger.debug(f"{self.name}.{action}: prompt {len(prompt)} chars")
        start = time.time()
        response = self.client.generate(system, prompt, options)
        elapsed = time.time() - start
        self._log(action, prompt, response.text, elapsed)
        if self.on_usage:
            self.on_usage(response.usage)
        return response

    def call_structured(
        self,
        system: str,
        prompt: str,
        schema: Type[T],
        *,
        aliases: Aliases | None = None,
        anchor: str | None = None,
        list_key: str | None = None,
        options: ModelOptions | None = None,
        action: str = "call_structured",
    ) -> T:
        """Call the model and parse its reply into ``schema``."""
        response = self.call(system + JSON_ONLY, prompt, options, action=action)
        result = self.parser.parse(
            response.text, schema, anchor=anchor, aliases=aliases, list_key=list_key,
        )
        if self.parser.last_strategy not in ("", "fenced_region"):
            logger.debug(f"{self.name}.{action}: recovered JSON via {self.parser.last_strategy}")
        return result

    def _log(
        self, action: str, prompt: str, response: str, elapsed: float
    ) -> None:
        self.logs.append(
            AgentLog(
                agent_name=self.name,
                action=action,
                prompt_preview=prompt[:200],
                response_preview=response[:200] if response else "",
                elapsed_seconds=round(elapsed, 2),
            )
        )
