"""Structured-output recovery: turn near-JSON model text into validated objects.

Models asked for JSON routinely wrap it in markdown fences, leave trailing
commas, put raw newlines inside string values, or stop mid-array when they hit
their output limit. The recovery ladder below tries progressively more
aggressive strategies and stops at the first one that yields parseable JSON.

Every strategy is a plain function ``(text, ctx) -> RepairResult``; none of
them raise. ``StructuredOutputParser.parse`` is the only place that turns a
failed ladder into an exception.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from .exceptions import StructuredOutputError
from .normalize import Aliases, normalize

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON|javascript)?[ \t]*\n?(.*?)```", re.DOTALL)
_FENCE_LINE_RE = re.compile(r"^[ \t]*```[a-zA-Z]*[ \t]*$", re.MULTILINE)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][\w\-]*)(\s*:)")
_IDENT_RE = re.compile(r"[A-Za-z_][\w\-]*")
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_CLOSERS = {"{": "}", "[": "]"}


@dataclass
class RepairResult:
    ok: bool
    value: Any = None
    strategy: str = ""
    text: str = ""
    error: str = ""


@dataclass
class RepairContext:
    anchor: str | None = None
    max_attempts: int = 50


Strategy = Callable[[str, RepairContext], RepairResult]


# ---------------------------------------------------------------------------
# Scanning helpers
# ---------------------------------------------------------------------------
def _split_strings(text: str) -> list[tuple[bool, str]]:
    """Split text into (is_string_literal, chunk) segments, honouring escapes."""
    segments = []
    buf: list[str] = []
    in_str = False
    esc = False
    for ch in text:
        if in_str:
            buf.append(ch)
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                segments.append((True, "".join(buf)))
                buf = []
                in_str = False
        elif ch == '"':
            if buf:
                segments.append((False, "".join(buf)))
            buf = [ch]
            in_str = True
        else:
            buf.append(ch)
    if buf:
        segments.append((in_str, "".join(buf)))
    return segments


def _outside_strings(text: str, fn: Callable[[str], str]) -> str:
    return "".join(
        chunk if is_str else fn(chunk) for is_str, chunk in _split_strings(text)
    )


def _open_stack(text: str) -> tuple[list[str], bool]:
    """Brackets still open at the end of text, and whether a string is open."""
    stack: list[str] = []
    in_str = False
    esc = False
    for ch in text:
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()
    return stack, in_str


def _closers(text: str) -> str:
    stack, in_str = _open_stack(text)
    return ('"' if in_str else "") + "".join(_CLOSERS[c] for c in reversed(stack))


def _json_start(text: str) -> int:
    """Index of the first `{`, or of a `[` that plausibly opens a JSON array."""
    for i, ch in enumerate(text):
        if ch == "{":
            return i
        if ch == "[":
            rest = text[i + 1:].lstrip()
            if rest[:1] and rest[0] in '{["-0123456789tfn]':
                return i
    return -1


def strip_fences(text: str, anchor: str | None = None) -> str:
    """Return the body of the most relevant fenced block, or text without fence lines."""
    blocks = [b for b in _FENCE_RE.findall(text) if "{" in b or "[" in b]
    if blocks:
        if anchor:
            anchored = [b for b in blocks if f'"{anchor}"' in b]
            if anchored:
                return max(anchored, key=len)
        return max(blocks, key=len)
    return _FENCE_LINE_RE.sub("", text)


def clean_json_text(text: str) -> str:
    """Strip stray control characters and trailing commas."""
    text = text.strip().lstrip("\ufeff")
    text = _CONTROL_RE.sub("", text)
    return _outside_strings(text, lambda s: _TRAILING_COMMA_RE.sub(r"\1", s))


def _load(candidate: str, strategy: str) -> RepairResult:
    try:
        return RepairResult(True, json.loads(candidate), strategy, candidate)
    except json.JSONDecodeError as e:
        return RepairResult(False, None, strategy, candidate, f"{e.msg} at {e.pos}")


def balanced_extract(text: str) -> str | None:
    """Cut text at the point where brace depth first returns to zero."""
    start = _json_start(text)
    if start == -1:
        return None
    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _outer_region(text: str) -> str | None:
    start = _json_start(text)
    if start == -1:
        return None
    end = text.rfind(_CLOSERS[text[start]])
    if end <= start:
        return text[start:]
    return text[start:end + 1]


# ---------------------------------------------------------------------------
# Structural repairs
# ---------------------------------------------------------------------------
def quote_single_quoted(text: str) -> str:
    """Convert 'single quoted' strings outside double-quoted literals."""
    out = []
    for is_str, chunk in _split_strings(text):
        if is_str:
            out.append(chunk)
            continue
        i = 0
        while i < len(chunk):
            ch = chunk[i]
            if ch != "'":
                out.append(ch)
                i += 1
                continue
            j = i + 1
            while j < len(chunk):
                if chunk[j] == "\\":
                    j += 2
                    continue
                if chunk[j] == "'":
                    break
                j += 1
            if j >= len(chunk):
                out.append(chunk[i:])
                break
            inner = chunk[i + 1:j].replace("\\'", "'").replace('"', '\\"')
            out.append(f'"{inner}"')
            i = j + 1
    return "".join(out)


def quote_bare_keys(text: str) -> str:
    return _outside_strings(text, lambda s: _BARE_KEY_RE.sub(r'\1"\2"\3', s))


def escape_string_controls(text: str) -> str:
    """Escape literal newlines, tabs and other control characters inside string values."""

    def escape(chunk: str) -> str:
        return re.sub(
            r"[\x00-\x1f]",
            lambda m: {"\n": "\\n", "\t": "\\t", "\r": "\\r"}.get(
                m.group(0), f"\\u{ord(m.group(0)):04x}"
            ),
            chunk,
        )

    return "".join(
        escape(chunk) if is_str else chunk for is_str, chunk in _split_strings(text)
    )


def structural_repair(text: str) -> str:
    text = quote_single_quoted(text)
    text = quote_bare_keys(text)
    text = escape_string_controls(text)
    return clean_json_text(text)


# ---------------------------------------------------------------------------
# Ladder strategies
# ---------------------------------------------------------------------------
def fenced_region(text: str, ctx: RepairContext) -> RepairResult:
    body = strip_fences(text, ctx.anchor).strip()
    if ctx.anchor and f'"{ctx.anchor}"' in body:
        start = body.find("{")
        end = body.rfind("}")
        if start != -1 and end > body.find(f'"{ctx.anchor}"'):
            body = body[start:end + 1]
    return _load(clean_json_text(body), "fenced_region")


def outer_braces(text: str, ctx: RepairContext) -> RepairResult:
    region = _outer_region(text)
    if region is None:
        return RepairResult(False, strategy="outer_braces", error="no JSON start")
    return _load(clean_json_text(region), "outer_braces")


def balanced_braces(text: str, ctx: RepairContext) -> RepairResult:
    region = balanced_extract(strip_fences(text, ctx.anchor))
    if region is None:
        return RepairResult(False, strategy="balanced_braces", error="braces never balance")
    return _load(clean_json_text(region), "balanced_braces")


def structural_fixes(text: str, ctx: RepairContext) -> RepairResult:
    body = strip_fences(text, ctx.anchor)
    start = _json_start(body)
    if start == -1:
        return RepairResult(False, strategy="structural_fixes", error="no JSON start")
    repaired = structural_repair(body[start:])
    region = balanced_extract(repaired) or _outer_region(repaired) or repaired
    return _load(region, "structural_fixes")


def close_truncated(text: str, ctx: RepairContext) -> RepairResult:
    """Cut after the last complete array entry and close what is still open."""
    body = strip_fences(text, ctx.anchor)
    start = _json_start(body)
    if start == -1:
        return RepairResult(False, strategy="close_truncated", error="no JSON start")
    body = structural_repair(body[start:])
    still_open, open_string = _open_stack(body)
    if not still_open and not open_string:
        return RepairResult(False, strategy="close_truncated", error="not truncated")

    entry_ends: list[int] = []
    other_ends: list[int] = []
    stack: list[str] = []
    in_str = False
    esc = False
    for i, ch in enumerate(body):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()
            if ch == "}" and stack and stack[-1] == "[":
                entry_ends.append(i)
            else:
                other_ends.append(i)

    last = RepairResult(False, strategy="close_truncated", error="no complete entry")
    for pos in list(reversed(entry_ends))[:100] + list(reversed(other_ends))[:20]:
        candidate = body[:pos + 1]
        candidate += _closers(candidate)
        result = _load(candidate, "close_truncated")
        if result.ok:
            return result
        last = result
    return last


def _prev_nonspace(text: str, pos: int) -> int:
    j = min(pos, len(text)) - 1
    while j >= 0 and text[j].isspace():
        j -= 1
    return j


def _fix_at(text: str, err: json.JSONDecodeError) -> str | None:
    """One position-specific repair for the parser's reported error, or None."""
    msg, pos = err.msg, err.pos
    at_end = pos >= len(text.rstrip())
    ch = text[pos] if pos < len(text) else ""

    if msg.startswith("Unterminated string"):
        return text + '"'
    if msg.startswith("Invalid control character"):
        bad = text[pos]
        repl = {"\n": "\\n", "\t": "\\t", "\r": "\\r"}.get(bad, f"\\u{ord(bad):04x}")
        return text[:pos] + repl + text[pos + 1:]
    if msg.startswith("Invalid \\escape"):
        return text[:pos] + "\\" + text[pos:]
    if msg.startswith("Extra data"):
        return text[:pos]
    if msg.startswith("Illegal trailing comma") and ch == ",":
        return text[:pos] + text[pos + 1:]

    if at_end:
        trimmed = text.rstrip()
        if msg.startswith("Expecting value"):
            if trimmed.endswith(","):
                trimmed = trimmed[:-1]
            elif trimmed.endswith(":"):
                trimmed += " null"
        closers = _closers(trimmed)
        if not closers and trimmed == text:
            return None
        return trimmed + closers

    if msg.startswith("Expecting ',' delimiter"):
        prev = _prev_nonspace(text, pos)
        if ch == '"' and prev == pos - 1 and text[prev] == '"':
            return text[:prev] + '\\"' + text[prev + 1:]
        if ch not in '"{[' and prev >= 0 and text[prev] == '"':
            return text[:prev] + '\\"' + text[prev + 1:]
        return text[:pos] + "," + text[pos:]
    if msg.startswith("Expecting ':' delimiter"):
        return text[:pos] + ": " + text[pos:]
    if msg.startswith("Expecting property name"):
        if ch == "}":
            prev = _prev_nonspace(text, pos)
            if prev >= 0 and text[prev] == ",":
                return text[:prev] + text[prev + 1:]
            return None
        m = _IDENT_RE.match(text, pos)
        if m:
            return text[:pos] + f'"{m.group(0)}"' + text[m.end():]
        if ch == "'":
            return text[:pos] + quote_single_quoted(text[pos:])
        return None
    if msg.startswith("Expecting value"):
        if ch in "]}":
            prev = _prev_nonspace(text, pos)
            if prev >= 0 and text[prev] == ",":
                return text[:prev] + text[prev + 1:]
            return None
        if ch == "'":
            return text[:pos] + quote_single_quoted(text[pos:])
        m = _IDENT_RE.match(text, pos)
        if m and m.group(0) in _PY_LITERALS:
            return text[:pos] + _PY_LITERALS[m.group(0)] + text[m.end():]
        return None
    return None


def iterative_position_repair(text: str, ctx: RepairContext) -> RepairResult:
    body = strip_fences(text, ctx.anchor)
    start = _json_start(body)
    if start == -1:
        return RepairResult(False, strategy="position_repair", error="no JSON start")
    candidate = clean_json_text(body[start:])
    region = balanced_extract(candidate)
    if region:
        candidate = region

    for attempt in range(ctx.max_attempts):
        try:
            value = json.loads(candidate)
            logger.debug(f"Position repair succeeded after {attempt} fixes")
            return RepairResult(True, value, "position_repair", candidate)
        except json.JSONDecodeError as e:
            fixed = _fix_at(candidate, e)
            if fixed is None or fixed == candidate:
                return RepairResult(
                    False, strategy="position_repair", text=candidate,
                    error=f"no rule for '{e.msg}' at {e.pos}",
                )
            candidate = fixed
    return RepairResult(
        False, strategy="position_repair", text=candidate,
        error=f"gave up after {ctx.max_attempts} attempts",
    )


LADDER: list[Strategy] = [
    fenced_region,
    outer_braces,
    balanced_braces,
    structural_fixes,
    close_truncated,
    iterative_position_repair,
]


def recover_json(
    text: str, anchor: str | None = None, max_attempts: int = 50
) -> RepairResult:
    """Run the recovery ladder; the first successful strategy wins."""
    ctx = RepairContext(anchor=anchor, max_attempts=max_attempts)
    tried = []
    for strategy in LADDER:
        result = strategy(text, ctx)
        if result.ok:
            if tried:
                logger.debug(f"Recovered JSON with {result.strategy} after {', '.join(tried)}")
            return result
        tried.append(result.strategy)
    return RepairResult(False, strategy="none", error=f"all strategies failed: {', '.join(tried)}")


# ---------------------------------------------------------------------------
# Shared service used by every stage agent
# ---------------------------------------------------------------------------
@dataclass
class StructuredOutputParser:
    max_attempts: int = 50
    last_strategy: str = field(default="", init=False)

    def parse(
        self,
        text: str,
        schema: Type[T],
        *,
        anchor: str | None = None,
        aliases: Aliases | None = None,
        list_key: str | None = None,
    ) -> T:
        """Recover, normalize and validate `text` against `schema`.

        `list_key` wraps a bare top-level array into ``{list_key: [...]}``.
        """
        result = recover_json(text, anchor=anchor, max_attempts=self.max_attempts)
        if not result.ok:
            raise StructuredOutputError(
                f"Unparseable model output ({result.error})",
                raw=text[:500],
                tried=[s.__name__ for s in LADDER],
            )
        self.last_strategy = result.strategy

        data = normalize(result.value, aliases) if aliases else result.value
        if list_key and isinstance(data, list):
            data = {list_key: data}
        if not isinstance(data, dict):
            raise StructuredOutputError(
                f"Expected a JSON object, got {type(data).__name__}", raw=text[:500]
            )
        try:
            return schema.model_validate(data)
        except ValidationError as e:
            raise StructuredOutputError(
                f"{schema.__name__} validation failed: {e.error_count()} error(s): "
                f"{e.errors()[0]['loc']} {e.errors()[0]['msg']}",
                raw=text[:500],
            ) from e
