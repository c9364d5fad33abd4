"""Lenient field types shared by the data models.

Model output is inconsistent about lists vs. comma strings, numbers as text,
and nested objects where prose was asked for. These annotated types absorb
those shapes at validation time.
"""

import re
from typing import Annotated, Any

from pydantic import BeforeValidator


def _as_text(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, list):
        return "; ".join(str(_as_text(v)) for v in value if v not in (None, ""))
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_as_text(v)}" for k, v in value.items() if v not in (None, ""))
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _as_str_list(value: Any) -> Any:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [part.strip() for part in re.split(r"[;,\n]", value) if part.strip()]
    if isinstance(value, list):
        items = []
        for item in value:
            if isinstance(item, dict):
                item = item.get("name") or _as_text(item)
            if item not in (None, ""):
                items.append(str(item))
        return items
    return value


def _as_int(value: Any) -> Any:
    if isinstance(value, str):
        m = re.search(r"-?\d+(?:\.\d+)?", value)
        if m:
            return round(float(m.group(0)))
    if isinstance(value, float):
        return round(value)
    return value


def _as_score(value: Any) -> Any:
    if isinstance(value, str):
        m = re.search(r"-?\d+(?:\.\d+)?", value)
        if m:
            value = float(m.group(0))
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return min(10.0, max(1.0, float(value)))
    return value


def _as_bool(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "si", "sí", "1")
    return value


Text = Annotated[str, BeforeValidator(_as_text)]
StrList = Annotated[list[str], BeforeValidator(_as_str_list)]
LooseInt = Annotated[int, BeforeValidator(_as_int)]
Score = Annotated[float, BeforeValidator(_as_score)]
LooseBool = Annotated[bool, BeforeValidator(_as_bool)]
