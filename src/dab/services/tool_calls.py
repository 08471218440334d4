"""Recognition of tool requests in assistant replies."""

import json
import re
from typing import Any, Dict, Union

from pydantic import BaseModel, Field

_FENCE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```$")


class Recognized(BaseModel):
    """The reply is a tool request."""

    name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)


class Unrecognized(BaseModel):
    """The reply is ordinary text."""

    raw: str


ToolCallParse = Union[Recognized, Unrecognized]


def parse_tool_call(reply: str) -> ToolCallParse:
    """Classify an assistant reply.

    A tool request is a JSON object with a non-empty string ``tool`` and an
    object ``arguments``, optionally wrapped in a ```json fence. Anything
    else, including invalid JSON, is ``Unrecognized``.
    """
    text = reply.strip()
    match = _FENCE.match(text)
    if match and match.group(1):
        text = match.group(1).strip()

    try:
        data = json.loads(text)
    except (ValueError, TypeError):
        return Unrecognized(raw=reply)

    if not isinstance(data, dict):
        return Unrecognized(raw=reply)

    name = data.get("tool")
    arguments = data.get("arguments")
    if not isinstance(name, str) or not name or not isinstance(arguments, dict):
        return Unrecognized(raw=reply)

    return Recognized(name=name, arguments=arguments)
