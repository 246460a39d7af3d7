"""Tool-call block protocol.

A tool call is a fenced JSON block holding exactly

    {"tool_call": {"server": "<id>", "name": "<tool>", "input": {...}}}

Anything else (prose after the object, comments, trailing commas, extra or
missing keys, non-string names) is rejected as malformed.
"""

import json
from collections.abc import Container
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from tern.core.models import ToolCallRequest
from tern.errors import MalformedToolCall, MultipleToolCalls, UnknownServer
from tern.logging import get_logger

_logger = get_logger(__name__)


class ToolCallBody(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    server: str = Field(min_length=1)
    name: str = Field(min_length=1)
    input: dict[str, Any]


class ToolCallEnvelope(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    tool_call: ToolCallBody


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _unique_keys(pairs: list[tuple[str, Any]]) -> dict:
    result: dict = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"duplicate key {key!r}")
        result[key] = value
    return result


def _load_strict(raw: str) -> Any:
    try:
        return json.loads(raw, parse_constant=_reject_constant, object_pairs_hook=_unique_keys)
    except json.JSONDecodeError as e:
        raise MalformedToolCall(f"invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})", cause=e) from e
    except ValueError as e:
        raise MalformedToolCall(f"invalid JSON: {e}", cause=e) from e


def _describe(e: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(loc) for loc in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
    )


def parse(raw: str, *, attached: Container[str], turn_id: str) -> ToolCallRequest:
    data = _load_strict(raw)
    try:
        envelope = ToolCallEnvelope.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedToolCall(f"malformed tool call: {_describe(e)}", cause=e) from e

    call = envelope.tool_call
    if call.server not in attached:
        raise UnknownServer(f"no attached tool provider named {call.server!r}", target=call.server)

    return ToolCallRequest(
        server_id=call.server,
        tool_name=call.name,
        input=call.input,
        origin_turn_id=turn_id,
    )


class ToolCallTracker:
    """Honors at most one tool-call block per response segment."""

    def __init__(self, attached: Container[str], turn_id: str):
        self.attached = attached
        self.turn_id = turn_id
        self.pending: ToolCallRequest | None = None

    def reset(self) -> None:
        self.pending = None

    def offer(self, raw: str) -> ToolCallRequest:
        if self.pending is not None:
            raise MultipleToolCalls(
                "only one tool call is honored per response; ignoring an additional block",
                target=self.pending.id,
            )
        request = parse(raw, attached=self.attached, turn_id=self.turn_id)
        self.pending = request
        _logger.debug("Tool call detected: %s (request %s)", request.summary(), request.id)
        return request

    def take(self) -> ToolCallRequest | None:
        request, self.pending = self.pending, None
        return request
