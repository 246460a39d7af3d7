import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class EventType(StrEnum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL_DETECTED = "tool_call_detected"
    TOOL_RESULT = "tool_result"
    DIFF_HUNK_COMPLETE = "diff_hunk_complete"
    PATCH_PROPOSED = "patch_proposed"
    PATCH_APPLIED = "patch_applied"
    PATCH_REVERTED = "patch_reverted"
    PERMISSION_DECISION = "permission_decision"
    TURN_STATE_CHANGED = "turn_state_changed"
    TURN_QUEUED = "turn_queued"
    TURN_WARNING = "turn_warning"
    TURN_ERROR = "turn_error"


@dataclass(frozen=True)
class TurnEvent:
    type: EventType

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class TextDeltaEvent(TurnEvent):
    type: EventType = field(default=EventType.TEXT_DELTA, init=False)
    turn_id: str
    text: str


@dataclass(frozen=True)
class ToolCallDetectedEvent(TurnEvent):
    type: EventType = field(default=EventType.TOOL_CALL_DETECTED, init=False)
    turn_id: str
    request_id: str
    server: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class ToolResultEvent(TurnEvent):
    type: EventType = field(default=EventType.TOOL_RESULT, init=False)
    turn_id: str
    request_id: str
    server: str
    name: str
    result: str
    preview: str = ""
    is_error: bool = False
    duration_ms: int = 0


@dataclass(frozen=True)
class DiffHunkEvent(TurnEvent):
    type: EventType = field(default=EventType.DIFF_HUNK_COMPLETE, init=False)
    turn_id: str
    file_path: str
    start: int
    removed: int
    added: int


@dataclass(frozen=True)
class PatchProposedEvent(TurnEvent):
    type: EventType = field(default=EventType.PATCH_PROPOSED, init=False)
    turn_id: str
    files: list[str]
    hunks: int
    findings: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class PatchAppliedEvent(TurnEvent):
    type: EventType = field(default=EventType.PATCH_APPLIED, init=False)
    turn_id: str
    record_id: int | None
    files: list[str]
    failed: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class PatchRevertedEvent(TurnEvent):
    type: EventType = field(default=EventType.PATCH_REVERTED, init=False)
    record_ids: list[int]
    conflicts: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class PermissionDecisionEvent(TurnEvent):
    type: EventType = field(default=EventType.PERMISSION_DECISION, init=False)
    turn_id: str
    request: str
    decision: str
    source: str
    allowed: bool


@dataclass(frozen=True)
class TurnStateChangedEvent(TurnEvent):
    type: EventType = field(default=EventType.TURN_STATE_CHANGED, init=False)
    turn_id: str
    previous: str
    state: str


@dataclass(frozen=True)
class TurnQueuedEvent(TurnEvent):
    type: EventType = field(default=EventType.TURN_QUEUED, init=False)
    turn_id: str
    position: int


@dataclass(frozen=True)
class TurnWarningEvent(TurnEvent):
    type: EventType = field(default=EventType.TURN_WARNING, init=False)
    turn_id: str
    warning: dict


@dataclass(frozen=True)
class TurnErrorEvent(TurnEvent):
    type: EventType = field(default=EventType.TURN_ERROR, init=False)
    turn_id: str
    error: dict
