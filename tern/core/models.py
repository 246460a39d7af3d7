from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from tern.core.state import TurnState
from tern.utils import short_id

if TYPE_CHECKING:
    from tern.errors import TernError
    from tern.patch.diff import DiffHunk
    from tern.patch.journal import RevertJournal
    from tern.patch.review import Finding


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(role=Role(data["role"]), content=data.get("content") or "")


@dataclass(frozen=True)
class ToolCallRequest:
    server_id: str
    tool_name: str
    input: dict[str, Any]
    origin_turn_id: str
    id: str = field(default_factory=short_id)

    def summary(self) -> str:
        return f"{self.server_id}:{self.tool_name}"


@dataclass(frozen=True)
class ToolResult:
    request_id: str
    content: str
    is_error: bool = False


@dataclass
class PatchProposal:
    turn_id: str
    hunks: list["DiffHunk"] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.hunks)

    def __len__(self) -> int:
        return len(self.hunks)

    @property
    def files(self) -> list[str]:
        seen: dict[str, None] = {}
        for hunk in self.hunks:
            seen.setdefault(hunk.file_path, None)
        return list(seen)


@dataclass
class Turn:
    input: str
    id: str = field(default_factory=short_id)
    state: TurnState = TurnState.IDLE
    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    proposal: PatchProposal | None = None
    cancelled: bool = False
    warnings: list["TernError"] = field(default_factory=list)
    findings: list["Finding"] = field(default_factory=list)
    error: "TernError | None" = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        if self.proposal is None:
            self.proposal = PatchProposal(turn_id=self.id)


@dataclass
class Session:
    """History and revert journal for one conversation. Mutated only by the Orchestrator."""

    session_id: str
    journal: "RevertJournal"
    messages: list[Message] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    name: str | None = None
    archived_turns: list[Turn] = field(default_factory=list)

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.last_activity = datetime.now(UTC)

    @classmethod
    def create(cls, name: str | None = None) -> "Session":
        from tern.patch.journal import RevertJournal

        now = datetime.now(UTC)
        return cls(
            session_id=f"{now.strftime('%Y%m%d_%H%M%S')}_{now.microsecond // 1000:03d}",
            journal=RevertJournal(),
            started_at=now,
            last_activity=now,
            name=name,
        )
