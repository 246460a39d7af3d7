import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

from tern.constants import SUMMARY_PREVIEW_CHARS
from tern.logging import get_logger
from tern.permissions.rules import (
    Action,
    PermissionRequest,
    PermissionsConfig,
    is_blocked_command,
)
from tern.utils import truncate

_logger = get_logger(__name__)

ConfirmCallback = Callable[[str], bool | Awaitable[bool]]


@dataclass(frozen=True)
class Decision:
    action: Action
    source: str  # "rule[i]", "default:<kind>", "builtin-default:<kind>", "builtin:blocked", "fallback"
    rule_index: int | None = None


@dataclass(frozen=True)
class Authorization:
    allowed: bool
    decision: Decision
    confirmed: bool | None = None  # None when no confirmation was needed


@dataclass(frozen=True)
class AuditLogEntry:
    timestamp: str
    decision: str
    source: str
    request: str
    request_id: str | None = None


class AuditLog:
    """Append-only record of every permission evaluation, optionally mirrored to a JSONL file."""

    def __init__(self, path: Path | None = None):
        self.path = path
        self._entries: list[AuditLogEntry] = []

    def append(self, entry: AuditLogEntry) -> None:
        self._entries.append(entry)
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(entry)) + "\n")
        except OSError:
            _logger.warning("Failed to write audit log entry to %s", self.path, exc_info=True)

    @property
    def entries(self) -> tuple[AuditLogEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class PermissionGate:
    def __init__(
        self,
        config: PermissionsConfig | None = None,
        confirm: ConfirmCallback | None = None,
        audit: AuditLog | None = None,
    ):
        self.config = config or PermissionsConfig()
        self.confirm = confirm
        self.audit = audit if audit is not None else AuditLog()

    def decide(self, request: PermissionRequest) -> Decision:
        """First matching rule wins, else the per-kind default. No side effects."""
        if request.command is not None and is_blocked_command(request.command):
            return Decision(action=Action.DENY, source="builtin:blocked")
        for index, rule in enumerate(self.config.rules):
            if rule.match.matches(request):
                return Decision(action=rule.action, source=f"rule[{index}]", rule_index=index)
        action, source = self.config.default_for(request.tool_kind)
        return Decision(action=action, source=source)

    def evaluate(self, request: PermissionRequest) -> Decision:
        decision = self.decide(request)
        self.audit.append(
            AuditLogEntry(
                timestamp=datetime.now(UTC).isoformat(),
                decision=decision.action.value,
                source=decision.source,
                request=truncate(request.summary(), SUMMARY_PREVIEW_CHARS),
                request_id=request.request_id,
            )
        )
        _logger.debug("Permission %s for %s (%s)", decision.action.value, request.summary(), decision.source)
        return decision

    async def authorize(self, request: PermissionRequest) -> Authorization:
        decision = self.evaluate(request)
        if decision.action is Action.ALLOW:
            return Authorization(allowed=True, decision=decision)
        if decision.action is Action.DENY:
            return Authorization(allowed=False, decision=decision)

        if self.confirm is None:
            _logger.info("No confirmation available, denying %s", request.summary())
            return Authorization(allowed=False, decision=decision, confirmed=False)

        confirmed = await ask(self.confirm, f"Allow {request.summary()}?")
        return Authorization(allowed=confirmed, decision=decision, confirmed=confirmed)


async def ask(confirm: ConfirmCallback, summary: str) -> bool:
    answer = confirm(summary)
    if inspect.isawaitable(answer):
        answer = await answer
    return bool(answer)
