import re
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Action(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    CONFIRM = "confirm"


BUILTIN_DEFAULTS: dict[str, Action] = {
    "fs": Action.ALLOW,
    "exec": Action.CONFIRM,
    "mcp": Action.CONFIRM,
    "fs_patch": Action.CONFIRM,
}
FALLBACK_ACTION = Action.CONFIRM

BLOCKED_PATTERNS = frozenset(
    {
        "rm -rf /",
        "rm -rf ~",
        "rm -rf *",
        "dd if=",
        "mkfs",
        "fdisk",
        ":(){:|:&};:",
        "> /dev/sd",
        "chmod -r 777 /",
    }
)


def is_blocked_command(command: str) -> bool:
    cmd_lower = command.lower().strip()
    return any(blocked in cmd_lower for blocked in BLOCKED_PATTERNS)


@lru_cache(maxsize=256)
def glob_to_regex(glob: str) -> re.Pattern:
    """`**` spans directories, `*` and `?` stay within one path segment."""
    out = []
    i = 0
    while i < len(glob):
        if glob.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif glob.startswith("**", i):
            out.append(".*")
            i += 2
        elif glob[i] == "*":
            out.append("[^/]*")
            i += 1
        elif glob[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(glob[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


@lru_cache(maxsize=256)
def _command_regex(pattern: str) -> re.Pattern:
    return re.compile(pattern)


@dataclass(frozen=True)
class PermissionRequest:
    tool_kind: str
    server_id: str | None = None
    path: str | None = None
    command: str | None = None
    request_id: str | None = None

    def summary(self) -> str:
        target = self.command if self.command is not None else self.path
        prefix = f"{self.tool_kind}@{self.server_id}" if self.server_id else self.tool_kind
        return f"{prefix}: {target}" if target else prefix


class RuleMatch(BaseModel):
    """Every field set on a rule must be satisfied; a request lacking that field does not match."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool: str | None = None
    server: str | None = None
    path: str | None = None
    command: str | None = None

    @field_validator("command")
    @classmethod
    def _validate_command(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                _command_regex(v)
            except re.error as e:
                raise ValueError(f"invalid command pattern {v!r}: {e}") from e
        return v

    def matches(self, request: PermissionRequest) -> bool:
        if self.tool is not None and self.tool != request.tool_kind:
            return False
        if self.server is not None and self.server != request.server_id:
            return False
        # a path or command rule never applies to a request without one, so
        # `{"path": "secrets/**", "action": "allow"}` cannot allow exec or mcp calls
        if self.path is not None:
            if request.path is None or not glob_to_regex(self.path).match(request.path):
                return False
        if self.command is not None:
            if request.command is None or not _command_regex(self.command).search(request.command):
                return False
        return True


class PermissionRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    match: RuleMatch = Field(default_factory=RuleMatch)
    action: Action


class PermissionsConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    defaults: dict[str, Action] = Field(default_factory=dict)
    rules: tuple[PermissionRule, ...] = ()

    def default_for(self, tool_kind: str) -> tuple[Action, str]:
        if tool_kind in self.defaults:
            return self.defaults[tool_kind], f"default:{tool_kind}"
        if tool_kind in BUILTIN_DEFAULTS:
            return BUILTIN_DEFAULTS[tool_kind], f"builtin-default:{tool_kind}"
        return FALLBACK_ACTION, "fallback"
