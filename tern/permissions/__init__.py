from tern.permissions.gate import (
    AuditLog,
    AuditLogEntry,
    Authorization,
    ConfirmCallback,
    Decision,
    PermissionGate,
    ask,
)
from tern.permissions.rules import (
    Action,
    PermissionRequest,
    PermissionRule,
    PermissionsConfig,
    RuleMatch,
    is_blocked_command,
)

__all__ = [
    "Action",
    "AuditLog",
    "AuditLogEntry",
    "Authorization",
    "ConfirmCallback",
    "Decision",
    "PermissionGate",
    "PermissionRequest",
    "PermissionRule",
    "PermissionsConfig",
    "RuleMatch",
    "ask",
    "is_blocked_command",
]
