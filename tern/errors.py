from enum import StrEnum


class ErrorKind(StrEnum):
    PROTOCOL = "protocol"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    IO = "io"
    EXTERNAL_EDIT_CONFLICT = "external_edit_conflict"
    NETWORK = "network"
    CANCELLED = "cancelled"


class TernError(Exception):
    """Base error. Carries a kind, the affected file or request id, and the cause."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, message: str, *, target: str | None = None, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.target = target
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "type": type(self).__name__,
            "message": self.message,
            "target": self.target,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


# --- Protocol ---


class ProtocolError(TernError):
    kind = ErrorKind.PROTOCOL


class MalformedToolCall(ProtocolError):
    pass


class MultipleToolCalls(ProtocolError):
    pass


class UnknownServer(ProtocolError):
    pass


class UnterminatedBlock(ProtocolError):
    pass


class DiffParseError(ProtocolError):
    pass


# --- Authorization ---


class AuthorizationError(TernError):
    kind = ErrorKind.AUTHORIZATION


# --- Validation ---


class ValidationError(TernError):
    kind = ErrorKind.VALIDATION


class HunkConflict(ValidationError):
    pass


class SymlinkRefused(ValidationError):
    pass


class NeedsConfirmation(ValidationError):
    pass


class InvalidTransition(ValidationError):
    """An orchestrator operation was called in a state that does not allow it."""


class HookError(ValidationError):
    """A hook callback raised; the turn is aborted."""


# --- IO ---


class WorkspaceIOError(TernError):
    kind = ErrorKind.IO


class ExternalEditConflict(TernError):
    kind = ErrorKind.EXTERNAL_EDIT_CONFLICT


# --- Network ---


class NetworkError(TernError):
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, *, status: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status

    def to_dict(self) -> dict:
        return {**super().to_dict(), "status": self.status}


class EndpointStatusError(NetworkError):
    """Non-2xx response from a model endpoint or remote tool provider."""


class TurnCancelled(TernError):
    kind = ErrorKind.CANCELLED
