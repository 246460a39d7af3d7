from enum import Enum


class TurnState(Enum):
    IDLE = "idle"
    CONTEXT_BUILT = "context_built"
    MODEL_REQUESTED = "model_requested"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    TOOL_EXECUTING = "tool_executing"
    PATCH_PROPOSED = "patch_proposed"
    APPLYING = "applying"
    APPLIED = "applied"
    DISCARDED = "discarded"
    COMPACTED = "compacted"
    CANCELLED = "cancelled"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({TurnState.CANCELLED, TurnState.ERRORED})

TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.CONTEXT_BUILT}),
    TurnState.CONTEXT_BUILT: frozenset({TurnState.MODEL_REQUESTED}),
    TurnState.MODEL_REQUESTED: frozenset({TurnState.STREAMING}),
    TurnState.STREAMING: frozenset(
        {TurnState.TOOL_PENDING, TurnState.PATCH_PROPOSED, TurnState.COMPACTED}
    ),
    TurnState.TOOL_PENDING: frozenset({TurnState.TOOL_EXECUTING, TurnState.MODEL_REQUESTED}),
    TurnState.TOOL_EXECUTING: frozenset({TurnState.MODEL_REQUESTED}),
    TurnState.PATCH_PROPOSED: frozenset({TurnState.APPLYING, TurnState.DISCARDED}),
    TurnState.APPLYING: frozenset({TurnState.APPLIED}),
    TurnState.APPLIED: frozenset({TurnState.COMPACTED}),
    TurnState.DISCARDED: frozenset({TurnState.COMPACTED}),
    TurnState.COMPACTED: frozenset({TurnState.IDLE}),
    TurnState.CANCELLED: frozenset(),
    TurnState.ERRORED: frozenset(),
}


def can_transition(current: TurnState, target: TurnState) -> bool:
    if target in (TurnState.CANCELLED, TurnState.ERRORED):
        return current not in TERMINAL_STATES
    return target in TRANSITIONS[current]

