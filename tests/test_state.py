import pytest

from tern.core.state import TERMINAL_STATES, TurnState, can_transition

HAPPY_PATH = [
    TurnState.IDLE,
    TurnState.CONTEXT_BUILT,
    TurnState.MODEL_REQUESTED,
    TurnState.STREAMING,
    TurnState.TOOL_PENDING,
    TurnState.TOOL_EXECUTING,
    TurnState.MODEL_REQUESTED,
    TurnState.STREAMING,
    TurnState.PATCH_PROPOSED,
    TurnState.APPLYING,
    TurnState.APPLIED,
    TurnState.COMPACTED,
    TurnState.IDLE,
]


def test_full_cycle_is_allowed():
    for current, target in zip(HAPPY_PATH, HAPPY_PATH[1:]):
        assert can_transition(current, target), f"{current} -> {target}"


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TurnState.IDLE, TurnState.STREAMING),
        (TurnState.STREAMING, TurnState.APPLYING),
        (TurnState.TOOL_EXECUTING, TurnState.TOOL_PENDING),
        (TurnState.APPLIED, TurnState.IDLE),
        (TurnState.PATCH_PROPOSED, TurnState.COMPACTED),
    ],
)
def test_invalid_transitions(current: TurnState, target: TurnState):
    assert not can_transition(current, target)


@pytest.mark.parametrize("state", [s for s in TurnState if s not in TERMINAL_STATES])
def test_cancel_and_error_from_any_live_state(state: TurnState):
    assert can_transition(state, TurnState.CANCELLED)
    assert can_transition(state, TurnState.ERRORED)


@pytest.mark.parametrize("state", sorted(TERMINAL_STATES, key=lambda s: s.value))
def test_terminal_states_are_final(state: TurnState):
    assert not any(can_transition(state, target) for target in TurnState)
