"""
ETL lifecycle: transition table and state helpers

    uploaded -> parsing -> parsed -> validating -> validated
        -> [awaiting_approval -> approved] -> loading -> loaded

Any processing step may fail; failed and cancelled runs re-enter at parsing.
``loaded`` is terminal.
"""

from typing import Dict, FrozenSet, List, Optional, Union
from core.exceptions import InvalidTransitionError
from models.base import ETLState, RecordTable

StateLike = Union[ETLState, str]

TRANSITIONS: Dict[ETLState, FrozenSet[ETLState]] = {
    ETLState.UPLOADED: frozenset({ETLState.PARSING, ETLState.CANCELLED}),
    ETLState.PARSING: frozenset({ETLState.PARSED, ETLState.FAILED}),
    ETLState.PARSED: frozenset({ETLState.VALIDATING, ETLState.CANCELLED}),
    ETLState.VALIDATING: frozenset({ETLState.VALIDATED, ETLState.FAILED}),
    ETLState.VALIDATED: frozenset({
        ETLState.AWAITING_APPROVAL,
        ETLState.LOADING,
        ETLState.CANCELLED,
    }),
    ETLState.AWAITING_APPROVAL: frozenset({ETLState.APPROVED, ETLState.CANCELLED}),
    ETLState.APPROVED: frozenset({ETLState.LOADING, ETLState.CANCELLED}),
    ETLState.LOADING: frozenset({ETLState.LOADED, ETLState.FAILED}),
    ETLState.LOADED: frozenset(),
    ETLState.FAILED: frozenset({ETLState.PARSING}),
    ETLState.CANCELLED: frozenset({ETLState.PARSING}),
}

# States during which a worker holds a processing session
PROCESSING_STATES = frozenset({ETLState.PARSING, ETLState.VALIDATING, ETLState.LOADING})

# Timestamp column stamped on entry to a state
FILE_MILESTONES = {
    ETLState.PARSED: "parsed_at",
    ETLState.VALIDATED: "validated_at",
    ETLState.APPROVED: "approved_at",
    ETLState.LOADED: "loaded_at",
    ETLState.FAILED: "failed_at",
}

RUN_MILESTONES = {
    ETLState.LOADED: "completed_at",
    ETLState.FAILED: "failed_at",
    ETLState.CANCELLED: "completed_at",
}


def coerce_state(state: StateLike) -> Optional[ETLState]:
    """Parse a stored or user supplied state; None when unknown"""
    if isinstance(state, ETLState):
        return state
    try:
        return ETLState(state)
    except ValueError:
        return None


def is_valid_transition(from_state: StateLike, to_state: StateLike) -> bool:
    """True iff ``to_state`` is listed under ``from_state``"""
    source = coerce_state(from_state)
    target = coerce_state(to_state)
    if source is None or target is None:
        return False
    return target in TRANSITIONS[source]


def get_valid_next_states(state: StateLike) -> List[ETLState]:
    source = coerce_state(state)
    if source is None:
        return []
    # Declaration order keeps the result stable
    return [s for s in ETLState if s in TRANSITIONS[source]]


def assert_valid_transition(from_state: StateLike, to_state: StateLike):
    if not is_valid_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)


def is_terminal(state: StateLike) -> bool:
    source = coerce_state(state)
    return source is not None and not TRANSITIONS[source]


def milestone_field(state: StateLike, table: RecordTable = RecordTable.ETL_FILE) -> Optional[str]:
    """Column stamped with the transition time when entering ``state``"""
    target = coerce_state(state)
    if target is None:
        return None
    if table == RecordTable.ETL_RUN:
        return RUN_MILESTONES.get(target)
    return FILE_MILESTONES.get(target)
