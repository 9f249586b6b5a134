"""
Unit tests for the lifecycle transition table
"""

import pytest
from core.exceptions import InvalidTransitionError
from engine.state_model import (
    PROCESSING_STATES,
    TRANSITIONS,
    assert_valid_transition,
    get_valid_next_states,
    is_terminal,
    is_valid_transition,
    milestone_field,
)
from models.base import ETLState, RecordTable


class TestTransitionTable:
    """Legal and illegal state pairs"""

    def test_happy_path_is_legal(self):
        path = [
            ETLState.UPLOADED,
            ETLState.PARSING,
            ETLState.PARSED,
            ETLState.VALIDATING,
            ETLState.VALIDATED,
            ETLState.AWAITING_APPROVAL,
            ETLState.APPROVED,
            ETLState.LOADING,
            ETLState.LOADED,
        ]
        for source, target in zip(path, path[1:]):
            assert is_valid_transition(source, target), f"{source} -> {target}"

    def test_validated_may_skip_approval(self):
        assert is_valid_transition(ETLState.VALIDATED, ETLState.LOADING)

    def test_failed_and_cancelled_reenter_parsing(self):
        assert is_valid_transition(ETLState.FAILED, ETLState.PARSING)
        assert is_valid_transition(ETLState.CANCELLED, ETLState.PARSING)
        assert not is_valid_transition(ETLState.FAILED, ETLState.LOADING)

    def test_only_listed_pairs_are_legal(self):
        for source in ETLState:
            for target in ETLState:
                expected = target in TRANSITIONS[source]
                assert is_valid_transition(source, target) is expected

    def test_skipping_steps_is_illegal(self):
        assert not is_valid_transition(ETLState.UPLOADED, ETLState.LOADED)
        assert not is_valid_transition(ETLState.PARSED, ETLState.LOADING)
        assert not is_valid_transition(ETLState.PARSED, ETLState.FAILED)

    def test_accepts_stored_string_values(self):
        assert is_valid_transition("uploaded", "parsing")
        assert not is_valid_transition("uploaded", "bogus")
        assert not is_valid_transition("bogus", "parsing")

    def test_loaded_is_terminal(self):
        assert is_terminal(ETLState.LOADED)
        assert get_valid_next_states(ETLState.LOADED) == []
        assert not is_terminal(ETLState.FAILED)

    def test_next_states_follow_declaration_order(self):
        assert get_valid_next_states(ETLState.VALIDATED) == [
            ETLState.AWAITING_APPROVAL,
            ETLState.LOADING,
            ETLState.CANCELLED,
        ]
        assert get_valid_next_states("unknown") == []

    def test_assert_valid_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            assert_valid_transition(ETLState.UPLOADED, ETLState.LOADED)

        assert exc_info.value.from_state == "uploaded"
        assert exc_info.value.to_state == "loaded"
        assert exc_info.value.context["to_state"] == "loaded"


class TestMilestones:

    def test_processing_states(self):
        assert PROCESSING_STATES == {ETLState.PARSING, ETLState.VALIDATING, ETLState.LOADING}

    def test_file_milestones(self):
        assert milestone_field(ETLState.PARSED) == "parsed_at"
        assert milestone_field(ETLState.APPROVED) == "approved_at"
        assert milestone_field(ETLState.PARSING) is None

    def test_run_milestones(self):
        assert milestone_field(ETLState.LOADED, RecordTable.ETL_RUN) == "completed_at"
        assert milestone_field(ETLState.CANCELLED, RecordTable.ETL_RUN) == "completed_at"
        assert milestone_field(ETLState.PARSED, RecordTable.ETL_RUN) is None
