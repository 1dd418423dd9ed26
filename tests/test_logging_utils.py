"""Tests for logging_utils module."""

from __future__ import annotations

from task_chain_runner.chains.model import ChainEvent, ChainEventType
from task_chain_runner.logging_utils import format_chain_event, summarize_chain_event


class TestSummarizeChainEvent:
    """Test summarize_chain_event function."""

    def test_none_event(self):
        assert summarize_chain_event(None) == {"event": None}

    def test_event_object(self):
        event = ChainEvent(
            ChainEventType.STEP_STARTED,
            chain_id="chain-1",
            step_index=2,
            task_id="task-9",
            payload={"attempt": 1},
        )

        result = summarize_chain_event(event)

        assert result == {
            "event": "step_started",
            "chain_id": "chain-1",
            "step_index": 2,
            "task_id": "task-9",
            "attempt": 1,
        }

    def test_event_dict_skips_missing_location(self):
        result = summarize_chain_event({"event_type": "chain_started", "chain_id": "chain-1", "payload": {}})

        assert result == {"event": "chain_started", "chain_id": "chain-1"}

    def test_long_strings_are_truncated(self):
        event = ChainEvent(ChainEventType.STEP_FAILED, chain_id="c", payload={"message": "x" * 300})

        result = summarize_chain_event(event, max_value_chars=50)

        assert len(result["message"]) == 50
        assert result["message"].endswith("...")

    def test_collections_are_counted(self):
        event = ChainEvent(ChainEventType.DATA_PASSED, chain_id="c", payload={"keys": ["a", "b", "c"]})

        result = summarize_chain_event(event)

        assert result["keys"] == "<list:3>"


class TestFormatChainEvent:
    def test_one_line(self):
        event = ChainEvent(ChainEventType.STEP_COMPLETED, chain_id="chain-1", step_index=0)

        assert format_chain_event(event) == "step_completed chain_id=chain-1 step_index=0"

    def test_none(self):
        assert format_chain_event(None) == "None"
