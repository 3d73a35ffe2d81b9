"""
Unit tests for vy_memory/memory/models.py

Tests Memory validation, payload flattening and time ranges.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from vy_memory.errors import ValidationError
from vy_memory.memory.models import (
    ActionItemPayload,
    ConversationPayload,
    InsightPayload,
    Memory,
    TimeRange,
    payload_from_metadata,
    payload_to_metadata,
)


class TestMemory:
    """Tests for the Memory dataclass."""

    def test_defaults(self):
        """Test that a memory needs only content."""
        memory = Memory(content="Remember the staging password rotates monthly")

        assert memory.type == "conversation"
        assert memory.id == ""
        assert memory.metadata == {}
        assert memory.embedding is None
        assert memory.has_embedding is False
        assert isinstance(memory.timestamp, datetime)

    def test_empty_content_rejected(self):
        """Test that blank content is a validation error."""
        with pytest.raises(ValidationError):
            Memory(content="   ")

    def test_unknown_type_rejected(self):
        """Test that types outside the closed set are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            Memory(content="x", type="diary")

        assert "diary" in exc_info.value.message

    def test_payload_must_match_type(self):
        """Test that a payload of another kind is rejected."""
        with pytest.raises(ValidationError):
            Memory(content="ship it", type="insight", payload=ActionItemPayload())

    def test_matching_payload_accepted(self):
        """Test that a payload of the same kind is accepted."""
        memory = Memory(content="prefers short answers", type="insight", payload=InsightPayload(confidence=0.8))

        assert memory.payload.kind == "insight"


class TestPayloadMetadata:
    """Tests for payload flattening into scalar metadata."""

    def test_lists_are_json_encoded(self):
        """Test that list fields become JSON strings."""
        payload = ConversationPayload(participants=["user", "assistant"], message_count=3, tags=["ops"])

        metadata = payload_to_metadata(payload)

        assert json.loads(metadata["participants"]) == ["user", "assistant"]
        assert metadata["message_count"] == 3
        assert "summary" not in metadata

    def test_datetimes_are_iso_formatted(self):
        """Test that datetime fields are ISO strings."""
        due = datetime(2024, 7, 1, 17, 0)

        metadata = payload_to_metadata(ActionItemPayload(priority="high", due_date=due))

        assert metadata["due_date"] == "2024-07-01T17:00:00"

    def test_from_metadata_consumes_keys(self):
        """Test that payload keys are removed from the metadata dict."""
        metadata = {"participants": '["user"]', "message_count": 2, "source": "cli"}

        payload = payload_from_metadata("conversation", metadata)

        assert payload == ConversationPayload(participants=["user"], message_count=2)
        assert metadata == {"source": "cli"}

    def test_from_metadata_without_keys_returns_none(self):
        """Test that no payload keys yields no payload."""
        assert payload_from_metadata("fact", {"source": "cli"}) is None


class TestTimeRange:
    """Tests for TimeRange.contains."""

    def test_inclusive_bounds(self):
        """Test that both bounds are inclusive."""
        start = datetime(2024, 6, 1)
        end = datetime(2024, 6, 30)
        window = TimeRange(start=start, end=end)

        assert window.contains(start)
        assert window.contains(end)
        assert not window.contains(end + timedelta(seconds=1))

    def test_open_bounds(self):
        """Test that missing bounds are unbounded."""
        assert TimeRange(end=datetime(2024, 1, 1)).contains(datetime(1999, 1, 1))
        assert TimeRange().contains(datetime.now())

    def test_aware_and_naive_compare(self):
        """Test that aware timestamps compare against naive bounds."""
        moment = datetime.now(timezone.utc)
        window = TimeRange(start=datetime.now() - timedelta(minutes=5))

        assert window.contains(moment)
