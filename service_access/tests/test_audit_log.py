"""
Unit tests for the access audit log.
"""

import json
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from shared.errors import StorageError
from shared.metrics import MetricsCollector
from shared.test_helpers import FailingAuditSink
from service_access.app.audit.log import AccessEvent, AuditLog, JsonlAuditSink, MemoryAuditSink
from service_access.app.rules.models import Decision, Reason, Verdict


NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def make_event(**overrides):
    fields = dict(
        tag_id="04:A2:3B:1C",
        occurred_at=NOW,
        member_id="member-1",
        tag_serial="6f1c0f36-1d8e-4f0e-9d0c-0d9c1b2a3e4f",
        door_id="front"
    )
    fields.update(overrides)
    return AccessEvent.from_verdict(Verdict.grant(Reason.OK_STALE, stale=True), **fields)


class TestAccessEvent:
    """Test cases for AccessEvent."""

    def test_from_verdict(self):
        """Test events carry the verdict fields."""
        event = make_event()

        assert event.verdict == Decision.GRANT
        assert event.reason == Reason.OK_STALE
        assert event.stale is True
        assert event.event_id

    def test_to_dict(self):
        """Test the serialized form."""
        data = make_event(door_id=None).to_dict()

        assert data["verdict"] == "grant"
        assert data["reason"] == "OK_STALE"
        assert data["occurred_at"] == "2026-01-05T09:00:00+00:00"
        assert data["door_id"] is None

    def test_event_ids_are_unique(self):
        """Test every event has its own identifier."""
        assert make_event().event_id != make_event().event_id


class TestAuditLog:
    """Test cases for AuditLog."""

    @pytest.fixture
    def metrics(self):
        """Create a private metrics collector."""
        return MetricsCollector("audit-test")

    @pytest.mark.asyncio
    async def test_memory_sink_keeps_order(self):
        """Test events are kept in append order."""
        sink = MemoryAuditSink()
        audit = AuditLog(sink)
        events = [make_event(door_id=f"door-{i}") for i in range(3)]

        for event in events:
            await audit.append(event)

        assert sink.events == events

    @pytest.mark.asyncio
    async def test_jsonl_sink_appends_lines(self, tmp_path):
        """Test the file sink writes one JSON object per line."""
        path = tmp_path / "audit" / "access.jsonl"
        audit = AuditLog(JsonlAuditSink(str(path)))
        await audit.start()
        first, second = make_event(), make_event(member_id=None)

        await audit.append(first)
        await audit.append(second)
        await audit.stop()

        lines = path.read_text().splitlines()
        assert [json.loads(line)["event_id"] for line in lines] == [first.event_id, second.event_id]
        assert json.loads(lines[1])["member_id"] is None

    @pytest.mark.asyncio
    async def test_sink_fault_becomes_storage_error(self):
        """Test sink exceptions surface as StorageError."""
        audit = AuditLog(FailingAuditSink())

        with pytest.raises(StorageError) as exc_info:
            await audit.append(make_event())

        assert exc_info.value.details["sink"] == "failing"
        assert "disk full" in exc_info.value.details["error"]

    def test_record_failure_side_channel(self, metrics):
        """Test failures are buffered, counted and handed to the handler."""
        handler = MagicMock()
        audit = AuditLog(FailingAuditSink(), metrics=metrics, on_failure=handler)
        event = make_event()

        audit.record_failure(event, OSError("disk full"))

        assert audit.failure_count == 1
        assert audit.failures[0].event is event
        assert audit.failures[0].error == "disk full"
        handler.assert_called_once_with(audit.failures[0])
        assert metrics.sample("audit_write_failures_total", sink="failing") == 1

    def test_record_failure_buffer_is_bounded(self):
        """Test the failure buffer drops the oldest entries but keeps counting."""
        audit = AuditLog(FailingAuditSink(), max_failures=2)

        for i in range(5):
            audit.record_failure(make_event(door_id=f"door-{i}"), TimeoutError())

        assert audit.failure_count == 5
        assert [f.event.door_id for f in audit.failures] == ["door-3", "door-4"]
        assert audit.failures[0].error == "TimeoutError"

    def test_failing_handler_is_contained(self):
        """Test a broken failure handler does not propagate."""
        audit = AuditLog(FailingAuditSink(), on_failure=MagicMock(side_effect=RuntimeError("pager down")))

        audit.record_failure(make_event(), OSError("disk full"))

        assert audit.failure_count == 1
