"""
Access event audit log for the access service.
"""

import asyncio
import json
import os
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, TYPE_CHECKING

import asyncpg

from shared.logging import get_logger
from shared.errors import StorageError
from ..rules.models import Decision, Reason, Verdict

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class AccessEvent:
    """Immutable record of one resolution."""
    tag_id: str
    verdict: Decision
    reason: Reason
    stale: bool
    occurred_at: datetime
    member_id: Optional[str] = None
    tag_serial: Optional[str] = None
    door_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_verdict(cls, verdict: Verdict, *, tag_id: str, occurred_at: datetime,
                     member_id: Optional[str] = None, tag_serial: Optional[str] = None,
                     door_id: Optional[str] = None) -> "AccessEvent":
        return cls(
            tag_id=tag_id,
            verdict=verdict.decision,
            reason=verdict.reason,
            stale=verdict.stale,
            occurred_at=occurred_at,
            member_id=member_id,
            tag_serial=tag_serial,
            door_id=door_id
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "tag_id": self.tag_id,
            "tag_serial": self.tag_serial,
            "member_id": self.member_id,
            "verdict": self.verdict.value,
            "reason": self.reason.value,
            "stale": self.stale,
            "door_id": self.door_id,
            "occurred_at": self.occurred_at.isoformat()
        }


@dataclass(frozen=True)
class AuditFailure:
    """An event that could not be appended, and why."""
    event: AccessEvent
    error: str
    sink: str


class AuditSink(ABC):
    """Append-only destination for access events."""

    name = "sink"

    async def start(self):
        """Prepare the sink."""

    async def stop(self):
        """Flush and release the sink."""

    @abstractmethod
    async def append(self, event: AccessEvent):
        """Append one event; raise on any storage fault."""


class MemoryAuditSink(AuditSink):
    """Keeps events in a list. For tests and hardware-free development."""

    name = "memory"

    def __init__(self):
        self.events: List[AccessEvent] = []

    async def append(self, event: AccessEvent):
        self.events.append(event)


class JsonlAuditSink(AuditSink):
    """One JSON object per line, flushed and fsynced per event."""

    name = "jsonl"

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()

    async def start(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

    async def append(self, event: AccessEvent):
        line = json.dumps(event.to_dict(), sort_keys=True) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._write, line)

    def _write(self, line: str):
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())


class PostgresAuditSink(AuditSink):
    """Appends events to the access_events table."""

    name = "postgres"

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("access.audit.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        try:
            self.pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=5, command_timeout=5)
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    CREATE TABLE IF NOT EXISTS access_events (
                        event_id UUID PRIMARY KEY,
                        tag_id VARCHAR(64) NOT NULL,
                        tag_serial UUID,
                        member_id VARCHAR(255),
                        verdict VARCHAR(8) NOT NULL,
                        reason VARCHAR(32) NOT NULL,
                        stale BOOLEAN NOT NULL,
                        door_id VARCHAR(255),
                        occurred_at TIMESTAMP WITH TIME ZONE NOT NULL
                    );
                """)
                await conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_access_events_occurred ON access_events(occurred_at);
                """)
            self.logger.info("PostgreSQL audit sink started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL audit sink", error=str(e))
            raise StorageError("Audit sink failed to start", details={"error": str(e)}) from e

    async def stop(self):
        if self.pool:
            await self.pool.close()

    async def append(self, event: AccessEvent):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO access_events (
                    event_id, tag_id, tag_serial, member_id, verdict, reason, stale, door_id, occurred_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
                event.event_id, event.tag_id, event.tag_serial, event.member_id,
                event.verdict.value, event.reason.value, event.stale, event.door_id, event.occurred_at
            )


class AuditLog:
    """Front for an audit sink plus the failure side channel.

    append() raises StorageError when the sink faults. Callers that must not
    fail (the resolver) report the fault through record_failure(), which
    keeps a bounded buffer of failures, counts them and notifies on_failure.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        metrics: Optional["MetricsCollector"] = None,
        on_failure: Optional[Callable[[AuditFailure], None]] = None,
        max_failures: int = 1000,
    ):
        self.sink = sink
        self.metrics = metrics
        self.on_failure = on_failure
        self.logger = get_logger("access.audit")
        self.failures: Deque[AuditFailure] = deque(maxlen=max_failures)
        self.failure_count = 0

    async def start(self):
        await self.sink.start()

    async def stop(self):
        await self.sink.stop()

    async def append(self, event: AccessEvent):
        try:
            await self.sink.append(event)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                "Audit append failed",
                details={"sink": self.sink.name, "event_id": event.event_id, "error": str(e)}
            ) from e

    def record_failure(self, event: AccessEvent, error: Exception):
        failure = AuditFailure(event=event, error=str(error) or type(error).__name__, sink=self.sink.name)
        self.failures.append(failure)
        self.failure_count += 1
        self.logger.error(
            "Audit write failed",
            sink=self.sink.name,
            event=event.to_dict(),
            error=failure.error
        )
        if self.metrics:
            self.metrics.increment_counter("audit_write_failures_total", sink=self.sink.name)
        if self.on_failure is not None:
            try:
                self.on_failure(failure)
            except Exception as e:
                self.logger.error("Audit failure handler raised", error=str(e))
