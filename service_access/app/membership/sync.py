"""
Membership status synchronization for the access service.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, TYPE_CHECKING

from shared.logging import get_logger
from shared.errors import ResolutionTimeoutError, UnavailableError
from ..identity.models import Member, MembershipStatus, StatusSource, as_utc
from ..identity.store import IdentityStore, utcnow
from .source import MembershipReport, MembershipSource

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class MembershipSync:
    """Re-verifies member status against the membership-truth source.

    Fetched status is written back through the identity store, which
    invalidates the tag cache. When the source cannot answer, the member
    keeps its last known status and verification time and is flagged
    unavailable-fallback. No lock is held while waiting on the network.
    """

    def __init__(
        self,
        store: IdentityStore,
        source: MembershipSource,
        *,
        refresh_interval: float = 300.0,
        fetch_timeout: float = 2.0,
        concurrency: int = 5,
        on_demand_min_interval: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.source = source
        self.refresh_interval = refresh_interval
        self.fetch_timeout = fetch_timeout
        self.on_demand_min_interval = on_demand_min_interval
        self.metrics = metrics
        self.logger = get_logger("access.membership.sync")
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._last_attempt: Dict[str, datetime] = {}
        self._task: Optional[asyncio.Task] = None

    def due_for_verification(self, member_id: str) -> bool:
        """On-demand checks for one member are throttled to one per interval."""
        last = self._last_attempt.get(member_id)
        return last is None or self._clock() - last >= self.on_demand_min_interval

    async def refresh_member(self, member_id: str) -> Member:
        """Fetch one member's status, with retries, and record the result in the store."""
        self._last_attempt[member_id] = self._clock()
        try:
            report = await asyncio.wait_for(self.source.fetch_status(member_id), self.fetch_timeout)
        except (UnavailableError, asyncio.TimeoutError) as e:
            return await self._unavailable(member_id, e)
        except Exception as e:
            return await self._failed(member_id, e)

        return await self._record(member_id, report)

    async def verify_member(self, member_id: str, budget: float) -> Member:
        """On-demand check made while a door is waiting.

        One attempt without retry backoff, bounded by the caller's remaining
        budget. A source that fails is recorded as unavailable and the
        fallback is returned. A source still silent when the budget runs out
        is recorded the same way, and then ResolutionTimeoutError is raised.
        """
        self._last_attempt[member_id] = self._clock()
        limit = max(0.0, min(self.fetch_timeout, budget))
        try:
            report = await asyncio.wait_for(self.source.fetch_status(member_id, retry=False), limit)
        except asyncio.TimeoutError as e:
            member = await self._unavailable(member_id, e, outcome="timeout")
            if limit < self.fetch_timeout:
                raise ResolutionTimeoutError(
                    "Membership check exceeded the resolution budget",
                    details={"member_id": member_id, "budget_seconds": round(limit, 3)}
                ) from e
            return member
        except UnavailableError as e:
            return await self._unavailable(member_id, e)
        except Exception as e:
            return await self._failed(member_id, e)

        return await self._record(member_id, report)

    async def _unavailable(self, member_id: str, error: Exception, outcome: str = "unavailable") -> Member:
        self._count(outcome)
        self.logger.warning(
            "Membership status unavailable",
            member_id=member_id,
            error=str(error) or type(error).__name__
        )
        return await self._fall_back(member_id)

    async def _failed(self, member_id: str, error: Exception) -> Member:
        self._count("error")
        self.logger.error("Membership source failed", member_id=member_id, error=str(error))
        return await self._fall_back(member_id)

    async def _record(self, member_id: str, report: MembershipReport) -> Member:
        self._count("ok")
        verified_at = min(as_utc(report.as_of), self._clock())
        return await self.store.upsert_member(
            member_id,
            report.status,
            StatusSource.AUTHORITATIVE,
            verified_at=verified_at,
            only_if_newer=True
        )

    async def _fall_back(self, member_id: str) -> Member:
        member = await self.store.persistence.load_member(member_id)
        if member is None:
            return await self.store.upsert_member(
                member_id, MembershipStatus.UNKNOWN, StatusSource.UNAVAILABLE_FALLBACK
            )
        return await self.store.mark_member_unavailable(member_id)

    async def refresh_all(self) -> Dict[str, int]:
        """Refresh every known member with bounded concurrency."""
        member_ids = await self.store.list_member_ids()

        async def _guarded(member_id: str) -> Member:
            async with self._semaphore:
                return await self.refresh_member(member_id)

        results = await asyncio.gather(*(_guarded(m) for m in member_ids), return_exceptions=True)

        summary = {"members": len(member_ids), "authoritative": 0, "fallback": 0, "failed": 0}
        for member_id, result in zip(member_ids, results):
            if isinstance(result, BaseException):
                summary["failed"] += 1
                self.logger.error("Member refresh failed", member_id=member_id, error=str(result))
            elif result.status_source == StatusSource.AUTHORITATIVE:
                summary["authoritative"] += 1
            else:
                summary["fallback"] += 1

        self.logger.info("Membership refresh completed", **summary)
        return summary

    async def start(self):
        """Start the background refresh loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="membership-sync")
            self.logger.info("Membership sync started", interval_seconds=self.refresh_interval)

    async def stop(self):
        """Stop the background refresh loop."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            self.logger.info("Membership sync stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        while True:
            try:
                await self.refresh_all()
            except Exception as e:
                self.logger.error("Membership refresh cycle failed", error=str(e))
            await asyncio.sleep(self.refresh_interval)

    def _count(self, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("membership_fetch_total", outcome=outcome)
