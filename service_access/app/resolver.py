"""
Access resolver: the single entry point invoked per tag presentation.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union, TYPE_CHECKING

from shared.logging import get_logger, set_resolution_context, clear_context
from shared.errors import ResolutionTimeoutError, StorageError, ValidationError
from .identity.auth import TagAuthenticator
from .identity.models import TagId, Tag, StatusSource
from .identity.store import IdentityStore, utcnow
from .cache.tag_cache import CacheEntry, TagCache
from .rules.evaluator import EligibilityEvaluator
from .rules.models import Reason, Verdict
from .audit.log import AccessEvent, AuditLog
from .membership.sync import MembershipSync
from .activity.tracker import ActivityTracker

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

# Share of the remaining deadline an on-demand membership check may use; the
# rest is left for recording the fallback and evaluating it
VERIFY_SHARE = 0.8


@dataclass
class _Trace:
    """What a resolution learned before it finished or was cut off."""
    tag_label: str
    tag_serial: Optional[str] = None
    member_id: Optional[str] = None


class AccessResolver:
    """Cache lookup, optional re-verification, evaluation, credential check, audit.

    resolve_access never raises and never outlives its deadline: timeouts,
    store faults and unexpected errors all become deny verdicts. Audit and
    activity failures are reported and never change the verdict.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: TagCache,
        evaluator: EligibilityEvaluator,
        audit: AuditLog,
        *,
        sync: Optional[MembershipSync] = None,
        activity: Optional[ActivityTracker] = None,
        authenticator: Optional[TagAuthenticator] = None,
        timeout: float = 0.25,
        audit_timeout: float = 0.1,
        verify_on_demand: bool = True,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.cache = cache
        self.evaluator = evaluator
        self.audit = audit
        self.sync = sync
        self.activity = activity
        self.authenticator = authenticator
        self.timeout = timeout
        self.audit_timeout = audit_timeout
        self.verify_on_demand = verify_on_demand
        self.metrics = metrics
        self.logger = get_logger("access.resolver")
        self._clock = clock

    async def resolve_access(
        self,
        tag_id: Union[TagId, bytes, str],
        door_id: Optional[str] = None,
        timeout: Optional[float] = None,
        auth_response: Optional[str] = None,
    ) -> Verdict:
        started = time.perf_counter()
        trace = _Trace(tag_label=_label(tag_id))
        set_resolution_context(door_id=door_id, tag_id=trace.tag_label)
        deadline = self.timeout if timeout is None else timeout
        deadline_at = asyncio.get_running_loop().time() + deadline

        try:
            verdict = await asyncio.wait_for(self._resolve(tag_id, trace, deadline_at, auth_response), deadline)
        except (asyncio.TimeoutError, ResolutionTimeoutError):
            self.logger.warning("Resolution deadline exceeded", timeout_seconds=deadline)
            verdict = Verdict.deny(Reason.TIMEOUT)
        except StorageError as e:
            self.logger.error("Store fault during resolution", error=e.message, details=e.details)
            verdict = Verdict.deny(Reason.STORAGE_ERROR)
        except Exception as e:
            self.logger.error("Unexpected error during resolution", error=str(e), exc_info=True)
            verdict = Verdict.deny(Reason.INTERNAL_ERROR)

        occurred_at = self._clock()
        await self._record_activity(trace, verdict, occurred_at, door_id)
        event = AccessEvent.from_verdict(
            verdict,
            tag_id=trace.tag_label,
            occurred_at=occurred_at,
            member_id=trace.member_id,
            tag_serial=trace.tag_serial,
            door_id=door_id
        )
        await self._append_audit(event)

        duration = time.perf_counter() - started
        if self.metrics:
            self.metrics.record_resolution(verdict.decision.value, verdict.reason.value, duration)
        self.logger.info(
            "Access resolved",
            decision=verdict.decision.value,
            reason=verdict.reason.value,
            stale=verdict.stale,
            member_id=trace.member_id,
            duration_ms=round(duration * 1000, 3)
        )
        clear_context()
        return verdict

    async def _resolve(
        self,
        raw_tag_id: Union[TagId, bytes, str],
        trace: _Trace,
        deadline_at: float,
        auth_response: Optional[str],
    ) -> Verdict:
        try:
            tag_id = self.store.parse_tag_id(raw_tag_id)
        except ValidationError as e:
            self.logger.warning("Malformed tag identifier presented", details=e.details)
            return Verdict.deny(Reason.UNKNOWN_TAG)

        trace.tag_label = str(tag_id)
        entry = await self.cache.resolve(tag_id)
        self._note(entry, trace)

        if self._needs_verification(entry):
            budget = (deadline_at - asyncio.get_running_loop().time()) * VERIFY_SHARE
            await self.sync.verify_member(entry.member.member_id, budget)
            entry = await self.cache.resolve(tag_id)
            self._note(entry, trace)

        verdict = self.evaluator.evaluate(entry.tag, entry.member, self._clock())
        if verdict.granted:
            verdict = await self._check_credential(entry.tag, verdict, auth_response)
        return verdict

    async def _check_credential(self, tag: Tag, verdict: Verdict, auth_response: Optional[str]) -> Verdict:
        """Cooldown after a failed authentication, then the tag's own check if it has one."""
        if self.activity is not None:
            remaining = await self.activity.cooldown_remaining(tag.member_id, self._clock())
            if remaining is not None:
                self.logger.info(
                    "Presentation refused during cooldown",
                    member_id=tag.member_id,
                    remaining_seconds=round(remaining.total_seconds(), 1)
                )
                return Verdict.deny(Reason.COOLDOWN, stale=verdict.stale)

        if not tag.requires_authentication:
            return verdict

        if self.authenticator is None:
            self.logger.warning("Tag requires authentication but no authenticator is configured",
                                auth_method=tag.auth_method)
            return Verdict.deny(Reason.TAG_AUTH_FAILED, stale=verdict.stale)

        if await self.authenticator.authenticate(tag, auth_response):
            return verdict

        self.logger.warning("Tag authentication failed", member_id=tag.member_id, auth_method=tag.auth_method)
        return Verdict.deny(Reason.TAG_AUTH_FAILED, stale=verdict.stale)

    def _needs_verification(self, entry: CacheEntry) -> bool:
        if self.sync is None or not self.verify_on_demand:
            return False
        if entry.tag is None or entry.tag.revoked or entry.member is None:
            return False
        if entry.member.status_source == StatusSource.AUTHORITATIVE:
            return False
        return self.sync.due_for_verification(entry.member.member_id)

    @staticmethod
    def _note(entry: CacheEntry, trace: _Trace):
        if entry.tag is not None:
            trace.tag_serial = entry.tag.serial
            trace.member_id = entry.tag.member_id

    async def _record_activity(self, trace: _Trace, verdict: Verdict, now: datetime, door_id: Optional[str]):
        if self.activity is None or trace.member_id is None:
            return
        try:
            await asyncio.wait_for(self.activity.record(trace.member_id, verdict, now, door_id), self.audit_timeout)
        except (asyncio.TimeoutError, StorageError) as e:
            self.logger.error(
                "Member activity not recorded",
                member_id=trace.member_id,
                error=str(e) or type(e).__name__
            )

    async def _append_audit(self, event: AccessEvent):
        try:
            await asyncio.wait_for(self.audit.append(event), self.audit_timeout)
        except asyncio.TimeoutError as e:
            self.audit.record_failure(event, e)
        except StorageError as e:
            self.audit.record_failure(event, e)


def _label(raw: Union[TagId, bytes, str]) -> str:
    if isinstance(raw, TagId):
        return str(raw)
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).hex().upper()
    return str(raw)
