"""
Member activity tracking for the access service.
"""

from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from shared.logging import get_logger
from shared.locks import KeyedLock
from ..identity.models import MemberActivity
from ..identity.persistence import Persistence
from ..rules.models import Reason, Verdict

# Refusals that say something about the member or the credential; faults and
# timeouts are not held against anyone
RECORDED_DENIALS = frozenset({
    Reason.MEMBERSHIP_INACTIVE,
    Reason.STATUS_UNVERIFIABLE,
    Reason.TAG_AUTH_FAILED,
})


class ActivityTracker:
    """Write-through record of member activity with a bounded in-memory copy.

    Activity lives apart from member records, so recording an entry never
    invalidates the tag cache. The in-memory copy lets the cooldown check
    run without a storage read on every presentation.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        cooldown: timedelta = timedelta(0),
        max_entries: int = 4096,
    ):
        self.persistence = persistence
        self.cooldown = cooldown
        self.max_entries = max(1, max_entries)
        self.logger = get_logger("access.activity")
        self._entries: "OrderedDict[str, MemberActivity]" = OrderedDict()
        self._locks = KeyedLock()

    async def get(self, member_id: str) -> MemberActivity:
        """Activity for a member; an empty record if nothing was ever recorded."""
        activity = self._entries.get(member_id)
        if activity is not None:
            self._entries.move_to_end(member_id)
            return activity

        async with self._locks.hold(member_id):
            return await self._load(member_id)

    async def cooldown_remaining(self, member_id: str, now: datetime) -> Optional[timedelta]:
        """Time left before a member may try again after a failed tag authentication."""
        if self.cooldown <= timedelta(0):
            return None

        activity = await self.get(member_id)
        if activity.last_denied_reason != Reason.TAG_AUTH_FAILED.value or activity.last_denied_at is None:
            return None

        remaining = activity.last_denied_at + self.cooldown - now
        return remaining if remaining > timedelta(0) else None

    async def record(
        self,
        member_id: str,
        verdict: Verdict,
        now: datetime,
        door_id: Optional[str] = None,
    ) -> Optional[MemberActivity]:
        """Record a resolution outcome. Returns None when the outcome is not tracked."""
        if verdict.granted:
            changes = {"last_enter_at": now, "last_enter_door": door_id}
        elif verdict.reason in RECORDED_DENIALS:
            changes = {"last_denied_at": now, "last_denied_reason": verdict.reason.value}
        else:
            return None

        async with self._locks.hold(member_id):
            activity = replace(await self._load(member_id), **changes)
            await self.persistence.save_activity(activity)
            self._remember(activity)

        self.logger.debug("Member activity recorded", member_id=member_id, reason=verdict.reason.value)
        return activity

    async def _load(self, member_id: str) -> MemberActivity:
        # Caller holds the member's lock
        activity = self._entries.get(member_id)
        if activity is None:
            activity = await self.persistence.load_activity(member_id) or MemberActivity(member_id=member_id)
            self._remember(activity)
        return activity

    def _remember(self, activity: MemberActivity):
        self._entries[activity.member_id] = activity
        self._entries.move_to_end(activity.member_id)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
