"""
Eligibility evaluator for the access service.
"""

from datetime import datetime, timedelta
from typing import Optional

from shared.logging import get_logger
from ..identity.models import Tag, Member, MembershipStatus, StatusSource
from .models import Reason, Verdict

INACTIVE_STATUSES = (MembershipStatus.SUSPENDED, MembershipStatus.EXPIRED)


class EligibilityEvaluator:
    """Ordered decision table; the first matching row wins.

    1. no tag                                        -> deny  UNKNOWN_TAG
    2. tag revoked                                   -> deny  TAG_REVOKED
    3. tag unbound                                   -> deny  UNBOUND_TAG
    4. suspended/expired, authoritative              -> deny  MEMBERSHIP_INACTIVE
    5. active, authoritative or cached-stale in grace -> grant OK
    6. unknown, or fallback beyond grace             -> deny  STATUS_UNVERIFIABLE
    7. active, stale within grace                    -> grant OK_STALE
    8. active beyond grace                           -> deny  STATUS_UNVERIFIABLE
       last known inactive, not authoritative        -> deny  MEMBERSHIP_INACTIVE

    The grace window is the fail-open/fail-closed policy knob: once a
    member's status is older than it and cannot be re-verified, the door
    stays shut.
    """

    def __init__(self, grace_window: timedelta = timedelta(hours=24)):
        self.grace_window = grace_window
        self.logger = get_logger("access.rules.evaluator")

    def within_grace_window(self, member: Member, now: datetime) -> bool:
        """The edge instant itself is still inside the window."""
        age = member.status_age(now)
        return age is not None and age <= self.grace_window

    def evaluate(self, tag: Optional[Tag], member: Optional[Member], now: datetime) -> Verdict:
        verdict = self._decide(tag, member, now)
        self.logger.debug(
            "Eligibility evaluated",
            decision=verdict.decision.value,
            reason=verdict.reason.value,
            stale=verdict.stale
        )
        return verdict

    def _decide(self, tag: Optional[Tag], member: Optional[Member], now: datetime) -> Verdict:
        if tag is None:
            return Verdict.deny(Reason.UNKNOWN_TAG)

        if tag.revoked:
            return Verdict.deny(Reason.TAG_REVOKED)

        if not tag.is_bound or member is None:
            return Verdict.deny(Reason.UNBOUND_TAG)

        status = member.status
        source = member.status_source
        authoritative = source == StatusSource.AUTHORITATIVE
        stale = not authoritative
        in_grace = self.within_grace_window(member, now)

        if status in INACTIVE_STATUSES and authoritative:
            return Verdict.deny(Reason.MEMBERSHIP_INACTIVE)

        if status == MembershipStatus.ACTIVE and (
            authoritative or (source == StatusSource.CACHED_STALE and in_grace)
        ):
            return Verdict.grant(Reason.OK, stale=stale)

        if status == MembershipStatus.UNKNOWN or (
            source == StatusSource.UNAVAILABLE_FALLBACK and not in_grace
        ):
            return Verdict.deny(Reason.STATUS_UNVERIFIABLE, stale=stale)

        if status == MembershipStatus.ACTIVE:
            if in_grace:
                return Verdict.grant(Reason.OK_STALE, stale=True)
            return Verdict.deny(Reason.STATUS_UNVERIFIABLE, stale=True)

        return Verdict.deny(Reason.MEMBERSHIP_INACTIVE, stale=stale)
