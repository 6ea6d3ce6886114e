"""
Verdict data models for the access service.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Decision(str, Enum):
    """Verdict decisions."""
    GRANT = "grant"
    DENY = "deny"


class Reason(str, Enum):
    """Reason codes attached to every verdict."""
    OK = "OK"
    OK_STALE = "OK_STALE"
    UNKNOWN_TAG = "UNKNOWN_TAG"
    TAG_REVOKED = "TAG_REVOKED"
    UNBOUND_TAG = "UNBOUND_TAG"
    MEMBERSHIP_INACTIVE = "MEMBERSHIP_INACTIVE"
    STATUS_UNVERIFIABLE = "STATUS_UNVERIFIABLE"
    TAG_AUTH_FAILED = "TAG_AUTH_FAILED"
    COOLDOWN = "COOLDOWN"
    TIMEOUT = "TIMEOUT"
    STORAGE_ERROR = "STORAGE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class Verdict:
    """Outcome of one resolution, handed to the door actuator."""
    decision: Decision
    reason: Reason
    stale: bool = False

    @property
    def granted(self) -> bool:
        return self.decision == Decision.GRANT

    @classmethod
    def grant(cls, reason: Reason = Reason.OK, stale: bool = False) -> "Verdict":
        return cls(Decision.GRANT, reason, stale)

    @classmethod
    def deny(cls, reason: Reason, stale: bool = False) -> "Verdict":
        return cls(Decision.DENY, reason, stale)


class ResolveRequest(BaseModel):
    """Request model for a tag presentation."""
    tag_id: str = Field(..., description="Tag identifier, hex with optional separators")
    door_id: Optional[str] = Field(None, description="Door the tag was presented at")
    timeout_ms: Optional[int] = Field(None, gt=0, description="Per-call deadline override")
    auth_response: Optional[str] = Field(None, description="Credential collected with the tag, for tags that require one")


class VerdictResponse(BaseModel):
    """Response model for a tag presentation."""
    decision: Decision
    reason: Reason
    stale: bool

    @classmethod
    def from_verdict(cls, verdict: Verdict) -> "VerdictResponse":
        return cls(decision=verdict.decision, reason=verdict.reason, stale=verdict.stale)
