"""
Tag and member data models for the access service.
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Iterable, Union

from pydantic import BaseModel, Field

from shared.errors import ValidationError

# NFC UIDs are 4 (single), 7 (double) or 10 (triple size) bytes
DEFAULT_TAG_LENGTHS = (4, 7, 10)

_SEPARATORS = re.compile(r"[\s:\-]")
_HEX = re.compile(r"^[0-9a-fA-F]*$")


class MembershipStatus(str, Enum):
    """Membership status as reported by the membership-truth source."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class StatusSource(str, Enum):
    """Where the status currently held for a member came from."""
    AUTHORITATIVE = "authoritative"
    CACHED_STALE = "cached-stale"
    UNAVAILABLE_FALLBACK = "unavailable-fallback"


@dataclass(frozen=True)
class TagId:
    """Canonical tag identifier: the raw UID bytes, compared byte-exact."""
    value: bytes

    @classmethod
    def parse(cls, raw: Union["TagId", bytes, bytearray, str],
              allowed_lengths: Iterable[int] = DEFAULT_TAG_LENGTHS) -> "TagId":
        """Normalize raw bytes or hex text (any case, ':'/'-'/space separated)."""
        if isinstance(raw, TagId):
            value = raw.value
        elif isinstance(raw, (bytes, bytearray)):
            value = bytes(raw)
        elif isinstance(raw, str):
            text = _SEPARATORS.sub("", raw)
            if not text or len(text) % 2 or not _HEX.match(text):
                raise ValidationError(
                    "Tag identifier is not a hex byte string",
                    details={"tag_id": raw}
                )
            value = bytes.fromhex(text)
        else:
            raise ValidationError(
                "Unsupported tag identifier type",
                details={"type": type(raw).__name__}
            )

        allowed = tuple(allowed_lengths)
        if len(value) not in allowed:
            raise ValidationError(
                "Tag identifier has an unsupported length",
                details={"length": len(value), "allowed": list(allowed)}
            )
        return cls(value)

    @property
    def hex(self) -> str:
        return self.value.hex().upper()

    def __str__(self) -> str:
        return ":".join(f"{b:02X}" for b in self.value)


def new_serial() -> str:
    return str(uuid.uuid4())


def as_utc(moment: datetime) -> datetime:
    """Timestamps without an offset are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class Tag:
    """Snapshot of one logical tag issuance.

    The serial identifies this issuance; a revoked identifier bound again
    gets a new serial so audit history never mixes two holders.
    auth_method and auth_data describe an additional check the tag must pass
    at the door (a PIN, a challenge key); a tag without auth_data has none.
    """
    tag_id: TagId
    serial: str = field(default_factory=new_serial)
    member_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    auth_method: Optional[int] = None
    auth_data: Optional[bytes] = None

    @property
    def requires_authentication(self) -> bool:
        return self.auth_data is not None

    @property
    def is_bound(self) -> bool:
        return self.member_id is not None

    @property
    def is_active(self) -> bool:
        return not self.revoked

    def bind(self, member_id: str, now: datetime) -> "Tag":
        return replace(self, member_id=member_id, issued_at=now)

    def unbind(self) -> "Tag":
        return replace(self, member_id=None)

    def revoke(self, now: datetime) -> "Tag":
        return replace(self, revoked=True, revoked_at=now)

    def with_auth(self, auth_method: int, auth_data: bytes) -> "Tag":
        return replace(self, auth_method=auth_method, auth_data=bytes(auth_data))

    def without_auth(self) -> "Tag":
        return replace(self, auth_method=None, auth_data=None)


@dataclass(frozen=True)
class Member:
    """Snapshot of a member and the membership status held for them."""
    member_id: str
    display_name: Optional[str] = None
    status: MembershipStatus = MembershipStatus.UNKNOWN
    status_source: StatusSource = StatusSource.UNAVAILABLE_FALLBACK
    status_verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def status_age(self, now: datetime) -> Optional[timedelta]:
        """Age of the held status; None when it was never verified."""
        if self.status_verified_at is None:
            return None
        return now - self.status_verified_at

    def as_seen_at(self, now: datetime, max_age: timedelta) -> "Member":
        """Authoritative status older than max_age is presented as cached-stale."""
        if self.status_source != StatusSource.AUTHORITATIVE:
            return self
        age = self.status_age(now)
        if age is None or age > max_age:
            return replace(self, status_source=StatusSource.CACHED_STALE)
        return self


@dataclass(frozen=True)
class MemberActivity:
    """Door activity of one member: the last entry and the last refused attempt."""
    member_id: str
    last_enter_at: Optional[datetime] = None
    last_enter_door: Optional[str] = None
    last_denied_at: Optional[datetime] = None
    last_denied_reason: Optional[str] = None


class TagResponse(BaseModel):
    """Response model for tag operations."""
    tag_id: str
    serial: str
    member_id: Optional[str]
    issued_at: Optional[datetime]
    revoked: bool
    revoked_at: Optional[datetime]
    auth_method: Optional[int] = None
    requires_authentication: bool = False

    @classmethod
    def from_tag(cls, tag: Tag) -> "TagResponse":
        return cls(
            tag_id=str(tag.tag_id),
            serial=tag.serial,
            member_id=tag.member_id,
            issued_at=tag.issued_at,
            revoked=tag.revoked,
            revoked_at=tag.revoked_at,
            auth_method=tag.auth_method,
            requires_authentication=tag.requires_authentication
        )


class TagListResponse(BaseModel):
    """Response model for a member's active tags."""
    member_id: str
    tags: List[TagResponse]
    total: int


class MemberResponse(BaseModel):
    """Response model for member operations."""
    member_id: str
    display_name: Optional[str]
    status: MembershipStatus
    status_source: StatusSource
    status_verified_at: Optional[datetime]
    created_at: Optional[datetime]

    @classmethod
    def from_member(cls, member: Member) -> "MemberResponse":
        return cls(
            member_id=member.member_id,
            display_name=member.display_name,
            status=member.status,
            status_source=member.status_source,
            status_verified_at=member.status_verified_at,
            created_at=member.created_at
        )


class BindTagRequest(BaseModel):
    """Request model for binding a tag to a member."""
    member_id: str = Field(..., min_length=1, description="Member ID")


class MemberStatusRequest(BaseModel):
    """Request model for setting a member's status."""
    status: MembershipStatus = Field(..., description="Membership status")
    source: StatusSource = Field(StatusSource.AUTHORITATIVE, description="Where the status came from")
    verified_at: Optional[datetime] = Field(None, description="When the status was verified")
    display_name: Optional[str] = Field(None, description="Display name")


class TagAuthRequest(BaseModel):
    """Request model for attaching an additional authentication check to a tag."""
    auth_method: int = Field(..., ge=0, description="Authentication method code")
    auth_data: str = Field(..., pattern=r"^([0-9a-fA-F]{2})+$", description="Method data, hex encoded")


class MemberActivityResponse(BaseModel):
    """Response model for a member's door activity."""
    member_id: str
    last_enter_at: Optional[datetime]
    last_enter_door: Optional[str]
    last_denied_at: Optional[datetime]
    last_denied_reason: Optional[str]

    @classmethod
    def from_activity(cls, activity: MemberActivity) -> "MemberActivityResponse":
        return cls(
            member_id=activity.member_id,
            last_enter_at=activity.last_enter_at,
            last_enter_door=activity.last_enter_door,
            last_denied_at=activity.last_denied_at,
            last_denied_reason=activity.last_denied_reason
        )
