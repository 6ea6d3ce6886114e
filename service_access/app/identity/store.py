"""
Identity store: the system of record for tags, members and bindings.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Set, Tuple, Union

from shared.logging import get_logger
from shared.errors import ConflictError, NotFoundError
from shared.locks import KeyedLock
from .models import (
    DEFAULT_TAG_LENGTHS, TagId, Tag, Member, MembershipStatus, StatusSource, as_utc
)
from .persistence import Persistence

RawTagId = Union[TagId, bytes, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidationListener(Protocol):
    """Receives invalidations after every committed mutation."""

    def invalidate_tag(self, tag_id: TagId) -> None:
        ...

    def invalidate_member(self, member_id: str) -> None:
        ...


class IdentityStore:
    """Administrative and lookup API over a persistence backend.

    Mutations are serialized per record: a tag lock for tag operations and a
    member lock for member operations, always acquired tag first. Listeners
    are invalidated before the lock is released, so a resolution that starts
    after a mutation returns always sees it.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        clock: Callable[[], datetime] = utcnow,
        tag_id_lengths: Iterable[int] = DEFAULT_TAG_LENGTHS,
    ):
        self.persistence = persistence
        self.logger = get_logger("access.identity.store")
        self.tag_id_lengths = tuple(tag_id_lengths)
        self._clock = clock
        self._tag_locks = KeyedLock()
        self._member_locks = KeyedLock()
        self._listeners: List[InvalidationListener] = []

    def subscribe(self, listener: InvalidationListener):
        """Register a cache to be invalidated on every mutation."""
        self._listeners.append(listener)

    def parse_tag_id(self, raw: RawTagId) -> TagId:
        return TagId.parse(raw, self.tag_id_lengths)

    async def start(self):
        await self.persistence.start()

    async def stop(self):
        await self.persistence.stop()

    # Reads

    async def lookup_tag(self, raw_tag_id: RawTagId) -> Tag:
        tag_id = self.parse_tag_id(raw_tag_id)
        tag = await self.persistence.load_tag(tag_id)
        if tag is None:
            raise NotFoundError("Tag not found", details={"tag_id": str(tag_id)})
        return tag

    async def get_member(self, member_id: str) -> Member:
        member = await self.persistence.load_member(member_id)
        if member is None:
            raise NotFoundError("Member not found", details={"member_id": member_id})
        return member

    async def lookup(self, tag_id: TagId) -> Tuple[Optional[Tag], Optional[Member]]:
        """Tag and bound member as one snapshot; (None, None) for unknown tags."""
        return await self.persistence.load_binding(tag_id)

    async def list_active_tags_for_member(self, member_id: str) -> Set[Tag]:
        tags = await self.persistence.load_tags_for_member(member_id)
        return {tag for tag in tags if tag.is_active}

    async def list_member_ids(self) -> List[str]:
        return await self.persistence.load_member_ids()

    async def tag_history(self, raw_tag_id: RawTagId) -> List[Tag]:
        return await self.persistence.load_tag_history(self.parse_tag_id(raw_tag_id))

    # Tag mutations

    async def register_tag(self, raw_tag_id: RawTagId) -> Tag:
        """Enrol an unbound tag. Idempotent for an identifier that is already active."""
        tag_id = self.parse_tag_id(raw_tag_id)
        async with self._tag_locks.hold(tag_id):
            existing = await self.persistence.load_tag(tag_id)
            if existing is not None and existing.is_active:
                return existing

            tag = Tag(tag_id=tag_id, issued_at=self._clock())
            await self.persistence.save_tag(tag, archived=existing)
            self._invalidate_tag(tag_id)

        self.logger.info("Tag registered", tag_id=str(tag_id), serial=tag.serial)
        return tag

    async def bind_tag(self, raw_tag_id: RawTagId, member_id: str) -> Tag:
        """Bind a tag to a member, creating either record on first reference.

        Raises ConflictError if the tag is actively bound to someone else.
        A revoked identifier is archived and issued again as a new logical tag.
        """
        tag_id = self.parse_tag_id(raw_tag_id)
        async with self._tag_locks.hold(tag_id), self._member_locks.hold(member_id):
            now = self._clock()
            existing = await self.persistence.load_tag(tag_id)
            archived = None

            if existing is not None and existing.is_active:
                if existing.member_id == member_id:
                    return existing
                if existing.is_bound:
                    raise ConflictError(
                        "Tag is already bound to a different member",
                        details={"tag_id": str(tag_id), "member_id": existing.member_id}
                    )
                tag = existing.bind(member_id, now)
            else:
                archived = existing
                tag = Tag(tag_id=tag_id).bind(member_id, now)

            new_member = None
            if await self.persistence.load_member(member_id) is None:
                new_member = Member(member_id=member_id, created_at=now)

            await self.persistence.save_tag(tag, member=new_member, archived=archived)
            self._invalidate_tag(tag_id)

        self.logger.info(
            "Tag bound",
            tag_id=str(tag_id),
            serial=tag.serial,
            member_id=member_id,
            reissued=archived is not None
        )
        return tag

    async def unbind_tag(self, raw_tag_id: RawTagId) -> Tag:
        tag_id = self.parse_tag_id(raw_tag_id)
        async with self._tag_locks.hold(tag_id):
            existing = await self.persistence.load_tag(tag_id)
            if existing is None:
                raise NotFoundError("Tag not found", details={"tag_id": str(tag_id)})
            if existing.revoked or not existing.is_bound:
                return existing

            tag = existing.unbind()
            await self.persistence.save_tag(tag)
            self._invalidate_tag(tag_id)

        self.logger.info("Tag unbound", tag_id=str(tag_id), member_id=existing.member_id)
        return tag

    async def revoke_tag(self, raw_tag_id: RawTagId) -> None:
        """Revoke a tag. Revoking an already revoked tag is a no-op."""
        tag_id = self.parse_tag_id(raw_tag_id)
        async with self._tag_locks.hold(tag_id):
            existing = await self.persistence.load_tag(tag_id)
            if existing is None:
                raise NotFoundError("Tag not found", details={"tag_id": str(tag_id)})
            if existing.revoked:
                return

            await self.persistence.save_tag(existing.revoke(self._clock()))
            self._invalidate_tag(tag_id)

        self.logger.info("Tag revoked", tag_id=str(tag_id), member_id=existing.member_id)

    async def set_tag_auth(self, raw_tag_id: RawTagId, auth_method: int, auth_data: bytes) -> Tag:
        """Require an additional check for an active tag. auth_data is opaque to the store."""
        tag_id = self.parse_tag_id(raw_tag_id)
        async with self._tag_locks.hold(tag_id):
            existing = await self._load_active_tag(tag_id)
            tag = existing.with_auth(auth_method, auth_data)
            await self.persistence.save_tag(tag)
            self._invalidate_tag(tag_id)

        self.logger.info("Tag authentication set", tag_id=str(tag_id), auth_method=auth_method)
        return tag

    async def clear_tag_auth(self, raw_tag_id: RawTagId) -> Tag:
        tag_id = self.parse_tag_id(raw_tag_id)
        async with self._tag_locks.hold(tag_id):
            existing = await self._load_active_tag(tag_id)
            if not existing.requires_authentication:
                return existing

            tag = existing.without_auth()
            await self.persistence.save_tag(tag)
            self._invalidate_tag(tag_id)

        self.logger.info("Tag authentication cleared", tag_id=str(tag_id))
        return tag

    async def _load_active_tag(self, tag_id: TagId) -> Tag:
        existing = await self.persistence.load_tag(tag_id)
        if existing is None:
            raise NotFoundError("Tag not found", details={"tag_id": str(tag_id)})
        if existing.revoked:
            raise ConflictError("Tag is revoked", details={"tag_id": str(tag_id)})
        return existing

    # Member mutations

    async def upsert_member(
        self,
        member_id: str,
        status: Union[MembershipStatus, str],
        source: Union[StatusSource, str],
        verified_at: Optional[datetime] = None,
        display_name: Optional[str] = None,
        only_if_newer: bool = False,
    ) -> Member:
        """Create or update a member's status.

        Authoritative updates without a timestamp are verified now; other
        sources keep the previous verification time. Timestamps without
        an offset are taken as UTC. With only_if_newer an
        update older than the stored authoritative verification is ignored.
        """
        status = MembershipStatus(status)
        source = StatusSource(source)
        if verified_at is not None:
            verified_at = as_utc(verified_at)

        async with self._member_locks.hold(member_id):
            now = self._clock()
            existing = await self.persistence.load_member(member_id)

            if verified_at is None:
                if source == StatusSource.AUTHORITATIVE:
                    verified_at = now
                elif existing is not None:
                    verified_at = existing.status_verified_at

            if (
                only_if_newer
                and existing is not None
                and existing.status_source == StatusSource.AUTHORITATIVE
                and existing.status_verified_at is not None
                and verified_at is not None
                and verified_at < existing.status_verified_at
            ):
                return existing

            member = Member(
                member_id=member_id,
                display_name=display_name if display_name is not None else (existing.display_name if existing else None),
                status=status,
                status_source=source,
                status_verified_at=verified_at,
                created_at=existing.created_at if existing else now
            )
            await self.persistence.save_member(member)
            self._invalidate_member(member_id)

        self.logger.info(
            "Member status updated",
            member_id=member_id,
            status=status.value,
            source=source.value
        )
        return member

    async def mark_member_unavailable(self, member_id: str) -> Member:
        """Keep the last known status and its age; flag it as a fallback."""
        async with self._member_locks.hold(member_id):
            existing = await self.persistence.load_member(member_id)
            if existing is None:
                raise NotFoundError("Member not found", details={"member_id": member_id})
            if existing.status_source == StatusSource.UNAVAILABLE_FALLBACK:
                return existing

            member = replace(existing, status_source=StatusSource.UNAVAILABLE_FALLBACK)
            await self.persistence.save_member(member)
            self._invalidate_member(member_id)

        self.logger.warning("Member status unverifiable, using fallback", member_id=member_id)
        return member

    def _invalidate_tag(self, tag_id: TagId):
        for listener in self._listeners:
            listener.invalidate_tag(tag_id)

    def _invalidate_member(self, member_id: str):
        for listener in self._listeners:
            listener.invalidate_member(member_id)
