"""
Persistence backends for the identity store.

Backends only move snapshots in and out of storage. Locking, conflict
detection and cache invalidation live in IdentityStore.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import asyncpg

from shared.logging import get_logger
from shared.errors import StorageError
from .models import TagId, Tag, Member, MemberActivity, MembershipStatus, StatusSource


class Persistence(ABC):
    """Storage contract used by IdentityStore."""

    async def start(self):
        """Open connections and create schema."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def load_tag(self, tag_id: TagId) -> Optional[Tag]:
        ...

    @abstractmethod
    async def load_member(self, member_id: str) -> Optional[Member]:
        ...

    @abstractmethod
    async def load_binding(self, tag_id: TagId) -> Tuple[Optional[Tag], Optional[Member]]:
        """Tag and its bound member read as one snapshot."""

    @abstractmethod
    async def save_tag(self, tag: Tag, member: Optional[Member] = None, archived: Optional[Tag] = None):
        """Atomically write a tag, optionally with a new member and an archived predecessor."""

    @abstractmethod
    async def save_member(self, member: Member):
        ...

    @abstractmethod
    async def load_tags_for_member(self, member_id: str) -> List[Tag]:
        ...

    @abstractmethod
    async def load_member_ids(self) -> List[str]:
        ...

    @abstractmethod
    async def load_tag_history(self, tag_id: TagId) -> List[Tag]:
        """Earlier, revoked issuances of an identifier, oldest first."""

    @abstractmethod
    async def load_activity(self, member_id: str) -> Optional[MemberActivity]:
        ...

    @abstractmethod
    async def save_activity(self, activity: MemberActivity):
        ...


class InMemoryPersistence(Persistence):
    """Dictionary-backed store for tests and hardware-free development.

    Every write replaces whole immutable snapshots between two awaits, so
    readers never observe a partial record.
    """

    def __init__(self):
        self.tags: Dict[TagId, Tag] = {}
        self.members: Dict[str, Member] = {}
        self.history: Dict[TagId, List[Tag]] = {}
        self.activity: Dict[str, MemberActivity] = {}

    async def load_tag(self, tag_id: TagId) -> Optional[Tag]:
        return self.tags.get(tag_id)

    async def load_member(self, member_id: str) -> Optional[Member]:
        return self.members.get(member_id)

    async def load_binding(self, tag_id: TagId) -> Tuple[Optional[Tag], Optional[Member]]:
        tag = self.tags.get(tag_id)
        if tag is None or tag.member_id is None:
            return tag, None
        return tag, self.members.get(tag.member_id)

    async def save_tag(self, tag: Tag, member: Optional[Member] = None, archived: Optional[Tag] = None):
        if archived is not None:
            self.history.setdefault(archived.tag_id, []).append(archived)
        if member is not None:
            self.members[member.member_id] = member
        self.tags[tag.tag_id] = tag

    async def save_member(self, member: Member):
        self.members[member.member_id] = member

    async def load_tags_for_member(self, member_id: str) -> List[Tag]:
        return [tag for tag in self.tags.values() if tag.member_id == member_id]

    async def load_member_ids(self) -> List[str]:
        return list(self.members)

    async def load_tag_history(self, tag_id: TagId) -> List[Tag]:
        return list(self.history.get(tag_id, []))

    async def load_activity(self, member_id: str) -> Optional[MemberActivity]:
        return self.activity.get(member_id)

    async def save_activity(self, activity: MemberActivity):
        self.activity[activity.member_id] = activity


class PostgreSQLPersistence(Persistence):
    """PostgreSQL persistence layer for tags and members."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("access.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=5
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise StorageError("PostgreSQL persistence failed to start", details={"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS members (
                    member_id VARCHAR(255) PRIMARY KEY,
                    display_name TEXT,
                    status VARCHAR(20) NOT NULL,
                    status_source VARCHAR(32) NOT NULL,
                    status_verified_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    tag_id BYTEA PRIMARY KEY,
                    serial UUID NOT NULL UNIQUE,
                    member_id VARCHAR(255) REFERENCES members(member_id),
                    issued_at TIMESTAMP WITH TIME ZONE,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    revoked_at TIMESTAMP WITH TIME ZONE,
                    auth_method INTEGER,
                    auth_data BYTEA
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS tag_history (
                    serial UUID PRIMARY KEY,
                    tag_id BYTEA NOT NULL,
                    member_id VARCHAR(255),
                    issued_at TIMESTAMP WITH TIME ZONE,
                    revoked_at TIMESTAMP WITH TIME ZONE,
                    archived_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS member_activity (
                    member_id VARCHAR(255) PRIMARY KEY REFERENCES members(member_id),
                    last_enter_at TIMESTAMP WITH TIME ZONE,
                    last_enter_door VARCHAR(255),
                    last_denied_at TIMESTAMP WITH TIME ZONE,
                    last_denied_reason VARCHAR(32)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tags_member ON tags(member_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tag_history_tag ON tag_history(tag_id);
            """)

    async def load_tag(self, tag_id: TagId) -> Optional[Tag]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT * FROM tags WHERE tag_id = $1
                """, tag_id.value)
        except Exception as e:
            raise self._storage_error("load tag", e, tag_id=str(tag_id))
        return self._row_to_tag(row) if row else None

    async def load_member(self, member_id: str) -> Optional[Member]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT * FROM members WHERE member_id = $1
                """, member_id)
        except Exception as e:
            raise self._storage_error("load member", e, member_id=member_id)
        return self._row_to_member(row) if row else None

    async def load_binding(self, tag_id: TagId) -> Tuple[Optional[Tag], Optional[Member]]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT t.tag_id, t.serial, t.member_id, t.issued_at, t.revoked, t.revoked_at,
                           t.auth_method, t.auth_data,
                           m.display_name, m.status, m.status_source, m.status_verified_at, m.created_at,
                           m.member_id AS bound_member_id
                    FROM tags t
                    LEFT JOIN members m ON t.member_id = m.member_id
                    WHERE t.tag_id = $1
                """, tag_id.value)
        except Exception as e:
            raise self._storage_error("load binding", e, tag_id=str(tag_id))

        if not row:
            return None, None
        tag = self._row_to_tag(row)
        member = self._row_to_member(row) if row['bound_member_id'] is not None else None
        return tag, member

    async def save_tag(self, tag: Tag, member: Optional[Member] = None, archived: Optional[Tag] = None):
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if member is not None:
                        await self._upsert_member(conn, member)
                    if archived is not None:
                        await conn.execute("""
                            INSERT INTO tag_history (serial, tag_id, member_id, issued_at, revoked_at)
                            VALUES ($1, $2, $3, $4, $5)
                        """, archived.serial, archived.tag_id.value, archived.member_id,
                            archived.issued_at, archived.revoked_at)
                    await conn.execute("""
                        INSERT INTO tags (tag_id, serial, member_id, issued_at, revoked, revoked_at, auth_method, auth_data)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        ON CONFLICT (tag_id) DO UPDATE SET
                            serial = EXCLUDED.serial,
                            member_id = EXCLUDED.member_id,
                            issued_at = EXCLUDED.issued_at,
                            revoked = EXCLUDED.revoked,
                            revoked_at = EXCLUDED.revoked_at,
                            auth_method = EXCLUDED.auth_method,
                            auth_data = EXCLUDED.auth_data
                    """, tag.tag_id.value, tag.serial, tag.member_id, tag.issued_at,
                        tag.revoked, tag.revoked_at, tag.auth_method, tag.auth_data)
        except Exception as e:
            raise self._storage_error("save tag", e, tag_id=str(tag.tag_id))

        self.logger.debug("Tag saved", tag_id=str(tag.tag_id), serial=tag.serial)

    async def save_member(self, member: Member):
        try:
            async with self.pool.acquire() as conn:
                await self._upsert_member(conn, member)
        except Exception as e:
            raise self._storage_error("save member", e, member_id=member.member_id)

    async def _upsert_member(self, conn, member: Member):
        await conn.execute("""
            INSERT INTO members (member_id, display_name, status, status_source, status_verified_at, created_at)
            VALUES ($1, $2, $3, $4, $5, COALESCE($6, NOW()))
            ON CONFLICT (member_id) DO UPDATE SET
                display_name = EXCLUDED.display_name,
                status = EXCLUDED.status,
                status_source = EXCLUDED.status_source,
                status_verified_at = EXCLUDED.status_verified_at
        """, member.member_id, member.display_name, member.status.value,
            member.status_source.value, member.status_verified_at, member.created_at)

    async def load_tags_for_member(self, member_id: str) -> List[Tag]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM tags WHERE member_id = $1 ORDER BY issued_at ASC
                """, member_id)
        except Exception as e:
            raise self._storage_error("load tags for member", e, member_id=member_id)
        return [self._row_to_tag(row) for row in rows]

    async def load_member_ids(self) -> List[str]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("SELECT member_id FROM members ORDER BY member_id")
        except Exception as e:
            raise self._storage_error("load member ids", e)
        return [row['member_id'] for row in rows]

    async def load_tag_history(self, tag_id: TagId) -> List[Tag]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT serial, tag_id, member_id, issued_at, revoked_at
                    FROM tag_history WHERE tag_id = $1 ORDER BY archived_at ASC
                """, tag_id.value)
        except Exception as e:
            raise self._storage_error("load tag history", e, tag_id=str(tag_id))
        return [
            Tag(
                tag_id=TagId(bytes(row['tag_id'])),
                serial=str(row['serial']),
                member_id=row['member_id'],
                issued_at=row['issued_at'],
                revoked=True,
                revoked_at=row['revoked_at']
            )
            for row in rows
        ]

    async def load_activity(self, member_id: str) -> Optional[MemberActivity]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT * FROM member_activity WHERE member_id = $1
                """, member_id)
        except Exception as e:
            raise self._storage_error("load activity", e, member_id=member_id)
        if not row:
            return None
        return MemberActivity(
            member_id=row['member_id'],
            last_enter_at=row['last_enter_at'],
            last_enter_door=row['last_enter_door'],
            last_denied_at=row['last_denied_at'],
            last_denied_reason=row['last_denied_reason']
        )

    async def save_activity(self, activity: MemberActivity):
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO member_activity
                        (member_id, last_enter_at, last_enter_door, last_denied_at, last_denied_reason)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (member_id) DO UPDATE SET
                        last_enter_at = EXCLUDED.last_enter_at,
                        last_enter_door = EXCLUDED.last_enter_door,
                        last_denied_at = EXCLUDED.last_denied_at,
                        last_denied_reason = EXCLUDED.last_denied_reason
                """, activity.member_id, activity.last_enter_at, activity.last_enter_door,
                    activity.last_denied_at, activity.last_denied_reason)
        except Exception as e:
            raise self._storage_error("save activity", e, member_id=activity.member_id)

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    def _storage_error(self, operation: str, error: Exception, **details) -> StorageError:
        self.logger.error("Storage operation failed", operation=operation, error=str(error), **details)
        return StorageError(f"Failed to {operation}", details={"error": str(error), **details})

    @staticmethod
    def _row_to_tag(row) -> Tag:
        """Convert database row to Tag."""
        return Tag(
            tag_id=TagId(bytes(row['tag_id'])),
            serial=str(row['serial']),
            member_id=row['member_id'],
            issued_at=row['issued_at'],
            revoked=row['revoked'],
            revoked_at=row['revoked_at'],
            auth_method=row['auth_method'],
            auth_data=bytes(row['auth_data']) if row['auth_data'] is not None else None
        )

    @staticmethod
    def _row_to_member(row) -> Member:
        """Convert database row to Member."""
        return Member(
            member_id=row['member_id'],
            display_name=row['display_name'],
            status=MembershipStatus(row['status']),
            status_source=StatusSource(row['status_source']),
            status_verified_at=row['status_verified_at'],
            created_at=row['created_at']
        )
