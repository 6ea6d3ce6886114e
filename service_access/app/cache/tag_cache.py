"""
In-process tag cache for the access service.
"""

from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set, TYPE_CHECKING

from shared.logging import get_logger
from ..identity.models import TagId, Tag, Member
from ..identity.store import IdentityStore, utcnow

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class CacheEntry:
    """Tag and member snapshots plus when they were read from the store."""
    tag: Optional[Tag]
    member: Optional[Member]
    fetched_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at

    def seen_at(self, now: datetime, status_max_age: timedelta) -> "CacheEntry":
        """Copy with an over-age authoritative status marked cached-stale."""
        if self.member is None:
            return self
        return replace(self, member=self.member.as_seen_at(now, status_max_age))


class TagCache:
    """Bounded LRU projection of the identity store keyed by tag identifier.

    Entries younger than the local freshness window are served from memory;
    anything older is reloaded from the store. The store invalidates entries
    on every mutation. A generation counter is bumped by each invalidation,
    and a reload only enters the cache if no invalidation happened while it
    was reading; the reload's caller still gets its snapshot.
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        local_freshness: timedelta = timedelta(seconds=5),
        status_max_age: timedelta = timedelta(minutes=15),
        max_entries: int = 4096,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.local_freshness = local_freshness
        self.status_max_age = status_max_age
        self.max_entries = max(1, max_entries)
        self.metrics = metrics
        self.logger = get_logger("access.cache.tags")
        self._clock = clock
        self._entries: "OrderedDict[TagId, CacheEntry]" = OrderedDict()
        self._by_member: Dict[str, Set[TagId]] = {}
        self._generation = 0

        store.subscribe(self)

    async def resolve(self, tag_id: TagId) -> CacheEntry:
        """Return the tag/member pair for a tag, reloading when absent or not fresh."""
        now = self._clock()
        entry = self._entries.get(tag_id)
        if entry is not None and entry.age(now) <= self.local_freshness:
            self._entries.move_to_end(tag_id)
            self._count("hit")
            return entry.seen_at(now, self.status_max_age)

        self._count("miss" if entry is None else "expired")
        generation = self._generation
        tag, member = await self.store.lookup(tag_id)
        fetched_at = self._clock()
        loaded = CacheEntry(tag=tag, member=member, fetched_at=fetched_at)

        if generation == self._generation:
            self._put(tag_id, loaded)
        else:
            self.logger.debug("Reload raced an invalidation, not cached", tag_id=str(tag_id))

        return loaded.seen_at(fetched_at, self.status_max_age)

    def invalidate_tag(self, tag_id: TagId) -> None:
        self._generation += 1
        self._pop(tag_id)

    def invalidate_member(self, member_id: str) -> None:
        self._generation += 1
        for tag_id in list(self._by_member.get(member_id, ())):
            self._pop(tag_id)

    def clear(self):
        self._generation += 1
        self._entries.clear()
        self._by_member.clear()
        self._update_size()

    def __contains__(self, tag_id: TagId) -> bool:
        return tag_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _put(self, tag_id: TagId, entry: CacheEntry):
        self._pop(tag_id)
        self._entries[tag_id] = entry
        if entry.member is not None:
            self._by_member.setdefault(entry.member.member_id, set()).add(tag_id)

        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            self._pop(oldest)
        self._update_size()

    def _pop(self, tag_id: TagId):
        entry = self._entries.pop(tag_id, None)
        if entry is not None and entry.member is not None:
            tag_ids = self._by_member.get(entry.member.member_id)
            if tag_ids is not None:
                tag_ids.discard(tag_id)
                if not tag_ids:
                    del self._by_member[entry.member.member_id]
        self._update_size()

    def _count(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("tag_cache_lookups_total", result=result)

    def _update_size(self):
        if self.metrics:
            self.metrics.set_gauge("tag_cache_entries", len(self._entries))
