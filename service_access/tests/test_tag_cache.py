"""
Unit tests for the tag cache.
"""

import asyncio
import pytest
from datetime import timedelta

from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock
from service_access.app.cache.tag_cache import TagCache
from service_access.app.identity.models import StatusSource, TagId
from service_access.app.identity.persistence import InMemoryPersistence
from service_access.app.identity.store import IdentityStore


TAG = TagId.parse("04A23B1C")


class CountingPersistence(InMemoryPersistence):
    """In-memory persistence that counts binding reads."""

    def __init__(self):
        super().__init__()
        self.binding_reads = 0

    async def load_binding(self, tag_id):
        self.binding_reads += 1
        return await super().load_binding(tag_id)


class GatedPersistence(InMemoryPersistence):
    """Binding reads take their snapshot, then wait until released."""

    def __init__(self):
        super().__init__()
        self.gated = False
        self.reading = asyncio.Event()
        self.release = asyncio.Event()

    async def load_binding(self, tag_id):
        snapshot = await super().load_binding(tag_id)
        if self.gated:
            self.reading.set()
            await self.release.wait()
        return snapshot


class TestTagCache:
    """Test cases for TagCache."""

    @pytest.fixture
    def clock(self):
        """Create a manual clock."""
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        """Create a private metrics collector."""
        return MetricsCollector("cache-test")

    @pytest.fixture
    def persistence(self):
        """Create counting persistence."""
        return CountingPersistence()

    @pytest.fixture
    def store(self, persistence, clock):
        """Create IdentityStore instance."""
        return IdentityStore(persistence, clock=clock)

    @pytest.fixture
    def cache(self, store, clock, metrics):
        """Create TagCache instance."""
        return TagCache(
            store,
            local_freshness=timedelta(seconds=5),
            status_max_age=timedelta(minutes=15),
            clock=clock,
            metrics=metrics
        )

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, store, persistence, metrics):
        """Test a fresh entry is served without touching the store."""
        await store.bind_tag(TAG, "member-1")

        first = await cache.resolve(TAG)
        second = await cache.resolve(TAG)

        assert first.tag.member_id == "member-1"
        assert second.tag == first.tag
        assert persistence.binding_reads == 1
        assert metrics.sample("tag_cache_lookups_total", result="miss") == 1
        assert metrics.sample("tag_cache_lookups_total", result="hit") == 1

    @pytest.mark.asyncio
    async def test_unknown_tags_are_cached_too(self, cache, persistence):
        """Test negative lookups are cached like positive ones."""
        entry = await cache.resolve(TAG)
        await cache.resolve(TAG)

        assert entry.tag is None
        assert entry.member is None
        assert persistence.binding_reads == 1

    @pytest.mark.asyncio
    async def test_expired_entry_reloads(self, cache, store, persistence, clock):
        """Test entries past local freshness are reloaded."""
        await store.bind_tag(TAG, "member-1")
        await cache.resolve(TAG)

        clock.advance(seconds=6)
        await cache.resolve(TAG)

        assert persistence.binding_reads == 2

    @pytest.mark.asyncio
    async def test_tag_mutation_invalidates(self, cache, store):
        """Test a revoke is visible to the very next lookup."""
        await store.bind_tag(TAG, "member-1")
        await cache.resolve(TAG)

        await store.revoke_tag(TAG)
        entry = await cache.resolve(TAG)

        assert entry.tag.revoked is True

    @pytest.mark.asyncio
    async def test_member_mutation_invalidates_all_their_tags(self, cache, store):
        """Test a status change drops every cached tag of the member."""
        other = TagId.parse("04A23B1D")
        await store.bind_tag(TAG, "member-1")
        await store.bind_tag(other, "member-1")
        await cache.resolve(TAG)
        await cache.resolve(other)

        await store.upsert_member("member-1", "suspended", "authoritative")

        assert TAG not in cache
        assert other not in cache
        assert (await cache.resolve(other)).member.status.value == "suspended"

    @pytest.mark.asyncio
    async def test_old_authoritative_status_served_as_stale(self, cache, store, clock):
        """Test cached authoritative status past max age is presented cached-stale."""
        await store.bind_tag(TAG, "member-1")
        await store.upsert_member("member-1", "active", "authoritative")

        clock.advance(minutes=16)
        entry = await cache.resolve(TAG)

        assert entry.member.status_source == StatusSource.CACHED_STALE

    @pytest.mark.asyncio
    async def test_lru_eviction(self, store, clock):
        """Test the cache never holds more than max_entries."""
        cache = TagCache(store, max_entries=2, clock=clock)
        tags = [TagId.parse(f"04A23B{i:02X}") for i in range(3)]

        for tag_id in tags:
            await cache.resolve(tag_id)

        assert len(cache) == 2
        assert tags[0] not in cache
        assert tags[2] in cache

    @pytest.mark.asyncio
    async def test_clear(self, cache, store):
        """Test clearing the cache."""
        await store.bind_tag(TAG, "member-1")
        await cache.resolve(TAG)

        cache.clear()

        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_invalidation_during_reload_is_not_cached(self, clock):
        """Test a reload that raced a revoke cannot pin the pre-revoke snapshot."""
        persistence = GatedPersistence()
        store = IdentityStore(persistence, clock=clock)
        cache = TagCache(store, local_freshness=timedelta(minutes=10), clock=clock)
        await store.bind_tag(TAG, "member-1")

        persistence.gated = True
        reader = asyncio.create_task(cache.resolve(TAG))
        await persistence.reading.wait()
        persistence.gated = False

        await store.revoke_tag(TAG)
        persistence.release.set()
        raced = await reader

        assert raced.tag.revoked is False
        assert TAG not in cache
        assert (await cache.resolve(TAG)).tag.revoked is True
