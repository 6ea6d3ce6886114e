"""
Door access service for the Heimdall controller.
"""

from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Body, Query

from shared.base_service import BaseService
from shared.config import AccessConfig, get_config
from shared.errors import UnavailableError

from .identity.auth import TagAuthenticator
from .identity.models import (
    TagResponse, TagListResponse, MemberResponse, MemberActivityResponse,
    BindTagRequest, MemberStatusRequest, TagAuthRequest
)
from .identity.persistence import Persistence, InMemoryPersistence, PostgreSQLPersistence
from .identity.store import IdentityStore, utcnow
from .cache.tag_cache import TagCache
from .rules.evaluator import EligibilityEvaluator
from .rules.models import ResolveRequest, VerdictResponse
from .audit.log import AuditLog, AuditSink, MemoryAuditSink, JsonlAuditSink, PostgresAuditSink
from .membership.source import MembershipSource, HttpMembershipSource
from .membership.sync import MembershipSync
from .activity.tracker import ActivityTracker
from .resolver import AccessResolver


class AccessService(BaseService):
    """Access service wiring: one store handle injected into every component."""

    def __init__(
        self,
        config: Optional[AccessConfig] = None,
        *,
        persistence: Optional[Persistence] = None,
        audit_sink: Optional[AuditSink] = None,
        membership_source: Optional[MembershipSource] = None,
        tag_authenticator: Optional[TagAuthenticator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = config or get_config()
        super().__init__(config.service_name, config)

        if persistence is None:
            persistence = (
                PostgreSQLPersistence(config.postgres_dsn) if config.postgres_dsn else InMemoryPersistence()
            )
        if audit_sink is None:
            audit_sink = self._default_audit_sink(config)
        if membership_source is None and config.membership_service_url:
            membership_source = HttpMembershipSource(
                config.membership_service_url,
                timeout=config.membership_timeout_seconds
            )

        self.store = IdentityStore(persistence, clock=clock, tag_id_lengths=config.tag_id_lengths)
        self.cache = TagCache(
            self.store,
            local_freshness=config.local_freshness,
            status_max_age=config.status_max_age,
            max_entries=config.cache_max_entries,
            clock=clock,
            metrics=self.metrics
        )
        self.evaluator = EligibilityEvaluator(config.grace_window)
        self.activity = ActivityTracker(
            persistence,
            cooldown=config.failed_auth_cooldown,
            max_entries=config.cache_max_entries
        )
        self.audit = AuditLog(audit_sink, metrics=self.metrics)
        self.sync = None
        if membership_source is not None:
            self.sync = MembershipSync(
                self.store,
                membership_source,
                refresh_interval=config.refresh_interval_seconds,
                fetch_timeout=config.membership_timeout_seconds,
                concurrency=config.refresh_concurrency,
                on_demand_min_interval=config.on_demand_min_interval,
                clock=clock,
                metrics=self.metrics
            )
        self.resolver = AccessResolver(
            self.store,
            self.cache,
            self.evaluator,
            self.audit,
            sync=self.sync,
            activity=self.activity,
            authenticator=tag_authenticator,
            timeout=config.resolve_timeout,
            audit_timeout=config.audit_timeout,
            verify_on_demand=config.on_demand_verify,
            clock=clock,
            metrics=self.metrics
        )

        self._setup_access_routes()

    @staticmethod
    def _default_audit_sink(config: AccessConfig) -> AuditSink:
        if config.audit_log_path:
            return JsonlAuditSink(config.audit_log_path)
        if config.postgres_dsn:
            return PostgresAuditSink(config.postgres_dsn)
        return MemoryAuditSink()

    def _setup_access_routes(self):
        """Set up resolution and administrative routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": self.service_name,
                "message": "Heimdall - Door Access Service",
                "version": "1.0.0",
                "capabilities": ["resolution", "identity_store", "membership_sync", "activity", "audit"]
            }

        @self.app.post("/access/resolve", response_model=VerdictResponse)
        async def resolve_access(request: ResolveRequest):
            """Resolve a tag presentation to a verdict. Always answers, never errors."""
            timeout = request.timeout_ms / 1000.0 if request.timeout_ms else None
            verdict = await self.resolver.resolve_access(
                request.tag_id,
                door_id=request.door_id,
                timeout=timeout,
                auth_response=request.auth_response
            )
            return VerdictResponse.from_verdict(verdict)

        @self.app.get("/tags/{tag_id}", response_model=TagResponse)
        async def get_tag(tag_id: str):
            return TagResponse.from_tag(await self.store.lookup_tag(tag_id))

        @self.app.put("/tags/{tag_id}", response_model=TagResponse)
        async def register_tag(tag_id: str):
            """Enrol an unbound tag."""
            return TagResponse.from_tag(await self.store.register_tag(tag_id))

        @self.app.get("/tags/{tag_id}/history", response_model=List[TagResponse])
        async def get_tag_history(tag_id: str):
            return [TagResponse.from_tag(tag) for tag in await self.store.tag_history(tag_id)]

        @self.app.put("/tags/{tag_id}/binding", response_model=TagResponse)
        async def bind_tag(tag_id: str, request: BindTagRequest = Body(...)):
            return TagResponse.from_tag(await self.store.bind_tag(tag_id, request.member_id))

        @self.app.delete("/tags/{tag_id}/binding", response_model=TagResponse)
        async def unbind_tag(tag_id: str):
            return TagResponse.from_tag(await self.store.unbind_tag(tag_id))

        @self.app.put("/tags/{tag_id}/auth", response_model=TagResponse)
        async def set_tag_auth(tag_id: str, request: TagAuthRequest):
            """Require an additional check (PIN, challenge) when this tag is presented."""
            tag = await self.store.set_tag_auth(tag_id, request.auth_method, bytes.fromhex(request.auth_data))
            return TagResponse.from_tag(tag)

        @self.app.delete("/tags/{tag_id}/auth", response_model=TagResponse)
        async def clear_tag_auth(tag_id: str):
            return TagResponse.from_tag(await self.store.clear_tag_auth(tag_id))

        @self.app.delete("/tags/{tag_id}")
        async def revoke_tag(tag_id: str):
            """Revoke a tag. Repeating the call is harmless."""
            await self.store.revoke_tag(tag_id)
            tag = await self.store.lookup_tag(tag_id)
            return {"tag_id": str(tag.tag_id), "revoked": tag.revoked}

        @self.app.get("/members/{member_id}", response_model=MemberResponse)
        async def get_member(member_id: str):
            return MemberResponse.from_member(await self.store.get_member(member_id))

        @self.app.put("/members/{member_id}/status", response_model=MemberResponse)
        async def set_member_status(member_id: str, request: MemberStatusRequest):
            member = await self.store.upsert_member(
                member_id,
                request.status,
                request.source,
                verified_at=request.verified_at,
                display_name=request.display_name
            )
            return MemberResponse.from_member(member)

        @self.app.get("/members/{member_id}/tags", response_model=TagListResponse)
        async def list_member_tags(member_id: str):
            await self.store.get_member(member_id)
            tags = sorted(
                await self.store.list_active_tags_for_member(member_id),
                key=lambda t: (t.issued_at is None, t.issued_at, t.tag_id.value)
            )
            return TagListResponse(
                member_id=member_id,
                tags=[TagResponse.from_tag(tag) for tag in tags],
                total=len(tags)
            )

        @self.app.get("/members/{member_id}/activity", response_model=MemberActivityResponse)
        async def get_member_activity(member_id: str):
            """Last entry and last refused attempt."""
            await self.store.get_member(member_id)
            return MemberActivityResponse.from_activity(await self.activity.get(member_id))

        @self.app.post("/members/{member_id}/refresh", response_model=MemberResponse)
        async def refresh_member(member_id: str):
            """Re-verify a member against the membership-truth source now."""
            if self.sync is None:
                raise UnavailableError("membership", "no membership source configured")
            await self.store.get_member(member_id)
            return MemberResponse.from_member(await self.sync.refresh_member(member_id))

        @self.app.get("/audit/failures")
        async def audit_failures(limit: int = Query(50, ge=1, le=1000, description="Most recent failures to return")):
            """Side channel for audit writes that failed."""
            recent = list(self.audit.failures)[-limit:]
            return {
                "total": self.audit.failure_count,
                "recent": [
                    {"sink": f.sink, "error": f.error, "event": f.event.to_dict()}
                    for f in recent
                ]
            }

    async def _check_dependencies(self):
        """Check access service dependencies."""
        dependencies = {}

        try:
            dependencies["store"] = "ok" if await self.store.persistence.health_check() else "error"
        except Exception:
            dependencies["store"] = "error"

        if self.sync is not None:
            dependencies["membership_sync"] = "ok" if self.sync.running else "stopped"

        return dependencies

    async def start(self):
        """Start access service components."""
        await self.store.start()
        await self.audit.start()
        if self.sync is not None:
            await self.sync.start()

        self.logger.info("Access service started")

    async def stop(self):
        """Stop access service components."""
        if self.sync is not None:
            await self.sync.stop()
        await self.audit.stop()
        await self.store.stop()

        self.logger.info("Access service stopped")


def create_app(config: Optional[AccessConfig] = None, **kwargs):
    """Create access service application."""
    service = AccessService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = AccessService()
    service.run()
