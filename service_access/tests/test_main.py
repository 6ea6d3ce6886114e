"""
Unit tests for the access service HTTP API.
"""

import pytest
from unittest.mock import AsyncMock, patch

import httpx
from fastapi.testclient import TestClient

from shared.config import AccessConfig
from shared.test_helpers import FakeClock, FakeMembershipSource, FakeTagAuthenticator, FailingAuditSink
from service_access.app.identity.models import MembershipStatus
from service_access.app.main import AccessService, create_app


TAG = "AA:BB:CC:DD"


class TestAccessService:
    """Test cases for AccessService."""

    @pytest.fixture
    def config(self):
        """Create configuration without external dependencies."""
        return AccessConfig(postgres_dsn=None, audit_log_path=None, membership_service_url=None)

    @pytest.fixture
    def clock(self):
        """Create a manual clock."""
        return FakeClock()

    @pytest.fixture
    def source(self, clock):
        """Create fake membership source."""
        return FakeMembershipSource(clock)

    @pytest.fixture
    def service(self, config, clock, source):
        """Create AccessService instance."""
        return AccessService(config, membership_source=source, clock=clock)

    @pytest.fixture
    def client(self, service):
        """Create test client with the service lifespan running."""
        with TestClient(service.app) as client:
            yield client

    def bind_active(self, client, tag_id=TAG, member_id="M1"):
        client.put(f"/tags/{tag_id}/binding", json={"member_id": member_id})
        client.put(f"/members/{member_id}/status", json={"status": "active"})

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "access"
        assert "resolution" in data["capabilities"]

    def test_health_check(self, client):
        """Test health check reports store and sync."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"store": "ok", "membership_sync": "ok"}

    def test_bind_and_get_tag(self, client):
        """Test binding a tag and reading it back."""
        response = client.put("/tags/aabbccdd/binding", json={"member_id": "M1"})

        assert response.status_code == 200
        assert response.json()["tag_id"] == TAG
        assert response.json()["member_id"] == "M1"

        response = client.get(f"/tags/{TAG}")
        assert response.status_code == 200
        assert response.json()["serial"]

    def test_bind_conflict(self, client):
        """Test binding a tag held by another member."""
        client.put(f"/tags/{TAG}/binding", json={"member_id": "M1"})

        response = client.put(f"/tags/{TAG}/binding", json={"member_id": "M2"})

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    def test_bind_requires_member(self, client):
        """Test request validation on the bind body."""
        response = client.put(f"/tags/{TAG}/binding", json={"member_id": ""})

        assert response.status_code == 422

    def test_get_unknown_tag(self, client):
        """Test unknown tags are not found."""
        response = client.get(f"/tags/{TAG}")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_malformed_tag_id(self, client):
        """Test malformed identifiers are rejected by the admin API."""
        response = client.put("/tags/not-hex/binding", json={"member_id": "M1"})

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_resolve_grant(self, client):
        """Test a presentation for an active member."""
        self.bind_active(client)

        response = client.post("/access/resolve", json={"tag_id": TAG, "door_id": "front"})

        assert response.status_code == 200
        assert response.json() == {"decision": "grant", "reason": "OK", "stale": False}

    def test_resolve_unknown_and_malformed(self, client):
        """Test the door endpoint always answers with a verdict."""
        for tag_id in ("DE:AD:BE:EF", "garbage"):
            response = client.post("/access/resolve", json={"tag_id": tag_id})

            assert response.status_code == 200
            assert response.json()["decision"] == "deny"
            assert response.json()["reason"] == "UNKNOWN_TAG"

    def test_resolve_rejects_bad_timeout(self, client):
        """Test the deadline override must be positive."""
        response = client.post("/access/resolve", json={"tag_id": TAG, "timeout_ms": 0})

        assert response.status_code == 422

    def test_revoke_is_idempotent(self, client):
        """Test revoking twice and the resulting verdict."""
        self.bind_active(client)

        first = client.delete(f"/tags/{TAG}")
        second = client.delete(f"/tags/{TAG}")

        assert first.status_code == 200
        assert first.json() == second.json() == {"tag_id": TAG, "revoked": True}
        response = client.post("/access/resolve", json={"tag_id": TAG})
        assert response.json()["reason"] == "TAG_REVOKED"

    def test_revoke_unknown_tag(self, client):
        """Test revoking a tag that was never issued."""
        assert client.delete(f"/tags/{TAG}").status_code == 404

    def test_reissue_history(self, client):
        """Test a revoked identifier bound again keeps its old issuance in history."""
        old = client.put(f"/tags/{TAG}/binding", json={"member_id": "M1"}).json()
        client.delete(f"/tags/{TAG}")

        new = client.put(f"/tags/{TAG}/binding", json={"member_id": "M2"}).json()
        history = client.get(f"/tags/{TAG}/history").json()

        assert new["serial"] != old["serial"]
        assert [h["serial"] for h in history] == [old["serial"]]
        assert history[0]["revoked"] is True

    def test_register_and_unbind(self, client):
        """Test enrolment and unbinding."""
        registered = client.put(f"/tags/{TAG}")
        assert registered.status_code == 200
        assert registered.json()["member_id"] is None

        client.put(f"/tags/{TAG}/binding", json={"member_id": "M1"})
        unbound = client.delete(f"/tags/{TAG}/binding")

        assert unbound.json()["member_id"] is None
        assert unbound.json()["serial"] == registered.json()["serial"]
        response = client.post("/access/resolve", json={"tag_id": TAG})
        assert response.json()["reason"] == "UNBOUND_TAG"

    def test_member_status_and_tags(self, client):
        """Test member status updates and tag listing."""
        self.bind_active(client)
        client.put("/tags/11:22:33:44/binding", json={"member_id": "M1"})

        member = client.get("/members/M1").json()
        tags = client.get("/members/M1/tags").json()

        assert member["status"] == "active"
        assert member["status_source"] == "authoritative"
        assert tags["total"] == 2
        assert {t["tag_id"] for t in tags["tags"]} == {TAG, "11:22:33:44"}

    def test_suspend_member(self, client):
        """Test an authoritative suspension is enforced at the door."""
        self.bind_active(client)
        client.put("/members/M1/status", json={"status": "suspended"})

        response = client.post("/access/resolve", json={"tag_id": TAG})

        assert response.json() == {"decision": "deny", "reason": "MEMBERSHIP_INACTIVE", "stale": False}

    def test_unknown_member(self, client):
        """Test unknown members are not found."""
        assert client.get("/members/nobody").status_code == 404
        assert client.get("/members/nobody/tags").status_code == 404

    def test_refresh_member(self, client, source):
        """Test on-request re-verification against the membership source."""
        client.put(f"/tags/{TAG}/binding", json={"member_id": "M1"})
        source.statuses["M1"] = MembershipStatus.EXPIRED

        response = client.post("/members/M1/refresh")

        assert response.status_code == 200
        assert response.json()["status"] == "expired"
        assert response.json()["status_source"] == "authoritative"

    def test_refresh_without_source(self, config, clock):
        """Test refresh is unavailable without a membership source."""
        with TestClient(create_app(config, clock=clock)) as client:
            client.put(f"/tags/{TAG}/binding", json={"member_id": "M1"})

            response = client.post("/members/M1/refresh")

        assert response.status_code == 503
        assert response.json()["code"] == "UNAVAILABLE"

    def test_audit_failures_side_channel(self, config, clock):
        """Test failed audit writes are visible while verdicts still flow."""
        with TestClient(create_app(config, audit_sink=FailingAuditSink(), clock=clock)) as client:
            self.bind_active(client)

            verdict = client.post("/access/resolve", json={"tag_id": TAG, "door_id": "front"})
            failures = client.get("/audit/failures", params={"limit": 10}).json()

        assert verdict.json()["decision"] == "grant"
        assert failures["total"] == 1
        assert failures["recent"][0]["sink"] == "failing"
        assert failures["recent"][0]["event"]["door_id"] == "front"

    def test_metrics_endpoint(self, client):
        """Test Prometheus exposition includes resolution counters."""
        client.post("/access/resolve", json={"tag_id": TAG})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "access_resolutions_total" in response.text

    def test_member_status_without_offset(self, client):
        """Test a verification time sent without an offset is taken as UTC."""
        client.put(f"/tags/{TAG}/binding", json={"member_id": "M1"})

        response = client.put(
            "/members/M1/status",
            json={"status": "active", "verified_at": "2026-01-05T08:59:00"}
        )
        verdict = client.post("/access/resolve", json={"tag_id": TAG})

        assert response.status_code == 200
        verified_at = response.json()["status_verified_at"]
        assert verified_at.startswith("2026-01-05T08:59:00")
        assert verified_at.endswith(("Z", "+00:00"))
        assert verdict.json() == {"decision": "grant", "reason": "OK", "stale": False}

    def test_unreachable_source_with_default_settings(self, clock):
        """Test a refused connection under the shipped timings grants within the grace window."""
        config = AccessConfig(
            postgres_dsn=None,
            audit_log_path=None,
            membership_service_url="http://membership.local"
        )
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = httpx.ConnectError("Connection refused")
            with TestClient(create_app(config, clock=clock)) as client:
                client.put("/tags/55:66:77:88/binding", json={"member_id": "M3"})
                client.put(
                    "/members/M3/status",
                    json={"status": "active", "verified_at": "2026-01-05T08:00:00+00:00"}
                )

                verdict = client.post("/access/resolve", json={"tag_id": "55:66:77:88"})
                member = client.get("/members/M3").json()

        assert verdict.json() == {"decision": "grant", "reason": "OK_STALE", "stale": True}
        assert member["status_source"] == "unavailable-fallback"
        assert member["status_verified_at"].startswith("2026-01-05T08:00:00")

    def test_tag_auth_routes(self, config, clock):
        """Test attaching auth data to a tag and presenting it with a response."""
        service = AccessService(config, tag_authenticator=FakeTagAuthenticator(), clock=clock)
        with TestClient(service.app) as client:
            self.bind_active(client)

            response = client.put(f"/tags/{TAG}/auth", json={"auth_method": 1, "auth_data": "31323334"})
            missing = client.post("/access/resolve", json={"tag_id": TAG})
            granted = client.post("/access/resolve", json={"tag_id": TAG, "auth_response": "1234"})
            cleared = client.delete(f"/tags/{TAG}/auth")

        assert response.status_code == 200
        assert response.json()["auth_method"] == 1
        assert response.json()["requires_authentication"] is True
        assert "auth_data" not in response.json()
        assert missing.json() == {"decision": "deny", "reason": "TAG_AUTH_FAILED", "stale": False}
        assert granted.json() == {"decision": "grant", "reason": "OK", "stale": False}
        assert cleared.json()["requires_authentication"] is False

    def test_tag_auth_validation(self, client):
        """Test auth data must be hex and the tag must exist and be active."""
        bad = client.put(f"/tags/{TAG}/auth", json={"auth_method": 1, "auth_data": "xyz"})
        unknown = client.put(f"/tags/{TAG}/auth", json={"auth_method": 1, "auth_data": "00"})
        client.put(f"/tags/{TAG}")
        client.delete(f"/tags/{TAG}")
        revoked = client.put(f"/tags/{TAG}/auth", json={"auth_method": 1, "auth_data": "00"})

        assert bad.status_code == 422
        assert unknown.status_code == 404
        assert revoked.status_code == 409

    def test_member_activity(self, client):
        """Test the last entry and last refusal are reported per member."""
        self.bind_active(client)
        client.post("/access/resolve", json={"tag_id": TAG, "door_id": "front"})
        client.put("/members/M1/status", json={"status": "suspended"})
        client.post("/access/resolve", json={"tag_id": TAG, "door_id": "front"})

        response = client.get("/members/M1/activity")

        assert response.status_code == 200
        activity = response.json()
        assert activity["last_enter_door"] == "front"
        assert activity["last_enter_at"] is not None
        assert activity["last_denied_reason"] == "MEMBERSHIP_INACTIVE"
        assert client.get("/members/nobody/activity").status_code == 404
