"""
Mock membership service providing member status endpoints.
"""

from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from shared.logging import get_logger


class MemberStatusUpdate(BaseModel):
    """Status to report for a member."""
    status: str
    as_of: Optional[datetime] = None


class MockMembershipServer:
    """Mock membership/dues service implementation."""

    def __init__(self, port: int = 8090):
        self.port = port
        self.logger = get_logger("mock.membership")
        self.app = FastAPI(title="Mock Membership", version="1.0.0")

        # Mock members
        self.members: Dict[str, Dict[str, str]] = {
            "M1": {"status": "active"},
            "M2": {"status": "suspended"},
            "M3": {"status": "expired"}
        }
        self.outage = False
        self.requests = 0

        self._setup_routes()

    def _setup_routes(self):
        """Set up mock membership routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "mock-membership",
                "message": "Mock membership service for Heimdall",
                "version": "1.0.0",
                "members": len(self.members)
            }

        @self.app.get("/members/{member_id}/status")
        async def member_status(member_id: str):
            """Current status of one member."""
            self.requests += 1
            if self.outage:
                raise HTTPException(status_code=503, detail="Membership service in maintenance")

            member = self.members.get(member_id)
            if member is None:
                raise HTTPException(status_code=404, detail="Member not found")

            return {
                "status": member["status"],
                "as_of": member.get("as_of") or datetime.now(timezone.utc).isoformat()
            }

        @self.app.put("/members/{member_id}/status")
        async def set_member_status(member_id: str, update: MemberStatusUpdate):
            """Set the status reported for a member."""
            self.members[member_id] = {"status": update.status}
            if update.as_of is not None:
                self.members[member_id]["as_of"] = update.as_of.isoformat()
            self.logger.info("Mock member status set", member_id=member_id, status=update.status)
            return {"member_id": member_id, **self.members[member_id]}

        @self.app.post("/admin/outage")
        async def set_outage(enabled: bool = True):
            """Simulate the membership service being down."""
            self.outage = enabled
            self.logger.info("Mock outage toggled", enabled=enabled)
            return {"outage": self.outage}


def create_app(server: Optional[MockMembershipServer] = None):
    """Create mock membership application."""
    server = server or MockMembershipServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8090)
