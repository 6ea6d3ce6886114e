"""
Membership-truth source client for the access service.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

from shared.logging import get_logger
from shared.errors import UnavailableError
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from shared.retry import retry_on_exception, RetryConfig, RetryError
from ..identity.models import MembershipStatus, as_utc
from ..identity.store import utcnow


@dataclass(frozen=True)
class MembershipReport:
    """Status reported by the membership-truth source."""
    status: MembershipStatus
    as_of: datetime


class MembershipSource(Protocol):
    """Anything that can answer "what is this member's status right now".

    Implementations raise UnavailableError when the answer cannot be had.
    With retry=False a single attempt is made, for callers that cannot
    afford backoff.
    """

    async def fetch_status(self, member_id: str, retry: bool = True) -> MembershipReport:
        ...


class MembershipStatusPayload(BaseModel):
    """Wire format of GET /members/{member_id}/status."""
    status: MembershipStatus
    as_of: Optional[datetime] = None


class HttpMembershipSource:
    """Client for the membership/dues service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.0,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("access.membership.http")
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            name="membership_service"
        )
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.2,
            max_delay=2.0,
            exponential_base=2.0,
            jitter=True
        )
        self._fetch_with_retry = retry_on_exception(
            (httpx.TransportError, httpx.HTTPStatusError),
            config=self.retry_config
        )(self._fetch_once)

    async def fetch_status(self, member_id: str, retry: bool = True) -> MembershipReport:
        """Fetch a member's status, raising UnavailableError on any failure."""
        fetch = self._fetch_with_retry if retry else self._fetch_once
        try:
            return await self.circuit_breaker.call(fetch, member_id)

        except CircuitBreakerOpenError as e:
            raise UnavailableError("membership", "circuit open", details={"member_id": member_id}) from e
        except RetryError as e:
            self.logger.warning(
                "Membership service unreachable",
                member_id=member_id,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            raise UnavailableError(
                "membership",
                "unreachable",
                details={"member_id": member_id, "error": str(e.last_exception)}
            ) from e
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            self.logger.warning("Membership service unreachable", member_id=member_id, attempts=1, error=str(e))
            raise UnavailableError(
                "membership",
                "unreachable",
                details={"member_id": member_id, "error": str(e)}
            ) from e
        except ValueError as e:
            self.logger.error("Malformed membership response", member_id=member_id, error=str(e))
            raise UnavailableError("membership", "malformed response", details={"member_id": member_id}) from e

    async def _fetch_once(self, member_id: str) -> MembershipReport:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(f"{self.base_url}/members/{member_id}/status")

        # The source does not know this member: that is an answer, not an outage
        if response.status_code == 404:
            return MembershipReport(status=MembershipStatus.UNKNOWN, as_of=utcnow())

        response.raise_for_status()
        payload = MembershipStatusPayload.model_validate(response.json())
        return MembershipReport(status=payload.status, as_of=as_utc(payload.as_of) if payload.as_of else utcnow())
