"""
Shared configuration management for the Heimdall door access core.
"""

from datetime import timedelta
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AccessConfig(BaseSettings):
    """Access core configuration, read from HEIMDALL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HEIMDALL_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_name: str = Field(default="access")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8020)

    # Persistence (no DSN means the in-memory store)
    postgres_dsn: Optional[str] = Field(default=None)
    audit_log_path: Optional[str] = Field(default=None)

    # Membership-truth source
    membership_service_url: Optional[str] = Field(default=None)
    membership_timeout_seconds: float = Field(default=2.0, gt=0)

    # Eligibility policy
    grace_window_hours: float = Field(default=24.0, ge=0)
    status_max_age_seconds: float = Field(default=900.0, ge=0)

    # Cache & sync
    local_freshness_seconds: float = Field(default=5.0, ge=0)
    cache_max_entries: int = Field(default=4096, ge=1)
    refresh_interval_seconds: float = Field(default=300.0, gt=0)
    refresh_concurrency: int = Field(default=5, ge=1)
    on_demand_verify: bool = Field(default=True)
    on_demand_min_interval_seconds: float = Field(default=30.0, ge=0)

    # Wait imposed after a failed tag authentication (0 disables)
    failed_auth_cooldown_seconds: float = Field(default=0.0, ge=0)

    # Resolution deadlines
    resolve_timeout_ms: int = Field(default=250, gt=0)
    audit_timeout_ms: int = Field(default=100, gt=0)

    # Tag identifiers (NFC UID sizes)
    tag_id_lengths: List[int] = Field(default_factory=lambda: [4, 7, 10])

    @property
    def grace_window(self) -> timedelta:
        return timedelta(hours=self.grace_window_hours)

    @property
    def status_max_age(self) -> timedelta:
        return timedelta(seconds=self.status_max_age_seconds)

    @property
    def local_freshness(self) -> timedelta:
        return timedelta(seconds=self.local_freshness_seconds)

    @property
    def on_demand_min_interval(self) -> timedelta:
        return timedelta(seconds=self.on_demand_min_interval_seconds)

    @property
    def failed_auth_cooldown(self) -> timedelta:
        return timedelta(seconds=self.failed_auth_cooldown_seconds)

    @property
    def resolve_timeout(self) -> float:
        return self.resolve_timeout_ms / 1000.0

    @property
    def audit_timeout(self) -> float:
        return self.audit_timeout_ms / 1000.0


def get_config(**overrides) -> AccessConfig:
    """Get configuration, with explicit overrides taking precedence over the environment."""
    return AccessConfig(**overrides)
