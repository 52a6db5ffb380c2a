from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    data_dir: Path = Path("/app/data")
    db_url: str = "sqlite:////app/data/courier.db"
    # Empty means the filesystem content store under data_dir/content
    content_store_url: str = ""
    public_base_url: str = "http://localhost:8000"
    # Required by /api/admin endpoints; empty disables them
    admin_api_key: str = ""

    # Scan driver
    scheduler_enabled: bool = True
    scheduler_tick_seconds: int = 60
    scheduler_concurrency: int = 8
    io_timeout_seconds: float = 30.0
    lease_ttl_seconds: int = 120

    # Delivery retry settings
    max_delivery_attempts: int = 5
    retry_base_delay_seconds: int = 30
    retry_max_delay_seconds: int = 3600  # 1 hour cap

    # Event-trigger verification
    verification_window_hours: int = 72
    verification_max_rounds: int = 2
    verification_veto_mode: bool = False  # a single denial blocks quorum when True

    # Dead man's switch
    checkin_reminder_lead_hours: int = 24
    checkin_missed_threshold: int = 1
    checkin_grace_period_hours: int = 0  # slack after a due date before it counts as missed
    escalation_window_hours: int = 168  # 1 week
    posthumous_required_confirmations: int = 2
    posthumous_allow_legal_document: bool = False

    # Notifier
    notifier_max_attempts: int = 5
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""

    @model_validator(mode="after")
    def _check_timing(self) -> Settings:
        if self.lease_ttl_seconds <= 2 * self.io_timeout_seconds:
            # Content resolution and the delivery notice both run under one lease
            raise ValueError(
                "LEASE_TTL_SECONDS must exceed twice IO_TIMEOUT_SECONDS, "
                "otherwise a lease can be reclaimed while a delivery is in flight."
            )
        for name in (
            "checkin_missed_threshold",
            "posthumous_required_confirmations",
            "max_delivery_attempts",
            "verification_max_rounds",
            "notifier_max_attempts",
            "scheduler_concurrency",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name.upper()} must be at least 1")
        if self.checkin_grace_period_hours < 0:
            raise ValueError("CHECKIN_GRACE_PERIOD_HOURS must not be negative")
        return self

    @property
    def content_dir(self) -> Path:
        return self.data_dir / "content"


@lru_cache
def get_settings() -> Settings:
    return Settings()
