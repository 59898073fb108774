"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("simplecal.config")

CLAIM_BACKENDS = {"memory", "redis"}


class Settings(BaseSettings):
    # Rule Store
    database_url: str = "sqlite:///./simplecal.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Slot claims
    claim_backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    claim_ttl_seconds: int = 30
    claim_sweep_interval_seconds: float = 5.0

    # Slot resolution
    max_range_days: int = 62
    default_timezone: str = "UTC"

    # Organizer-side endpoints
    organizer_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        if self.claim_ttl_seconds <= 0:
            raise ValueError("CLAIM_TTL_SECONDS must be a positive number of seconds.")

        if self.claim_backend not in CLAIM_BACKENDS:
            raise ValueError(
                f"CLAIM_BACKEND={self.claim_backend!r} is not supported. "
                f"Use one of: {', '.join(sorted(CLAIM_BACKENDS))}."
            )

        if self.claim_backend == "redis" and not self.redis_url:
            raise ValueError("CLAIM_BACKEND=redis requires REDIS_URL.")

        if self.claim_backend == "memory":
            warnings.append(
                "Slot claims are held in process memory. Run a single worker "
                "or set CLAIM_BACKEND=redis for multi-instance deployments."
            )

        if self.database_url.startswith("sqlite") and not self.debug:
            warnings.append("DATABASE_URL points at SQLite; use PostgreSQL in production.")

        if not self.organizer_api_key:
            if self.debug:
                warnings.append(
                    "ORGANIZER_API_KEY not set. Organizer APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ORGANIZER_API_KEY not set. Organizer APIs are locked in production."
                )

        if self.claim_sweep_interval_seconds <= 0:
            warnings.append(
                "Claim sweep disabled; expired claims are only cleared on next access."
            )

        return warnings


settings = Settings()
