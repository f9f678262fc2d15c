"""Council Portal — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class CouncilSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ── PostgreSQL (document store) ────────────────────────────
    postgres_user: str = "council"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "council_portal"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Elections ──────────────────────────────────────────────
    election_min_duration_minutes: int = 60
    election_sweep_interval_seconds: int = 60
    upcoming_window_hours: int = 24
    ending_soon_window_hours: int = 2

    # ── Optimistic commits ─────────────────────────────────────
    commit_attempts: int = 30

    # ── Accounts ───────────────────────────────────────────────
    max_login_attempts: int = 5
    lock_duration_minutes: int = 30
    min_password_length: int = 8

    # ── Access tokens ──────────────────────────────────────────
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # ── Dashboard ──────────────────────────────────────────────
    dashboard_host: str = "0.0.0.0"
    dashboard_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = CouncilSettings()
