"""
Runtime settings for lienflow, read from the environment and .env by
pydantic-settings.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VERSION = "1.0.0"


class Settings(BaseSettings):
    """Environment-driven settings; variables win over values in .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -- application --
    app_name: str = Field(
        default="Lienflow", description="Application name for logging and identification"
    )
    debug: bool = Field(
        default=False, description="Enable debug mode (verbose logging, headful browser)"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    # -- api security --
    api_key: str = Field(
        default="",
        description="API Key for the scrape trigger (min 32 chars when the API is served)",
    )

    # -- database --
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/lien-queue.db",
        description="SQLAlchemy async database URL for the job queue",
    )

    # -- playwright configuration --
    playwright_headless: bool = Field(
        default=True, description="Run browser in headless mode (False for debugging)"
    )
    playwright_timeout: int = Field(
        default=90000,
        ge=5000,
        le=180000,
        description="Default timeout for Playwright operations in milliseconds",
    )
    browser_cdp_url: str | None = Field(
        default=None,
        description="Remote browser CDP endpoint (e.g. a scraping browser); local Chromium if unset",
    )

    # -- source --
    search_term: str = Field(
        default="Internal Revenue Service", description="Name searched in discovery mode"
    )
    file_type: str = Field(default="Federal Tax Lien", description="File Type filter label")
    result_ceiling: int = Field(
        default=1000, ge=1, description="Result count above which a search must be split"
    )
    default_max_records: int = Field(
        default=1000, ge=1, description="Records collected per session when not requested"
    )
    download_dir: str = Field(
        default="./data/downloads", description="Directory for downloaded filing documents"
    )
    download_timeout: int = Field(
        default=30000, ge=1000, description="Download wait timeout in milliseconds"
    )
    tag_missing_download: bool = Field(
        default=False,
        description="Tag records without a download link as no_download_available",
    )

    # -- ui interaction --
    ui_retry_attempts: int = Field(
        default=2, ge=1, le=5, description="Attempts per low-level UI action"
    )
    ui_wait_timeout: int = Field(
        default=8000, ge=500, description="Visibility wait per UI action in milliseconds"
    )
    human_delay_min_ms: int = Field(default=800, ge=0, description="Minimum human-like delay")
    human_delay_max_ms: int = Field(default=1800, ge=0, description="Maximum human-like delay")

    # -- worker --
    worker_batch_size: int = Field(default=1, ge=1, description="Jobs claimed per iteration")
    worker_max_attempts: int = Field(
        default=3, ge=1, description="Claims after which a failing job is abandoned"
    )
    worker_backoff_ms: int = Field(
        default=300000, ge=0, description="Fixed backoff window after a job failure"
    )
    worker_idle_sleep: float = Field(
        default=2.0, ge=0, description="Seconds slept between worker iterations"
    )
    worker_lease_seconds: int = Field(
        default=0, ge=0, description="Lease length recorded on claim (0 records the claim time)"
    )
    session_deadline_seconds: int = Field(
        default=600, ge=1, description="Overall deadline for one extraction session"
    )

    # -- rate limiting --
    rate_limit_min_interval_ms: int = Field(
        default=1200, ge=0, description="Minimum spacing between automation calls"
    )
    rate_limit_max_concurrent: int = Field(
        default=1, ge=1, description="Maximum concurrent automation calls"
    )

    # -- sinks --
    sink: Literal["sheets", "webhook", "memory"] = Field(
        default="sheets", description="Where finished records are delivered"
    )
    sheet_id: str | None = Field(default=None, description="Google Sheets spreadsheet id")
    sheets_key: str | None = Field(
        default=None, description="Service account credentials as a JSON string"
    )
    sheet_range: str = Field(default="Sheet1!A1", description="Append range")
    webhook_url: str | None = Field(default=None, description="Webhook receiving record batches")
    webhook_timeout: int = Field(
        default=30, ge=5, le=120, description="Timeout in seconds for webhook requests"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "Settings":
        if self.human_delay_min_ms > self.human_delay_max_ms:
            raise ValueError("human_delay_min_ms must not exceed human_delay_max_ms")
        return self

    @property
    def playwright_headless_resolved(self) -> bool:
        """Debug mode always shows the browser window."""
        return False if self.debug else self.playwright_headless


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings()
