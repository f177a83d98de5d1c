"""Offer matrix configuration.

Loads from environment variables (prefix ``OFFER_MATRIX_``) and a .env file.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MatrixSettings(BaseSettings):
    """Configuration for the offer matrix engine and its sidecar API."""

    # ----- Backend -----
    backend_url: str = Field(
        default="",
        description="Extraction backend base URL. Empty = in-memory backend.",
    )
    org_id: str = Field(default="", description="Tenant header X-Org-Id.")
    user_id: str = Field(default="", description="Tenant header X-User-Id.")
    request_timeout: float = Field(
        default=15.0,
        description="HTTP timeout (seconds) for backend calls.",
    )

    # ----- Polling -----
    poll_interval_seconds: float = Field(
        default=2.0,
        description="Delay between offer refreshes while a job is running.",
    )

    # ----- Preferences -----
    prefs_dir: str = Field(
        default="",
        description="Directory for local view preference snapshots. Empty = in-memory.",
    )
    context_name: str = Field(
        default="default",
        description="Company/context name used to namespace local preferences.",
    )

    # ----- Shares -----
    share_ttl_hours: int = Field(default=720, description="Default share link lifetime.")
    insurer_share_ttl_hours: int = Field(
        default=168,
        description="Lifetime of insurer-only confirmation links.",
    )
    share_base_url: str = Field(
        default="http://localhost:8080",
        description="Public base URL for share links issued by the in-memory backend.",
    )
    share_token: str = Field(
        default="",
        description="Editable share being viewed; edits regenerate its stored view.",
    )

    # ----- Server -----
    sidecar_host: str = Field(default="0.0.0.0", description="Bind host.")
    sidecar_port: int = Field(default=8002, description="Bind port.")
    dev_mode: bool = Field(default=False, description="Dev mode: CORS wildcard.")

    model_config = SettingsConfigDict(
        env_prefix="OFFER_MATRIX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def tenant_headers(self) -> dict[str, str]:
        headers = {}
        if self.org_id:
            headers["X-Org-Id"] = self.org_id
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        return headers


@lru_cache
def get_settings() -> MatrixSettings:
    """Get cached settings singleton."""
    return MatrixSettings()
