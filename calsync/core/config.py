"""Application configuration via environment variables."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    """Allow `requests` calls per `window_seconds` for one endpoint class."""

    requests: int
    window_seconds: int = 60


def _default_rate_limits() -> dict[str, dict[str, RateLimitRule]]:
    return {
        "google_calendar": {
            "default": RateLimitRule(requests=100),
            "sync": RateLimitRule(requests=10),
            "create": RateLimitRule(requests=50),
            "delete": RateLimitRule(requests=50),
        },
        "google_meet": {
            "default": RateLimitRule(requests=100),
            "create": RateLimitRule(requests=30),
        },
        "outlook_calendar": {
            "default": RateLimitRule(requests=60),
            "sync": RateLimitRule(requests=5),
        },
    }


class RateLimitConfig(BaseModel):
    """Per-provider, per-endpoint-class request quotas.

    Providers missing from the table are not limited at all. An endpoint
    class missing for a known provider falls back to its "default" rule.
    """

    providers: dict[str, dict[str, RateLimitRule]] = Field(
        default_factory=_default_rate_limits
    )

    def rule_for(self, provider: str, endpoint: str) -> RateLimitRule | None:
        rules = self.providers.get(provider)
        if not rules:
            return None
        return rules.get(endpoint) or rules.get("default")


class CacheTTLConfig(BaseModel):
    """Time-to-live in seconds per cached data class."""

    default: int = 3600
    calendars_list: int = 3600
    user_info: int = 86400
    event_details: int = 300
    meeting_link: int = 2592000

    def ttl_for(self, name: str | None) -> int:
        if name and name in type(self).model_fields:
            return getattr(self, name)
        return self.default


class Settings(BaseSettings):
    """Settings loaded from environment variables or .env file."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "calsync"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: str = "*"  # Comma-separated origins, or "*" for all

    # Database
    database_url: str = "sqlite:///./calsync.db"

    # Logging
    log_dir: str = "~/.logs/calsync"

    # Google (Calendar and Meet share one OAuth client)
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/integrations/google_calendar/callback"
    google_meet_redirect_uri: str = "http://localhost:8000/integrations/google_meet/callback"

    # Microsoft identity platform
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant: str = "common"
    microsoft_redirect_uri: str = "http://localhost:8000/integrations/outlook_calendar/callback"

    # Provider calls
    provider_timeout_seconds: float = 15.0
    token_refresh_buffer_minutes: int = 5

    # Sync settings
    sync_interval_minutes: int = 15
    sync_min_interval_minutes: int = 60  # batch sync skips integrations synced this recently
    sync_past_days: int = 7
    sync_future_days: int = 30

    # Maintenance
    token_refresh_hours_ahead: int = 2
    meet_retention_days: int = 7
    rate_limit_retention_hours: int = 2

    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache_ttls: CacheTTLConfig = Field(default_factory=CacheTTLConfig)


settings = Settings()
