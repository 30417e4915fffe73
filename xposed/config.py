"""Configuration settings for xposed."""

from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_SECTION_CONFIG = SettingsConfigDict(populate_by_name=True, extra="ignore")


class ServerSettings(BaseSettings):
    model_config = _SECTION_CONFIG

    host: str = Field("127.0.0.1", validation_alias="XPOSED_HOST")
    port: int = Field(8092, validation_alias="XPOSED_PORT")


class LookupSettings(BaseSettings):
    """Operating parameters of the lookup engine."""
    model_config = _SECTION_CONFIG

    cache_max_size: int = Field(1000, validation_alias="XPOSED_CACHE_MAX_SIZE")
    shared_cache_max_size: int = Field(50_000, validation_alias="XPOSED_SHARED_CACHE_MAX_SIZE")
    pending_visibility_max_size: int = Field(500, validation_alias="XPOSED_PENDING_VISIBILITY_MAX_SIZE")
    debounce_ms: int = Field(50, validation_alias="XPOSED_DEBOUNCE_MS")
    rate_limit_default_window_ms: int = Field(60_000, validation_alias="XPOSED_RATE_LIMIT_WINDOW_MS")
    backoff_base_ms: int = Field(1000, validation_alias="XPOSED_BACKOFF_BASE_MS")
    backoff_cap_ms: int = Field(30_000, validation_alias="XPOSED_BACKOFF_CAP_MS")
    max_concurrent_live: int = Field(3, validation_alias="XPOSED_MAX_CONCURRENT_LIVE")
    batch_size: int = Field(5, validation_alias="XPOSED_BATCH_SIZE")
    batch_delay_ms: int = Field(300, validation_alias="XPOSED_BATCH_DELAY_MS")
    negative_cache_ttl_ms: int = Field(120_000, validation_alias="XPOSED_NEGATIVE_CACHE_TTL_MS")
    visibility_margin_px: int = Field(200, validation_alias="XPOSED_VISIBILITY_MARGIN_PX")
    live_enabled: bool = Field(True, validation_alias="XPOSED_LIVE_ENABLED")
    # JSON list in the environment, e.g. '["Norway", "Chile"]'
    blocked_countries: List[str] = Field(default_factory=list, validation_alias="XPOSED_BLOCKED_COUNTRIES")


class UpstreamSettings(BaseSettings):
    model_config = _SECTION_CONFIG

    base_url: str = Field("https://x.com/i/api/graphql", validation_alias="XPOSED_UPSTREAM_BASE_URL")
    query_id: str = Field("XRqGa7EeokUU5kppkh13EA", validation_alias="XPOSED_UPSTREAM_QUERY_ID")
    bearer_token: str = Field("", validation_alias="XPOSED_UPSTREAM_BEARER_TOKEN")
    auth_token: str = Field("", validation_alias="XPOSED_AUTH_TOKEN")
    csrf_token: str = Field("", validation_alias="XPOSED_CSRF_TOKEN")
    timeout_ms: int = Field(10_000, validation_alias="XPOSED_UPSTREAM_TIMEOUT_MS")
    min_interval_ms: int = Field(300, validation_alias="XPOSED_UPSTREAM_MIN_INTERVAL_MS")


class CloudCacheSettings(BaseSettings):
    model_config = _SECTION_CONFIG

    enabled: bool = Field(True, validation_alias="XPOSED_CLOUD_ENABLED")
    api_url: str = Field("https://x-posed-cache.xaitax.workers.dev", validation_alias="XPOSED_CLOUD_API_URL")
    timeout_ms: int = Field(5000, validation_alias="XPOSED_CLOUD_TIMEOUT_MS")
    batch_size: int = Field(50, validation_alias="XPOSED_CLOUD_BATCH_SIZE")
    batch_delay_ms: int = Field(100, validation_alias="XPOSED_CLOUD_BATCH_DELAY_MS")
    contribute: bool = Field(False, validation_alias="XPOSED_CLOUD_CONTRIBUTE")


class StorageSettings(BaseSettings):
    model_config = _SECTION_CONFIG

    cache_dir: Path = Field(Path.home() / ".xposed" / "cache", validation_alias="XPOSED_CACHE_DIR")
    flush_interval_s: float = Field(60, validation_alias="XPOSED_FLUSH_INTERVAL_S")
    ttl_ms: int = Field(7 * 24 * 60 * 60 * 1000, validation_alias="XPOSED_CACHE_TTL_MS")
    persist: bool = Field(True, validation_alias="XPOSED_PERSIST_CACHE")

    @property
    def cache_file(self) -> Path:
        return self.cache_dir / "user_info.json"


class Settings(BaseSettings):
    """Global Application Settings."""
    server: ServerSettings = ServerSettings()
    lookup: LookupSettings = LookupSettings()
    upstream: UpstreamSettings = UpstreamSettings()
    cloud: CloudCacheSettings = CloudCacheSettings()
    storage: StorageSettings = StorageSettings()

    debug: bool = Field(False, validation_alias="XPOSED_DEBUG")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        populate_by_name=True,
        extra="ignore"
    )


settings = Settings()
