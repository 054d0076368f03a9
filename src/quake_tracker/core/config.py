from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    catalog_base_url: str = Field(default="https://www.seismicportal.eu/fdsnws/event/1/query")
    live_feed_url: str = Field(default="wss://www.seismicportal.eu/standing_order/websocket")

    catalog_timeout_seconds: int = Field(default=20, ge=1)
    catalog_max_retries: int = Field(default=5, ge=1)
    catalog_default_limit: int = Field(default=10, ge=1, le=20_000)

    live_reconnect_initial_seconds: float = Field(default=1.0, gt=0)
    live_reconnect_max_seconds: float = Field(default=30.0, gt=0)
    live_read_timeout_seconds: float = Field(default=1.0, gt=0)
    live_max_reconnect_attempts: int | None = Field(default=None, ge=1)
    subscriber_buffer_size: int = Field(default=256, ge=1)

    magnitude_bin_width: float = Field(default=0.2, gt=0)
    magnitude_bin_floor: float = Field(default=0.0)
    frequency_bin_width: float = Field(default=0.1, gt=0)
    cluster_cell_degrees: float = Field(default=0.5, gt=0)
    completeness_magnitude: float = Field(default=2.0)
    b_value_fallback: float = Field(default=1.0)
    regional_top_n: int = Field(default=10, ge=1)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="QT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
