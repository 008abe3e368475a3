"""Bridge configuration via pydantic-settings."""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_logger = logging.getLogger(__name__)


class BridgeSettings(BaseSettings):
    """Bridge settings loaded from environment variables.

    All variables are prefixed with ``AUDIO_BRIDGE_`` (e.g. ``AUDIO_BRIDGE_PORT``).
    """

    # Gateway
    host: str = "127.0.0.1"
    port: int = 8790
    request_timeout: float = 10.0

    # Browser contexts
    browser_context: str = "browser"
    source_base_url: str = "https://open.spotify.com"
    source_tab_patterns: list[str] = ["https://open.spotify.com/*"]
    studio_tab_patterns: list[str] = ["http://localhost:3000/*", "https://*.vercel.app/*"]

    # Peer connection
    stun_url: str = "stun:stun.l.google.com:19302"

    # Batch timings (seconds unless noted)
    settle_delay: float = 2.0
    record_duration_ms: int = 30_000
    inter_track_delay: float = 1.0
    load_poll_interval: float = 0.5
    load_timeout: float = 5.0

    # Waveform
    waveform_columns: int = 1000

    # Capture
    capture_device: int | None = None
    capture_sample_rate: int = 48000
    capture_channels: int = 2

    model_config = SettingsConfigDict(
        env_prefix="AUDIO_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def model_post_init(self, __context: object) -> None:
        """Normalize the source URL so playlist paths can be appended."""
        self.source_base_url = self.source_base_url.rstrip("/")
        if self.record_duration_ms <= 0:
            raise ValueError("AUDIO_BRIDGE_RECORD_DURATION_MS must be positive")
        if self.waveform_columns <= 0:
            raise ValueError("AUDIO_BRIDGE_WAVEFORM_COLUMNS must be positive")
        if not self.studio_tab_patterns:
            _logger.warning("No studio tab patterns configured; signaling is disabled")

    def playlist_url(self, playlist_id: str) -> str:
        return f"{self.source_base_url}/playlist/{playlist_id}"


@lru_cache(maxsize=1)
def get_settings() -> BridgeSettings:
    """Return a cached ``BridgeSettings`` instance."""
    return BridgeSettings()
