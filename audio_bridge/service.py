"""
Bridge service: wires the gateway, capture, signaling and batch components.
"""

import asyncio
import functools
import logging
from typing import Optional

from audio_bridge.capture import open_loopback_stream
from audio_bridge.clock import Clock
from audio_bridge.config import BridgeSettings, get_settings
from audio_bridge.messaging import WebSocketGateway
from audio_bridge.orchestrator import BatchOrchestrator
from audio_bridge.recorder import TrackRecorder
from audio_bridge.router import ControlRouter
from audio_bridge.sessions import CaptureSessionManager
from audio_bridge.signaling import SignalingBridge
from audio_bridge.tabs import ShimBrowser
from audio_bridge.waveform import WaveformExtractor

logger = logging.getLogger(__name__)


class AudioBridge:
    """One bridge process: owns every component and their lifecycle."""

    def __init__(self, settings: Optional[BridgeSettings] = None):
        self.settings = settings or get_settings()
        s = self.settings

        clock = Clock()
        self.gateway = WebSocketGateway(s.host, s.port, s.request_timeout)
        self.tabs = ShimBrowser(
            self.gateway,
            context=s.browser_context,
            stream_factory=functools.partial(
                open_loopback_stream,
                device=s.capture_device,
                sample_rate=s.capture_sample_rate,
                channels=s.capture_channels,
            ),
        )
        self.signaling = SignalingBridge(self.gateway, stun_url=s.stun_url)
        self.sessions = CaptureSessionManager(
            self.tabs, self.signaling, studio_patterns=s.studio_tab_patterns
        )
        self.recorder = TrackRecorder(
            self.sessions,
            clock=clock,
            default_sample_rate=s.capture_sample_rate,
            default_channels=s.capture_channels,
        )
        self.extractor = WaveformExtractor(columns=s.waveform_columns)
        self.orchestrator = BatchOrchestrator(
            self.gateway,
            self.tabs,
            self.sessions,
            self.recorder,
            self.extractor,
            settings=s,
            clock=clock,
        )
        self.router = ControlRouter(
            self.gateway,
            self.tabs,
            self.sessions,
            self.signaling,
            self.orchestrator,
            source_patterns=s.source_tab_patterns,
        )
        self.gateway.set_handler(self.router.handle)

        self._stop_event = asyncio.Event()

    async def start(self):
        await self.gateway.start()

    async def stop(self):
        logger.info("Stopping audio bridge...")
        await self.router.shutdown()
        await self.gateway.stop()

    def request_stop(self):
        self._stop_event.set()

    async def run_forever(self):
        """Serve until request_stop() is called."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
