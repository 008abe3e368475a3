"""
Capture session manager.

Owns the tab -> CaptureSession map. One instance is created per bridge
process and injected wherever sessions are needed.
"""

import logging
from typing import Dict, List, Optional, Sequence

from audio_bridge.capture import CaptureConstraints
from audio_bridge.errors import CapturePermissionError
from audio_bridge.models import CaptureSession, TabId
from audio_bridge.signaling import SignalingBridge
from audio_bridge.tabs import BrowserTabs

logger = logging.getLogger(__name__)

DEFAULT_STUDIO_PATTERNS = ("http://localhost:3000/*", "https://*.vercel.app/*")


class CaptureSessionManager:
    """Starts and stops tab captures and hands them to the signaling bridge."""

    def __init__(
        self,
        tabs: BrowserTabs,
        signaling: SignalingBridge,
        studio_patterns: Sequence[str] = DEFAULT_STUDIO_PATTERNS,
        constraints: Optional[CaptureConstraints] = None,
    ):
        self.tabs = tabs
        self.signaling = signaling
        self.studio_patterns = list(studio_patterns)
        self.constraints = constraints or CaptureConstraints()

        self._sessions: Dict[TabId, CaptureSession] = {}
        self._studio_tab_id: Optional[TabId] = None

    @property
    def studio_tab_id(self) -> Optional[TabId]:
        """Studio tab found by the most recent capture start."""
        return self._studio_tab_id

    @property
    def active_tabs(self) -> List[TabId]:
        return list(self._sessions)

    def get(self, tab_id: TabId) -> Optional[CaptureSession]:
        return self._sessions.get(tab_id)

    def is_capturing(self, tab_id: TabId) -> bool:
        return tab_id in self._sessions

    async def start_capture(self, tab_id: TabId) -> CaptureSession:
        """
        Capture the tab's audio and offer it to the studio tab if one is open.

        Raises:
            CapturePermissionError: The browser granted no stream
        """
        existing = self._sessions.get(tab_id)
        if existing is not None:
            if existing.stream.active:
                logger.info(f"Tab {tab_id} is already capturing")
                return existing
            logger.info(f"Capture for tab {tab_id} has ended, starting a new one")
            await self.stop_capture(tab_id)

        logger.info(f"Starting audio capture for tab {tab_id}")
        stream = await self.tabs.capture_audio(tab_id, self.constraints)
        if stream is None:
            raise CapturePermissionError(tab_id)

        session = CaptureSession(tab_id=tab_id, stream=stream)
        self._sessions[tab_id] = session
        logger.info(f"Audio stream captured for tab {tab_id}")

        studio_tabs = await self.tabs.query(self.studio_patterns) if self.studio_patterns else []
        if not studio_tabs:
            # One-shot: nothing retries discovery later
            logger.warning("Studio tab not found. Open the studio app to connect.")
            return session

        self._studio_tab_id = studio_tabs[0].id
        try:
            session.connection = await self.signaling.establish(
                tab_id, stream, self._studio_tab_id
            )
        except Exception as e:
            logger.error(f"Peer handshake for tab {tab_id} failed: {e}", exc_info=True)

        return session

    async def stop_capture(self, tab_id: TabId):
        """Stop the tab's stream and connection. Safe to call repeatedly."""
        session = self._sessions.pop(tab_id, None)
        if session is None:
            return

        logger.info(f"Stopping audio capture for tab {tab_id}")
        session.stream.stop()
        if session.connection is not None:
            session.connection = None
            await self.signaling.close(tab_id)

    async def stop_all(self):
        for tab_id in list(self._sessions):
            await self.stop_capture(tab_id)

    def get_status(self, tab_id: TabId) -> dict:
        session = self._sessions.get(tab_id)
        return {
            "isCapturing": session is not None,
            "isConnected": session is not None and session.connection is not None,
        }
