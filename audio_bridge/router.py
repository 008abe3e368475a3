"""
Control message router.

Every inbound request from a browser context lands here and is dispatched on
its ``type``. Replies are plain dicts; user-visible failures are reported as
``{"success": False, "error": ...}`` rather than raised.
"""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Optional, Sequence

from audio_bridge.errors import BusyError
from audio_bridge.messaging import MessagingGateway
from audio_bridge.models import TabId
from audio_bridge.orchestrator import BatchOrchestrator
from audio_bridge.sessions import CaptureSessionManager
from audio_bridge.signaling import SignalingBridge
from audio_bridge.tabs import BrowserTabs, url_matches

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[Optional[dict]]]


class ControlRouter:
    """Dispatches control, external and shim messages to the bridge components."""

    def __init__(
        self,
        gateway: MessagingGateway,
        tabs: BrowserTabs,
        sessions: CaptureSessionManager,
        signaling: SignalingBridge,
        orchestrator: BatchOrchestrator,
        source_patterns: Sequence[str] = ("https://open.spotify.com/*",),
    ):
        self.gateway = gateway
        self.tabs = tabs
        self.sessions = sessions
        self.signaling = signaling
        self.orchestrator = orchestrator
        self.source_patterns = list(source_patterns)

        self._batch_task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Handler] = {
            # Control (popup, studio)
            "START_CAPTURE": self._start_capture,
            "STOP_CAPTURE": self._stop_capture,
            "GET_STATUS": self._get_status,
            "START_BATCH_PROCESSING": self._start_batch,
            "GET_PROCESSING_STATUS": self._get_processing_status,
            "CANCEL_BATCH_PROCESSING": self._cancel_batch,
            # External callers
            "GET_SPOTIFY_TABS": self._get_source_tabs,
            "WEBRTC_ANSWER": self._webrtc_answer,
            "WEBRTC_ICE_CANDIDATE": self._webrtc_candidate,
            # Extension shim events
            "TAB_REMOVED": self._tab_removed,
            "TAB_UPDATED": self._tab_updated,
            "SPOTIFY_TAB_READY": self._tab_ready,
        }

    async def handle(self, message: dict, sender: TabId) -> Optional[dict]:
        """Gateway request handler."""
        msg_type = message.get("type")
        logger.info(f"Received message: {msg_type}", extra={"context": sender})

        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning(f"Unknown message type from {sender!r}: {msg_type}")
            return {"success": False, "error": f"Unknown message type: {msg_type}"}
        return await handler(message)

    async def shutdown(self):
        """Stop the running batch at its next checkpoint and release all captures."""
        self.orchestrator.cancel()
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
            await asyncio.wait([self._batch_task])
        await self.sessions.stop_all()

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def _start_capture(self, message: dict) -> dict:
        try:
            await self.sessions.start_capture(message.get("tabId"))
        except Exception as e:
            logger.error(f"Error capturing audio: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True}

    async def _stop_capture(self, message: dict) -> dict:
        await self.sessions.stop_capture(message.get("tabId"))
        return {"success": True}

    async def _get_status(self, message: dict) -> dict:
        return self.sessions.get_status(message.get("tabId"))

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def _start_batch(self, message: dict) -> dict:
        playlist_ids = message.get("playlistIds") or []
        batch_id = message.get("batchId") or str(uuid.uuid4())

        try:
            job = self.orchestrator.reserve(playlist_ids, batch_id)
        except BusyError as e:
            return {"success": False, "error": str(e)}

        task = asyncio.create_task(self.orchestrator.run(job))
        task.add_done_callback(self._on_batch_done)
        self._batch_task = task

        # Reply once setup has succeeded; traversal continues in the background
        started = asyncio.create_task(job.started.wait())
        await asyncio.wait({task, started}, return_when=asyncio.FIRST_COMPLETED)
        if not started.done():
            started.cancel()

        if job.started.is_set():
            return {"success": True, "batchId": batch_id}

        error = task.exception() if not task.cancelled() else None
        return {"success": False, "error": str(error) if error else "Batch ended before starting"}

    def _on_batch_done(self, task: asyncio.Task):
        if task.cancelled():
            logger.info("Batch task cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Batch aborted: {error}", exc_info=error)

    async def _get_processing_status(self, message: dict) -> dict:
        return self.orchestrator.status()

    async def _cancel_batch(self, message: dict) -> dict:
        return {"success": self.orchestrator.cancel()}

    # ------------------------------------------------------------------
    # External callers
    # ------------------------------------------------------------------

    async def _get_source_tabs(self, message: dict) -> dict:
        tabs = await self.tabs.query(self.source_patterns)
        return {
            "tabs": [
                {"id": tab.id, "title": tab.title, "isCapturing": self.sessions.is_capturing(tab.id)}
                for tab in tabs
            ]
        }

    async def _webrtc_answer(self, message: dict) -> dict:
        try:
            applied = await self.signaling.apply_answer(message.get("tabId"), message["answer"])
        except Exception as e:
            logger.error(f"Failed to apply answer: {e}")
            return {"success": False, "error": str(e)}
        return {"success": applied}

    async def _webrtc_candidate(self, message: dict) -> dict:
        try:
            added = await self.signaling.add_remote_candidate(
                message.get("tabId"), message.get("candidate") or {}
            )
        except Exception as e:
            logger.error(f"Failed to add ICE candidate: {e}")
            return {"success": False, "error": str(e)}
        return {"success": added}

    # ------------------------------------------------------------------
    # Extension shim events
    # ------------------------------------------------------------------

    async def _tab_removed(self, message: dict) -> None:
        await self.sessions.stop_capture(message.get("tabId"))

    async def _tab_updated(self, message: dict) -> None:
        tab_id = message.get("tabId")
        if message.get("status") != "complete" or not url_matches(
            message.get("url", ""), self.source_patterns
        ):
            return

        if await self.gateway.send(tab_id, {"type": "PING"}) is None:
            logger.info(f"In-page agent not loaded on tab {tab_id}, injecting")
            await self.tabs.inject_agent(tab_id)

    async def _tab_ready(self, message: dict) -> None:
        logger.info(f"Music tab ready: {message.get('tabId')}")
