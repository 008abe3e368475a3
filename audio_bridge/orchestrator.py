"""
Batch orchestrator: unattended sampling of every track in a list of playlists.

Pipeline per track:
    PLAY_TRACK -> settle -> record -> waveform -> PROCESS_TRACK_AUDIO -> progress -> gap

Playlists and tracks run strictly one after another. Cancellation is checked
only before each playlist and before each track, so a track that has started
always completes and is dispatched.
"""

import base64
import logging
from typing import Callable, List, Optional, Sequence

from audio_bridge.clock import Clock
from audio_bridge.config import BridgeSettings, get_settings
from audio_bridge.errors import BusyError
from audio_bridge.messaging import MessagingGateway
from audio_bridge.models import BatchJob, BatchState, TabId, TrackInfo
from audio_bridge.recorder import TrackRecorder
from audio_bridge.sessions import CaptureSessionManager
from audio_bridge.tabs import BrowserTabs
from audio_bridge.waveform import WaveformExtractor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchJob], None]


class CancellationToken:
    """Cooperative cancellation flag threaded through one batch."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class BatchOrchestrator:
    """Drives the batch pipeline over the capture, recording and messaging layers."""

    def __init__(
        self,
        gateway: MessagingGateway,
        tabs: BrowserTabs,
        sessions: CaptureSessionManager,
        recorder: TrackRecorder,
        extractor: WaveformExtractor,
        settings: Optional[BridgeSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.gateway = gateway
        self.tabs = tabs
        self.sessions = sessions
        self.recorder = recorder
        self.extractor = extractor
        self.settings = settings or get_settings()
        self.clock = clock or Clock()

        self._job: Optional[BatchJob] = None
        self._token: Optional[CancellationToken] = None
        self._callbacks: List[ProgressCallback] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> BatchState:
        return BatchState.RUNNING if self._job is not None else BatchState.IDLE

    @property
    def current_job(self) -> Optional[BatchJob]:
        return self._job

    def add_progress_callback(self, callback: ProgressCallback):
        """Add a callback invoked after every processed track."""
        self._callbacks.append(callback)

    def remove_progress_callback(self, callback: ProgressCallback):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def status(self) -> dict:
        job = self._job
        return {
            "isProcessing": job is not None,
            "queueLength": job.queue_length if job else 0,
            "currentBatch": job.to_dict() if job else None,
        }

    def cancel(self) -> bool:
        """Ask the running batch to stop before its next playlist or track."""
        if self._token is None:
            return False
        logger.info(f"Cancellation requested for batch {self._job.id}")
        self._token.cancel()
        return True

    # ------------------------------------------------------------------
    # Batch lifecycle
    # ------------------------------------------------------------------

    def reserve(self, playlist_ids: Sequence[str], batch_id: str) -> BatchJob:
        """
        Claim the single batch slot.

        Raises:
            BusyError: Another batch is running; it is left untouched
        """
        if self._job is not None:
            raise BusyError(self._job.id)

        self._job = BatchJob(id=batch_id, playlist_ids=list(playlist_ids))
        self._token = CancellationToken()
        return self._job

    async def start_batch(self, playlist_ids: Sequence[str], batch_id: str) -> BatchJob:
        """Run a whole batch. Setup failures propagate; item failures do not."""
        job = self.reserve(playlist_ids, batch_id)
        await self.run(job)
        return job

    async def run(self, job: BatchJob):
        """Set up the source tab and walk the playlists of a reserved job."""
        token = self._token
        try:
            logger.info(
                f"Starting batch {job.id} with {len(job.playlist_ids)} playlists",
                extra={"batch_id": job.id},
            )
            tab_id = await self._prepare_source_tab()
            if not self.sessions.is_capturing(tab_id):
                await self.sessions.start_capture(tab_id)
            job.started.set()

            for index, playlist_id in enumerate(job.playlist_ids):
                if token.cancelled:
                    logger.info(f"Batch {job.id} cancelled", extra={"batch_id": job.id})
                    break
                job.next_playlist = index + 1
                await self.process_playlist(tab_id, playlist_id)

            logger.info(
                f"Batch {job.id} finished: {job.processed}/{job.total} tracks",
                extra={"batch_id": job.id},
            )
        finally:
            job.state = BatchState.IDLE
            if self._job is job:
                self._job = None
                self._token = None

    async def process_playlist(self, tab_id: TabId, playlist_id: str):
        """Sample every track of one playlist. Failures end only this playlist."""
        job, token = self._job, self._token
        if job is None:
            raise RuntimeError("No batch is running")

        try:
            await self.tabs.navigate(tab_id, self.settings.playlist_url(playlist_id))
            await self.wait_for_load(tab_id)
            await self._ensure_agent(tab_id)

            tracks = await self._list_tracks(tab_id)
            job.total += len(tracks)
            logger.info(
                f"Playlist {playlist_id}: {len(tracks)} tracks",
                extra={"batch_id": job.id, "playlist_id": playlist_id},
            )

            for track in tracks:
                if token.cancelled:
                    break
                await self.process_track(tab_id, track)

        except Exception as e:
            logger.error(
                f"Error processing playlist {playlist_id}: {e}",
                exc_info=True,
                extra={"batch_id": job.id, "playlist_id": playlist_id},
            )

    async def process_track(self, tab_id: TabId, track: TrackInfo):
        """Play, record, analyze and dispatch one track."""
        job = self._job
        if job is None:
            raise RuntimeError("No batch is running")

        try:
            logger.info(
                f"Processing track: {track.name} by {track.artist}",
                extra={"batch_id": job.id, "track_id": track.id},
            )
            await self.gateway.send(tab_id, {"type": "PLAY_TRACK", "trackUri": track.uri})
            await self.clock.sleep(self.settings.settle_delay)

            recording = await self.recorder.record(tab_id, self.settings.record_duration_ms)
            waveform = self.extractor.extract(recording.data) if recording else None

            studio_tab_id = self.sessions.studio_tab_id
            if studio_tab_id is not None:
                await self.gateway.notify(
                    studio_tab_id,
                    {
                        "type": "PROCESS_TRACK_AUDIO",
                        "trackData": track.to_dict(),
                        "audioData": (
                            base64.b64encode(recording.data).decode("ascii")
                            if recording
                            else None
                        ),
                        "waveformData": waveform.to_dict() if waveform else None,
                    },
                )
        except Exception as e:
            logger.error(
                f"Error processing track {track.id}: {e}",
                exc_info=True,
                extra={"batch_id": job.id, "track_id": track.id},
            )

        job.processed += 1
        await self._emit_progress(job)
        await self.clock.sleep(self.settings.inter_track_delay)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def wait_for_load(self, tab_id: TabId) -> bool:
        """Poll until the tab reports complete. A timeout is not an error."""
        deadline = self.clock.time() + self.settings.load_timeout
        while self.clock.time() < deadline:
            tab = await self.tabs.get(tab_id)
            if tab is not None and tab.status == "complete":
                return True
            await self.clock.sleep(self.settings.load_poll_interval)

        logger.warning(f"Tab {tab_id} did not finish loading, continuing anyway")
        return False

    async def _prepare_source_tab(self) -> TabId:
        tabs = await self.tabs.query(self.settings.source_tab_patterns)
        if tabs:
            tab = tabs[0]
        else:
            logger.info(f"No music tab open, creating one at {self.settings.source_base_url}")
            tab = await self.tabs.create(self.settings.source_base_url)

        await self.wait_for_load(tab.id)
        return tab.id

    async def _ensure_agent(self, tab_id: TabId) -> bool:
        """Make sure the in-page agent answers, injecting it if it is silent."""
        if await self.gateway.send(tab_id, {"type": "PING"}) is not None:
            return True

        logger.info(f"In-page agent missing on tab {tab_id}, injecting")
        await self.tabs.inject_agent(tab_id)

        deadline = self.clock.time() + self.settings.load_timeout
        while self.clock.time() < deadline:
            await self.clock.sleep(self.settings.load_poll_interval)
            if await self.gateway.send(tab_id, {"type": "PING"}) is not None:
                return True

        logger.warning(f"In-page agent on tab {tab_id} did not respond after injection")
        return False

    async def _list_tracks(self, tab_id: TabId) -> List[TrackInfo]:
        response = await self.gateway.send(tab_id, {"type": "GET_PLAYLIST_TRACKS"})
        if response is None:
            logger.warning(f"No track listing from tab {tab_id}")
            return []
        return [TrackInfo.from_dict(t) for t in response.get("tracks") or []]

    async def _emit_progress(self, job: BatchJob):
        for callback in self._callbacks:
            try:
                callback(job)
            except Exception as e:
                logger.error(f"Progress callback error: {e}")

        studio_tab_id = self.sessions.studio_tab_id
        if studio_tab_id is not None:
            await self.gateway.notify(
                studio_tab_id,
                {
                    "type": "BATCH_PROGRESS",
                    "batchId": job.id,
                    "processed": job.processed,
                    "total": job.total,
                },
            )
