"""
Fixed-duration recording of a captured tab into an in-memory WAV buffer.
"""

import asyncio
import io
import logging
from typing import List, Optional

import numpy as np
from aiortc.mediastreams import MediaStreamError
from scipy.io import wavfile

from audio_bridge.clock import Clock
from audio_bridge.models import TabId, TrackRecording
from audio_bridge.sessions import CaptureSessionManager

logger = logging.getLogger(__name__)


def frame_to_samples(frame) -> np.ndarray:
    """Convert an av.AudioFrame to an int16 array shaped (samples, channels)."""
    data = frame.to_ndarray()
    channels = len(frame.layout.channels)

    if frame.format.is_planar:
        samples = data.T
    else:
        samples = data.reshape(-1, channels)

    if samples.dtype != np.int16:
        # Float formats are in [-1, 1]
        if np.issubdtype(samples.dtype, np.floating):
            samples = np.clip(samples * 32767, -32768, 32767)
        samples = samples.astype(np.int16)
    return samples


def encode_wav(chunks: List[np.ndarray], sample_rate: int, channels: int) -> bytes:
    if chunks:
        audio = np.concatenate(chunks, axis=0)
    else:
        audio = np.zeros((0, channels), dtype=np.int16)

    buffer = io.BytesIO()
    wavfile.write(buffer, sample_rate, audio)
    return buffer.getvalue()


class TrackRecorder:
    """Records a tab's captured stream for a fixed duration."""

    def __init__(
        self,
        sessions: CaptureSessionManager,
        clock: Optional[Clock] = None,
        default_sample_rate: int = 48000,
        default_channels: int = 2,
    ):
        self.sessions = sessions
        self.clock = clock or Clock()
        self.default_sample_rate = default_sample_rate
        self.default_channels = default_channels

    async def record(self, tab_id: TabId, duration_ms: int) -> Optional[TrackRecording]:
        """
        Record duration_ms of the tab's audio.

        Returns:
            TrackRecording with WAV bytes, or None if the tab is not capturing
        """
        session = self.sessions.get(tab_id)
        if session is None:
            return None

        tracks = session.stream.get_audio_tracks()
        if not tracks:
            logger.warning(f"Tab {tab_id} stream has no audio track")
            return None

        chunks: List[np.ndarray] = []
        format_info = {"sample_rate": self.default_sample_rate, "channels": self.default_channels}

        # Own relay subscription: the peer connection keeps every frame too
        track = session.stream.subscribe(tracks[0], fresh=True)
        pump = asyncio.create_task(self._pump(track, chunks, format_info))
        stopped = asyncio.get_running_loop().create_future()

        def _stop():
            pump.cancel()
            if not stopped.done():
                stopped.set_result(None)

        handle = self.clock.call_later(duration_ms / 1000.0, _stop)
        try:
            await stopped
        finally:
            handle.cancel()
            pump.cancel()
            await asyncio.wait([pump])
            track.stop()

        if not pump.cancelled() and pump.exception() is not None:
            raise pump.exception()

        data = encode_wav(chunks, format_info["sample_rate"], format_info["channels"])
        logger.info(f"Recorded {len(chunks)} chunks ({len(data)} bytes) from tab {tab_id}")
        return TrackRecording(data=data, mime_type="audio/wav")

    async def _pump(self, track, chunks: List[np.ndarray], format_info: dict):
        """Accumulate frames until cancelled or the track ends."""
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("Captured track ended before the recording window closed")
                return

            samples = frame_to_samples(frame)
            if not chunks:
                format_info["sample_rate"] = frame.sample_rate
                format_info["channels"] = samples.shape[1]
            if samples.shape[1] == format_info["channels"]:
                chunks.append(samples)
