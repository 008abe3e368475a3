"""
Tab audio capture sources.

The browser shim grants tab capture and routes the tab's output to a loopback
device; this module turns that device into an aiortc audio track so the same
stream can feed both the peer connection and the recorder.

Requirements:
    pip install sounddevice aiortc numpy
"""

import asyncio
import fractions
import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError

logger = logging.getLogger(__name__)


@dataclass
class CaptureConstraints:
    """Audio processing flags for a capture grant.

    All processing is off by default: the recording has to match what the
    tab actually played.
    """

    echo_cancellation: bool = False
    noise_suppression: bool = False
    auto_gain_control: bool = False

    def to_dict(self) -> dict:
        return {
            "audio": True,
            "video": False,
            "audioConstraints": {
                "mandatory": {
                    "echoCancellation": self.echo_cancellation,
                    "noiseSuppression": self.noise_suppression,
                    "autoGainControl": self.auto_gain_control,
                    "googEchoCancellation": self.echo_cancellation,
                    "googAutoGainControl": self.auto_gain_control,
                    "googNoiseSuppression": self.noise_suppression,
                    "googHighpassFilter": False,
                }
            },
        }


class MediaStream:
    """A group of media tracks captured from one tab.

    Consumers never read the captured tracks directly. Each one (the peer
    connection, every recording) takes its own subscription from the stream's
    relay, so all of them see every frame.
    """

    def __init__(self, tracks: Iterable[MediaStreamTrack]):
        self.id = str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = list(tracks)
        self._relay = MediaRelay()

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    @property
    def active(self) -> bool:
        return any(t.readyState == "live" for t in self._tracks)

    def subscribe(self, track: MediaStreamTrack, fresh: bool = False) -> MediaStreamTrack:
        """
        Return a relayed copy of one of the stream's tracks.

        Args:
            track: A track of this stream
            fresh: Discard audio the source buffered before this call, so the
                copy starts at "now"

        Returns:
            A track that receives every frame from the moment it is first read
        """
        if fresh:
            flush = getattr(track, "flush", None)
            if flush is not None:
                flush()
        return self._relay.subscribe(track)

    def stop(self):
        """Stop every track in the stream."""
        for track in self._tracks:
            track.stop()


class SoundDeviceTrack(MediaStreamTrack):
    """
    aiortc audio track fed by a sounddevice input stream.

    sounddevice delivers blocks on its own callback thread; blocks are handed
    to the event loop. At most ``max_pending`` blocks are buffered and the
    oldest are dropped when nobody is reading.
    """

    kind = "audio"

    def __init__(
        self,
        device: Optional[int] = None,
        sample_rate: int = 48000,
        channels: int = 2,
        blocksize: int = 960,  # 20ms at 48kHz
        max_pending: int = 50,
    ):
        super().__init__()
        import sounddevice as sd

        self.sample_rate = sample_rate
        self.channels = channels
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._pts = 0
        self._dropped = 0

        self._stream = sd.InputStream(
            device=device,
            samplerate=sample_rate,
            channels=channels,
            dtype="int16",
            blocksize=blocksize,
            callback=self._audio_callback,
        )
        self._stream.start()

    def _audio_callback(self, indata, frames, time_info, status):
        """Called by sounddevice for each audio block."""
        if status:
            logger.warning(f"Audio status: {status}")
        self._loop.call_soon_threadsafe(self._enqueue, indata.copy())

    def _enqueue(self, block: Optional[np.ndarray]):
        if block is not None and self.readyState != "live":
            return
        if self._queue.full():
            # Keep the newest audio: the oldest block goes first
            self._queue.get_nowait()
            self._dropped += 1
            if self._dropped % 100 == 1:
                logger.warning(f"Capture consumer behind, dropped {self._dropped} blocks")
        self._queue.put_nowait(block)

    def flush(self) -> int:
        """Discard buffered blocks; returns how many were dropped."""
        flushed = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            flushed += 1
        return flushed

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        block = await self._queue.get()
        if block is None:
            raise MediaStreamError

        layout = "stereo" if self.channels == 2 else "mono"
        frame = av.AudioFrame.from_ndarray(
            block.reshape(1, -1), format="s16", layout=layout
        )
        frame.sample_rate = self.sample_rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, self.sample_rate)
        self._pts += block.shape[0]
        return frame

    def stop(self):
        if self.readyState == "live":
            super().stop()
            # Wake any reader blocked on the queue
            self._enqueue(None)
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None


def find_loopback_device() -> Optional[int]:
    """Find a loopback input that carries the browser's output."""
    import sounddevice as sd

    devices = sd.query_devices()

    for i, device in enumerate(devices):
        if device["max_input_channels"] <= 0:
            continue
        name = device["name"].lower()
        if "loopback" in name or "monitor" in name:
            logger.info(f"Found loopback device: {device['name']}")
            return i
        if "stereo mix" in name or "what u hear" in name:
            logger.info(f"Found stereo mix device: {device['name']}")
            return i

    logger.warning("No loopback device found. Available input devices:")
    for i, device in enumerate(devices):
        if device["max_input_channels"] > 0:
            logger.warning(f"  [{i}] {device['name']} (inputs: {device['max_input_channels']})")
    return None


def open_loopback_stream(
    device: Optional[int] = None,
    sample_rate: int = 48000,
    channels: int = 2,
) -> Optional[MediaStream]:
    """Open the loopback device as a MediaStream, or None if there is none."""
    if device is None:
        device = find_loopback_device()
    if device is None:
        return None

    try:
        track = SoundDeviceTrack(device=device, sample_rate=sample_rate, channels=channels)
    except Exception as e:
        logger.error(f"Failed to open capture device {device}: {e}")
        return None
    return MediaStream([track])
