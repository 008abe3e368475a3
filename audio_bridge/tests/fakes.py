"""Fakes for the audio bridge test suite.

Nothing here touches a real browser, audio device or network: the gateway,
tab API, peer connection and clock are all replaced by in-memory stand-ins.
"""

from __future__ import annotations

import asyncio
import inspect
import io
from typing import Any, Callable, Dict, List, Optional, Sequence

import av
import numpy as np
from aiortc import RTCSessionDescription
from aiortc.mediastreams import MediaStreamError
from scipy.io import wavfile

from audio_bridge.capture import CaptureConstraints, MediaStream
from audio_bridge.messaging import MessagingGateway
from audio_bridge.models import TabId, TabInfo, TrackRecording
from audio_bridge.tabs import BrowserTabs, url_matches

SOURCE_TAB = 1
STUDIO_TAB = 2

OFFER_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 3900000000 3900000000 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE 0",
        "m=audio 54321 UDP/TLS/RTP/SAVPF 111",
        "c=IN IP4 192.168.1.2",
        "a=sendrecv",
        "a=mid:0",
        "a=rtpmap:111 opus/48000/2",
        "a=candidate:1 1 udp 2130706431 192.168.1.2 54321 typ host",
        "a=candidate:2 1 udp 1694498815 203.0.113.5 54321 typ srflx raddr 192.168.1.2 rport 54321",
        "a=end-of-candidates",
        "a=ice-ufrag:abcd",
        "a=ice-pwd:0123456789abcdef0123456789",
        "",
    ]
)


# ---------------------------------------------------------------------------
# Audio helpers
# ---------------------------------------------------------------------------


def make_wav(samples: np.ndarray, sample_rate: int = 48000) -> bytes:
    """Encode samples (int16 or float32) as WAV bytes."""
    buffer = io.BytesIO()
    wavfile.write(buffer, sample_rate, samples)
    return buffer.getvalue()


def make_frame(samples: np.ndarray, sample_rate: int = 48000) -> av.AudioFrame:
    """Build a packed s16 stereo frame from int16 samples shaped (n, 2)."""
    frame = av.AudioFrame.from_ndarray(
        samples.astype(np.int16).reshape(1, -1), format="s16", layout="stereo"
    )
    frame.sample_rate = sample_rate
    return frame


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


class FakeTrack:
    """Audio track fed by queued or pushed frames, blocking while empty."""

    kind = "audio"

    def __init__(self, frames: Sequence[Any] = (), end_after_frames: bool = False):
        self.readyState = "live"
        self._queue: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self._queue.put_nowait(frame)
        self._end_after_frames = end_after_frames
        self.drained = asyncio.Event()
        self.flushed = 0

    def push(self, *frames):
        for frame in frames:
            self._queue.put_nowait(frame)

    def flush(self) -> int:
        count = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            count += 1
        self.flushed += count
        return count

    async def recv(self):
        if self._queue.empty():
            self.drained.set()
            if self._end_after_frames:
                raise MediaStreamError
        frame = await self._queue.get()
        if frame is None:
            raise MediaStreamError
        await asyncio.sleep(0)
        return frame

    def stop(self):
        if self.readyState == "live":
            self.readyState = "ended"
            self._queue.put_nowait(None)


class FakePeerConnection:
    """Records the calls aiortc's RTCPeerConnection would receive.

    With ``consume=True`` every added track is read continuously once the
    answer is applied, as aiortc's RTP senders do.
    """

    def __init__(self, sdp: str = OFFER_SDP, fail_offer: bool = False, consume: bool = False):
        self._sdp = sdp
        self._fail_offer = fail_offer
        self._consume = consume
        self._readers: List[asyncio.Task] = []
        self.tracks: List[Any] = []
        self.sent_frames: List[Any] = []
        self.localDescription = None
        self.remoteDescription = None
        self.candidates: List[Any] = []
        self.closed = False

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        if self._fail_offer:
            raise RuntimeError("offer failed")
        return RTCSessionDescription(sdp=self._sdp, type="offer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if self._consume:
            self._readers = [asyncio.create_task(self._read(t)) for t in self.tracks]

    async def _read(self, track):
        while True:
            try:
                self.sent_frames.append(await track.recv())
            except MediaStreamError:
                return

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        for reader in self._readers:
            reader.cancel()


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


class FakeGateway(MessagingGateway):
    """In-memory gateway. Responders map a message type to a reply function."""

    def __init__(self, responders: Optional[Dict[str, Callable]] = None):
        self.responders: Dict[str, Callable] = dict(responders or {})
        self.sent: List[tuple] = []
        self.notified: List[tuple] = []

    async def send(self, destination: TabId, message: dict) -> Optional[dict]:
        self.sent.append((destination, message))
        responder = self.responders.get(message.get("type"))
        if responder is None:
            return None
        result = responder(destination, message)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def notify(self, destination: TabId, message: dict) -> None:
        self.notified.append((destination, message))

    def sent_of_type(self, msg_type: str) -> List[tuple]:
        return [(d, m) for d, m in self.sent if m.get("type") == msg_type]

    def notified_of_type(self, msg_type: str) -> List[tuple]:
        return [(d, m) for d, m in self.notified if m.get("type") == msg_type]


class FakeTabs(BrowserTabs):
    """Tab registry with scriptable failures."""

    def __init__(self, tabs: Sequence[TabInfo] = ()):
        self.tabs: Dict[TabId, TabInfo] = {t.id: t for t in tabs}
        self.grant = True
        self.fail_create = False
        self.fail_urls: set = set()
        self.navigations: List[tuple] = []
        self.injected: List[TabId] = []
        self.capture_requests: List[tuple] = []
        self.streams: List[MediaStream] = []
        self.track_factory: Callable[[], Any] = FakeTrack

    async def query(self, patterns):
        return [t for t in self.tabs.values() if url_matches(t.url, patterns)]

    async def get(self, tab_id):
        return self.tabs.get(tab_id)

    async def create(self, url):
        if self.fail_create:
            raise RuntimeError("Browser did not create a tab")
        tab = TabInfo(id=100 + len(self.tabs), url=url, title="New tab", status="complete")
        self.tabs[tab.id] = tab
        return tab

    async def navigate(self, tab_id, url):
        self.navigations.append((tab_id, url))
        if url in self.fail_urls:
            raise RuntimeError(f"navigation to {url} failed")
        self.tabs[tab_id].url = url
        self.tabs[tab_id].status = "complete"

    async def inject_agent(self, tab_id):
        self.injected.append(tab_id)
        return True

    async def capture_audio(self, tab_id, constraints: CaptureConstraints):
        self.capture_requests.append((tab_id, constraints))
        if not self.grant:
            return None
        stream = MediaStream([self.track_factory()])
        self.streams.append(stream)
        return stream


class ManualClock:
    """Virtual clock: sleeps return immediately, timers fire on advance()."""

    class _Timer:
        def __init__(self, when: float, callback: Callable[[], None]):
            self.when = when
            self.callback = callback
            self.cancelled = False

        def cancel(self):
            self.cancelled = True

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []
        self.timers: List[ManualClock._Timer] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)

    def call_later(self, seconds: float, callback: Callable[[], None]):
        timer = ManualClock._Timer(self.now + seconds, callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds: float):
        self.now += seconds
        due = [t for t in self.timers if t.when <= self.now and not t.cancelled]
        for timer in sorted(due, key=lambda t: t.when):
            self.timers.remove(timer)
            timer.callback()


class FakeRecorder:
    """Returns a fixed recording instead of reading a track."""

    def __init__(self, data: Optional[bytes]):
        self.data = data
        self.calls: List[tuple] = []

    async def record(self, tab_id, duration_ms):
        self.calls.append((tab_id, duration_ms))
        if self.data is None:
            return None
        return TrackRecording(data=self.data)

