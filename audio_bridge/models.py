"""
Data models shared across the bridge.

Wire dictionaries use the camelCase keys the browser side expects, so every
model that crosses the gateway has a to_dict()/from_dict() pair.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

TabId = Union[int, str]


class BatchState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class TabInfo:
    """A browser tab as reported by the extension shim."""

    id: TabId
    url: str = ""
    title: str = ""
    status: str = "loading"  # "loading" | "complete"

    @classmethod
    def from_dict(cls, data: dict) -> "TabInfo":
        return cls(
            id=data["id"],
            url=data.get("url") or "",
            title=data.get("title") or "",
            status=data.get("status") or "loading",
        )


@dataclass
class TrackInfo:
    """Track metadata as listed by the in-page agent."""

    id: str
    name: str = ""
    artist: str = ""
    uri: str = ""
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "artist": self.artist,
            "uri": self.uri,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrackInfo":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            artist=data.get("artist", ""),
            uri=data.get("uri", ""),
            duration_ms=int(data.get("duration_ms") or 0),
        )


@dataclass
class PeerLink:
    """Peer connection negotiated for one captured tab."""

    tab_id: TabId
    connection: Any  # aiortc.RTCPeerConnection
    studio_tab_id: Optional[TabId] = None
    local_description: Any = None
    remote_description: Any = None
    # Remote ICE candidates that arrived before the answer was applied
    pending_candidates: List[dict] = field(default_factory=list)
    # Relayed copies of the stream handed to the connection
    tracks: List[Any] = field(default_factory=list)

    @property
    def is_answered(self) -> bool:
        return self.remote_description is not None


@dataclass
class CaptureSession:
    """A live capture of one tab's audio output."""

    tab_id: TabId
    stream: Any  # audio_bridge.capture.MediaStream
    connection: Optional[PeerLink] = None


@dataclass
class TrackRecording:
    """Encoded audio produced by the recorder."""

    data: bytes
    mime_type: str = "audio/wav"


@dataclass
class WaveformResult:
    """Normalized peak summary of a recording."""

    positive_peaks: List[float]
    negative_peaks: List[float]
    duration: float
    sample_rate: int
    samples_per_column: int

    @property
    def peaks(self) -> List[List[float]]:
        return [self.positive_peaks, self.negative_peaks]

    def to_dict(self) -> dict:
        return {
            "peaks": self.peaks,
            "duration": self.duration,
            "sampleRate": self.sample_rate,
            "samplesPerColumn": self.samples_per_column,
        }


@dataclass
class BatchJob:
    """The process-wide batch currently being worked on."""

    id: str
    playlist_ids: List[str]
    state: BatchState = BatchState.RUNNING
    processed: int = 0
    total: int = 0
    start_time: float = field(default_factory=time.time)
    next_playlist: int = 0
    # Set once the source tab is located and capturing
    started: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def queue_length(self) -> int:
        return max(0, len(self.playlist_ids) - self.next_playlist)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "playlistIds": list(self.playlist_ids),
            "state": self.state.value,
            "processed": self.processed,
            "total": self.total,
            "startTime": self.start_time,
        }
