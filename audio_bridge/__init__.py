"""
Audio Bridge
Captures a music tab's audio, relays it to the studio app over a peer
connection, and samples whole playlists in unattended batches.
"""

from .errors import BridgeError, BusyError, CapturePermissionError, DecodeError, TransportError
from .models import BatchJob, BatchState, CaptureSession, PeerLink, TrackRecording, WaveformResult
from .orchestrator import BatchOrchestrator, CancellationToken
from .sessions import CaptureSessionManager
from .waveform import WaveformExtractor

__all__ = [
    "BatchJob",
    "BatchOrchestrator",
    "BatchState",
    "BridgeError",
    "BusyError",
    "CancellationToken",
    "CapturePermissionError",
    "CaptureSession",
    "CaptureSessionManager",
    "DecodeError",
    "PeerLink",
    "TrackRecording",
    "TransportError",
    "WaveformExtractor",
    "WaveformResult",
]
