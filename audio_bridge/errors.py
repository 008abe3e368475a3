"""
Exception taxonomy for the audio bridge.

Only CapturePermissionError and BusyError ever reach a caller. TransportError
and DecodeError are raised internally and recovered where they occur.
"""


class BridgeError(Exception):
    """Base class for all audio bridge errors."""


class CapturePermissionError(BridgeError, PermissionError):
    """The browser did not grant an audio stream for the tab."""

    def __init__(self, tab_id):
        super().__init__(f"Failed to capture audio stream for tab {tab_id}")
        self.tab_id = tab_id


class BusyError(BridgeError):
    """A batch is already running."""

    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} is already running")
        self.batch_id = batch_id


class TransportError(BridgeError):
    """A destination context could not be reached."""


class DecodeError(BridgeError):
    """A recorded buffer could not be decoded into samples."""
