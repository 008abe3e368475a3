"""
Waveform peak extraction for compact visual rendering of recordings.
"""

import io
import logging
from typing import Optional, Tuple

import numpy as np
from scipy.io import wavfile

from audio_bridge.errors import DecodeError
from audio_bridge.models import WaveformResult

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS = 1000


def decode_wav(data: bytes) -> Tuple[int, np.ndarray]:
    """
    Decode a WAV buffer into float samples.

    Returns:
        (sample_rate, samples) with samples shaped (frames, channels) in [-1, 1]

    Raises:
        DecodeError: The buffer is not a readable WAV file
    """
    try:
        sample_rate, raw = wavfile.read(io.BytesIO(data))
    except Exception as e:
        raise DecodeError(f"Could not decode audio buffer: {e}") from e

    if raw.ndim == 1:
        raw = raw[:, np.newaxis]

    if raw.dtype == np.uint8:
        samples = (raw.astype(np.float32) - 128.0) / 128.0
    elif np.issubdtype(raw.dtype, np.integer):
        samples = raw.astype(np.float32) / float(-np.iinfo(raw.dtype).min)
    else:
        samples = raw.astype(np.float32)

    return int(sample_rate), samples


def compute_peaks(
    samples: np.ndarray, columns: int = DEFAULT_COLUMNS
) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Compute per-column positive and negative peaks of a mono signal.

    Each column covers floor(len(samples) / columns) samples; trailing samples
    that do not fill a column are ignored. Signals shorter than ``columns``
    get one column per sample. Both peaks are floored at zero, and the result
    is normalized so the largest excursion is exactly 1.0 unless the signal
    is silent.

    Returns:
        (positive_peaks, negative_peaks, samples_per_column)
    """
    total = len(samples)
    samples_per_column = total // columns

    if total == 0:
        return np.zeros(0), np.zeros(0), 0

    if samples_per_column == 0:
        windows = samples.reshape(total, 1)
    else:
        windows = samples[: samples_per_column * columns].reshape(columns, samples_per_column)

    positive = np.maximum(windows.max(axis=1), 0.0).astype(np.float64)
    negative = np.abs(np.minimum(windows.min(axis=1), 0.0)).astype(np.float64)

    global_max = max(positive.max(), negative.max())
    if global_max > 0:
        positive = positive / global_max
        negative = negative / global_max

    return positive, negative, samples_per_column


class WaveformExtractor:
    """Turns a recorded buffer into a WaveformResult."""

    def __init__(self, columns: int = DEFAULT_COLUMNS):
        self.columns = columns

    def extract(self, data: bytes) -> Optional[WaveformResult]:
        """Decode and summarize a recording; None if it cannot be decoded."""
        try:
            sample_rate, samples = decode_wav(data)
        except DecodeError as e:
            logger.warning(f"Waveform extraction skipped: {e}")
            return None

        # First channel only, matching what the studio renders
        channel = samples[:, 0] if samples.shape[1] else np.zeros(0, dtype=np.float32)
        positive, negative, samples_per_column = compute_peaks(channel, self.columns)

        return WaveformResult(
            positive_peaks=positive.tolist(),
            negative_peaks=negative.tolist(),
            duration=len(channel) / sample_rate if sample_rate else 0.0,
            sample_rate=sample_rate,
            samples_per_column=samples_per_column,
        )
