"""
Unit tests for the fixed-duration track recorder.

Recording length is driven by the virtual clock. Frames are pushed into the
fake track once the recording is under way, as a live capture would deliver
them.
"""

import asyncio

import numpy as np
import pytest

from audio_bridge.recorder import TrackRecorder, frame_to_samples
from audio_bridge.sessions import CaptureSessionManager
from audio_bridge.signaling import SignalingBridge
from audio_bridge.tests.fakes import (
    OFFER_SDP,
    SOURCE_TAB,
    FakePeerConnection,
    FakeTrack,
    make_frame,
)
from audio_bridge.waveform import decode_wav


def _frames(count: int, samples_per_frame: int = 960, start: int = 1):
    frames = []
    for i in range(start, start + count):
        block = np.full((samples_per_frame, 2), i * 1000, dtype=np.int16)
        frames.append(make_frame(block))
    return frames


async def _settle(rounds: int = 20):
    """Let the relay hand queued frames to every reader."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _capture_with(sessions, tabs, track):
    tabs.track_factory = lambda: track
    await sessions.start_capture(SOURCE_TAB)


@pytest.mark.asyncio
class TestRecord:
    """Unit tests for ``TrackRecorder.record()``."""

    async def test_returns_none_without_session(self, sessions, clock):
        """A tab that is not capturing yields no recording and no timer."""
        recorder = TrackRecorder(sessions, clock=clock)
        assert await recorder.record(SOURCE_TAB, 30_000) is None
        assert clock.timers == []

    async def test_records_until_timer_fires(self, sessions, tabs, clock):
        """Frames arriving inside the window are concatenated into one WAV."""
        track = FakeTrack()
        await _capture_with(sessions, tabs, track)
        recorder = TrackRecorder(sessions, clock=clock)

        task = asyncio.create_task(recorder.record(SOURCE_TAB, 30_000))
        await _settle()
        track.push(*_frames(3))
        await _settle()
        assert not task.done()
        assert clock.timers[0].when == pytest.approx(30.0)

        clock.advance(30.0)
        recording = await task

        assert recording is not None
        assert recording.mime_type == "audio/wav"
        sample_rate, samples = decode_wav(recording.data)
        assert sample_rate == 48000
        assert samples.shape == (3 * 960, 2)
        # Chunks are concatenated in arrival order
        assert samples[0, 0] < samples[-1, 0]
        await sessions.stop_all()

    async def test_track_ending_early_still_waits_for_timer(self, sessions, tabs, clock):
        """The recording keeps the frames it got and still ends on the timer."""
        track = FakeTrack()
        await _capture_with(sessions, tabs, track)
        recorder = TrackRecorder(sessions, clock=clock)

        task = asyncio.create_task(recorder.record(SOURCE_TAB, 5_000))
        await _settle()
        track.push(*_frames(2), None)
        await _settle()
        assert not task.done()

        clock.advance(5.0)
        recording = await task
        _, samples = decode_wav(recording.data)
        assert samples.shape[0] == 2 * 960

    async def test_no_frames_yields_empty_wav(self, sessions, tabs, clock):
        """A silent window still yields a valid, empty WAV."""
        track = FakeTrack()
        await _capture_with(sessions, tabs, track)
        recorder = TrackRecorder(sessions, clock=clock)

        task = asyncio.create_task(recorder.record(SOURCE_TAB, 1_000))
        await _settle()
        clock.advance(1.0)
        recording = await task

        _, samples = decode_wav(recording.data)
        assert samples.shape[0] == 0
        await sessions.stop_all()

    async def test_audio_buffered_before_start_is_discarded(self, sessions, tabs, clock):
        """Blocks captured before the window opens never lead the recording."""
        track = FakeTrack(_frames(3))
        await _capture_with(sessions, tabs, track)
        recorder = TrackRecorder(sessions, clock=clock)

        task = asyncio.create_task(recorder.record(SOURCE_TAB, 1_000))
        await _settle()
        track.push(*_frames(1, start=9))
        await _settle()
        clock.advance(1.0)
        recording = await task

        assert track.flushed == 3
        _, samples = decode_wav(recording.data)
        assert samples.shape[0] == 960
        assert np.all(samples == 9000)
        await sessions.stop_all()

    async def test_consecutive_recordings_do_not_share_audio(self, sessions, tabs, clock):
        """Audio played between two recordings belongs to neither of them."""
        track = FakeTrack()
        await _capture_with(sessions, tabs, track)
        recorder = TrackRecorder(sessions, clock=clock)

        first = asyncio.create_task(recorder.record(SOURCE_TAB, 1_000))
        await _settle()
        track.push(*_frames(1, start=1))
        await _settle()
        clock.advance(1.0)
        await first

        track.push(*_frames(2, start=5))
        await _settle()

        second = asyncio.create_task(recorder.record(SOURCE_TAB, 1_000))
        await _settle()
        track.push(*_frames(1, start=8))
        await _settle()
        clock.advance(1.0)
        recording = await second

        _, samples = decode_wav(recording.data)
        assert samples.shape[0] == 960
        assert np.all(samples == 8000)
        await sessions.stop_all()


@pytest.mark.asyncio
class TestRecordWhileStreaming:
    """The recorder and a connected studio peer read the same capture."""

    @pytest.fixture()
    def consuming_peers(self):
        return []

    @pytest.fixture()
    def streaming_sessions(self, tabs, gateway, consuming_peers):
        def factory():
            pc = FakePeerConnection(consume=True)
            consuming_peers.append(pc)
            return pc

        return CaptureSessionManager(tabs, SignalingBridge(gateway, peer_factory=factory))

    async def test_peer_and_recorder_both_receive_every_frame(
        self, streaming_sessions, tabs, clock, consuming_peers
    ):
        track = FakeTrack()
        await _capture_with(streaming_sessions, tabs, track)
        await streaming_sessions.signaling.apply_answer(
            SOURCE_TAB, {"sdp": OFFER_SDP, "type": "answer"}
        )
        await _settle()
        recorder = TrackRecorder(streaming_sessions, clock=clock)

        task = asyncio.create_task(recorder.record(SOURCE_TAB, 1_000))
        await _settle()
        track.push(*_frames(6))
        await _settle(60)
        clock.advance(1.0)
        recording = await task

        _, samples = decode_wav(recording.data)
        assert samples.shape[0] == 6 * 960
        assert [int(s) for s in samples[::960, 0]] == [1000, 2000, 3000, 4000, 5000, 6000]

        peer = consuming_peers[0]
        assert len(peer.sent_frames) == 6
        await streaming_sessions.stop_all()
        assert peer.closed


def test_frame_to_samples_packed_stereo():
    """Test conversion of a packed stereo frame to samples."""
    block = np.arange(20, dtype=np.int16).reshape(10, 2)
    samples = frame_to_samples(make_frame(block))
    assert samples.shape == (10, 2)
    assert samples.dtype == np.int16
    assert np.array_equal(samples, block)
