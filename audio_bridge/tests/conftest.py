"""Shared fixtures for the audio bridge test suite."""

from __future__ import annotations

from typing import List

import pytest

from audio_bridge.config import BridgeSettings
from audio_bridge.models import TabInfo
from audio_bridge.sessions import CaptureSessionManager
from audio_bridge.signaling import SignalingBridge
from audio_bridge.tests.fakes import (
    SOURCE_TAB,
    STUDIO_TAB,
    FakeGateway,
    FakePeerConnection,
    FakeTabs,
    ManualClock,
)


@pytest.fixture()
def settings() -> BridgeSettings:
    return BridgeSettings(
        source_base_url="https://open.spotify.com",
        source_tab_patterns=["https://open.spotify.com/*"],
        studio_tab_patterns=["http://localhost:3000/*", "https://*.vercel.app/*"],
    )


@pytest.fixture()
def source_tab() -> TabInfo:
    return TabInfo(id=SOURCE_TAB, url="https://open.spotify.com/", title="Spotify", status="complete")


@pytest.fixture()
def studio_tab() -> TabInfo:
    return TabInfo(id=STUDIO_TAB, url="http://localhost:3000/studio", title="Studio", status="complete")


@pytest.fixture()
def tabs(source_tab, studio_tab) -> FakeTabs:
    return FakeTabs([source_tab, studio_tab])


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def peers() -> List[FakePeerConnection]:
    return []


@pytest.fixture()
def signaling(gateway, peers) -> SignalingBridge:
    def factory():
        pc = FakePeerConnection()
        peers.append(pc)
        return pc

    return SignalingBridge(gateway, peer_factory=factory)


@pytest.fixture()
def sessions(tabs, signaling) -> CaptureSessionManager:
    return CaptureSessionManager(tabs, signaling)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()
