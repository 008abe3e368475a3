"""
Port onto the browser's tab API.

The bridge never touches the browser directly: tab queries, navigation, agent
injection and capture grants are requests to the extension shim, which is the
context registered as ``browser`` on the messaging gateway.
"""

import fnmatch
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

from audio_bridge.capture import CaptureConstraints, MediaStream, open_loopback_stream
from audio_bridge.messaging import MessagingGateway
from audio_bridge.models import TabId, TabInfo

logger = logging.getLogger(__name__)


def url_matches(url: str, patterns: Sequence[str]) -> bool:
    """Match a URL against extension-style patterns (``https://*.host/*``)."""
    return any(fnmatch.fnmatchcase(url or "", pattern) for pattern in patterns)


class BrowserTabs(ABC):
    """Tab operations the bridge needs from the browser."""

    @abstractmethod
    async def query(self, patterns: Sequence[str]) -> List[TabInfo]:
        """Return open tabs whose URL matches any of the patterns."""

    @abstractmethod
    async def get(self, tab_id: TabId) -> Optional[TabInfo]:
        """Return the tab, or None if it no longer exists."""

    @abstractmethod
    async def create(self, url: str) -> TabInfo:
        """Open a new tab at url."""

    @abstractmethod
    async def navigate(self, tab_id: TabId, url: str) -> None:
        """Point an existing tab at url."""

    @abstractmethod
    async def inject_agent(self, tab_id: TabId) -> bool:
        """Load the in-page agent into the tab."""

    @abstractmethod
    async def capture_audio(
        self, tab_id: TabId, constraints: CaptureConstraints
    ) -> Optional[MediaStream]:
        """Request a tab-scoped audio stream; None means the grant was refused."""


class ShimBrowser(BrowserTabs):
    """BrowserTabs implemented by requests to the extension shim."""

    def __init__(
        self,
        gateway: MessagingGateway,
        context: str = "browser",
        stream_factory: Optional[Callable[[], Optional[MediaStream]]] = None,
    ):
        self.gateway = gateway
        self.context = context
        self._stream_factory = stream_factory or open_loopback_stream

    async def query(self, patterns: Sequence[str]) -> List[TabInfo]:
        response = await self.gateway.send(
            self.context, {"type": "TABS_QUERY", "urls": list(patterns)}
        )
        tabs = [TabInfo.from_dict(t) for t in (response or {}).get("tabs", [])]
        # The shim may not filter; patterns are authoritative here
        return [t for t in tabs if url_matches(t.url, patterns)]

    async def get(self, tab_id: TabId) -> Optional[TabInfo]:
        response = await self.gateway.send(self.context, {"type": "TABS_GET", "tabId": tab_id})
        tab = (response or {}).get("tab")
        return TabInfo.from_dict(tab) if tab else None

    async def create(self, url: str) -> TabInfo:
        response = await self.gateway.send(self.context, {"type": "TABS_CREATE", "url": url})
        tab = (response or {}).get("tab")
        if not tab:
            raise RuntimeError(f"Browser did not create a tab for {url}")
        return TabInfo.from_dict(tab)

    async def navigate(self, tab_id: TabId, url: str) -> None:
        response = await self.gateway.send(
            self.context, {"type": "TABS_UPDATE", "tabId": tab_id, "url": url}
        )
        if not response or response.get("success") is False:
            error = (response or {}).get("error", "no response")
            raise RuntimeError(f"Failed to navigate tab {tab_id} to {url}: {error}")

    async def inject_agent(self, tab_id: TabId) -> bool:
        response = await self.gateway.send(
            self.context, {"type": "INJECT_AGENT", "tabId": tab_id}
        )
        return bool(response and response.get("success"))

    async def capture_audio(
        self, tab_id: TabId, constraints: CaptureConstraints
    ) -> Optional[MediaStream]:
        response = await self.gateway.send(
            self.context,
            {"type": "TAB_CAPTURE", "tabId": tab_id, "constraints": constraints.to_dict()},
        )
        if not response or not response.get("granted"):
            logger.warning(f"Capture grant refused for tab {tab_id}")
            return None
        return self._stream_factory()
