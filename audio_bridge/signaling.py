"""
Peer connection signaling between a captured tab and the studio tab.

The bridge is always the offerer. The connection sends relayed copies of the
captured tracks, leaving recordings their own full copy. aiortc gathers ICE
candidates while the local description is set, so each ``a=candidate`` line of
that description is forwarded to the studio as its own ICE_CANDIDATE message.
"""

import logging
from typing import Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from audio_bridge.capture import MediaStream
from audio_bridge.messaging import MessagingGateway
from audio_bridge.models import PeerLink, TabId

logger = logging.getLogger(__name__)

DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def local_candidates(sdp: str) -> List[dict]:
    """Extract browser-style candidate dicts from a session description."""
    candidates = []
    sections: List[List[str]] = []

    for line in sdp.splitlines():
        if line.startswith("m="):
            sections.append([])
        elif sections:
            sections[-1].append(line.strip())

    for index, lines in enumerate(sections):
        mid = next((line[len("a=mid:"):] for line in lines if line.startswith("a=mid:")), None)
        for line in lines:
            if line.startswith("a=candidate:"):
                candidates.append(
                    {"candidate": line[len("a="):], "sdpMid": mid, "sdpMLineIndex": index}
                )
    return candidates


class SignalingBridge:
    """Negotiates one peer connection per captured tab."""

    def __init__(
        self,
        gateway: MessagingGateway,
        stun_url: str = DEFAULT_STUN_URL,
        peer_factory: Optional[Callable[[], RTCPeerConnection]] = None,
    ):
        self.gateway = gateway
        self.stun_url = stun_url
        self._peer_factory = peer_factory or self._create_peer_connection
        self._links: Dict[TabId, PeerLink] = {}

    def _create_peer_connection(self) -> RTCPeerConnection:
        return RTCPeerConnection(
            configuration=RTCConfiguration(iceServers=[RTCIceServer(urls=self.stun_url)])
        )

    def get(self, tab_id: TabId) -> Optional[PeerLink]:
        return self._links.get(tab_id)

    async def establish(
        self, tab_id: TabId, stream: MediaStream, studio_tab_id: TabId
    ) -> PeerLink:
        """
        Offer the tab's stream to the studio tab.

        Args:
            tab_id: Captured tab the stream belongs to
            stream: Stream whose tracks are attached to the connection
            studio_tab_id: Context that receives the offer and candidates

        Returns:
            The new PeerLink, awaiting an answer
        """
        # No renegotiation: a fresh handshake always replaces the old link
        await self.close(tab_id)

        pc = self._peer_factory()
        link = PeerLink(tab_id=tab_id, connection=pc, studio_tab_id=studio_tab_id)
        for track in stream.get_tracks():
            relayed = stream.subscribe(track)
            link.tracks.append(relayed)
            pc.addTrack(relayed)

        self._links[tab_id] = link

        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception:
            await self.close(tab_id)
            raise

        link.local_description = pc.localDescription
        logger.info(f"Sending stream offer for tab {tab_id} to studio tab {studio_tab_id}")
        await self.gateway.notify(
            studio_tab_id,
            {
                "type": "AUDIO_STREAM_OFFER",
                "tabId": tab_id,
                "offer": description_to_dict(pc.localDescription),
            },
        )

        for candidate in local_candidates(pc.localDescription.sdp):
            await self.gateway.notify(
                studio_tab_id, {"type": "ICE_CANDIDATE", "tabId": tab_id, "candidate": candidate}
            )

        return link

    async def apply_answer(self, tab_id: TabId, answer: dict) -> bool:
        """Complete the handshake with the studio's answer."""
        link = self._links.get(tab_id)
        if link is None:
            logger.warning(f"Answer for tab {tab_id} without a pending connection")
            return False

        description = RTCSessionDescription(sdp=answer["sdp"], type=answer.get("type", "answer"))
        await link.connection.setRemoteDescription(description)
        link.remote_description = description
        logger.info(f"Peer connection for tab {tab_id} answered")

        pending, link.pending_candidates = link.pending_candidates, []
        for candidate in pending:
            await self._add_candidate(link, candidate)
        return True

    async def add_remote_candidate(self, tab_id: TabId, candidate: dict) -> bool:
        """Add a studio-side candidate, queueing it until the answer arrives."""
        link = self._links.get(tab_id)
        if link is None:
            return False

        if not link.is_answered:
            link.pending_candidates.append(candidate)
            return True

        await self._add_candidate(link, candidate)
        return True

    async def _add_candidate(self, link: PeerLink, candidate: dict):
        value = candidate.get("candidate") or ""
        if not value:
            return  # end-of-candidates marker

        if value.startswith("candidate:"):
            value = value[len("candidate:"):]
        ice = candidate_from_sdp(value)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await link.connection.addIceCandidate(ice)

    async def close(self, tab_id: TabId):
        """Tear down the tab's peer connection, if any."""
        link = self._links.pop(tab_id, None)
        if link is not None:
            await link.connection.close()
            # Closing the connection leaves its relay subscriptions registered
            for track in link.tracks:
                track.stop()
            logger.info(f"Closed peer connection for tab {tab_id}")
