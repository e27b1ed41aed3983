import logging

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from peer.transport import SessionDescription

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]


class WebRTCDataChannel:
    def __init__(self, channel):
        self._channel = channel

    @property
    def label(self):
        return self._channel.label

    @property
    def ready_state(self):
        return self._channel.readyState

    def send(self, data):
        self._channel.send(data)


class WebRTCTransport:
    """
    Transport backed by an aiortc RTCPeerConnection.

    aiortc gathers ICE candidates while setting the local description and
    puts them into the SDP, so on_ice_candidate is only fired for candidates
    the connection reports individually. Candidates received from the peer
    are applied either way.
    """

    def __init__(self, listener, ice_servers=None):
        self.listener = listener
        servers = [RTCIceServer(urls=url) for url in (ice_servers or DEFAULT_ICE_SERVERS)]
        self.pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))
        self.pc.on("datachannel", self._on_datachannel)
        self.pc.on("connectionstatechange", self._on_connection_state)
        self.pc.on("icecandidate", self._on_icecandidate)

    @property
    def local_description(self):
        desc = self.pc.localDescription
        if desc is None:
            return None
        return SessionDescription(type=desc.type, sdp=desc.sdp)

    def create_data_channel(self, label):
        return self._bind(self.pc.createDataChannel(label, ordered=True))

    async def create_offer(self):
        offer = await self.pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self):
        answer = await self.pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description):
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate):
        line = candidate["candidate"]
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        if not line:
            # End-of-candidates marker
            return
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)

    async def close(self):
        await self.pc.close()

    def _bind(self, channel):
        wrapped = WebRTCDataChannel(channel)

        @channel.on("open")
        def on_open():
            self.listener.on_channel_open(wrapped)

        @channel.on("message")
        def on_message(message):
            self.listener.on_channel_message(wrapped, message)

        return wrapped

    def _on_datachannel(self, channel):
        wrapped = self._bind(channel)
        self.listener.on_data_channel(wrapped)
        if channel.readyState == "open":
            self.listener.on_channel_open(wrapped)

    def _on_icecandidate(self, candidate):
        if candidate is None:
            return
        self.listener.on_ice_candidate({
            "candidate": "candidate:" + candidate_to_sdp(candidate),
            "sdpMid": candidate.sdpMid,
            "sdpMLineIndex": candidate.sdpMLineIndex,
        })

    def _on_connection_state(self):
        state = self.pc.connectionState
        logger.debug(f"Connection state is {state}")
        if state == "failed":
            self.listener.on_failed("ICE connection failed")


def webrtc_factory(ice_servers=None):
    def factory(listener):
        return WebRTCTransport(listener, ice_servers=ice_servers)
    return factory
