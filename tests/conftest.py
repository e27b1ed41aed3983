import asyncio
import itertools

import pytest

from crypto.identity import Identity, MemoryKeyStore
from peer.broadcast import InMemoryMedium
from peer.connection import ConnectionManager
from peer.transport import SessionDescription
from protocol.signaling import SignalingChannel


# -----------------------------------------------------------------------------
# Loopback transport: two FakeTransports find each other through their SDP
# tokens and get a pair of in-process data channels once the answer lands.
# -----------------------------------------------------------------------------

class FakeChannel:
    def __init__(self, transport, label):
        self.transport = transport
        self.label = label
        self.ready_state = "connecting"
        self.remote = None
        self.sent = []

    def send(self, data):
        if self.ready_state != "open":
            raise RuntimeError("channel is not open")
        self.sent.append(data)
        remote = self.remote
        if remote is not None and not remote.transport.closed:
            asyncio.get_running_loop().call_soon(
                remote.transport.listener.on_channel_message, remote, data
            )


class FakeTransport:
    def __init__(self, network, listener):
        self.network = network
        self.listener = listener
        self.local_description = None
        self.remote_description = None
        self.channel = None
        self.candidates = []
        self.closed = False

    def create_data_channel(self, label):
        self.channel = FakeChannel(self, label)
        return self.channel

    async def create_offer(self):
        return SessionDescription("offer", f"fake-offer-{next(self.network.counter)}")

    async def create_answer(self):
        if self.remote_description is None:
            raise RuntimeError("no remote offer")
        return SessionDescription("answer", f"fake-answer-{next(self.network.counter)}")

    async def set_local_description(self, description):
        self.local_description = description
        self.network.by_sdp[description.sdp] = self
        if self.network.emit_candidates:
            self.listener.on_ice_candidate({
                "candidate": f"candidate:1 1 udp 1 127.0.0.1 9 typ host {description.sdp}",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            })

    async def set_remote_description(self, description):
        if self.network.fail_remote:
            raise RuntimeError("bad session description")
        self.remote_description = description
        if description.type == "answer":
            answerer = self.network.by_sdp.get(description.sdp)
            if answerer is not None:
                self.network.link(self, answerer)

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        if self.channel is not None:
            self.channel.ready_state = "closed"


class FakeNetwork:
    def __init__(self):
        self.by_sdp = {}
        self.transports = []
        self.counter = itertools.count()
        self.emit_candidates = True
        self.fail_remote = False

    def factory(self, listener):
        transport = FakeTransport(self, listener)
        self.transports.append(transport)
        return transport

    def link(self, offerer, answerer):
        local = offerer.channel
        remote = FakeChannel(answerer, local.label)
        local.remote, remote.remote = remote, local
        answerer.channel = remote
        asyncio.get_running_loop().call_soon(self._open, offerer, answerer, local, remote)

    @staticmethod
    def _open(offerer, answerer, local, remote):
        if offerer.closed or answerer.closed:
            return
        local.ready_state = remote.ready_state = "open"
        answerer.listener.on_data_channel(remote)
        answerer.listener.on_channel_open(remote)
        offerer.listener.on_channel_open(local)


# -----------------------------------------------------------------------------
# A party in a room: identity + signaling channel + connection manager
# -----------------------------------------------------------------------------

class Party:
    def __init__(self, medium, network, room, offer_timeout=None, identity=None):
        self.identity = identity or Identity(MemoryKeyStore()).load_or_create()
        self.received = []
        self.signaling = SignalingChannel(medium, room, self.identity.short_id, max_age=300)
        self.manager = ConnectionManager(
            self.identity,
            self.signaling,
            network.factory,
            context_salt=room,
            on_message=lambda peer_id, text, ok: self.received.append((peer_id, text, ok)),
            offer_timeout=offer_timeout,
        )
        self.manager.start()

    @property
    def id(self):
        return self.identity.short_id

    @property
    def pub(self):
        return self.identity.public_key_b64

    def session(self, peer_id):
        return self.manager.sessions.get(peer_id)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def settle(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def medium():
    return InMemoryMedium()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def identity():
    return Identity(MemoryKeyStore()).load_or_create()


@pytest.fixture
async def make_party(medium, network):
    parties = []

    def make(room="r1", **kwargs):
        party = Party(medium, network, room, **kwargs)
        parties.append(party)
        return party

    yield make
    for party in parties:
        await party.manager.close()


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def drain():
    return settle
