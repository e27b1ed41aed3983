import asyncio

import pytest

from crypto.encrypt import EncryptedPayload, encrypt
from peer.connection import KEY_NOT_READY_TEXT, UNDECRYPTABLE_TEXT, PeerState
from protocol.errors import KeyAgreementError, NoActiveChannel
from protocol.message import now_ms

pytestmark = pytest.mark.asyncio


def ready(*pairs):
    def check():
        for party, peer in pairs:
            session = party.session(peer.id)
            if session is None or not session.can_send:
                return False
        return True
    return check


async def connected_pair(make_party, eventually, room="r1"):
    a = make_party(room)
    b = make_party(room)
    await b.manager.connect(a.id, a.pub)
    await eventually(ready((a, b), (b, a)))
    return a, b


async def write_signal(medium, to_party, record):
    record.setdefault("ts", now_ms())
    await medium.write(to_party.signaling.mailbox(to_party.id), record)


# -----------------------------------------------------------------------------
# Full exchange
# -----------------------------------------------------------------------------

async def test_connect_answer_and_decrypt_first_message(make_party, eventually):
    a, b = await connected_pair(make_party, eventually)

    sa, sb = a.session(b.id), b.session(a.id)
    assert sa.state is PeerState.CONNECTED
    assert sb.state is PeerState.CONNECTED
    assert sa.session_key == sb.session_key

    assert a.manager.send_text("hi") == b.id
    await eventually(lambda: b.received)
    assert b.received == [(a.id, "hi", True)]

    b.manager.send_text("hello back", peer_id=a.id)
    await eventually(lambda: a.received)
    assert a.received == [(b.id, "hello back", True)]


async def test_ice_candidates_are_exchanged(make_party, eventually, network):
    a, b = await connected_pair(make_party, eventually)
    await eventually(lambda: a.session(b.id).transport.candidates and b.session(a.id).transport.candidates)
    assert a.session(b.id).transport.candidates[0]["candidate"].startswith("candidate:")


async def test_plaintext_never_reaches_the_medium(make_party, eventually, medium):
    a, b = await connected_pair(make_party, eventually)
    a.manager.send_text("secret words")
    await eventually(lambda: b.received)

    for party in (a, b):
        for record in medium.items(party.signaling.mailbox(party.id)).values():
            assert "secret words" not in str(record)
    wire = a.session(b.id).data_channel.sent[0]
    assert "secret words" not in wire


async def test_session_key_learned_from_answer(make_party, eventually):
    a = make_party()
    b = make_party()
    session = await b.manager.connect(a.id)
    assert session.session_key is None

    await eventually(ready((a, b), (b, a)))
    assert b.session(a.id).session_key == a.session(b.id).session_key


# -----------------------------------------------------------------------------
# Signaling events that must not create or disturb sessions
# -----------------------------------------------------------------------------

async def test_ice_for_unknown_peer_is_dropped(make_party, medium, drain):
    a = make_party()
    await write_signal(medium, a, {"type": "ice", "from": "ghost", "candidate": {"candidate": "candidate:x"}})
    await drain()
    assert a.manager.sessions == {}


async def test_answer_for_unknown_peer_is_dropped(make_party, medium, drain, identity):
    a = make_party()
    await write_signal(medium, a, {"type": "answer", "from": "ghost", "sdp": "v=0", "pub": identity.public_key_b64})
    await drain()
    assert a.manager.sessions == {}


async def test_own_events_are_ignored(make_party, medium, drain):
    a = make_party()
    await write_signal(medium, a, {"type": "offer", "from": a.id, "sdp": "v=0", "pub": a.pub})
    await drain()
    assert a.manager.sessions == {}


async def test_offer_with_bad_public_key_records_no_session(make_party, medium, drain):
    a = make_party()
    await write_signal(medium, a, {"type": "offer", "from": "mallory", "sdp": "v=0", "pub": "AAAA"})
    await drain()
    assert a.manager.sessions == {}


async def test_connect_with_bad_public_key_raises(make_party):
    a = make_party()
    with pytest.raises(KeyAgreementError):
        await a.manager.connect("bob", "AAAA")
    assert a.manager.sessions == {}


async def test_redelivered_offer_does_not_replace_session(make_party, medium, eventually, drain):
    a, b = await connected_pair(make_party, eventually)
    session = a.session(b.id)

    medium.redeliver(a.signaling.mailbox(a.id))
    await drain()

    assert a.session(b.id) is session
    assert session.state is PeerState.CONNECTED


async def test_answer_in_wrong_state_is_dropped(make_party, medium, eventually, drain, identity):
    a = make_party()
    await write_signal(medium, a, {"type": "offer", "from": "ghost", "sdp": "v=0"})
    await eventually(lambda: a.session("ghost") and a.session("ghost").state is PeerState.CONNECTED)
    transport = a.session("ghost").transport

    await write_signal(medium, a, {"type": "answer", "from": "ghost", "sdp": "v=0", "pub": identity.public_key_b64})
    await drain()
    await a.session("ghost").join()

    assert transport.remote_description.type == "offer"
    assert a.session("ghost").state is PeerState.CONNECTED


# -----------------------------------------------------------------------------
# Keys and payloads
# -----------------------------------------------------------------------------

async def test_message_without_session_key_is_a_placeholder(make_party, medium, eventually):
    a = make_party()
    await write_signal(medium, a, {"type": "offer", "from": "ghost", "sdp": "v=0"})
    await eventually(lambda: a.session("ghost") and a.session("ghost").state is PeerState.CONNECTED)
    session = a.session("ghost")
    assert session.session_key is None

    session.on_channel_message(None, encrypt(b"k" * 32, "hi").to_wire())
    await session.join()
    assert a.received == [("ghost", KEY_NOT_READY_TEXT, False)]


async def test_open_channel_without_key_cannot_send(make_party, medium, eventually):
    a = make_party()
    await write_signal(medium, a, {"type": "offer", "from": "ghost", "sdp": "v=0"})
    await eventually(lambda: a.session("ghost") and a.session("ghost").state is PeerState.CONNECTED)
    session = a.session("ghost")
    channel = session.transport.create_data_channel("chat")
    channel.ready_state = "open"
    session.on_channel_open(channel)
    await session.join()

    assert session.channel_open
    with pytest.raises(NoActiveChannel):
        a.manager.send_text("hi")
    assert channel.sent == []


async def test_send_without_any_channel(make_party):
    a = make_party()
    with pytest.raises(NoActiveChannel):
        a.manager.send_text("hi")
    with pytest.raises(NoActiveChannel):
        a.manager.send_text("hi", peer_id="bob")


async def test_tampered_message_is_shown_undecryptable(make_party, eventually):
    a, b = await connected_pair(make_party, eventually)
    sb = b.session(a.id)

    good = encrypt(sb.session_key, "pay 10")
    flipped = bytearray(good.ciphertext)
    flipped[-1] ^= 0xFF
    sb.on_channel_message(None, EncryptedPayload(good.nonce, bytes(flipped)).to_wire())
    sb.on_channel_message(None, "not even json")
    await sb.join()

    assert b.received == [(a.id, UNDECRYPTABLE_TEXT, False), (a.id, UNDECRYPTABLE_TEXT, False)]
    assert sb.state is PeerState.CONNECTED and sb.channel_open

    a.manager.send_text("still fine")
    await eventually(lambda: len(b.received) == 3)
    assert b.received[-1] == (a.id, "still fine", True)


async def test_different_rooms_derive_different_keys(make_party, eventually):
    a1, b1 = await connected_pair(make_party, eventually, room="r1")
    a2 = make_party("r2", identity=a1.identity)
    b2 = make_party("r2", identity=b1.identity)
    await b2.manager.connect(a2.id, a2.pub)
    await eventually(ready((a2, b2), (b2, a2)))
    assert a1.session(b1.id).session_key != a2.session(b2.id).session_key


# -----------------------------------------------------------------------------
# Races, timeouts and failures
# -----------------------------------------------------------------------------

async def test_simultaneous_connect_converges_on_one_channel(make_party, eventually, network):
    a = make_party()
    b = make_party()
    await a.manager.connect(b.id, b.pub)
    await b.manager.connect(a.id, a.pub)
    small, large = sorted([a, b], key=lambda p: p.id)

    await eventually(ready((a, b), (b, a)))

    assert list(small.manager.sessions) == [large.id]
    assert list(large.manager.sessions) == [small.id]
    # The larger id kept its own offer; the smaller one answered it.
    assert large.session(small.id).transport.local_description.type == "offer"
    assert small.session(large.id).transport.local_description.type == "answer"
    await eventually(lambda: sum(1 for t in network.transports if t.closed) == 1)
    assert len(network.transports) == 3

    small.manager.send_text("one channel")
    await eventually(lambda: large.received)
    assert large.received == [(small.id, "one channel", True)]


async def test_offer_older_than_accepted_answer_is_ignored(make_party, medium, eventually, drain):
    a, b = await connected_pair(make_party, eventually)
    session = b.session(a.id)
    assert session.answer_ts is not None

    await write_signal(medium, b, {"type": "offer", "from": a.id, "sdp": "v=0", "pub": a.pub,
                                   "ts": session.answer_ts - 1})
    await drain()
    assert b.session(a.id) is session


async def test_new_offer_replaces_existing_session(make_party, eventually, network):
    a, b = await connected_pair(make_party, eventually)
    old = a.session(b.id)

    await b.manager.connect(a.id, a.pub)
    await eventually(lambda: a.session(b.id) is not old and ready((a, b), (b, a))())

    await eventually(lambda: old.transport.closed)
    assert old.state is PeerState.CLOSED
    assert len(a.manager.sessions) == 1


async def test_reconnect_retires_own_session(make_party, eventually):
    a, b = await connected_pair(make_party, eventually)
    old = b.session(a.id)

    new = await b.manager.connect(a.id, a.pub)

    assert b.session(a.id) is new
    await eventually(lambda: old.transport.closed)
    assert old.state is PeerState.CLOSED


def transports_of(network, party):
    return [t for t in network.transports if t.listener.manager is party.manager]


async def test_reconnect_racing_inbound_offer_tracks_every_transport(make_party, medium, eventually, network):
    a, b = await connected_pair(make_party, eventually)

    # The offer is delivered on the loop while connect() swaps b's session.
    await write_signal(medium, b, {"type": "offer", "from": a.id, "sdp": "v=0", "pub": a.pub})
    await b.manager.connect(a.id, a.pub)

    def untracked():
        tracked = [s.transport for s in b.manager.sessions.values()]
        return [t for t in transports_of(network, b) if not t.closed and t not in tracked]

    await eventually(lambda: not untracked())
    assert len(b.manager.sessions) == 1

    await b.manager.close()
    assert all(t.closed for t in transports_of(network, b))


async def test_candidates_before_answer_are_buffered(make_party, medium, eventually, identity):
    a = make_party()
    session = await a.manager.connect("ghost", identity.public_key_b64)
    await eventually(lambda: session.state is PeerState.AWAITING_ANSWER)

    await write_signal(medium, a, {"type": "ice", "from": "ghost",
                                   "candidate": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host"}})
    await eventually(lambda: session.pending_candidates)
    assert session.transport.candidates == []

    await write_signal(medium, a, {"type": "answer", "from": "ghost", "sdp": "v=0", "pub": identity.public_key_b64})
    await eventually(lambda: session.state is PeerState.CONNECTED)
    await session.join()

    assert session.pending_candidates == []
    assert [c["candidate"] for c in session.transport.candidates] == ["candidate:1 1 udp 1 10.0.0.1 9 typ host"]


async def test_unanswered_offer_times_out(make_party, eventually, identity):
    a = make_party(offer_timeout=0.05)
    session = await a.manager.connect("ghost", identity.public_key_b64)

    await eventually(lambda: session.state is PeerState.FAILED)
    assert session.transport.closed
    assert a.session("ghost") is session


async def test_answer_cancels_timeout(make_party, eventually):
    a = make_party(offer_timeout=0.2)
    b = make_party(offer_timeout=0.2)
    await b.manager.connect(a.id, a.pub)
    await eventually(ready((a, b), (b, a)))
    await asyncio.sleep(0.3)
    assert b.session(a.id).state is PeerState.CONNECTED


async def test_transport_failure_releases_session(make_party, eventually):
    a, b = await connected_pair(make_party, eventually)
    session = a.session(b.id)

    session.on_failed("ice failed")
    await eventually(lambda: session.state is PeerState.FAILED)

    assert session.transport.closed
    assert not session.channel_open
    with pytest.raises(NoActiveChannel):
        a.manager.send_text("hi")


async def test_bad_remote_description_fails_the_session(make_party, eventually, network):
    a = make_party()
    b = make_party()
    network.fail_remote = True
    await b.manager.connect(a.id, a.pub)
    await eventually(lambda: a.session(b.id) and a.session(b.id).state is PeerState.FAILED)
    assert a.session(b.id).transport.closed


async def test_close_releases_every_session(make_party, eventually):
    a, b = await connected_pair(make_party, eventually)
    session = a.session(b.id)

    await a.manager.close()

    assert a.manager.sessions == {}
    assert session.state is PeerState.CLOSED
    assert session.transport.closed
    assert not a.signaling.subscribed
