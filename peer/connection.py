"""
Per-peer connection state machine.

Each remote short id owns at most one PeerSession. Everything that can
happen to a session (signaling events from the mailbox, callbacks from the
transport, local requests, timeouts) is put on the session's inbox and
handled one at a time by its worker task, so a session never sees two
transitions interleave even though every transport call awaits.

Caller path:  IDLE -> OFFERING -> AWAITING_ANSWER -> CONNECTED
Callee path:  IDLE -> ANSWERING -> CONNECTED
FAILED is reachable from any live state; a failed or closed session is
never reopened, a new attempt replaces it.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass

from crypto.encrypt import EncryptedPayload, decrypt, encrypt
from crypto.session import derive_session_key
from peer.transport import CHANNEL_LABEL, SessionDescription
from protocol import message
from protocol.errors import AuthenticationError, InvalidFormat, KeyAgreementError, NoActiveChannel

# Set up module-level logging
logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

KEY_NOT_READY_TEXT = "[message received, but the session key is not ready]"
UNDECRYPTABLE_TEXT = "[message could not be decrypted]"


class PeerState(enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting_answer"
    ANSWERING = "answering"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


# Local inbox events; signaling events are queued as SignalingEvent.
@dataclass(frozen=True)
class StartOffer:
    pass


@dataclass(frozen=True)
class IceDiscovered:
    candidate: dict


@dataclass(frozen=True)
class ChannelOffered:
    channel: object


@dataclass(frozen=True)
class ChannelOpened:
    channel: object


@dataclass(frozen=True)
class ChannelMessage:
    channel: object
    data: object


@dataclass(frozen=True)
class TransportFailed:
    reason: str


@dataclass(frozen=True)
class OfferTimedOut:
    pass


class PeerSession:
    """One connection attempt with one remote identity."""

    def __init__(self, manager, peer_id, peer_public_key=None, session_key=None):
        self.manager = manager
        self.peer_id = peer_id
        self.peer_public_key = peer_public_key
        self.session_key = session_key
        self.state = PeerState.IDLE
        self.data_channel = None
        self.channel_open = False
        self.remote_description_set = False
        self.answer_ts = None
        self.pending_candidates = []
        self.inbox = asyncio.Queue()
        self.transport = manager.transport_factory(self)
        self._transport_released = False
        self._worker = None
        self._timeout = None

    def __repr__(self):
        return f"<PeerSession {self.peer_id} {self.state.value}>"

    @property
    def can_send(self):
        return self.channel_open and self.session_key is not None

    # -- TransportListener -------------------------------------------------

    def on_ice_candidate(self, candidate):
        self.enqueue(IceDiscovered(candidate))

    def on_data_channel(self, channel):
        self.enqueue(ChannelOffered(channel))

    def on_channel_open(self, channel):
        self.enqueue(ChannelOpened(channel))

    def on_channel_message(self, channel, data):
        self.enqueue(ChannelMessage(channel, data))

    def on_failed(self, reason):
        self.enqueue(TransportFailed(reason))

    # -- lifecycle ---------------------------------------------------------

    def start(self):
        if self._worker is None:
            self._worker = asyncio.ensure_future(self._run())

    def enqueue(self, event):
        if self.state is not PeerState.CLOSED:
            self.inbox.put_nowait(event)

    async def join(self):
        """Wait until every queued event has been handled."""
        await self.inbox.join()

    async def close(self):
        self._cancel_timeout()
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        await self._release()
        self._set_state(PeerState.CLOSED)

    async def _run(self):
        while True:
            event = await self.inbox.get()
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Session with {self.peer_id} failed on {type(event).__name__}: {e}")
                await self._fail()
            finally:
                self.inbox.task_done()

    # -- transitions -------------------------------------------------------

    async def _handle(self, event):
        if isinstance(event, message.SignalingEvent):
            if event.type == message.OFFER:
                await self._on_offer(event)
            elif event.type == message.ANSWER:
                await self._on_answer(event)
            elif event.type == message.ICE:
                await self._on_remote_candidate(event.candidate)
        elif isinstance(event, StartOffer):
            await self._send_offer()
        elif isinstance(event, IceDiscovered):
            if self.state not in (PeerState.FAILED, PeerState.CLOSED):
                await self.manager.publish(self.peer_id, message.ice(event.candidate))
        elif isinstance(event, ChannelOffered):
            self.data_channel = event.channel
        elif isinstance(event, ChannelOpened):
            self._on_channel_open(event.channel)
        elif isinstance(event, ChannelMessage):
            self._on_channel_message(event.data)
        elif isinstance(event, TransportFailed):
            logger.error(f"Transport to {self.peer_id} failed: {event.reason}")
            await self._fail()
        elif isinstance(event, OfferTimedOut):
            if self.state is PeerState.AWAITING_ANSWER:
                logger.warning(f"No answer from {self.peer_id}; giving up")
                await self._fail()

    async def _send_offer(self):
        if self.state is not PeerState.OFFERING:
            return
        self.data_channel = self.transport.create_data_channel(CHANNEL_LABEL)
        offer = await self.transport.create_offer()
        await self.transport.set_local_description(offer)
        local = self.transport.local_description or offer
        await self.manager.publish(self.peer_id, message.offer(local.sdp, self.manager.public_key_b64))
        self._set_state(PeerState.AWAITING_ANSWER)
        self._arm_timeout()

    async def _on_offer(self, event):
        if self.state is not PeerState.IDLE:
            logger.debug(f"Ignoring second offer for session with {self.peer_id}")
            return
        self._set_state(PeerState.ANSWERING)
        await self.transport.set_remote_description(SessionDescription(type=message.OFFER, sdp=event.sdp))
        await self._remote_description_applied()
        answer = await self.transport.create_answer()
        await self.transport.set_local_description(answer)
        local = self.transport.local_description or answer
        await self.manager.publish(self.peer_id, message.answer(local.sdp, self.manager.public_key_b64))
        self._set_state(PeerState.CONNECTED)

    async def _on_answer(self, event):
        if self.state not in (PeerState.OFFERING, PeerState.AWAITING_ANSWER):
            logger.debug(f"Dropping answer from {self.peer_id} in state {self.state.value}")
            return
        if self.session_key is None and event.pub:
            self.manager.adopt_peer_key(self, event.pub)
        self._cancel_timeout()
        await self.transport.set_remote_description(SessionDescription(type=message.ANSWER, sdp=event.sdp))
        await self._remote_description_applied()
        self._set_state(PeerState.CONNECTED)

    async def _on_remote_candidate(self, candidate):
        if self.state in (PeerState.FAILED, PeerState.CLOSED):
            return
        if not self.remote_description_set:
            # Held until the remote description lands; the medium does not order events.
            self.pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _remote_description_applied(self):
        self.remote_description_set = True
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate):
        try:
            await self.transport.add_ice_candidate(candidate)
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"Ignoring unusable candidate from {self.peer_id}: {e}")

    def _on_channel_open(self, channel):
        if self.state in (PeerState.FAILED, PeerState.CLOSED):
            return
        self.data_channel = channel
        self.channel_open = True
        logger.debug(f"Channel with {self.peer_id} is open")
        self.manager.notify_state(self)

    def _on_channel_message(self, data):
        if self.session_key is None:
            self.manager.deliver(self.peer_id, KEY_NOT_READY_TEXT, False)
            return
        try:
            text = decrypt(self.session_key, EncryptedPayload.from_wire(data))
        except (AuthenticationError, InvalidFormat) as e:
            logger.warning(f"Undecryptable message from {self.peer_id}: {e}")
            self.manager.deliver(self.peer_id, UNDECRYPTABLE_TEXT, False)
            return
        self.manager.deliver(self.peer_id, text, True)

    # -- helpers -----------------------------------------------------------

    def _set_state(self, state):
        if self.state is state:
            return
        logger.debug(f"{self.peer_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.manager.notify_state(self)

    def _arm_timeout(self):
        timeout = self.manager.offer_timeout
        if timeout:
            loop = asyncio.get_running_loop()
            self._timeout = loop.call_later(timeout, self.enqueue, OfferTimedOut())

    def _cancel_timeout(self):
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    async def _fail(self):
        self._cancel_timeout()
        self._set_state(PeerState.FAILED)
        await self._release()

    async def _release(self):
        self.channel_open = False
        self.data_channel = None
        self.pending_candidates = []
        if not self._transport_released:
            self._transport_released = True
            try:
                await self.transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport to {self.peer_id}: {e}")


class ConnectionManager:
    """
    Owns every PeerSession for one room membership.

    Created when the local party joins a room and closed when it leaves.
    The identity is read once at construction; a changed identity needs a
    new manager. The private key is only used for key agreement.
    """

    def __init__(self, identity, signaling, transport_factory, context_salt,
                 on_message=None, on_state_change=None, offer_timeout=None):
        self.self_id = identity.short_id
        self._private_key = identity.private_key
        self.public_key_b64 = identity.public_key_b64
        self.signaling = signaling
        self.transport_factory = transport_factory
        self.context_salt = context_salt
        self.on_message = on_message
        self.on_state_change = on_state_change
        self.offer_timeout = offer_timeout
        self.sessions = {}
        self._background = set()

    def start(self):
        self.signaling.subscribe(self.handle_signal)

    async def connect(self, peer_id, peer_public_key=None):
        """Start an outbound attempt, replacing any existing session with peer_id."""
        session_key = None
        if peer_public_key:
            # Raises KeyAgreementError before anything is recorded.
            session_key = self._derive(peer_public_key)
        # Swap entries without awaiting so an offer delivered meanwhile finds the new session.
        existing = self.sessions.get(peer_id)
        if existing is not None:
            self._retire(existing)
        session = self._create_session(peer_id, peer_public_key, session_key)
        session._set_state(PeerState.OFFERING)
        session.enqueue(StartOffer())
        return session

    def handle_signal(self, event):
        if event.sender == self.self_id:
            return
        session = self.sessions.get(event.sender)

        if event.type == message.OFFER:
            if session is not None and self._is_superseded(session, event):
                logger.debug(f"Dropping offer from {event.sender} older than its answer")
                return
            if session is not None and session.state in (PeerState.OFFERING, PeerState.AWAITING_ANSWER):
                # Both sides offered at once: the smaller id yields.
                if self.self_id > event.sender:
                    logger.debug(f"Keeping own offer to {event.sender}; peer yields")
                    return
                logger.debug(f"Yielding to offer from {event.sender}")
            try:
                session_key = self._derive(event.pub) if event.pub else None
            except KeyAgreementError as e:
                logger.warning(f"Rejecting offer from {event.sender}: {e}")
                return
            if session is not None:
                self._retire(session)
            session = self._create_session(event.sender, event.pub, session_key)
        elif session is None:
            logger.debug(f"Dropping {event.type} from unknown peer {event.sender}")
            return
        elif (event.type == message.ANSWER and event.ts is not None
              and session.state in (PeerState.OFFERING, PeerState.AWAITING_ANSWER)):
            session.answer_ts = max(session.answer_ts or 0, event.ts)

        session.enqueue(event)

    def send_text(self, text, peer_id=None):
        """Encrypt and send one message; returns the id of the peer it went to."""
        if peer_id is not None:
            session = self.sessions.get(peer_id)
            if session is None or not session.channel_open:
                raise NoActiveChannel(f"no open channel with {peer_id}")
        else:
            open_sessions = [s for s in self.sessions.values() if s.channel_open]
            if not open_sessions:
                raise NoActiveChannel("no open channel")
            session = next((s for s in open_sessions if s.session_key is not None), open_sessions[0])
        if session.session_key is None:
            raise NoActiveChannel(f"channel with {session.peer_id} has no session key yet")
        payload = encrypt(session.session_key, text)
        session.data_channel.send(payload.to_wire())
        return session.peer_id

    async def publish(self, peer_id, event):
        return await self.signaling.publish(peer_id, event)

    def adopt_peer_key(self, session, peer_public_key):
        try:
            session.session_key = self._derive(peer_public_key)
            session.peer_public_key = peer_public_key
        except KeyAgreementError as e:
            logger.warning(f"Peer {session.peer_id} sent an unusable public key: {e}")

    def deliver(self, peer_id, text, decrypted):
        if self.on_message is not None:
            self.on_message(peer_id, text, decrypted)

    def notify_state(self, session):
        if self.on_state_change is not None:
            self.on_state_change(session)

    async def close_session(self, peer_id):
        session = self.sessions.pop(peer_id, None)
        if session is not None:
            await session.close()

    async def close(self):
        self.signaling.unsubscribe()
        for peer_id in list(self.sessions):
            await self.close_session(peer_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def join(self):
        """Wait until every session has drained its inbox."""
        await asyncio.gather(*(s.join() for s in list(self.sessions.values())))

    @staticmethod
    def _is_superseded(session, event):
        # A glare offer the peer sent before it yielded and answered ours.
        return (session.answer_ts is not None and event.ts is not None
                and event.ts <= session.answer_ts)

    def _derive(self, peer_public_key):
        return derive_session_key(self._private_key, peer_public_key, self.context_salt)

    def _create_session(self, peer_id, peer_public_key, session_key):
        session = PeerSession(self, peer_id, peer_public_key=peer_public_key, session_key=session_key)
        self.sessions[peer_id] = session
        session.start()
        return session

    def _retire(self, session):
        if self.sessions.get(session.peer_id) is session:
            del self.sessions[session.peer_id]
        task = asyncio.ensure_future(session.close())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
