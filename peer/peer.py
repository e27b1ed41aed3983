import asyncio
import logging
from collections import deque

from peer.connection import ConnectionManager, PeerState
from protocol.errors import CryptoChatError, InvalidFormat, NotInRoom
from protocol.signaling import SignalingChannel

# Set up module-level logging
logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

HELP_TEXT = (
    "Commands:\n"
    "  id                        Show your id and public key\n"
    "  join <room>               Join a room and watch your mailbox\n"
    "  leave                     Leave the current room\n"
    "  connect <peer> <pubkey>   Open an encrypted channel to a peer\n"
    "  send <text>               Send a message on the open channel\n"
    "  sessions                  List peer sessions\n"
    "  export                    Print your secret seed\n"
    "  import <seed>             Replace your identity with a seed\n"
    "  regenerate                Replace your identity with a new key\n"
    "  exit                      Quit"
)

# Oldest lines are dropped past this many.
INBOX_LIMIT = 500


class Peer:
    def __init__(self, config, identity, medium, transport_factory):
        self.identity = identity
        self.medium = medium
        self.transport_factory = transport_factory
        self.namespace = config["namespace"]
        self.offer_timeout = config["offer_timeout"]
        self.signal_max_age = config["signal_max_age"]
        self.room_id = None
        self.signaling = None
        self.connections = None
        self.inbox = deque(maxlen=INBOX_LIMIT)  # (author, text) in arrival order
        logger.debug(f"Peer '{self.identity.short_id}' initialized")

    # -- user actions ------------------------------------------------------

    async def join_room(self, room_id):
        room_id = (room_id or "").strip()
        if not room_id:
            raise InvalidFormat("room id is empty")
        await self.leave_room()
        self.room_id = room_id
        self.signaling = SignalingChannel(
            self.medium,
            room_id,
            self.identity.short_id,
            namespace=self.namespace,
            max_age=self.signal_max_age,
        )
        self.connections = ConnectionManager(
            self.identity,
            self.signaling,
            self.transport_factory,
            context_salt=room_id,
            on_message=self._on_message,
            on_state_change=self._on_state_change,
            offer_timeout=self.offer_timeout,
        )
        self.connections.start()
        logger.debug(f"Joined room {room_id} as {self.identity.short_id}")
        return self.connections

    async def leave_room(self):
        if self.connections is not None:
            await self.connections.close()
            logger.debug(f"Left room {self.room_id}")
        self.connections = None
        self.signaling = None
        self.room_id = None

    async def connect(self, peer_id, peer_public_key):
        self._ensure_room()
        peer_id = (peer_id or "").strip()
        peer_public_key = (peer_public_key or "").strip()
        if not peer_id or not peer_public_key:
            raise InvalidFormat("peer id and public key are both required")
        return await self.connections.connect(peer_id, peer_public_key)

    def send_text(self, text):
        self._ensure_room()
        peer_id = self.connections.send_text(text)
        self.inbox.append(("you", text))
        return peer_id

    def export_identity(self):
        return self.identity.export_secret()

    async def import_identity(self, text):
        self.identity.import_secret(text)
        await self._rejoin()

    async def regenerate_identity(self):
        self.identity.regenerate()
        await self._rejoin()

    def whoami(self):
        return self.identity.short_id, self.identity.public_key_b64

    def list_sessions(self):
        if self.connections is None:
            return []
        return list(self.connections.sessions.values())

    async def shutdown(self):
        await self.leave_room()
        await self.medium.close()

    # -- CLI ---------------------------------------------------------------

    async def run_cli(self):
        loop = asyncio.get_running_loop()
        my_id, my_pub = self.whoami()
        print(f"Your id: {my_id}\nYour public key: {my_pub}\nType 'help' for commands.")
        while True:
            try:
                cmd = (await loop.run_in_executor(None, input, ">>> ")).strip()
            except (EOFError, KeyboardInterrupt):
                logger.debug("CLI interrupted by user")
                print("\nInterrupted. Exiting")
                break
            if cmd == "exit":
                logger.debug("Exiting CLI")
                print("Exiting")
                break
            try:
                await self.handle_command(cmd)
            except CryptoChatError as e:
                print(f"[!] {e}")

    async def handle_command(self, cmd):
        name, _, rest = cmd.partition(" ")
        rest = rest.strip()
        if not name:
            return
        if name == "help":
            print(HELP_TEXT)
        elif name == "id":
            my_id, my_pub = self.whoami()
            print(f"id:  {my_id}\npub: {my_pub}")
        elif name == "join":
            if not rest:
                print("Usage: join <room>")
                return
            await self.join_room(rest)
            print(f"[✓] In room {rest}")
        elif name == "leave":
            await self.leave_room()
            print("[✓] Left room")
        elif name == "connect":
            parts = rest.split()
            if len(parts) != 2:
                print("Usage: connect <peer_id> <public_key>")
                return
            await self.connect(parts[0], parts[1])
            print(f"Connecting to {parts[0]}...")
        elif name == "send":
            if not rest:
                return
            peer_id = self.send_text(rest)
            print(f"[you → {peer_id}] {rest}")
        elif name == "sessions":
            sessions = self.list_sessions()
            if not sessions:
                print("No sessions.")
            for s in sessions:
                flags = "open" if s.channel_open else "closed"
                key = "key" if s.session_key else "no key"
                print(f"{s.peer_id}  {s.state.value}  channel {flags}, {key}")
        elif name == "export":
            print(self.export_identity())
        elif name == "import":
            if not rest:
                print("Usage: import <seed>")
                return
            await self.import_identity(rest)
            print(f"[✓] Seed imported. Your id is now {self.identity.short_id}")
        elif name == "regenerate":
            await self.regenerate_identity()
            print(f"[✓] Keys regenerated. Your id is now {self.identity.short_id}")
        else:
            print("Unknown command. Type 'help'.")

    # -- internals ---------------------------------------------------------

    def _ensure_room(self):
        if self.connections is None:
            raise NotInRoom("join a room first")

    async def _rejoin(self):
        # Mailbox and session keys follow the identity.
        if self.room_id is not None:
            await self.join_room(self.room_id)

    def _on_message(self, peer_id, text, decrypted):
        self.inbox.append((peer_id, text))
        marker = "" if decrypted else "[✗] "
        print(f"{marker}[{peer_id}] {text}")

    def _on_state_change(self, session):
        if session.state is PeerState.CONNECTED and not session.channel_open:
            print(f"[✓] Connection established with {session.peer_id}")
        elif session.channel_open and session.state is not PeerState.CLOSED:
            print(f"[✓] P2P channel open with {session.peer_id}")
        elif session.state is PeerState.FAILED:
            print(f"[✗] Connection with {session.peer_id} failed")
