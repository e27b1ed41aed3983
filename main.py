#main.py  ==  encrypted P2P chat peer
           #↳ loads or creates the identity
           #↳ joins rooms on the broadcast medium
           #↳ answers and makes connections
           #↳ end-to-end encrypted messaging
           #↳ acts on user input
'''
├── main.py                 # Entry point to launch the peer
├── config.py               # Configuration loading (config.yaml)
├── peer/
│   ├── peer.py             # Peer class: user actions and CLI
│   ├── connection.py       # Per-peer connection state machine
│   ├── transport.py        # Transport interface
│   ├── webrtc.py           # aiortc transport
│   ├── broadcast.py        # Broadcast mediums (in-memory, mDNS)
│   └── discovery.py        # mDNS mailbox browsing
├── crypto/
│   ├── identity.py         # Persistent keypair, import/export, short id
│   ├── session.py          # ECDH + HKDF session keys
│   └── encrypt.py          # AES-GCM message encryption
└── protocol/
    ├── signaling.py        # Mailbox signaling with dedup
    ├── message.py          # Signaling event records
    ├── json_handler.py     # JSON helpers
    └── errors.py           # Custom exceptions
'''
import argparse
import asyncio
import logging

from config import load_config
from crypto.identity import Identity, KeyFileStore
from peer.broadcast import InMemoryMedium, ZeroconfMedium
from peer.peer import Peer
from peer.webrtc import webrtc_factory

LOGGER_NAMES = (
    "crypto.identity",
    "peer.peer",
    "peer.connection",
    "peer.broadcast",
    "peer.discovery",
    "peer.webrtc",
    "protocol.signaling",
)


def configure_logging(level):
    for name in LOGGER_NAMES:
        logging.getLogger(name).setLevel(level)


def build_medium(config):
    if config["medium"] == "memory":
        return InMemoryMedium()
    # Readers ignore items older than signal_max_age, so stop announcing them then.
    return ZeroconfMedium(item_ttl=config["signal_max_age"])


async def run(config, room=None):
    identity = Identity(KeyFileStore(config["key_path"])).load_or_create()
    peer = Peer(config, identity, build_medium(config), webrtc_factory(config["ice_servers"]))
    try:
        if room:
            await peer.join_room(room)
            print(f"[✓] In room {room}")
        await peer.run_cli()
    finally:
        await peer.shutdown()


def main():
    parser = argparse.ArgumentParser(description="End-to-end encrypted P2P chat")
    parser.add_argument("-c", "--config", default="config.yaml")
    parser.add_argument("-r", "--room", help="room to join on start")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config["log_level"])
    asyncio.run(run(config, room=args.room))


if __name__ == "__main__":
    main()
