"""
Boundary with the connection transport.

The session layer never looks inside a session description; it only moves
descriptions and candidates between the transport and the signaling channel,
and reacts to the callbacks below.
"""
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

CHANNEL_LABEL = "chat"


@dataclass(frozen=True)
class SessionDescription:
    type: str
    sdp: str


@runtime_checkable
class DataChannel(Protocol):
    label: str

    @property
    def ready_state(self) -> str: ...
    def send(self, data: str) -> None: ...


class TransportListener(Protocol):
    def on_ice_candidate(self, candidate: dict) -> None: ...
    def on_data_channel(self, channel: DataChannel) -> None: ...
    def on_channel_open(self, channel: DataChannel) -> None: ...
    def on_channel_message(self, channel: DataChannel, data) -> None: ...
    def on_failed(self, reason: str) -> None: ...


@runtime_checkable
class Transport(Protocol):
    @property
    def local_description(self) -> Optional[SessionDescription]: ...
    def create_data_channel(self, label: str) -> DataChannel: ...
    async def create_offer(self) -> SessionDescription: ...
    async def create_answer(self) -> SessionDescription: ...
    async def set_local_description(self, description: SessionDescription) -> None: ...
    async def set_remote_description(self, description: SessionDescription) -> None: ...
    async def add_ice_candidate(self, candidate: dict) -> None: ...
    async def close(self) -> None: ...


TransportFactory = Callable[[TransportListener], Transport]
