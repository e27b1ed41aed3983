import asyncio
import copy
import logging
import socket
import uuid

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

from peer.discovery import SERVICE_TYPE, MailboxSubscription, encode_item
from protocol.errors import StorageError

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

# mDNS needs a port on every service record; mailbox items are not reachable endpoints.
_ITEM_PORT = 9


def new_item_key():
    return uuid.uuid4().hex


class Subscription:
    def __init__(self, on_cancel=None):
        self.active = True
        self._on_cancel = on_cancel

    def cancel(self):
        if self.active:
            self.active = False
            if self._on_cancel:
                self._on_cancel(self)


class InMemoryMedium:
    """
    Process-local broadcast medium.

    Behaves like the shared store peers meet on: items are kept per path, a
    new subscriber receives everything already stored, and delivery happens
    later on the event loop, never inside write(). Useful for tests and for
    running several peers in one process.
    """

    def __init__(self):
        self._items = {}
        self._subscriptions = {}

    async def write(self, path, value):
        key = new_item_key()
        self._items.setdefault(path, {})[key] = copy.deepcopy(value)
        for sub, on_item in list(self._subscriptions.get(path, {}).items()):
            self._deliver(sub, on_item, value, key)
        return key

    def subscribe(self, path, on_item):
        subs = self._subscriptions.setdefault(path, {})
        sub = Subscription(on_cancel=lambda s: subs.pop(s, None))
        subs[sub] = on_item
        for key, value in list(self._items.get(path, {}).items()):
            self._deliver(sub, on_item, value, key)
        return sub

    def redeliver(self, path):
        """Deliver every stored item at path again, as an at-least-once medium may."""
        for sub, on_item in list(self._subscriptions.get(path, {}).items()):
            for key, value in list(self._items.get(path, {}).items()):
                self._deliver(sub, on_item, value, key)

    def items(self, path):
        return copy.deepcopy(self._items.get(path, {}))

    async def close(self):
        for subs in self._subscriptions.values():
            for sub in list(subs):
                sub.cancel()
        self._subscriptions.clear()

    def _deliver(self, sub, on_item, value, key):
        loop = asyncio.get_running_loop()
        loop.call_soon(self._dispatch, sub, on_item, copy.deepcopy(value), key)

    @staticmethod
    def _dispatch(sub, on_item, value, key):
        if sub.active:
            on_item(value, key)


class ZeroconfMedium:
    """
    LAN broadcast medium on multicast DNS.

    Each written item becomes its own DNS-SD service instance carrying the
    mailbox path and the JSON value in its TXT record. Readers browse the
    service type and keep the items addressed to their path. There is no
    access control: anyone on the link sees every mailbox.

    Items older than item_ttl seconds are withdrawn on the next write; with
    no ttl they stay announced until close().
    """

    def __init__(self, zeroconf=None, item_ttl=None):
        self.zeroconf = zeroconf
        self.item_ttl = item_ttl
        self._owns_zeroconf = zeroconf is None
        self._registered = []  # (written_at, ServiceInfo), oldest first
        self._subscriptions = []
        self._closing = set()

    def _get_zeroconf(self):
        if self.zeroconf is None:
            self.zeroconf = AsyncZeroconf()
        return self.zeroconf

    async def write(self, path, value):
        await self._expire()
        key = new_item_key()
        hostname = socket.gethostname()
        try:
            ip_addr = socket.gethostbyname(hostname)
        except socket.gaierror:
            ip_addr = "127.0.0.1"
        info = ServiceInfo(
            type_=SERVICE_TYPE,
            name=f"{key}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(ip_addr)],
            port=_ITEM_PORT,
            properties=encode_item(path, value),
            server=f"{hostname}.local.",
        )
        try:
            # Registration returns a task that completes once probing is done.
            registration = await self._get_zeroconf().async_register_service(info)
            await registration
        except Exception as e:
            raise StorageError(f"mDNS registration failed for {path}: {e}") from e
        self._registered.append((asyncio.get_running_loop().time(), info))
        logger.debug(f"Announced item {key} for {path}")
        return key

    def subscribe(self, path, on_item):
        sub = MailboxSubscription(self._get_zeroconf(), path, on_item, on_cancel=self._forget)
        sub.start()
        self._subscriptions.append(sub)
        return sub

    @property
    def announced(self):
        return [info for _, info in self._registered]

    async def close(self):
        for sub in list(self._subscriptions):
            sub.cancel()
        if self._closing:
            await asyncio.gather(*self._closing)
        if self.zeroconf is None:
            return
        while self._registered:
            _, info = self._registered.pop(0)
            await self._unregister(info)
        if self._owns_zeroconf:
            await self.zeroconf.async_close()
            self.zeroconf = None

    def _forget(self, sub):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        task = asyncio.ensure_future(sub.wait_closed())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _expire(self):
        if not self.item_ttl:
            return
        cutoff = asyncio.get_running_loop().time() - self.item_ttl
        while self._registered and self._registered[0][0] < cutoff:
            _, info = self._registered.pop(0)
            await self._unregister(info)

    async def _unregister(self, info):
        try:
            unregistration = await self.zeroconf.async_unregister_service(info)
            await unregistration
        except Exception as e:
            logger.debug(f"Could not withdraw {info.name}: {e}")
        else:
            logger.debug(f"Withdrew {info.name}")
