import asyncio
import logging

from zeroconf import ServiceListener
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo

from protocol.errors import InvalidFormat
from protocol.json_handler import pack_json, unpack_json

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_cryptochat._udp.local."
# TXT strings are capped at 255 bytes including the key.
CHUNK_SIZE = 200
RESOLVE_TIMEOUT_MS = 3000


def encode_item(path, value):
    body = pack_json(value)
    chunks = [body[i:i + CHUNK_SIZE] for i in range(0, len(body), CHUNK_SIZE)] or [""]
    properties = {"path": path, "n": str(len(chunks))}
    for i, chunk in enumerate(chunks):
        properties[f"c{i}"] = chunk
    return properties


def decode_item(properties):
    """Reassemble (path, value) from TXT properties; raises InvalidFormat."""
    props = {}
    for k, v in (properties or {}).items():
        key = k.decode("utf-8") if isinstance(k, bytes) else str(k)
        if v is None:
            continue
        props[key] = v.decode("utf-8") if isinstance(v, bytes) else str(v)
    path = props.get("path")
    try:
        count = int(props.get("n", ""))
    except ValueError as e:
        raise InvalidFormat("item has no chunk count") from e
    if not path or count < 1:
        raise InvalidFormat("item has no path")
    try:
        body = "".join(props[f"c{i}"] for i in range(count))
    except KeyError as e:
        raise InvalidFormat(f"item is missing chunk {e}") from e
    return path, unpack_json(body)


class MailboxListener(ServiceListener):
    """Resolves announced items and forwards those addressed to one mailbox."""

    def __init__(self, path, on_item):
        self.path = path
        self.on_item = on_item
        self.active = True
        self._pending = set()

    def add_service(self, zc, type_, name):
        self._schedule(zc, type_, name)

    def update_service(self, zc, type_, name):
        self._schedule(zc, type_, name)

    def remove_service(self, zc, type_, name):
        # Items are immutable; a withdrawn record changes nothing already delivered.
        logger.debug(f"Item withdrawn: {name}")

    def _schedule(self, zc, type_, name):
        task = asyncio.ensure_future(self._resolve(zc, type_, name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _resolve(self, zc, type_, name):
        info = AsyncServiceInfo(type_, name)
        if not await info.async_request(zc, RESOLVE_TIMEOUT_MS):
            logger.debug(f"Could not resolve {name}")
            return
        try:
            path, value = decode_item(info.properties)
        except InvalidFormat as e:
            logger.debug(f"Ignoring unreadable item {name}: {e}")
            return
        if path != self.path or not self.active:
            return
        key = name[: -len(type_) - 1] if name.endswith("." + type_) else name
        self.on_item(value, key)


class MailboxSubscription:
    """Browses the item service type on behalf of one mailbox path."""

    def __init__(self, aiozc, path, on_item, on_cancel=None):
        self.aiozc = aiozc
        self.listener = MailboxListener(path, on_item)
        self.browser = None
        self._on_cancel = on_cancel
        self._closing = None

    @property
    def active(self):
        return self.listener.active

    def start(self):
        self.browser = AsyncServiceBrowser(self.aiozc.zeroconf, SERVICE_TYPE, listener=self.listener)
        logger.debug(f"Browsing {SERVICE_TYPE} for {self.listener.path}")

    def cancel(self):
        if not self.listener.active:
            return
        self.listener.active = False
        if self.browser is not None:
            self._closing = asyncio.ensure_future(self.browser.async_cancel())
        if self._on_cancel:
            self._on_cancel(self)

    async def wait_closed(self):
        if self._closing is not None:
            await self._closing
