import logging

from protocol.message import SignalingEvent, now_ms

# Set up module-level logging
logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

DEFAULT_NAMESPACE = "cryptochat"


def mailbox_path(namespace, room_id, peer_id):
    return f"{namespace}/{room_id}/signals/{peer_id}"


class SignalingChannel:
    """
    Mailbox-based signaling over an untrusted broadcast medium.

    Every party reads its own mailbox (keyed by its short id) inside the room
    and writes into the recipient's mailbox. The medium delivers at least
    once and in no particular order, so inbound items are deduplicated by the
    item key the medium assigned. The seen set lives exactly as long as one
    subscription: each subscribe() starts a new dedup epoch.

    Nothing here is confidential. Anyone who knows the room id can read and
    write these mailboxes; the records carry public keys and session
    descriptions only.
    """

    def __init__(self, medium, room_id, self_id, namespace=DEFAULT_NAMESPACE, max_age=None):
        self.medium = medium
        self.room_id = room_id
        self.self_id = self_id
        self.namespace = namespace
        self.max_age = max_age
        self.seen = set()
        self._subscription = None
        self._on_event = None

    def mailbox(self, peer_id):
        return mailbox_path(self.namespace, self.room_id, peer_id)

    async def publish(self, target_id, event):
        stamped = event.stamped(self.self_id)
        # Failures from the medium propagate; nothing is retried here.
        key = await self.medium.write(self.mailbox(target_id), stamped.to_record())
        logger.debug(f"Published {stamped.type} to {target_id} as {key}")
        return key

    def subscribe(self, on_event):
        self.unsubscribe()
        self.seen = set()
        self._on_event = on_event
        self._subscription = self.medium.subscribe(self.mailbox(self.self_id), self._on_item)
        logger.debug(f"Watching mailbox {self.mailbox(self.self_id)}")

    def unsubscribe(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._on_event = None

    @property
    def subscribed(self):
        return self._subscription is not None

    def _on_item(self, value, key):
        if self._on_event is None:
            return
        if key in self.seen:
            logger.debug(f"Dropping duplicate signal {key}")
            return
        event = SignalingEvent.from_record(value)
        if event is None:
            logger.debug(f"Dropping malformed signal {key}")
            return
        self.seen.add(key)
        if self._is_stale(event):
            logger.debug(f"Dropping stale {event.type} from {event.sender}")
            return
        self._on_event(event)

    def _is_stale(self, event):
        if not self.max_age:
            return False
        if event.ts is None:
            return True
        return abs(now_ms() - event.ts) > self.max_age * 1000
