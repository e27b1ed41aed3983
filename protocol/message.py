import time
from dataclasses import dataclass, field
from typing import Optional

OFFER = "offer"
ANSWER = "answer"
ICE = "ice"
EVENT_TYPES = (OFFER, ANSWER, ICE)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SignalingEvent:
    """
    One connection-setup message as stored in a mailbox.

    The payload depends on the type: offer/answer carry the session
    description ("sdp") and the sender's public key ("pub"); ice carries
    a "candidate" mapping.
    """
    type: str
    sender: str = ""
    payload: dict = field(default_factory=dict)
    ts: Optional[int] = None

    @property
    def sdp(self) -> Optional[str]:
        return self.payload.get("sdp")

    @property
    def pub(self) -> Optional[str]:
        return self.payload.get("pub") or None

    @property
    def candidate(self) -> Optional[dict]:
        return self.payload.get("candidate")

    def stamped(self, sender: str, ts: Optional[int] = None) -> "SignalingEvent":
        return SignalingEvent(
            type=self.type,
            sender=sender,
            payload=dict(self.payload),
            ts=now_ms() if ts is None else ts,
        )

    def to_record(self) -> dict:
        record = dict(self.payload)
        record["type"] = self.type
        record["from"] = self.sender
        record["ts"] = self.ts
        return record

    @classmethod
    def from_record(cls, record) -> Optional["SignalingEvent"]:
        """Build an event from a mailbox record, or return None if it is malformed."""
        if not isinstance(record, dict):
            return None
        event_type = record.get("type")
        sender = record.get("from")
        if event_type not in EVENT_TYPES:
            return None
        if not isinstance(sender, str) or not sender:
            return None
        ts = record.get("ts")
        if ts is not None and (isinstance(ts, bool) or not isinstance(ts, (int, float))):
            return None

        if event_type == ICE:
            candidate = record.get("candidate")
            if not isinstance(candidate, dict) or not isinstance(candidate.get("candidate"), str):
                return None
            payload = {"candidate": dict(candidate)}
        else:
            sdp = record.get("sdp")
            if not isinstance(sdp, str) or not sdp:
                return None
            payload = {"sdp": sdp}
            pub = record.get("pub")
            if isinstance(pub, str) and pub:
                payload["pub"] = pub

        return cls(type=event_type, sender=sender, payload=payload,
                   ts=int(ts) if ts is not None else None)


def offer(sdp: str, pub: str) -> SignalingEvent:
    return SignalingEvent(type=OFFER, payload={"sdp": sdp, "pub": pub})


def answer(sdp: str, pub: str) -> SignalingEvent:
    return SignalingEvent(type=ANSWER, payload={"sdp": sdp, "pub": pub})


def ice(candidate: dict) -> SignalingEvent:
    return SignalingEvent(type=ICE, payload={"candidate": dict(candidate)})
