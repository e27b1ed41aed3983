import base64
import binascii
import json
import logging
import os
import tempfile

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from protocol.errors import InvalidFormat, StorageError

logger = logging.getLogger(__name__)

CURVE = ec.SECP256K1()
PRIVATE_KEY_LENGTH = 32
PUBLIC_KEY_LENGTH = 33
# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

PRIV_KEY = "priv"
PUB_KEY = "pub"


def to_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def from_b64(text: str) -> bytes:
    try:
        return base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError, AttributeError) as e:
        raise InvalidFormat(f"not valid base64: {e}") from e


def derive_short_id(public_key_bytes: bytes) -> str:
    # Display handle only; collisions are tolerated.
    return to_b64(public_key_bytes[:6]).rstrip("=")


def private_key_from_bytes(raw: bytes) -> ec.EllipticCurvePrivateKey:
    if len(raw) != PRIVATE_KEY_LENGTH:
        raise InvalidFormat(f"private key must be {PRIVATE_KEY_LENGTH} bytes, got {len(raw)}")
    value = int.from_bytes(raw, "big")
    if not 0 < value < CURVE_ORDER:
        raise InvalidFormat("private key is not a valid secp256k1 scalar")
    try:
        return ec.derive_private_key(value, CURVE)
    except ValueError as e:
        raise InvalidFormat(f"private key is out of range: {e}") from e


def private_key_to_bytes(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    return private_key.private_numbers().private_value.to_bytes(PRIVATE_KEY_LENGTH, "big")


def public_key_to_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )


class KeyFileStore:
    """
    Durable key/value storage for the identity, kept as one JSON document.

    Both keys are written in a single atomic replace, so a failed write never
    leaves a private key paired with a stale public key.
    """

    def __init__(self, path):
        self.path = path

    def load(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"cannot read identity file {self.path}: {e}") from e
        if not isinstance(doc, dict):
            raise StorageError(f"identity file {self.path} is not a JSON object")
        return {k: v for k, v in doc.items() if isinstance(v, str)}

    def save(self, values):
        directory = os.path.dirname(os.path.abspath(self.path)) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".tmp.", dir=directory)
        except OSError as e:
            raise StorageError(f"cannot write identity file {self.path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(dict(values), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.chmod(tmp, 0o600)
            except OSError:
                logger.debug("chmod 600 not supported for %s", tmp)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageError(f"cannot write identity file {self.path}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)


class MemoryKeyStore:
    """Non-durable store with the same interface as KeyFileStore."""

    def __init__(self, values=None):
        self._values = dict(values or {})

    def load(self):
        return dict(self._values)

    def save(self, values):
        self._values = dict(values)


class Identity:
    """The local static secp256k1 keypair and the short id derived from it."""

    def __init__(self, store):
        self.store = store
        self.private_key = None
        self.public_key = None

    def load_or_create(self):
        stored = self.store.load()
        priv_text = stored.get(PRIV_KEY)
        if priv_text:
            try:
                private_key = private_key_from_bytes(from_b64(priv_text))
            except InvalidFormat as e:
                raise StorageError(f"stored identity is corrupt: {e}") from e
            self._activate(private_key)
            if stored.get(PUB_KEY) != self.public_key_b64:
                logger.warning("Stored public key does not match the private key; using the derived one")
            logger.debug(f"Loaded identity {self.short_id}")
        else:
            self._persist_and_activate(ec.generate_private_key(CURVE))
            logger.debug(f"Generated new identity {self.short_id}")
        return self

    def export_secret(self) -> str:
        return to_b64(private_key_to_bytes(self.private_key))

    def import_secret(self, text: str):
        # Decode and validate completely before touching storage.
        if not isinstance(text, str) or not text.strip():
            raise InvalidFormat("seed is empty")
        private_key = private_key_from_bytes(from_b64(text))
        self._persist_and_activate(private_key)
        logger.debug(f"Imported identity {self.short_id}")
        return self

    def regenerate(self):
        # Generate a new key pair and replace the stored one.
        private_key = ec.generate_private_key(CURVE)
        self._persist_and_activate(private_key)
        logger.debug(f"Regenerated identity {self.short_id}")
        return self

    def get_public_key_bytes(self) -> bytes:
        return public_key_to_bytes(self.public_key)

    @property
    def public_key_b64(self) -> str:
        return to_b64(self.get_public_key_bytes())

    @property
    def short_id(self) -> str:
        return derive_short_id(self.get_public_key_bytes())

    def _persist_and_activate(self, private_key):
        public_bytes = public_key_to_bytes(private_key.public_key())
        self.store.save({
            PRIV_KEY: to_b64(private_key_to_bytes(private_key)),
            PUB_KEY: to_b64(public_bytes),
        })
        self._activate(private_key)

    def _activate(self, private_key):
        self.private_key = private_key
        self.public_key = private_key.public_key()
