import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from protocol.errors import AuthenticationError, InvalidFormat
from protocol.json_handler import pack_json, unpack_json

NONCE_LENGTH = 12


@dataclass(frozen=True)
class EncryptedPayload:
    nonce: bytes
    ciphertext: bytes

    def to_wire(self) -> str:
        return pack_json({
            "iv": base64.b64encode(self.nonce).decode("ascii"),
            "data": base64.b64encode(self.ciphertext).decode("ascii"),
        })

    @classmethod
    def from_wire(cls, data) -> "EncryptedPayload":
        msg = unpack_json(data)
        iv, body = msg.get("iv"), msg.get("data")
        if not isinstance(iv, str) or not isinstance(body, str):
            raise InvalidFormat("payload needs 'iv' and 'data' strings")
        try:
            nonce = base64.b64decode(iv, validate=True)
            ciphertext = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidFormat(f"payload is not base64: {e}") from e
        if len(nonce) != NONCE_LENGTH:
            raise InvalidFormat(f"nonce must be {NONCE_LENGTH} bytes")
        return cls(nonce=nonce, ciphertext=ciphertext)


def encrypt(key: bytes, plaintext: str) -> EncryptedPayload:
    # Fresh random nonce on every call; never reuse one under the same key.
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return EncryptedPayload(nonce=nonce, ciphertext=ciphertext)


def decrypt(key: bytes, payload: EncryptedPayload) -> str:
    try:
        plain = AESGCM(key).decrypt(payload.nonce, payload.ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationError("message failed authentication") from e
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidFormat("decrypted message is not UTF-8") from e
