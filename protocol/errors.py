class CryptoChatError(Exception):
    """Base class for every error surfaced to the user."""


class StorageError(CryptoChatError):
    """The identity could not be read from or written to durable storage."""


class InvalidFormat(CryptoChatError):
    """Input could not be decoded (seed, key text, wire payload)."""


class KeyAgreementError(CryptoChatError):
    """The peer public key is malformed or not a point on the curve."""


class AuthenticationError(CryptoChatError):
    """Ciphertext failed to authenticate: tampered, or encrypted under another key."""


class NoActiveChannel(CryptoChatError):
    """No open data channel with a session key is available for sending."""


class NotInRoom(CryptoChatError):
    """The action needs a joined room."""
