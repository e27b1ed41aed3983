"""
Static-static session keys.

Both parties run ECDH between their own private key and the other's public
key, then expand the shared x-coordinate with HKDF-SHA256. The room id is the
salt, so the same pair of identities gets a different key in every room. The
key never travels over the signaling medium.
"""
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from crypto.identity import CURVE, PUBLIC_KEY_LENGTH, from_b64
from protocol.errors import InvalidFormat, KeyAgreementError

HKDF_INFO = b"cryptochat-e2ee"
SESSION_KEY_LENGTH = 32


def load_peer_public_key(peer_public_key) -> ec.EllipticCurvePublicKey:
    """Accept raw compressed-point bytes or their base64 text."""
    if isinstance(peer_public_key, str):
        try:
            peer_public_key = from_b64(peer_public_key)
        except InvalidFormat as e:
            raise KeyAgreementError(f"peer public key is not base64: {e}") from e
    if not isinstance(peer_public_key, (bytes, bytearray)):
        raise KeyAgreementError("peer public key must be bytes or base64 text")
    if len(peer_public_key) != PUBLIC_KEY_LENGTH:
        raise KeyAgreementError(
            f"peer public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(peer_public_key)}"
        )
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes(peer_public_key))
    except ValueError as e:
        raise KeyAgreementError(f"peer public key is not a point on secp256k1: {e}") from e


def derive_session_key(local_private_key, peer_public_key, context_salt: str) -> bytes:
    peer_key = load_peer_public_key(peer_public_key)
    shared = local_private_key.exchange(ec.ECDH(), peer_key)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SESSION_KEY_LENGTH,
        salt=context_salt.encode("utf-8"),
        info=HKDF_INFO,
    )
    return hkdf.derive(shared)
