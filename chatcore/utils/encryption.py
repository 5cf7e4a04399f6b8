"""Cryptographic primitives for message bodies.

Symmetric scheme: AES-256-GCM, stored as base64(nonce || ciphertext || tag).
Hybrid scheme: P-256 ECDH shared secret, HKDF-SHA256 to a 32 byte key, then
the same AES-GCM sealing.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from chatcore.exceptions import DecryptionFailed, EncryptionFailed, InvalidPublicKey

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE_BITS = 256
E2EE_HKDF_SALT = b"CHATCORE-E2EE-v1"
PREVIEW_LENGTH = 50


def truncate_preview(text: str, length: int = PREVIEW_LENGTH) -> str:
    """Cut text to `length` characters and append an ellipsis when it was longer."""
    if len(text) > length:
        return text[:length] + "..."
    return text


def generate_symmetric_key() -> bytes:
    """Generate a new AES-256 key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE_BITS)


def encrypt_to_base64(text: str, key: bytes) -> str:
    """Seal text with AES-GCM and return a transport-safe string."""
    try:
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, text.encode("utf-8"), None)
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        logger.error(f"AES-GCM sealing failed: {e}")
        raise EncryptionFailed() from e
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_from_base64(encoded: str, key: bytes) -> str:
    """Open a base64 AES-GCM payload produced by encrypt_to_base64."""
    try:
        data = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        logger.debug(f"Invalid base64 payload ({len(encoded)} chars)")
        raise DecryptionFailed("Invalid Base64 string") from e

    if len(data) < NONCE_SIZE + 16:
        raise DecryptionFailed("Ciphertext too short")

    nonce, sealed = data[:NONCE_SIZE], data[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, sealed, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, ValueError) as e:
        # UnicodeDecodeError is a ValueError
        logger.debug(f"AES-GCM open failed for {len(data)} byte payload")
        raise DecryptionFailed() from e


# P-256 key agreement

def generate_p256_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def serialize_private_key(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    """Serialize a private key for the local key store (PKCS8 DER)."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def load_private_key(data: bytes) -> ec.EllipticCurvePrivateKey:
    return serialization.load_der_private_key(data, password=None)


def public_key_to_base64(private_key: ec.EllipticCurvePrivateKey) -> str:
    """Export the public half as base64 of the uncompressed X9.63 point."""
    point = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )
    return base64.b64encode(point).decode("ascii")


def load_public_key(public_key_b64: str) -> ec.EllipticCurvePublicKey:
    try:
        point = base64.b64decode(public_key_b64.encode("ascii"), validate=True)
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), point)
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise InvalidPublicKey() from e


def derive_shared_key(private_key: ec.EllipticCurvePrivateKey, public_key_b64: str) -> bytes:
    """Derive the symmetric key both parties compute from ECDH."""
    peer_public_key = load_public_key(public_key_b64)
    shared_secret = private_key.exchange(ec.ECDH(), peer_public_key)
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=E2EE_HKDF_SALT,
        info=b"",
    ).derive(shared_secret)
