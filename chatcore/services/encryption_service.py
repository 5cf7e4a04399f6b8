import logging
from typing import List

from cryptography.hazmat.primitives.asymmetric import ec

from chatcore.exceptions import (
    DecryptionFailed,
    E2EENotImplementedError,
    EncryptionError,
    KeyGenerationFailed,
    KeyPairNotFound,
)
from chatcore.utils import encryption as crypto
from chatcore.utils.keystore import KeyStore

logger = logging.getLogger(__name__)

USER_KEY_NAME = "user_message_key"
E2EE_PRIVATE_KEY_NAME = "user_p256_private_key"

DECRYPT_FALLBACK = "Unable to decrypt message"
PREVIEW_FALLBACK = "Message"


class MessageEncryptionService:
    """Symmetric encryption of message bodies with the device's user key."""

    def __init__(self, key_store: KeyStore, key_name: str = USER_KEY_NAME):
        self._key_store = key_store
        self._key_name = key_name

    def encrypt_message(self, content: str) -> str:
        """Encrypt message content for storage."""
        key = self._get_or_generate_key()
        return crypto.encrypt_to_base64(content, key)

    def decrypt_message(self, encrypted_content: str) -> str:
        """Decrypt message content for display."""
        key = self._get_or_generate_key()
        return crypto.decrypt_from_base64(encrypted_content, key)

    def decrypt_message_preview(self, encrypted_content: str) -> str:
        return crypto.truncate_preview(self.decrypt_message(encrypted_content))

    def has_user_key(self) -> bool:
        try:
            return self._key_store.get(self._key_name) is not None
        except OSError as e:
            logger.warning(f"Key store unavailable: {e}")
            return False

    def generate_new_user_key(self) -> bytes:
        """Create the user key if none exists; an existing key is returned untouched."""
        try:
            return self._key_store.add_if_absent(self._key_name, crypto.generate_symmetric_key())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to create user key: {e}")
            raise KeyGenerationFailed() from e

    def reset_user_key(self) -> bool:
        """Delete the user key. Messages encrypted with it become unreadable."""
        logger.warning("Resetting user message key")
        return self._key_store.delete(self._key_name)

    def safe_decrypt_message(self, encrypted_content: str) -> str:
        try:
            return self.decrypt_message(encrypted_content)
        except EncryptionError as e:
            logger.warning(f"Failed to decrypt message: {e}")
            return DECRYPT_FALLBACK

    def safe_decrypt_message_preview(self, encrypted_content: str) -> str:
        try:
            return self.decrypt_message_preview(encrypted_content)
        except EncryptionError as e:
            logger.warning(f"Failed to decrypt message preview: {e}")
            return PREVIEW_FALLBACK

    def _get_or_generate_key(self) -> bytes:
        try:
            key = self._key_store.get(self._key_name)
        except OSError as e:
            raise KeyGenerationFailed(f"Key store unavailable: {e}") from e
        if key is not None:
            return key
        # First use on this device
        logger.info("No user message key found, generating one")
        return self.generate_new_user_key()


class E2EEMessageEncryptionService:
    """End-to-end encryption with P-256 ECDH + AES-GCM per recipient.

    Only the public key ever leaves the device. Key distribution between
    participants is the caller's job; group delivery does not exist.
    """

    def __init__(self, key_store: KeyStore, private_key_name: str = E2EE_PRIVATE_KEY_NAME):
        self._key_store = key_store
        self._private_key_name = private_key_name

    def initialize_e2ee(self) -> str:
        """Ensure a key pair exists and return the public key to publish."""
        stored = self._key_store.get(self._private_key_name)
        if stored is not None:
            logger.info("User already has E2EE key pair")
            return crypto.public_key_to_base64(crypto.load_private_key(stored))

        try:
            private_key = crypto.generate_p256_private_key()
            stored = self._key_store.add_if_absent(
                self._private_key_name, crypto.serialize_private_key(private_key)
            )
        except (OSError, ValueError) as e:
            raise KeyGenerationFailed("Failed to generate E2EE key pair") from e

        logger.info("E2EE key pair generated and saved")
        return crypto.public_key_to_base64(crypto.load_private_key(stored))

    def is_e2ee_initialized(self) -> bool:
        return self._key_store.get(self._private_key_name) is not None

    def reset_e2ee(self) -> bool:
        """Delete the private key. All E2EE messages become unreadable."""
        logger.warning("Resetting E2EE - this will make encrypted messages unreadable!")
        return self._key_store.delete(self._private_key_name)

    def _get_private_key(self) -> ec.EllipticCurvePrivateKey:
        stored = self._key_store.get(self._private_key_name)
        if stored is None:
            raise KeyPairNotFound()
        return crypto.load_private_key(stored)

    def encrypt_message(self, message: str, recipient_public_key: str) -> str:
        shared_key = crypto.derive_shared_key(self._get_private_key(), recipient_public_key)
        return crypto.encrypt_to_base64(message, shared_key)

    def decrypt_message(self, encrypted_message: str, sender_public_key: str) -> str:
        try:
            shared_key = crypto.derive_shared_key(self._get_private_key(), sender_public_key)
        except EncryptionError as e:
            raise DecryptionFailed(f"E2EE decryption failed: {e}") from e
        return crypto.decrypt_from_base64(encrypted_message, shared_key)

    def encrypt_message_for_group(self, message: str, participant_public_keys: List[str]) -> str:
        raise E2EENotImplementedError("Group message encryption not yet implemented")

    def safe_decrypt_message(self, encrypted_message: str, sender_public_key: str) -> str:
        try:
            return self.decrypt_message(encrypted_message, sender_public_key)
        except EncryptionError as e:
            logger.warning(f"Failed to decrypt E2EE message: {e}")
            return DECRYPT_FALLBACK

    def create_message_preview(self, encrypted_message: str, sender_public_key: str) -> str:
        try:
            return crypto.truncate_preview(self.decrypt_message(encrypted_message, sender_public_key))
        except EncryptionError as e:
            logger.warning(f"Failed to decrypt E2EE message preview: {e}")
            return PREVIEW_FALLBACK
