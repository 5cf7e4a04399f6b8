"""Tests for message encryption services and key stores."""

import os
import stat

import pytest

from chatcore.exceptions import (
    DecryptionFailed,
    E2EENotImplementedError,
    InvalidPublicKey,
    KeyPairNotFound,
)
from chatcore.services.encryption_service import (
    DECRYPT_FALLBACK,
    PREVIEW_FALLBACK,
    E2EEMessageEncryptionService,
    MessageEncryptionService,
)
from chatcore.utils.encryption import truncate_preview
from chatcore.utils.keystore import FileKeyStore, MemoryKeyStore


class TestSymmetricEncryption:
    """Test the per-device symmetric message encryption."""

    @pytest.mark.parametrize("plaintext", ["", "hello", "héllo wörld 🌍 日本語", "x" * 1500])
    def test_round_trip(self, encryption, plaintext):
        """Test that decrypt(encrypt(m)) == m for empty, unicode and long content."""
        encrypted = encryption.encrypt_message(plaintext)
        assert encrypted != plaintext or plaintext == ""
        assert encryption.decrypt_message(encrypted) == plaintext

    def test_same_plaintext_encrypts_differently(self, encryption):
        """Test that every encryption uses a fresh nonce."""
        assert encryption.encrypt_message("hello") != encryption.encrypt_message("hello")

    def test_invalid_base64_raises(self, encryption):
        """Test that a non-base64 payload is a decryption failure."""
        with pytest.raises(DecryptionFailed):
            encryption.decrypt_message("not base64 at all!!")

    def test_truncated_payload_raises(self, encryption):
        """Test that a payload shorter than nonce plus tag is rejected."""
        with pytest.raises(DecryptionFailed):
            encryption.decrypt_message("AAAA")

    def test_foreign_key_falls_back(self, encryption):
        """Test that content sealed with another key decrypts to the fallback text."""
        other = MessageEncryptionService(MemoryKeyStore())
        encrypted = other.encrypt_message("secret")

        assert encryption.safe_decrypt_message(encrypted) == DECRYPT_FALLBACK
        assert encryption.safe_decrypt_message_preview(encrypted) == PREVIEW_FALLBACK

    def test_fallbacks_are_stable(self, encryption):
        """Test that every undecryptable input yields the same fallback."""
        for garbage in ["", "!!!", "AAAA", "QUJDREVGR0hJSktMTU5PUFFSU1RVVldYWVo="]:
            assert encryption.safe_decrypt_message(garbage) == DECRYPT_FALLBACK
            assert encryption.safe_decrypt_message_preview(garbage) == PREVIEW_FALLBACK

    def test_preview_truncation(self, encryption):
        """Test that previews keep 50 characters and append an ellipsis."""
        long_text = "a" * 60
        preview = encryption.decrypt_message_preview(encryption.encrypt_message(long_text))

        assert preview == "a" * 50 + "..."
        assert len(preview) == 53
        assert truncate_preview("b" * 50) == "b" * 50

    def test_key_generation_is_idempotent(self, encryption):
        """Test that generating the user key twice keeps the first key."""
        assert not encryption.has_user_key()
        first = encryption.generate_new_user_key()
        second = encryption.generate_new_user_key()

        assert first == second
        assert encryption.has_user_key()

    def test_decrypt_generates_missing_key(self, encryption):
        """Test that the user key is created lazily on first use."""
        encryption.safe_decrypt_message("garbage")
        assert encryption.has_user_key()

    def test_reset_key_makes_old_content_unreadable(self, encryption):
        """Test that resetting the key orphans previously encrypted content."""
        encrypted = encryption.encrypt_message("before reset")
        assert encryption.reset_user_key()

        assert encryption.safe_decrypt_message(encrypted) == DECRYPT_FALLBACK


class TestE2EEEncryption:
    """Test P-256 end-to-end encryption between two devices."""

    @pytest.fixture
    def alice(self):
        return E2EEMessageEncryptionService(MemoryKeyStore())

    @pytest.fixture
    def bob(self):
        return E2EEMessageEncryptionService(MemoryKeyStore())

    def test_round_trip_between_devices(self, alice, bob):
        """Test that Bob can read what Alice encrypted for his public key."""
        alice_public = alice.initialize_e2ee()
        bob_public = bob.initialize_e2ee()

        encrypted = alice.encrypt_message("hi bob 👋", bob_public)

        assert bob.decrypt_message(encrypted, alice_public) == "hi bob 👋"
        # Sender can read it back as well
        assert alice.decrypt_message(encrypted, bob_public) == "hi bob 👋"

    def test_initialize_is_idempotent(self, alice):
        """Test that initializing twice returns the same public key."""
        assert alice.initialize_e2ee() == alice.initialize_e2ee()
        assert alice.is_e2ee_initialized()

    def test_encrypt_requires_key_pair(self, alice, bob):
        """Test that encrypting before initialization fails."""
        bob_public = bob.initialize_e2ee()
        with pytest.raises(KeyPairNotFound):
            alice.encrypt_message("hello", bob_public)

    def test_invalid_public_key(self, alice):
        """Test that a malformed peer key is rejected."""
        alice.initialize_e2ee()
        with pytest.raises(InvalidPublicKey):
            alice.encrypt_message("hello", "bm90IGEga2V5")
        with pytest.raises(DecryptionFailed):
            alice.decrypt_message("AAAA", "bm90IGEga2V5")
        assert alice.safe_decrypt_message("AAAA", "bm90IGEga2V5") == DECRYPT_FALLBACK

    def test_wrong_sender_key_falls_back(self, alice, bob):
        """Test that decrypting with the wrong sender key yields the fallback."""
        carol = E2EEMessageEncryptionService(MemoryKeyStore())
        carol_public = carol.initialize_e2ee()
        bob_public = bob.initialize_e2ee()
        alice.initialize_e2ee()

        encrypted = alice.encrypt_message("for bob", bob_public)

        assert bob.safe_decrypt_message(encrypted, carol_public) == DECRYPT_FALLBACK
        assert bob.create_message_preview(encrypted, carol_public) == PREVIEW_FALLBACK

    def test_preview_is_truncated(self, alice, bob):
        """Test that E2EE previews follow the 50 character rule."""
        alice_public = alice.initialize_e2ee()
        bob_public = bob.initialize_e2ee()
        encrypted = alice.encrypt_message("z" * 80, bob_public)

        assert bob.create_message_preview(encrypted, alice_public) == "z" * 50 + "..."

    def test_group_encryption_not_implemented(self, alice):
        """Test that group delivery reports a distinct not-implemented error."""
        alice.initialize_e2ee()
        with pytest.raises(E2EENotImplementedError) as exc_info:
            alice.encrypt_message_for_group("hello", [])
        assert isinstance(exc_info.value, NotImplementedError)

    def test_reset(self, alice):
        """Test that resetting removes the key pair."""
        alice.initialize_e2ee()
        assert alice.reset_e2ee()
        assert not alice.is_e2ee_initialized()


class TestFileKeyStore:
    """Test the on-disk key store."""

    def test_add_if_absent_keeps_first_value(self, tmp_path):
        """Test that a second add returns the existing value."""
        store = FileKeyStore(tmp_path / "keys")

        assert store.add_if_absent("user_message_key", b"first") == b"first"
        assert store.add_if_absent("user_message_key", b"second") == b"first"
        assert store.get("user_message_key") == b"first"

    def test_files_are_private(self, tmp_path):
        """Test that key files are readable by the owner only."""
        store = FileKeyStore(tmp_path / "keys")
        store.add_if_absent("secret", b"\x00\x01")
        store.set("other", b"\x02")

        for name in ("secret.key", "other.key"):
            mode = stat.S_IMODE(os.stat(tmp_path / "keys" / name).st_mode)
            assert mode == 0o600
        assert not [p for p in (tmp_path / "keys").iterdir() if p.suffix == ".tmp"]

    def test_values_survive_new_instance(self, tmp_path):
        """Test that keys persist across store instances."""
        FileKeyStore(tmp_path / "keys").set("k", b"value")
        assert FileKeyStore(tmp_path / "keys").get("k") == b"value"

    def test_delete(self, tmp_path):
        """Test deleting present and missing keys."""
        store = FileKeyStore(tmp_path / "keys")
        store.set("k", b"value")

        assert store.delete("k") is True
        assert store.delete("k") is False
        assert store.get("k") is None

    def test_invalid_name_rejected(self, tmp_path):
        """Test that names cannot escape the key directory."""
        store = FileKeyStore(tmp_path / "keys")
        with pytest.raises(ValueError):
            store.get("../outside")

    def test_service_uses_file_store(self, tmp_path):
        """Test that encryption keys written to disk are reused by a new service."""
        encrypted = MessageEncryptionService(FileKeyStore(tmp_path / "keys")).encrypt_message("persisted")
        restored = MessageEncryptionService(FileKeyStore(tmp_path / "keys"))

        assert restored.decrypt_message(encrypted) == "persisted"
