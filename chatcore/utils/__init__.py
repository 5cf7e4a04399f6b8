"""Utility functions and helpers."""

from chatcore.utils.timeutils import utcnow
from chatcore.utils.encryption import truncate_preview, PREVIEW_LENGTH
from chatcore.utils.keystore import KeyStore, MemoryKeyStore, FileKeyStore

__all__ = [
    "utcnow",
    "truncate_preview",
    "PREVIEW_LENGTH",
    "KeyStore",
    "MemoryKeyStore",
    "FileKeyStore",
]
