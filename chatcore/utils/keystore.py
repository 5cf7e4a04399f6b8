"""Secure local storage for raw key bytes, addressed by name."""

import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyStore(ABC):
    """Get/set/delete key material by name."""

    @abstractmethod
    def get(self, name: str) -> Optional[bytes]:
        """Return stored bytes or None."""

    @abstractmethod
    def set(self, name: str, data: bytes) -> None:
        """Store bytes, replacing any previous value."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Remove a value; True if something was removed."""

    @abstractmethod
    def add_if_absent(self, name: str, data: bytes) -> bytes:
        """Atomically store `data` unless a value exists; return the stored value."""


class MemoryKeyStore(KeyStore):
    """Process-local key store."""

    def __init__(self):
        self._items: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[bytes]:
        with self._lock:
            return self._items.get(name)

    def set(self, name: str, data: bytes) -> None:
        with self._lock:
            self._items[name] = bytes(data)

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._items.pop(name, None) is not None

    def add_if_absent(self, name: str, data: bytes) -> bytes:
        with self._lock:
            return self._items.setdefault(name, bytes(data))


class FileKeyStore(KeyStore):
    """Key store backed by owner-only files in a private directory.

    Values survive restarts. The directory is created with mode 0700 and each
    key file with mode 0600, so other local users cannot read them.
    """

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)

    def _path(self, name: str) -> Path:
        if not _NAME_PATTERN.match(name):
            raise ValueError(f"Invalid key name: {name!r}")
        return self.directory / f"{name}.key"

    def get(self, name: str) -> Optional[bytes]:
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def set(self, name: str, data: bytes) -> None:
        path = self._path(name)
        tmp_path = path.with_suffix(".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
        logger.debug(f"Stored key '{name}'")

    def delete(self, name: str) -> bool:
        try:
            self._path(name).unlink()
            logger.info(f"Deleted key '{name}'")
            return True
        except FileNotFoundError:
            return False

    def add_if_absent(self, name: str, data: bytes) -> bytes:
        path = self._path(name)
        # Write fully to a private temp file, then hard-link it into place;
        # link() fails if the name exists, so readers never see a partial key.
        tmp_path = path.with_name(f".{name}.{os.getpid()}.{threading.get_ident()}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return path.read_bytes()
        finally:
            tmp_path.unlink(missing_ok=True)
        logger.info(f"Created key '{name}'")
        return bytes(data)
