"""Error taxonomy for the messaging core."""

from typing import Optional


class ChatCoreError(Exception):
    """Base class for all messaging core errors."""

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail


class InputValidationError(ChatCoreError):
    """Bad identifier or content; rejected before any backend call."""


class AuthenticationRequiredError(ChatCoreError):
    """No signed-in user for an operation that needs one."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(detail)


class BackendError(ChatCoreError):
    """Transport or backend failure; carries the underlying cause."""

    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause

    def __str__(self):
        if self.cause is not None:
            return f"{self.detail}: {self.cause}"
        return self.detail


class RecordNotFoundError(BackendError):
    """A referenced row (profile, message) does not exist."""


class EncryptionError(ChatCoreError):
    """Base class for local, recoverable crypto failures."""


class KeyGenerationFailed(EncryptionError):
    def __init__(self, detail: str = "Failed to generate encryption key"):
        super().__init__(detail)


class EncryptionFailed(EncryptionError):
    def __init__(self, detail: str = "Failed to encrypt message"):
        super().__init__(detail)


class DecryptionFailed(EncryptionError):
    def __init__(self, detail: str = "Failed to decrypt message"):
        super().__init__(detail)


class KeyPairNotFound(EncryptionError):
    def __init__(self, detail: str = "E2EE key pair not found. Please initialize E2EE first."):
        super().__init__(detail)


class InvalidPublicKey(EncryptionError):
    def __init__(self, detail: str = "Invalid public key"):
        super().__init__(detail)


class E2EENotImplementedError(ChatCoreError, NotImplementedError):
    """Feature of the E2EE scheme that does not exist; not a transient failure."""

    def __init__(self, detail: str):
        super().__init__(f"E2EE implementation incomplete: {detail}")
