"""SDK error types."""

from __future__ import annotations


class HandleSDKError(RuntimeError):
    """Base SDK error."""


class SchemaValidationError(HandleSDKError):
    """Input or registry response does not match the expected shape."""


class FileImportError(SchemaValidationError):
    """An imported JSON document could not be parsed or validated."""


class ConflictError(HandleSDKError):
    """Registry data contradicts the locally derived key."""

    def __init__(self, message: str, *, handle: str | None = None) -> None:
        super().__init__(message)
        self.handle = handle


class RegistryUnavailableError(HandleSDKError):
    """Registry could not be reached."""


class RegistryRequestError(RegistryUnavailableError):
    """Registry returned a structured HTTP error response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: object | None = None,
        body: object | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.body = body


class SecureStorageError(HandleSDKError):
    """The secret store failed; never to be read as "no secret"."""


class EntropySourceError(HandleSDKError):
    """The platform could not supply secure randomness."""


class DerivationError(HandleSDKError):
    """Hierarchical key derivation failed."""


class InvalidKeyError(HandleSDKError):
    """Private key is malformed or out of curve range."""


class AlreadyInitializedError(HandleSDKError):
    """A keystore already exists."""


class KeystoreNotInitializedError(HandleSDKError):
    """Operation requires an initialized keystore."""


class SDKTimeoutError(HandleSDKError):
    """Timed out waiting for registry state."""


class PurchaseUnavailableError(HandleSDKError):
    """No in-app purchase backend is available on this platform."""
