"""Handle SDK public surface."""

from handle_sdk.certificates import (
    Certificate,
    CertificateData,
    build_certificate,
    extract_data,
    is_certificate,
    is_certificate_data,
)
from handle_sdk.client import ClaimResult, RegistryClient, Reservation
from handle_sdk.crypto.keys import (
    derive_private_key,
    derive_public_key,
    generate_secret,
    master_private_key,
    master_public_key,
    script_for_public_key,
    validate_secret,
)
from handle_sdk.errors import (
    AlreadyInitializedError,
    ConflictError,
    DerivationError,
    EntropySourceError,
    FileImportError,
    HandleSDKError,
    InvalidKeyError,
    KeystoreNotInitializedError,
    PurchaseUnavailableError,
    RegistryRequestError,
    RegistryUnavailableError,
    SchemaValidationError,
    SDKTimeoutError,
    SecureStorageError,
)
from handle_sdk.keystore import (
    FileSecretStore,
    HandleRecord,
    JSONFileBackend,
    KeystoreStore,
    MasterKeystore,
    MemoryBackend,
    MemorySecretStore,
    Wallet,
)
from handle_sdk.nostr.schemas import NostrEvent, NostrEventData, is_nostr_event, is_nostr_event_data
from handle_sdk.nostr.signing import sign_event, verify_event
from handle_sdk.purchase import NoopPurchaseBackend, PurchaseBackend, StaticTokenPurchaseBackend
from handle_sdk.reconcile import ErrorKind, Outcome, ReconcileResult, ReconciliationEngine
from handle_sdk.status import HandleStatus, parse_handle_status

__all__ = [
    "HandleSDKError",
    "SchemaValidationError",
    "FileImportError",
    "ConflictError",
    "RegistryUnavailableError",
    "RegistryRequestError",
    "SecureStorageError",
    "EntropySourceError",
    "DerivationError",
    "InvalidKeyError",
    "AlreadyInitializedError",
    "KeystoreNotInitializedError",
    "SDKTimeoutError",
    "PurchaseUnavailableError",
    "generate_secret",
    "validate_secret",
    "master_private_key",
    "master_public_key",
    "derive_private_key",
    "derive_public_key",
    "script_for_public_key",
    "Certificate",
    "CertificateData",
    "is_certificate",
    "is_certificate_data",
    "extract_data",
    "build_certificate",
    "HandleStatus",
    "parse_handle_status",
    "NostrEvent",
    "NostrEventData",
    "is_nostr_event",
    "is_nostr_event_data",
    "sign_event",
    "verify_event",
    "RegistryClient",
    "Reservation",
    "ClaimResult",
    "HandleRecord",
    "MasterKeystore",
    "KeystoreStore",
    "MemoryBackend",
    "JSONFileBackend",
    "MemorySecretStore",
    "FileSecretStore",
    "Wallet",
    "PurchaseBackend",
    "NoopPurchaseBackend",
    "StaticTokenPurchaseBackend",
    "Outcome",
    "ErrorKind",
    "ReconcileResult",
    "ReconciliationEngine",
]
