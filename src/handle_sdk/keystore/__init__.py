from handle_sdk.keystore.backends import JSONFileBackend, KeystoreBackend, MemoryBackend, StorageError
from handle_sdk.keystore.models import HandleRecord, KeystoreBackup, MasterKeystore, parse_keystore
from handle_sdk.keystore.secret_store import FileSecretStore, MemorySecretStore, SecretStore
from handle_sdk.keystore.session import Wallet
from handle_sdk.keystore.store import KeystoreInvariantError, KeystoreStore

__all__ = [
    "KeystoreBackend",
    "MemoryBackend",
    "JSONFileBackend",
    "StorageError",
    "HandleRecord",
    "MasterKeystore",
    "KeystoreBackup",
    "parse_keystore",
    "SecretStore",
    "MemorySecretStore",
    "FileSecretStore",
    "KeystoreStore",
    "KeystoreInvariantError",
    "Wallet",
]
