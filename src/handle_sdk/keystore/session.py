"""Wallet: the keystore together with the secret store that holds its xprv."""

from __future__ import annotations

import logging
from typing import Any, Optional

from handle_sdk.crypto.keys import derive_private_key, master_private_key, master_public_key, validate_secret
from handle_sdk.errors import (
    AlreadyInitializedError,
    SchemaValidationError,
    SecureStorageError,
)
from handle_sdk.keystore.models import MasterKeystore, parse_keystore
from handle_sdk.keystore.secret_store import SecretStore
from handle_sdk.keystore.store import InitialHandles, KeystoreStore
from handle_sdk.nostr.schemas import NostrEvent, NostrEventData
from handle_sdk.nostr.signing import sign_event

logger = logging.getLogger(__name__)


def normalize_phrase(phrase: str) -> str:
    return " ".join(phrase.lower().split())


class Wallet:
    def __init__(self, store: KeystoreStore, secrets: SecretStore) -> None:
        self.store = store
        self.secrets = secrets

    @property
    def keystore(self) -> Optional[MasterKeystore]:
        return self.store.get()

    def _install(
        self,
        phrase: str,
        handles: InitialHandles,
        *,
        expected_xpub: str | None,
        next_index: int | None = None,
    ) -> MasterKeystore:
        phrase = normalize_phrase(phrase)
        if not validate_secret(phrase):
            raise SchemaValidationError("invalid mnemonic phrase")
        xprv = master_private_key(phrase)
        if expected_xpub is not None and master_public_key(xprv) != expected_xpub:
            raise SchemaValidationError("mnemonic phrase does not match the keystore")
        if self.store.get() is not None:
            raise AlreadyInitializedError("keystore already initialized")

        self.secrets.set_secret(xprv)
        try:
            return self.store.initialize(xprv, handles, next_index=next_index)
        except Exception:
            self.secrets.remove_secret()
            raise

    def setup(
        self,
        phrase: str,
        handles: InitialHandles = (),
        *,
        expected_xpub: str | None = None,
    ) -> MasterKeystore:
        """Initialize from a mnemonic phrase.

        ``expected_xpub`` turns this into the confirm-your-phrase check: the
        phrase must reproduce exactly that master public key.
        """
        return self._install(phrase, handles, expected_xpub=expected_xpub)

    def restore(self, phrase: str, backup: MasterKeystore | dict[str, Any]) -> MasterKeystore:
        """Initialize from a keystore backup plus the phrase it was made from."""
        keystore = parse_keystore(backup)
        return self._install(
            phrase,
            keystore.handles,
            expected_xpub=keystore.xpub,
            next_index=keystore.next_index,
        )

    def master_private_key(self) -> str:
        self.store.require()
        secret = self.secrets.get_secret()
        if secret is None:
            raise SecureStorageError("master secret is missing from secure storage")
        return secret

    def private_key_for(self, name: str) -> str:
        record = self.store.lookup(name)
        if record is None:
            raise SchemaValidationError(f"handle is not tracked: {name}")
        return derive_private_key(self.master_private_key(), record.path).hex()

    def sign_event(self, name: str, data: NostrEventData | dict[str, Any]) -> NostrEvent:
        return sign_event(data, self.private_key_for(name))

    def teardown(self) -> None:
        self.secrets.remove_secret()
        self.store.reset()
        logger.info("wallet removed")


__all__ = ["Wallet", "normalize_phrase"]
