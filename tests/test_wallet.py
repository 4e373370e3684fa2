from __future__ import annotations

import json

import pytest

from handle_sdk.errors import (
    AlreadyInitializedError,
    KeystoreNotInitializedError,
    SchemaValidationError,
    SecureStorageError,
)
from handle_sdk.keystore import (
    FileSecretStore,
    KeystoreStore,
    MemoryBackend,
    MemorySecretStore,
    Wallet,
)
from handle_sdk.nostr.signing import verify_event

PHRASE = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
XPRV = (
    "xprv9s21ZrQH143K3GJpoapnV8SFfukcVBSfeCficPSGfubmSFDxo1kuHnLisriDvSnRRuL2Qrg5ggqHKNVpxR86QEC8w35uxmGoggxtQTPvfUu"
)
XPUB = (
    "xpub661MyMwAqRbcFkPHucMnrGNzDwb6teAX1RbKQmqtEF8kK3Z7LZ59qafCjB9eCRLiTVG3uxBxgKvRgbubRhqSKXnGGb1aoaqLrpMBDrVxga8"
)
PRIV_0 = "74ed9b615fc62a5f90212107de5d442ba6f67cca6b20707aa8bd954121aa8e73"
PUB_0 = "a52d46cf9dd838ec615d55031eae5d02b5d7a18eebffeaec30d8923eb70d69f7"


class BrokenSecretStore(MemorySecretStore):
    def get_secret(self):  # noqa: ANN201
        raise SecureStorageError("vault locked")


def _wallet(secrets=None) -> Wallet:  # noqa: ANN001
    return Wallet(KeystoreStore(MemoryBackend()), secrets or MemorySecretStore())


def test_setup_stores_xprv_apart_from_keystore() -> None:
    backend = MemoryBackend()
    secrets = MemorySecretStore()
    wallet = Wallet(KeystoreStore(backend), secrets)

    keystore = wallet.setup("  Abandon " + PHRASE.split(" ", 1)[1] + "\n", ["alice@bitcoin"])

    assert keystore.xpub == XPUB
    assert secrets.get_secret() == XPRV
    assert "xprv" not in backend.raw
    assert wallet.private_key_for("alice@bitcoin") == PRIV_0


def test_setup_rejects_invalid_phrase_without_side_effects() -> None:
    secrets = MemorySecretStore()
    wallet = _wallet(secrets)
    with pytest.raises(SchemaValidationError, match="invalid mnemonic"):
        wallet.setup("abandon " * 12)
    assert wallet.keystore is None
    assert secrets.get_secret() is None


def test_confirm_flow_requires_matching_xpub() -> None:
    wallet = _wallet()
    with pytest.raises(SchemaValidationError, match="does not match"):
        wallet.setup(PHRASE, expected_xpub="xpub-of-another-phrase")
    assert wallet.keystore is None

    assert wallet.setup(PHRASE, expected_xpub=XPUB).xpub == XPUB


def test_setup_twice_keeps_existing_secret() -> None:
    secrets = MemorySecretStore()
    wallet = _wallet(secrets)
    wallet.setup(PHRASE)
    with pytest.raises(AlreadyInitializedError):
        wallet.setup(PHRASE)
    assert secrets.get_secret() == XPRV


def test_restore_keeps_paths_and_next_index() -> None:
    source = _wallet()
    source.setup(PHRASE, ["alice@bitcoin", "bob@bitcoin"])
    source.store.remove_handle("bob@bitcoin")
    backup = source.keystore.to_json_dict()

    restored = _wallet()
    keystore = restored.restore(PHRASE, backup)

    assert keystore.handles == source.keystore.handles
    assert keystore.next_index == 2
    assert restored.store.create_handle("carol@bitcoin").path == "m/35053/0/0/2"


def test_restore_rejects_foreign_backup() -> None:
    wallet = _wallet()
    with pytest.raises(SchemaValidationError):
        wallet.restore(PHRASE, {"xpub": "xpub-else", "handles": {}})


def test_sign_event_with_handle_key() -> None:
    wallet = _wallet()
    wallet.setup(PHRASE, ["alice@bitcoin"])

    event = wallet.sign_event("alice@bitcoin", {"created_at": 1, "kind": 1, "tags": [], "content": "hi"})

    assert event.public_key == PUB_0
    assert verify_event(event)


def test_private_key_errors() -> None:
    wallet = _wallet(BrokenSecretStore())
    with pytest.raises(KeystoreNotInitializedError):
        wallet.master_private_key()

    wallet.store.initialize(XPRV, ["alice@bitcoin"])
    with pytest.raises(SecureStorageError):
        wallet.private_key_for("alice@bitcoin")
    with pytest.raises(SchemaValidationError, match="not tracked"):
        wallet.private_key_for("carol@bitcoin")


def test_missing_secret_is_an_error_not_absence() -> None:
    wallet = _wallet()
    wallet.store.initialize(XPRV, ["alice@bitcoin"])
    with pytest.raises(SecureStorageError, match="missing"):
        wallet.private_key_for("alice@bitcoin")


def test_teardown_clears_both_stores() -> None:
    secrets = MemorySecretStore()
    wallet = _wallet(secrets)
    wallet.setup(PHRASE, ["alice@bitcoin"])
    wallet.teardown()
    assert wallet.keystore is None
    assert secrets.get_secret() is None


def test_file_secret_store(tmp_path) -> None:
    path = tmp_path / "secret.json"
    store = FileSecretStore(path)
    assert store.get_secret() is None

    store.set_secret(XPRV)
    assert store.get_secret() == XPRV
    assert json.loads(path.read_text(encoding="utf-8")) == {"xprv": XPRV}
    assert (path.stat().st_mode & 0o777) == 0o600

    store.remove_secret()
    assert store.get_secret() is None
    store.remove_secret()


def test_file_secret_store_corruption_is_reported(tmp_path) -> None:
    path = tmp_path / "secret.json"
    path.write_text("{}", encoding="utf-8")
    with pytest.raises(SecureStorageError):
        FileSecretStore(path).get_secret()

    path.write_text("garbage", encoding="utf-8")
    with pytest.raises(SecureStorageError):
        FileSecretStore(path).get_secret()
