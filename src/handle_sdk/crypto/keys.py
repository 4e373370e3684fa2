"""Deterministic handle key derivation.

Every handle key is a leaf of one BIP32 tree rooted at a 12-word BIP39 phrase:

    phrase --(BIP39, empty passphrase)--> seed --(BIP32)--> master
    master / 35053 / 0 / 0 / <index>  --> handle key

All path components are non-hardened so that public keys (and therefore
scripts) can be derived from the master xpub alone.
"""

from __future__ import annotations

import re
import secrets

from bip_utils import (
    Bip32Slip10Secp256k1,
    Bip39Languages,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
)

from handle_sdk.errors import DerivationError, EntropySourceError

HANDLE_PATH_PREFIX = "m/35053/0/0/"
HANDLE_PATH_RE = re.compile(r"^m/35053/0/0/(\d+)$")

SECRET_ENTROPY_BYTES = 16
# OP_1 followed by a 32-byte push: segwit v1 single-key program.
P2TR_SCRIPT_PREFIX = "5120"
XONLY_KEY_LEN = 32


def generate_secret() -> str:
    try:
        entropy = secrets.token_bytes(SECRET_ENTROPY_BYTES)
    except (NotImplementedError, OSError) as exc:
        raise EntropySourceError("secure randomness unavailable") from exc
    if len(entropy) != SECRET_ENTROPY_BYTES:
        raise EntropySourceError("secure randomness returned short read")
    return Bip39MnemonicGenerator(Bip39Languages.ENGLISH).FromEntropy(entropy).ToStr()


def validate_secret(phrase: str) -> bool:
    if not isinstance(phrase, str) or not phrase.strip():
        return False
    return Bip39MnemonicValidator(Bip39Languages.ENGLISH).IsValid(phrase)


def _master_from_phrase(phrase: str) -> Bip32Slip10Secp256k1:
    if not validate_secret(phrase):
        raise DerivationError("invalid mnemonic phrase")
    seed = Bip39SeedGenerator(phrase, Bip39Languages.ENGLISH).Generate("")
    return Bip32Slip10Secp256k1.FromSeed(seed)


def _from_extended_key(extended_key: str) -> Bip32Slip10Secp256k1:
    try:
        return Bip32Slip10Secp256k1.FromExtendedKey(extended_key)
    except Exception as exc:
        raise DerivationError("invalid extended key") from exc


def master_private_key(phrase: str) -> str:
    return _master_from_phrase(phrase).PrivateKey().ToExtended()


def master_public_key(secret: str) -> str:
    """Return the master xpub for either a mnemonic phrase or an xprv."""
    if validate_secret(secret):
        return _master_from_phrase(secret).PublicKey().ToExtended()
    node = _from_extended_key(secret)
    if node.IsPublicOnly():
        raise DerivationError("expected an extended private key")
    return node.PublicKey().ToExtended()


def _derive(extended_key: str, path: str) -> Bip32Slip10Secp256k1:
    node = _from_extended_key(extended_key)
    try:
        return node.DerivePath(path)
    except Exception as exc:
        raise DerivationError(f"unable to derive path: {path}") from exc


def derive_private_key(extended_private_key: str, path: str) -> bytes:
    derived = _derive(extended_private_key, path)
    if derived.IsPublicOnly():
        raise DerivationError("unable to derive private key")
    key = derived.PrivateKey().Raw().ToBytes()
    if len(key) != 32:
        raise DerivationError("unable to derive private key")
    return key


def derive_public_key(extended_public_key: str, path: str) -> bytes:
    derived = _derive(extended_public_key, path)
    compressed = derived.PublicKey().RawCompressed().ToBytes()
    if len(compressed) != 33:
        raise DerivationError("unable to derive public key")
    return compressed[1:]


def script_for_public_key(public_key: bytes | str) -> str:
    key_hex = public_key.hex() if isinstance(public_key, (bytes, bytearray)) else public_key
    key_hex = key_hex.lower()
    if len(key_hex) != XONLY_KEY_LEN * 2:
        raise ValueError("x-only public key must be 32 bytes")
    return P2TR_SCRIPT_PREFIX + key_hex


def handle_path(index: int) -> str:
    if index < 0:
        raise ValueError("path index must be >= 0")
    return f"{HANDLE_PATH_PREFIX}{index}"


def path_index(path: str) -> int | None:
    match = HANDLE_PATH_RE.fullmatch(path)
    if match is None:
        return None
    return int(match.group(1))


def expected_script(extended_public_key: str, path: str) -> str:
    return script_for_public_key(derive_public_key(extended_public_key, path))
