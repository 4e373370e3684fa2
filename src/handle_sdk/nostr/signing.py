"""Nostr event id computation and BIP340 signing.

The event id is sha256 over the compact JSON array

    [0, <pub hex>, <created_at>, <kind>, <tags>, <content>]

Field order and the leading ``0`` are fixed by the Nostr protocol. Non-ASCII
content is emitted as raw UTF-8, matching what other Nostr clients hash. A
lone UTF-16 surrogate has no UTF-8 form and is written as a lowercase
``\\uXXXX`` escape instead, the same as ``JSON.stringify``.
"""

from __future__ import annotations

import hashlib
import json
import re
import secrets
from typing import Any

from coincurve import PrivateKey, PublicKeyXOnly

from handle_sdk.crypto.schnorr_verify import verify_schnorr
from handle_sdk.errors import InvalidKeyError
from handle_sdk.nostr.schemas import NostrEvent, NostrEventData, parse_event, parse_event_data

_LONE_SURROGATE_RE = re.compile("[\ud800-\udfff]")


def escape_lone_surrogates(text: str) -> str:
    """Join surrogate pairs and escape the unpaired halves left in JSON text."""
    joined = text.encode("utf-16-le", "surrogatepass").decode("utf-16-le", "surrogatepass")
    return _LONE_SURROGATE_RE.sub(lambda match: f"\\u{ord(match.group()):04x}", joined)


def build_event_to_sign(public_key_hex: str, data: NostrEventData) -> bytes:
    """Build canonical bytes for event id hashing."""
    text = json.dumps(
        [0, public_key_hex, data.created_at, data.kind, data.tags, data.content],
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return escape_lone_surrogates(text).encode("utf-8")


def compute_event_id(public_key_hex: str, data: NostrEventData) -> str:
    return hashlib.sha256(build_event_to_sign(public_key_hex, data)).hexdigest()


def _load_private_key(private_key_hex: str) -> tuple[bytes, PrivateKey]:
    if not isinstance(private_key_hex, str):
        raise InvalidKeyError("private key must be a hex string")
    try:
        secret = bytes.fromhex(private_key_hex)
    except ValueError as exc:
        raise InvalidKeyError("private key must be a hex string") from exc
    if len(secret) != 32:
        raise InvalidKeyError("private key must be 32 bytes")
    try:
        return secret, PrivateKey(secret)
    except ValueError as exc:
        raise InvalidKeyError("private key out of curve range") from exc


def public_key_for(private_key_hex: str) -> str:
    secret, _ = _load_private_key(private_key_hex)
    return PublicKeyXOnly.from_secret(secret).format().hex()


def sign_event(data: NostrEventData | dict[str, Any], private_key_hex: str) -> NostrEvent:
    event_data = parse_event_data(data)
    secret, key = _load_private_key(private_key_hex)
    public_key_hex = PublicKeyXOnly.from_secret(secret).format().hex()
    event_id = compute_event_id(public_key_hex, event_data)
    signature = key.sign_schnorr(bytes.fromhex(event_id), secrets.token_bytes(32))
    return NostrEvent(
        created_at=event_data.created_at,
        kind=event_data.kind,
        tags=event_data.tags,
        content=event_data.content,
        id=event_id,
        public_key=public_key_hex,
        signature=signature.hex(),
    )


def verify_event(event: NostrEvent | dict[str, Any]) -> bool:
    signed = parse_event(event)
    if compute_event_id(signed.public_key, signed) != signed.id:
        return False
    try:
        signature = bytes.fromhex(signed.signature)
        message = bytes.fromhex(signed.id)
        public_key = bytes.fromhex(signed.public_key)
    except ValueError:
        return False
    return verify_schnorr(signature, message, public_key)
