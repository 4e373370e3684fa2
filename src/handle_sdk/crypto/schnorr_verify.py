"""BIP340 Schnorr signature verification helper."""

from __future__ import annotations

from coincurve import PublicKeyXOnly


def verify_schnorr(signature: bytes, message: bytes, public_key: bytes) -> bool:
    try:
        key = PublicKeyXOnly(public_key)
        return bool(key.verify(signature, message))
    except Exception:
        return False
