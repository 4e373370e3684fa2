"""Ownership certificate schemas.

The registry proves ownership of a handle with an anchor reference plus an
opaque subtree inclusion proof. Only the shape is checked here; whether the
proof is sound is the registry's concern, and whether the certificate is bound
to *our* key is decided during reconciliation.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, StrictStr

WITNESS_TYPE = "subtree"


class Witness(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: Literal["subtree"]
    data: StrictStr


class CertificateData(BaseModel):
    """Persisted subset of a certificate, stored on the handle record."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    anchor: StrictStr
    witness: Witness


class Certificate(BaseModel):
    """Wire form: certificate data plus the handle and script it binds."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    handle: StrictStr
    script_pubkey: StrictStr
    anchor: StrictStr
    witness: Witness
