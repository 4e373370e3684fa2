"""Structural validation and composition of ownership certificates."""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from handle_sdk.certificates.schemas import WITNESS_TYPE, Certificate, CertificateData, Witness
from handle_sdk.errors import SchemaValidationError

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    if location:
        return f"{location}: {first['msg']}"
    return str(first["msg"])


def parse_model(model: type[_ModelT], obj: Any, label: str) -> _ModelT:
    if isinstance(obj, model):
        return obj
    if isinstance(obj, BaseModel):
        obj = obj.model_dump()
    if not isinstance(obj, dict):
        raise SchemaValidationError(f"{label} must be a JSON object")
    try:
        return model.model_validate(obj)
    except ValidationError as exc:
        raise SchemaValidationError(f"invalid {label}: {describe_validation_error(exc)}") from exc


def parse_certificate_data(obj: Any) -> CertificateData:
    return parse_model(CertificateData, obj, "certificate data")


def parse_certificate(obj: Any) -> Certificate:
    return parse_model(Certificate, obj, "certificate")


def is_certificate_data(obj: Any) -> bool:
    try:
        parse_certificate_data(obj)
    except SchemaValidationError:
        return False
    return True


def is_certificate(obj: Any) -> bool:
    try:
        parse_certificate(obj)
    except SchemaValidationError:
        return False
    return True


def extract_data(certificate: Certificate) -> CertificateData:
    return CertificateData(
        anchor=certificate.anchor,
        witness=Witness(type=WITNESS_TYPE, data=certificate.witness.data),
    )


def build_certificate(data: CertificateData, handle: str, script_pubkey: str) -> Certificate:
    return Certificate(
        handle=handle,
        script_pubkey=script_pubkey,
        anchor=data.anchor,
        witness=data.witness,
    )
