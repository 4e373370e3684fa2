"""Registry handle status: a tagged union keyed on ``status``."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter, ValidationError, model_validator

from handle_sdk.certificates import Certificate
from handle_sdk.certificates.validation import describe_validation_error
from handle_sdk.errors import SchemaValidationError


class _StatusBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    handle: StrictStr


class AvailableStatus(_StatusBase):
    status: Literal["available"] = "available"


class UnknownStatus(_StatusBase):
    status: Literal["unknown"] = "unknown"


class InvalidStatus(_StatusBase):
    status: Literal["invalid"] = "invalid"


class PendingPaymentStatus(_StatusBase):
    status: Literal["pending_payment"] = "pending_payment"
    script_pubkey: StrictStr


class TakenStatus(_StatusBase):
    status: Literal["taken"] = "taken"
    script_pubkey: Optional[StrictStr] = None
    certificate: Optional[Certificate] = None

    @model_validator(mode="after")
    def _certificate_requires_script(self) -> "TakenStatus":
        if self.certificate is not None and self.script_pubkey is None:
            raise ValueError("certificate requires script_pubkey")
        return self


HandleStatus = Annotated[
    Union[AvailableStatus, UnknownStatus, InvalidStatus, PendingPaymentStatus, TakenStatus],
    Field(discriminator="status"),
]

_STATUS_ADAPTER: TypeAdapter[HandleStatus] = TypeAdapter(HandleStatus)


def parse_handle_status(obj: Any) -> HandleStatus:
    if not isinstance(obj, dict):
        raise SchemaValidationError("handle status must be a JSON object")
    try:
        return _STATUS_ADAPTER.validate_python(obj)
    except ValidationError as exc:
        raise SchemaValidationError(
            f"invalid handle status: {describe_validation_error(exc)}"
        ) from exc


def parse_handle_statuses(obj: Any) -> list[HandleStatus]:
    if not isinstance(obj, list):
        raise SchemaValidationError("handle statuses must be a JSON array")
    return [parse_handle_status(item) for item in obj]


def unknown_status(handle: str) -> UnknownStatus:
    return UnknownStatus(handle=handle)
