"""Nostr event schemas (unsigned and signed)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from handle_sdk.certificates.validation import describe_validation_error
from handle_sdk.errors import SchemaValidationError


class NostrEventData(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    created_at: StrictInt
    kind: StrictInt
    tags: list[list[StrictStr]]
    content: StrictStr


class NostrEvent(NostrEventData):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: StrictStr
    public_key: StrictStr = Field(alias="pub")
    signature: StrictStr = Field(alias="sig")

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def parse_event_data(obj: Any) -> NostrEventData:
    if isinstance(obj, NostrEventData):
        return obj
    if not isinstance(obj, dict):
        raise SchemaValidationError("nostr event must be a JSON object")
    try:
        return NostrEventData.model_validate(obj)
    except ValidationError as exc:
        raise SchemaValidationError(f"invalid nostr event: {describe_validation_error(exc)}") from exc


def parse_event(obj: Any) -> NostrEvent:
    if isinstance(obj, NostrEvent):
        return obj
    if not isinstance(obj, dict):
        raise SchemaValidationError("nostr event must be a JSON object")
    try:
        return NostrEvent.model_validate(obj)
    except ValidationError as exc:
        raise SchemaValidationError(
            f"invalid signed nostr event: {describe_validation_error(exc)}"
        ) from exc


def is_nostr_event_data(obj: Any) -> bool:
    try:
        parse_event_data(obj)
    except SchemaValidationError:
        return False
    return True


def is_nostr_event(obj: Any) -> bool:
    try:
        parse_event(obj)
    except SchemaValidationError:
        return False
    return True
