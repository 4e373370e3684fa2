"""Persisted keystore shapes."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)

from handle_sdk.certificates import CertificateData
from handle_sdk.certificates.validation import describe_validation_error
from handle_sdk.crypto.keys import handle_path, path_index
from handle_sdk.errors import DerivationError, SchemaValidationError


class HandleRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    path: StrictStr
    cert: Optional[CertificateData] = None

    @field_validator("path")
    @classmethod
    def _path_is_handle_path(cls, value: str) -> str:
        if path_index(value) is None:
            raise ValueError("path must match m/35053/0/0/<index>")
        return value

    @property
    def index(self) -> int:
        index = path_index(self.path)
        if index is None:
            raise DerivationError(f"not a handle path: {self.path}")
        return index

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class MasterKeystore(BaseModel):
    """Master xpub plus every handle derived from it.

    ``next_index`` is the lowest path index never handed out. It only grows,
    so an index freed by removing a handle is not reused.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    xpub: StrictStr
    handles: dict[StrictStr, HandleRecord] = Field(default_factory=dict)
    next_index: StrictInt = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _default_next_index(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("next_index") is None:
            data = dict(data)
            data["next_index"] = _next_free_index(data.get("handles"))
        return data

    @model_validator(mode="after")
    def _indices_are_consistent(self) -> "MasterKeystore":
        seen: set[int] = set()
        for name, record in self.handles.items():
            if record.index in seen:
                raise ValueError(f"duplicate path index for handle {name}")
            seen.add(record.index)
        if seen and self.next_index <= max(seen):
            raise ValueError("next_index must exceed every assigned path index")
        return self

    def allocate_path(self) -> tuple[str, int]:
        """Return the path for a new handle and the next_index that follows it."""
        index = self.next_index
        return handle_path(index), index + 1

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "xpub": self.xpub,
            "handles": {name: record.to_json_dict() for name, record in self.handles.items()},
            "next_index": self.next_index,
        }


def _next_free_index(handles: Any) -> int:
    highest = -1
    if isinstance(handles, dict):
        for record in handles.values():
            raw_path = record.path if isinstance(record, HandleRecord) else None
            if raw_path is None and isinstance(record, dict):
                raw_path = record.get("path")
            if isinstance(raw_path, str):
                index = path_index(raw_path)
                if index is not None and index > highest:
                    highest = index
    return highest + 1


def parse_keystore(obj: Any) -> MasterKeystore:
    if isinstance(obj, MasterKeystore):
        return obj
    if not isinstance(obj, dict):
        raise SchemaValidationError("keystore must be a JSON object")
    try:
        return MasterKeystore.model_validate(obj)
    except ValidationError as exc:
        raise SchemaValidationError(f"invalid keystore: {describe_validation_error(exc)}") from exc


# Backups share the persisted shape; ``next_index`` is optional on import.
KeystoreBackup = MasterKeystore
