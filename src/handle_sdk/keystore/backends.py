"""Persistence backends for the public keystore blob."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from handle_sdk.errors import SchemaValidationError


class KeystoreBackend(Protocol):
    def load(self) -> dict[str, Any] | None: ...

    def save(self, payload: dict[str, Any]) -> None: ...

    def clear(self) -> None: ...


class StorageError(OSError):
    """Raised when the keystore blob cannot be written."""


class MemoryBackend:
    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self._raw = json.dumps(payload) if payload is not None else None

    def load(self) -> dict[str, Any] | None:
        if self._raw is None:
            return None
        return json.loads(self._raw)

    def save(self, payload: dict[str, Any]) -> None:
        self._raw = json.dumps(payload)

    def clear(self) -> None:
        self._raw = None

    @property
    def raw(self) -> str | None:
        return self._raw


def _chmod_owner_only(path: Path) -> None:
    if os.name != "posix":
        return
    path.chmod(0o600)


class JSONFileBackend:
    """Keystore stored as one JSON file, replaced atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SchemaValidationError(f"invalid keystore file: {self.path}") from exc
        if not isinstance(payload, dict):
            raise SchemaValidationError(f"invalid keystore file: {self.path}")
        return payload

    def save(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, sort_keys=True, indent=2) + "\n")
            _chmod_owner_only(tmp_path)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"failed to write keystore file: {self.path}") from exc

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
