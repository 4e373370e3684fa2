"""Storage for the master extended private key.

The xprv is kept apart from the public keystore blob. Backends raise
``SecureStorageError`` on any failure; ``None`` from ``get_secret`` always
means that no secret has been stored.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol

from handle_sdk.errors import SecureStorageError

SECRET_FIELD = "xprv"


class SecretStore(Protocol):
    def get_secret(self) -> str | None: ...

    def set_secret(self, value: str) -> None: ...

    def remove_secret(self) -> None: ...


class MemorySecretStore:
    def __init__(self, value: str | None = None) -> None:
        self._value = value

    def get_secret(self) -> str | None:
        return self._value

    def set_secret(self, value: str) -> None:
        self._value = value

    def remove_secret(self) -> None:
        self._value = None


def _chmod_owner_only(path: Path) -> None:
    if os.name != "posix":
        return
    path.chmod(0o600)


class FileSecretStore:
    """Owner-only JSON file holding the xprv."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get_secret(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SecureStorageError(f"unreadable secret file: {self.path}") from exc
        value = payload.get(SECRET_FIELD) if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value:
            raise SecureStorageError(f"secret file is missing {SECRET_FIELD}: {self.path}")
        return value

    def set_secret(self, value: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps({SECRET_FIELD: value}, indent=2) + "\n")
            _chmod_owner_only(self.path)
        except OSError as exc:
            raise SecureStorageError(f"failed to write secret file: {self.path}") from exc

    def remove_secret(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise SecureStorageError(f"failed to remove secret file: {self.path}") from exc
