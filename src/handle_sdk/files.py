"""JSON documents exchanged with users: backups, certificates, requests, events."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from handle_sdk.certificates import Certificate, parse_certificate
from handle_sdk.errors import FileImportError, SchemaValidationError
from handle_sdk.keystore.models import KeystoreBackup, MasterKeystore, parse_keystore
from handle_sdk.nostr.schemas import NostrEvent, NostrEventData, parse_event_data
from handle_sdk.nostr.signing import escape_lone_surrogates


def save_json(path: str | Path, data: Any) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    text = escape_lone_surrogates(json.dumps(data, indent=2, ensure_ascii=False))
    target.write_text(text + "\n", encoding="utf-8")
    return target


def load_json(path: str | Path) -> Any:
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise FileImportError(f"failed to load file: {source}") from exc
    try:
        return json.loads(text)
    except ValueError as exc:
        raise FileImportError("invalid JSON format") from exc


def _validated(parse, obj: Any, label: str):
    try:
        return parse(obj)
    except FileImportError:
        raise
    except SchemaValidationError as exc:
        raise FileImportError(f"invalid {label} format: {exc}") from exc


def keystore_file_name(now_ms: int | None = None) -> str:
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    return f"keystore_{stamp}.json"


def export_keystore(path: str | Path, keystore: MasterKeystore) -> Path:
    target = Path(path)
    if target.is_dir():
        target = target / keystore_file_name()
    return save_json(target, keystore.to_json_dict())


def import_keystore(path: str | Path) -> KeystoreBackup:
    return _validated(parse_keystore, load_json(path), "keystore")


def export_certificate(path: str | Path, certificate: Certificate) -> Path:
    return save_json(path, certificate.model_dump())


def import_certificate(path: str | Path) -> Certificate:
    return _validated(parse_certificate, load_json(path), "certificate")


def build_request(handle: str, script_pubkey: str) -> dict[str, str]:
    return {"handle": handle, "script_pubkey": script_pubkey}


def export_request(path: str | Path, handle: str, script_pubkey: str) -> Path:
    return save_json(path, build_request(handle, script_pubkey))


def load_event_data(path: str | Path) -> NostrEventData:
    return _validated(parse_event_data, load_json(path), "event")


def signed_event_path(source: str | Path) -> Path:
    """``note.json`` -> ``note_signed.json`` next to the source file."""
    source = Path(source)
    return source.with_name(f"{source.stem}_signed.json")


def save_signed_event(path: str | Path, event: NostrEvent) -> Path:
    return save_json(path, event.to_json_dict())


__all__ = [
    "save_json",
    "load_json",
    "keystore_file_name",
    "export_keystore",
    "import_keystore",
    "export_certificate",
    "import_certificate",
    "build_request",
    "export_request",
    "load_event_data",
    "signed_event_path",
    "save_signed_event",
]
