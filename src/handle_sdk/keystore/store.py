"""The authoritative keystore: master xpub plus handle records.

All writes go through :meth:`KeystoreStore.mutate`. A mutation is persisted
before the in-memory snapshot advances, so a failing backend leaves both the
stored blob and the visible state untouched.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, Mapping, Optional, Union

from handle_sdk.certificates import CertificateData, parse_certificate_data
from handle_sdk.crypto.keys import expected_script, handle_path, master_public_key
from handle_sdk.errors import AlreadyInitializedError, KeystoreNotInitializedError
from handle_sdk.handles import normalize_handle
from handle_sdk.keystore.backends import KeystoreBackend
from handle_sdk.keystore.models import HandleRecord, MasterKeystore, parse_keystore

logger = logging.getLogger(__name__)

Mutation = Callable[[MasterKeystore], MasterKeystore]
InitialHandles = Union[Iterable[str], Mapping[str, HandleRecord]]


class KeystoreInvariantError(ValueError):
    """A mutation tried to break a keystore invariant."""


def _check_transition(before: MasterKeystore, after: MasterKeystore) -> None:
    if after.xpub != before.xpub:
        raise KeystoreInvariantError("master xpub cannot change")
    if after.next_index < before.next_index:
        raise KeystoreInvariantError("next_index cannot decrease")
    for name, record in after.handles.items():
        previous = before.handles.get(name)
        if previous is None:
            if record.index < before.next_index:
                raise KeystoreInvariantError(f"path index reused for handle {name}")
        elif previous.path != record.path:
            raise KeystoreInvariantError(f"path of handle {name} cannot change")


def _with_handles(current: MasterKeystore, handles: dict[str, HandleRecord], next_index: int | None = None) -> MasterKeystore:
    return MasterKeystore(
        xpub=current.xpub,
        handles=handles,
        next_index=current.next_index if next_index is None else next_index,
    )


class KeystoreStore:
    def __init__(self, backend: KeystoreBackend) -> None:
        self._backend = backend
        self._lock = threading.RLock()
        payload = backend.load()
        self._state: Optional[MasterKeystore] = parse_keystore(payload) if payload is not None else None

    def get(self) -> Optional[MasterKeystore]:
        return self._state

    def require(self) -> MasterKeystore:
        state = self._state
        if state is None:
            raise KeystoreNotInitializedError("keystore is not initialized")
        return state

    def mutate(self, fn: Mutation) -> MasterKeystore:
        with self._lock:
            current = self.require()
            updated = fn(current)
            if updated is current or updated == current:
                return current
            _check_transition(current, updated)
            self._backend.save(updated.to_json_dict())
            self._state = updated
            return updated

    def initialize(
        self,
        master_private_key: str,
        handles: InitialHandles = (),
        *,
        next_index: int | None = None,
    ) -> MasterKeystore:
        with self._lock:
            if self._state is not None:
                raise AlreadyInitializedError("keystore already initialized")
            xpub = master_public_key(master_private_key)

            records: dict[str, HandleRecord] = {}
            if isinstance(handles, Mapping):
                for name, record in handles.items():
                    records[normalize_handle(name)] = record
            else:
                for name in handles:
                    key = normalize_handle(name)
                    if key and key not in records:
                        records[key] = HandleRecord(path=handle_path(len(records)))

            payload = {"xpub": xpub, "handles": records}
            if next_index is not None:
                payload["next_index"] = next_index
            keystore = parse_keystore(payload)
            self._backend.save(keystore.to_json_dict())
            self._state = keystore
            logger.info("keystore initialized with %d handle(s)", len(records))
            return keystore

    def reset(self) -> None:
        with self._lock:
            self._backend.clear()
            self._state = None

    def lookup(self, name: str) -> Optional[HandleRecord]:
        state = self._state
        if state is None:
            return None
        return state.handles.get(normalize_handle(name))

    def expected_script(self, name: str) -> Optional[str]:
        state = self._state
        if state is None:
            return None
        record = state.handles.get(normalize_handle(name))
        if record is None:
            return None
        return expected_script(state.xpub, record.path)

    def create_handle(self, name: str) -> HandleRecord:
        key = normalize_handle(name)
        if not key:
            raise ValueError("handle name must not be empty")

        def _create(current: MasterKeystore) -> MasterKeystore:
            if key in current.handles:
                return current
            path, next_index = current.allocate_path()
            handles = dict(current.handles)
            handles[key] = HandleRecord(path=path)
            return _with_handles(current, handles, next_index)

        return self.mutate(_create).handles[key]

    def remove_handle(self, name: str) -> bool:
        key = normalize_handle(name)
        removed = False

        def _remove(current: MasterKeystore) -> MasterKeystore:
            nonlocal removed
            if key not in current.handles:
                return current
            removed = True
            handles = {n: r for n, r in current.handles.items() if n != key}
            return _with_handles(current, handles)

        self.mutate(_remove)
        return removed

    def set_certificate(
        self,
        name: str,
        data: CertificateData | dict | None,
        *,
        expected_path: str | None = None,
    ) -> bool:
        """Set or clear a handle's certificate.

        Returns False without writing when the handle is absent, or when
        ``expected_path`` is given and the handle was re-created under a
        different path in the meantime.
        """
        key = normalize_handle(name)
        cert = parse_certificate_data(data) if data is not None else None
        applied = False

        def _set(current: MasterKeystore) -> MasterKeystore:
            nonlocal applied
            record = current.handles.get(key)
            if record is None:
                return current
            if expected_path is not None and record.path != expected_path:
                return current
            applied = True
            if record.cert == cert:
                return current
            handles = dict(current.handles)
            handles[key] = HandleRecord(path=record.path, cert=cert)
            return _with_handles(current, handles)

        self.mutate(_set)
        return applied


__all__ = ["KeystoreStore", "KeystoreInvariantError", "Mutation"]
