"""Merge registry handle status into the local keystore.

A certificate is stored only from a ``taken`` status whose reported script
equals the script re-derived from the keystore xpub and the handle's path.
Registry and validation failures never touch the keystore; they come back as
``Outcome.ERROR`` results.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from handle_sdk.certificates import Certificate, extract_data, parse_certificate
from handle_sdk.client import DEFAULT_PAYMENT_METHOD, RegistryClient, Reservation
from handle_sdk.crypto import keys
from handle_sdk.errors import (
    ConflictError,
    KeystoreNotInitializedError,
    RegistryRequestError,
    RegistryUnavailableError,
    SchemaValidationError,
)
from handle_sdk.handles import normalize_handle
from handle_sdk.keystore.store import KeystoreStore
from handle_sdk.purchase import PurchaseBackend
from handle_sdk.status import (
    AvailableStatus,
    HandleStatus,
    InvalidStatus,
    PendingPaymentStatus,
    TakenStatus,
    UnknownStatus,
    unknown_status,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

NOT_YET_AVAILABLE = "not yet available"
CONFLICT_WITH_OTHER_KEY = "conflict with another key"


class Outcome(str, Enum):
    PURCHASABLE = "purchasable"
    INVALID = "invalid"
    PENDING_MINE = "pending_mine"
    CONFLICT_RESERVED = "conflict_reserved"
    CERTIFIED = "certified"
    AWAITING_CERTIFICATE = "awaiting_certificate"
    CONFLICT_TAKEN = "conflict_taken"
    NOT_TRACKED = "not_tracked"
    ERROR = "error"


class ErrorKind(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    REGISTRY = "registry"


CONFLICT_OUTCOMES = frozenset({Outcome.CONFLICT_RESERVED, Outcome.CONFLICT_TAKEN})


@dataclass(frozen=True)
class ReconcileResult:
    handle: str
    outcome: Outcome
    status: Optional[HandleStatus] = None
    message: str = ""
    removable: bool = False
    terminal: bool = False
    error_kind: Optional[ErrorKind] = None

    @property
    def is_conflict(self) -> bool:
        return self.outcome in CONFLICT_OUTCOMES

    def raise_for_outcome(self) -> None:
        """Raise the SDK error matching a conflict or error result."""
        if self.is_conflict:
            raise ConflictError(self.message, handle=self.handle)
        if self.outcome is Outcome.ERROR:
            if self.error_kind is ErrorKind.VALIDATION:
                raise SchemaValidationError(self.message)
            raise RegistryUnavailableError(self.message)


def _failure(handle: str, kind: ErrorKind, detail: object) -> ReconcileResult:
    return ReconcileResult(
        handle=handle,
        outcome=Outcome.ERROR,
        message=f"{kind.value} failure: {detail}",
        error_kind=kind,
    )


def _not_tracked(handle: str, status: Optional[HandleStatus] = None) -> ReconcileResult:
    return ReconcileResult(
        handle=handle,
        outcome=Outcome.NOT_TRACKED,
        status=status,
        message="handle is not in the keystore",
        terminal=True,
    )


class ReconciliationEngine:
    def __init__(
        self,
        store: KeystoreStore,
        client: RegistryClient,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.store = store
        self.client = client
        self.poll_interval = poll_interval
        self._inflight: set[str] = set()
        self._inflight_lock = threading.Lock()
        self._conflicts: set[str] = set()

    # in-flight bookkeeping

    def _begin(self, key: str) -> bool:
        with self._inflight_lock:
            if key in self._inflight:
                return False
            self._inflight.add(key)
            return True

    def _end(self, key: str) -> None:
        with self._inflight_lock:
            self._inflight.discard(key)

    def in_flight(self, handle: str) -> bool:
        with self._inflight_lock:
            return normalize_handle(handle) in self._inflight

    def conflicts(self) -> frozenset[str]:
        with self._inflight_lock:
            return frozenset(self._conflicts)

    def _flag_conflict(self, key: str, flagged: bool) -> None:
        with self._inflight_lock:
            if flagged:
                self._conflicts.add(key)
            else:
                self._conflicts.discard(key)

    # status application

    def apply_status(
        self,
        handle: str,
        status: HandleStatus,
        *,
        path: str | None = None,
    ) -> ReconcileResult:
        """Apply one registry status to a tracked handle.

        ``path`` is the handle's path when the fetch started. If the handle was
        removed or re-created since then the status is discarded.
        """
        key = normalize_handle(handle)
        keystore = self.store.get()
        if keystore is None:
            raise KeystoreNotInitializedError("keystore is not initialized")
        record = keystore.handles.get(key)
        if record is None or (path is not None and record.path != path):
            return _not_tracked(key, status)
        if normalize_handle(status.handle) != key:
            return _failure(key, ErrorKind.VALIDATION, f"status is for {status.handle!r}")

        expected = keys.expected_script(keystore.xpub, record.path)

        match status:
            case AvailableStatus():
                self._flag_conflict(key, False)
                return ReconcileResult(key, Outcome.PURCHASABLE, status, "handle is available for purchase")
            case UnknownStatus():
                self._flag_conflict(key, False)
                return ReconcileResult(key, Outcome.PURCHASABLE, status, "handle is not registered yet")
            case InvalidStatus():
                return ReconcileResult(
                    key,
                    Outcome.INVALID,
                    status,
                    "validation failure: the registry rejects this handle name",
                    removable=True,
                    terminal=True,
                )
            case PendingPaymentStatus(script_pubkey=script) if script.lower() == expected:
                return ReconcileResult(
                    key,
                    Outcome.PENDING_MINE,
                    status,
                    f"payment pending; certificate {NOT_YET_AVAILABLE}",
                )
            case PendingPaymentStatus():
                return self._conflict(key, Outcome.CONFLICT_RESERVED, status, "handle is reserved by a different key")
            case TakenStatus(script_pubkey=None):
                return self._awaiting(key, status)
            case TakenStatus(script_pubkey=script) if script.lower() != expected:
                return self._conflict(key, Outcome.CONFLICT_TAKEN, status, "handle belongs to a different key")
            case TakenStatus(certificate=None):
                return self._awaiting(key, status)
            case TakenStatus(certificate=certificate):
                return self._accept(key, status, certificate, expected, record.path)
        raise AssertionError(f"unhandled handle status: {status!r}")

    def _awaiting(self, key: str, status: HandleStatus) -> ReconcileResult:
        return ReconcileResult(key, Outcome.AWAITING_CERTIFICATE, status, f"certificate {NOT_YET_AVAILABLE}")

    def _conflict(self, key: str, outcome: Outcome, status: HandleStatus, detail: str) -> ReconcileResult:
        logger.warning("handle %s: %s", key, detail)
        self._flag_conflict(key, True)
        return ReconcileResult(
            key,
            outcome,
            status,
            f"{CONFLICT_WITH_OTHER_KEY}: {detail}",
            removable=True,
            terminal=True,
        )

    def _accept(
        self,
        key: str,
        status: Optional[HandleStatus],
        certificate: Certificate,
        expected: str | None,
        path: str,
    ) -> ReconcileResult:
        if normalize_handle(certificate.handle) != key or certificate.script_pubkey.lower() != expected:
            return _failure(key, ErrorKind.VALIDATION, "certificate does not match this handle and key")
        if not self.store.set_certificate(key, extract_data(certificate), expected_path=path):
            return _not_tracked(key, status)
        self._flag_conflict(key, False)
        logger.info("handle %s: certificate stored", key)
        return ReconcileResult(key, Outcome.CERTIFIED, status, "certificate stored", terminal=True)

    # registry round trips

    def refresh(self, handle: str) -> Optional[ReconcileResult]:
        """Fetch and apply the status of one handle.

        Returns None when a refresh for the same handle is already running.
        """
        key = normalize_handle(handle)
        record = self.store.lookup(key)
        if record is None:
            return _not_tracked(key)
        if not self._begin(key):
            logger.debug("refresh of %s already in flight", key)
            return None
        try:
            try:
                status = self.client.fetch_handle_status(key)
            except RegistryUnavailableError as exc:
                logger.warning("status fetch for %s failed: %s", key, exc)
                return _failure(key, ErrorKind.NETWORK, exc)
            except SchemaValidationError as exc:
                logger.warning("status for %s rejected: %s", key, exc)
                return _failure(key, ErrorKind.VALIDATION, exc)
            return self.apply_status(key, status, path=record.path)
        finally:
            self._end(key)

    def refresh_many(self, handles: Iterable[str]) -> dict[str, ReconcileResult]:
        """Refresh several handles with a single status request.

        Handles already being refreshed are left out of the result.
        """
        results: dict[str, ReconcileResult] = {}
        paths: dict[str, str] = {}
        for handle in handles:
            key = normalize_handle(handle)
            if key in paths or key in results:
                continue
            record = self.store.lookup(key)
            if record is None:
                results[key] = _not_tracked(key)
            elif self._begin(key):
                paths[key] = record.path
        if not paths:
            return results

        try:
            try:
                statuses = self.client.fetch_handle_statuses(list(paths))
            except RegistryUnavailableError as exc:
                logger.warning("status fetch failed: %s", exc)
                return {**results, **{key: _failure(key, ErrorKind.NETWORK, exc) for key in paths}}
            except SchemaValidationError as exc:
                logger.warning("status response rejected: %s", exc)
                return {**results, **{key: _failure(key, ErrorKind.VALIDATION, exc) for key in paths}}

            by_handle = {normalize_handle(status.handle): status for status in statuses}
            for key, path in paths.items():
                status = by_handle.get(key) or unknown_status(key)
                results[key] = self.apply_status(key, status, path=path)
            return results
        finally:
            for key in paths:
                self._end(key)

    def refresh_concurrently(self, handles: Iterable[str], *, max_workers: int = 4) -> dict[str, ReconcileResult]:
        """Refresh handles in parallel, one request per handle."""
        names = list(dict.fromkeys(normalize_handle(handle) for handle in handles))
        if not names:
            return {}
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(names)))) as pool:
            outcomes = list(pool.map(self.refresh, names))
        return {key: result for key, result in zip(names, outcomes) if result is not None}

    def watch(
        self,
        handle: str,
        *,
        interval: float | None = None,
        stop: threading.Event | None = None,
        max_polls: int | None = None,
        on_result: Callable[[ReconcileResult], None] | None = None,
    ) -> Optional[ReconcileResult]:
        """Poll a handle until a terminal outcome, ``stop`` is set or ``max_polls`` runs out.

        Returns the last result seen, terminal or not.
        """
        stop = stop or threading.Event()
        wait = self.poll_interval if interval is None else interval
        last: Optional[ReconcileResult] = None
        polls = 0
        while not stop.is_set():
            result = self.refresh(handle)
            polls += 1
            if result is not None:
                last = result
                if on_result is not None:
                    on_result(result)
                if result.terminal:
                    return result
            if max_polls is not None and polls >= max_polls:
                break
            if stop.wait(wait):
                break
        return last

    # purchase

    def reserve(self, handle: str, *, payment_method: str = DEFAULT_PAYMENT_METHOD) -> Reservation:
        """Reserve a tracked handle for the locally derived script.

        This is the raw registry step used by ``purchase`` and does not wrap
        failures in a result: ``RegistryUnavailableError`` (including
        ``RegistryRequestError``) and ``SchemaValidationError`` propagate.
        """
        key = normalize_handle(handle)
        script = self.store.expected_script(key)
        if script is None:
            raise SchemaValidationError(f"handle is not tracked: {key}")
        return self.client.reserve_handle(key, script, payment_method)

    def purchase(
        self,
        handle: str,
        backend: PurchaseBackend,
        *,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
    ) -> ReconcileResult:
        """Reserve, pay through ``backend``, claim, then re-read the status."""
        key = normalize_handle(handle)
        record = self.store.lookup(key)
        script = self.store.expected_script(key)
        if record is None or script is None:
            return _not_tracked(key)

        try:
            reservation = self.client.reserve_handle(key, script, payment_method)
        except RegistryRequestError as exc:
            return _failure(key, ErrorKind.REGISTRY, exc)
        except RegistryUnavailableError as exc:
            return _failure(key, ErrorKind.NETWORK, exc)
        except SchemaValidationError as exc:
            return _failure(key, ErrorKind.VALIDATION, exc)

        reserved = self.apply_status(key, reservation.handle_status, path=record.path)
        if reserved.outcome not in (Outcome.PURCHASABLE, Outcome.PENDING_MINE):
            return reserved

        token = backend.reserve(reservation.product_id)
        if token is None:
            return ReconcileResult(
                key,
                Outcome.PENDING_MINE,
                reservation.handle_status,
                f"purchase cancelled; reservation held until {reservation.deadline}",
            )

        try:
            claim = self.client.claim_handle(key, script, token)
        except RegistryUnavailableError as exc:
            return _failure(key, ErrorKind.NETWORK, exc)
        except SchemaValidationError as exc:
            return _failure(key, ErrorKind.VALIDATION, exc)
        if claim.error is not None:
            logger.warning("claim for %s rejected: %s", key, claim.error)
            return _failure(key, ErrorKind.REGISTRY, f"claim rejected: {claim.error}")

        backend.finish(token)
        logger.info("handle %s claimed", key)
        refreshed = self.refresh(key)
        if refreshed is not None:
            return refreshed
        if claim.handle_status is None:
            return ReconcileResult(key, Outcome.PENDING_MINE, None, f"claim submitted; certificate {NOT_YET_AVAILABLE}")
        return self.apply_status(key, claim.handle_status, path=record.path)

    # certificate import

    def import_certificate(self, obj: Any) -> ReconcileResult:
        """Accept a certificate document from a file or scanned code.

        The certificate must name a tracked handle and carry the script derived
        for that handle.
        """
        try:
            certificate = parse_certificate(obj)
        except SchemaValidationError as exc:
            logger.info("certificate import rejected: %s", exc)
            return _failure("", ErrorKind.VALIDATION, "invalid certificate format")
        key = normalize_handle(certificate.handle)
        record = self.store.lookup(key)
        if record is None:
            return _not_tracked(key)
        expected = self.store.expected_script(key)
        if certificate.script_pubkey.lower() != expected:
            return _failure(key, ErrorKind.VALIDATION, "invalid handle / pubkey combination")
        return self._accept(key, None, certificate, expected, record.path)


__all__ = [
    "Outcome",
    "ErrorKind",
    "ReconcileResult",
    "ReconciliationEngine",
    "DEFAULT_POLL_INTERVAL",
    "CONFLICT_OUTCOMES",
]
