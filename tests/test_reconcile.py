from __future__ import annotations

import threading

import pytest

from handle_sdk.client import ClaimResult, Reservation
from handle_sdk.errors import (
    ConflictError,
    PurchaseUnavailableError,
    RegistryRequestError,
    RegistryUnavailableError,
    SchemaValidationError,
)
from handle_sdk.keystore import KeystoreStore, MemoryBackend
from handle_sdk.purchase import NoopPurchaseBackend, StaticTokenPurchaseBackend
from handle_sdk.reconcile import ErrorKind, Outcome, ReconciliationEngine
from handle_sdk.status import parse_handle_status, unknown_status

XPRV = (
    "xprv9s21ZrQH143K3GJpoapnV8SFfukcVBSfeCficPSGfubmSFDxo1kuHnLisriDvSnRRuL2Qrg5ggqHKNVpxR86QEC8w35uxmGoggxtQTPvfUu"
)
SCRIPT_ALICE = "5120a52d46cf9dd838ec615d55031eae5d02b5d7a18eebffeaec30d8923eb70d69f7"
SCRIPT_BOB = "51201a16ef3d7f8f399a350bf1e28df147a0436a7eba4d30843907b3298ff9ddc837"
OTHER_SCRIPT = "5120" + "ee" * 32
CERT_DATA = {"anchor": "anchor-1", "witness": {"type": "subtree", "data": "proof"}}


def _cert(handle: str = "alice@bitcoin", script: str = SCRIPT_ALICE) -> dict:
    return {"handle": handle, "script_pubkey": script, **CERT_DATA}


def _status(**fields):  # noqa: ANN003
    return parse_handle_status({"handle": "alice@bitcoin", **fields})


class FakeClient:
    def __init__(self) -> None:
        self.statuses: dict[str, object] = {}
        self.fetch_error: Exception | None = None
        self.calls: list[tuple[str, object]] = []
        self.reservation: Reservation | None = None
        self.reserve_error: Exception | None = None
        self.claim: ClaimResult | None = None

    def fetch_handle_status(self, handle: str):  # noqa: ANN201
        self.calls.append(("status", handle))
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.statuses.get(handle) or unknown_status(handle)

    def fetch_handle_statuses(self, handles: list[str]):  # noqa: ANN201
        self.calls.append(("statuses", tuple(handles)))
        if self.fetch_error is not None:
            raise self.fetch_error
        return [self.statuses[h] for h in handles if h in self.statuses]

    def reserve_handle(self, handle: str, script_pubkey: str, payment_method: str = "google_iap"):  # noqa: ANN201
        self.calls.append(("reserve", (handle, script_pubkey, payment_method)))
        if self.reserve_error is not None:
            raise self.reserve_error
        return self.reservation

    def claim_handle(self, handle: str, script_pubkey: str, purchase_token: str):  # noqa: ANN201
        self.calls.append(("claim", (handle, script_pubkey, purchase_token)))
        return self.claim


@pytest.fixture()
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture()
def store(backend: MemoryBackend) -> KeystoreStore:
    store = KeystoreStore(backend)
    store.initialize(XPRV, ["alice@bitcoin", "bob@bitcoin"])
    return store


@pytest.fixture()
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def engine(store: KeystoreStore, client: FakeClient) -> ReconciliationEngine:
    return ReconciliationEngine(store, client, poll_interval=0.01)


def test_taken_with_matching_script_stores_certificate(engine, store) -> None:
    result = engine.apply_status("alice@bitcoin", _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert()))

    assert result.outcome is Outcome.CERTIFIED
    assert result.terminal
    assert store.lookup("alice@bitcoin").cert.model_dump() == CERT_DATA


def test_taken_with_foreign_script_is_conflict_without_mutation(engine, store, backend) -> None:
    raw_before = backend.raw
    result = engine.apply_status(
        "alice@bitcoin",
        _status(status="taken", script_pubkey=OTHER_SCRIPT, certificate=_cert(script=OTHER_SCRIPT)),
    )

    assert result.outcome is Outcome.CONFLICT_TAKEN
    assert result.removable and result.terminal
    assert "conflict with another key" in result.message
    assert backend.raw == raw_before
    assert store.lookup("alice@bitcoin").cert is None
    assert "alice@bitcoin" in engine.conflicts()
    with pytest.raises(ConflictError):
        result.raise_for_outcome()


@pytest.mark.parametrize("status", ["available", "unknown"])
def test_purchasable_status_clears_conflict_flag(engine, status) -> None:
    engine.apply_status("alice@bitcoin", _status(status="pending_payment", script_pubkey=OTHER_SCRIPT))
    assert "alice@bitcoin" in engine.conflicts()

    result = engine.apply_status("alice@bitcoin", _status(status=status))
    assert result.outcome is Outcome.PURCHASABLE
    assert not result.terminal
    assert engine.conflicts() == frozenset()


def test_removal_during_apply_is_not_a_conflict(engine, store, monkeypatch) -> None:
    original_get = store.get

    def get_then_remove():  # noqa: ANN202
        snapshot = original_get()
        store.remove_handle("alice@bitcoin")
        return snapshot

    monkeypatch.setattr(store, "get", get_then_remove)
    result = engine.apply_status("alice@bitcoin", _status(status="pending_payment", script_pubkey=SCRIPT_ALICE))

    assert store.lookup("alice@bitcoin") is None
    assert result.outcome is Outcome.PENDING_MINE
    assert not result.is_conflict
    assert engine.conflicts() == frozenset()


@pytest.mark.parametrize(
    ("fields", "outcome", "removable", "terminal"),
    [
        ({"status": "unknown"}, Outcome.PURCHASABLE, False, False),
        ({"status": "invalid"}, Outcome.INVALID, True, True),
        ({"status": "pending_payment", "script_pubkey": SCRIPT_ALICE}, Outcome.PENDING_MINE, False, False),
        ({"status": "pending_payment", "script_pubkey": OTHER_SCRIPT}, Outcome.CONFLICT_RESERVED, True, True),
        ({"status": "taken"}, Outcome.AWAITING_CERTIFICATE, False, False),
        ({"status": "taken", "script_pubkey": SCRIPT_ALICE}, Outcome.AWAITING_CERTIFICATE, False, False),
        ({"status": "taken", "script_pubkey": OTHER_SCRIPT}, Outcome.CONFLICT_TAKEN, True, True),
    ],
)
def test_status_table(engine, store, backend, fields, outcome, removable, terminal) -> None:
    raw_before = backend.raw
    result = engine.apply_status("alice@bitcoin", _status(**fields))

    assert result.outcome is outcome
    assert result.removable is removable
    assert result.terminal is terminal
    assert backend.raw == raw_before


def test_awaiting_messages_say_not_yet_available(engine) -> None:
    result = engine.apply_status("alice@bitcoin", _status(status="taken", script_pubkey=SCRIPT_ALICE))
    assert "not yet available" in result.message


def test_certificate_for_other_handle_is_not_accepted(engine, store) -> None:
    result = engine.apply_status(
        "alice@bitcoin",
        _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert(handle="bob@bitcoin")),
    )
    assert result.outcome is Outcome.ERROR
    assert result.error_kind is ErrorKind.VALIDATION
    assert store.lookup("alice@bitcoin").cert is None


def test_certificate_with_mismatched_inner_script_is_not_accepted(engine, store) -> None:
    result = engine.apply_status(
        "alice@bitcoin",
        _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert(script=OTHER_SCRIPT)),
    )
    assert result.outcome is Outcome.ERROR
    assert store.lookup("alice@bitcoin").cert is None


def test_status_for_untracked_handle(engine) -> None:
    result = engine.apply_status("carol@bitcoin", parse_handle_status({"handle": "carol@bitcoin", "status": "available"}))
    assert result.outcome is Outcome.NOT_TRACKED


def test_refresh_applies_registry_status(engine, client, store) -> None:
    client.statuses["alice@bitcoin"] = _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert())

    result = engine.refresh("Alice@Bitcoin")

    assert result.outcome is Outcome.CERTIFIED
    assert client.calls == [("status", "alice@bitcoin")]
    assert store.lookup("alice@bitcoin").cert is not None


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (RegistryUnavailableError("connection refused"), ErrorKind.NETWORK),
        (SchemaValidationError("invalid handle status: status: bad tag"), ErrorKind.VALIDATION),
    ],
)
def test_refresh_failures_leave_store_untouched(engine, client, backend, error, kind) -> None:
    raw_before = backend.raw
    client.fetch_error = error

    result = engine.refresh("alice@bitcoin")

    assert result.outcome is Outcome.ERROR
    assert result.error_kind is kind
    assert "failure" in result.message
    assert backend.raw == raw_before
    assert not engine.in_flight("alice@bitcoin")


def test_refresh_of_untracked_handle_skips_registry(engine, client) -> None:
    result = engine.refresh("carol@bitcoin")
    assert result.outcome is Outcome.NOT_TRACKED
    assert client.calls == []


def test_concurrent_refresh_is_coalesced(store) -> None:
    entered = threading.Event()
    release = threading.Event()

    class SlowClient(FakeClient):
        def fetch_handle_status(self, handle: str):  # noqa: ANN201
            self.calls.append(("status", handle))
            entered.set()
            release.wait(5)
            return unknown_status(handle)

    client = SlowClient()
    engine = ReconciliationEngine(store, client)
    results: list[object] = []
    worker = threading.Thread(target=lambda: results.append(engine.refresh("alice@bitcoin")))
    worker.start()
    assert entered.wait(5)

    assert engine.in_flight("alice@bitcoin")
    assert engine.refresh("alice@bitcoin") is None

    release.set()
    worker.join(5)
    assert results[0].outcome is Outcome.PURCHASABLE
    assert client.calls == [("status", "alice@bitcoin")]


def test_result_discarded_when_handle_recreated_during_fetch(store) -> None:
    class RecreatingClient(FakeClient):
        def fetch_handle_status(self, handle: str):  # noqa: ANN201
            store.remove_handle(handle)
            store.create_handle(handle)
            return _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert())

    engine = ReconciliationEngine(store, RecreatingClient())
    result = engine.refresh("alice@bitcoin")

    assert result.outcome is Outcome.NOT_TRACKED
    assert store.lookup("alice@bitcoin").cert is None


def test_refresh_many_uses_one_request_and_defaults_to_unknown(engine, client) -> None:
    client.statuses["alice@bitcoin"] = _status(status="pending_payment", script_pubkey=SCRIPT_ALICE)

    results = engine.refresh_many(["alice@bitcoin", "bob@bitcoin", "carol@bitcoin", "ALICE@bitcoin"])

    assert client.calls == [("statuses", ("alice@bitcoin", "bob@bitcoin"))]
    assert results["alice@bitcoin"].outcome is Outcome.PENDING_MINE
    assert results["bob@bitcoin"].outcome is Outcome.PURCHASABLE
    assert results["bob@bitcoin"].status.status == "unknown"
    assert results["carol@bitcoin"].outcome is Outcome.NOT_TRACKED


def test_refresh_many_failure_marks_every_handle(engine, client) -> None:
    client.fetch_error = RegistryUnavailableError("timeout")
    results = engine.refresh_many(["alice@bitcoin", "bob@bitcoin"])
    assert {r.outcome for r in results.values()} == {Outcome.ERROR}


def test_refresh_concurrently(engine, client, store) -> None:
    client.statuses["alice@bitcoin"] = _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert())
    client.statuses["bob@bitcoin"] = parse_handle_status(
        {"handle": "bob@bitcoin", "status": "taken", "script_pubkey": OTHER_SCRIPT}
    )

    results = engine.refresh_concurrently(["alice@bitcoin", "bob@bitcoin"], max_workers=2)

    assert results["alice@bitcoin"].outcome is Outcome.CERTIFIED
    assert results["bob@bitcoin"].outcome is Outcome.CONFLICT_TAKEN
    assert store.lookup("bob@bitcoin").cert is None


def test_watch_stops_at_terminal_outcome(engine, client) -> None:
    sequence = iter(
        [
            _status(status="pending_payment", script_pubkey=SCRIPT_ALICE),
            _status(status="taken", script_pubkey=SCRIPT_ALICE),
            _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert()),
        ]
    )
    client.fetch_handle_status = lambda handle: next(sequence)
    seen = []

    result = engine.watch("alice@bitcoin", interval=0.001, on_result=seen.append)

    assert result.outcome is Outcome.CERTIFIED
    assert [r.outcome for r in seen] == [
        Outcome.PENDING_MINE,
        Outcome.AWAITING_CERTIFICATE,
        Outcome.CERTIFIED,
    ]


def test_watch_respects_max_polls_and_stop(engine, client) -> None:
    client.statuses["alice@bitcoin"] = _status(status="taken", script_pubkey=SCRIPT_ALICE)

    result = engine.watch("alice@bitcoin", interval=0.001, max_polls=3)
    assert result.outcome is Outcome.AWAITING_CERTIFICATE
    assert len(client.calls) == 3

    stop = threading.Event()
    stop.set()
    assert engine.watch("alice@bitcoin", stop=stop) is None
    assert len(client.calls) == 3


def _reservation(status: dict) -> Reservation:
    return Reservation(deadline=1700000600, handle_status=parse_handle_status(status), product_id="handle_tier_1")


def test_purchase_flow(engine, client, store) -> None:
    client.reservation = _reservation(
        {"handle": "alice@bitcoin", "status": "pending_payment", "script_pubkey": SCRIPT_ALICE}
    )
    client.claim = ClaimResult(handle_status=_status(status="taken", script_pubkey=SCRIPT_ALICE))
    client.statuses["alice@bitcoin"] = _status(status="taken", script_pubkey=SCRIPT_ALICE, certificate=_cert())
    backend = StaticTokenPurchaseBackend("tok-1")

    result = engine.purchase("alice@bitcoin", backend)

    assert result.outcome is Outcome.CERTIFIED
    assert backend.requested == ["handle_tier_1"]
    assert backend.finished == ["tok-1"]
    assert [name for name, _ in client.calls] == ["reserve", "claim", "status"]
    assert client.calls[0][1] == ("alice@bitcoin", SCRIPT_ALICE, "google_iap")
    assert client.calls[1][1] == ("alice@bitcoin", SCRIPT_ALICE, "tok-1")


def test_purchase_stops_on_reservation_conflict(engine, client) -> None:
    client.reservation = _reservation(
        {"handle": "alice@bitcoin", "status": "pending_payment", "script_pubkey": OTHER_SCRIPT}
    )
    backend = StaticTokenPurchaseBackend("tok-1")

    result = engine.purchase("alice@bitcoin", backend)

    assert result.outcome is Outcome.CONFLICT_RESERVED
    assert backend.requested == []


def test_purchase_cancelled_by_user(engine, client) -> None:
    client.reservation = _reservation(
        {"handle": "alice@bitcoin", "status": "pending_payment", "script_pubkey": SCRIPT_ALICE}
    )
    result = engine.purchase("alice@bitcoin", StaticTokenPurchaseBackend(None))

    assert result.outcome is Outcome.PENDING_MINE
    assert "cancelled" in result.message
    assert [name for name, _ in client.calls] == ["reserve"]


def test_purchase_claim_rejected(engine, client) -> None:
    client.reservation = _reservation(
        {"handle": "alice@bitcoin", "status": "pending_payment", "script_pubkey": SCRIPT_ALICE}
    )
    client.claim = ClaimResult(handle_status=None, error="invalid purchase token")
    backend = StaticTokenPurchaseBackend("tok-1")

    result = engine.purchase("alice@bitcoin", backend)

    assert result.outcome is Outcome.ERROR
    assert result.error_kind is ErrorKind.REGISTRY
    assert "invalid purchase token" in result.message
    assert backend.finished == []


def test_purchase_reservation_errors(engine, client) -> None:
    client.reserve_error = RegistryRequestError("reservation rejected: handle taken", detail="handle taken")
    result = engine.purchase("alice@bitcoin", StaticTokenPurchaseBackend("tok"))
    assert result.error_kind is ErrorKind.REGISTRY

    client.reserve_error = RegistryUnavailableError("offline")
    result = engine.purchase("alice@bitcoin", StaticTokenPurchaseBackend("tok"))
    assert result.error_kind is ErrorKind.NETWORK
    with pytest.raises(RegistryUnavailableError):
        result.raise_for_outcome()


def test_purchase_without_backend(engine, client) -> None:
    client.reservation = _reservation(
        {"handle": "alice@bitcoin", "status": "pending_payment", "script_pubkey": SCRIPT_ALICE}
    )
    with pytest.raises(PurchaseUnavailableError):
        engine.purchase("alice@bitcoin", NoopPurchaseBackend())


def test_reserve_uses_expected_script(engine, client) -> None:
    client.reservation = _reservation({"handle": "bob@bitcoin", "status": "available"})
    engine.reserve("bob@bitcoin")
    assert client.calls == [("reserve", ("bob@bitcoin", SCRIPT_BOB, "google_iap"))]
    with pytest.raises(SchemaValidationError):
        engine.reserve("carol@bitcoin")


def test_reserve_propagates_registry_errors(engine, client) -> None:
    client.reserve_error = RegistryRequestError("registry request failed: 409 taken", status_code=409)
    with pytest.raises(RegistryRequestError):
        engine.reserve("alice@bitcoin")

    client.reserve_error = RegistryUnavailableError("connection refused")
    with pytest.raises(RegistryUnavailableError):
        engine.reserve("alice@bitcoin")


def test_import_certificate(engine, store) -> None:
    result = engine.import_certificate(_cert())
    assert result.outcome is Outcome.CERTIFIED
    assert store.lookup("alice@bitcoin").cert.anchor == "anchor-1"


def test_import_certificate_rejections(engine, store) -> None:
    bad_shape = engine.import_certificate({"handle": "alice@bitcoin"})
    assert bad_shape.outcome is Outcome.ERROR
    assert "invalid certificate format" in bad_shape.message

    wrong_key = engine.import_certificate(_cert(script=OTHER_SCRIPT))
    assert wrong_key.outcome is Outcome.ERROR
    assert "invalid handle / pubkey combination" in wrong_key.message

    unknown = engine.import_certificate(_cert(handle="carol@bitcoin"))
    assert unknown.outcome is Outcome.NOT_TRACKED
    assert store.lookup("alice@bitcoin").cert is None
