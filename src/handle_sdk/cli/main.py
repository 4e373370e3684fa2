"""Command-line interface for handle-agent."""

from __future__ import annotations

import argparse
import json
import re
import sys
import threading
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from pathlib import Path
from typing import Sequence

from handle_sdk.certificates import build_certificate
from handle_sdk.cli.config import CLIConfig, ConfigError, load_cli_config
from handle_sdk.client import RegistryClient
from handle_sdk.crypto.keys import generate_secret, master_public_key, validate_secret
from handle_sdk.errors import (
    AlreadyInitializedError,
    ConflictError,
    DerivationError,
    HandleSDKError,
    InvalidKeyError,
    KeystoreNotInitializedError,
    PurchaseUnavailableError,
    RegistryRequestError,
    RegistryUnavailableError,
    SchemaValidationError,
    SDKTimeoutError,
    SecureStorageError,
)
from handle_sdk.files import (
    export_certificate,
    export_keystore,
    export_request,
    import_keystore,
    load_event_data,
    load_json,
    save_signed_event,
    signed_event_path,
)
from handle_sdk.handles import is_valid_handle, normalize_handle, sanitize_query
from handle_sdk.keystore import FileSecretStore, JSONFileBackend, KeystoreStore, StorageError, Wallet
from handle_sdk.keystore.session import normalize_phrase
from handle_sdk.log import configure_logging
from handle_sdk.purchase import NoopPurchaseBackend, StaticTokenPurchaseBackend
from handle_sdk.reconcile import ErrorKind, Outcome, ReconcileResult, ReconciliationEngine

EXIT_SUCCESS = 0
EXIT_VALIDATION_ERROR = 1
EXIT_NETWORK_ERROR = 2
EXIT_TIMEOUT = 3
EXIT_CONFLICT = 4
EXIT_STORAGE_ERROR = 5

_SENSITIVE_FIELDS = (
    "xprv",
    "mnemonic",
    "private_key",
    "purchase_token",
    "secret",
    "token",
)
_XPRV_RE = re.compile(r"\b[xt]prv[1-9A-HJ-NP-Za-km-z]{20,}")


def _sdk_version() -> str:
    try:
        return pkg_version("handle-sdk")
    except PackageNotFoundError:
        return "0.0.0+local"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="handle-agent")
    parser.add_argument(
        "--version",
        action="version",
        version=f"handle-agent {_sdk_version()}",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to CLI config TOML (default: ~/.handle_agent/config.toml)",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")

    sub = parser.add_subparsers(dest="command", required=True)

    version = sub.add_parser("version", help="Show CLI version and registry settings")
    version.add_argument("--json", action="store_true", help="Print version details as JSON")

    init = sub.add_parser("init", help="Create the keystore from a new or existing mnemonic")
    source = init.add_mutually_exclusive_group(required=True)
    source.add_argument("--generate", action="store_true", help="Generate a new 12-word mnemonic")
    source.add_argument("--mnemonic", default=None, help="Existing mnemonic (prefer --mnemonic-file)")
    source.add_argument("--mnemonic-file", default=None, help="File holding the mnemonic")
    init.add_argument("--expect-xpub", default=None, help="Fail unless the mnemonic yields this xpub")
    init.add_argument("--handle", action="append", default=[], help="Handle to track (repeatable)")
    init.add_argument("--json", action="store_true")

    keystore = sub.add_parser("keystore", help="Keystore backup and inspection")
    keystore_sub = keystore.add_subparsers(dest="keystore_command", required=True)
    keystore_show = keystore_sub.add_parser("show", help="Show master xpub and handle count")
    keystore_show.add_argument("--json", action="store_true")
    keystore_export = keystore_sub.add_parser("export", help="Write a keystore backup file")
    keystore_export.add_argument(
        "--output",
        default=".",
        help="Output file or directory (default: ./keystore_<ms>.json)",
    )
    keystore_import = keystore_sub.add_parser("import", help="Restore a keystore backup")
    keystore_import.add_argument("path", help="Backup file")
    keystore_import_secret = keystore_import.add_mutually_exclusive_group(required=True)
    keystore_import_secret.add_argument("--mnemonic", default=None)
    keystore_import_secret.add_argument("--mnemonic-file", default=None)
    keystore_confirm = keystore_sub.add_parser("confirm", help="Check a mnemonic against the keystore")
    keystore_confirm_secret = keystore_confirm.add_mutually_exclusive_group(required=True)
    keystore_confirm_secret.add_argument("--mnemonic", default=None)
    keystore_confirm_secret.add_argument("--mnemonic-file", default=None)
    keystore_reset = keystore_sub.add_parser("reset", help="Delete keystore and master secret")
    keystore_reset.add_argument("--yes", action="store_true", help="Confirm deletion")

    handle = sub.add_parser("handle", help="Manage tracked handles")
    handle_sub = handle.add_subparsers(dest="handle_command", required=True)
    handle_add = handle_sub.add_parser("add", help="Track a new handle")
    handle_add.add_argument("name")
    handle_add.add_argument("--json", action="store_true")
    handle_remove = handle_sub.add_parser("remove", help="Stop tracking a handle")
    handle_remove.add_argument("name")
    handle_list = handle_sub.add_parser("list", help="List tracked handles")
    handle_list.add_argument("--json", action="store_true")
    handle_show = handle_sub.add_parser("show", help="Show path, script and certificate of a handle")
    handle_show.add_argument("name")
    handle_show.add_argument("--json", action="store_true")
    handle_request = handle_sub.add_parser("request", help="Write a handle request file")
    handle_request.add_argument("name")
    handle_request.add_argument("--output", default=None, help="Default: ./<handle>_request.json")

    status = sub.add_parser("status", help="Reconcile handles with the registry")
    status.add_argument("names", nargs="*", help="Handles to refresh (default: all)")
    status.add_argument("--concurrent", action="store_true", help="One request per handle, in parallel")
    status.add_argument("--json", action="store_true")

    watch = sub.add_parser("watch", help="Poll a handle until its certificate or a conflict arrives")
    watch.add_argument("name")
    watch.add_argument("--interval", type=float, default=None, help="Seconds between polls")
    watch.add_argument("--timeout-seconds", type=float, default=600.0)
    watch.add_argument("--json", action="store_true")

    search = sub.add_parser("search", help="Ask the registry for available handles")
    search.add_argument("query")
    search.add_argument("--json", action="store_true")

    purchase = sub.add_parser("purchase", help="Reserve, pay for and claim a handle")
    purchase.add_argument("name")
    purchase.add_argument("--purchase-token", default=None, help="Token from a completed store purchase")
    purchase.add_argument("--payment-method", default="google_iap")
    purchase.add_argument("--json", action="store_true")

    cert = sub.add_parser("cert", help="Certificate import and export")
    cert_sub = cert.add_subparsers(dest="cert_command", required=True)
    cert_import = cert_sub.add_parser("import", help="Import a certificate file")
    cert_import.add_argument("path")
    cert_export = cert_sub.add_parser("export", help="Export the certificate of a handle")
    cert_export.add_argument("name")
    cert_export.add_argument("--output", default=None, help="Default: ./<handle>_certificate.json")

    sign = sub.add_parser("sign", help="Sign a Nostr event with a handle key")
    sign.add_argument("name")
    sign.add_argument("event_file")
    sign.add_argument("--output", default=None, help="Default: <event_file stem>_signed.json")

    return parser


def _sanitize_error_text(value: str) -> str:
    redacted = _XPRV_RE.sub("[REDACTED]", value)
    for field in _SENSITIVE_FIELDS:
        redacted = re.sub(
            rf"(?i)({field}\s*[=:]\s*)([^,\s]+)",
            r"\1[REDACTED]",
            redacted,
        )
    return redacted


def _print_error(stderr, prefix: str, message: str, *, code: int) -> int:
    print(f"{prefix}: {_sanitize_error_text(message)}", file=stderr)
    return code


def _print_sdk_error(stderr, exc: HandleSDKError) -> int:
    if isinstance(exc, KeystoreNotInitializedError):
        return _print_error(
            stderr,
            "keystore error",
            f"{exc}; run `handle-agent init` first",
            code=EXIT_VALIDATION_ERROR,
        )
    if isinstance(exc, AlreadyInitializedError):
        return _print_error(
            stderr,
            "keystore error",
            f"{exc}; run `handle-agent keystore reset --yes` to start over",
            code=EXIT_VALIDATION_ERROR,
        )
    if isinstance(exc, ConflictError):
        return _print_error(stderr, "conflict error", str(exc), code=EXIT_CONFLICT)
    if isinstance(exc, RegistryRequestError):
        return _print_error(stderr, "registry error", str(exc), code=EXIT_NETWORK_ERROR)
    if isinstance(exc, RegistryUnavailableError):
        return _print_error(stderr, "network error", str(exc), code=EXIT_NETWORK_ERROR)
    if isinstance(exc, SDKTimeoutError):
        return _print_error(stderr, "timeout error", str(exc), code=EXIT_TIMEOUT)
    if isinstance(exc, SecureStorageError):
        return _print_error(stderr, "secure storage error", str(exc), code=EXIT_STORAGE_ERROR)
    if isinstance(exc, (DerivationError, InvalidKeyError)):
        return _print_error(stderr, "key error", str(exc), code=EXIT_VALIDATION_ERROR)
    if isinstance(exc, PurchaseUnavailableError):
        return _print_error(stderr, "purchase error", str(exc), code=EXIT_VALIDATION_ERROR)
    return _print_error(stderr, "validation error", str(exc), code=EXIT_VALIDATION_ERROR)


def _exit_code_for(result: ReconcileResult) -> int:
    if result.is_conflict:
        return EXIT_CONFLICT
    if result.outcome is Outcome.ERROR:
        if result.error_kind is ErrorKind.VALIDATION:
            return EXIT_VALIDATION_ERROR
        return EXIT_NETWORK_ERROR
    if result.outcome in (Outcome.INVALID, Outcome.NOT_TRACKED):
        return EXIT_VALIDATION_ERROR
    return EXIT_SUCCESS


def _result_payload(result: ReconcileResult) -> dict:
    return {
        "handle": result.handle,
        "outcome": result.outcome.value,
        "status": result.status.status if result.status is not None else None,
        "message": result.message,
        "removable": result.removable,
        "terminal": result.terminal,
        "error_kind": result.error_kind.value if result.error_kind is not None else None,
    }


def _print_result(stdout, result: ReconcileResult) -> None:
    line = f"{result.handle}: {result.outcome.value}"
    if result.message:
        line += f" ({result.message})"
    if result.removable:
        line += " [removable]"
    print(line, file=stdout)


def _open_wallet(config: CLIConfig) -> Wallet:
    store = KeystoreStore(JSONFileBackend(config.keystore_path))
    return Wallet(store, FileSecretStore(config.secret_path))


def _build_registry_client(config: CLIConfig) -> RegistryClient:
    return RegistryClient(base_url=config.registry_base, timeout=config.request_timeout)


def _build_engine(config: CLIConfig, wallet: Wallet) -> ReconciliationEngine:
    return ReconciliationEngine(
        wallet.store,
        _build_registry_client(config),
        poll_interval=config.poll_interval,
    )


def _read_mnemonic(args) -> str:
    if getattr(args, "mnemonic_file", None):
        try:
            return Path(args.mnemonic_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise SchemaValidationError(f"failed to read mnemonic file: {args.mnemonic_file}") from exc
    return args.mnemonic or ""


def _validated_handle(name: str) -> str:
    key = normalize_handle(name)
    if not is_valid_handle(key):
        raise SchemaValidationError(f"invalid handle name: {name}")
    return key


def _run_version(*, config: CLIConfig, as_json: bool, stdout) -> int:
    payload = {
        "cli": "handle-agent",
        "sdk_version": _sdk_version(),
        "registry_base": config.registry_base,
        "keystore_path": config.keystore_path,
    }
    if as_json:
        print(json.dumps(payload, sort_keys=True), file=stdout)
    else:
        print(f"handle-agent {payload['sdk_version']}", file=stdout)
        print(f"registry: {payload['registry_base']}", file=stdout)
        print(f"keystore: {payload['keystore_path']}", file=stdout)
    return EXIT_SUCCESS


def _run_init(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)
    generated = bool(args.generate)
    phrase = generate_secret() if generated else _read_mnemonic(args)
    handles = [_validated_handle(name) for name in args.handle]
    keystore = wallet.setup(phrase, handles, expected_xpub=args.expect_xpub)

    payload = {
        "xpub": keystore.xpub,
        "handles": sorted(keystore.handles),
        "keystore_path": config.keystore_path,
        "secret_path": config.secret_path,
        "generated": generated,
    }
    if generated:
        payload["mnemonic"] = normalize_phrase(phrase)
    if args.json:
        print(json.dumps(payload, sort_keys=True), file=stdout)
        return EXIT_SUCCESS

    print(f"xpub: {payload['xpub']}", file=stdout)
    print(f"handles: {len(payload['handles'])}", file=stdout)
    print(f"keystore_path: {payload['keystore_path']}", file=stdout)
    if generated:
        print(f"mnemonic: {payload['mnemonic']}", file=stdout)
        print(
            "write the mnemonic down; verify it with `handle-agent keystore confirm`",
            file=stderr,
        )
    return EXIT_SUCCESS


def _run_keystore(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)

    if args.keystore_command == "show":
        keystore = wallet.store.require()
        payload = {
            "xpub": keystore.xpub,
            "handles": len(keystore.handles),
            "certified": sum(1 for record in keystore.handles.values() if record.cert is not None),
            "next_index": keystore.next_index,
        }
        if args.json:
            print(json.dumps(payload, sort_keys=True), file=stdout)
            return EXIT_SUCCESS
        for key in ("xpub", "handles", "certified", "next_index"):
            print(f"{key}: {payload[key]}", file=stdout)
        return EXIT_SUCCESS

    if args.keystore_command == "export":
        path = export_keystore(args.output, wallet.store.require())
        print(f"keystore_file: {path}", file=stdout)
        return EXIT_SUCCESS

    if args.keystore_command == "import":
        backup = import_keystore(args.path)
        keystore = wallet.restore(_read_mnemonic(args), backup)
        print(f"xpub: {keystore.xpub}", file=stdout)
        print(f"handles: {len(keystore.handles)}", file=stdout)
        return EXIT_SUCCESS

    if args.keystore_command == "confirm":
        keystore = wallet.store.require()
        phrase = normalize_phrase(_read_mnemonic(args))
        if not validate_secret(phrase) or master_public_key(phrase) != keystore.xpub:
            return _print_error(
                stderr,
                "validation error",
                "mnemonic does not match the keystore",
                code=EXIT_VALIDATION_ERROR,
            )
        print("mnemonic confirmed", file=stdout)
        return EXIT_SUCCESS

    if args.keystore_command == "reset":
        if not args.yes:
            return _print_error(
                stderr,
                "validation error",
                "refusing to delete the keystore without --yes",
                code=EXIT_VALIDATION_ERROR,
            )
        wallet.teardown()
        print("keystore removed", file=stdout)
        return EXIT_SUCCESS

    print("unknown keystore command", file=stderr)
    return EXIT_VALIDATION_ERROR


def _handle_payload(wallet: Wallet, name: str) -> dict | None:
    keystore = wallet.store.require()
    key = normalize_handle(name)
    record = keystore.handles.get(key)
    if record is None:
        return None
    return {
        "handle": key,
        "path": record.path,
        "script_pubkey": wallet.store.expected_script(key),
        "certified": record.cert is not None,
        "anchor": record.cert.anchor if record.cert is not None else None,
    }


def _run_handle(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)

    if args.handle_command == "add":
        key = _validated_handle(args.name)
        if wallet.store.lookup(key) is not None:
            return _print_error(
                stderr,
                "validation error",
                "this handle already exists in your keystore",
                code=EXIT_VALIDATION_ERROR,
            )
        wallet.store.create_handle(key)
        payload = _handle_payload(wallet, key)
        if args.json:
            print(json.dumps(payload, sort_keys=True), file=stdout)
            return EXIT_SUCCESS
        print(f"handle: {payload['handle']}", file=stdout)
        print(f"path: {payload['path']}", file=stdout)
        print(f"script_pubkey: {payload['script_pubkey']}", file=stdout)
        return EXIT_SUCCESS

    if args.handle_command == "remove":
        if not wallet.store.remove_handle(args.name):
            return _print_error(
                stderr,
                "validation error",
                f"handle is not tracked: {args.name}",
                code=EXIT_VALIDATION_ERROR,
            )
        print(f"removed: {normalize_handle(args.name)}", file=stdout)
        return EXIT_SUCCESS

    if args.handle_command == "list":
        keystore = wallet.store.require()
        rows = [_handle_payload(wallet, name) for name in sorted(keystore.handles)]
        if args.json:
            print(json.dumps(rows, sort_keys=True), file=stdout)
            return EXIT_SUCCESS
        for row in rows:
            marker = "certified" if row["certified"] else "uncertified"
            print(f"{row['handle']}\t{row['path']}\t{marker}", file=stdout)
        return EXIT_SUCCESS

    if args.handle_command in ("show", "request"):
        payload = _handle_payload(wallet, args.name)
        if payload is None:
            return _print_error(
                stderr,
                "validation error",
                f"handle is not tracked: {args.name}",
                code=EXIT_VALIDATION_ERROR,
            )
        if args.handle_command == "request":
            output = args.output or f"{payload['handle']}_request.json"
            path = export_request(output, payload["handle"], payload["script_pubkey"])
            print(f"request_file: {path}", file=stdout)
            return EXIT_SUCCESS
        if args.json:
            print(json.dumps(payload, sort_keys=True), file=stdout)
            return EXIT_SUCCESS
        for key in ("handle", "path", "script_pubkey", "certified", "anchor"):
            print(f"{key}: {payload[key]}", file=stdout)
        return EXIT_SUCCESS

    print("unknown handle command", file=stderr)
    return EXIT_VALIDATION_ERROR


def _run_status(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)
    keystore = wallet.store.require()
    names = args.names or sorted(keystore.handles)
    if not names:
        print("no handles tracked", file=stdout)
        return EXIT_SUCCESS

    engine = _build_engine(config, wallet)
    if args.concurrent:
        results = engine.refresh_concurrently(names)
    else:
        results = engine.refresh_many(names)

    ordered = [results[key] for key in sorted(results)]
    if args.json:
        print(json.dumps([_result_payload(result) for result in ordered], sort_keys=True), file=stdout)
    else:
        for result in ordered:
            _print_result(stdout, result)
    return max((_exit_code_for(result) for result in ordered), default=EXIT_SUCCESS)


def _run_watch(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)
    wallet.store.require()
    engine = _build_engine(config, wallet)
    interval = args.interval if args.interval is not None else config.poll_interval
    if interval <= 0:
        return _print_error(stderr, "validation error", "interval must be positive", code=EXIT_VALIDATION_ERROR)

    stop = threading.Event()
    timer = threading.Timer(max(0.0, args.timeout_seconds), stop.set)
    timer.daemon = True
    timer.start()

    def _report(result: ReconcileResult) -> None:
        if args.json:
            print(json.dumps(_result_payload(result), sort_keys=True), file=stdout)
        else:
            _print_result(stdout, result)

    try:
        result = engine.watch(args.name, interval=interval, stop=stop, on_result=_report)
    except KeyboardInterrupt:
        stop.set()
        return _print_error(stderr, "timeout error", "watch interrupted", code=EXIT_TIMEOUT)
    finally:
        timer.cancel()

    if result is None or not result.terminal:
        raise SDKTimeoutError(f"no certificate or conflict for {normalize_handle(args.name)} before the timeout")
    return _exit_code_for(result)


def _run_search(*, args, config: CLIConfig, stdout, stderr) -> int:
    query = sanitize_query(args.query)
    if not query:
        return _print_error(stderr, "validation error", "query must not be empty", code=EXIT_VALIDATION_ERROR)
    client = _build_registry_client(config)
    proposed = client.fetch_proposed_handles(query)
    if args.json:
        print(json.dumps({"query": query, "available": proposed}, sort_keys=True), file=stdout)
        return EXIT_SUCCESS
    for name in proposed:
        print(name, file=stdout)
    return EXIT_SUCCESS


def _run_purchase(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)
    wallet.store.require()
    engine = _build_engine(config, wallet)
    if args.purchase_token:
        backend = StaticTokenPurchaseBackend(args.purchase_token)
    else:
        backend = NoopPurchaseBackend()
    result = engine.purchase(args.name, backend, payment_method=args.payment_method)
    if args.json:
        print(json.dumps(_result_payload(result), sort_keys=True), file=stdout)
    else:
        _print_result(stdout, result)
    return _exit_code_for(result)


def _run_cert(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)
    keystore = wallet.store.require()

    if args.cert_command == "import":
        engine = _build_engine(config, wallet)
        result = engine.import_certificate(load_json(args.path))
        _print_result(stdout, result)
        return _exit_code_for(result)

    if args.cert_command == "export":
        key = normalize_handle(args.name)
        record = keystore.handles.get(key)
        if record is None or record.cert is None:
            return _print_error(
                stderr,
                "validation error",
                f"no certificate stored for {key}",
                code=EXIT_VALIDATION_ERROR,
            )
        certificate = build_certificate(record.cert, key, wallet.store.expected_script(key))
        path = export_certificate(args.output or f"{key}_certificate.json", certificate)
        print(f"certificate_file: {path}", file=stdout)
        return EXIT_SUCCESS

    print("unknown cert command", file=stderr)
    return EXIT_VALIDATION_ERROR


def _run_sign(*, args, config: CLIConfig, stdout, stderr) -> int:
    wallet = _open_wallet(config)
    data = load_event_data(args.event_file)
    event = wallet.sign_event(args.name, data)
    path = save_signed_event(args.output or signed_event_path(args.event_file), event)
    print(f"id: {event.id}", file=stdout)
    print(f"pub: {event.public_key}", file=stdout)
    print(f"signed_event_file: {path}", file=stdout)
    return EXIT_SUCCESS


_COMMANDS = {
    "init": _run_init,
    "keystore": _run_keystore,
    "handle": _run_handle,
    "status": _run_status,
    "watch": _run_watch,
    "search": _run_search,
    "purchase": _run_purchase,
    "cert": _run_cert,
    "sign": _run_sign,
}


def main(argv: Sequence[str] | None = None, *, stdout=sys.stdout, stderr=sys.stderr) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_cli_config(args.config)
        configure_logging(args.log_level or config.log_level, stream=stderr)
    except (ConfigError, ValueError) as exc:
        return _print_error(stderr, "config error", str(exc), code=EXIT_VALIDATION_ERROR)

    if args.command == "version":
        return _run_version(config=config, as_json=args.json, stdout=stdout)

    runner = _COMMANDS.get(args.command)
    if runner is None:
        print("unknown command", file=stderr)
        return EXIT_VALIDATION_ERROR

    try:
        return runner(args=args, config=config, stdout=stdout, stderr=stderr)
    except HandleSDKError as exc:
        return _print_sdk_error(stderr, exc)
    except StorageError as exc:
        return _print_error(stderr, "storage error", str(exc), code=EXIT_STORAGE_ERROR)


if __name__ == "__main__":
    raise SystemExit(main())
