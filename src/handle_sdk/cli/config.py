"""Configuration helpers for the handle-agent CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from handle_sdk.client import DEFAULT_REGISTRY_BASE

HOME_ENV_VAR = "HANDLE_AGENT_HOME"
REGISTRY_BASE_ENV_VAR = "HANDLE_REGISTRY_BASE"

MIN_REQUEST_TIMEOUT = 3.0
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_LOG_LEVEL = "warning"


def agent_home() -> Path:
    override = os.getenv(HOME_ENV_VAR)
    if override and override.strip():
        return Path(override.strip()).expanduser()
    return Path.home() / ".handle_agent"


def default_config_path() -> Path:
    return agent_home() / "config.toml"


@dataclass(frozen=True)
class CLIConfig:
    registry_base: str = DEFAULT_REGISTRY_BASE
    keystore_path: str = ""
    secret_path: str = ""
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    log_level: str = DEFAULT_LOG_LEVEL

    def __post_init__(self) -> None:
        home = agent_home()
        if not self.keystore_path:
            object.__setattr__(self, "keystore_path", str(home / "keystore.json"))
        if not self.secret_path:
            object.__setattr__(self, "secret_path", str(home / "secret.json"))


class ConfigError(ValueError):
    """Raised when CLI config is invalid."""


def _load_toml(path: Path) -> dict[str, Any]:
    raw = path.read_text(encoding="utf-8")

    try:  # Python 3.11+
        import tomllib  # type: ignore[attr-defined]
        try:
            return tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid TOML in {path}: {exc}") from exc
    except ModuleNotFoundError:
        try:
            import tomli
        except ModuleNotFoundError as exc:
            raise ConfigError("toml parser unavailable; install tomli for Python < 3.11") from exc
        try:
            return tomli.loads(raw)
        except tomli.TOMLDecodeError as exc:
            raise ConfigError(f"invalid TOML in {path}: {exc}") from exc


def _to_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be a number") from exc


def _to_path(value: Any, field_name: str) -> str:
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{field_name} must not be empty")
    return str(Path(text).expanduser())


def load_cli_config(path: str | Path | None = None) -> CLIConfig:
    config_path = Path(path) if path else default_config_path()
    source: dict[str, Any] = {}
    if config_path.exists():
        parsed = _load_toml(config_path)
        section = parsed.get("cli")
        if isinstance(section, dict):
            source = section
        elif section is None:
            source = parsed
        else:
            raise ConfigError("[cli] must be a table")

    env_registry_base = os.getenv(REGISTRY_BASE_ENV_VAR)
    configured_registry_base = str(source.get("registry_base", DEFAULT_REGISTRY_BASE)).strip()
    registry_base = env_registry_base.strip() if env_registry_base else configured_registry_base
    if not registry_base:
        raise ConfigError("registry_base must not be empty")
    if not registry_base.startswith(("http://", "https://")):
        raise ConfigError("registry_base must be an http(s) URL")

    home = agent_home()
    keystore_path = _to_path(source.get("keystore_path", home / "keystore.json"), "keystore_path")
    secret_path = _to_path(source.get("secret_path", home / "secret.json"), "secret_path")

    request_timeout = _to_float(source.get("request_timeout", DEFAULT_REQUEST_TIMEOUT), "request_timeout")
    if request_timeout < MIN_REQUEST_TIMEOUT:
        raise ConfigError(f"request_timeout must be at least {MIN_REQUEST_TIMEOUT} seconds")

    poll_interval = _to_float(source.get("poll_interval", DEFAULT_POLL_INTERVAL), "poll_interval")
    if poll_interval <= 0:
        raise ConfigError("poll_interval must be positive")

    log_level = str(source.get("log_level", DEFAULT_LOG_LEVEL)).strip().lower()
    if not isinstance(logging.getLevelName(log_level.upper()), int):
        raise ConfigError("log_level must be one of: debug, info, warning, error, critical")

    return CLIConfig(
        registry_base=registry_base,
        keystore_path=keystore_path,
        secret_path=secret_path,
        request_timeout=request_timeout,
        poll_interval=poll_interval,
        log_level=log_level,
    )
