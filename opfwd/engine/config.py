from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


DEFAULT_MAX_LINE_BYTES = 64 * 1024
DEFAULT_SHUTDOWN_GRACE_SEC = 30.0


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class ServerIdentity:
    socket_path: str
    account: str


@dataclass(frozen=True)
class ForwarderConfig:
    socket_path: str
    account: str
    allowed_commands: tuple[str, ...] = ()
    allowed_prefixes: tuple[str, ...] = ()
    op_binary: str = "op"
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    shutdown_grace_sec: float = DEFAULT_SHUTDOWN_GRACE_SEC
    log_level: str = "INFO"

    @property
    def identity(self) -> ServerIdentity:
        return ServerIdentity(socket_path=self.socket_path, account=self.account)


def default_config_path() -> Path:
    return Path.home() / ".config" / "opfwd" / "config.yaml"


def default_socket_path() -> str:
    return str(Path.home() / ".ssh" / "opfwd.sock")


def _string_list(raw: dict[str, Any], key: str) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise ConfigError(f"{key} must be a list of strings")
    # An empty prefix would match every command.
    if any(not x.strip() for x in value):
        raise ConfigError(f"{key} must not contain empty entries")
    return tuple(value)


def _positive(raw: dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number")
    return value


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be a positive integer")
    return value


def parse_config(raw: Any) -> ForwarderConfig:
    """
    Build a ForwarderConfig from an already-parsed YAML document.

    Env overrides (dev-friendly):
      - OPFWD_SOCKET replaces socket_path
      - OPFWD_OP_BINARY replaces op_binary
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("config must be a mapping")

    account = raw.get("account")
    if not isinstance(account, str) or not account.strip():
        raise ConfigError("account is required in config")

    socket_path = raw.get("socket_path") or default_socket_path()
    if not isinstance(socket_path, str):
        raise ConfigError("socket_path must be a string")
    socket_path = os.environ.get("OPFWD_SOCKET", socket_path)

    op_binary = raw.get("op_binary") or "op"
    if not isinstance(op_binary, str):
        raise ConfigError("op_binary must be a string")
    op_binary = os.environ.get("OPFWD_OP_BINARY", op_binary)

    log_level = str(raw.get("log_level", "INFO")).upper()

    return ForwarderConfig(
        socket_path=os.path.expanduser(socket_path),
        account=account,
        allowed_commands=_string_list(raw, "allowed_commands"),
        allowed_prefixes=_string_list(raw, "allowed_prefixes"),
        op_binary=op_binary,
        max_line_bytes=_positive_int(raw, "max_line_bytes", DEFAULT_MAX_LINE_BYTES),
        shutdown_grace_sec=float(_positive(raw, "shutdown_grace_sec", DEFAULT_SHUTDOWN_GRACE_SEC)),
        log_level=log_level,
    )


def load_config(path: Path) -> ForwarderConfig:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"reading config file: {e}") from e

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"parsing config file: {e}") from e

    return parse_config(raw)
