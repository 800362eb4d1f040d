"""Shared fixtures for the opfwd test suite.

The real 1Password CLI is replaced by a small shell script that:
- appends its argv to ``calls.log`` in the state directory
- reports "signed in" for ``account get`` only once ``signin`` has run
- refuses ``signin`` when a ``signin-fails`` marker exists
"""

from __future__ import annotations

import shutil
import stat
import tempfile
from pathlib import Path
from typing import Callable, Iterator

import pytest

from opfwd.engine.config import ForwarderConfig


MOCK_OP = """#!/bin/sh
state="${OPFWD_TEST_STATE:?}"
echo "$*" >> "$state/calls.log"
case "$*" in
  *"account get"*)
    if [ -f "$state/authenticated" ]; then
      echo "Account is authenticated"
      exit 0
    fi
    echo "[ERROR] account is not signed in" >&2
    exit 1
    ;;
  *signin*)
    if [ -f "$state/signin-fails" ]; then
      echo "[ERROR] sign in refused"
      echo "check your network" >&2
      exit 1
    fi
    touch "$state/authenticated"
    echo "Signed in to test-account"
    ;;
  *"read op://Employee/CONFIG/operator"*)
    echo "SECRET_VALUE_123"
    ;;
  *"item create stuck"*)
    exec sleep 30
    ;;
  *"item create slow"*)
    sleep 0.5
    echo "Slow item created"
    ;;
  *"item create"*)
    echo "Item created successfully"
    echo "note: created in vault Private" >&2
    ;;
  *)
    echo "Unrecognized command" >&2
    exit 1
    ;;
esac
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPFWD_SOCKET", raising=False)
    monkeypatch.delenv("OPFWD_OP_BINARY", raising=False)


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    """A temp dir under /tmp; pytest's tmp_path can exceed the AF_UNIX path limit."""
    d = Path(tempfile.mkdtemp(prefix="opfwd-test-", dir="/tmp"))
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def op_state(short_tmp: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state = short_tmp / "state"
    state.mkdir()
    monkeypatch.setenv("OPFWD_TEST_STATE", str(state))
    return state


@pytest.fixture
def mock_op(short_tmp: Path, op_state: Path) -> Path:
    path = short_tmp / "op"
    path.write_text(MOCK_OP, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def op_calls(op_state: Path) -> Callable[[], list[str]]:
    def _calls() -> list[str]:
        log = op_state / "calls.log"
        if not log.exists():
            return []
        return log.read_text(encoding="utf-8").splitlines()

    return _calls


@pytest.fixture
def make_config(short_tmp: Path, mock_op: Path) -> Callable[..., ForwarderConfig]:
    def _make(**overrides: object) -> ForwarderConfig:
        values: dict[str, object] = {
            "socket_path": str(short_tmp / "run" / "opfwd.sock"),
            "account": "test-account",
            "allowed_commands": ("read op://Employee/CONFIG/operator",),
            "allowed_prefixes": ("item create",),
            "op_binary": str(mock_op),
            "shutdown_grace_sec": 5.0,
        }
        values.update(overrides)
        return ForwarderConfig(**values)  # type: ignore[arg-type]

    return _make
