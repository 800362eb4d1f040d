from __future__ import annotations

import io
import socket
import threading
from pathlib import Path

import pytest

from opfwd import __version__
from opfwd.cli import build_parser, main
from opfwd.client import forward, resolve_socket_path, run_client


def _one_shot_server(path: Path, reply: bytes) -> tuple[threading.Thread, list[bytes]]:
    received: list[bytes] = []
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    srv.bind(str(path))
    srv.listen(1)

    def _serve() -> None:
        with srv:
            conn, _ = srv.accept()
            with conn:
                buf = b""
                while not buf.endswith(b"\n"):
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    buf += chunk
                received.append(buf)
                conn.sendall(reply)

    t = threading.Thread(target=_serve, daemon=True)
    t.start()
    return t, received


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--version"]) == 0
    out = capsys.readouterr().out
    assert f"opfwd version {__version__}" in out
    assert "Python Version:" in out


def test_parser_keeps_command_flags_for_forwarding() -> None:
    args = build_parser().parse_args(["item", "create", "--title=Test", "--vault", "Private"])
    assert not args.server
    assert args.command == ["item", "create", "--title=Test", "--vault", "Private"]


def test_forward_sends_one_line_and_reads_to_eof(short_tmp: Path) -> None:
    path = short_tmp / "opfwd.sock"
    t, received = _one_shot_server(path, b"SECRET_VALUE_123\n")
    out = io.BytesIO()

    forward(str(path), "read op://Employee/CONFIG/operator", out)
    t.join(timeout=5)

    assert received == [b"read op://Employee/CONFIG/operator\n"]
    assert out.getvalue() == b"SECRET_VALUE_123\n"


def test_client_uses_socket_from_env(short_tmp: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = short_tmp / "env.sock"
    monkeypatch.setenv("OPFWD_SOCKET", str(path))
    assert resolve_socket_path() == str(path)
    assert resolve_socket_path("/tmp/explicit.sock") == "/tmp/explicit.sock"


def test_client_defaults_to_ssh_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    assert resolve_socket_path() == str(tmp_path / ".ssh" / "opfwd.sock")


def test_client_reports_missing_socket(short_tmp: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = short_tmp / "absent.sock"
    assert run_client(["whoami"], socket_path=str(path)) == 1
    out = capsys.readouterr().out
    assert f"Error: Socket {path} not found." in out
    assert "Make sure the opfwd server is running" in out


def test_client_without_command_prints_usage(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 1
    assert "Usage: opfwd <command> [arguments]" in capsys.readouterr().out


def test_server_mode_with_bad_config_exits_nonzero(tmp_path: Path) -> None:
    assert main(["--server", "--config", str(tmp_path / "missing.yaml")]) == 1


def test_server_mode_requires_op_binary(tmp_path: Path, short_tmp: Path) -> None:
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        f"account: acct\nsocket_path: {short_tmp / 'opfwd.sock'}\nop_binary: {short_tmp / 'no-such-op'}\n",
        encoding="utf-8",
    )
    assert main(["--server", "--config", str(cfg)]) == 1
    assert not (short_tmp / "opfwd.sock").exists()
