from __future__ import annotations

import os
import socket
import sys
from typing import BinaryIO, Optional, Sequence

from opfwd.engine.config import default_socket_path


def resolve_socket_path(explicit: Optional[str] = None) -> str:
    if explicit:
        return os.path.expanduser(explicit)
    return os.path.expanduser(os.environ.get("OPFWD_SOCKET", default_socket_path()))


def forward(socket_path: str, command: str, out: BinaryIO) -> None:
    """Send one command line and copy the reply to `out` until the server closes."""
    data = (command + "\n").encode("utf-8")
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.connect(socket_path)
        s.sendall(data)
        while True:
            chunk = s.recv(65536)
            if not chunk:
                break
            out.write(chunk)
            out.flush()


def run_client(args: Sequence[str], *, socket_path: Optional[str] = None) -> int:
    if not args:
        print("Usage: opfwd <command> [arguments]")
        return 1

    path = resolve_socket_path(socket_path)
    if not os.path.exists(path):
        print(f"Error: Socket {path} not found.")
        print("Make sure the opfwd server is running and the socket is accessible.")
        return 1

    try:
        forward(path, " ".join(args), sys.stdout.buffer)
    except OSError as e:
        print(f"Error talking to {path}: {e}")
        return 1
    return 0
