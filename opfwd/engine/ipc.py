from __future__ import annotations

import asyncio
import errno
import logging
import os
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)

SOCKET_MODE = 0o600
SOCKET_DIR_MODE = 0o700


class SocketSetupError(Exception):
    pass


class AlreadyBoundError(SocketSetupError):
    def __init__(self, socket_path: str) -> None:
        super().__init__(
            f"Socket file already exists at {socket_path}. Another server might be running.\n"
            f"If you're sure no other server is running, remove it manually with: rm {socket_path}"
        )
        self.socket_path = socket_path


@dataclass(frozen=True)
class PeerIdentity:
    uid: Optional[int] = None
    gid: Optional[int] = None
    pid: Optional[int] = None

    def __str__(self) -> str:
        if self.uid is None:
            return "peer:unknown"
        return f"peer:uid={self.uid},gid={self.gid},pid={self.pid}"


ConnectionHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter, PeerIdentity], Awaitable[None]]


def _make_private_dirs(path: str) -> None:
    # makedirs only applies mode to the leaf; every missing level must be 0700.
    missing: list[str] = []
    current = os.path.abspath(path)
    while not os.path.isdir(current):
        missing.append(current)
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    for d in reversed(missing):
        try:
            os.mkdir(d, SOCKET_DIR_MODE)
        except FileExistsError:
            if not os.path.isdir(d):
                raise


class SocketLifecycle:
    """
    Owns the listening socket file.

    The file's existence is the "another instance is running" signal, so a
    pre-existing file is never removed here.
    """

    def __init__(self, socket_path: str) -> None:
        self.socket_path = socket_path

    def bind(self) -> socket.socket:
        path = self.socket_path
        if os.path.lexists(path):
            raise AlreadyBoundError(path)

        try:
            _make_private_dirs(os.path.dirname(path) or ".")
        except OSError as e:
            raise SocketSetupError(f"failed to create socket directory: {e}") from e

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(path)
        except OSError as e:
            sock.close()
            if e.errno == errno.EADDRINUSE:
                raise AlreadyBoundError(path) from e
            raise SocketSetupError(f"failed to bind socket: {e}") from e

        # Restrict before listen() so nobody can connect while the mode is loose.
        try:
            os.chmod(path, SOCKET_MODE)
        except OSError as e:
            sock.close()
            self.teardown()
            raise SocketSetupError(f"failed to set permissions on socket: {e}") from e

        try:
            sock.listen()
        except OSError as e:
            sock.close()
            self.teardown()
            raise SocketSetupError(f"failed to listen on socket: {e}") from e

        return sock

    def teardown(self) -> None:
        try:
            os.remove(self.socket_path)
            logger.info("Removed socket %s", self.socket_path)
        except FileNotFoundError:
            logger.debug("Socket %s already removed", self.socket_path)
        except OSError as e:
            logger.warning("Failed to remove socket %s: %s", self.socket_path, e)


class IPCServer:
    """
    Accept loop on the forwarder socket.

    Protocol: the client sends one newline-terminated line, the handler
    streams a reply, the connection is closed. Every connection runs in its
    own task; nothing limits how many run at once.
    """

    def __init__(self, lifecycle: SocketLifecycle, handler: ConnectionHandler, *, line_limit: int) -> None:
        self._lifecycle = lifecycle
        self._handler = handler
        self._line_limit = line_limit
        self._server: asyncio.base_events.Server | None = None
        self._connections: set[asyncio.Task[None]] = set()
        self._owns_socket = False

    async def start(self) -> None:
        sock = self._lifecycle.bind()
        try:
            self._server = await asyncio.start_unix_server(self._on_client, sock=sock, limit=self._line_limit)
        except Exception:
            sock.close()
            self._lifecycle.teardown()
            raise
        self._owns_socket = True

    def close(self) -> None:
        """Stop accepting and remove the socket file. In-flight connections keep running."""
        if self._server is not None:
            self._server.close()
            self._server = None
        if self._owns_socket:
            self._owns_socket = False
            self._lifecycle.teardown()

    async def drain(self, timeout: Optional[float]) -> bool:
        """Wait for in-flight connections. Returns False if some were still running at the timeout."""
        pending = {t for t in self._connections if not t.done()}
        if not pending:
            return True
        logger.info("Waiting for %d in-flight connection(s) to finish", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning("%d connection(s) still running after %.1fs", len(still_running), timeout or 0.0)
            return False
        return True

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
            task.add_done_callback(self._connections.discard)

        ident = self._get_peer_identity(writer)
        try:
            await self._handler(reader, writer, ident)
        except Exception:  # noqa: BLE001
            logger.exception("Recovered from fault in connection handler (%s)", ident)
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug("Error closing connection (%s): %s", ident, e)

    def _get_peer_identity(self, writer: asyncio.StreamWriter) -> PeerIdentity:
        sock: Optional[socket.socket] = writer.get_extra_info("socket")
        if sock is None or not hasattr(socket, "SO_PEERCRED"):
            return PeerIdentity()

        # Linux: SO_PEERCRED gives (pid, uid, gid)
        try:
            creds = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, 12)
        except OSError:
            return PeerIdentity()
        pid = int.from_bytes(creds[0:4], "little", signed=True)
        uid = int.from_bytes(creds[4:8], "little", signed=True)
        gid = int.from_bytes(creds[8:12], "little", signed=True)
        return PeerIdentity(uid=uid, gid=gid, pid=pid)
