from __future__ import annotations

import asyncio
import logging
import shutil
import signal
from typing import Any, Optional

from opfwd.engine.config import ForwarderConfig
from opfwd.engine.ipc import IPCServer, PeerIdentity, SocketLifecycle, SocketSetupError
from opfwd.engine.permissions import CommandPolicy, CommandRejectedError
from opfwd.engine.relay import ProcessRelay, SpawnError
from opfwd.engine.signin import AuthenticationError, SignInEnsurer


logger = logging.getLogger(__name__)


def build_argv(account: str, command: str) -> list[str]:
    # Plain whitespace split: quoted arguments are not supported.
    return ["--account", account, *command.split()]


class Engine:
    def __init__(self, cfg: ForwarderConfig) -> None:
        self.cfg = cfg
        self.policy = CommandPolicy.from_config(cfg)
        self.signin = SignInEnsurer(op_binary=cfg.op_binary, account=cfg.account)
        self.relay = ProcessRelay(cfg.op_binary)
        self.lifecycle = SocketLifecycle(cfg.socket_path)
        self.ipc = IPCServer(self.lifecycle, self._handle_connection, line_limit=cfg.max_line_bytes)

        self._shutdown = asyncio.Event()
        self._force_quit = asyncio.Event()

    async def start(self) -> None:
        await self.ipc.start()
        logger.info("Server listening on %s", self.cfg.socket_path)
        logger.info("Allowed exact commands: %s", list(self.cfg.allowed_commands))
        logger.info("Allowed command prefixes: %s", list(self.cfg.allowed_prefixes))
        logger.info("Using 1Password account: %s", self.cfg.account)

    async def stop(self) -> None:
        self.ipc.close()
        drain = asyncio.create_task(self.ipc.drain(self.cfg.shutdown_grace_sec), name="opfwd.engine.drain")
        force = asyncio.create_task(self._force_quit.wait(), name="opfwd.engine.force_quit")
        try:
            done, _ = await asyncio.wait({drain, force}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            drain.cancel()
            force.cancel()
        if drain not in done:
            logger.warning("Forced shutdown, abandoning in-flight connections")
        logger.info("Server shutdown completed")

    def request_shutdown(self, reason: Optional[dict[str, Any]] = None) -> None:
        if self._shutdown.is_set():
            # A repeated signal cuts the drain short.
            if not self._force_quit.is_set():
                logger.warning("Shutdown requested again (%s)", reason or {})
                self._force_quit.set()
            return
        logger.info("Shutting down server... (%s)", reason or {})
        self._shutdown.set()
        # Stop accepting right away; stop() waits for in-flight connections.
        self.ipc.close()

    async def run_forever(self, *, run_for: Optional[float] = None) -> None:
        if run_for is None:
            await self._shutdown.wait()
            return
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=run_for)
        except asyncio.TimeoutError:
            self.request_shutdown(reason={"run_for_timeout": run_for})

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        ident: PeerIdentity,
    ) -> None:
        try:
            line = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError:
            logger.info("Connection closed before a full request was received (%s)", ident)
            return
        except asyncio.LimitOverrunError:
            logger.warning("Request longer than %d bytes, dropping connection (%s)", self.cfg.max_line_bytes, ident)
            return
        except (ConnectionError, OSError) as e:
            logger.info("Error reading from connection (%s): %s", ident, e)
            return

        try:
            command = line.decode("utf-8").strip()
        except UnicodeDecodeError:
            logger.info("Request is not valid UTF-8 (%s)", ident)
            await self._reply(writer, "Error: Request is not valid UTF-8")
            return

        logger.info("Received input: %s (%s)", command, ident)

        try:
            self.policy.assert_allowed(command)
        except CommandRejectedError as e:
            logger.info("Command not allowed: %s", e.command)
            await self._reply(writer, f"Error: {e}")
            return

        try:
            await self.signin.ensure_signed_in()
        except AuthenticationError as e:
            logger.error("Error ensuring login: %s", e)
            await self._reply(writer, f"Error: Could not sign in to 1Password: {e}")
            return

        try:
            outcome = await self.relay.run(build_argv(self.cfg.account, command), writer)
        except SpawnError as e:
            logger.error("Error starting command: %s", e)
            await self._reply(writer, f"Error: {e}")
            return

        logger.info(
            "Command finished with status %s (%d stdout bytes, %d stderr bytes)",
            outcome.returncode,
            outcome.stdout_bytes,
            outcome.stderr_bytes,
        )

    async def _reply(self, writer: asyncio.StreamWriter, message: str) -> None:
        try:
            writer.write((message + "\n").encode("utf-8"))
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.info("Error writing response: %s", e)


def run_server(cfg: ForwarderConfig) -> int:
    if shutil.which(cfg.op_binary) is None:
        logger.error(
            "The 1Password CLI (%s) was not found in your system PATH.\n\n"
            "To install it on macOS:\n\n    brew install 1password-cli",
            cfg.op_binary,
        )
        return 1

    async def _run() -> int:
        eng = Engine(cfg)
        try:
            await eng.start()
        except SocketSetupError as e:
            logger.error("Failed to set up socket: %s", e)
            return 1

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, eng.request_shutdown, {"signal": sig.name})
            except NotImplementedError:
                pass

        try:
            await eng.run_forever()
        finally:
            await eng.stop()
        return 0

    return asyncio.run(_run())
