from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol, Sequence


logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024


class ByteSink(Protocol):
    def write(self, data: bytes) -> None: ...
    async def drain(self) -> None: ...


class SpawnError(Exception):
    pass


@dataclass(frozen=True)
class RelayOutcome:
    returncode: int
    stdout_bytes: int
    stderr_bytes: int


class ProcessRelay:
    """
    Run the op CLI and copy both of its output streams into a sink.

    Both streams are copied concurrently and fully before run() returns;
    ordering between them is whatever the child and the scheduler produce.
    A non-zero exit status is reported, not raised: the child's own stderr
    already told the caller what went wrong.
    """

    def __init__(self, op_binary: str) -> None:
        self._op_binary = op_binary

    async def run(self, argv: Sequence[str], sink: ByteSink) -> RelayOutcome:
        logger.info("Executing %s with args: %s", self._op_binary, " ".join(f"'{a}'" for a in argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                self._op_binary,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(f"could not start {self._op_binary}: {e}") from e

        assert proc.stdout is not None and proc.stderr is not None
        copies = [
            asyncio.create_task(_copy(proc.stdout, sink, "stdout"), name="opfwd.relay.stdout"),
            asyncio.create_task(_copy(proc.stderr, sink, "stderr"), name="opfwd.relay.stderr"),
        ]
        try:
            returncode = await proc.wait()
            stdout_bytes, stderr_bytes = await asyncio.gather(*copies)
        except BaseException:
            for t in copies:
                t.cancel()
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if returncode != 0:
            logger.info("Command exited with status %s", returncode)
        return RelayOutcome(returncode=returncode, stdout_bytes=stdout_bytes, stderr_bytes=stderr_bytes)


async def _copy(stream: asyncio.StreamReader, sink: ByteSink, name: str) -> int:
    # Keeps reading after the sink fails so the child never blocks on a full pipe.
    total = 0
    sink_ok = True
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if not sink_ok:
            continue
        try:
            sink.write(chunk)
            await sink.drain()
        except (ConnectionError, OSError) as e:
            logger.warning("Error copying %s: %s", name, e)
            sink_ok = False
    return total
