from __future__ import annotations

import asyncio
import logging
from typing import Optional

from opfwd.engine.singleflight import SingleFlight


logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output

    def __str__(self) -> str:
        msg = super().__str__()
        detail = " ".join(self.output.split())
        return f"{msg}: {detail}" if detail else msg


class SignInEnsurer:
    """
    Make sure the op CLI is signed in to one account before a command runs.

      CheckingStatus -> Authenticated
                     -> NotAuthenticated -> SignedIn | SignInFailed

    Nothing is cached between calls. Concurrent calls for the same account
    share one in-flight check.
    """

    def __init__(self, *, op_binary: str, account: str, flight: Optional[SingleFlight[None]] = None) -> None:
        self._op_binary = op_binary
        self._account = account
        self._flight: SingleFlight[None] = flight if flight is not None else SingleFlight("signin")

    async def ensure_signed_in(self) -> None:
        await self._flight.do(self._account, self._check_and_sign_in)

    async def _check_and_sign_in(self) -> None:
        if await self._is_authenticated():
            logger.info("1Password account %s is already authenticated", self._account)
            return

        logger.info("1Password account %s is not signed in, attempting to sign in", self._account)
        await self._sign_in()
        logger.info("Successfully signed in to 1Password account %s", self._account)

    async def _is_authenticated(self) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._op_binary,
                "--account",
                self._account,
                "account",
                "get",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Could not run %s for status check: %s", self._op_binary, e)
            return False
        return await proc.wait() == 0

    async def _sign_in(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._op_binary,
                "signin",
                "--account",
                self._account,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise AuthenticationError(f"failed to sign in to 1Password: {e}") from e

        out, _ = await proc.communicate()
        output = out.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            logger.warning("Sign in attempt failed (exit status %s), output: %s", proc.returncode, output.strip())
            raise AuthenticationError(
                f"failed to sign in to 1Password: exit status {proc.returncode}",
                output=output,
            )
