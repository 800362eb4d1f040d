from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from opfwd.engine.config import ForwarderConfig


class CommandRejectedError(Exception):
    def __init__(self, command: str) -> None:
        super().__init__(f"Command not allowed: {command}")
        self.command = command


@dataclass(frozen=True)
class CommandPolicy:
    """
    Whitelist of commands the forwarder may run.

      - exact: the trimmed request equals an entry (case-sensitive)
      - prefix: the trimmed request starts with an entry (case-sensitive)

    An empty policy allows nothing.
    """

    exact_commands: frozenset[str] = field(default_factory=frozenset)
    prefixes: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_entries(cls, exact: Iterable[str] = (), prefixes: Iterable[str] = ()) -> "CommandPolicy":
        return cls(exact_commands=frozenset(exact), prefixes=frozenset(prefixes))

    @classmethod
    def from_config(cls, cfg: ForwarderConfig) -> "CommandPolicy":
        return cls.from_entries(cfg.allowed_commands, cfg.allowed_prefixes)

    def is_allowed(self, command: str) -> bool:
        command = command.strip()
        if command in self.exact_commands:
            return True
        return any(command.startswith(p) for p in self.prefixes)

    def assert_allowed(self, command: str) -> None:
        if not self.is_allowed(command):
            raise CommandRejectedError(command.strip())
