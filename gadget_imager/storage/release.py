"""Ordered release of acquired host resources.

Every acquisition (loop device, mount, diversion, backup) registers how to undo
itself before anything depends on it. Releases run last-in first-out and every
one of them is attempted; failures are collected, never short-circuited.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import TeardownError


log = LoggerFactory.for_system()


@dataclass(frozen=True)
class ReleaseAction:
    kind: str
    target: str
    release: Callable[[], None]

    def __str__(self) -> str:
        return f"{self.kind} {self.target}"


class ReleaseStack:
    def __init__(self) -> None:
        self._actions: list[ReleaseAction] = []

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def actions(self) -> list[ReleaseAction]:
        return list(self._actions)

    def push(self, kind: str, target: str, release: Callable[[], None]) -> ReleaseAction:
        action = ReleaseAction(kind, str(target), release)
        log.trace(f"Registered release of {action}")
        self._actions.append(action)
        return action

    def push_command(self, ops, kind: str, target: str, argv: Sequence[str]) -> ReleaseAction:
        """Register a release performed by running a command."""
        command = list(argv)
        return self.push(kind, target, lambda: ops.run(command))

    def push_commands(
        self, ops, kind: str, target: str, commands: Sequence[Sequence[str]]
    ) -> ReleaseAction:
        """Register a release made of several commands run in order."""
        commands = [list(argv) for argv in commands]

        def release() -> None:
            for argv in commands:
                ops.run(argv)

        return self.push(kind, target, release)

    def release_all(self) -> list[Exception]:
        """Run every registered release, newest first, and return the failures."""
        errors: list[Exception] = []
        while self._actions:
            action = self._actions.pop()
            try:
                log.debug(f"Releasing {action}")
                action.release()
            except Exception as error:
                log.error(f"Failed to release {action}: {error}")
                errors.append(error)
        return errors

    def __enter__(self) -> "ReleaseStack":
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        errors = self.release_all()
        if errors:
            raise TeardownError(errors, cause=exc) from exc
        return None
