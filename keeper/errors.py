"""Errors raised by keeper.

Core modules only raise; cli.py turns them into a message and an exit code.
"""
from __future__ import annotations


class KeeperError(Exception):
    """Base error. Reported to the operator with a non-zero exit."""

    exit_code = 1


class AlreadyInitialized(KeeperError):
    pass


class NotInitialized(KeeperError):
    pass


class RuntimeUnavailable(KeeperError):
    """The container runtime could not be reached."""


class AmbiguousResource(KeeperError):
    """More than one runtime object matched the resource name exactly."""


class MergeIntegrityError(KeeperError):
    """The three config trees do not hold the same set of files."""

    def __init__(self, message: str, missing: dict[str, list[str]] | None = None):
        super().__init__(message)
        self.missing = missing or {}


class ConflictsPresent(KeeperError):
    """The private tree carries unresolved merge markers."""

    def __init__(self, files: list[str]):
        shown = ", ".join(files[:10])
        if len(files) > 10:
            shown += f", ... ({len(files) - 10} more)"
        super().__init__(f"Unresolved merge conflicts in private config: {shown}. Resolve them before building.")
        self.files = list(files)


class ConflictScanError(KeeperError):
    pass


class UnknownCommand(KeeperError):
    pass


class UnknownRefreshScope(KeeperError):
    pass


class RuntimeCommandFailed(KeeperError):
    """A build/run/start/stop/remove call failed inside the runtime."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code if exit_code else 1
