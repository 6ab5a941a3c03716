from __future__ import annotations

import os

from .conflicts import find_conflicts
from .errors import AlreadyInitialized, NotInitialized
from .journal import EventJournal
from .merge import MergeResult, ThreeWayMerger, copy_tree, pending_binary_conflicts
from .settings import Settings


class ConfigTree:
    """The public template, the private working copy and the baseline snapshot."""

    def __init__(self, settings: Settings, journal: EventJournal | None = None):
        self.public = settings.public_path()
        self.private = settings.private_path()
        self.baseline = settings.baseline_path()
        self.journal = journal

    def _log(self, level: str, message: str) -> None:
        if self.journal is not None:
            self.journal.record(level, message)

    def is_initialized(self) -> bool:
        return os.path.isdir(self.private) and os.path.isdir(self.baseline)

    def initialize(self) -> None:
        """Create private and baseline as copies of public.

        A private tree without a baseline is what an interrupted merge leaves
        behind; in that case only the baseline is recreated.
        """
        has_private = os.path.isdir(self.private)
        has_baseline = os.path.isdir(self.baseline)
        if has_private and has_baseline:
            raise AlreadyInitialized(f"Config tree already initialized ({self.private}).")
        if has_baseline:
            raise AlreadyInitialized(
                f"Baseline {self.baseline} exists without a private tree. Restore {self.private} or remove the baseline."
            )
        if not os.path.isdir(self.public):
            raise NotInitialized(f"Public template tree {self.public} does not exist.")

        if has_private:
            self._log("WARN", "Private tree found without baseline; recreating baseline from public")
        else:
            copy_tree(self.public, self.private)
        copy_tree(self.public, self.baseline)
        self._log("INFO", f"Initialized config tree from {self.public}")

    def require_initialized(self) -> None:
        if not self.is_initialized():
            raise NotInitialized(f"Config tree is not initialized (expected {self.private} and {self.baseline}).")

    def merge(self) -> MergeResult:
        self.require_initialized()
        merger = ThreeWayMerger(self.baseline, self.public, self.private, journal=self.journal)
        return merger.merge()

    def conflicts(self) -> list[str]:
        """Files with conflict markers plus binary files whose upstream change is still unmerged."""
        found = set(find_conflicts(self.private))
        if os.path.isdir(self.baseline):
            found.update(pending_binary_conflicts(self.baseline, self.public, self.private))
        return sorted(found)
