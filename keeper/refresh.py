from __future__ import annotations

import os
import secrets
from enum import IntEnum
from typing import Protocol

from .errors import UnknownRefreshScope
from .journal import EventJournal
from .reconciler import Reconciler, ReconcileReport
from .settings import Settings


MARKER_NAME = ".keeper-force-rebuild"


class Teardown(Protocol):
    def remove_container(self) -> None: ...

    def remove_image(self) -> None: ...


class RefreshScope(IntEnum):
    """How much to throw away before bringing the resource back, softest first."""

    CONTAINER = 1
    IMAGE = 2
    CONF = 3
    MODULES = 4

    @classmethod
    def parse(cls, raw: str | None) -> "RefreshScope":
        if raw is None:
            return cls.CONTAINER
        try:
            return cls[raw.strip().upper()]
        except KeyError:
            choices = "|".join(x.name.lower() for x in cls)
            raise UnknownRefreshScope(f"Unknown refresh scope '{raw}'. Expected one of {choices}.") from None


class RefreshEscalation:
    def __init__(
        self,
        runtime: Teardown,
        reconciler: Reconciler,
        settings: Settings,
        journal: EventJournal | None = None,
    ):
        self.runtime = runtime
        self.reconciler = reconciler
        self.settings = settings
        self.journal = journal

    def _log(self, level: str, message: str) -> None:
        if self.journal is not None:
            self.journal.record(level, message, resource=self.settings.resource_name)

    def marker_dir(self, scope: RefreshScope) -> str | None:
        if scope is RefreshScope.CONF:
            return self.settings.private_path()
        if scope is RefreshScope.MODULES:
            return self.settings.modules_path()
        return None

    def teardown(self, scope: RefreshScope) -> None:
        """Remove everything at or below the scope's layer."""
        if scope >= RefreshScope.CONTAINER:
            self.runtime.remove_container()
        if scope >= RefreshScope.IMAGE:
            self.runtime.remove_image()

    def refresh(self, scope: RefreshScope, no_cache: bool = False) -> ReconcileReport:
        self._log("INFO", f"Refresh requested: {scope.name.lower()}")
        self.teardown(scope)

        target = self.marker_dir(scope)
        marker = None
        try:
            if target is not None:
                if os.path.isdir(target):
                    marker = os.path.join(target, MARKER_NAME)
                    with open(marker, "w", encoding="utf-8") as fh:
                        fh.write(secrets.token_hex(16) + "\n")
                else:
                    self._log("WARN", f"{target} does not exist; no rebuild marker placed")
            return self.reconciler.reconcile(no_cache=no_cache)
        finally:
            if marker is not None and os.path.exists(marker):
                os.remove(marker)

    def reset(self) -> ReconcileReport:
        """Full teardown and a rebuild that ignores the layer cache."""
        self._log("INFO", "Reset requested")
        self.teardown(RefreshScope.IMAGE)
        return self.reconciler.reconcile(no_cache=True)
