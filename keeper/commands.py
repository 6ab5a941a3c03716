from __future__ import annotations

from typing import Any, Callable

from .docker_ops import DockerRuntime, command_prefix
from .errors import RuntimeCommandFailed
from .journal import EventJournal
from .merge import MergeResult
from .reconciler import Reconciler, ReconcileReport
from .refresh import RefreshEscalation, RefreshScope
from .settings import Settings
from .tree import ConfigTree


class Keeper:
    """Wires the runtime, the config tree and the reconciler for one resource."""

    def __init__(
        self,
        settings: Settings,
        runtime: Any | None = None,
        journal: EventJournal | None = None,
        echo: Callable[[str], None] = print,
    ):
        self.settings = settings
        self.echo = echo
        self.journal = journal or EventJournal(settings.journal_path())
        self.runtime = runtime or DockerRuntime(settings, self.journal)
        self.tree = ConfigTree(settings, self.journal)
        self.reconciler = Reconciler(
            self.runtime, self.tree, journal=self.journal, resource=settings.resource_name, echo=echo
        )
        self.refresher = RefreshEscalation(self.runtime, self.reconciler, settings, journal=self.journal)

    @property
    def name(self) -> str:
        return self.settings.resource_name

    def start(self) -> ReconcileReport:
        return self.reconciler.reconcile()

    def refresh(self, scope: RefreshScope) -> ReconcileReport:
        return self.refresher.refresh(scope)

    def reset(self) -> ReconcileReport:
        return self.refresher.reset()

    def pause(self) -> tuple[bool, str]:
        """Stop the container but keep it for a later resume."""
        status = self.runtime.probe()
        if not status.container_exists:
            raise RuntimeCommandFailed(f"No container named '{self.name}'.")
        if not (status.container_running or status.container_paused):
            return False, f"'{self.name}' is not running."
        self.runtime.stop_container()
        return True, f"Paused '{self.name}'."

    def stop(self) -> tuple[bool, str]:
        """Stop and remove the container; image and config stay."""
        status = self.runtime.probe()
        if not status.container_exists:
            return False, f"No container named '{self.name}'."
        self.runtime.remove_container()
        return True, f"Stopped and removed '{self.name}'."

    def resume(self) -> tuple[bool, str]:
        status = self.runtime.probe()
        if not status.container_exists:
            raise RuntimeCommandFailed(f"No container named '{self.name}' to resume; run start instead.")
        if status.container_running:
            return False, "Already running."
        if status.container_paused:
            self.runtime.unpause_container()
            return True, f"Unpaused '{self.name}'."
        self.runtime.start_container()
        return True, f"Resumed '{self.name}'."

    def _require_running(self) -> None:
        if not self.runtime.probe().container_running:
            raise RuntimeCommandFailed(f"'{self.name}' is not running.")

    def log(self) -> None:
        self._require_running()
        self.runtime.stream_logs()

    def shell(self) -> int:
        self._require_running()
        return self.runtime.exec_shell()

    def init(self) -> None:
        self.tree.initialize()

    def merge(self) -> MergeResult:
        return self.tree.merge()

    def conflicts(self) -> list[str]:
        self.tree.require_initialized()
        return self.tree.conflicts()

    def status(self) -> dict[str, Any]:
        st = self.runtime.probe()
        return {
            "resource": self.name,
            "image": self.settings.image,
            "image_exists": st.image_exists,
            "container_exists": st.container_exists,
            "container_running": st.container_running,
            "container_paused": st.container_paused,
            "initialized": self.tree.is_initialized(),
            "state": self.reconciler.observe().value,
            "elevated": bool(command_prefix(self.settings)),
        }

    def events(self, limit: int = 20) -> list[dict[str, Any]]:
        return self.journal.latest(limit)
