from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from .docker_ops import ResourceStatus
from .errors import ConflictsPresent
from .journal import EventJournal
from .tree import ConfigTree


class Runtime(Protocol):
    def probe(self) -> ResourceStatus: ...

    def build_image(self, no_cache: bool = False) -> None: ...

    def run_container(self) -> None: ...

    def start_container(self) -> None: ...

    def unpause_container(self) -> None: ...


class DeploymentState(Enum):
    CONTAINER_RUNNING = "container running"
    CONTAINER_PAUSED = "container paused"
    CONTAINER_STOPPED_CONFLICTS = "container stopped, config has conflicts"
    CONTAINER_STOPPED_CLEAN = "container stopped"
    IMAGE_ONLY = "image only, no container"
    NOT_INITIALIZED = "config tree not initialized"
    CONFLICTS_PRESENT = "no image, config has conflicts"
    NO_IMAGE = "no image"


class Action(Enum):
    INIT = "init"
    BUILD = "build"
    RUN = "run"
    START = "start"
    UNPAUSE = "unpause"


PLANS: dict[DeploymentState, list[Action]] = {
    DeploymentState.CONTAINER_RUNNING: [],
    DeploymentState.CONTAINER_PAUSED: [Action.UNPAUSE],
    DeploymentState.CONTAINER_STOPPED_CONFLICTS: [Action.START],
    DeploymentState.CONTAINER_STOPPED_CLEAN: [Action.START],
    DeploymentState.IMAGE_ONLY: [Action.RUN],
    DeploymentState.NOT_INITIALIZED: [Action.INIT, Action.BUILD, Action.RUN],
    DeploymentState.CONFLICTS_PRESENT: [],
    DeploymentState.NO_IMAGE: [Action.BUILD, Action.RUN],
}


def plan(state: DeploymentState) -> list[Action]:
    return list(PLANS[state])


@dataclass
class ReconcileReport:
    state: DeploymentState
    ok: bool
    message: str
    actions: list[Action] = field(default_factory=list)


class Reconciler:
    """Brings the single resource to the running state.

    Every call observes the runtime and the config tree afresh; nothing is
    cached between calls.
    """

    def __init__(
        self,
        runtime: Runtime,
        tree: ConfigTree,
        journal: EventJournal | None = None,
        resource: str | None = None,
        echo: Callable[[str], None] | None = None,
    ):
        self.runtime = runtime
        self.tree = tree
        self.journal = journal
        self.resource = resource
        self.echo = echo or (lambda msg: None)

    def _log(self, level: str, message: str) -> None:
        if self.journal is not None:
            self.journal.record(level, message, resource=self.resource)

    def observe(self) -> DeploymentState:
        # Checked top to bottom: "already running" wins over anything that could build or destroy.
        status = self.runtime.probe()
        if status.container_running:
            return DeploymentState.CONTAINER_RUNNING
        if status.container_paused:
            return DeploymentState.CONTAINER_PAUSED
        if status.container_exists:
            if self.tree.is_initialized() and self.tree.conflicts():
                return DeploymentState.CONTAINER_STOPPED_CONFLICTS
            return DeploymentState.CONTAINER_STOPPED_CLEAN
        if status.image_exists:
            return DeploymentState.IMAGE_ONLY
        if not self.tree.is_initialized():
            return DeploymentState.NOT_INITIALIZED
        if self.tree.conflicts():
            return DeploymentState.CONFLICTS_PRESENT
        return DeploymentState.NO_IMAGE

    def reconcile(self, no_cache: bool = False) -> ReconcileReport:
        state = self.observe()

        if state is DeploymentState.CONTAINER_RUNNING:
            return ReconcileReport(state=state, ok=False, message="Already running.")

        if state is DeploymentState.CONFLICTS_PRESENT:
            files = self.tree.conflicts()
            self._log("ERROR", f"Refusing to build: conflicts in {', '.join(files)}")
            raise ConflictsPresent(files)

        if state is DeploymentState.CONTAINER_STOPPED_CONFLICTS:
            self.echo("Warning: private config has unresolved conflicts; starting the existing container anyway.")

        done: list[Action] = []
        for action in plan(state):
            self.echo(f"{action.value} ...")
            self._log("INFO", f"Reconcile ({state.value}): {action.value}")
            if action is Action.INIT:
                self.tree.initialize()
            elif action is Action.BUILD:
                self.runtime.build_image(no_cache=no_cache)
            elif action is Action.RUN:
                self.runtime.run_container()
            elif action is Action.START:
                self.runtime.start_container()
            elif action is Action.UNPAUSE:
                self.runtime.unpause_container()
            done.append(action)

        return ReconcileReport(state=state, ok=True, message="Running.", actions=done)
