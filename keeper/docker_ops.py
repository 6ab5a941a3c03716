from __future__ import annotations

import os
import re
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator

import docker
from docker.errors import APIError, BuildError, DockerException, NotFound

from .errors import AmbiguousResource, RuntimeCommandFailed, RuntimeUnavailable
from .journal import EventJournal
from .settings import Settings


RESOURCE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,127}$")
IMAGE_REF_RE = re.compile(r"^[a-z0-9][a-z0-9_.\-/:]{0,254}$")


def validate_resource_name(name: str) -> None:
    if not RESOURCE_NAME_RE.match(name):
        raise ValueError(
            "Invalid resource name. Use letters/numbers and _.- , starting with a letter or number (max 128 chars)."
        )


def validate_image_ref(ref: str) -> None:
    if not IMAGE_REF_RE.match(ref):
        raise ValueError("Invalid image reference. Use lowercase letters/numbers and _.-/: (max 255 chars).")


def normalize_image_ref(ref: str) -> str:
    """Add the implicit ':latest' tag so refs compare equal to Docker's tag list."""
    last = ref.rsplit("/", 1)[-1]
    if ":" in last or "@" in last:
        return ref
    return f"{ref}:latest"


@dataclass(frozen=True)
class ResourceStatus:
    image_exists: bool
    container_exists: bool
    container_running: bool
    container_paused: bool = False


def needs_elevation(settings: Settings) -> bool:
    """True when the runtime's control socket is present but not writable by us."""
    if settings.elevated:
        return False
    if settings.always_elevate:
        return True
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return False
    if not os.path.exists(settings.docker_socket):
        return False
    return not os.access(settings.docker_socket, os.W_OK)


def command_prefix(settings: Settings) -> list[str]:
    """Prefix for runtime commands executed as subprocesses."""
    if needs_elevation(settings) and settings.elevate_cmd:
        return settings.elevate_cmd.split()
    return []


def elevated_argv(settings: Settings, argv: list[str]) -> list[str]:
    """Command line that runs this keeper invocation again under the elevation wrapper.

    Wrappers such as sudo scrub the environment, so the KEEPER_* variables are
    handed over through ``env``, along with KEEPER_ELEVATED to stop a second hop.
    """
    env = [f"{k}={v}" for k, v in sorted(os.environ.items()) if k.startswith("KEEPER_") and k != "KEEPER_ELEVATED"]
    script = os.path.abspath(sys.argv[0])
    return command_prefix(settings) + ["env", "KEEPER_ELEVATED=1", *env, sys.executable, script, *argv]


def parse_ports(specs: tuple[str, ...] | list[str]) -> dict[str, Any]:
    """Turn ``[ip:]host:container[/proto]`` strings into docker-py's ports mapping."""
    ports: dict[str, Any] = {}
    for spec in specs:
        mapping, _, proto = spec.partition("/")
        parts = mapping.split(":")
        if len(parts) == 2:
            host: Any = int(parts[0])
        elif len(parts) == 3:
            host = (parts[0], int(parts[1]))
        else:
            raise ValueError(f"Invalid port mapping '{spec}'. Expected [ip:]host:container[/proto].")
        ports[f"{int(parts[-1])}/{proto or 'tcp'}"] = host
    return ports


def resolve_volumes(specs: tuple[str, ...] | list[str], root: str) -> list[str]:
    """Make relative host paths in ``host:container[:mode]`` specs absolute against root."""
    out: list[str] = []
    for spec in specs:
        host, sep, rest = spec.partition(":")
        if not sep:
            raise ValueError(f"Invalid volume '{spec}'. Expected host:container[:mode].")
        if ("/" in host or host.startswith(".")) and not os.path.isabs(host):
            host = os.path.normpath(os.path.join(root, host))
        out.append(f"{host}:{rest}")
    return out


def _client() -> docker.DockerClient:
    return docker.from_env()


class DockerRuntime:
    """The external container runtime, scoped to the single configured resource."""

    def __init__(self, settings: Settings, journal: EventJournal | None = None):
        validate_resource_name(settings.resource_name)
        validate_image_ref(settings.image)
        self.settings = settings
        self.journal = journal
        self.name = settings.resource_name
        self.image_ref = normalize_image_ref(settings.image)

    def _log(self, level: str, message: str) -> None:
        if self.journal is not None:
            self.journal.record(level, message, resource=self.name)

    def client(self) -> docker.DockerClient:
        try:
            c = _client()
            c.ping()
            return c
        except DockerException as e:
            hint = ""
            if needs_elevation(self.settings):
                hint = f" (no write access to {self.settings.docker_socket}; re-run with {self.settings.elevate_cmd})"
            raise RuntimeUnavailable(f"Docker is not available: {e}{hint}") from e

    # -- probe -------------------------------------------------------------

    def _find_container(self, c: docker.DockerClient) -> Any | None:
        # The API name filter is a substring match; keep exact matches only.
        candidates = c.containers.list(all=True, filters={"name": self.name})
        exact = [x for x in candidates if x.name == self.name]
        if len(exact) > 1:
            raise AmbiguousResource(f"{len(exact)} containers are named '{self.name}'.")
        return exact[0] if exact else None

    def _find_image(self, c: docker.DockerClient) -> Any | None:
        candidates = c.images.list(name=self.settings.image)
        exact = [x for x in candidates if self.image_ref in (x.tags or [])]
        if len(exact) > 1:
            raise AmbiguousResource(f"{len(exact)} images are tagged '{self.image_ref}'.")
        return exact[0] if exact else None

    def probe(self) -> ResourceStatus:
        c = self.client()
        try:
            image = self._find_image(c)
            container = self._find_container(c)
        except APIError as e:
            raise RuntimeUnavailable(f"Docker query failed: {e.explanation or e}") from e
        return ResourceStatus(
            image_exists=image is not None,
            container_exists=container is not None,
            container_running=container is not None and container.status == "running",
            container_paused=container is not None and container.status == "paused",
        )

    # -- mutations -----------------------------------------------------------

    def build_image(self, no_cache: bool = False, out: BinaryIO | None = None) -> None:
        root = self.settings.root_path()
        c = self.client()
        self._log("INFO", f"Building image {self.image_ref} from {root} (no_cache={no_cache})")
        try:
            _, logs = c.images.build(
                path=root,
                dockerfile=self.settings.dockerfile,
                tag=self.settings.image,
                rm=True,
                nocache=no_cache,
            )
        except BuildError as e:
            self._log("ERROR", f"Image build failed: {e.msg}")
            raise RuntimeCommandFailed(f"Image build failed: {e.msg}") from e
        except APIError as e:
            self._log("ERROR", f"Image build failed: {e.explanation or e}")
            raise RuntimeCommandFailed(f"Image build failed: {e.explanation or e}") from e
        _write_build_log(logs, out or sys.stdout.buffer)
        self._log("INFO", f"Built image {self.image_ref}")

    def run_container(self) -> None:
        c = self.client()
        try:
            c.containers.run(
                self.settings.image,
                detach=True,
                name=self.name,
                ports=parse_ports(self.settings.ports) or None,
                volumes=resolve_volumes(self.settings.volumes, self.settings.root_path()) or None,
                restart_policy={"Name": self.settings.restart_policy} if self.settings.restart_policy else None,
            )
        except APIError as e:
            self._log("ERROR", f"Run failed: {e.explanation or e}")
            raise RuntimeCommandFailed(f"Could not run container '{self.name}': {e.explanation or e}") from e
        self._log("INFO", f"Started container {self.name} from image {self.image_ref}")

    def _container(self, c: docker.DockerClient) -> Any:
        cont = self._find_container(c)
        if cont is None:
            raise RuntimeCommandFailed(f"No container named '{self.name}'.")
        return cont

    def start_container(self) -> None:
        c = self.client()
        try:
            self._container(c).start()
        except APIError as e:
            raise RuntimeCommandFailed(f"Could not start container '{self.name}': {e.explanation or e}") from e
        self._log("INFO", f"Started existing container {self.name}")

    def unpause_container(self) -> None:
        c = self.client()
        try:
            self._container(c).unpause()
        except APIError as e:
            raise RuntimeCommandFailed(f"Could not unpause container '{self.name}': {e.explanation or e}") from e
        self._log("INFO", f"Unpaused container {self.name}")

    def stop_container(self) -> None:
        c = self.client()
        try:
            self._container(c).stop()
        except APIError as e:
            raise RuntimeCommandFailed(f"Could not stop container '{self.name}': {e.explanation or e}") from e
        self._log("INFO", f"Stopped container {self.name}")

    def remove_container(self) -> None:
        """Stop and remove the container. Missing container is a no-op."""
        c = self.client()
        try:
            cont = self._find_container(c)
            if cont is None:
                return
            cont.remove(force=True)
        except NotFound:
            return
        except APIError as e:
            raise RuntimeCommandFailed(f"Could not remove container '{self.name}': {e.explanation or e}") from e
        self._log("INFO", f"Removed container {self.name}")

    def remove_image(self) -> None:
        """Remove the image. Missing image is a no-op."""
        c = self.client()
        try:
            image = self._find_image(c)
            if image is None:
                return
            c.images.remove(self.image_ref)
        except NotFound:
            return
        except APIError as e:
            raise RuntimeCommandFailed(f"Could not remove image '{self.image_ref}': {e.explanation or e}") from e
        self._log("INFO", f"Removed image {self.image_ref}")

    # -- attached sessions ---------------------------------------------------

    def stream_logs(self, out: BinaryIO | None = None) -> None:
        """Follow the container output until it exits or the operator interrupts."""
        out = out or sys.stdout.buffer
        c = self.client()
        try:
            for chunk in self._container(c).logs(stream=True, follow=True):
                out.write(chunk)
                out.flush()
        except APIError as e:
            raise RuntimeCommandFailed(f"Could not read logs of '{self.name}': {e.explanation or e}") from e

    def exec_shell(self) -> int:
        """Interactive root shell inside the container; returns the session's exit status."""
        cmd = command_prefix(self.settings) + ["docker", "exec", "-it", "-u", "root", self.name, self.settings.shell]
        try:
            return subprocess.call(cmd)
        except FileNotFoundError as e:
            raise RuntimeUnavailable(f"Cannot execute '{cmd[0]}': {e}") from e


def _write_build_log(logs: Iterator[dict[str, Any]], out: BinaryIO) -> None:
    for entry in logs:
        line = entry.get("stream") if isinstance(entry, dict) else None
        if line:
            out.write(line.encode("utf-8", "replace"))
    out.flush()
