from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return ()
    return tuple(x.strip() for x in raw.split(",") if x.strip())


_RESOURCE_NAME = os.getenv("KEEPER_RESOURCE_NAME", "keeper")


@dataclass(frozen=True)
class Settings:
    # Resource
    resource_name: str = _RESOURCE_NAME
    image: str = os.getenv("KEEPER_IMAGE", _RESOURCE_NAME)
    restart_policy: str = os.getenv("KEEPER_RESTART_POLICY", "unless-stopped")
    ports: tuple[str, ...] = field(default_factory=lambda: _env_list("KEEPER_PORTS"))
    volumes: tuple[str, ...] = field(default_factory=lambda: _env_list("KEEPER_VOLUMES"))
    shell: str = os.getenv("KEEPER_SHELL", "/bin/bash")

    # Layout
    root: str = os.getenv("KEEPER_ROOT", ".")
    dockerfile: str = os.getenv("KEEPER_DOCKERFILE", "Dockerfile")
    conf_dir: str = os.getenv("KEEPER_CONF_DIR", "conf")
    modules_dir: str = os.getenv("KEEPER_MODULES_DIR", "modules")
    public_name: str = "public"
    private_name: str = "private"
    baseline_name: str = ".baseline"
    db_path: str = os.getenv("KEEPER_DB_PATH", ".keeper.db")

    # Runtime invocation policy
    docker_socket: str = os.getenv("KEEPER_DOCKER_SOCKET", "/var/run/docker.sock")
    elevate_cmd: str = os.getenv("KEEPER_ELEVATE_CMD", "sudo")
    # Force the elevation wrapper even when the socket looks writable.
    always_elevate: bool = _env_bool("KEEPER_ALWAYS_ELEVATE", False)
    # Set on the command line that re-runs keeper under the wrapper.
    elevated: bool = _env_bool("KEEPER_ELEVATED", False)

    def root_path(self) -> str:
        return os.path.abspath(self.root)

    def _under_root(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(self.root_path(), path)

    def conf_path(self) -> str:
        return self._under_root(self.conf_dir)

    def public_path(self) -> str:
        return os.path.join(self.conf_path(), self.public_name)

    def private_path(self) -> str:
        return os.path.join(self.conf_path(), self.private_name)

    def baseline_path(self) -> str:
        return os.path.join(self.conf_path(), self.baseline_name)

    def modules_path(self) -> str:
        return self._under_root(self.modules_dir)

    def journal_path(self) -> str:
        return self._under_root(self.db_path)


settings = Settings()
