import sys

import pytest

# Ensure project root is importable (so `import cli` works reliably across environments)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from keeper.docker_ops import ResourceStatus  # noqa: E402
from keeper.errors import RuntimeCommandFailed  # noqa: E402
from keeper.journal import EventJournal  # noqa: E402
from keeper.settings import Settings  # noqa: E402


class FakeRuntime:
    """In-memory stand-in for DockerRuntime that records every call."""

    def __init__(self, image=False, container=False, running=False, paused=False):
        self.image = image
        self.container = container
        self.running = running
        self.paused = paused
        self.calls = []
        self.on_build = None
        self.fail_build = False

    def probe(self):
        self.calls.append("probe")
        return ResourceStatus(
            image_exists=self.image,
            container_exists=self.container,
            container_running=self.running,
            container_paused=self.paused,
        )

    def build_image(self, no_cache=False):
        self.calls.append("build_nocache" if no_cache else "build")
        if self.on_build is not None:
            self.on_build()
        if self.fail_build:
            raise RuntimeCommandFailed("Image build failed: boom")
        self.image = True

    def run_container(self):
        self.calls.append("run")
        self.container = True
        self.running = True

    def start_container(self):
        self.calls.append("start")
        self.running = True

    def unpause_container(self):
        self.calls.append("unpause")
        self.paused = False
        self.running = True

    def stop_container(self):
        self.calls.append("stop")
        self.running = False
        self.paused = False

    def remove_container(self):
        self.calls.append("remove_container")
        self.container = False
        self.running = False
        self.paused = False

    def remove_image(self):
        self.calls.append("remove_image")
        self.image = False

    def stream_logs(self, out=None):
        self.calls.append("logs")

    def exec_shell(self):
        self.calls.append("shell")
        return 0

    def mutations(self):
        return [c for c in self.calls if c != "probe"]


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def settings(tmp_path):
    public = tmp_path / "conf" / "public"
    public.mkdir(parents=True)
    (public / "app.conf").write_text("listen 80\n# tuning\nworkers 2\n")
    (tmp_path / "modules").mkdir()
    return Settings(
        resource_name="svc",
        image="svc",
        root=str(tmp_path),
        db_path=str(tmp_path / "events.db"),
        ports=(),
        volumes=(),
    )


@pytest.fixture
def journal(settings):
    return EventJournal(settings.journal_path())
