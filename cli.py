from __future__ import annotations

import argparse
import json
import os
import sys

from keeper.commands import Keeper
from keeper.docker_ops import elevated_argv, needs_elevation
from keeper.errors import KeeperError, RuntimeUnavailable, UnknownCommand
from keeper.reconciler import ReconcileReport
from keeper.refresh import RefreshScope
from keeper.settings import Settings, settings as default_settings


USAGE = """\
usage: keeper [command]

Keeps the configured resource running in a container and its private
config tree merged with the public template.

commands:
  (none) | start        build and run as needed until the resource is running
  log                   follow the resource's output
  shell                 open a root shell inside the resource
  pause                 stop the resource, keeping its container
  resume                start a paused resource
  stop                  stop and remove the container (image and config stay)
  refresh [SCOPE]       tear down SCOPE and start again; SCOPE is one of
                        container (default), image, conf, modules
  reset                 remove container and image, rebuild without cache
  init                  create private and baseline from the public template
  merge                 merge template changes into the private tree
  conflicts             list private files with unresolved conflict markers
  status                show image/container/config state as JSON
  events [--limit N]    show the latest journal entries as JSON
  help                  show this text

environment:
  KEEPER_RESOURCE_NAME, KEEPER_IMAGE, KEEPER_ROOT, KEEPER_CONF_DIR,
  KEEPER_MODULES_DIR, KEEPER_PORTS, KEEPER_VOLUMES, KEEPER_DB_PATH, ...
"""

NO_ARG_COMMANDS = {"start", "log", "shell", "pause", "resume", "stop", "reset", "init", "merge", "conflicts", "status"}
COMMANDS = NO_ARG_COMMANDS | {"refresh", "events"}
# Commands that talk to the runtime; only these are re-run under the elevation wrapper.
RUNTIME_COMMANDS = {"start", "log", "shell", "pause", "resume", "stop", "refresh", "reset", "status"}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _report(rep: ReconcileReport) -> int:
    print(rep.message)
    return 0 if rep.ok else 1


def _parse(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="keeper", add_help=False)
    p.add_argument("cmd", nargs="?", default="start")
    p.add_argument("rest", nargs="*")
    p.add_argument("--limit", type=int, default=20)
    return p.parse_args(argv)


def run(args: argparse.Namespace, keeper: Keeper) -> int:
    cmd = args.cmd

    if cmd in NO_ARG_COMMANDS and args.rest:
        raise UnknownCommand(f"'{cmd}' takes no arguments (got {' '.join(args.rest)}).")

    if cmd == "start":
        return _report(keeper.start())

    if cmd == "refresh":
        if len(args.rest) > 1:
            raise UnknownCommand("refresh takes at most one scope.")
        scope = RefreshScope.parse(args.rest[0] if args.rest else None)
        return _report(keeper.refresh(scope))

    if cmd == "reset":
        return _report(keeper.reset())

    if cmd in ("pause", "resume", "stop"):
        ok, msg = getattr(keeper, cmd)()
        print(msg)
        return 0 if ok else 1

    if cmd == "log":
        keeper.log()
        return 0

    if cmd == "shell":
        return keeper.shell()

    if cmd == "init":
        keeper.init()
        print("Initialized config tree.")
        return 0

    if cmd == "merge":
        result = keeper.merge()
        if result.clean:
            print(f"Merged {len(result.outcomes)} files cleanly.")
            return 0
        print("Merge finished with conflicts; resolve the markers in:")
        for name in result.conflicts:
            print(f"  {name}")
        return 1

    if cmd == "conflicts":
        files = keeper.conflicts()
        for name in files:
            print(name)
        return 1 if files else 0

    if cmd == "status":
        _print(keeper.status())
        return 0

    if cmd == "events":
        _print(keeper.events(limit=args.limit))
        return 0

    raise UnknownCommand(f"Unknown command '{cmd}'.")


def _reexec_elevated(settings: Settings, argv: list[str]) -> None:
    cmd = elevated_argv(settings, argv)
    try:
        os.execvp(cmd[0], cmd)
    except OSError as e:
        raise RuntimeUnavailable(f"Cannot re-run under '{settings.elevate_cmd}': {e}") from e


def main(argv: list[str] | None = None, settings: Settings | None = None, keeper: Keeper | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if argv[:1] == ["help"] or "-h" in argv or "--help" in argv:
        print(USAGE, end="")
        return 0

    try:
        args = _parse(argv)
        if args.cmd not in COMMANDS:
            raise UnknownCommand(f"Unknown command '{args.cmd}'. Run 'keeper help' for usage.")
        settings = settings or default_settings
        if keeper is None and args.cmd in RUNTIME_COMMANDS and settings.elevate_cmd and needs_elevation(settings):
            _reexec_elevated(settings, argv)
        keeper = keeper or Keeper(settings)
        return run(args, keeper)
    except KeeperError as e:
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
