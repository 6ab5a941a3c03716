from __future__ import annotations

import os
import stat

from .errors import ConflictScanError, NotInitialized


SEPARATOR = b"======="


def _has_separator_line(path: str) -> bool:
    with open(path, "rb") as fh:
        for line in fh:
            if line.rstrip(b"\r\n") == SEPARATOR:
                return True
    return False


def find_conflicts(root: str) -> list[str]:
    """Relative paths of regular files under root holding a conflict separator line.

    Symlinks and special files (devices, sockets, FIFOs) are never opened.
    """
    if not os.path.isdir(root):
        raise NotInitialized(f"Config tree '{root}' does not exist.")

    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=_walk_error):
        dirnames.sort()
        for fname in sorted(filenames):
            path = os.path.join(dirpath, fname)
            try:
                st = os.lstat(path)
            except OSError as e:
                raise ConflictScanError(f"Cannot stat '{path}': {e}") from e
            if not stat.S_ISREG(st.st_mode):
                continue
            try:
                hit = _has_separator_line(path)
            except OSError as e:
                raise ConflictScanError(f"Cannot read '{path}': {e}") from e
            if hit:
                found.append(os.path.relpath(path, root).replace(os.sep, "/"))
    return found


def has_conflicts(root: str) -> bool:
    return bool(find_conflicts(root))


def _walk_error(err: OSError) -> None:
    raise ConflictScanError(f"Cannot list '{err.filename}': {err}") from err
