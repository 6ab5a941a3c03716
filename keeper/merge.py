"""Three-way merge of the config trees.

The public template is merged into the private working tree using the
baseline snapshot as common ancestor: lines that changed between baseline and
public are pulled in unless private changed them too, in which case the
region is wrapped in diff3 style conflict markers::

    <<<<<<< public
    ...template lines...
    ||||||| baseline
    ...ancestor lines...
    =======
    ...private lines...
    >>>>>>> private
"""
from __future__ import annotations

import os
import secrets
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum
from typing import Iterator

from .errors import ConflictScanError, MergeIntegrityError
from .journal import EventJournal


OPEN_MARKER = b"<<<<<<<"
BASE_MARKER = b"|||||||"
SEPARATOR = b"======="
CLOSE_MARKER = b">>>>>>>"

EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


class MergeOutcome(Enum):
    CLEAN = "clean"
    CONFLICT = "conflict"


@dataclass
class MergeResult:
    outcomes: dict[str, MergeOutcome] = field(default_factory=dict)
    binary_conflicts: list[str] = field(default_factory=list)

    @property
    def conflicts(self) -> list[str]:
        return sorted(k for k, v in self.outcomes.items() if v is MergeOutcome.CONFLICT)

    @property
    def clean(self) -> bool:
        return not self.conflicts


# -- line level -------------------------------------------------------------


def _matches(a: list[bytes], b: list[bytes]) -> list[tuple[int, int, int]]:
    return [tuple(m) for m in SequenceMatcher(None, a, b, autojunk=False).get_matching_blocks()]


def _sync_regions(base: list[bytes], mine: list[bytes], theirs: list[bytes]) -> list[tuple[int, int, int, int, int, int]]:
    """Regions where base, mine and theirs all agree.

    Each entry is (base_start, base_end, mine_start, mine_end, theirs_start, theirs_end).
    The last entry is always the empty region at the end of all three sequences.
    """
    mine_m = _matches(base, mine)
    theirs_m = _matches(base, theirs)
    regions = []
    i = j = 0
    while i < len(mine_m) and j < len(theirs_m):
        mbase, mstart, mlen = mine_m[i]
        tbase, tstart, tlen = theirs_m[j]
        lo = max(mbase, tbase)
        hi = min(mbase + mlen, tbase + tlen)
        if lo < hi:
            m_sub = mstart + (lo - mbase)
            t_sub = tstart + (lo - tbase)
            regions.append((lo, hi, m_sub, m_sub + hi - lo, t_sub, t_sub + hi - lo))
        if mbase + mlen < tbase + tlen:
            i += 1
        else:
            j += 1
    regions.append((len(base), len(base), len(mine), len(mine), len(theirs), len(theirs)))
    return regions


def merge_regions(base: list[bytes], mine: list[bytes], theirs: list[bytes]) -> Iterator[tuple]:
    """Yield ('unchanged'|'same'|'mine'|'theirs', start, end) or a 'conflict' 7-tuple.

    Index ranges of 'unchanged' refer to base, 'same' and 'mine' to mine,
    'theirs' to theirs. Conflicts carry (base, mine, theirs) ranges.
    """
    iz = im = it = 0
    for zstart, zend, mstart, mend, tstart, tend in _sync_regions(base, mine, theirs):
        if mstart > im or tstart > it:
            mine_is_base = mine[im:mstart] == base[iz:zstart]
            theirs_is_base = theirs[it:tstart] == base[iz:zstart]
            if mine[im:mstart] == theirs[it:tstart]:
                yield ("same", im, mstart)
            elif theirs_is_base:
                yield ("mine", im, mstart)
            elif mine_is_base:
                yield ("theirs", it, tstart)
            else:
                yield ("conflict", iz, zstart, im, mstart, it, tstart)
        if zend > zstart:
            yield ("unchanged", zstart, zend)
        iz, im, it = zend, mend, tend


def _terminated(lines: list[bytes]) -> list[bytes]:
    if lines and not lines[-1].endswith((b"\n", b"\r")):
        return lines[:-1] + [lines[-1] + b"\n"]
    return lines


def merge_lines(
    base: list[bytes],
    mine: list[bytes],
    theirs: list[bytes],
    labels: tuple[str, str, str] = ("public", "baseline", "private"),
) -> tuple[list[bytes], bool]:
    """Merge line lists (with line endings kept). Returns (lines, had_conflict)."""
    mine_label, base_label, theirs_label = (x.encode("utf-8") for x in labels)
    out: list[bytes] = []
    conflict = False
    for region in merge_regions(base, mine, theirs):
        kind = region[0]
        if kind == "unchanged":
            out.extend(base[region[1]:region[2]])
        elif kind in ("same", "mine"):
            out.extend(mine[region[1]:region[2]])
        elif kind == "theirs":
            out.extend(theirs[region[1]:region[2]])
        else:
            conflict = True
            _, z0, z1, m0, m1, t0, t1 = region
            out[:] = _terminated(out)
            out.append(OPEN_MARKER + b" " + mine_label + b"\n")
            out.extend(_terminated(mine[m0:m1]))
            out.append(BASE_MARKER + b" " + base_label + b"\n")
            out.extend(_terminated(base[z0:z1]))
            out.append(SEPARATOR + b"\n")
            out.extend(_terminated(theirs[t0:t1]))
            out.append(CLOSE_MARKER + b" " + theirs_label + b"\n")
    return out, conflict


def is_binary(data: bytes) -> bool:
    return b"\0" in data[:8000]


def merge_file(base: bytes, public: bytes, private: bytes) -> tuple[bytes, MergeOutcome]:
    """Merge one file's contents. Binary conflicts keep the private bytes."""
    if public == base:
        return private, MergeOutcome.CLEAN
    if private == base or private == public:
        return public, MergeOutcome.CLEAN
    if is_binary(base) or is_binary(public) or is_binary(private):
        return private, MergeOutcome.CONFLICT
    lines, conflict = merge_lines(base.splitlines(True), public.splitlines(True), private.splitlines(True))
    return b"".join(lines), MergeOutcome.CONFLICT if conflict else MergeOutcome.CLEAN


# -- tree level -------------------------------------------------------------


def tree_files(root: str) -> set[str]:
    """Relative (posix) paths of the regular files under root."""
    out: set[str] = set()
    for dirpath, _, filenames in os.walk(root):
        for fname in filenames:
            path = os.path.join(dirpath, fname)
            if stat.S_ISREG(os.lstat(path).st_mode):
                out.add(os.path.relpath(path, root).replace(os.sep, "/"))
    return out


def special_files(root: str) -> list[str]:
    """Entries that are neither regular files, directories nor symlinks (devices, sockets, FIFOs)."""
    out = []
    for dirpath, _, filenames in os.walk(root):
        for fname in filenames:
            path = os.path.join(dirpath, fname)
            mode = os.lstat(path).st_mode
            if not (stat.S_ISREG(mode) or stat.S_ISLNK(mode)):
                out.append(os.path.relpath(path, root).replace(os.sep, "/"))
    return sorted(out)


def _read(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _swap_dir(new: str, target: str) -> None:
    """Put directory ``new`` in place of ``target``."""
    old = f"{target}.old-{secrets.token_hex(3)}"
    os.rename(target, old)
    os.rename(new, target)
    shutil.rmtree(old)


def copy_tree(src: str, dst: str) -> None:
    """Copy a tree keeping contents and permission bits (a fresh snapshot)."""
    shutil.copytree(src, dst, symlinks=True, copy_function=shutil.copy2)


def carry_tree_shape(src: str, dst: str) -> None:
    """Recreate the directories and symlinks of src inside dst, then copy directory modes.

    Regular files are left alone. Modes are applied deepest first so a
    read-only parent does not block its children.
    """
    dirs = []
    for dirpath, dirnames, filenames in os.walk(src):
        target = os.path.normpath(os.path.join(dst, os.path.relpath(dirpath, src)))
        os.makedirs(target, exist_ok=True)
        dirs.append((dirpath, target))
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            if os.path.islink(path):
                os.symlink(os.readlink(path), os.path.join(target, name))
    for src_dir, dst_dir in reversed(dirs):
        shutil.copystat(src_dir, dst_dir, follow_symlinks=False)


def pending_binary_conflicts(baseline: str, public: str, private: str) -> list[str]:
    """Binary files changed both upstream and locally that no merge has settled yet.

    A binary conflict keeps the private bytes and leaves that file's baseline
    behind public, so the conflict stays visible until private is changed.
    """
    out = []
    for name in sorted(tree_files(private)):
        rel = name.replace("/", os.sep)
        base_path = os.path.join(baseline, rel)
        pub_path = os.path.join(public, rel)
        if not (os.path.isfile(base_path) and os.path.isfile(pub_path)):
            continue
        try:
            base, pub, priv = _read(base_path), _read(pub_path), _read(os.path.join(private, rel))
        except OSError as e:
            raise ConflictScanError(f"Cannot read {name}: {e}") from e
        if pub == base or priv == base or priv == pub:
            continue
        if is_binary(base) or is_binary(pub) or is_binary(priv):
            out.append(name)
    return out


class ThreeWayMerger:
    """Merge public into private with baseline as ancestor, then refresh baseline."""

    def __init__(self, baseline: str, public: str, private: str, journal: EventJournal | None = None):
        self.baseline = baseline
        self.public = public
        self.private = private
        self.journal = journal

    def _log(self, level: str, message: str) -> None:
        if self.journal is not None:
            self.journal.record(level, message)

    def check_filesets(self) -> list[str]:
        trees = {
            "baseline": tree_files(self.baseline),
            "public": tree_files(self.public),
            "private": tree_files(self.private),
        }
        union = set().union(*trees.values())
        missing = {name: sorted(union - files) for name, files in trees.items() if union - files}
        if missing:
            detail = "; ".join(f"{name} lacks {', '.join(files)}" for name, files in missing.items())
            raise MergeIntegrityError(
                f"Config trees hold different files ({detail}). Add or remove them by hand so the trees match.",
                missing=missing,
            )
        special = special_files(self.private)
        if special:
            raise MergeIntegrityError(
                f"Private tree holds special files that cannot be carried through a merge: {', '.join(special)}"
            )
        return sorted(union)

    def merge_into(self, dest: str, names: list[str]) -> MergeResult:
        result = MergeResult()
        for name in names:
            rel = name.replace("/", os.sep)
            pub_path = os.path.join(self.public, rel)
            priv_path = os.path.join(self.private, rel)
            base, pub, priv = _read(os.path.join(self.baseline, rel)), _read(pub_path), _read(priv_path)
            data, outcome = merge_file(base, pub, priv)
            out_path = os.path.join(dest, rel)
            os.makedirs(os.path.dirname(out_path), exist_ok=True)
            with open(out_path, "wb") as fh:
                fh.write(data)
            # The template governs the executable bits.
            priv_mode = stat.S_IMODE(os.stat(priv_path).st_mode)
            pub_mode = stat.S_IMODE(os.stat(pub_path).st_mode)
            os.chmod(out_path, (priv_mode & ~EXEC_BITS) | (pub_mode & EXEC_BITS))
            result.outcomes[name] = outcome
            if outcome is MergeOutcome.CONFLICT:
                if is_binary(base) or is_binary(pub) or is_binary(priv):
                    result.binary_conflicts.append(name)
                    self._log("WARN", f"Binary merge conflict in {name}; kept private bytes")
                else:
                    self._log("WARN", f"Merge conflict in {name}")
        return result

    def merge(self) -> MergeResult:
        names = self.check_filesets()

        staging = tempfile.mkdtemp(prefix=".merge-", dir=os.path.dirname(os.path.abspath(self.private)))
        try:
            result = self.merge_into(staging, names)
            carry_tree_shape(self.private, staging)
            staged = tree_files(staging)
            if staged != set(names):
                raise MergeIntegrityError(
                    f"Merged tree differs from the input file set: {sorted(staged ^ set(names))}"
                )
            _swap_dir(staging, self.private)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        # private is already updated here; a failure below only needs the merge run again.
        self.refresh_baseline(keep=result.binary_conflicts)

        if result.clean:
            self._log("INFO", f"Merged {len(names)} files cleanly")
        else:
            self._log("WARN", f"Merged {len(names)} files, {len(result.conflicts)} with conflicts")
        return result

    def refresh_baseline(self, keep: list[str] | tuple[str, ...] = ()) -> None:
        """Replace baseline with a copy of public, except the ``keep`` files, which stay as they are."""
        parent = os.path.dirname(os.path.abspath(self.baseline))
        staging = os.path.join(parent, f".baseline-new-{secrets.token_hex(3)}")
        try:
            copy_tree(self.public, staging)
            for name in keep:
                rel = name.replace("/", os.sep)
                shutil.copy2(os.path.join(self.baseline, rel), os.path.join(staging, rel))
            if os.path.isdir(self.baseline):
                _swap_dir(staging, self.baseline)
            else:
                os.rename(staging, self.baseline)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
