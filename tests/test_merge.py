import os
import stat

import pytest

from keeper.conflicts import has_conflicts
from keeper.errors import MergeIntegrityError
from keeper.merge import MergeOutcome, ThreeWayMerger, merge_file, merge_lines, tree_files


def _lines(text: str) -> list[bytes]:
    return text.encode().splitlines(True)


def _write(root, files: dict[str, str]) -> None:
    for name, text in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)


def _trees(tmp_path, baseline, public, private):
    dirs = []
    for name, files in (("baseline", baseline), ("public", public), ("private", private)):
        d = tmp_path / name
        d.mkdir()
        _write(d, files)
        dirs.append(d)
    return dirs


def _read_tree(root) -> dict[str, str]:
    return {name: (root / name).read_text() for name in sorted(tree_files(str(root)))}


def test_upstream_change_is_pulled_into_untouched_region():
    base = _lines("a\nb\nc\nd\n")
    public = _lines("a\nB\nc\nd\n")
    private = _lines("a\nb\nc\nD-local\n")
    out, conflict = merge_lines(base, public, private)
    assert not conflict
    assert b"".join(out) == b"a\nB\nc\nD-local\n"


def test_same_change_on_both_sides_is_clean():
    out, conflict = merge_lines(_lines("x\n"), _lines("y\n"), _lines("y\n"))
    assert not conflict
    assert out == [b"y\n"]


def test_conflicting_change_gets_diff3_markers():
    out, conflict = merge_lines(_lines("a\nb\nc\n"), _lines("a\nupstream\nc\n"), _lines("a\nlocal\nc\n"))
    assert conflict
    assert b"".join(out) == (
        b"a\n"
        b"<<<<<<< public\n"
        b"upstream\n"
        b"||||||| baseline\n"
        b"b\n"
        b"=======\n"
        b"local\n"
        b">>>>>>> private\n"
        b"c\n"
    )


def test_deletion_upstream_is_applied():
    out, conflict = merge_lines(_lines("a\nold\nb\n"), _lines("a\nb\n"), _lines("a\nold\nb\nextra\n"))
    assert not conflict
    assert b"".join(out) == b"a\nb\nextra\n"


def test_conflict_at_end_without_trailing_newline():
    out, conflict = merge_lines(_lines("a\nb"), _lines("a\nc"), _lines("a\nd"))
    assert conflict
    text = b"".join(out)
    assert b"\nc\n||||||| baseline\nb\n=======\nd\n>>>>>>> private\n" in text


def test_merge_file_fast_paths():
    assert merge_file(b"same", b"same", b"mine") == (b"mine", MergeOutcome.CLEAN)
    assert merge_file(b"old", b"new", b"old") == (b"new", MergeOutcome.CLEAN)


def test_binary_conflict_keeps_private_bytes():
    data, outcome = merge_file(b"\0base", b"\0public", b"\0private")
    assert data == b"\0private"
    assert outcome is MergeOutcome.CONFLICT


def test_identity_when_template_unchanged(tmp_path):
    files = {"a.conf": "one\n", "sub/b.conf": "two\n"}
    private = {"a.conf": "one\nlocal edit\n", "sub/b.conf": "changed\n"}
    baseline, public, priv = _trees(tmp_path, files, files, private)

    result = ThreeWayMerger(str(baseline), str(public), str(priv)).merge()

    assert result.clean
    assert _read_tree(priv) == private
    assert _read_tree(baseline) == files


def test_merge_converges(tmp_path):
    baseline, public, priv = _trees(
        tmp_path,
        {"a.conf": "x = 1\n[section]\ny = 2\n"},
        {"a.conf": "x = 1\n[section]\ny = 3\n"},
        {"a.conf": "x = 10\n[section]\ny = 2\n"},
    )
    merger = ThreeWayMerger(str(baseline), str(public), str(priv))

    first = merger.merge()
    assert first.clean
    assert (priv / "a.conf").read_text() == "x = 10\n[section]\ny = 3\n"
    assert _read_tree(baseline) == _read_tree(public)

    second = merger.merge()
    assert second.clean
    assert (priv / "a.conf").read_text() == "x = 10\n[section]\ny = 3\n"
    assert _read_tree(baseline) == _read_tree(public)


def test_one_conflict_does_not_abort_tree(tmp_path):
    baseline, public, priv = _trees(
        tmp_path,
        {"a": "1\n", "b": "k = v\n", "c": "3\n"},
        {"a": "1\nnew\n", "b": "k = upstream\n", "c": "3\n"},
        {"a": "1\n", "b": "k = local\n", "c": "3 local\n"},
    )

    result = ThreeWayMerger(str(baseline), str(public), str(priv)).merge()

    assert result.conflicts == ["b"]
    assert set(result.outcomes) == {"a", "b", "c"}
    assert (priv / "a").read_text() == "1\nnew\n"
    assert (priv / "c").read_text() == "3 local\n"
    assert "=======\n" in (priv / "b").read_text()
    assert has_conflicts(str(priv))


def test_mismatched_filesets_raise_and_touch_nothing(tmp_path):
    baseline, public, priv = _trees(
        tmp_path,
        {"a": "1\n"},
        {"a": "2\n", "new": "added upstream\n"},
        {"a": "local\n"},
    )

    with pytest.raises(MergeIntegrityError) as exc:
        ThreeWayMerger(str(baseline), str(public), str(priv)).merge()

    assert exc.value.missing == {"baseline": ["new"], "private": ["new"]}
    assert _read_tree(priv) == {"a": "local\n"}
    assert _read_tree(baseline) == {"a": "1\n"}
    assert sorted(os.listdir(tmp_path)) == ["baseline", "private", "public"]


def test_executable_bit_follows_template(tmp_path):
    baseline, public, priv = _trees(tmp_path, {"run.sh": "echo\n"}, {"run.sh": "echo hi\n"}, {"run.sh": "echo\n"})
    os.chmod(public / "run.sh", 0o755)
    os.chmod(priv / "run.sh", 0o644)

    ThreeWayMerger(str(baseline), str(public), str(priv)).merge()

    assert os.stat(priv / "run.sh").st_mode & stat.S_IXUSR
    assert stat.S_IMODE(os.stat(baseline / "run.sh").st_mode) == 0o755


def test_symlinks_and_empty_dirs_in_private_survive(tmp_path):
    files = {"a.conf": "one\n"}
    baseline, public, priv = _trees(tmp_path, files, {"a.conf": "one\ntwo\n"}, files)
    os.symlink("a.conf", priv / "link.conf")
    (priv / "logs").mkdir()
    (priv / "cache" / "tmp").mkdir(parents=True)

    result = ThreeWayMerger(str(baseline), str(public), str(priv)).merge()

    assert result.clean
    assert (priv / "a.conf").read_text() == "one\ntwo\n"
    assert os.path.islink(priv / "link.conf")
    assert os.readlink(priv / "link.conf") == "a.conf"
    assert (priv / "logs").is_dir()
    assert (priv / "cache" / "tmp").is_dir()


def test_directory_modes_survive(tmp_path):
    files = {"a.conf": "one\n", "sub/b.conf": "two\n"}
    baseline, public, priv = _trees(tmp_path, files, {"a.conf": "one\n", "sub/b.conf": "three\n"}, files)
    os.chmod(priv, 0o755)
    os.chmod(priv / "sub", 0o750)

    ThreeWayMerger(str(baseline), str(public), str(priv)).merge()

    assert stat.S_IMODE(os.stat(priv).st_mode) == 0o755
    assert stat.S_IMODE(os.stat(priv / "sub").st_mode) == 0o750
    assert (priv / "sub" / "b.conf").read_text() == "three\n"


def test_special_file_in_private_is_refused(tmp_path):
    files = {"a.conf": "one\n"}
    baseline, public, priv = _trees(tmp_path, files, files, files)
    os.mkfifo(priv / "pipe")

    with pytest.raises(MergeIntegrityError):
        ThreeWayMerger(str(baseline), str(public), str(priv)).merge()
    assert stat.S_ISFIFO(os.lstat(priv / "pipe").st_mode)


def test_failed_baseline_refresh_leaves_merged_private_and_retry_recovers(tmp_path, monkeypatch):
    old = {"a.conf": "x = 1\n[section]\ny = 2\n"}
    baseline, public, priv = _trees(
        tmp_path,
        old,
        {"a.conf": "x = 1\n[section]\ny = 3\n"},
        {"a.conf": "x = 10\n[section]\ny = 2\n"},
    )
    merger = ThreeWayMerger(str(baseline), str(public), str(priv))

    def broken(self, keep=()):
        raise OSError("disk full")

    monkeypatch.setattr(ThreeWayMerger, "refresh_baseline", broken)
    with pytest.raises(OSError):
        merger.merge()

    assert (priv / "a.conf").read_text() == "x = 10\n[section]\ny = 3\n"
    assert _read_tree(baseline) == old
    assert sorted(os.listdir(tmp_path)) == ["baseline", "private", "public"]

    monkeypatch.undo()
    result = merger.merge()
    assert result.clean
    assert (priv / "a.conf").read_text() == "x = 10\n[section]\ny = 3\n"
    assert _read_tree(baseline) == _read_tree(public)


def test_binary_conflict_keeps_baseline_so_it_is_not_lost(tmp_path):
    baseline, public, priv = _trees(tmp_path, {"a.conf": "one\n"}, {"a.conf": "two\n"}, {"a.conf": "one\n"})
    (baseline / "logo.bin").write_bytes(b"\0base")
    (public / "logo.bin").write_bytes(b"\0upstream")
    (priv / "logo.bin").write_bytes(b"\0local")
    merger = ThreeWayMerger(str(baseline), str(public), str(priv))

    result = merger.merge()

    assert result.conflicts == ["logo.bin"]
    assert result.binary_conflicts == ["logo.bin"]
    assert (priv / "logo.bin").read_bytes() == b"\0local"
    assert (baseline / "logo.bin").read_bytes() == b"\0base"
    assert (baseline / "a.conf").read_text() == "two\n"

    # still reported on the next merge
    assert merger.merge().binary_conflicts == ["logo.bin"]

    (priv / "logo.bin").write_bytes(b"\0upstream")
    assert merger.merge().clean
    assert (baseline / "logo.bin").read_bytes() == b"\0upstream"
