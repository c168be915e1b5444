import os
from pathlib import Path

import pytest

from ojekkampus.service.fs import PathTraversalError, remove_empty_parents, safe_join


def test_safe_join_accepts_child_path(tmp_path: Path):
    base = tmp_path.resolve()
    result = safe_join(base, "drivers/1/ktp/photo.png")

    assert base in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, os.path.join("drivers", "..", "..", "escape.txt"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, str(Path("/etc/passwd")))


def test_remove_empty_parents_stops_at_boundary(tmp_path: Path):
    stop = tmp_path / "drivers"
    leaf_dir = stop / "7" / "ktp"
    leaf_dir.mkdir(parents=True)
    target = leaf_dir / "gone.png"

    remove_empty_parents(target, stop)

    assert stop.is_dir()
    assert not (stop / "7").exists()


def test_remove_empty_parents_keeps_non_empty(tmp_path: Path):
    stop = tmp_path / "drivers"
    (stop / "7" / "ktp").mkdir(parents=True)
    (stop / "7" / "sim").mkdir(parents=True)
    (stop / "7" / "sim" / "keep.png").write_bytes(b"x")

    remove_empty_parents(stop / "7" / "ktp" / "gone.png", stop)

    assert not (stop / "7" / "ktp").exists()
    assert (stop / "7" / "sim" / "keep.png").is_file()
