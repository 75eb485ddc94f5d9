# tests/test_filesystem.py
from pathlib import Path

import pytest

from modelfarm.utils.filesystem import FileSystem


def test_atomic_path_replaces_on_success(tmp_path):
    target = tmp_path / "deep" / "file.bin"
    with FileSystem.atomic_path(target) as tmp:
        assert tmp.name == "file.bin.tmp"
        tmp.write_bytes(b"new")
    assert target.read_bytes() == b"new"
    assert not FileSystem.temp_path(target).exists()


def test_atomic_path_keeps_old_file_on_error(tmp_path):
    target = tmp_path / "file.bin"
    target.write_bytes(b"old")
    with pytest.raises(RuntimeError):
        with FileSystem.atomic_path(target) as tmp:
            tmp.write_bytes(b"half")
            raise RuntimeError("writer crashed")
    assert target.read_bytes() == b"old"
    assert not FileSystem.temp_path(target).exists()


def test_write_all_atomic_rolls_back_temporaries(tmp_path):
    a = tmp_path / "a.bin"
    a.write_bytes(b"old-a")
    missing_dir = tmp_path / "missing" / "b.bin"

    with pytest.raises(OSError):
        FileSystem.write_all_atomic([(a, b"new-a"), (missing_dir, b"new-b")])

    assert a.read_bytes() == b"old-a"
    assert not FileSystem.temp_path(a).exists()


def test_write_all_atomic_removes_half_written_temporary(tmp_path, monkeypatch):
    a, b = tmp_path / "a.bin", tmp_path / "b.bin"
    write_bytes = Path.write_bytes

    def disk_full(self, data):
        if self.name.startswith("b.bin"):
            write_bytes(self, data[:2])
            raise OSError(28, "No space left on device")
        return write_bytes(self, data)

    monkeypatch.setattr(Path, "write_bytes", disk_full)
    with pytest.raises(OSError):
        FileSystem.write_all_atomic([(a, b"new-a"), (b, b"new-b")])

    assert not a.exists() and not b.exists()
    assert list(tmp_path.iterdir()) == []


def test_write_all_atomic(tmp_path):
    files = [(tmp_path / "x", b"1"), (tmp_path / "y", b"2")]
    FileSystem.write_all_atomic(files)
    assert [p.read_bytes() for p, _ in files] == [b"1", b"2"]


def test_clean_temp_files(tmp_path):
    (tmp_path / "job").mkdir()
    (tmp_path / "job" / "model_current.joblib.tmp").write_bytes(b"x")
    (tmp_path / "job" / "checkpoint.json").write_text("{}")
    (tmp_path / "k.parquet.tmp").write_bytes(b"x")

    assert FileSystem.clean_temp_files(tmp_path) == 2
    assert (tmp_path / "job" / "checkpoint.json").exists()
    assert FileSystem.clean_temp_files(tmp_path / "nowhere") == 0


def test_remove_and_list_subdirs(tmp_path):
    for name in ("b", "a"):
        (tmp_path / name).mkdir()
    (tmp_path / "f.txt").write_text("x")
    assert [p.name for p in FileSystem.list_subdirs(tmp_path)] == ["a", "b"]

    FileSystem.remove(tmp_path / "a")
    FileSystem.remove(tmp_path / "f.txt")
    FileSystem.remove(tmp_path / "never-existed")
    assert [p.name for p in Path(tmp_path).iterdir()] == ["b"]
