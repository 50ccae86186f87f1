from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from repugnant_pickle.common import ContainerCorrupt, EntryNotFound
from repugnant_pickle.container import ZipContainer


@pytest.fixture
def archive_path(tmp_path: Path) -> Path:
    path = tmp_path / "bundle.zip"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("model/data.pkl", b"\x80\x02N.", compress_type=zipfile.ZIP_STORED)
        archive.writestr("model/data/0", b"0123456789", compress_type=zipfile.ZIP_STORED)
        archive.writestr("model/notes.txt", b"squeeze me " * 20, compress_type=zipfile.ZIP_DEFLATED)
    return path


def test_entry_range_points_at_stored_bytes(archive_path: Path) -> None:
    raw = archive_path.read_bytes()
    with ZipContainer(archive_path) as container:
        entry = container.entry_range("model/data/0")

        assert entry.length == 10
        assert entry.file_size == 10
        assert not entry.compressed
        assert raw[entry.offset : entry.end] == b"0123456789"
        assert bytes(container.read_range(entry.offset, entry.length)) == b"0123456789"
        assert container.entry_range("model/data/0") is entry


def test_compressed_entries_are_flagged_and_readable(archive_path: Path) -> None:
    with ZipContainer(archive_path) as container:
        entry = container.entry_range("model/notes.txt")
        assert entry.compressed
        assert entry.file_size == len(b"squeeze me " * 20)
        assert container.read_entry("model/notes.txt") == b"squeeze me " * 20


def test_find_entry_matches_suffix(archive_path: Path) -> None:
    with ZipContainer(archive_path) as container:
        assert container.find_entry("data.pkl") == "model/data.pkl"
        assert container.find_entry("model/data.pkl") == "model/data.pkl"
        assert container.names() == ["model/data.pkl", "model/data/0", "model/notes.txt"]


def test_find_entry_requires_path_boundary(archive_path: Path) -> None:
    with ZipContainer(archive_path) as container:
        with pytest.raises(EntryNotFound) as excinfo:
            container.find_entry("a.pkl")
    assert excinfo.value.entry == "a.pkl"


def test_missing_entries(archive_path: Path) -> None:
    with ZipContainer(archive_path) as container:
        with pytest.raises(EntryNotFound):
            container.entry_range("model/data/9")
        with pytest.raises(EntryNotFound):
            container.read_entry("model/data/9")


def test_not_a_zip(tmp_path: Path) -> None:
    path = tmp_path / "plain.pkl"
    path.write_bytes(b"\x80\x02N.")
    with pytest.raises(ContainerCorrupt):
        ZipContainer(path)


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        ZipContainer(tmp_path / "absent.zip")


def test_short_read_is_corrupt(archive_path: Path) -> None:
    size = archive_path.stat().st_size
    with ZipContainer(archive_path) as container:
        with pytest.raises(ContainerCorrupt) as excinfo:
            container.read_range(size - 4, 16)
    assert excinfo.value.offset == size - 4


def test_bad_local_header_signature(archive_path: Path, tmp_path: Path) -> None:
    with zipfile.ZipFile(archive_path) as archive:
        header_offset = archive.getinfo("model/data/0").header_offset

    damaged = bytearray(archive_path.read_bytes())
    damaged[header_offset : header_offset + 4] = b"XXXX"
    broken = tmp_path / "broken.zip"
    broken.write_bytes(bytes(damaged))

    with ZipContainer(broken) as container:
        with pytest.raises(ContainerCorrupt):
            container.entry_range("model/data/0")


def test_closed_container_rejects_reads(archive_path: Path) -> None:
    container = ZipContainer(archive_path)
    container.close()
    container.close()
    with pytest.raises(ValueError):
        container.names()
    with pytest.raises(ValueError):
        container.read_range(0, 1)
