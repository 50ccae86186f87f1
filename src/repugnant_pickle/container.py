"""Locate named entries of a ZIP container as byte ranges of the outer file."""

from __future__ import annotations

import contextlib
import logging
import struct
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Union

from .common import ContainerCorrupt, EntryNotFound

logger = logging.getLogger(__name__)

LOCAL_HEADER_STRUCT = struct.Struct("<I H H H H H I I I H H")
LOCAL_HEADER_MAGIC = 0x04034B50


@dataclass(frozen=True)
class EntryRange:
    """Where the bytes of one ZIP entry live inside the outer file."""

    name: str
    offset: int
    length: int
    file_size: int
    compressed: bool

    @property
    def end(self) -> int:
        return self.offset + self.length


class ZipContainer(contextlib.AbstractContextManager["ZipContainer"]):
    """Read-only view over a ZIP file that can hand out absolute byte ranges."""

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._handle: Optional[BinaryIO] = None
        self._zip: Optional[zipfile.ZipFile] = None
        self._ranges: Dict[str, EntryRange] = {}
        try:
            self._handle = self._path.open("rb")
            self._zip = zipfile.ZipFile(self._handle)
        except zipfile.BadZipFile as exc:
            self.close()
            raise ContainerCorrupt(f"{self._path} is not a readable ZIP archive: {exc}") from exc
        except OSError:
            self.close()
            raise
        logger.debug("Opened container %s with %d entries", self._path, len(self._zip.infolist()))

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _archive(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise ValueError(f"Container {self._path} is closed")
        return self._zip

    def names(self) -> List[str]:
        return self._archive().namelist()

    def find_entry(self, suffix: str) -> str:
        """Return the first entry whose name is ``suffix`` or ends in ``/suffix``."""

        for name in self.names():
            if name == suffix or name.endswith("/" + suffix):
                return name
        raise EntryNotFound(suffix, f"No entry named {suffix!r} in {self._path}")

    def _info(self, name: str) -> zipfile.ZipInfo:
        try:
            return self._archive().getinfo(name)
        except KeyError:
            raise EntryNotFound(name) from None

    def entry_range(self, name: str) -> EntryRange:
        """Return the absolute data range of ``name`` within the outer file."""

        cached = self._ranges.get(name)
        if cached is not None:
            return cached
        info = self._info(name)
        header = bytes(self.read_range(info.header_offset, LOCAL_HEADER_STRUCT.size))
        (
            magic,
            _version,
            _flags,
            _method,
            _time,
            _date,
            _crc,
            _csize,
            _usize,
            name_len,
            extra_len,
        ) = LOCAL_HEADER_STRUCT.unpack(header)
        if magic != LOCAL_HEADER_MAGIC:
            raise ContainerCorrupt(
                f"Bad local header signature 0x{magic:08x} for entry {name!r}",
                offset=info.header_offset,
            )
        entry = EntryRange(
            name=name,
            offset=info.header_offset + LOCAL_HEADER_STRUCT.size + name_len + extra_len,
            length=info.compress_size,
            file_size=info.file_size,
            compressed=info.compress_type != zipfile.ZIP_STORED,
        )
        self._ranges[name] = entry
        return entry

    def read_range(self, offset: int, length: int) -> memoryview:
        """Read ``length`` bytes of the outer file starting at ``offset``."""

        if self._handle is None:
            raise ValueError(f"Container {self._path} is closed")
        if offset < 0 or length < 0:
            raise ValueError("Offsets and lengths must be non-negative")
        self._handle.seek(offset)
        buffer = bytearray(length)
        view = memoryview(buffer)
        read = self._handle.readinto(view)
        if read != length:
            raise ContainerCorrupt(
                f"Short read: wanted {length} bytes, got {read or 0}", offset=offset
            )
        return view

    def read_entry(self, name: str) -> bytes:
        """Return the uncompressed contents of ``name`` (stored or deflated)."""

        info = self._info(name)
        try:
            return self._archive().read(info)
        except (zipfile.BadZipFile, NotImplementedError, zlib.error) as exc:
            raise ContainerCorrupt(f"Unable to read entry {name!r}: {exc}") from exc


__all__ = ["EntryRange", "LOCAL_HEADER_MAGIC", "LOCAL_HEADER_STRUCT", "ZipContainer"]
