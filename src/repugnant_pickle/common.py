"""Shared constants and the error taxonomy used across the decoder and tools."""

from __future__ import annotations

import os
from typing import Optional, Tuple

MAX_DEPTH = 250
MAX_NODES = 100_000
MAX_PROTOCOL = 5
METADATA_ENTRY_SUFFIX = "data.pkl"
STORAGE_DIRECTORY = "data"
ORDERED_DICT_REFERENCE: Tuple[str, str] = ("collections", "OrderedDict")
REBUILD_TENSOR_REFERENCE: Tuple[str, str] = ("torch._utils", "_rebuild_tensor_v2")
REBUILD_PARAMETER_REFERENCE: Tuple[str, str] = ("torch._utils", "_rebuild_parameter")
STORAGE_TAG = "storage"
VERBOSE_ENV_VAR = "REPUGNANT_PICKLE_VERBOSE"


def env_verbose() -> bool:
    """Return whether $REPUGNANT_PICKLE_VERBOSE asks the CLIs for INFO logging."""

    env_value = os.environ.get(VERBOSE_ENV_VAR)
    if env_value is None:
        return False
    return env_value.lower() not in {"", "0", "false", "no"}


class PickleError(ValueError):
    """Base class for every failure reported by :mod:`repugnant_pickle`."""

    def __init__(
        self,
        message: str,
        *,
        offset: Optional[int] = None,
        opcode: Optional[str] = None,
    ) -> None:
        self.message = message
        self.offset = offset
        self.opcode = opcode
        super().__init__(self._render())

    def _render(self) -> str:
        context = []
        if self.opcode is not None:
            context.append(f"opcode {self.opcode}")
        if self.offset is not None:
            context.append(f"offset {self.offset}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class DecodeError(PickleError):
    """Raised when a pickle byte stream is structurally invalid."""


class TruncatedInput(DecodeError):
    """Raised when the stream ends before an operand or the STOP opcode."""


class UnknownOpcode(DecodeError):
    """Raised for a tag byte that does not name a known opcode."""


class MissingMemoEntry(DecodeError):
    """Raised when a memo lookup names an id that was never bound."""


class StackUnderflow(DecodeError):
    """Raised when an opcode needs more operands than the stack holds."""


class MalformedStream(DecodeError):
    """Raised when operands have the wrong shape or the final stack is wrong."""


class ContainerError(PickleError):
    """Raised when the outer ZIP container cannot be navigated."""


class EntryNotFound(ContainerError):
    """Raised when a named entry does not exist in the container."""

    def __init__(self, entry: str, message: Optional[str] = None) -> None:
        self.entry = entry
        super().__init__(message or f"Entry {entry!r} not found in container")


class ContainerCorrupt(ContainerError):
    """Raised when the ZIP structures of the container are unreadable."""


class UnsupportedMetadataShape(PickleError):
    """Raised when the metadata root is not a recognised state dict shape."""


__all__ = [
    "ContainerCorrupt",
    "ContainerError",
    "DecodeError",
    "EntryNotFound",
    "MAX_DEPTH",
    "MAX_NODES",
    "MAX_PROTOCOL",
    "METADATA_ENTRY_SUFFIX",
    "MalformedStream",
    "MissingMemoEntry",
    "ORDERED_DICT_REFERENCE",
    "PickleError",
    "REBUILD_PARAMETER_REFERENCE",
    "REBUILD_TENSOR_REFERENCE",
    "STORAGE_DIRECTORY",
    "STORAGE_TAG",
    "StackUnderflow",
    "TruncatedInput",
    "UnknownOpcode",
    "UnsupportedMetadataShape",
    "VERBOSE_ENV_VAR",
    "env_verbose",
]
