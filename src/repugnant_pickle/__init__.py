"""Decode pickles into inert value graphs and locate tensors in PyTorch checkpoints."""

from __future__ import annotations

import importlib
from types import ModuleType
from typing import TYPE_CHECKING

from .common import (
    ContainerCorrupt,
    ContainerError,
    DecodeError,
    EntryNotFound,
    MalformedStream,
    MissingMemoEntry,
    PickleError,
    StackUnderflow,
    TruncatedInput,
    UnknownOpcode,
    UnsupportedMetadataShape,
)
from .container import ZipContainer
from .machine import DecoderSettings, PickleMachine, evaluate, load, loads
from .ops import Opcode, PickleOp, iter_ops, parse_ops
from .torch import (
    OffsetUnit,
    ResolverSettings,
    TensorDescriptor,
    TensorType,
    TorchArchive,
    resolve_tensors,
)
from .value import (
    Bool,
    Build,
    Bytes,
    Float,
    Global,
    Int,
    NoneValue,
    PersId,
    Raw,
    Seq,
    SequenceType,
    String,
    Truncated,
    Value,
    format_value,
    to_builtin,
)

_LAZY_MODULES = ("store", "tools")

__all__ = [
    "Bool",
    "Build",
    "Bytes",
    "ContainerCorrupt",
    "ContainerError",
    "DecodeError",
    "DecoderSettings",
    "EntryNotFound",
    "Float",
    "Global",
    "Int",
    "MalformedStream",
    "MissingMemoEntry",
    "NoneValue",
    "OffsetUnit",
    "Opcode",
    "PersId",
    "PickleError",
    "PickleMachine",
    "PickleOp",
    "Raw",
    "ResolverSettings",
    "Seq",
    "SequenceType",
    "StackUnderflow",
    "String",
    "TensorDescriptor",
    "TensorType",
    "TorchArchive",
    "Truncated",
    "TruncatedInput",
    "UnknownOpcode",
    "UnsupportedMetadataShape",
    "Value",
    "ZipContainer",
    "evaluate",
    "format_value",
    "iter_ops",
    "load",
    "loads",
    "parse_ops",
    "resolve_tensors",
    "to_builtin",
]


def __getattr__(name: str) -> ModuleType:
    """Import the numpy-backed helpers only when first used."""

    if name in _LAZY_MODULES:
        module = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


if TYPE_CHECKING:  # pragma: no cover - imported for static analyzers
    from . import store, tools  # noqa: F401
