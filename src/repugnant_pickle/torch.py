"""Describe the tensors of a PyTorch ZIP checkpoint without reading their data.

A checkpoint written by ``torch.save`` is a ZIP archive holding a pickled
state dict at ``<prefix>/data.pkl`` and one raw storage blob per storage at
``<prefix>/data/<key>``. The pickle refers to storages through persistent ids
shaped like::

    ("storage", torch.FloatStorage, "0", "cpu", 4096)

and every tensor is a call to ``torch._utils._rebuild_tensor_v2`` with the
storage, its offset, shape, stride and ``requires_grad`` flag. This module
pattern-matches those calls in the decoded value graph and turns them into
:class:`TensorDescriptor` records whose ``absolute_offset`` points straight
into the outer file. Checkpoints must store storage entries uncompressed for
those offsets to be meaningful, which ``torch.save`` always does.
"""

from __future__ import annotations

import contextlib
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .common import (
    METADATA_ENTRY_SUFFIX,
    ORDERED_DICT_REFERENCE,
    REBUILD_PARAMETER_REFERENCE,
    REBUILD_TENSOR_REFERENCE,
    STORAGE_DIRECTORY,
    STORAGE_TAG,
    ContainerCorrupt,
    UnsupportedMetadataShape,
)
from .container import ZipContainer
from .machine import DecoderSettings, PickleMachine
from .ops import iter_ops
from .value import Bool, Build, Global, Int, PersId, Raw, Seq, SequenceType, String, Value

logger = logging.getLogger(__name__)


class TensorType(Enum):
    FLOAT64 = "float64"
    FLOAT32 = "float32"
    FLOAT16 = "float16"
    BFLOAT16 = "bfloat16"
    INT64 = "int64"
    INT32 = "int32"
    INT16 = "int16"
    INT8 = "int8"
    UINT8 = "uint8"
    BOOL = "bool"
    COMPLEX64 = "complex64"
    COMPLEX128 = "complex128"
    UNKNOWN = "unknown"

    @property
    def itemsize(self) -> int:
        """Element width in bytes; ``0`` for :attr:`UNKNOWN`."""

        return _ITEMSIZES[self]

    @classmethod
    def from_storage_name(cls, name: str) -> "TensorType":
        """Map a storage class name such as ``HalfStorage`` to its dtype."""

        base = name[: -len("Storage")] if name.endswith("Storage") else name
        return _STORAGE_ALIASES.get(base.lower(), cls.UNKNOWN)


_ITEMSIZES: Dict[TensorType, int] = {
    TensorType.FLOAT64: 8,
    TensorType.FLOAT32: 4,
    TensorType.FLOAT16: 2,
    TensorType.BFLOAT16: 2,
    TensorType.INT64: 8,
    TensorType.INT32: 4,
    TensorType.INT16: 2,
    TensorType.INT8: 1,
    TensorType.UINT8: 1,
    TensorType.BOOL: 1,
    TensorType.COMPLEX64: 8,
    TensorType.COMPLEX128: 16,
    TensorType.UNKNOWN: 0,
}

_STORAGE_ALIASES: Dict[str, TensorType] = {
    "double": TensorType.FLOAT64,
    "float64": TensorType.FLOAT64,
    "float": TensorType.FLOAT32,
    "float32": TensorType.FLOAT32,
    "half": TensorType.FLOAT16,
    "float16": TensorType.FLOAT16,
    "bfloat16": TensorType.BFLOAT16,
    "long": TensorType.INT64,
    "int64": TensorType.INT64,
    "int": TensorType.INT32,
    "int32": TensorType.INT32,
    "short": TensorType.INT16,
    "int16": TensorType.INT16,
    "char": TensorType.INT8,
    "int8": TensorType.INT8,
    "byte": TensorType.UINT8,
    "uint8": TensorType.UINT8,
    "bool": TensorType.BOOL,
    "complexfloat": TensorType.COMPLEX64,
    "complexdouble": TensorType.COMPLEX128,
}


class OffsetUnit(Enum):
    """How the ``storage_offset`` argument of a rebuild call is counted."""

    ELEMENTS = "elements"
    BYTES = "bytes"


@dataclass
class ResolverSettings:
    offset_unit: OffsetUnit = OffsetUnit.ELEMENTS
    metadata_suffix: str = METADATA_ENTRY_SUFFIX
    decoder: DecoderSettings = field(default_factory=DecoderSettings)


@dataclass(frozen=True)
class StorageKey:
    """Decoded ``("storage", type, key, device, numel)`` persistent id."""

    tensor_type: TensorType
    key: str
    device: str
    numel: int


@dataclass(frozen=True)
class TensorDescriptor:
    """Location and layout of one tensor inside a checkpoint file."""

    name: str
    device: str
    tensor_type: TensorType
    storage: str
    storage_len: int
    storage_offset: int
    absolute_offset: int
    shape: Tuple[int, ...]
    stride: Tuple[int, ...]
    requires_grad: bool

    @property
    def numel(self) -> int:
        return math.prod(self.shape)

    @property
    def span(self) -> int:
        """Number of storage elements covered by the strided view."""

        if any(dim == 0 for dim in self.shape):
            return 0
        return 1 + sum((dim - 1) * step for dim, step in zip(self.shape, self.stride))

    @property
    def nbytes(self) -> int:
        return self.span * self.tensor_type.itemsize

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "device": self.device,
            "dtype": self.tensor_type.value,
            "storage": self.storage,
            "storage_len": self.storage_len,
            "storage_offset": self.storage_offset,
            "absolute_offset": self.absolute_offset,
            "shape": list(self.shape),
            "stride": list(self.stride),
            "requires_grad": self.requires_grad,
        }


def parse_storage_key(key: Value) -> Optional[StorageKey]:
    """Return the storage described by a persistent id, or ``None``."""

    if not isinstance(key, Seq) or key.kind is not SequenceType.TUPLE:
        return None
    if len(key.items) != 5:
        return None
    tag, type_ref, storage_key, device, numel = key.items
    if not (isinstance(tag, String) and tag.value == STORAGE_TAG):
        return None
    if not (isinstance(type_ref, Raw) and type_ref.module == "torch"):
        return None
    if not (isinstance(storage_key, String) and isinstance(device, String)):
        return None
    if not isinstance(numel, Int):
        return None
    return StorageKey(
        tensor_type=TensorType.from_storage_name(type_ref.name),
        key=storage_key.value,
        device=device.value,
        numel=numel.value,
    )


class _StorageRecorder:
    """Persistent-load hook that notes storage keys and returns them unchanged."""

    def __init__(self) -> None:
        self.storages: Dict[str, StorageKey] = {}

    def __call__(self, key: Value) -> Value:
        storage = parse_storage_key(key)
        if storage is None:
            logger.debug("Passing through unrecognised persistent id %r", key)
        else:
            self.storages.setdefault(storage.key, storage)
        return key


def _is_call_to(value: Value, reference: Tuple[str, str]) -> bool:
    return (
        isinstance(value, Global)
        and isinstance(value.callee, Raw)
        and value.callee.matches(reference)
    )


def _pairs(seq: Seq) -> List[Tuple[Value, Value]]:
    try:
        return seq.pairs()
    except ValueError as exc:
        raise UnsupportedMetadataShape(str(exc)) from exc


def _ordered_dict_items(call: Global) -> List[Tuple[Value, Value]]:
    if not call.args:
        raise UnsupportedMetadataShape("OrderedDict call has no arguments")
    items: List[Tuple[Value, Value]] = []
    initial = call.args[0]
    if not isinstance(initial, Seq) or initial.kind is not SequenceType.TUPLE:
        raise UnsupportedMetadataShape("OrderedDict arguments are not a tuple")
    # OrderedDict([(key, value), ...]) as written by older protocols.
    if len(initial.items) == 1 and isinstance(initial.items[0], Seq):
        for pair in initial.items[0].items:
            if isinstance(pair, Seq) and len(pair.items) == 2:
                items.append((pair.items[0], pair.items[1]))
    for batch in call.args[1:]:
        if not isinstance(batch, Seq) or batch.kind is not SequenceType.TUPLE:
            raise UnsupportedMetadataShape("OrderedDict item batch is not a tuple")
        items.extend(_pairs(batch))
    return items


def state_dict_items(root: Value) -> List[Tuple[Value, Value]]:
    """Return the ``(key, value)`` pairs of a decoded state dict root."""

    node = root.target if isinstance(root, Build) else root
    if isinstance(node, Seq) and node.kind is SequenceType.DICT:
        return _pairs(node)
    if _is_call_to(node, ORDERED_DICT_REFERENCE):
        return _ordered_dict_items(node)  # type: ignore[arg-type]
    raise UnsupportedMetadataShape(
        f"Expected an OrderedDict or dict at the metadata root, found {type(node).__name__}"
    )


def _int_tuple(value: Value) -> Optional[Tuple[int, ...]]:
    if not isinstance(value, Seq) or value.kind is not SequenceType.TUPLE:
        return None
    dims: List[int] = []
    for item in value.items:
        if not isinstance(item, Int):
            return None
        dims.append(item.value)
    return tuple(dims)


@dataclass(frozen=True)
class _RebuildCall:
    storage: StorageKey
    storage_offset: int
    shape: Tuple[int, ...]
    stride: Tuple[int, ...]
    requires_grad: bool


def _match_rebuild(value: Value) -> Optional[_RebuildCall]:
    requires_grad: Optional[bool] = None
    if _is_call_to(value, REBUILD_PARAMETER_REFERENCE):
        args = value.args[0] if value.args else None  # type: ignore[attr-defined]
        if not isinstance(args, Seq) or len(args.items) < 2:
            return None
        value, flag = args.items[0], args.items[1]
        if isinstance(flag, Bool):
            requires_grad = flag.value
    if not _is_call_to(value, REBUILD_TENSOR_REFERENCE):
        return None
    call_args = value.args  # type: ignore[attr-defined]
    if len(call_args) != 1:
        return None
    packed = call_args[0]
    if not isinstance(packed, Seq) or packed.kind is not SequenceType.TUPLE:
        return None
    if len(packed.items) < 5:
        return None
    pers, offset, shape_value, stride_value, grad = packed.items[:5]
    if not isinstance(pers, PersId) or not isinstance(offset, Int):
        return None
    if not isinstance(grad, Bool):
        return None
    shape = _int_tuple(shape_value)
    stride = _int_tuple(stride_value)
    if shape is None or stride is None or len(shape) != len(stride):
        return None
    storage = parse_storage_key(pers.key)
    if storage is None:
        return None
    return _RebuildCall(
        storage=storage,
        storage_offset=offset.value,
        shape=shape,
        stride=stride,
        requires_grad=grad.value if requires_grad is None else requires_grad,
    )


class TorchArchive(contextlib.AbstractContextManager["TorchArchive"]):
    """A PyTorch ZIP checkpoint opened for inspection."""

    def __init__(
        self,
        path: Union[str, Path, ZipContainer],
        settings: Optional[ResolverSettings] = None,
    ) -> None:
        self.settings = settings or ResolverSettings()
        if isinstance(path, ZipContainer):
            self._container = path
            self._owns_container = False
        else:
            self._container = ZipContainer(path)
            self._owns_container = True
        self._root: Optional[Value] = None
        self._recorder = _StorageRecorder()
        try:
            self.metadata_entry = self._container.find_entry(self.settings.metadata_suffix)
        except Exception:
            self.close()
            raise
        prefix, _, _ = self.metadata_entry.rpartition("/")
        self.prefix = prefix

    @property
    def container(self) -> ZipContainer:
        return self._container

    @property
    def storages(self) -> Dict[str, StorageKey]:
        self.metadata()
        return dict(self._recorder.storages)

    def close(self) -> None:
        if self._owns_container:
            self._container.close()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def storage_entry(self, key: str) -> str:
        if self.prefix:
            return f"{self.prefix}/{STORAGE_DIRECTORY}/{key}"
        return f"{STORAGE_DIRECTORY}/{key}"

    def metadata(self) -> Value:
        """Decode (once) and return the root value of the metadata pickle."""

        if self._root is None:
            payload = self._container.read_entry(self.metadata_entry)
            logger.debug("Decoding %s (%d bytes)", self.metadata_entry, len(payload))
            machine = PickleMachine(self._recorder, settings=self.settings.decoder)
            self._root = machine.run(iter_ops(payload))
        return self._root

    def _absolute_offset(self, call: _RebuildCall, storage_entry: str) -> int:
        entry = self._container.entry_range(storage_entry)
        if entry.compressed:
            raise ContainerCorrupt(
                f"Storage entry {storage_entry!r} is compressed; its bytes cannot be addressed in place",
                offset=entry.offset,
            )
        if self.settings.offset_unit is OffsetUnit.BYTES:
            return entry.offset + call.storage_offset
        itemsize = call.storage.tensor_type.itemsize
        if itemsize == 0 and call.storage_offset:
            logger.warning(
                "Storage %s has unknown element type; offset %d left unscaled",
                storage_entry,
                call.storage_offset,
            )
            itemsize = 1
        return entry.offset + call.storage_offset * itemsize

    def tensors(self) -> List[TensorDescriptor]:
        """Describe every tensor found in the state dict, in file order."""

        descriptors: List[TensorDescriptor] = []
        for key, value in state_dict_items(self.metadata()):
            if not isinstance(key, String):
                logger.debug("Skipping state dict entry with %s key", type(key).__name__)
                continue
            call = _match_rebuild(value)
            if call is None:
                logger.debug("Skipping non-tensor entry %s", key.value)
                continue
            storage_entry = self.storage_entry(call.storage.key)
            descriptors.append(
                TensorDescriptor(
                    name=key.value,
                    device=call.storage.device,
                    tensor_type=call.storage.tensor_type,
                    storage=storage_entry,
                    storage_len=call.storage.numel,
                    storage_offset=call.storage_offset,
                    absolute_offset=self._absolute_offset(call, storage_entry),
                    shape=call.shape,
                    stride=call.stride,
                    requires_grad=call.requires_grad,
                )
            )
        logger.info("Resolved %d tensors from %s", len(descriptors), self._container.path)
        return descriptors


def resolve_tensors(
    path: Union[str, Path],
    settings: Optional[ResolverSettings] = None,
) -> List[TensorDescriptor]:
    """Open ``path`` and return its tensor descriptors."""

    with TorchArchive(path, settings) as archive:
        return archive.tensors()


def total_bytes(descriptors: Sequence[TensorDescriptor]) -> int:
    return sum(descriptor.nbytes for descriptor in descriptors)


__all__ = [
    "OffsetUnit",
    "ResolverSettings",
    "StorageKey",
    "TensorDescriptor",
    "TensorType",
    "TorchArchive",
    "parse_storage_key",
    "resolve_tensors",
    "state_dict_items",
    "total_bytes",
]
