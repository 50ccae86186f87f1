"""Lazy numpy access to checkpoint tensors and safetensors export."""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as _np

from .common import ContainerCorrupt
from .container import ZipContainer
from .torch import ResolverSettings, TensorDescriptor, TensorType, TorchArchive

logger = logging.getLogger(__name__)

_MISSING = object()
_MEMORY_BUDGET_OVERHEAD = 512 * 1024 * 1024

_NUMPY_DTYPES: Dict[TensorType, type] = {
    TensorType.FLOAT64: _np.float64,
    TensorType.FLOAT32: _np.float32,
    TensorType.FLOAT16: _np.float16,
    # bfloat16 has no numpy dtype; its raw bits are read as uint16.
    TensorType.BFLOAT16: _np.uint16,
    TensorType.INT64: _np.int64,
    TensorType.INT32: _np.int32,
    TensorType.INT16: _np.int16,
    TensorType.INT8: _np.int8,
    TensorType.UINT8: _np.uint8,
    TensorType.BOOL: _np.bool_,
    TensorType.COMPLEX64: _np.complex64,
    TensorType.COMPLEX128: _np.complex128,
}

Source = Union[str, Path, ZipContainer, TorchArchive]


def numpy_dtype(tensor_type: TensorType) -> _np.dtype:
    """Return the little-endian numpy dtype used to view ``tensor_type`` storages."""

    np_type = _NUMPY_DTYPES.get(tensor_type)
    if np_type is None:
        raise TypeError(f"Unsupported tensor type: {tensor_type.value}")
    return _np.dtype(np_type).newbyteorder("<")


def bfloat16_to_float32(raw: _np.ndarray) -> _np.ndarray:
    """Widen raw bfloat16 bit patterns (``uint16``) to float32 values."""

    widened = _np.ascontiguousarray(raw).astype(_np.uint32)
    widened <<= 16
    return widened.view(_np.float32).reshape(raw.shape)


def _source_path(source: Source) -> Path:
    if isinstance(source, TorchArchive):
        return source.container.path
    if isinstance(source, ZipContainer):
        return source.path
    return Path(source)


def load_tensor(
    source: Source,
    descriptor: TensorDescriptor,
    *,
    widen_bfloat16: bool = True,
) -> _np.ndarray:
    """Map ``descriptor``'s bytes from ``source`` into a read-only numpy array.

    Non-bfloat16 tensors are returned as strided views over a ``numpy.memmap``
    so nothing is copied until the caller touches the data.
    """

    path = _source_path(source)
    dtype = numpy_dtype(descriptor.tensor_type)
    span = descriptor.span
    if span == 0:
        empty = _np.zeros(descriptor.shape, dtype=dtype)
        if descriptor.tensor_type is TensorType.BFLOAT16 and widen_bfloat16:
            return empty.astype(_np.float32)
        return empty
    end = descriptor.absolute_offset + span * dtype.itemsize
    file_size = path.stat().st_size
    if end > file_size:
        raise ContainerCorrupt(
            f"Tensor {descriptor.name!r} ends at byte {end} but {path} holds {file_size}",
            offset=descriptor.absolute_offset,
        )
    base = _np.memmap(path, dtype=dtype, mode="r", offset=descriptor.absolute_offset, shape=(span,))
    view = _np.lib.stride_tricks.as_strided(
        base,
        shape=descriptor.shape,
        strides=tuple(step * dtype.itemsize for step in descriptor.stride),
        writeable=False,
    )
    if descriptor.tensor_type is TensorType.BFLOAT16 and widen_bfloat16:
        return bfloat16_to_float32(view)
    return view


class _TensorLease(contextlib.AbstractContextManager[Optional[_np.ndarray]]):
    def __init__(self, store: "LazyTensorStore", key: str, default: object = _MISSING) -> None:
        self._store = store
        self._key = key
        self._default = default
        self._bytes = 0

    def __enter__(self) -> Optional[_np.ndarray]:
        value, size = self._store._acquire(self._key, self._default)
        self._bytes = size
        return value

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._bytes:
            self._store._release(self._bytes)
        self._bytes = 0
        return False


class LazyTensorStore(Mapping[str, _np.ndarray]):
    """Name-keyed, lazily materialised view over a checkpoint's tensors."""

    def __init__(
        self,
        path: Union[str, Path],
        settings: Optional[ResolverSettings] = None,
        *,
        widen_bfloat16: bool = True,
    ) -> None:
        self._path = Path(path)
        self._widen_bfloat16 = widen_bfloat16
        with TorchArchive(self._path, settings) as archive:
            descriptors = archive.tensors()
        self._index: Dict[str, TensorDescriptor] = {item.name: item for item in descriptors}
        self._current_leased = 0
        self._peak_leased = 0
        self.max_tensor_bytes = max((item.nbytes for item in descriptors), default=0)
        self.memory_budget_bytes = self.max_tensor_bytes + _MEMORY_BUDGET_OVERHEAD
        logger.debug(
            "Initialised LazyTensorStore for %s (budget=%d, max_tensor=%d)",
            self._path,
            self.memory_budget_bytes,
            self.max_tensor_bytes,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def index(self) -> Mapping[str, TensorDescriptor]:
        return self._index

    @property
    def peak_leased_bytes(self) -> int:
        return self._peak_leased

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key in self._index

    def __getitem__(self, key: str) -> _np.ndarray:
        descriptor = self._index.get(key)
        if descriptor is None:
            raise KeyError(key)
        return load_tensor(self._path, descriptor, widen_bfloat16=self._widen_bfloat16)

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def checkout(self, key: str, *, default: object = _MISSING) -> _TensorLease:
        return _TensorLease(self, key, default)

    def stream(self, keys: Iterable[str]) -> Iterator[Tuple[str, _np.ndarray]]:
        for name in keys:
            with self.checkout(name, default=None) as tensor:
                if tensor is None:
                    continue
                yield name, tensor

    # Internal helpers -------------------------------------------------

    def _acquire(self, key: str, default: object = _MISSING) -> Tuple[Optional[_np.ndarray], int]:
        descriptor = self._index.get(key)
        if descriptor is None:
            if default is _MISSING:
                raise KeyError(key)
            return default, 0  # type: ignore[return-value]
        tensor = self[key]
        size = int(tensor.nbytes)
        self._register_lease(size)
        return tensor, size

    def _register_lease(self, size: int) -> None:
        if size <= 0:
            return
        self._current_leased += size
        if self._current_leased > self.memory_budget_bytes:
            self._current_leased -= size
            raise MemoryError(
                "Tensor lease exceeded memory budget: "
                f"{self._current_leased + size} > {self.memory_budget_bytes}"
            )
        if self._current_leased > self._peak_leased:
            self._peak_leased = self._current_leased
            logger.debug(
                "Tensor lease peak updated: %d bytes (budget=%d)",
                self._peak_leased,
                self.memory_budget_bytes,
            )

    def _release(self, size: int) -> None:
        if size <= 0:
            return
        self._current_leased = max(0, self._current_leased - size)


def export_safetensors(
    source: Union[str, Path, LazyTensorStore],
    destination: Union[str, Path],
    *,
    names: Optional[Sequence[str]] = None,
    settings: Optional[ResolverSettings] = None,
) -> List[str]:
    """Copy the tensors of a checkpoint into a ``.safetensors`` file.

    ``source`` is a checkpoint path or an existing :class:`LazyTensorStore`.
    Each tensor is copied while its lease is held, so the store budget bounds
    the mapped views; the copies themselves are all kept until the file is
    written. bfloat16 tensors are widened to float32 because numpy cannot
    represent them. Returns the names written, in checkpoint order.
    """

    from safetensors.numpy import save_file

    if isinstance(source, LazyTensorStore):
        store = source
    else:
        store = LazyTensorStore(source, settings)
    wanted = list(store) if names is None else list(names)
    missing = sorted(set(wanted) - set(store.index))
    if missing:
        raise KeyError(f"Missing tensors in checkpoint: {', '.join(missing)}")

    arrays: Dict[str, _np.ndarray] = {}
    for name in wanted:
        if store.index[name].tensor_type is TensorType.BFLOAT16:
            logger.info("Widening bfloat16 tensor %s to float32", name)
        with store.checkout(name) as tensor:
            # ascontiguousarray promotes 0-d tensors to 1-d
            arrays[name] = _np.array(tensor, order="C")
    logger.debug(
        "Copied %d bytes for export (lease peak=%d)",
        sum(int(item.nbytes) for item in arrays.values()),
        store.peak_leased_bytes,
    )

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    save_file(arrays, str(destination), metadata={"format": "pt", "source": str(store.path)})
    logger.info("Wrote %d tensors to %s", len(arrays), destination)
    return list(arrays)


__all__ = [
    "LazyTensorStore",
    "bfloat16_to_float32",
    "export_safetensors",
    "load_tensor",
    "numpy_dtype",
]
