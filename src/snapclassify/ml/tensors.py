"""Tracked numeric buffers.

Every array the pipeline and the model manager allocate is registered with a
TensorRegistry and must be released explicitly. Scopes release everything they
allocated on exit, on success and error paths alike, except tensors that were
explicitly kept and handed to the caller.
"""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

import numpy as np

from snapclassify.errors import AllocationError, InferenceError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

    from numpy.typing import DTypeLike, NDArray

logger = logging.getLogger(__name__)


class Tensor:
    """A registered numeric buffer with single-owner release semantics."""

    __slots__ = ("_data", "_registry", "tensor_id")

    def __init__(self, registry: TensorRegistry, data: NDArray[np.generic], tensor_id: int) -> None:
        self._registry = registry
        self._data: NDArray[np.generic] | None = data
        self.tensor_id = tensor_id

    @property
    def data(self) -> NDArray[np.generic]:
        """Return the underlying array; fails once the tensor has been released."""
        if self._data is None:
            raise InferenceError(f"Tensor {self.tensor_id} has been released")
        return self._data

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def dtype(self) -> np.dtype[np.generic]:
        return self.data.dtype

    @property
    def is_released(self) -> bool:
        return self._data is None

    def release(self) -> None:
        """Release the buffer. Releasing twice is a no-op."""
        self._registry.release(self)

    def __enter__(self) -> Tensor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        if self._data is None:
            return f"Tensor(id={self.tensor_id}, released)"
        return f"Tensor(id={self.tensor_id}, shape={list(self._data.shape)}, dtype={self._data.dtype})"


class TensorScope:
    """Collects tensors allocated within a `TensorRegistry.scope()` block."""

    def __init__(self, registry: TensorRegistry) -> None:
        self._registry = registry
        self._owned: list[Tensor] = []

    def allocate(self, shape: tuple[int, ...], dtype: DTypeLike = np.float32, fill: float = 0.0) -> Tensor:
        tensor = self._registry.allocate(shape, dtype=dtype, fill=fill)
        self._owned.append(tensor)
        return tensor

    def track(self, data: NDArray[np.generic]) -> Tensor:
        tensor = self._registry.track(data)
        self._owned.append(tensor)
        return tensor

    def keep(self, tensor: Tensor) -> Tensor:
        """Exclude a tensor from release at scope exit; ownership moves to the caller."""
        self._owned = [t for t in self._owned if t is not tensor]
        return tensor

    def close(self) -> None:
        owned, self._owned = self._owned, []
        for tensor in owned:
            tensor.release()


class TensorRegistry:
    """Process-wide bookkeeping for live numeric buffers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: dict[int, Tensor] = {}
        self._ids = itertools.count(1)

    def allocate(self, shape: tuple[int, ...], dtype: DTypeLike = np.float32, fill: float = 0.0) -> Tensor:
        """Allocate a filled buffer and register it.

        Raises:
            AllocationError: If the buffer cannot be allocated.
        """
        try:
            data = np.zeros(shape, dtype=dtype) if fill == 0.0 else np.full(shape, fill, dtype=dtype)
        except (MemoryError, ValueError) as exc:
            raise AllocationError(f"Cannot allocate buffer of shape {list(shape)}: {exc}") from exc
        return self.track(data)

    def track(self, data: NDArray[np.generic]) -> Tensor:
        """Register an existing array; the registry now accounts for it."""
        with self._lock:
            tensor = Tensor(self, data, next(self._ids))
            self._live[tensor.tensor_id] = tensor
        return tensor

    def release(self, tensor: Tensor) -> None:
        with self._lock:
            self._live.pop(tensor.tensor_id, None)
            tensor._data = None  # noqa: SLF001

    @property
    def num_tensors(self) -> int:
        """Number of tensors allocated and not yet released."""
        with self._lock:
            return len(self._live)

    @contextmanager
    def scope(self) -> Iterator[TensorScope]:
        """Yield a scope that releases its tensors on every exit path."""
        tensor_scope = TensorScope(self)
        try:
            yield tensor_scope
        finally:
            tensor_scope.close()
