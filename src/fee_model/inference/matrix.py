"""Dense float32 matrices with shapes validated at every operation boundary.

A :class:`Matrix` stores ``width * height`` single precision floats in a
contiguous row-major buffer. ``width`` is the number of columns and ``height``
the number of rows, so ``m[row][column]`` addresses a single entry. Matrices
are immutable: every operation allocates a fresh result and the underlying
numpy buffer is marked read-only.
"""

from __future__ import annotations

from typing import Iterable, Iterator, List, Sequence, Union

import numpy as np

from .common import FLOAT_DTYPE, Shape, ShapeMismatch

BufferLike = Union[bytes, bytearray, memoryview, np.ndarray, Sequence[float]]


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


class Matrix:
    """Immutable ``[width, height]`` matrix of 32-bit floats."""

    __slots__ = ("_data",)

    def __init__(self, data: np.ndarray) -> None:
        array = np.array(data, dtype=np.float32, order="C", copy=True)
        if array.ndim != 2:
            raise ValueError(f"Matrix data must be two dimensional, got {array.ndim} dimensions")
        self._data = _readonly(array)

    # ------------------------------------------------------------------
    # Construction

    @classmethod
    def _wrap(cls, array: np.ndarray) -> "Matrix":
        # Takes ownership of a freshly allocated float32 result.
        matrix = cls.__new__(cls)
        matrix._data = _readonly(np.ascontiguousarray(array, dtype=np.float32))
        return matrix

    @classmethod
    def from_buffer(cls, buffer: BufferLike, *, width: int, height: int) -> "Matrix":
        """Build a matrix from a flat row-major buffer.

        ``bytes``-like buffers are reinterpreted as little-endian float32 values
        without parsing individual elements.
        """

        if width < 0 or height < 0:
            raise ValueError(f"Matrix dimensions must be non-negative, got {width}x{height}")
        if isinstance(buffer, (bytes, bytearray, memoryview)):
            raw = bytes(buffer)
            if len(raw) % np.dtype(FLOAT_DTYPE).itemsize:
                raise ValueError(f"Buffer of {len(raw)} bytes is not a whole number of float32 values")
            flat = np.frombuffer(raw, dtype=FLOAT_DTYPE).astype(np.float32)
        else:
            flat = np.asarray(buffer, dtype=np.float32).reshape(-1).copy()
        if flat.size != width * height:
            raise ValueError(
                f"Buffer length {flat.size} does not match matrix shape {width}x{height}"
            )
        return cls._wrap(flat.reshape(height, width))

    @classmethod
    def from_array(cls, values: Iterable[float]) -> "Matrix":
        """Build a single-row matrix (height fixed to 1)."""

        flat = np.fromiter((float(value) for value in values), dtype=np.float32)
        return cls._wrap(flat.reshape(1, flat.size))

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence[float]], *, width: int | None = None) -> "Matrix":
        if not rows:
            return cls.zeros(width or 0, 0)
        expected = len(rows[0]) if width is None else width
        for index, row in enumerate(rows):
            if len(row) != expected:
                raise ValueError(
                    f"Invalid matrix width at row {index}: expected {expected}, found {len(row)}"
                )
        return cls._wrap(np.array(rows, dtype=np.float32).reshape(len(rows), expected))

    @classmethod
    def zeros(cls, width: int, height: int) -> "Matrix":
        return cls._wrap(np.zeros((height, width), dtype=np.float32))

    # ------------------------------------------------------------------
    # Introspection

    @property
    def width(self) -> int:
        return int(self._data.shape[1])

    @property
    def height(self) -> int:
        return int(self._data.shape[0])

    @property
    def shape(self) -> Shape:
        """``(width, height)`` of the matrix."""

        return (self.width, self.height)

    @property
    def array(self) -> np.ndarray:
        """Read-only ``(height, width)`` view of the underlying buffer."""

        return self._data

    def __len__(self) -> int:
        return self.height

    def __getitem__(self, row: int) -> np.ndarray:
        return self._data[row]

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self._data)

    def to_bytes(self) -> bytes:
        """Return the row-major buffer as little-endian float32 bytes."""

        return self._data.astype(FLOAT_DTYPE, copy=False).tobytes()

    def tolist(self) -> List[List[float]]:
        return self._data.tolist()

    def flat(self) -> List[float]:
        return self._data.reshape(-1).tolist()

    # ------------------------------------------------------------------
    # Operations

    def dot(self, other: "Matrix") -> "Matrix":
        """Matrix product ``self · other``; requires ``self.width == other.height``."""

        if self.width != other.height:
            raise ShapeMismatch("dot product", self.shape, other.shape)
        result = np.matmul(self._data, other._data)
        return Matrix._wrap(result)

    def add(self, other: "Matrix") -> "Matrix":
        """Element-wise sum of two matrices with identical shapes."""

        if self.shape != other.shape:
            raise ShapeMismatch("adding", self.shape, other.shape)
        return Matrix._wrap(np.add(self._data, other._data, dtype=np.float32))

    def transpose(self) -> "Matrix":
        return Matrix._wrap(self._data.T.copy())

    def relu(self, alpha: float) -> "Matrix":
        """Leaky ReLU: negative entries are scaled by ``alpha``."""

        slope = np.float32(alpha)
        result = np.where(self._data < 0.0, self._data * slope, self._data)
        return Matrix._wrap(result.astype(np.float32, copy=False))

    __matmul__ = dot
    __add__ = add

    # ------------------------------------------------------------------
    # Comparisons

    def __eq__(self, other: object) -> bool:
        # Bitwise comparison so that -0.0, subnormals and NaN payloads count.
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and self.to_bytes() == other.to_bytes()

    def __hash__(self) -> int:
        return hash((self.shape, self.to_bytes()))

    def approx_eq(self, other: "Matrix", *, rel_tol: float = 1e-6, abs_tol: float = 1e-4) -> bool:
        if self.shape != other.shape:
            return False
        return bool(np.allclose(self._data, other._data, rtol=rel_tol, atol=abs_tol))

    def __repr__(self) -> str:
        return f"Matrix(width={self.width}, height={self.height}, data={self._data.tolist()!r})"


def dot(a: Matrix, b: Matrix) -> Matrix:
    return a.dot(b)


def add(a: Matrix, bias: Matrix) -> Matrix:
    return a.add(bias)


def transpose(a: Matrix) -> Matrix:
    return a.transpose()


def relu(a: Matrix, alpha: float) -> Matrix:
    return a.relu(alpha)


__all__ = ["BufferLike", "Matrix", "add", "dot", "relu", "transpose"]
