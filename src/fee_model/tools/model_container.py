"""Codec for persisted model containers.

A container is a MessagePack map written with single precision floats::

    {
        "norm": {"mean": {field: float}, "std": {field: float}},
        "weights": {"dense/kernel:0": [[...], ...], "dense/bias:0": [...], ...},
        "fields": [field, ...],
        "alpha": float,
    }

Matrices are sequences of rows, except that a matrix of height 1 is written as
one flat sequence. A flat sequence of N numbers could mean one row of N values
or N rows of one value, so the decoder never guesses: the destination height
is always supplied by the caller.

Round trips are bit-exact for every float32 value except signaling NaNs.
MessagePack readers widen single floats to doubles, which quiets them, so
:func:`encode` rejects signaling NaNs instead of writing them.
"""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass
from numbers import Real
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import msgpack
import numpy as np

from ..inference.common import WEIGHT_KEYS, DecodeError, MatrixHeightError, MatrixWidthError
from ..inference.matrix import Matrix

logger = logging.getLogger(__name__)

L0_KERNEL, L0_BIAS, L1_KERNEL, L1_BIAS, L2_KERNEL, L2_BIAS = WEIGHT_KEYS


@dataclass(frozen=True)
class RawModelRecord:
    """Decoded contents of a model container, prior to compilation."""

    mean: Dict[str, float]
    std: Dict[str, float]
    fields: Tuple[str, ...]
    l0_kernel: Matrix
    l0_bias: Matrix
    l1_kernel: Matrix
    l1_bias: Matrix
    l2_kernel: Matrix
    l2_bias: Matrix
    alpha: float

    def weights(self) -> Dict[str, Matrix]:
        return {
            L0_KERNEL: self.l0_kernel,
            L0_BIAS: self.l0_bias,
            L1_KERNEL: self.l1_kernel,
            L1_BIAS: self.l1_bias,
            L2_KERNEL: self.l2_kernel,
            L2_BIAS: self.l2_bias,
        }

    def same_bits(self, other: "RawModelRecord") -> bool:
        """Bitwise float32 equality: ``-0.0``/``0.0`` and distinct quiet NaN payloads differ."""

        def _bits(values: Mapping[str, float]) -> Dict[str, bytes]:
            return {key: np.float32(value).tobytes() for key, value in values.items()}

        return (
            self.fields == other.fields
            and _bits(self.mean) == _bits(other.mean)
            and _bits(self.std) == _bits(other.std)
            and np.float32(self.alpha).tobytes() == np.float32(other.alpha).tobytes()
            and self.weights() == other.weights()
        )


# ---------------------------------------------------------------------------
# Matrix encoding


def _is_number(value: object) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _float_row(tensor: str, row: object, index: int) -> List[float]:
    if not isinstance(row, (list, tuple)):
        raise DecodeError(f"Row {index} of {tensor} must be a sequence, got {type(row).__name__}")
    for value in row:
        if not _is_number(value):
            raise DecodeError(f"Row {index} of {tensor} contains a non-numeric value {value!r}")
    return [float(value) for value in row]


def decode_matrix(
    value: object, *, tensor: str, height: int, width: Optional[int] = None
) -> Matrix:
    """Decode a wire matrix into a ``[width, height]`` :class:`Matrix`.

    ``height`` is mandatory and decides between the flat and the row
    encodings. ``width`` may be omitted for height-1 matrices, in which case
    it is taken from the data.
    """

    if height == 1:
        row = _float_row(tensor, value, 0)
        if width is not None and len(row) != width:
            raise MatrixWidthError(tensor, 0, width, len(row))
        return Matrix.from_array(row)

    if not isinstance(value, (list, tuple)):
        raise DecodeError(f"{tensor} must be a sequence of rows, got {type(value).__name__}")
    rows: List[List[float]] = []
    for index, item in enumerate(value):
        row = _float_row(tensor, item, index)
        expected = width if width is not None else (len(rows[0]) if rows else len(row))
        if len(row) != expected:
            raise MatrixWidthError(tensor, index, expected, len(row))
        rows.append(row)
    if len(rows) != height:
        raise MatrixHeightError(tensor, height, len(rows))
    return Matrix.from_rows(rows, width=width if width is not None else (len(rows[0]) if rows else 0))


def _has_signaling_nan(matrix: Matrix) -> bool:
    bits = matrix.array.view(np.uint32)
    nan = (bits & 0x7F800000) == 0x7F800000
    return bool(np.any(nan & ((bits & 0x007FFFFF) != 0) & ((bits & 0x00400000) == 0)))


def encode_matrix(matrix: Matrix) -> List[Any]:
    if _has_signaling_nan(matrix):
        raise ValueError("Signaling NaN cannot be stored in a model container")
    if matrix.height == 1:
        return matrix.flat()
    return matrix.tolist()


# ---------------------------------------------------------------------------
# Container encoding


def _require(mapping: Mapping[str, object], key: str, context: str) -> object:
    if key not in mapping:
        raise DecodeError(f"Missing key {key!r} in {context}")
    return mapping[key]


def _decode_stats(value: object, name: str) -> Dict[str, float]:
    if not isinstance(value, dict):
        raise DecodeError(f"Normalization {name} must be a mapping")
    stats: Dict[str, float] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise DecodeError(f"Normalization {name} keys must be strings, got {key!r}")
        if not _is_number(item):
            raise DecodeError(f"Normalization {name} for {key} is not a number: {item!r}")
        stats[key] = float(item)
    return stats


def decode(data: bytes) -> RawModelRecord:
    """Decode a container produced by :func:`encode` or the training pipeline."""

    try:
        blob = msgpack.unpackb(bytes(data), raw=False)
    except (msgpack.exceptions.UnpackException, ValueError, TypeError) as exc:
        raise DecodeError(f"Model container is not valid MessagePack: {exc}") from exc
    if not isinstance(blob, dict):
        raise DecodeError(f"Model container must be a mapping, got {type(blob).__name__}")

    norm = _require(blob, "norm", "model container")
    if not isinstance(norm, dict):
        raise DecodeError("Model container 'norm' must be a mapping")
    mean = _decode_stats(_require(norm, "mean", "norm"), "mean")
    std = _decode_stats(_require(norm, "std", "norm"), "std")

    fields = _require(blob, "fields", "model container")
    if not isinstance(fields, list) or not all(isinstance(item, str) for item in fields):
        raise DecodeError("Model container 'fields' must be a list of strings")

    alpha = _require(blob, "alpha", "model container")
    if not _is_number(alpha):
        raise DecodeError(f"Model container 'alpha' must be a number, got {alpha!r}")

    weights = _require(blob, "weights", "model container")
    if not isinstance(weights, dict):
        raise DecodeError("Model container 'weights' must be a mapping")

    # Biases are flat rows; their lengths declare the kernel widths, and each
    # kernel's height is the width of the previous layer.
    l0_bias = decode_matrix(_require(weights, L0_BIAS, "weights"), tensor=L0_BIAS, height=1)
    l1_bias = decode_matrix(_require(weights, L1_BIAS, "weights"), tensor=L1_BIAS, height=1)
    l2_bias = decode_matrix(_require(weights, L2_BIAS, "weights"), tensor=L2_BIAS, height=1)
    l0_kernel = decode_matrix(
        _require(weights, L0_KERNEL, "weights"),
        tensor=L0_KERNEL,
        height=len(fields),
        width=l0_bias.width,
    )
    l1_kernel = decode_matrix(
        _require(weights, L1_KERNEL, "weights"),
        tensor=L1_KERNEL,
        height=l0_bias.width,
        width=l1_bias.width,
    )
    l2_kernel = decode_matrix(
        _require(weights, L2_KERNEL, "weights"),
        tensor=L2_KERNEL,
        height=l1_bias.width,
        width=l2_bias.width,
    )

    extra = sorted(set(weights) - set(WEIGHT_KEYS))
    if extra:
        logger.warning("Ignoring unknown weight tensors: %s", ", ".join(map(str, extra)))

    return RawModelRecord(
        mean=mean,
        std=std,
        fields=tuple(fields),
        l0_kernel=l0_kernel,
        l0_bias=l0_bias,
        l1_kernel=l1_kernel,
        l1_bias=l1_bias,
        l2_kernel=l2_kernel,
        l2_bias=l2_bias,
        alpha=float(alpha),
    )


def _is_signaling_nan(value: float) -> bool:
    (bits,) = struct.unpack("<Q", struct.pack("<d", value))
    return (
        (bits & 0x7FF0000000000000) == 0x7FF0000000000000
        and bits & 0x000FFFFFFFFFFFFF
        and not bits & 0x0008000000000000
    )


def _f32(value: float) -> float:
    # Round once to single precision so packing with use_single_float is exact.
    if _is_signaling_nan(value):
        raise ValueError("Signaling NaN cannot be stored in a model container")
    result = float(np.float32(value))
    if math.isinf(result) and not math.isinf(value):
        raise ValueError(f"Value {value!r} overflows float32")
    return result


def encode(record: RawModelRecord) -> bytes:
    """Encode ``record`` into the binary container format."""

    blob = {
        "norm": {
            "mean": {key: _f32(value) for key, value in record.mean.items()},
            "std": {key: _f32(value) for key, value in record.std.items()},
        },
        "weights": {key: encode_matrix(matrix) for key, matrix in record.weights().items()},
        "fields": list(record.fields),
        "alpha": _f32(record.alpha),
    }
    return msgpack.packb(blob, use_bin_type=True, use_single_float=True)


def load_container(path: Path) -> RawModelRecord:
    path = Path(path)
    with path.open("rb") as fh:
        data = fh.read()
    logger.debug("Read %d byte model container from %s", len(data), path)
    return decode(data)


def dump_container(record: RawModelRecord, path: Path) -> bytes:
    path = Path(path)
    payload = encode(record)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return payload


def record_from_arrays(
    *,
    mean: Mapping[str, float],
    std: Mapping[str, float],
    fields: Sequence[str],
    weights: Mapping[str, Sequence[Any]],
    alpha: float,
) -> RawModelRecord:
    """Build a record from nested Python sequences (kernels as rows, biases flat)."""

    def _kernel(key: str) -> Matrix:
        return Matrix.from_rows([list(row) for row in weights[key]])

    return RawModelRecord(
        mean=dict(mean),
        std=dict(std),
        fields=tuple(fields),
        l0_kernel=_kernel(L0_KERNEL),
        l0_bias=Matrix.from_array(weights[L0_BIAS]),
        l1_kernel=_kernel(L1_KERNEL),
        l1_bias=Matrix.from_array(weights[L1_BIAS]),
        l2_kernel=_kernel(L2_KERNEL),
        l2_bias=Matrix.from_array(weights[L2_BIAS]),
        alpha=float(alpha),
    )


__all__ = [
    "RawModelRecord",
    "decode",
    "decode_matrix",
    "dump_container",
    "encode",
    "encode_matrix",
    "load_container",
    "record_from_arrays",
]
