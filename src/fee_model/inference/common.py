"""Shared fee model runtime helpers used across the compiler and the CLI."""

from __future__ import annotations

import hashlib
import struct
from typing import List, Optional, Tuple

REGISTRY_MAGIC = 0x4645454D
MODEL_MAGIC = 0x4645454C
REGISTRY_VERSION = 0x1
REGISTRY_HEADER_STRUCT = struct.Struct("<I H H I I")
SHAPE_ENTRY_STRUCT = struct.Struct("<I")
MODEL_HEADER_STRUCT = struct.Struct("<I H H I I I I f Q I Q")
FLOAT_DTYPE = "<f4"
FLOAT_SIZE = 4

WEIGHT_KEYS: Tuple[str, ...] = (
    "dense/kernel:0",
    "dense/bias:0",
    "dense_1/kernel:0",
    "dense_1/bias:0",
    "dense_2/kernel:0",
    "dense_2/bias:0",
)

Shape = Tuple[int, int]


class FeeModelError(RuntimeError):
    """Base class for every error raised by the fee model package."""


class DecodeError(FeeModelError):
    """Raised when a persisted model container cannot be decoded."""


class MatrixWidthError(DecodeError):
    """A matrix row does not have the width declared by its destination."""

    def __init__(self, tensor: str, row: int, expected: int, found: int) -> None:
        super().__init__(
            f"Invalid matrix width for {tensor} at row {row}: "
            f"expected {expected}, found {found}"
        )
        self.tensor = tensor
        self.row = row
        self.expected = expected
        self.found = found


class MatrixHeightError(DecodeError):
    """A matrix does not have the number of rows declared by its destination."""

    def __init__(self, tensor: str, expected: int, found: int) -> None:
        super().__init__(
            f"Invalid matrix height for {tensor}: expected {expected}, found {found}"
        )
        self.tensor = tensor
        self.expected = expected
        self.found = found


class ShapeMismatch(FeeModelError, ValueError):
    """Raised when operand shapes are incompatible for a matrix operation.

    Matrix shapes are reported as ``(width, height)`` pairs; model
    signatures as ``(input, hidden, output)`` triples.
    """

    def __init__(self, operation: str, left: Tuple[int, ...], right: Tuple[int, ...]) -> None:
        super().__init__(
            f"Matrix shapes are incompatible for {operation}: "
            f"{format_shape(left)} {format_shape(right)}"
        )
        self.operation = operation
        self.left = left
        self.right = right


class MissingNormalizationStat(FeeModelError, LookupError):
    """A field required by the model has no mean or standard deviation."""

    def __init__(self, field: str, stat: str) -> None:
        super().__init__(f"Missing {stat} field {field}")
        self.field = field
        self.stat = stat


class ConfigurationError(FeeModelError):
    """Raised by the offline compilation step for unusable model artefacts."""


class HiddenSizeMismatch(ConfigurationError):
    def __init__(self, found0: int, found1: int) -> None:
        super().__init__(
            "Layer 0 and Layer 1 must have the same number of neurons. "
            f"Found: {found0}, {found1}"
        )
        self.found0 = found0
        self.found1 = found1


class MultiOutputUnsupported(ConfigurationError):
    def __init__(self, found: int) -> None:
        super().__init__(f"Layer 2 should only have one output. Found: {found}")
        self.found = found


class RegistryError(FeeModelError):
    """Raised when a compiled model registry fails validation."""


class ShapeRegistryClosed(FeeModelError):
    """Raised when registering a dimension into a frozen shape registry."""


# ---------------------------------------------------------------------------
# Digests


_CRC32C_TABLE: List[int] = []
_CRC32C_INIT = 0xFFFFFFFF


def _init_crc32c_table() -> None:
    if _CRC32C_TABLE:
        return
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0x82F63B78
            else:
                crc >>= 1
        _CRC32C_TABLE.append(crc & 0xFFFFFFFF)


def crc32c(data: bytes) -> int:
    _init_crc32c_table()
    crc = _CRC32C_INIT
    for byte in data:
        crc = _CRC32C_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return (~crc) & 0xFFFFFFFF


def sha256_low64(data: bytes) -> int:
    return int.from_bytes(hashlib.sha256(data).digest()[-8:], "little")


def format_shape(shape: Optional[Tuple[int, ...]]) -> str:
    if shape is None:
        return "?"
    return "x".join(str(dim) for dim in shape)


__all__ = [
    "FLOAT_DTYPE",
    "FLOAT_SIZE",
    "MODEL_HEADER_STRUCT",
    "MODEL_MAGIC",
    "REGISTRY_HEADER_STRUCT",
    "REGISTRY_MAGIC",
    "REGISTRY_VERSION",
    "SHAPE_ENTRY_STRUCT",
    "WEIGHT_KEYS",
    "ConfigurationError",
    "DecodeError",
    "FeeModelError",
    "HiddenSizeMismatch",
    "MatrixHeightError",
    "MatrixWidthError",
    "MissingNormalizationStat",
    "MultiOutputUnsupported",
    "RegistryError",
    "Shape",
    "ShapeMismatch",
    "ShapeRegistryClosed",
    "crc32c",
    "format_shape",
    "sha256_low64",
]
