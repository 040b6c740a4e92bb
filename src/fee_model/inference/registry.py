"""Compiled model registry: the binary output of the offline model compiler.

A registry file holds the frozen shape table followed by one entry per model.
Each entry carries the model dimensions and metadata next to a single raw
little-endian float32 payload; loading reinterprets that payload with
:func:`numpy.frombuffer` instead of parsing individual values, so weights come
back bit for bit.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Tuple

import msgpack
import numpy as np

from .common import (
    FLOAT_DTYPE,
    FLOAT_SIZE,
    MODEL_HEADER_STRUCT,
    MODEL_MAGIC,
    REGISTRY_HEADER_STRUCT,
    REGISTRY_MAGIC,
    REGISTRY_VERSION,
    SHAPE_ENTRY_STRUCT,
    RegistryError,
    crc32c,
    sha256_low64,
)
from .matrix import Matrix
from .model import CompiledModel, NormalizationStats, WeightsBundle
from .shapes import ShapeRegistry, ShapeToken

logger = logging.getLogger(__name__)


def payload_layout(input_size: int, hidden_size: int, output_size: int) -> Tuple[Tuple[int, int], ...]:
    """Return ``(width, height)`` of each tensor in payload order."""

    return (
        (hidden_size, input_size),
        (hidden_size, 1),
        (hidden_size, hidden_size),
        (hidden_size, 1),
        (output_size, hidden_size),
        (output_size, 1),
    )


def payload_bytes(input_size: int, hidden_size: int, output_size: int) -> int:
    layout = payload_layout(input_size, hidden_size, output_size)
    return FLOAT_SIZE * sum(width * height for width, height in layout)


@dataclass(frozen=True)
class ModelConstructor:
    """Specialized constructor for one compiled model.

    Calling the constructor materializes a fresh :class:`CompiledModel` from
    the embedded byte payload.
    """

    name: str
    input_size: ShapeToken
    hidden_size: ShapeToken
    output_size: ShapeToken
    fields: Tuple[str, ...]
    mean: Mapping[str, float]
    std: Mapping[str, float]
    alpha: float
    payload: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "mean", MappingProxyType(dict(self.mean)))
        object.__setattr__(self, "std", MappingProxyType(dict(self.std)))
        object.__setattr__(self, "payload", bytes(self.payload))

    @property
    def signature(self) -> Tuple[int, int, int]:
        return (int(self.input_size), int(self.hidden_size), int(self.output_size))

    @property
    def crc32c(self) -> int:
        return crc32c(self.payload)

    @property
    def sha256_low64(self) -> int:
        return sha256_low64(self.payload)

    def __call__(self) -> CompiledModel:
        layout = payload_layout(*self.signature)
        expected = FLOAT_SIZE * sum(width * height for width, height in layout)
        if len(self.payload) != expected:
            raise RegistryError(
                f"Payload length mismatch for model {self.name}: "
                f"expected {expected}, got {len(self.payload)}"
            )
        floats = np.frombuffer(self.payload, dtype=FLOAT_DTYPE)
        tensors: List[Matrix] = []
        offset = 0
        for width, height in layout:
            count = width * height
            tensors.append(
                Matrix.from_buffer(floats[offset : offset + count], width=width, height=height)
            )
            offset += count
        l0_kernel, l0_bias, l1_kernel, l1_bias, l2_kernel, l2_bias = tensors
        return CompiledModel(
            name=self.name,
            norm=NormalizationStats(mean=self.mean, std=self.std),
            weights=WeightsBundle(
                l0_kernel=l0_kernel,
                l0_bias=l0_bias,
                l1_kernel=l1_kernel,
                l1_bias=l1_bias,
                l2_kernel=l2_kernel,
                l2_bias=l2_bias,
            ),
            fields=self.fields,
            alpha=self.alpha,
        )

    build = __call__


# ---------------------------------------------------------------------------
# Binary encoding


def _pack_metadata(constructor: ModelConstructor) -> bytes:
    blob = {
        "fields": list(constructor.fields),
        "mean": dict(constructor.mean),
        "std": dict(constructor.std),
    }
    return msgpack.packb(blob, use_bin_type=True, use_single_float=True)


def encode_registry(shapes: ShapeRegistry, constructors: Iterable[ModelConstructor]) -> bytes:
    """Serialise ``shapes`` and ``constructors`` into the registry format."""

    table = shapes.table()
    entries = list(constructors)
    chunks = [
        REGISTRY_HEADER_STRUCT.pack(REGISTRY_MAGIC, REGISTRY_VERSION, 0, len(table), len(entries))
    ]
    chunks.extend(SHAPE_ENTRY_STRUCT.pack(dim) for dim in table)
    for constructor in entries:
        for dim in constructor.signature:
            if dim not in shapes:
                raise RegistryError(
                    f"Model {constructor.name} uses dimension {dim} missing from the shape table"
                )
        name = constructor.name.encode("utf-8")
        metadata = _pack_metadata(constructor)
        chunks.append(
            MODEL_HEADER_STRUCT.pack(
                MODEL_MAGIC,
                len(name),
                0,
                len(metadata),
                *constructor.signature,
                constructor.alpha,
                len(constructor.payload),
                constructor.crc32c,
                constructor.sha256_low64,
            )
        )
        chunks.extend((name, metadata, constructor.payload))
    return b"".join(chunks)


def decode_registry(data: bytes) -> Tuple[ShapeRegistry, Tuple[ModelConstructor, ...]]:
    """Decode and validate a registry produced by :func:`encode_registry`."""

    offset = 0

    def _slice(size: int, what: str) -> bytes:
        nonlocal offset
        chunk = data[offset : offset + size]
        if len(chunk) != size:
            raise RegistryError(f"Registry truncated while reading {what}")
        offset += size
        return chunk

    magic, version, reserved, shape_count, model_count = REGISTRY_HEADER_STRUCT.unpack(
        _slice(REGISTRY_HEADER_STRUCT.size, "registry header")
    )
    if magic != REGISTRY_MAGIC:
        raise RegistryError("Invalid model registry magic")
    if version != REGISTRY_VERSION:
        raise RegistryError(f"Unsupported model registry version {version}")
    if reserved:
        raise RegistryError("Registry reserved header field must be zero")

    table = [
        SHAPE_ENTRY_STRUCT.unpack(_slice(SHAPE_ENTRY_STRUCT.size, "shape table"))[0]
        for _ in range(shape_count)
    ]
    try:
        shapes = ShapeRegistry.from_table(table)
    except ValueError as exc:
        raise RegistryError(f"Invalid shape table: {exc}") from exc

    constructors: List[ModelConstructor] = []
    seen: set[str] = set()
    for _ in range(model_count):
        (
            model_magic,
            name_len,
            flags,
            meta_len,
            input_size,
            hidden_size,
            output_size,
            alpha,
            byte_len,
            crc,
            sha_low64,
        ) = MODEL_HEADER_STRUCT.unpack(_slice(MODEL_HEADER_STRUCT.size, "model header"))
        if model_magic != MODEL_MAGIC:
            raise RegistryError("Invalid model entry magic")
        if flags:
            raise RegistryError(f"Model entry declares unsupported flag bits: 0x{flags:X}")
        try:
            name = _slice(name_len, "model name").decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RegistryError("Model name is not valid UTF-8") from exc
        if name in seen:
            raise RegistryError(f"Duplicate model {name!r} in registry")
        seen.add(name)
        metadata = _unpack_metadata(name, _slice(meta_len, f"metadata of {name}"))
        payload = _slice(byte_len, f"payload of {name}")
        expected_len = payload_bytes(input_size, hidden_size, output_size)
        if byte_len != expected_len:
            raise RegistryError(
                f"Payload length mismatch for model {name}: expected {expected_len}, got {byte_len}"
            )
        if crc32c(payload) != crc:
            raise RegistryError(f"CRC32C mismatch for model {name}")
        if sha256_low64(payload) != sha_low64:
            raise RegistryError(f"sha256_low64 mismatch for model {name}")
        tokens = []
        for dim in (input_size, hidden_size, output_size):
            if dim not in shapes:
                raise RegistryError(f"Model {name} uses unregistered dimension {dim}")
            tokens.append(shapes.token(dim))
        fields = metadata["fields"]
        if len(fields) != input_size:
            raise RegistryError(
                f"Model {name} lists {len(fields)} fields for input size {input_size}"
            )
        constructors.append(
            ModelConstructor(
                name=name,
                input_size=tokens[0],
                hidden_size=tokens[1],
                output_size=tokens[2],
                fields=fields,
                mean=metadata["mean"],
                std=metadata["std"],
                alpha=alpha,
                payload=payload,
            )
        )
    if offset != len(data):
        raise RegistryError(f"Registry has {len(data) - offset} trailing bytes")
    return shapes, tuple(constructors)


def _unpack_metadata(name: str, raw: bytes) -> Dict[str, object]:
    try:
        blob = msgpack.unpackb(raw, raw=False)
    except (msgpack.exceptions.UnpackException, ValueError) as exc:
        raise RegistryError(f"Metadata of model {name} is corrupt: {exc}") from exc
    if not isinstance(blob, dict):
        raise RegistryError(f"Metadata of model {name} must be a mapping")
    fields = blob.get("fields")
    mean = blob.get("mean")
    std = blob.get("std")
    if not isinstance(fields, list) or not all(isinstance(item, str) for item in fields):
        raise RegistryError(f"Metadata of model {name} has an invalid field list")
    if not isinstance(mean, dict) or not isinstance(std, dict):
        raise RegistryError(f"Metadata of model {name} has invalid normalization stats")
    for stats in (mean, std):
        for value in stats.values():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise RegistryError(f"Metadata of model {name} has a non-numeric statistic {value!r}")
    return {
        "fields": tuple(fields),
        "mean": {str(key): float(value) for key, value in mean.items()},
        "std": {str(key): float(value) for key, value in std.items()},
    }


# ---------------------------------------------------------------------------
# Runtime registry


class ModelRegistry:
    """Read-only collection of compiled model constructors.

    Whole :class:`CompiledModel` instances are memoized per name; the
    registry never caches individual matrix operations.
    """

    def __init__(self, shapes: ShapeRegistry, constructors: Iterable[ModelConstructor]) -> None:
        shapes.freeze()
        self.shapes = shapes
        self._constructors: Dict[str, ModelConstructor] = {}
        for constructor in constructors:
            if constructor.name in self._constructors:
                raise RegistryError(f"Duplicate model {constructor.name!r} in registry")
            self._constructors[constructor.name] = constructor
        self._models: Dict[str, CompiledModel] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_bytes(cls, data: bytes) -> "ModelRegistry":
        shapes, constructors = decode_registry(data)
        return cls(shapes, constructors)

    def to_bytes(self) -> bytes:
        return encode_registry(self.shapes, self._constructors.values())

    def names(self) -> Tuple[str, ...]:
        return tuple(self._constructors)

    def constructor(self, name: str) -> ModelConstructor:
        try:
            return self._constructors[name]
        except KeyError:
            raise KeyError(f"Unknown model {name!r}; available: {', '.join(self.names())}") from None

    def get(self, name: str) -> CompiledModel:
        model = self._models.get(name)
        if model is not None:
            return model
        constructor = self.constructor(name)
        with self._lock:
            model = self._models.get(name)
            if model is None:
                model = constructor()
                self._models[name] = model
                logger.debug("Materialized model %s with signature %s", name, model.signature)
        return model

    def __contains__(self, name: object) -> bool:
        return name in self._constructors

    def __iter__(self) -> Iterator[str]:
        return iter(self._constructors)

    def __len__(self) -> int:
        return len(self._constructors)


def load_registry(path: Path) -> ModelRegistry:
    """Read and validate a registry file written by the model compiler."""

    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise RegistryError(f"Unable to read model registry {path}: {exc}") from exc
    registry = ModelRegistry.from_bytes(data)
    logger.info("Loaded %d model(s) from %s", len(registry), path)
    return registry


def write_registry(path: Path, registry: ModelRegistry) -> bytes:
    path = Path(path)
    data = registry.to_bytes()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return data


__all__ = [
    "ModelConstructor",
    "ModelRegistry",
    "decode_registry",
    "encode_registry",
    "load_registry",
    "payload_bytes",
    "payload_layout",
    "write_registry",
]
