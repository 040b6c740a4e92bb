"""Binary model registry encoding and validation."""

from __future__ import annotations

import struct
from pathlib import Path

import pytest

from fee_model.inference import registry as registry_module
from fee_model.inference.common import (
    MODEL_HEADER_STRUCT,
    REGISTRY_HEADER_STRUCT,
    SHAPE_ENTRY_STRUCT,
    RegistryError,
    ShapeRegistryClosed,
)
from fee_model.inference.registry import (
    ModelRegistry,
    decode_registry,
    load_registry,
    payload_bytes,
    payload_layout,
    write_registry,
)
from fee_model.inference.shapes import ShapeRegistry
from fee_model.tools.model_compiler import CompiledRegistry, compile_record
from tests.model_fixtures import TEST_RESULT, TOLERANCE, reference_input, reference_record


def _compiled(*names: str) -> CompiledRegistry:
    shapes = ShapeRegistry()
    constructors = tuple(compile_record(name, reference_record(), shapes) for name in names)
    shapes.freeze()
    return CompiledRegistry(shapes=shapes, constructors=constructors)


def _first_payload_offset(data: bytes) -> int:
    shape_count = REGISTRY_HEADER_STRUCT.unpack_from(data)[3]
    offset = REGISTRY_HEADER_STRUCT.size + shape_count * SHAPE_ENTRY_STRUCT.size
    header = MODEL_HEADER_STRUCT.unpack_from(data, offset)
    name_len, meta_len = header[1], header[3]
    return offset + MODEL_HEADER_STRUCT.size + name_len + meta_len


def test_payload_layout_matches_network_shapes() -> None:
    assert payload_layout(20, 4, 1) == ((4, 20), (4, 1), (4, 4), (4, 1), (1, 4), (1, 1))
    assert payload_bytes(20, 4, 1) == 4 * (80 + 4 + 16 + 4 + 4 + 1)


def test_round_trip_preserves_weights_bit_for_bit() -> None:
    data = _compiled("low", "high").to_bytes()

    registry = ModelRegistry.from_bytes(data)

    assert registry.names() == ("low", "high")
    assert registry.to_bytes() == data
    record = reference_record()
    model = registry.get("low")
    assert model.weights.l0_kernel == record.l0_kernel
    assert model.weights.l2_bias == record.l2_bias
    assert model.fields == record.fields
    assert abs(model.predict(reference_input()) - TEST_RESULT) < TOLERANCE


def test_decoded_shape_registry_is_frozen() -> None:
    shapes, constructors = decode_registry(_compiled("low").to_bytes())

    assert shapes.frozen
    assert 20 in shapes
    assert constructors[0].signature == (20, 4, 1)
    with pytest.raises(ShapeRegistryClosed):
        shapes.register(3)


def test_get_memoizes_whole_models() -> None:
    registry = _compiled("low").registry()

    assert registry.get("low") is registry.get("low")
    assert registry.constructor("low")() is not registry.get("low")


def test_unknown_model_raises_key_error() -> None:
    registry = _compiled("low").registry()

    assert "high" not in registry
    with pytest.raises(KeyError, match="high"):
        registry.get("high")


def test_duplicate_model_names_are_rejected() -> None:
    compiled = _compiled("low")

    with pytest.raises(RegistryError, match="Duplicate"):
        ModelRegistry(compiled.shapes, compiled.constructors * 2)
    with pytest.raises(RegistryError, match="Duplicate"):
        decode_registry(registry_module.encode_registry(compiled.shapes, compiled.constructors * 2))


def test_invalid_magic_is_rejected() -> None:
    data = bytearray(_compiled("low").to_bytes())
    data[0] ^= 0xFF

    with pytest.raises(RegistryError, match="magic"):
        decode_registry(bytes(data))


def test_unsupported_version_is_rejected() -> None:
    data = bytearray(_compiled("low").to_bytes())
    struct.pack_into("<H", data, 4, 2)

    with pytest.raises(RegistryError, match="version"):
        decode_registry(bytes(data))


def test_corrupt_payload_fails_crc() -> None:
    data = bytearray(_compiled("low").to_bytes())
    data[_first_payload_offset(bytes(data))] ^= 0x01

    with pytest.raises(RegistryError, match="CRC32C"):
        decode_registry(bytes(data))


@pytest.mark.parametrize("cut", [1, 8, 200])
def test_truncated_registry_is_rejected(cut: int) -> None:
    data = _compiled("low").to_bytes()

    with pytest.raises(RegistryError, match="truncated"):
        decode_registry(data[:-cut])


def test_trailing_bytes_are_rejected() -> None:
    data = _compiled("low").to_bytes() + b"\x00"

    with pytest.raises(RegistryError, match="trailing"):
        decode_registry(data)


def test_dimension_missing_from_shape_table_is_rejected() -> None:
    compiled = _compiled("low")
    shapes = ShapeRegistry.from_table([4, 1])

    with pytest.raises(RegistryError, match="dimension 20"):
        registry_module.encode_registry(shapes, compiled.constructors)


def test_load_and_write_registry(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "models.bin"

    written = write_registry(path, _compiled("low", "high").registry())
    registry = load_registry(path)

    assert path.read_bytes() == written
    assert set(registry) == {"low", "high"}
    assert len(registry) == 2


def test_load_missing_registry_raises_registry_error(tmp_path: Path) -> None:
    with pytest.raises(RegistryError, match="Unable to read"):
        load_registry(tmp_path / "missing.bin")
