"""Tests for the offline model compiler and its command line."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from fee_model.inference.common import (
    ConfigurationError,
    DecodeError,
    HiddenSizeMismatch,
    MultiOutputUnsupported,
    ShapeMismatch,
)
from fee_model.inference.registry import load_registry
from fee_model.inference.shapes import BASELINE_SHAPES, ShapeRegistry
from fee_model.tools import model_compiler
from fee_model.tools.model_compiler import (
    CUSTOM_FEE_ERR,
    ModelSource,
    builtin_model_sources,
    compile_models,
    compile_record,
    compile_registry,
    default_model_sources,
    parse_model_list,
    render_summary,
)
from fee_model.tools.model_container import dump_container
from tests.model_fixtures import (
    FIELDS,
    TEST_RESULT,
    TOLERANCE,
    reference_input,
    reference_record,
    reference_weights,
)


@pytest.fixture(autouse=True)
def _no_custom_models(monkeypatch) -> None:
    monkeypatch.delenv(model_compiler.CUSTOM_MODELS_ENV_VAR, raising=False)
    monkeypatch.delenv(model_compiler.VERBOSE_ENV_VAR, raising=False)


def _write_reference(tmp_path: Path, name: str = "custom", **kwargs) -> Path:
    path = tmp_path / f"{name}.msgpack"
    dump_container(reference_record(**kwargs), path)
    return path


def test_compile_record_embeds_weights_losslessly() -> None:
    shapes = ShapeRegistry()
    record = reference_record()

    constructor = compile_record("reference", record, shapes)
    model = constructor()

    assert constructor.signature == (20, 4, 1)
    assert model.weights.l0_kernel == record.l0_kernel
    assert model.weights.l1_kernel == record.l1_kernel
    assert abs(model.predict(reference_input()) - TEST_RESULT) < TOLERANCE


def test_compile_record_registers_new_dimensions() -> None:
    shapes = ShapeRegistry()
    fields = tuple(f"f{index}" for index in range(3))
    weights = {
        "dense/kernel:0": [[1.0, 0.0, 0.0, 0.0, 0.0]] * 3,
        "dense/bias:0": [0.0] * 5,
        "dense_1/kernel:0": [[0.0] * 5] * 5,
        "dense_1/bias:0": [0.0] * 5,
        "dense_2/kernel:0": [[1.0]] * 5,
        "dense_2/bias:0": [0.0],
    }

    compile_record("odd", reference_record(fields=fields, weights=weights), shapes)

    assert 3 in shapes
    assert 5 in shapes
    assert set(BASELINE_SHAPES) < set(shapes.table())


def test_hidden_size_mismatch_is_rejected() -> None:
    weights = reference_weights()
    weights["dense_1/kernel:0"] = [[0.0, 0.0, 0.0]] * 4
    weights["dense_1/bias:0"] = [0.0, 0.0, 0.0]
    weights["dense_2/kernel:0"] = [[1.0]] * 3

    with pytest.raises(HiddenSizeMismatch) as excinfo:
        compile_record("bad", reference_record(weights=weights), ShapeRegistry())

    assert (excinfo.value.found0, excinfo.value.found1) == (4, 3)
    assert isinstance(excinfo.value, ConfigurationError)


def test_multiple_outputs_are_rejected() -> None:
    weights = reference_weights()
    weights["dense_2/kernel:0"] = [[1.0, 1.0]] * 4
    weights["dense_2/bias:0"] = [0.0, 0.0]

    with pytest.raises(MultiOutputUnsupported) as excinfo:
        compile_record("bad", reference_record(weights=weights), ShapeRegistry())

    assert excinfo.value.found == 2


def test_kernel_layout_is_checked() -> None:
    weights = reference_weights()
    weights["dense_2/kernel:0"] = [[1.0]] * 5

    with pytest.raises(ShapeMismatch):
        compile_record("bad", reference_record(weights=weights), ShapeRegistry())


def test_missing_stats_are_reported(caplog) -> None:
    record = reference_record(mean={"confirms_in": 0.0})

    with caplog.at_level(logging.WARNING, logger=model_compiler.__name__):
        compile_record("partial", record, ShapeRegistry())

    assert "no normalization stats" in caplog.text


def test_unused_stats_are_reported(caplog) -> None:
    mean = {name: 0.0 for name in FIELDS}
    mean["mempool_size"] = 1.0
    record = reference_record(mean=mean)

    with caplog.at_level(logging.WARNING, logger=model_compiler.__name__):
        compile_record("extra", record, ShapeRegistry())

    warnings = [entry for entry in caplog.records if entry.levelno == logging.WARNING]
    assert any("unused normalization stats: mempool_size" in entry.getMessage() for entry in warnings)


def test_compile_models_freezes_shapes(tmp_path: Path) -> None:
    path = _write_reference(tmp_path)

    compiled = compile_models([ModelSource("custom", path)])

    assert compiled.names() == ("custom",)
    assert compiled.shapes.frozen


def test_compile_models_rejects_duplicate_names(tmp_path: Path) -> None:
    path = _write_reference(tmp_path)

    with pytest.raises(ConfigurationError, match="declared twice"):
        compile_models([ModelSource("custom", path), ModelSource("custom", path)])


def test_compile_models_propagates_decode_errors(tmp_path: Path) -> None:
    path = tmp_path / "broken.msgpack"
    path.write_bytes(b"\xc1")

    with pytest.raises(DecodeError):
        compile_models([ModelSource("broken", path)])


def test_builtin_models_compile() -> None:
    compiled = compile_models(builtin_model_sources())

    assert compiled.names() == ("low", "high")
    for constructor in compiled.constructors:
        assert constructor.signature == (20, 4, 1)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("a:/tmp/a", [("a", "/tmp/a")]),
        ("a:x.msgpack,b:y.msgpack", [("a", "x.msgpack"), ("b", "y.msgpack")]),
    ],
)
def test_parse_model_list(text: str, expected) -> None:
    sources = parse_model_list(text)

    assert [(source.name, str(source.path)) for source in sources] == expected


@pytest.mark.parametrize(
    "text",
    [
        "",
        "a",
        "a:",
        ":path",
        "a:b:c",
        "a:x,",
        "a:x,,b:y",
        "a: x",
        "a:x, b:y",
    ],
)
def test_parse_model_list_rejects_malformed(text: str) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        parse_model_list(text)

    assert str(excinfo.value) == CUSTOM_FEE_ERR


def test_default_sources_include_environment() -> None:
    sources = default_model_sources({"CUSTOM_FEE_MODELS": "extra:extra.msgpack"})

    assert [source.name for source in sources] == ["low", "high", "extra"]


def test_compile_registry_writes_registry_and_log(tmp_path: Path) -> None:
    custom = _write_reference(tmp_path)
    output = tmp_path / "out" / "models.bin"

    summary = compile_registry(
        output,
        sources=builtin_model_sources() + [ModelSource("custom", custom)],
    )

    registry = load_registry(output)
    assert registry.names() == ("low", "high", "custom")
    assert summary.model_count == 3
    assert summary.total_bytes == output.stat().st_size
    assert summary.log_path == tmp_path / "out" / "models.bin.log"
    log_text = summary.log_path.read_text()
    assert "Compiling model custom" in log_text
    assert "Wrote" in log_text


def test_compile_registry_leaves_no_registry_on_failure(tmp_path: Path) -> None:
    broken = tmp_path / "broken.msgpack"
    broken.write_bytes(b"\xc1")
    output = tmp_path / "models.bin"

    with pytest.raises(DecodeError):
        compile_registry(output, sources=[ModelSource("broken", broken)])

    assert not output.exists()
    assert "Compilation failed" in (tmp_path / "models.bin.log").read_text()


def test_render_summary_formats(tmp_path: Path) -> None:
    summary = compile_registry(tmp_path / "models.bin", sources=builtin_model_sources())

    table = render_summary(summary)
    payload = json.loads(render_summary(summary, format="json"))

    assert "Fee Model Compilation Summary" in table
    assert "20 × 4 × 1" in table
    assert [model["name"] for model in payload["models"]] == ["low", "high"]
    assert payload["models"][0]["signature"] == [20, 4, 1]
    with pytest.raises(ValueError):
        render_summary(summary, format="xml")


def test_main_compiles_registry(tmp_path: Path, capsys) -> None:
    output = tmp_path / "models.bin"

    exit_code = model_compiler.main(["--output", str(output), "--summary-format", "json"])

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["output"] == str(output)
    assert load_registry(output).names() == ("low", "high")


def test_main_accepts_extra_models(tmp_path: Path, capsys) -> None:
    custom = _write_reference(tmp_path)
    output = tmp_path / "models.bin"

    exit_code = model_compiler.main(
        ["--output", str(output), "--no-builtin", "--model", f"custom:{custom}", "--no-print-summary"]
    )

    assert exit_code == 0
    assert capsys.readouterr().out == ""
    assert load_registry(output).names() == ("custom",)


def test_main_reads_custom_models_from_environment(tmp_path: Path, monkeypatch) -> None:
    custom = _write_reference(tmp_path)
    output = tmp_path / "models.bin"
    monkeypatch.setenv(model_compiler.CUSTOM_MODELS_ENV_VAR, f"custom:{custom}")

    model_compiler.main(["--output", str(output), "--no-print-summary"])

    assert load_registry(output).names() == ("low", "high", "custom")


def test_main_reports_configuration_errors(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv(model_compiler.CUSTOM_MODELS_ENV_VAR, "broken")

    with pytest.raises(SystemExit) as excinfo:
        model_compiler.main(["--output", str(tmp_path / "models.bin")])

    assert excinfo.value.code == 1
    stderr = capsys.readouterr().err
    assert stderr.startswith("model_compiler: ")
    assert CUSTOM_FEE_ERR in stderr


def test_main_reports_hidden_size_mismatch(tmp_path: Path, capsys) -> None:
    weights = reference_weights()
    weights["dense_1/kernel:0"] = [[0.0, 0.0, 0.0]] * 4
    weights["dense_1/bias:0"] = [0.0, 0.0, 0.0]
    weights["dense_2/kernel:0"] = [[1.0]] * 3
    bad = _write_reference(tmp_path, "bad", weights=weights)

    with pytest.raises(SystemExit) as excinfo:
        model_compiler.main(
            ["--output", str(tmp_path / "models.bin"), "--no-builtin", "--model", f"bad:{bad}"]
        )

    assert excinfo.value.code == 1
    assert "Layer 0 and Layer 1 must have the same number of neurons" in capsys.readouterr().err
