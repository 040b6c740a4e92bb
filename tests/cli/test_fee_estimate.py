from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from fee_model.cli import fee_estimate
from fee_model.inference import estimator
from fee_model.inference.registry import write_registry
from fee_model.tools.model_compiler import builtin_model_sources, compile_models
from tests.model_fixtures import BUCKETS, LAST_BLOCK_TS, TIMESTAMP


@pytest.fixture(autouse=True)
def _fresh_default_registry(monkeypatch):
    monkeypatch.delenv(estimator.REGISTRY_ENV_VAR, raising=False)
    monkeypatch.delenv("CUSTOM_FEE_MODELS", raising=False)
    estimator.default_registry.cache_clear()
    yield
    estimator.default_registry.cache_clear()


def _bucket_args() -> list[str]:
    return ["--buckets", ",".join(str(count) for count in BUCKETS)]


def test_estimates_each_target_from_buckets() -> None:
    stdout = io.StringIO()

    exit_code = fee_estimate.main(
        [
            "--target",
            "1",
            "--target",
            "2",
            "--timestamp",
            str(TIMESTAMP),
            "--last-block-ts",
            str(LAST_BLOCK_TS),
            "--format",
            "json",
            *_bucket_args(),
        ],
        stdout=stdout,
    )

    assert exit_code == 0
    payload = json.loads(stdout.getvalue())
    assert [item["target"] for item in payload] == [1, 2]
    assert payload[0]["fee_rate"] > payload[1]["fee_rate"]


def test_reads_fee_rates_from_stdin() -> None:
    stdout = io.StringIO()

    exit_code = fee_estimate.main(
        [
            "--target",
            "6",
            "--timestamp",
            str(TIMESTAMP),
            "--last-block-ts",
            str(LAST_BLOCK_TS),
            "--fee-rates",
            "-",
        ],
        stdin=io.StringIO("1.0\n2.5\n\n12.0\n"),
        stdout=stdout,
    )

    assert exit_code == 0
    target, value = stdout.getvalue().strip().split("\t")
    assert target == "6"
    assert float(value) >= 1.0


def test_reads_json_fee_rates_and_registry_file(tmp_path: Path) -> None:
    rates = tmp_path / "rates.json"
    rates.write_text(json.dumps([1.0, 3.5, 40.0]))
    registry = tmp_path / "models.bin"
    write_registry(registry, compile_models(builtin_model_sources()).registry())
    stdout = io.StringIO()

    exit_code = fee_estimate.main(
        [
            "--target",
            "3",
            "--timestamp",
            str(TIMESTAMP),
            "--last-block-ts",
            str(LAST_BLOCK_TS),
            "--fee-rates",
            str(rates),
            "--registry",
            str(registry),
            "--no-floor",
        ],
        stdout=stdout,
    )

    assert exit_code == 0
    assert stdout.getvalue().startswith("3\t")


def test_invalid_target_exits_with_error(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        fee_estimate.main(
            ["--target", "65536", "--last-block-ts", str(LAST_BLOCK_TS), *_bucket_args()],
            stdout=io.StringIO(),
        )

    assert excinfo.value.code == 1
    assert capsys.readouterr().err.startswith("fee_estimate: block_target")


def test_missing_registry_exits_with_error(tmp_path: Path, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        fee_estimate.main(
            [
                "--target",
                "1",
                "--last-block-ts",
                str(LAST_BLOCK_TS),
                "--registry",
                str(tmp_path / "missing.bin"),
                *_bucket_args(),
            ],
            stdout=io.StringIO(),
        )

    assert excinfo.value.code == 1
    assert "Unable to read model registry" in capsys.readouterr().err


def test_bad_bucket_list_is_a_usage_error() -> None:
    with pytest.raises(SystemExit) as excinfo:
        fee_estimate.main(["--target", "1", "--last-block-ts", "0", "--buckets", "1,x"])

    assert excinfo.value.code == 2
