"""Offline compilation of trained model containers into a model registry.

Every named container is decoded, checked for the fixed network topology
(shared hidden size, single output), its dimensions are registered in the
shape registry, and a :class:`~fee_model.inference.registry.ModelConstructor`
embedding the weights as one raw float32 blob is emitted. The resulting
registry file is what the runtime loads; compilation never happens per
request.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..inference.common import (
    ConfigurationError,
    DecodeError,
    FeeModelError,
    HiddenSizeMismatch,
    MultiOutputUnsupported,
    ShapeMismatch,
)
from ..inference.registry import ModelConstructor, ModelRegistry, encode_registry, payload_layout
from ..inference.shapes import ShapeRegistry
from .model_container import RawModelRecord, load_container

logger = logging.getLogger(__name__)

CUSTOM_MODELS_ENV_VAR = "CUSTOM_FEE_MODELS"
VERBOSE_ENV_VAR = "FEE_MODEL_VERBOSE"
CUSTOM_FEE_ERR = (
    "Custom models must be specified with a comma separated list of `<name>:<path>`, "
    "with no space in between. Trailing commas are not supported"
)

MODELS_DIR = Path(__file__).resolve().parents[1] / "models"
BUILTIN_MODELS: Tuple[Tuple[str, str], ...] = (
    ("low", "low.msgpack"),
    ("high", "high.msgpack"),
)


@dataclass(frozen=True)
class ModelSource:
    """A named model container on disk."""

    name: str
    path: Path


def builtin_model_sources() -> List[ModelSource]:
    return [ModelSource(name, MODELS_DIR / filename) for name, filename in BUILTIN_MODELS]


def parse_model_list(text: str) -> List[ModelSource]:
    """Parse ``name:path`` pairs separated by commas.

    No whitespace, empty items or trailing separators are accepted.
    """

    if not text or any(char.isspace() for char in text):
        raise ConfigurationError(CUSTOM_FEE_ERR)
    sources: List[ModelSource] = []
    for item in text.split(","):
        parts = item.split(":")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ConfigurationError(CUSTOM_FEE_ERR)
        sources.append(ModelSource(parts[0], Path(parts[1])))
    return sources


def model_sources_from_env(environ: Optional[Mapping[str, str]] = None) -> List[ModelSource]:
    environ = os.environ if environ is None else environ
    value = environ.get(CUSTOM_MODELS_ENV_VAR)
    if value is None:
        return []
    return parse_model_list(value)


def default_model_sources(environ: Optional[Mapping[str, str]] = None) -> List[ModelSource]:
    """Built-in models followed by any ``CUSTOM_FEE_MODELS`` entries."""

    return builtin_model_sources() + model_sources_from_env(environ)


# ---------------------------------------------------------------------------
# Compilation


def compile_record(name: str, record: RawModelRecord, shapes: ShapeRegistry) -> ModelConstructor:
    """Validate ``record`` and emit the constructor for model ``name``.

    Raises :class:`HiddenSizeMismatch` when the first two layers disagree on
    the hidden size and :class:`MultiOutputUnsupported` when the last layer
    has more than one output.
    """

    input_size = len(record.fields)
    l0_size = record.l0_bias.width
    l1_size = record.l1_bias.width
    output_size = record.l2_bias.width

    if l0_size != l1_size:
        raise HiddenSizeMismatch(l0_size, l1_size)
    if output_size != 1:
        raise MultiOutputUnsupported(output_size)
    if input_size == 0:
        raise ConfigurationError(f"Model {name} declares no input fields")
    if len(set(record.fields)) != input_size:
        raise ConfigurationError(f"Model {name} declares duplicate input fields")

    tensors = (
        record.l0_kernel,
        record.l0_bias,
        record.l1_kernel,
        record.l1_bias,
        record.l2_kernel,
        record.l2_bias,
    )
    layout = payload_layout(input_size, l0_size, output_size)
    for tensor, expected in zip(tensors, layout):
        if tensor.shape != expected:
            raise ShapeMismatch(f"model {name}", expected, tensor.shape)

    missing = [field for field in record.fields if field not in record.mean or field not in record.std]
    if missing:
        logger.warning(
            "Model %s has no normalization stats for %s; inference will fail for it",
            name,
            ", ".join(missing),
        )
    unused = sorted((set(record.mean) | set(record.std)) - set(record.fields))
    if unused:
        logger.warning("Model %s carries unused normalization stats: %s", name, ", ".join(unused))

    tokens = [shapes.register(dim) for dim in (input_size, l0_size, output_size)]
    payload = b"".join(tensor.to_bytes() for tensor in tensors)
    logger.debug(
        "Model %s: input=%d hidden=%d output=%d alpha=%r payload=%d bytes",
        name,
        input_size,
        l0_size,
        output_size,
        record.alpha,
        len(payload),
    )
    return ModelConstructor(
        name=name,
        input_size=tokens[0],
        hidden_size=tokens[1],
        output_size=tokens[2],
        fields=record.fields,
        mean=record.mean,
        std=record.std,
        alpha=record.alpha,
        payload=payload,
    )


@dataclass(frozen=True)
class CompiledRegistry:
    """Frozen shape registry plus constructors, in declaration order."""

    shapes: ShapeRegistry
    constructors: Tuple[ModelConstructor, ...]

    def names(self) -> Tuple[str, ...]:
        return tuple(constructor.name for constructor in self.constructors)

    def to_bytes(self) -> bytes:
        return encode_registry(self.shapes, self.constructors)

    def registry(self) -> ModelRegistry:
        return ModelRegistry(self.shapes, self.constructors)


def compile_models(
    sources: Sequence[ModelSource], *, shapes: Optional[ShapeRegistry] = None
) -> CompiledRegistry:
    """Compile every source; the shape registry is frozen once all are done."""

    shapes = shapes if shapes is not None else ShapeRegistry()
    constructors: List[ModelConstructor] = []
    seen: Dict[str, Path] = {}
    for source in sources:
        if source.name in seen:
            raise ConfigurationError(
                f"Model {source.name!r} declared twice ({seen[source.name]} and {source.path})"
            )
        seen[source.name] = source.path
        logger.info("Compiling model %s from %s", source.name, source.path)
        try:
            record = load_container(source.path)
        except DecodeError:
            logger.error("Unable to decode model container %s", source.path)
            raise
        constructors.append(compile_record(source.name, record, shapes))
    shapes.freeze()
    logger.info(
        "Compiled %d model(s); shape registry: %s",
        len(constructors),
        ", ".join(str(dim) for dim in shapes.table()),
    )
    return CompiledRegistry(shapes=shapes, constructors=tuple(constructors))


# ---------------------------------------------------------------------------
# Summary


@dataclass(frozen=True)
class ModelInfo:
    name: str
    source: Path
    signature: Tuple[int, int, int]
    alpha: float
    bytes: int
    crc32c: int


@dataclass(frozen=True)
class CompilationSummary:
    """Summary of a registry written by :func:`compile_registry`."""

    output: Path
    models: Tuple[ModelInfo, ...]
    shapes: Tuple[int, ...]
    total_bytes: int
    log_path: Path | None

    @property
    def model_count(self) -> int:
        return len(self.models)

    def to_dict(self) -> Dict[str, object]:
        return {
            "output": str(self.output),
            "log_path": str(self.log_path) if self.log_path is not None else None,
            "shapes": list(self.shapes),
            "models": [
                {
                    "name": info.name,
                    "source": str(info.source),
                    "signature": list(info.signature),
                    "alpha": info.alpha,
                    "bytes": info.bytes,
                    "crc32c": f"{info.crc32c:08x}",
                }
                for info in self.models
            ],
            "total_bytes": self.total_bytes,
        }


def format_summary(summary: CompilationSummary) -> str:
    """Return a human-friendly multi-line summary of the compiled registry."""

    header = "Fee Model Compilation Summary"
    lines = [header, "=" * len(header)]
    lines.append(f"Output  : {summary.output}")
    if summary.log_path:
        lines.append(f"Log file: {summary.log_path}")
    lines.append("Shapes  : " + ", ".join(str(dim) for dim in summary.shapes))

    lines.append("")
    lines.append("Models:")
    if summary.models:
        name_width = max(max(len(info.name) for info in summary.models), len("Name"))
        header_row = f"  {'Name'.ljust(name_width)}  Signature      Alpha       Bytes"
        lines.append(header_row)
        lines.append("  " + "-" * (len(header_row) - 2))
        for info in summary.models:
            signature = " × ".join(str(dim) for dim in info.signature)
            lines.append(
                "  "
                + f"{info.name.ljust(name_width)}  {signature:<13}  {info.alpha:<10.6g}  {info.bytes:>6}"
            )
    else:
        lines.append("  <no models compiled>")

    lines.append("")
    lines.append(
        f"Total models: {summary.model_count} | Total registry bytes: {summary.total_bytes}"
    )
    return "\n".join(lines)


def render_summary(summary: CompilationSummary, *, format: str = "table") -> str:
    normalized = format.lower()
    if normalized == "table":
        return format_summary(summary)
    if normalized == "json":
        return json.dumps(summary.to_dict(), indent=2, sort_keys=True)
    raise ValueError(f"Unsupported summary format: {format}")


def compile_registry(
    output: Path,
    *,
    sources: Optional[Sequence[ModelSource]] = None,
    verbose: bool = False,
) -> CompilationSummary:
    """Compile ``sources`` (default: built-in plus custom models) into ``output``.

    A debug log of the run is written next to the registry as
    ``<output>.log``. The registry file is only written once every model
    compiled successfully.
    """

    output = Path(output).expanduser()
    output.parent.mkdir(parents=True, exist_ok=True)
    sources = list(sources) if sources is not None else default_model_sources()

    if verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    log_path = output.with_name(output.name + ".log")
    previous_level = logger.level
    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    logger.addHandler(file_handler)
    logger.setLevel(logging.DEBUG)
    try:
        logger.info("Writing compilation log to %s", log_path)
        try:
            compiled = compile_models(sources)
        except FeeModelError as exc:
            logger.error("Compilation failed: %s", exc)
            raise
        data = compiled.to_bytes()
        output.write_bytes(data)
        logger.info("Wrote %d byte registry to %s", len(data), output)
    finally:
        logger.removeHandler(file_handler)
        file_handler.close()
        logger.setLevel(previous_level)

    paths = {source.name: source.path for source in sources}
    models = tuple(
        ModelInfo(
            name=constructor.name,
            source=paths[constructor.name],
            signature=constructor.signature,
            alpha=constructor.alpha,
            bytes=len(constructor.payload),
            crc32c=constructor.crc32c,
        )
        for constructor in compiled.constructors
    )
    return CompilationSummary(
        output=output,
        models=models,
        shapes=compiled.shapes.table(),
        total_bytes=len(data),
        log_path=log_path,
    )


# ---------------------------------------------------------------------------
# Command line


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Compile trained fee model containers into a model registry.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Path of the registry file to write",
    )
    parser.add_argument(
        "--model",
        dest="models",
        action="append",
        default=[],
        metavar="NAME:PATH",
        help=(
            "Additional model container; may be repeated or given as a comma "
            f"separated list. Entries from {CUSTOM_MODELS_ENV_VAR} are always included"
        ),
    )
    parser.add_argument(
        "--no-builtin",
        dest="builtin",
        action="store_false",
        help="Do not compile the built-in low/high models",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help=f"Enable verbose logging (can also set {VERBOSE_ENV_VAR}=1)",
    )
    parser.add_argument(
        "--quiet",
        dest="verbose",
        action="store_false",
        help="Disable verbose logging",
    )
    parser.add_argument(
        "--summary-format",
        choices=("table", "json"),
        default="table",
        help="Format used when printing the compilation summary",
    )
    parser.add_argument(
        "--print-summary",
        dest="print_summary",
        action="store_true",
        default=True,
        help="Print the compilation summary",
    )
    parser.add_argument(
        "--no-print-summary",
        dest="print_summary",
        action="store_false",
        help="Do not print the compilation summary",
    )
    args = parser.parse_args(argv)
    if args.verbose is None:
        args.verbose = os.environ.get(VERBOSE_ENV_VAR, "").lower() in {"1", "true", "yes", "on"}
    return args


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    try:
        sources = builtin_model_sources() if args.builtin else []
        for item in args.models:
            sources.extend(parse_model_list(item))
        sources.extend(model_sources_from_env())
        summary = compile_registry(args.output, sources=sources, verbose=args.verbose)
    except (FeeModelError, OSError) as exc:
        print(f"model_compiler: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    if args.print_summary:
        print(render_summary(summary, format=args.summary_format))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
