"""Estimate fee rates from the command line.

Fee rates of recent transactions are read from a file (one value per line or
a JSON list, ``-`` for stdin); alternatively a precomputed bucket histogram
can be passed with ``--buckets``. One estimate is printed per requested
confirmation target.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, TextIO

from ..inference.common import FeeModelError
from ..inference.estimator import EstimatorConfig, FeeModel
from ..inference.registry import load_registry


def _read_fee_rates(source: str, stdin: TextIO) -> List[float]:
    text = stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    stripped = text.strip()
    if not stripped:
        return []
    if stripped.startswith("["):
        values = json.loads(stripped)
        if not isinstance(values, list):
            raise ValueError("Fee rate JSON must be a list of numbers")
        return [float(value) for value in values]
    return [float(line) for line in stripped.splitlines() if line.strip()]


def _parse_buckets(text: str) -> List[int]:
    try:
        return [int(part) for part in text.split(",")]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid bucket list {text!r}: {exc}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Estimate the fee rate needed to confirm within a number of blocks"
    )
    parser.add_argument(
        "--target",
        dest="targets",
        type=int,
        action="append",
        required=True,
        help="Confirmation target in blocks; may be repeated",
    )
    parser.add_argument(
        "--timestamp",
        type=int,
        default=None,
        help="Unix timestamp of the estimate (defaults to now)",
    )
    parser.add_argument(
        "--last-block-ts",
        type=int,
        required=True,
        help="Unix timestamp of the last observed block",
    )
    inputs = parser.add_mutually_exclusive_group(required=True)
    inputs.add_argument(
        "--fee-rates",
        type=str,
        help="File with recent fee rates in sat/vB ('-' reads stdin)",
    )
    inputs.add_argument(
        "--buckets",
        type=_parse_buckets,
        help="Comma separated fee rate histogram",
    )
    parser.add_argument(
        "--registry",
        type=Path,
        default=None,
        help="Compiled model registry (defaults to the built-in models)",
    )
    parser.add_argument(
        "--no-floor",
        action="store_true",
        help="Return the raw model output without the minimum fee rate floor",
    )
    parser.add_argument(
        "--format",
        choices=("plain", "json"),
        default="plain",
        help="Output format",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(
    argv: Optional[Iterable[str]] = None,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    config = EstimatorConfig(min_fee_rate=None) if args.no_floor else EstimatorConfig()
    try:
        registry = load_registry(args.registry) if args.registry is not None else None
        model = FeeModel.from_registry(registry, config)
        results = []
        if args.buckets is not None:
            for target in args.targets:
                value = model.estimate_with_buckets(
                    target, args.timestamp, args.buckets, args.last_block_ts
                )
                results.append((target, value))
        else:
            rates = _read_fee_rates(args.fee_rates, stdin)
            for target in args.targets:
                value = model.estimate(target, args.timestamp, rates, args.last_block_ts)
                results.append((target, value))
    except (FeeModelError, ValueError, OSError) as exc:
        print(f"fee_estimate: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    _render(results, args.format, stdout)
    return 0


def _render(results: Sequence[tuple[int, float]], fmt: str, stdout: TextIO) -> None:
    if fmt == "json":
        payload = [{"target": target, "fee_rate": value} for target, value in results]
        stdout.write(json.dumps(payload) + "\n")
        return
    for target, value in results:
        stdout.write(f"{target}\t{value:.6f}\n")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
