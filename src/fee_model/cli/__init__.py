"""Command line entry points."""

from __future__ import annotations

import importlib
from typing import Any

_LOCAL_SUBMODULES = {
    "fee_estimate": "fee_model.cli.fee_estimate",
    "model_compiler": "fee_model.tools.model_compiler",
}


def __getattr__(name: str) -> Any:  # pragma: no cover - simple forwarding
    if name in _LOCAL_SUBMODULES:
        return importlib.import_module(_LOCAL_SUBMODULES[name])
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:  # pragma: no cover - reflective helper
    return sorted(_LOCAL_SUBMODULES)


__all__ = sorted(_LOCAL_SUBMODULES)
