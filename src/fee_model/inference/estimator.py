"""Fee estimation entry point routing between the low and high target models."""

from __future__ import annotations

import functools
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence

from .common import ShapeMismatch
from .fee_buckets import DEFAULT_INCREMENT_PERCENT, DEFAULT_UPPER_LIMIT, FeeBuckets
from .model import CompiledModel
from .registry import ModelRegistry, load_registry

logger = logging.getLogger(__name__)

REGISTRY_ENV_VAR = "FEE_MODEL_REGISTRY"
U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF
PACKAGED_REGISTRY = Path(__file__).resolve().parents[1] / "models" / "registry.bin"


@dataclass(frozen=True)
class EstimatorConfig:
    """Routing and post-processing settings of :class:`FeeModel`."""

    low_target_threshold: int = 2
    low_model: str = "low"
    high_model: str = "high"
    increment_percent: int = DEFAULT_INCREMENT_PERCENT
    upper_limit: float = DEFAULT_UPPER_LIMIT
    min_fee_rate: Optional[float] = 1.0


@functools.lru_cache(maxsize=None)
def default_registry() -> ModelRegistry:
    """Registry used when none is passed explicitly.

    ``FEE_MODEL_REGISTRY`` selects a registry file written by the model
    compiler; otherwise the registry shipped in the package is loaded. Either
    way this happens once per process.
    """

    path = os.environ.get(REGISTRY_ENV_VAR)
    return load_registry(Path(path) if path else PACKAGED_REGISTRY)


def _check_u32(value: int, name: str) -> int:
    value = int(value)
    if not 0 <= value <= U32_MAX:
        raise ValueError(f"{name} must fit in an unsigned 32-bit integer, got {value}")
    return value


class FeeModel:
    """Fee rate estimator backed by two compiled models.

    Both models are materialized when the estimator is created, so a single
    instance can serve concurrent callers without further synchronization.
    """

    def __init__(
        self,
        low: CompiledModel,
        high: CompiledModel,
        config: Optional[EstimatorConfig] = None,
    ) -> None:
        if low.signature != high.signature:
            raise ShapeMismatch(
                "low/high model signature",
                low.signature,
                high.signature,
            )
        self.low = low
        self.high = high
        self.config = config or EstimatorConfig()
        self.buckets = FeeBuckets(self.config.increment_percent, self.config.upper_limit)

    @classmethod
    def from_registry(
        cls,
        registry: Optional[ModelRegistry] = None,
        config: Optional[EstimatorConfig] = None,
    ) -> "FeeModel":
        registry = registry if registry is not None else default_registry()
        config = config or EstimatorConfig()
        return cls(registry.get(config.low_model), registry.get(config.high_model), config)

    def select(self, block_target: int) -> CompiledModel:
        if block_target <= self.config.low_target_threshold:
            return self.low
        return self.high

    def features(
        self,
        block_target: int,
        timestamp: Optional[int],
        fee_buckets: Sequence[int],
        last_block_ts: int,
    ) -> Dict[str, float]:
        """Build the named feature map consumed by the models."""

        if not 0 <= int(block_target) <= U16_MAX:
            raise ValueError(f"block_target must be between 0 and {U16_MAX}, got {block_target}")
        if len(fee_buckets) != len(self.buckets):
            raise ValueError(
                f"Expected {len(self.buckets)} fee buckets, got {len(fee_buckets)}"
            )
        last_block_ts = _check_u32(last_block_ts, "last_block_ts")
        if timestamp is None:
            moment = datetime.now(timezone.utc)
        else:
            moment = datetime.fromtimestamp(_check_u32(timestamp, "timestamp"), tz=timezone.utc)

        features: Dict[str, float] = {
            "confirms_in": float(block_target),
            "day_of_week": float(moment.weekday()),
            "hour": float(moment.hour),
            "delta_last": float(int(moment.timestamp()) - last_block_ts),
        }
        for index, count in enumerate(fee_buckets):
            features[f"b{index}"] = float(count)
        return features

    def estimate_with_buckets(
        self,
        block_target: int,
        timestamp: Optional[int],
        fee_buckets: Sequence[int],
        last_block_ts: int,
    ) -> float:
        inputs = self.features(block_target, timestamp, fee_buckets, last_block_ts)
        model = self.select(block_target)
        raw = model.norm_predict(inputs)
        logger.debug("Target %d routed to model %s: raw estimate %r", block_target, model.name, raw)
        return self.apply_floor(raw)

    def estimate(
        self,
        block_target: int,
        timestamp: Optional[int],
        fee_rates: Sequence[float],
        last_block_ts: int,
    ) -> float:
        """Estimate the fee rate needed to confirm within ``block_target`` blocks.

        ``timestamp`` defaults to the current time. ``fee_rates`` are the fee
        rates (fee / virtual size) of recent transactions and
        ``last_block_ts`` the timestamp of the last observed block.
        """

        fee_buckets = self.buckets.get(fee_rates)
        return self.estimate_with_buckets(block_target, timestamp, fee_buckets, last_block_ts)

    def apply_floor(self, value: float) -> float:
        floor = self.config.min_fee_rate
        if floor is None:
            return value
        return max(value, floor)


def estimate(
    confirmation_target: int,
    timestamp: Optional[int],
    recent_fee_rates: Sequence[float],
    last_block_timestamp: int,
    *,
    registry: Optional[ModelRegistry] = None,
    config: Optional[EstimatorConfig] = None,
) -> float:
    model = FeeModel.from_registry(registry, config)
    return model.estimate(confirmation_target, timestamp, recent_fee_rates, last_block_timestamp)


__all__ = [
    "PACKAGED_REGISTRY",
    "REGISTRY_ENV_VAR",
    "EstimatorConfig",
    "FeeModel",
    "default_registry",
    "estimate",
]
