"""Histogram of recent fee rates used as model input."""

from __future__ import annotations

from typing import Iterable, List, Tuple

DEFAULT_INCREMENT_PERCENT = 50
DEFAULT_UPPER_LIMIT = 500.0


def create_buckets_limits(increment_percent: int, upper_limit: float) -> List[float]:
    """Geometric bucket limits starting at 1.0 and ending at or past ``upper_limit``."""

    if increment_percent <= 0:
        raise ValueError(f"increment_percent must be positive, got {increment_percent}")
    factor = 1.0 + increment_percent / 100.0
    limits: List[float] = []
    current = 1.0
    while current < upper_limit:
        current *= factor
        limits.append(current)
    return limits


class FeeBuckets:
    def __init__(
        self,
        increment_percent: int = DEFAULT_INCREMENT_PERCENT,
        upper_limit: float = DEFAULT_UPPER_LIMIT,
    ) -> None:
        self.limits: Tuple[float, ...] = tuple(create_buckets_limits(increment_percent, upper_limit))
        if not self.limits:
            raise ValueError(f"upper_limit {upper_limit} yields no buckets")

    def __len__(self) -> int:
        return len(self.limits)

    def index(self, rate: float) -> int:
        for position, limit in enumerate(self.limits):
            if limit > rate:
                return position
        return len(self.limits) - 1

    def get(self, rates: Iterable[float]) -> List[int]:
        """Count ``rates`` into buckets; rates above the last limit land in the last bucket."""

        buckets = [0] * len(self.limits)
        for rate in rates:
            buckets[self.index(rate)] += 1
        return buckets

    def __repr__(self) -> str:
        return f"FeeBuckets({len(self.limits)} buckets, last limit {self.limits[-1]:.2f})"


__all__ = ["DEFAULT_INCREMENT_PERCENT", "DEFAULT_UPPER_LIMIT", "FeeBuckets", "create_buckets_limits"]
