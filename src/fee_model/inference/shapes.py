"""Closed set of dimension tokens shared by every compiled model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Tuple

from .common import ShapeRegistryClosed

BASELINE_SHAPES: Tuple[int, ...] = (1, 2, 4, 8, 16, 20, 32, 64, 128, 256, 512)


@dataclass(frozen=True, order=True)
class ShapeToken:
    """A dimension value fixed before any model is evaluated."""

    value: int

    def __int__(self) -> int:
        return self.value

    def __index__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return f"Size{self.value}"


class ShapeRegistry:
    """Deduplicated dimension tokens, populated once and then frozen.

    The registry is seeded with :data:`BASELINE_SHAPES` so that trivial shapes
    never need to be registered by individual models.
    """

    def __init__(self, baseline: Iterable[int] = BASELINE_SHAPES) -> None:
        self._tokens: dict[int, ShapeToken] = {}
        self._frozen = False
        for dim in baseline:
            self.register(dim)

    @classmethod
    def from_table(cls, dims: Iterable[int]) -> "ShapeRegistry":
        """Rebuild a frozen registry from a persisted shape table."""

        registry = cls(baseline=())
        for dim in dims:
            registry.register(dim)
        registry.freeze()
        return registry

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, dim: int) -> ShapeToken:
        dim = int(dim)
        if dim <= 0:
            raise ValueError(f"Shape dimensions must be positive, got {dim}")
        token = self._tokens.get(dim)
        if token is not None:
            return token
        if self._frozen:
            raise ShapeRegistryClosed(f"Cannot register dimension {dim}: shape registry is frozen")
        token = ShapeToken(dim)
        self._tokens[dim] = token
        return token

    def token(self, dim: int) -> ShapeToken:
        try:
            return self._tokens[int(dim)]
        except KeyError:
            raise KeyError(f"Dimension {dim} is not registered") from None

    def freeze(self) -> None:
        self._frozen = True

    def all(self) -> FrozenSet[ShapeToken]:
        return frozenset(self._tokens.values())

    def table(self) -> Tuple[int, ...]:
        return tuple(sorted(self._tokens))

    def __contains__(self, dim: object) -> bool:
        if isinstance(dim, ShapeToken):
            dim = dim.value
        return dim in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"ShapeRegistry({state}, {list(self.table())})"


__all__ = ["BASELINE_SHAPES", "ShapeRegistry", "ShapeToken"]
