"""Normalization and forward pass for compiled fee models.

The network is a fixed three layer perceptron::

    a = relu(x · L0_kernel + L0_bias, alpha)
    b = relu(a · L1_kernel + L1_bias, alpha)
    c = b · L2_kernel + L2_bias

and the estimate is the single scalar ``c[0][0]``. The final layer has no
activation and no floor: callers that need a minimum fee rate apply it to the
returned value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Sequence, Tuple

import numpy as np

from .common import MissingNormalizationStat, MultiOutputUnsupported, ShapeMismatch
from .matrix import Matrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizationStats:
    """Per-feature mean and standard deviation."""

    mean: Mapping[str, float]
    std: Mapping[str, float]

    def __post_init__(self) -> None:
        object.__setattr__(self, "mean", MappingProxyType(dict(self.mean)))
        object.__setattr__(self, "std", MappingProxyType(dict(self.std)))

    def lookup(self, field_name: str) -> Tuple[float, float]:
        if field_name not in self.mean:
            raise MissingNormalizationStat(field_name, "mean")
        if field_name not in self.std:
            raise MissingNormalizationStat(field_name, "std")
        return self.mean[field_name], self.std[field_name]


@dataclass(frozen=True)
class WeightsBundle:
    """Kernels and biases of the three dense layers.

    Kernels are ``height=fan_in`` by ``width=fan_out``; biases are single rows.
    """

    l0_kernel: Matrix
    l0_bias: Matrix
    l1_kernel: Matrix
    l1_bias: Matrix
    l2_kernel: Matrix
    l2_bias: Matrix

    def __post_init__(self) -> None:
        hidden = self.l0_bias.width
        output = self.l2_bias.width
        expected = (
            ("layer 0 kernel", self.l0_kernel, (hidden, self.l0_kernel.height)),
            ("layer 0 bias", self.l0_bias, (hidden, 1)),
            ("layer 1 kernel", self.l1_kernel, (hidden, hidden)),
            ("layer 1 bias", self.l1_bias, (hidden, 1)),
            ("layer 2 kernel", self.l2_kernel, (output, hidden)),
            ("layer 2 bias", self.l2_bias, (output, 1)),
        )
        for label, matrix, shape in expected:
            if matrix.shape != shape:
                raise ShapeMismatch(label, shape, matrix.shape)
        if output != 1:
            raise MultiOutputUnsupported(output)

    @property
    def input_size(self) -> int:
        return self.l0_kernel.height

    @property
    def hidden_size(self) -> int:
        return self.l0_bias.width

    @property
    def output_size(self) -> int:
        return self.l2_bias.width


@dataclass(frozen=True)
class CompiledModel:
    """An immutable, ready to evaluate fee model.

    Instances are safe to share between threads: nothing mutates them after
    construction.
    """

    name: str
    norm: NormalizationStats
    weights: WeightsBundle
    fields: Tuple[str, ...]
    alpha: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        if len(self.fields) != self.weights.input_size:
            raise ShapeMismatch(
                "field list",
                (len(self.fields), 1),
                (self.weights.input_size, 1),
            )

    @property
    def signature(self) -> Tuple[int, int, int]:
        """``(input, hidden, output)`` sizes of the network."""

        weights = self.weights
        return (weights.input_size, weights.hidden_size, weights.output_size)

    def normalize(self, inputs: Mapping[str, float]) -> Matrix:
        return normalize(self.norm, self.fields, inputs)

    def predict(self, x: Matrix) -> float:
        return predict(self, x)

    def norm_predict(self, inputs: Mapping[str, float]) -> float:
        return norm_predict(self, inputs)


def normalize(
    stats: NormalizationStats, fields: Sequence[str], inputs: Mapping[str, float]
) -> Matrix:
    """Standardize ``inputs`` into a ``[len(fields), 1]`` row.

    Fields absent from ``inputs`` default to ``0.0``; a field without a mean or
    standard deviation raises :class:`MissingNormalizationStat`.
    """

    values = np.empty(len(fields), dtype=np.float32)
    means = np.empty(len(fields), dtype=np.float32)
    stds = np.empty(len(fields), dtype=np.float32)
    for index, name in enumerate(fields):
        mean, std = stats.lookup(name)
        values[index] = inputs.get(name, 0.0)
        means[index] = mean
        stds[index] = std
    with np.errstate(divide="ignore", invalid="ignore"):
        normalized = (values - means) / stds
    return Matrix.from_buffer(normalized, width=len(fields), height=1)


def predict(model: CompiledModel, x: Matrix) -> float:
    """Run the three layer forward pass and return the raw regression value."""

    weights = model.weights
    if x.shape != (weights.input_size, 1):
        raise ShapeMismatch("model input", (weights.input_size, 1), x.shape)
    a = x.dot(weights.l0_kernel).add(weights.l0_bias).relu(model.alpha)
    b = a.dot(weights.l1_kernel).add(weights.l1_bias).relu(model.alpha)
    c = b.dot(weights.l2_kernel).add(weights.l2_bias)
    return float(c[0][0])


def norm_predict(model: CompiledModel, inputs: Mapping[str, float]) -> float:
    x = normalize(model.norm, model.fields, inputs)
    result = predict(model, x)
    logger.debug("Model %s evaluated to %r", model.name, result)
    return result


__all__ = [
    "CompiledModel",
    "NormalizationStats",
    "WeightsBundle",
    "norm_predict",
    "normalize",
    "predict",
]
