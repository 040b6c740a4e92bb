"""Runtime components: matrices, compiled models and the fee estimator."""

from .common import (
    ConfigurationError,
    DecodeError,
    FeeModelError,
    HiddenSizeMismatch,
    MatrixHeightError,
    MatrixWidthError,
    MissingNormalizationStat,
    MultiOutputUnsupported,
    RegistryError,
    ShapeMismatch,
    ShapeRegistryClosed,
)
from .estimator import EstimatorConfig, FeeModel, default_registry, estimate
from .fee_buckets import FeeBuckets, create_buckets_limits
from .matrix import Matrix
from .model import CompiledModel, NormalizationStats, WeightsBundle, norm_predict, normalize, predict
from .registry import ModelConstructor, ModelRegistry, load_registry
from .shapes import BASELINE_SHAPES, ShapeRegistry, ShapeToken

__all__ = [
    "BASELINE_SHAPES",
    "CompiledModel",
    "ConfigurationError",
    "DecodeError",
    "EstimatorConfig",
    "FeeBuckets",
    "FeeModel",
    "FeeModelError",
    "HiddenSizeMismatch",
    "Matrix",
    "MatrixHeightError",
    "MatrixWidthError",
    "MissingNormalizationStat",
    "ModelConstructor",
    "ModelRegistry",
    "MultiOutputUnsupported",
    "NormalizationStats",
    "RegistryError",
    "ShapeMismatch",
    "ShapeRegistry",
    "ShapeRegistryClosed",
    "ShapeToken",
    "WeightsBundle",
    "create_buckets_limits",
    "default_registry",
    "estimate",
    "load_registry",
    "norm_predict",
    "normalize",
    "predict",
]
