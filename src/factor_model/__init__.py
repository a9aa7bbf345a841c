"""Sigmoid-bounded latent factor models for rating prediction.

- `SigmoidCombinedAsymmetricFactorModel`: users are expressed through the items
  they rated and items through the users who rated them; the neighbor
  aggregates replace directly learned user/item vectors.
- `BiasedMatrixFactorization`: the plain biased MF with learned user and item
  vectors, driven by the same epoch loop.
"""
from __future__ import annotations

from .asymmetric import SigmoidCombinedAsymmetricFactorModel
from .biased_mf import BiasedMatrixFactorization
from .config import ASYMMETRIC_DEFAULTS, FactorModelConfig, OptimizationTarget
from .model_io import MODEL_FORMAT_VERSION, ModelFileError

__all__ = [
    "ASYMMETRIC_DEFAULTS",
    "BiasedMatrixFactorization",
    "FactorModelConfig",
    "MODEL_FORMAT_VERSION",
    "ModelFileError",
    "OptimizationTarget",
    "SigmoidCombinedAsymmetricFactorModel",
]
