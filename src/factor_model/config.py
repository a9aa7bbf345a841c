from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OptimizationTarget(str, Enum):
    """Loss the SGD step descends on."""

    RMSE = "RMSE"
    MAE = "MAE"
    LOGISTIC_LOSS = "LogisticLoss"


@dataclass(frozen=True)
class FactorModelConfig:
    """Hyperparameters shared by the biased factor models.

    `reg_u` / `reg_i` fall back to `regularization` when unset.
    """

    num_factors: int = 10
    num_iter: int = 30
    learn_rate: float = 0.01
    bias_learn_rate: float = 1.0
    regularization: float = 0.015
    reg_u: Optional[float] = None
    reg_i: Optional[float] = None
    bias_reg: float = 0.01
    frequency_regularization: bool = False
    init_mean: float = 0.0
    init_std_dev: float = 0.1
    decay: float = 1.0
    bold_driver: bool = False
    alternating_updates: bool = False
    loss: OptimizationTarget = OptimizationTarget.RMSE

    def __post_init__(self) -> None:
        if int(self.num_factors) <= 0:
            raise ValueError(f"num_factors must be > 0, got {self.num_factors}")
        if int(self.num_iter) < 0:
            raise ValueError(f"num_iter must be >= 0, got {self.num_iter}")
        if float(self.learn_rate) <= 0.0:
            raise ValueError(f"learn_rate must be > 0, got {self.learn_rate}")
        if float(self.init_std_dev) < 0.0:
            raise ValueError(f"init_std_dev must be >= 0, got {self.init_std_dev}")
        # Accept plain strings from YAML/argparse.
        object.__setattr__(self, "loss", OptimizationTarget(self.loss))

    @property
    def user_reg(self) -> float:
        return float(self.regularization if self.reg_u is None else self.reg_u)

    @property
    def item_reg(self) -> float:
        return float(self.regularization if self.reg_i is None else self.reg_i)


# Paterek-style defaults for the asymmetric model: small steps on the factors,
# strongly regularized biases that move faster than the factors.
ASYMMETRIC_DEFAULTS = FactorModelConfig(
    regularization=0.015,
    learn_rate=0.001,
    bias_learn_rate=0.7,
    bias_reg=0.33,
)
