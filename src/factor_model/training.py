"""Epoch driver for SGD-trained factor models."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import numpy as np

from ..data import RatingData
from ..evaluation import RatingPredictor, absolute_error_sum, logistic_loss_sum, squared_error_sum
from .config import FactorModelConfig, OptimizationTarget


logger = logging.getLogger(__name__)


class EpochStrategy(Protocol):
    """What `run_epochs` needs from a model: one SGD pass and an objective."""

    config: FactorModelConfig
    learn_rate: float

    def iterate(self, rating_indices: np.ndarray, update_user: bool, update_item: bool) -> None: ...

    def compute_objective(self) -> float: ...


@dataclass(frozen=True)
class EpochStats:
    epoch: int
    learn_rate: float
    update_user: bool
    update_item: bool
    objective: Optional[float] = None


def run_epochs(
    model: EpochStrategy,
    ratings: RatingData,
    rng: np.random.Generator,
    *,
    on_epoch: Optional[Callable[[EpochStats], None]] = None,
) -> List[EpochStats]:
    """Run `config.num_iter` passes over shuffled rating indices.

    After each pass the learn rate is multiplied by `decay`, or, with
    `bold_driver`, grown by 5% when the objective went down and halved when
    it went up.
    """
    cfg = model.config
    model.learn_rate = float(cfg.learn_rate)

    last_objective = model.compute_objective() if cfg.bold_driver else math.nan

    history: List[EpochStats] = []
    for epoch in range(1, int(cfg.num_iter) + 1):
        if cfg.alternating_updates:
            update_user = epoch % 2 == 1
            update_item = not update_user
        else:
            update_user = update_item = True

        used_learn_rate = model.learn_rate
        model.iterate(ratings.random_index(rng), update_user, update_item)

        objective: Optional[float] = None
        if cfg.bold_driver:
            objective = model.compute_objective()
            if objective > last_objective:
                model.learn_rate *= 0.5
            elif objective < last_objective:
                model.learn_rate *= 1.05
            last_objective = objective
            logger.info("epoch=%d objective=%.6f learn_rate=%.6g", epoch, objective, model.learn_rate)
        else:
            model.learn_rate *= float(cfg.decay)
            logger.debug("epoch=%d learn_rate=%.6g", epoch, model.learn_rate)

        stats = EpochStats(
            epoch=epoch,
            learn_rate=used_learn_rate,
            update_user=update_user,
            update_item=update_item,
            objective=objective,
        )
        history.append(stats)
        if on_epoch is not None:
            on_epoch(stats)

    return history


def gradient_common(target: OptimizationTarget, sig_score: float, err: float, rating_range_size: float) -> float:
    """Shared gradient factor of one SGD step for the given optimization target."""
    if target is OptimizationTarget.RMSE:
        return err * sig_score * (1.0 - sig_score) * rating_range_size
    if target is OptimizationTarget.MAE:
        return math.copysign(1.0, err) * sig_score * (1.0 - sig_score) * rating_range_size if err != 0.0 else 0.0
    return err


def training_loss(
    model: RatingPredictor,
    ratings: RatingData,
    target: OptimizationTarget,
    *,
    min_rating: float,
    max_rating: float,
) -> float:
    """Reconstruction loss matching the optimization target."""
    if target is OptimizationTarget.RMSE:
        return squared_error_sum(model, ratings)
    if target is OptimizationTarget.MAE:
        return absolute_error_sum(model, ratings)
    return logistic_loss_sum(model, ratings, min_rating=min_rating, max_rating=max_rating)
