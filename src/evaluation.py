"""Rating-prediction error measures and training losses."""

from __future__ import annotations

from typing import Protocol

import numpy as np

from .data import RatingData


class RatingPredictor(Protocol):
    def predict_many(self, users: np.ndarray, items: np.ndarray) -> np.ndarray: ...


def squared_error_sum(model: RatingPredictor, ratings: RatingData) -> float:
    preds = model.predict_many(ratings.users, ratings.items)
    return float(np.sum(np.square(preds - ratings.values)))


def absolute_error_sum(model: RatingPredictor, ratings: RatingData) -> float:
    preds = model.predict_many(ratings.users, ratings.items)
    return float(np.sum(np.abs(preds - ratings.values)))


def logistic_loss_sum(model: RatingPredictor, ratings: RatingData, *, min_rating: float, max_rating: float) -> float:
    """Cross-entropy between ratings and predictions, both rescaled to [0, 1]."""
    span = float(max_rating - min_rating)
    preds = model.predict_many(ratings.users, ratings.items)
    target = (ratings.values - min_rating) / span
    p = np.clip((preds - min_rating) / span, 1e-12, 1.0 - 1e-12)
    return float(-np.sum(target * np.log(p) + (1.0 - target) * np.log(1.0 - p)))


def evaluate(model: RatingPredictor, ratings: RatingData) -> dict[str, float]:
    """RMSE, MAE and range-normalized MAE over a rating collection."""
    n = len(ratings)
    if n == 0:
        raise ValueError("cannot evaluate on an empty rating collection")

    rmse = float(np.sqrt(squared_error_sum(model, ratings) / n))
    mae = absolute_error_sum(model, ratings) / n
    span = ratings.max_rating - ratings.min_rating
    nmae = mae / span if span > 0 else float("nan")
    return {"RMSE": rmse, "MAE": float(mae), "NMAE": float(nmae)}
