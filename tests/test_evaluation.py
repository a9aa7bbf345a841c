from __future__ import annotations

import numpy as np
import pytest

from src.data import RatingData
from src.evaluation import evaluate, logistic_loss_sum


class ConstantPredictor:
    def __init__(self, value: float) -> None:
        self.value = value

    def predict_many(self, users: np.ndarray, items: np.ndarray) -> np.ndarray:
        return np.full(len(users), self.value, dtype=np.float64)


def test_evaluate_reports_rmse_mae_nmae() -> None:
    ratings = RatingData(users=np.array([0, 1]), items=np.array([0, 0]), values=np.array([1.0, 5.0]))

    metrics = evaluate(ConstantPredictor(2.0), ratings)

    assert metrics["RMSE"] == pytest.approx(np.sqrt((1.0 + 9.0) / 2))
    assert metrics["MAE"] == pytest.approx(2.0)
    assert metrics["NMAE"] == pytest.approx(0.5)


def test_evaluate_rejects_empty_collections() -> None:
    ratings = RatingData(users=np.zeros(0), items=np.zeros(0), values=np.zeros(0))

    with pytest.raises(ValueError):
        evaluate(ConstantPredictor(1.0), ratings)


def test_logistic_loss_is_smallest_at_the_target() -> None:
    ratings = RatingData(users=np.array([0]), items=np.array([0]), values=np.array([4.0]), min_rating=1.0, max_rating=5.0)

    at_target = logistic_loss_sum(ConstantPredictor(4.0), ratings, min_rating=1.0, max_rating=5.0)
    off_target = logistic_loss_sum(ConstantPredictor(2.0), ratings, min_rating=1.0, max_rating=5.0)

    assert at_target < off_target
