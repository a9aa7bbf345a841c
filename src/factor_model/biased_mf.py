"""Biased matrix factorization with a sigmoid-bounded score.

r_hat(u, i) = min + sigmoid(global + b_u + b_i + <p_u, q_i>) * (max - min)

Both factor matrices are learned directly. This is the plain counterpart of
the asymmetric model and shares its state, epoch driver and file framing.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

from ..data import RatingData
from .config import FactorModelConfig
from .model_io import ModelFileError, ModelReader, write_header, write_matrix, write_scalar, write_vector
from .neighbors import interaction_counts
from .state import BiasedFactorState, biased_predictions, init_factors, regularization_complexity, sigmoid
from .training import EpochStats, gradient_common, run_epochs, training_loss


logger = logging.getLogger(__name__)

# Ratings are the only interaction source here.
_NO_COUNTS = np.zeros(0, dtype=np.int64)


class BiasedMatrixFactorization:
    def __init__(
        self,
        config: FactorModelConfig | None = None,
        *,
        ratings: RatingData | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.config = config or FactorModelConfig()
        self.ratings = ratings
        self.rng = rng if rng is not None else np.random.default_rng()
        self.learn_rate = float(self.config.learn_rate)

        self.state: Optional[BiasedFactorState] = None
        self.user_factors = np.zeros((0, self.config.num_factors), dtype=np.float64)
        self.item_factors = np.zeros((0, self.config.num_factors), dtype=np.float64)

    def _require_ratings(self) -> RatingData:
        if self.ratings is None:
            raise RuntimeError("ratings must be set before training")
        return self.ratings

    def _require_state(self) -> BiasedFactorState:
        if self.state is None:
            raise RuntimeError("model is not trained or loaded")
        return self.state

    def init_model(self) -> None:
        ratings = self._require_ratings()
        cfg = self.config
        n_users = ratings.max_user_id + 1
        n_items = ratings.max_item_id + 1
        self.user_factors = init_factors(
            self.rng, n_users, cfg.num_factors, mean=cfg.init_mean, std_dev=cfg.init_std_dev, counts=ratings.count_by_user
        )
        self.item_factors = init_factors(
            self.rng, n_items, cfg.num_factors, mean=cfg.init_mean, std_dev=cfg.init_std_dev, counts=ratings.count_by_item
        )
        self.state = BiasedFactorState.initial(
            n_users=n_users,
            n_items=n_items,
            min_rating=ratings.min_rating,
            max_rating=ratings.max_rating,
            average=ratings.average,
        )

    def train(self, *, on_epoch: Optional[Callable[[EpochStats], None]] = None) -> List[EpochStats]:
        ratings = self._require_ratings()
        self.init_model()
        return run_epochs(self, ratings, self.rng, on_epoch=on_epoch)

    def _reg_weights(self, counts: np.ndarray, reg: float) -> np.ndarray:
        if not self.config.frequency_regularization:
            return np.full(len(counts), reg, dtype=np.float64)
        return reg / np.sqrt(np.maximum(counts, 1))

    def iterate(self, rating_indices: np.ndarray, update_user: bool, update_item: bool) -> None:
        ratings = self._require_ratings()
        state = self._require_state()
        cfg = self.config
        lr = self.learn_rate
        range_size = state.rating_range_size

        user_reg = self._reg_weights(ratings.count_by_user, cfg.user_reg)
        item_reg = self._reg_weights(ratings.count_by_item, cfg.item_reg)
        P, Q = self.user_factors, self.item_factors

        for index in rating_indices:
            u = int(ratings.users[index])
            i = int(ratings.items[index])

            score = state.global_bias + state.user_bias[u] + state.item_bias[i] + float(P[u] @ Q[i])
            sig_score = sigmoid(score)
            err = ratings.values[index] - state.to_rating(sig_score)
            gc = gradient_common(cfg.loss, sig_score, err, range_size)

            if update_user:
                state.user_bias[u] += cfg.bias_learn_rate * lr * (gc - cfg.bias_reg * user_reg[u] * state.user_bias[u])
            if update_item:
                state.item_bias[i] += cfg.bias_learn_rate * lr * (gc - cfg.bias_reg * item_reg[i] * state.item_bias[i])

            p_u = P[u].copy()
            q_i = Q[i].copy()
            if update_user:
                P[u] += lr * (gc * q_i - user_reg[u] * p_u)
            if update_item:
                Q[i] += lr * (gc * p_u - item_reg[i] * q_i)

    def predict(self, user_id: int, item_id: int) -> float:
        return float(self.predict_many(np.array([user_id]), np.array([item_id]))[0])

    def predict_many(self, users: np.ndarray, items: np.ndarray) -> np.ndarray:
        return biased_predictions(self._require_state(), self.user_factors, self.item_factors, users, items)

    def compute_loss(self) -> float:
        state = self._require_state()
        return training_loss(
            self, self._require_ratings(), self.config.loss, min_rating=state.min_rating, max_rating=state.max_rating
        )

    def compute_objective(self) -> float:
        ratings = self._require_ratings()
        state = self._require_state()
        cfg = self.config
        complexity = regularization_complexity(
            interaction_counts(ratings.count_by_user, _NO_COUNTS, state.max_user_id),
            self.user_factors,
            state.user_bias,
            reg=cfg.user_reg,
            bias_reg=cfg.bias_reg,
            frequency_regularization=cfg.frequency_regularization,
        )
        complexity += regularization_complexity(
            interaction_counts(ratings.count_by_item, _NO_COUNTS, state.max_item_id),
            self.item_factors,
            state.item_bias,
            reg=cfg.item_reg,
            bias_reg=cfg.bias_reg,
            frequency_regularization=cfg.frequency_regularization,
        )
        return float(self.compute_loss() + complexity)

    def save_model(self, path: Path) -> None:
        state = self._require_state()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            write_header(f, type(self).__name__)
            write_scalar(f, state.global_bias)
            write_scalar(f, state.min_rating)
            write_scalar(f, state.max_rating)
            write_vector(f, state.user_bias)
            write_matrix(f, self.user_factors)
            write_vector(f, state.item_bias)
            write_matrix(f, self.item_factors)

    def load_model(self, path: Path) -> None:
        reader = ModelReader.from_path(Path(path))
        reader.read_header(type(self).__name__)
        global_bias = reader.read_scalar()
        min_rating = reader.read_scalar()
        max_rating = reader.read_scalar()
        user_bias = reader.read_vector()
        user_factors = reader.read_matrix()
        item_bias = reader.read_vector()
        item_factors = reader.read_matrix()

        if len(user_bias) != user_factors.shape[0]:
            raise ModelFileError(
                f"Number of users must be the same for biases and factors: {len(user_bias)} != {user_factors.shape[0]}"
            )
        if len(item_bias) != item_factors.shape[0]:
            raise ModelFileError(
                f"Number of items must be the same for biases and factors: {len(item_bias)} != {item_factors.shape[0]}"
            )
        if user_factors.shape[1] != item_factors.shape[1]:
            raise ModelFileError(
                f"Number of user and item factors must match: {user_factors.shape[1]} != {item_factors.shape[1]}"
            )

        if self.config.num_factors != user_factors.shape[1]:
            logger.warning("Set num_factors to %d", user_factors.shape[1])
            self.config = replace(self.config, num_factors=int(user_factors.shape[1]))

        self.state = BiasedFactorState(
            global_bias=global_bias,
            user_bias=user_bias,
            item_bias=item_bias,
            min_rating=min_rating,
            max_rating=max_rating,
        )
        self.user_factors = user_factors
        self.item_factors = item_factors

    def __repr__(self) -> str:
        cfg = self.config
        return (
            f"{type(self).__name__} num_factors={cfg.num_factors} regularization={cfg.regularization} "
            f"bias_reg={cfg.bias_reg} frequency_regularization={cfg.frequency_regularization} "
            f"learn_rate={cfg.learn_rate} bias_learn_rate={cfg.bias_learn_rate} num_iter={cfg.num_iter} loss={cfg.loss.value}"
        )
