"""Asymmetric factor model with a sigmoid-bounded score.

Users are represented by the items they rated, items by the users who rated
them (Paterek, "Improving regularized singular value decomposition for
collaborative filtering", KDD Cup 2007):

    eff_u = sum_{j in N(u)} y_j / sqrt(|N(u)|)
    eff_i = sum_{v in R(i)} x_v / sqrt(|R(i)|)
    r_hat(u, i) = min + sigmoid(global + b_u + b_i + <eff_u, eff_i>) * (max - min)

N(u) and R(i) come from the union of the ratings and the additional
positive-only feedback. `x` is indexed by user id, `y` by item id.

The effective vectors used for prediction are cached in `user_factors` /
`item_factors`. Every training pass moves `x` and `y`, so the caches are
marked stale at the end of each pass and rebuilt on the next prediction.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from ..data import PosOnlyFeedback, RatingData
from .config import ASYMMETRIC_DEFAULTS, FactorModelConfig
from .model_io import ModelFileError, ModelReader, write_header, write_matrix, write_scalar, write_vector
from .neighbors import NeighborIndex, interaction_counts
from .state import (
    BiasedFactorState,
    FactorCache,
    biased_predictions,
    init_factors,
    regularization_complexity,
    sigmoid,
)
from .training import EpochStats, gradient_common, run_epochs, training_loss


logger = logging.getLogger(__name__)


class SigmoidCombinedAsymmetricFactorModel:
    def __init__(
        self,
        config: FactorModelConfig | None = None,
        *,
        ratings: RatingData | None = None,
        additional_feedback: PosOnlyFeedback | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.config = config or ASYMMETRIC_DEFAULTS
        self.ratings = ratings
        # Empty unless test/auxiliary interactions are provided.
        self.additional_feedback = additional_feedback if additional_feedback is not None else PosOnlyFeedback()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.learn_rate = float(self.config.learn_rate)

        self.max_user_id = -1
        self.max_item_id = -1
        self.neighbors: Optional[NeighborIndex] = None
        self.state: Optional[BiasedFactorState] = None

        k = self.config.num_factors
        self.x = np.zeros((0, k), dtype=np.float64)
        self.y = np.zeros((0, k), dtype=np.float64)
        self.user_factors = FactorCache()
        self.item_factors = FactorCache()

        self._user_counts = np.zeros(0, dtype=np.int64)
        self._item_counts = np.zeros(0, dtype=np.int64)

    # ----- setup -----

    def _require_ratings(self) -> RatingData:
        if self.ratings is None:
            raise RuntimeError("ratings must be set before training")
        return self.ratings

    def _require_state(self) -> BiasedFactorState:
        if self.state is None:
            raise RuntimeError("model is not trained or loaded")
        return self.state

    def _refresh_neighbors(self) -> NeighborIndex:
        ratings = self._require_ratings()
        feedback = self.additional_feedback
        self.max_user_id = max(ratings.max_user_id, feedback.max_user_id)
        self.max_item_id = max(ratings.max_item_id, feedback.max_item_id)
        self.neighbors = NeighborIndex.build(
            ratings, feedback, max_user_id=self.max_user_id, max_item_id=self.max_item_id
        )
        self._refresh_counts()
        return self.neighbors

    def _neighbor_index(self) -> NeighborIndex:
        if self.neighbors is None:
            return self._refresh_neighbors()
        return self.neighbors

    def _refresh_counts(self) -> None:
        """Combined interaction counts over the current id range; zeros without data."""
        if self.ratings is None:
            self._user_counts = np.zeros(self.max_user_id + 1, dtype=np.int64)
            self._item_counts = np.zeros(self.max_item_id + 1, dtype=np.int64)
            return
        feedback = self.additional_feedback
        self._user_counts = interaction_counts(self.ratings.count_by_user, feedback.count_by_user, self.max_user_id)
        self._item_counts = interaction_counts(self.ratings.count_by_item, feedback.count_by_item, self.max_item_id)

    def init_model(self) -> None:
        ratings = self._require_ratings()
        cfg = self.config
        n_users = self.max_user_id + 1
        n_items = self.max_item_id + 1

        # Only ids with actual ratings start off non-zero.
        self.x = init_factors(
            self.rng, n_users, cfg.num_factors, mean=cfg.init_mean, std_dev=cfg.init_std_dev, counts=ratings.count_by_user
        )
        self.y = init_factors(
            self.rng, n_items, cfg.num_factors, mean=cfg.init_mean, std_dev=cfg.init_std_dev, counts=ratings.count_by_item
        )
        self.state = BiasedFactorState.initial(
            n_users=n_users,
            n_items=n_items,
            min_rating=ratings.min_rating,
            max_rating=ratings.max_rating,
            average=ratings.average,
        )
        self.user_factors.invalidate()
        self.item_factors.invalidate()

    def train(self, *, on_epoch: Optional[Callable[[EpochStats], None]] = None) -> List[EpochStats]:
        """Rebuild id bounds and the neighbor index, initialize, and run all epochs."""
        ratings = self._require_ratings()
        neighbors = self._refresh_neighbors()
        self.init_model()
        logger.info(
            "Training %s: users=%d items=%d ratings=%d additional_feedback=%d",
            type(self).__name__,
            neighbors.n_users,
            neighbors.n_items,
            len(ratings),
            len(self.additional_feedback),
        )
        return run_epochs(self, ratings, self.rng, on_epoch=on_epoch)

    # ----- training -----

    def _reg_weights(self, counts: np.ndarray, reg: float) -> np.ndarray:
        if not self.config.frequency_regularization:
            return np.full(len(counts), reg, dtype=np.float64)
        # Zero-count ids never reach an update.
        return reg / np.sqrt(np.maximum(counts, 1))

    def iterate(self, rating_indices: np.ndarray, update_user: bool, update_item: bool) -> None:
        """One SGD pass over `rating_indices`, in the given order."""
        ratings = self._require_ratings()
        state = self._require_state()
        if self.neighbors is None:
            raise RuntimeError("neighbor index missing; call train()")

        cfg = self.config
        lr = self.learn_rate
        range_size = state.rating_range_size
        items_rated_by_user = self.neighbors.items_rated_by_user
        users_who_rated_the_item = self.neighbors.users_who_rated_the_item
        user_reg = self._reg_weights(self._user_counts, cfg.user_reg)
        item_reg = self._reg_weights(self._item_counts, cfg.item_reg)
        x, y = self.x, self.y

        for index in rating_indices:
            u = int(ratings.users[index])
            i = int(ratings.items[index])
            rated = items_rated_by_user[u]
            raters = users_who_rated_the_item[i]

            u_norm = math.sqrt(len(rated))
            i_norm = math.sqrt(len(raters))
            u_eff = y[rated].sum(axis=0) / u_norm
            i_eff = x[raters].sum(axis=0) / i_norm

            score = state.global_bias + state.user_bias[u] + state.item_bias[i] + float(u_eff @ i_eff)
            sig_score = sigmoid(score)
            err = ratings.values[index] - state.to_rating(sig_score)
            gc = gradient_common(cfg.loss, sig_score, err, range_size)

            if update_user:
                state.user_bias[u] += cfg.bias_learn_rate * lr * (gc - cfg.bias_reg * user_reg[u] * state.user_bias[u])
            if update_item:
                state.item_bias[i] += cfg.bias_learn_rate * lr * (gc - cfg.bias_reg * item_reg[i] * state.item_bias[i])

            # All deltas read the rows as they were before this rating's writes.
            if update_user:
                delta_u = lr * (gc * i_eff - user_reg[u] * u_eff)
                delta_raters = lr * ((gc / i_norm) * u_eff[None, :] - user_reg[raters][:, None] * x[raters])
            if update_item:
                delta_i = lr * (gc * u_eff - item_reg[i] * i_eff)
                delta_rated = lr * ((gc / u_norm) * i_eff[None, :] - item_reg[rated][:, None] * y[rated])

            # Neighbor arrays are de-duplicated, so fancy-index += touches each row once.
            if update_user:
                x[u] += delta_u
                x[raters] += delta_raters
            if update_item:
                y[i] += delta_i
                y[rated] += delta_rated

        self.user_factors.invalidate()
        self.item_factors.invalidate()

    # ----- prediction -----

    def _aggregate(self, factors: np.ndarray, neighbor_lists: Sequence[np.ndarray]) -> np.ndarray:
        out = np.zeros((len(neighbor_lists), self.config.num_factors), dtype=np.float64)
        for row, ids in enumerate(neighbor_lists):
            if len(ids) == 0:
                continue
            out[row] = factors[ids].sum(axis=0) / math.sqrt(len(ids))
        return out

    def precompute_user_factors(self) -> np.ndarray:
        """Effective vector of every user from `y` over the items they rated."""
        return self._aggregate(self.y, self._neighbor_index().items_rated_by_user)

    def precompute_item_factors(self) -> np.ndarray:
        """Effective vector of every item from `x` over the users who rated it."""
        return self._aggregate(self.x, self._neighbor_index().users_who_rated_the_item)

    def _cached_factors(self) -> Tuple[np.ndarray, np.ndarray]:
        self._require_state()
        return (
            self.user_factors.get(self.precompute_user_factors),
            self.item_factors.get(self.precompute_item_factors),
        )

    def predict(self, user_id: int, item_id: int) -> float:
        return float(self.predict_many(np.array([user_id]), np.array([item_id]))[0])

    def predict_many(self, users: np.ndarray, items: np.ndarray) -> np.ndarray:
        user_factors, item_factors = self._cached_factors()
        return biased_predictions(self._require_state(), user_factors, item_factors, users, items)

    def fold_in(self, rated_items: Sequence[Tuple[int, float]]) -> np.ndarray:
        """Factors for a user outside the training data; not supported by this model."""
        raise NotImplementedError(f"{type(self).__name__} does not support fold-in")

    # ----- objective -----

    def compute_loss(self) -> float:
        state = self._require_state()
        return training_loss(
            self, self._require_ratings(), self.config.loss, min_rating=state.min_rating, max_rating=state.max_rating
        )

    def compute_complexity(self) -> float:
        """Regularization term over every user and item id in range."""
        state = self._require_state()
        cfg = self.config
        complexity = regularization_complexity(
            self._user_counts,
            self.x,
            state.user_bias,
            reg=cfg.user_reg,
            bias_reg=cfg.bias_reg,
            frequency_regularization=cfg.frequency_regularization,
        )
        complexity += regularization_complexity(
            self._item_counts,
            self.y,
            state.item_bias,
            reg=cfg.item_reg,
            bias_reg=cfg.bias_reg,
            frequency_regularization=cfg.frequency_regularization,
        )
        return complexity

    def compute_objective(self) -> float:
        return float(self.compute_loss() + self.compute_complexity())

    # ----- persistence -----

    def save_model(self, path: Path) -> None:
        state = self._require_state()
        user_factors, item_factors = self._cached_factors()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            write_header(f, type(self).__name__)
            write_scalar(f, state.global_bias)
            write_scalar(f, state.min_rating)
            write_scalar(f, state.max_rating)
            write_vector(f, state.user_bias)
            write_vector(f, state.item_bias)
            write_matrix(f, self.x)
            write_matrix(f, user_factors)
            write_matrix(f, self.y)
            write_matrix(f, item_factors)
        logger.info("Saved %s to %s", type(self).__name__, path)

    def load_model(self, path: Path) -> None:
        """Replace the model with the one stored at `path`.

        Everything is parsed and validated before any attribute is touched.
        """
        reader = ModelReader.from_path(Path(path))
        reader.read_header(type(self).__name__)
        global_bias = reader.read_scalar()
        min_rating = reader.read_scalar()
        max_rating = reader.read_scalar()
        user_bias = reader.read_vector()
        item_bias = reader.read_vector()
        x = reader.read_matrix()
        user_factors = reader.read_matrix()
        y = reader.read_matrix()
        item_factors = reader.read_matrix()

        if len(user_bias) != user_factors.shape[0] or len(user_bias) != x.shape[0]:
            raise ModelFileError(
                "Number of users must be the same for biases and factors: "
                f"{len(user_bias)} != {user_factors.shape[0]} (x has {x.shape[0]} rows)"
            )
        if len(item_bias) != item_factors.shape[0] or len(item_bias) != y.shape[0]:
            raise ModelFileError(
                "Number of items must be the same for biases and factors: "
                f"{len(item_bias)} != {item_factors.shape[0]} (y has {y.shape[0]} rows)"
            )
        if x.shape[1] != user_factors.shape[1]:
            raise ModelFileError(
                f"Number of x and user factors must match: {x.shape[1]} != {user_factors.shape[1]}"
            )
        if y.shape[1] != user_factors.shape[1] or item_factors.shape[1] != user_factors.shape[1]:
            raise ModelFileError(
                f"Number of y, item and user factors must match: {y.shape[1]}, {item_factors.shape[1]} "
                f"!= {user_factors.shape[1]}"
            )

        num_factors = int(user_factors.shape[1])
        if self.config.num_factors != num_factors:
            logger.warning("Set num_factors to %d", num_factors)
            self.config = replace(self.config, num_factors=num_factors)

        self.state = BiasedFactorState(
            global_bias=global_bias,
            user_bias=user_bias,
            item_bias=item_bias,
            min_rating=min_rating,
            max_rating=max_rating,
        )
        self.max_user_id = self.state.max_user_id
        self.max_item_id = self.state.max_item_id
        self.x = x
        self.y = y
        self.user_factors.assign(user_factors)
        self.item_factors.assign(item_factors)
        # The neighbor index is not stored; train() rebuilds it from data.
        self.neighbors = None
        self._refresh_counts()
        logger.info("Loaded %s from %s", type(self).__name__, path)

    def __repr__(self) -> str:
        cfg = self.config
        return (
            f"{type(self).__name__} num_factors={cfg.num_factors} regularization={cfg.regularization} "
            f"bias_reg={cfg.bias_reg} frequency_regularization={cfg.frequency_regularization} "
            f"learn_rate={cfg.learn_rate} bias_learn_rate={cfg.bias_learn_rate} num_iter={cfg.num_iter} loss={cfg.loss.value}"
        )
