"""Biased factorization state shared by the factor models, plus derived caches."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np


def sigmoid(score: float) -> float:
    """Logistic function; saturates to 0/1 for extreme scores."""
    if score >= 0.0:
        return 1.0 / (1.0 + math.exp(-score))
    z = math.exp(score)
    return z / (1.0 + z)


def sigmoid_array(scores: np.ndarray) -> np.ndarray:
    scores = np.asarray(scores, dtype=np.float64)
    out = np.empty_like(scores)
    pos = scores >= 0.0
    out[pos] = 1.0 / (1.0 + np.exp(-scores[pos]))
    z = np.exp(scores[~pos])
    out[~pos] = z / (1.0 + z)
    return out


@dataclass
class BiasedFactorState:
    """Global/user/item biases and the rating range the sigmoid maps into."""

    global_bias: float
    user_bias: np.ndarray
    item_bias: np.ndarray
    min_rating: float
    max_rating: float

    @classmethod
    def initial(cls, *, n_users: int, n_items: int, min_rating: float, max_rating: float, average: float) -> "BiasedFactorState":
        """Zero biases; global bias set so that sigmoid(global_bias) hits the rating average."""
        if max_rating <= min_rating:
            raise ValueError(f"rating range must be positive: [{min_rating}, {max_rating}]")
        avg = (average - min_rating) / (max_rating - min_rating)
        avg = min(max(avg, 1e-6), 1.0 - 1e-6)
        return cls(
            global_bias=float(math.log(avg / (1.0 - avg))),
            user_bias=np.zeros(n_users, dtype=np.float64),
            item_bias=np.zeros(n_items, dtype=np.float64),
            min_rating=float(min_rating),
            max_rating=float(max_rating),
        )

    @property
    def rating_range_size(self) -> float:
        return float(self.max_rating - self.min_rating)

    @property
    def max_user_id(self) -> int:
        return int(len(self.user_bias)) - 1

    @property
    def max_item_id(self) -> int:
        return int(len(self.item_bias)) - 1

    def to_rating(self, sig: np.ndarray | float) -> np.ndarray | float:
        return self.min_rating + sig * self.rating_range_size


def biased_predictions(
    state: BiasedFactorState,
    user_factors: np.ndarray,
    item_factors: np.ndarray,
    users: np.ndarray,
    items: np.ndarray,
) -> np.ndarray:
    """min + sigmoid(global + b_u + b_i + <p_u, q_i>) * range, for aligned id arrays.

    Ids outside the trained range contribute only the terms that exist for them.
    """
    users = np.asarray(users, dtype=np.int64).reshape(-1)
    items = np.asarray(items, dtype=np.int64).reshape(-1)
    if len(users) != len(items):
        raise ValueError(f"users/items length mismatch: {len(users)} vs {len(items)}")

    score = np.full(len(users), state.global_bias, dtype=np.float64)

    known_u = (users >= 0) & (users < len(state.user_bias))
    known_i = (items >= 0) & (items < len(state.item_bias))
    score[known_u] += state.user_bias[users[known_u]]
    score[known_i] += state.item_bias[items[known_i]]

    both = (users >= 0) & (users < user_factors.shape[0]) & (items >= 0) & (items < item_factors.shape[0])
    if both.any():
        score[both] += np.einsum("ij,ij->i", user_factors[users[both]], item_factors[items[both]])

    return state.to_rating(sigmoid_array(score))


def regularization_complexity(
    counts: np.ndarray,
    factors: np.ndarray,
    bias: np.ndarray,
    *,
    reg: float,
    bias_reg: float,
    frequency_regularization: bool,
) -> float:
    """Sum over all ids of weight(count) * reg * (||row||^2 + bias_reg * bias^2)."""
    counts = np.asarray(counts, dtype=np.float64)
    weight = np.sqrt(counts) if frequency_regularization else counts
    sq_norms = np.einsum("ij,ij->i", factors, factors)
    return float(np.sum(weight * reg * sq_norms) + np.sum(weight * reg * bias_reg * np.square(bias)))


def init_factors(
    rng: np.random.Generator,
    n_rows: int,
    num_factors: int,
    *,
    mean: float,
    std_dev: float,
    counts: np.ndarray,
) -> np.ndarray:
    """Normal-initialized factor rows; rows of ids with zero count are zeroed."""
    factors = rng.normal(mean, std_dev, size=(n_rows, num_factors)).astype(np.float64)
    observed = np.zeros(n_rows, dtype=bool)
    n = min(len(counts), n_rows)
    observed[:n] = counts[:n] > 0
    factors[~observed] = 0.0
    return factors


class CacheState(Enum):
    STALE = "stale"
    FRESH = "fresh"


class FactorCache:
    """A derived factor matrix that is rebuilt on demand once marked stale."""

    def __init__(self) -> None:
        self.state = CacheState.STALE
        self._matrix: Optional[np.ndarray] = None

    def invalidate(self) -> None:
        self.state = CacheState.STALE
        self._matrix = None

    def assign(self, matrix: np.ndarray) -> np.ndarray:
        self._matrix = np.asarray(matrix, dtype=np.float64)
        self.state = CacheState.FRESH
        return self._matrix

    def get(self, rebuild: Callable[[], np.ndarray]) -> np.ndarray:
        if self.state is CacheState.FRESH and self._matrix is not None:
            return self._matrix
        return self.assign(rebuild())

    @property
    def matrix(self) -> Optional[np.ndarray]:
        return self._matrix if self.state is CacheState.FRESH else None
