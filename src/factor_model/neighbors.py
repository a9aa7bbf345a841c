"""Neighbor index: items rated by each user and users who rated each item."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from ..data import PosOnlyFeedback, RatingData


def _group(keys: np.ndarray, values: np.ndarray, n_groups: int) -> Tuple[np.ndarray, ...]:
    """Split `values` (sorted by `keys`) into one array per key 0..n_groups-1."""
    bounds = np.searchsorted(keys, np.arange(n_groups + 1), side="left")
    return tuple(values[bounds[k] : bounds[k + 1]].copy() for k in range(n_groups))


@dataclass(frozen=True)
class NeighborIndex:
    items_rated_by_user: Tuple[np.ndarray, ...]
    users_who_rated_the_item: Tuple[np.ndarray, ...]

    @classmethod
    def build(
        cls,
        ratings: RatingData,
        feedback: PosOnlyFeedback,
        *,
        max_user_id: int,
        max_item_id: int,
    ) -> "NeighborIndex":
        """Union both sources into sorted, de-duplicated adjacency arrays."""
        users = np.concatenate([ratings.users, feedback.users]).astype(np.int64, copy=False)
        items = np.concatenate([ratings.items, feedback.items]).astype(np.int64, copy=False)

        if len(users) == 0:
            empty = np.zeros(0, dtype=np.int64)
            return cls(
                items_rated_by_user=tuple(empty.copy() for _ in range(max_user_id + 1)),
                users_who_rated_the_item=tuple(empty.copy() for _ in range(max_item_id + 1)),
            )

        # np.unique over rows sorts by (user, item).
        pairs = np.unique(np.stack([users, items], axis=1), axis=0)
        items_rated_by_user = _group(pairs[:, 0], pairs[:, 1], max_user_id + 1)

        by_item = np.lexsort((pairs[:, 0], pairs[:, 1]))
        users_who_rated_the_item = _group(pairs[by_item, 1], pairs[by_item, 0], max_item_id + 1)

        return cls(items_rated_by_user=items_rated_by_user, users_who_rated_the_item=users_who_rated_the_item)

    @property
    def n_users(self) -> int:
        return len(self.items_rated_by_user)

    @property
    def n_items(self) -> int:
        return len(self.users_who_rated_the_item)


def interaction_counts(rating_counts: np.ndarray, feedback_counts: np.ndarray, max_id: int) -> np.ndarray:
    """Per-id interaction counts over 0..max_id summed across both sources.

    An id beyond a source's max observed id contributes zero from that source.
    """
    out = np.zeros(max_id + 1, dtype=np.int64)
    for counts in (rating_counts, feedback_counts):
        n = min(len(counts), max_id + 1)
        out[:n] += counts[:n]
    return out
