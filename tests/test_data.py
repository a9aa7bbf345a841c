from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from src.data import IdMapping, PosOnlyFeedback, RatingData, validate_ratings


def test_rating_data_counts_and_bounds() -> None:
    ratings = RatingData(users=np.array([0, 2, 2]), items=np.array([1, 1, 0]), values=np.array([1.0, 3.0, 5.0]))

    assert len(ratings) == 3
    assert ratings.max_user_id == 2
    assert ratings.max_item_id == 1
    assert ratings.count_by_user.tolist() == [1, 0, 2]
    assert ratings.count_by_item.tolist() == [1, 2]
    assert ratings.min_rating == 1.0
    assert ratings.max_rating == 5.0
    assert ratings.average == pytest.approx(3.0)
    assert ratings[2] == 5.0


def test_rating_data_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        RatingData(users=np.array([0, 1]), items=np.array([0]), values=np.array([1.0, 2.0]))
    with pytest.raises(ValueError):
        RatingData(users=np.array([-1]), items=np.array([0]), values=np.array([1.0]))
    with pytest.raises(ValueError):
        RatingData(users=np.array([0]), items=np.array([0]), values=np.array([np.nan]))


def test_random_index_is_a_permutation() -> None:
    ratings = RatingData(users=np.arange(10), items=np.arange(10), values=np.ones(10))

    order = ratings.random_index(np.random.default_rng(0))

    assert sorted(order.tolist()) == list(range(10))


def test_pos_only_feedback_deduplicates_pairs() -> None:
    feedback = PosOnlyFeedback(users=np.array([1, 1, 0]), items=np.array([2, 2, 0]))

    assert len(feedback) == 2
    assert feedback.count_by_user.tolist() == [1, 1]
    assert feedback.count_by_item.tolist() == [1, 0, 1]


def test_empty_feedback_has_no_range() -> None:
    feedback = PosOnlyFeedback()

    assert len(feedback) == 0
    assert feedback.max_user_id == -1
    assert feedback.max_item_id == -1


def test_id_mapping_covers_ratings_and_feedback() -> None:
    ratings = pd.DataFrame({"userId": [10, 30], "movieId": [100, 200], "rating": [4.0, 2.0]})
    feedback = pd.DataFrame({"userId": [20], "movieId": [300]})

    mapping = IdMapping.fit(ratings, feedback)
    encoded = mapping.encode(feedback)

    assert mapping.n_users == 3
    assert mapping.n_items == 3
    assert encoded["user_idx"].tolist() == [1]
    assert encoded["item_idx"].tolist() == [2]


def test_validate_ratings_rejects_duplicates_and_missing_columns() -> None:
    with pytest.raises(ValueError, match="missing columns"):
        validate_ratings(pd.DataFrame({"userId": [1], "movieId": [1]}))
    with pytest.raises(ValueError, match="duplicate"):
        validate_ratings(pd.DataFrame({"userId": [1, 1], "movieId": [1, 1], "rating": [3.0, 4.0]}))
