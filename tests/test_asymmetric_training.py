from __future__ import annotations

import math

import numpy as np
import pytest

from src.data import PosOnlyFeedback, RatingData
from src.factor_model import FactorModelConfig, SigmoidCombinedAsymmetricFactorModel
from src.factor_model.state import CacheState, sigmoid


TRACE_CONFIG = FactorModelConfig(
    num_factors=2,
    num_iter=1,
    learn_rate=0.1,
    bias_learn_rate=1.0,
    regularization=0.0,
    bias_reg=0.0,
)


def _prepared_model(
    ratings: RatingData,
    cfg: FactorModelConfig,
    *,
    fill: float = 0.1,
    feedback: PosOnlyFeedback | None = None,
) -> SigmoidCombinedAsymmetricFactorModel:
    """Model with neighbor index built and every factor cell set to `fill`."""
    model = SigmoidCombinedAsymmetricFactorModel(
        cfg, ratings=ratings, additional_feedback=feedback, rng=np.random.default_rng(0)
    )
    model._refresh_neighbors()
    model.init_model()
    model.x[:] = fill
    model.y[:] = fill
    model.state.global_bias = 0.0
    return model


def _reference_epoch(
    ratings: RatingData,
    x: list[list[float]],
    y: list[list[float]],
    user_bias: list[float],
    item_bias: list[float],
    *,
    global_bias: float,
    lr: float,
    bias_lr: float,
    reg: float = 0.0,
    bias_reg: float = 0.0,
    frequency_regularization: bool = False,
    feedback: PosOnlyFeedback | None = None,
) -> None:
    """Literal scalar rendition of one epoch over the ratings in stored order."""
    n_users = len(x)
    n_items = len(y)
    k = len(x[0])
    pairs = list(zip(ratings.users.tolist(), ratings.items.tolist()))
    if feedback is not None:
        pairs += list(zip(feedback.users.tolist(), feedback.items.tolist()))
    items_of = [sorted({i for u2, i in pairs if u2 == u}) for u in range(n_users)]
    users_of = [sorted({u for u, i2 in pairs if i2 == i}) for i in range(n_items)]
    user_count = [sum(1 for u2, _ in pairs if u2 == u) for u in range(n_users)]
    item_count = [sum(1 for _, i2 in pairs if i2 == i) for i in range(n_items)]

    def weight(count: int) -> float:
        return reg / math.sqrt(max(count, 1)) if frequency_regularization else reg

    span = ratings.max_rating - ratings.min_rating

    for index in range(len(ratings)):
        u = int(ratings.users[index])
        i = int(ratings.items[index])
        u_norm = math.sqrt(len(items_of[u]))
        i_norm = math.sqrt(len(users_of[i]))
        u_eff = [sum(y[j][f] for j in items_of[u]) / u_norm for f in range(k)]
        i_eff = [sum(x[v][f] for v in users_of[i]) / i_norm for f in range(k)]

        score = global_bias + user_bias[u] + item_bias[i] + sum(a * b for a, b in zip(u_eff, i_eff))
        sig = sigmoid(score)
        err = ratings.values[index] - (ratings.min_rating + sig * span)
        gc = err * sig * (1 - sig) * span
        reg_u = weight(user_count[u])
        reg_i = weight(item_count[i])

        user_bias[u] += bias_lr * lr * (gc - bias_reg * reg_u * user_bias[u])
        item_bias[i] += bias_lr * lr * (gc - bias_reg * reg_i * item_bias[i])

        new_x = [row[:] for row in x]
        new_y = [row[:] for row in y]
        for f in range(k):
            new_x[u][f] += lr * (gc * i_eff[f] - reg_u * u_eff[f])
            new_y[i][f] += lr * (gc * u_eff[f] - reg_i * i_eff[f])
            for v in users_of[i]:
                new_x[v][f] += lr * ((gc / i_norm) * u_eff[f] - weight(user_count[v]) * x[v][f])
            for j in items_of[u]:
                new_y[j][f] += lr * ((gc / u_norm) * i_eff[f] - weight(item_count[j]) * y[j][f])
        x[:] = new_x
        y[:] = new_y


def test_first_update_matches_hand_computed_bias(tiny_ratings: RatingData) -> None:
    model = _prepared_model(tiny_ratings, TRACE_CONFIG)

    model.iterate(np.array([0]), True, True)

    # eff vectors are (0.2/sqrt(2)) per dim => score 0.04, sig ~0.5099987,
    # err ~1.9600053, gradient_common ~1.9592215
    assert model.state.user_bias[0] == pytest.approx(0.195922154, rel=1e-6)
    assert model.state.item_bias[0] == pytest.approx(0.195922154, rel=1e-6)
    assert model.state.user_bias[1] == 0.0
    assert model.state.item_bias[1] == 0.0


def test_one_epoch_matches_reference_trace(tiny_ratings: RatingData) -> None:
    model = _prepared_model(tiny_ratings, TRACE_CONFIG)

    x_ref = [[0.1, 0.1], [0.1, 0.1]]
    y_ref = [[0.1, 0.1], [0.1, 0.1]]
    ub_ref = [0.0, 0.0]
    ib_ref = [0.0, 0.0]
    _reference_epoch(tiny_ratings, x_ref, y_ref, ub_ref, ib_ref, global_bias=0.0, lr=0.1, bias_lr=1.0)

    model.iterate(np.arange(len(tiny_ratings)), True, True)

    np.testing.assert_allclose(model.state.user_bias, ub_ref, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(model.state.item_bias, ib_ref, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(model.x, x_ref, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(model.y, y_ref, rtol=1e-10, atol=1e-12)


@pytest.mark.parametrize("frequency_regularization", [False, True])
def test_regularized_epoch_with_feedback_matches_reference_trace(
    tiny_ratings: RatingData, frequency_regularization: bool
) -> None:
    cfg = FactorModelConfig(
        num_factors=2,
        num_iter=1,
        learn_rate=0.1,
        bias_learn_rate=0.7,
        regularization=0.05,
        bias_reg=0.5,
        frequency_regularization=frequency_regularization,
    )
    # User 2 only appears as a rater of item 1; item 2 only in user 0's history.
    feedback = PosOnlyFeedback(users=np.array([2, 0]), items=np.array([1, 2]))
    model = _prepared_model(tiny_ratings, cfg, feedback=feedback)
    model.state.user_bias[:] = 0.3
    model.state.item_bias[:] = -0.2

    x_ref = [[0.1, 0.1] for _ in range(3)]
    y_ref = [[0.1, 0.1] for _ in range(3)]
    ub_ref = [0.3, 0.3, 0.3]
    ib_ref = [-0.2, -0.2, -0.2]
    _reference_epoch(
        tiny_ratings,
        x_ref,
        y_ref,
        ub_ref,
        ib_ref,
        global_bias=0.0,
        lr=0.1,
        bias_lr=0.7,
        reg=0.05,
        bias_reg=0.5,
        frequency_regularization=frequency_regularization,
        feedback=feedback,
    )

    model.iterate(np.arange(len(tiny_ratings)), True, True)

    np.testing.assert_allclose(model.state.user_bias, ub_ref, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(model.state.item_bias, ib_ref, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(model.x, x_ref, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(model.y, y_ref, rtol=1e-10, atol=1e-12)
    # The feedback-only user never has a rating, yet its row moves through item 1.
    assert model.state.user_bias[2] == 0.3
    assert not np.allclose(model.x[2], 0.1)


def test_update_flags_restrict_the_updated_side(tiny_ratings: RatingData) -> None:
    model = _prepared_model(tiny_ratings, TRACE_CONFIG)
    y_before = model.y.copy()

    model.iterate(np.arange(len(tiny_ratings)), True, False)

    np.testing.assert_array_equal(model.y, y_before)
    np.testing.assert_array_equal(model.state.item_bias, [0.0, 0.0])
    assert not np.allclose(model.x, 0.1)
    assert np.all(model.state.user_bias != 0.0)


def test_rows_without_ratings_start_at_zero(sparse_ratings: RatingData) -> None:
    feedback = PosOnlyFeedback(users=np.array([4, 6]), items=np.array([2, 6]))
    model = SigmoidCombinedAsymmetricFactorModel(
        FactorModelConfig(num_factors=3, num_iter=0),
        ratings=sparse_ratings,
        additional_feedback=feedback,
        rng=np.random.default_rng(1),
    )
    model.train()

    # x is sized by users, y by items, across both sources.
    assert model.x.shape == (7, 3)
    assert model.y.shape == (7, 3)
    for user_id in (4, 6):
        np.testing.assert_array_equal(model.x[user_id], np.zeros(3))
    for item_id in (5, 6):
        np.testing.assert_array_equal(model.y[item_id], np.zeros(3))
    assert np.all(np.linalg.norm(model.x[[0, 1, 2, 3, 5]], axis=1) > 0)


def test_single_rated_item_effective_vector_is_that_row() -> None:
    ratings = RatingData(users=np.array([0, 1]), items=np.array([2, 0]), values=np.array([4.0, 2.0]))
    model = SigmoidCombinedAsymmetricFactorModel(
        FactorModelConfig(num_factors=4, num_iter=0), ratings=ratings, rng=np.random.default_rng(3)
    )
    model.train()

    user_factors = model.precompute_user_factors()

    np.testing.assert_array_equal(user_factors[0], model.y[2])
    np.testing.assert_array_equal(user_factors[1], model.y[0])


def test_training_pass_invalidates_prediction_caches(tiny_ratings: RatingData) -> None:
    model = SigmoidCombinedAsymmetricFactorModel(
        FactorModelConfig(num_factors=2, num_iter=2), ratings=tiny_ratings, rng=np.random.default_rng(0)
    )
    model.train()
    model.predict(0, 0)
    assert model.user_factors.state is CacheState.FRESH
    assert model.item_factors.state is CacheState.FRESH

    model.iterate(np.arange(len(tiny_ratings)), True, True)

    assert model.user_factors.state is CacheState.STALE
    assert model.item_factors.state is CacheState.STALE
    assert model.user_factors.matrix is None


def test_training_lowers_the_training_error(sparse_ratings: RatingData) -> None:
    cfg = FactorModelConfig(num_factors=4, num_iter=0, learn_rate=0.05, bias_learn_rate=1.0, bias_reg=0.01)
    model = SigmoidCombinedAsymmetricFactorModel(cfg, ratings=sparse_ratings, rng=np.random.default_rng(5))
    model.train()
    before = model.compute_loss()

    for _ in range(50):
        model.iterate(np.arange(len(sparse_ratings)), True, True)

    assert model.compute_loss() < before


def test_predictions_stay_in_rating_range(sparse_ratings: RatingData) -> None:
    cfg = FactorModelConfig(num_factors=3, num_iter=5, learn_rate=0.05)
    model = SigmoidCombinedAsymmetricFactorModel(cfg, ratings=sparse_ratings, rng=np.random.default_rng(2))
    model.train()

    users = np.repeat(np.arange(8), 7)
    items = np.tile(np.arange(7), 8)
    preds = model.predict_many(users, items)

    assert np.all(preds >= 1.0)
    assert np.all(preds <= 5.0)


def test_fold_in_is_unsupported(tiny_ratings: RatingData) -> None:
    model = SigmoidCombinedAsymmetricFactorModel(
        FactorModelConfig(num_factors=2, num_iter=1), ratings=tiny_ratings, rng=np.random.default_rng(0)
    )
    model.train()

    with pytest.raises(NotImplementedError):
        model.fold_in([(0, 4.0), (1, 2.0)])
    with pytest.raises(NotImplementedError):
        model.fold_in([])


def test_predict_before_training_raises() -> None:
    model = SigmoidCombinedAsymmetricFactorModel()
    with pytest.raises(RuntimeError):
        model.predict(0, 0)
