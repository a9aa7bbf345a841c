from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure `import src...` works when pytest uses importlib import mode.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.data import RatingData  # noqa: E402


@pytest.fixture()
def tiny_ratings() -> RatingData:
    """2 users x 2 items, every pair rated, on a 1..5 scale."""
    return RatingData(
        users=np.array([0, 0, 1, 1]),
        items=np.array([0, 1, 0, 1]),
        values=np.array([5.0, 3.0, 4.0, 1.0]),
        min_rating=1.0,
        max_rating=5.0,
    )


@pytest.fixture()
def sparse_ratings() -> RatingData:
    """A few users/items with uneven activity and an unrated id in range."""
    rng = np.random.default_rng(7)
    users = np.array([0, 0, 0, 1, 1, 2, 3, 3, 3, 3, 5, 5])
    items = np.array([0, 1, 2, 0, 3, 1, 0, 1, 2, 4, 3, 4])
    values = rng.integers(1, 6, size=len(users)).astype(float)
    return RatingData(users=users, items=items, values=values, min_rating=1.0, max_rating=5.0)
