"""Rating and positive-only feedback collections consumed by the factor models."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.preprocessing import LabelEncoder


REQUIRED_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "ratings": ("userId", "movieId", "rating"),
    "feedback": ("userId", "movieId"),
}


def _as_ids(values: np.ndarray, name: str) -> np.ndarray:
    ids = np.asarray(values, dtype=np.int64).reshape(-1)
    if ids.size and int(ids.min()) < 0:
        raise ValueError(f"{name} ids must be non-negative")
    return ids


def _counts(ids: np.ndarray, max_id: int) -> np.ndarray:
    if max_id < 0:
        return np.zeros(0, dtype=np.int64)
    return np.bincount(ids, minlength=max_id + 1).astype(np.int64)


class RatingData:
    """Ordered collection of (user, item, rating) observations.

    Indices into this collection are the unit of iteration during training.
    Ids are the contiguous internal ids produced by `IdMapping`.
    """

    def __init__(
        self,
        users: np.ndarray,
        items: np.ndarray,
        values: np.ndarray,
        *,
        min_rating: Optional[float] = None,
        max_rating: Optional[float] = None,
    ) -> None:
        self.users = _as_ids(users, "user")
        self.items = _as_ids(items, "item")
        self.values = np.asarray(values, dtype=np.float64).reshape(-1)

        if not (len(self.users) == len(self.items) == len(self.values)):
            raise ValueError(
                f"users/items/values length mismatch: {len(self.users)} vs {len(self.items)} vs {len(self.values)}"
            )
        if not np.isfinite(self.values).all():
            raise ValueError("ratings contain non-finite values")

        self.max_user_id = int(self.users.max()) if len(self.users) else -1
        self.max_item_id = int(self.items.max()) if len(self.items) else -1
        self.count_by_user = _counts(self.users, self.max_user_id)
        self.count_by_item = _counts(self.items, self.max_item_id)

        if min_rating is None:
            min_rating = float(self.values.min()) if len(self.values) else 0.0
        if max_rating is None:
            max_rating = float(self.values.max()) if len(self.values) else 1.0
        if float(max_rating) < float(min_rating):
            raise ValueError(f"max_rating < min_rating: {max_rating} < {min_rating}")
        self.min_rating = float(min_rating)
        self.max_rating = float(max_rating)

    def __len__(self) -> int:
        return int(len(self.values))

    def __getitem__(self, index: int) -> float:
        return float(self.values[index])

    @property
    def average(self) -> float:
        if len(self.values) == 0:
            return 0.0
        return float(self.values.mean())

    def random_index(self, rng: np.random.Generator) -> np.ndarray:
        """Return a shuffled permutation of all rating indices."""
        return rng.permutation(len(self.values))

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        *,
        user_col: str = "user_idx",
        item_col: str = "item_idx",
        rating_col: str = "rating",
        min_rating: Optional[float] = None,
        max_rating: Optional[float] = None,
    ) -> "RatingData":
        return cls(
            df[user_col].to_numpy(),
            df[item_col].to_numpy(),
            df[rating_col].to_numpy(),
            min_rating=min_rating,
            max_rating=max_rating,
        )


class PosOnlyFeedback:
    """Set of positive-only (user, item) interactions without rating values."""

    def __init__(self, users: np.ndarray | None = None, items: np.ndarray | None = None) -> None:
        users = _as_ids(np.zeros(0) if users is None else users, "user")
        items = _as_ids(np.zeros(0) if items is None else items, "item")
        if len(users) != len(items):
            raise ValueError(f"users/items length mismatch: {len(users)} vs {len(items)}")

        # Interactions are a set: repeated pairs count once.
        if len(users):
            pairs = np.unique(np.stack([users, items], axis=1), axis=0)
            users, items = pairs[:, 0], pairs[:, 1]
        self.users = users
        self.items = items

        self.max_user_id = int(self.users.max()) if len(self.users) else -1
        self.max_item_id = int(self.items.max()) if len(self.items) else -1
        self.count_by_user = _counts(self.users, self.max_user_id)
        self.count_by_item = _counts(self.items, self.max_item_id)

    def __len__(self) -> int:
        return int(len(self.users))

    @classmethod
    def from_frame(cls, df: pd.DataFrame, *, user_col: str = "user_idx", item_col: str = "item_idx") -> "PosOnlyFeedback":
        return cls(df[user_col].to_numpy(), df[item_col].to_numpy())


@dataclass(frozen=True)
class IdMapping:
    """Raw userId/movieId <-> contiguous internal id encoders."""

    users: LabelEncoder
    items: LabelEncoder

    @classmethod
    def fit(cls, *frames: pd.DataFrame) -> "IdMapping":
        """Fit encoders on the union of ids across all frames."""
        le_user = LabelEncoder()
        le_item = LabelEncoder()
        le_user.fit(np.concatenate([f["userId"].astype(np.int64).to_numpy() for f in frames]))
        le_item.fit(np.concatenate([f["movieId"].astype(np.int64).to_numpy() for f in frames]))
        return cls(users=le_user, items=le_item)

    def encode(self, df: pd.DataFrame) -> pd.DataFrame:
        out = df.copy()
        out["user_idx"] = self.users.transform(df["userId"].astype(np.int64).to_numpy())
        out["item_idx"] = self.items.transform(df["movieId"].astype(np.int64).to_numpy())
        return out

    @property
    def n_users(self) -> int:
        return int(len(self.users.classes_))

    @property
    def n_items(self) -> int:
        return int(len(self.items.classes_))


def load_ratings_csv(path: Path) -> pd.DataFrame:
    """Load a ratings CSV (userId, movieId, rating[, timestamp])."""
    df = pd.read_csv(path)
    validate_ratings(df)
    return df.astype({"userId": "int64", "movieId": "int64", "rating": "float64"})


def load_feedback_csv(path: Path) -> pd.DataFrame:
    """Load a positive-only feedback CSV (userId, movieId)."""
    df = pd.read_csv(path)
    missing = [c for c in REQUIRED_COLUMNS["feedback"] if c not in df.columns]
    if missing:
        raise ValueError(f"feedback csv missing columns: {missing}")
    return df.astype({"userId": "int64", "movieId": "int64"})


def validate_ratings(df: pd.DataFrame) -> None:
    """Validate that required columns exist and basic constraints hold."""
    missing = [c for c in REQUIRED_COLUMNS["ratings"] if c not in df.columns]
    if missing:
        raise ValueError(f"ratings csv missing columns: {missing}")

    if df[["userId", "movieId", "rating"]].isna().any().any():
        raise ValueError("ratings contain missing values")

    if not np.isfinite(df["rating"].astype("float64").to_numpy()).all():
        raise ValueError("ratings contain non-finite values")

    if df.duplicated(subset=["userId", "movieId"]).any():
        raise ValueError("ratings contain duplicate (userId, movieId) rows")
