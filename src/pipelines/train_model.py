from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import yaml
from sklearn import model_selection

from ..data import IdMapping, PosOnlyFeedback, RatingData, load_feedback_csv, load_ratings_csv
from ..evaluation import evaluate
from ..factor_model import (
    ASYMMETRIC_DEFAULTS,
    BiasedMatrixFactorization,
    FactorModelConfig,
    SigmoidCombinedAsymmetricFactorModel,
)
from ..factor_model.training import EpochStats
from ..paths import ProjectPaths, get_repo_root
from ..utils import ReproducibilityConfig, set_global_seed, setup_logging


logger = logging.getLogger(__name__)

MODEL_CLASSES = {
    "asymmetric": SigmoidCombinedAsymmetricFactorModel,
    "biased_mf": BiasedMatrixFactorization,
}


@dataclass(frozen=True)
class TrainArtifacts:
    model_path: Path
    user_classes_path: Path
    item_classes_path: Path
    meta_path: Path


def model_config_from_mapping(raw: dict[str, Any], *, base: FactorModelConfig) -> FactorModelConfig:
    """Overlay known hyperparameter keys from a YAML mapping onto `base`."""
    known = {f.name for f in fields(FactorModelConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown model config keys: {unknown}")
    merged = asdict(base)
    merged.update(raw)
    return FactorModelConfig(**merged)


def _split(df: pd.DataFrame, *, test_size: float, random_state: int) -> tuple[pd.DataFrame, pd.DataFrame]:
    if test_size <= 0.0:
        return df, df.iloc[0:0]
    return model_selection.train_test_split(df, test_size=float(test_size), random_state=int(random_state))


def train_factor_model(
    ratings_df: pd.DataFrame,
    *,
    out_dir: Path,
    model_name: str,
    cfg: FactorModelConfig,
    feedback_df: pd.DataFrame | None = None,
    test_size: float = 0.1,
    test_as_feedback: bool = True,
    seed: int = 42,
) -> TrainArtifacts:
    """Train a factor model from raw (userId, movieId, rating) rows and persist artifacts."""
    if model_name not in MODEL_CLASSES:
        raise ValueError(f"Unknown model {model_name!r}; expected one of {sorted(MODEL_CLASSES)}")

    out_dir = out_dir.resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    rng = set_global_seed(ReproducibilityConfig(seed=seed))

    frames = [ratings_df] if feedback_df is None else [ratings_df, feedback_df]
    mapping = IdMapping.fit(*frames)
    encoded = mapping.encode(ratings_df)
    min_rating = float(encoded["rating"].min())
    max_rating = float(encoded["rating"].max())

    df_train, df_test = _split(encoded, test_size=test_size, random_state=seed)
    train = RatingData.from_frame(df_train, min_rating=min_rating, max_rating=max_rating)
    test = RatingData.from_frame(df_test, min_rating=min_rating, max_rating=max_rating)

    feedback_parts = []
    if feedback_df is not None:
        feedback_parts.append(mapping.encode(feedback_df)[["user_idx", "item_idx"]])
    if test_as_feedback and len(df_test):
        # Transductive setting: the test pairs are known, only their ratings are not.
        feedback_parts.append(df_test[["user_idx", "item_idx"]])
    feedback = (
        PosOnlyFeedback.from_frame(pd.concat(feedback_parts, ignore_index=True)) if feedback_parts else PosOnlyFeedback()
    )

    logger.info(
        "FactorModel: users=%d items=%d train=%d test=%d feedback=%d",
        mapping.n_users,
        mapping.n_items,
        len(train),
        len(test),
        len(feedback),
    )

    if model_name == "asymmetric":
        model = SigmoidCombinedAsymmetricFactorModel(cfg, ratings=train, additional_feedback=feedback, rng=rng)
    else:
        model = BiasedMatrixFactorization(cfg, ratings=train, rng=rng)
    logger.info("%r", model)

    def _log_epoch(stats: EpochStats) -> None:
        if len(test) == 0:
            return
        metrics = evaluate(model, test)
        logger.info(
            "epoch=%d learn_rate=%.6g test_rmse=%.4f test_mae=%.4f",
            stats.epoch,
            stats.learn_rate,
            metrics["RMSE"],
            metrics["MAE"],
        )

    model.train(on_epoch=_log_epoch)

    train_metrics = evaluate(model, train)
    test_metrics = evaluate(model, test) if len(test) else None
    logger.info("Final train metrics: %s", train_metrics)
    if test_metrics is not None:
        logger.info("Final test metrics: %s", test_metrics)

    # ----- Save artifacts -----
    model_path = out_dir / f"{model_name}.model"
    user_classes_path = out_dir / "user_classes.npy"
    item_classes_path = out_dir / "item_classes.npy"
    meta_path = out_dir / "factor_model_meta.json"

    model.save_model(model_path)
    np.save(user_classes_path, mapping.users.classes_.astype(np.int64), allow_pickle=False)
    np.save(item_classes_path, mapping.items.classes_.astype(np.int64), allow_pickle=False)

    cfg_snapshot = asdict(model.config)
    cfg_snapshot["loss"] = model.config.loss.value
    meta = {
        "model": model_name,
        "n_users": mapping.n_users,
        "n_items": mapping.n_items,
        "n_train": len(train),
        "n_test": len(test),
        "n_feedback": len(feedback),
        "min_rating": min_rating,
        "max_rating": max_rating,
        "seed": int(seed),
        "config": cfg_snapshot,
        "train_metrics": train_metrics,
        "test_metrics": test_metrics,
    }
    meta_path.write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n")

    return TrainArtifacts(
        model_path=model_path,
        user_classes_path=user_classes_path,
        item_classes_path=item_classes_path,
        meta_path=meta_path,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Train a sigmoid factor model on a ratings CSV.")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--model", type=str, default=None, choices=sorted(MODEL_CLASSES), help="Override model type")
    p.add_argument("--out-dir", type=Path, default=None, help="Output directory for artifacts")
    p.add_argument("--num-factors", type=int, default=None, help="Override number of latent factors")
    p.add_argument("--num-iter", type=int, default=None, help="Override number of epochs")
    p.add_argument("--learn-rate", type=float, default=None, help="Override learn rate")
    p.add_argument("--seed", type=int, default=None, help="Global random seed")
    return p


def main(argv: list[str] | None = None) -> None:
    setup_logging("INFO")
    args = build_arg_parser().parse_args(argv)
    repo_root = get_repo_root()
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = (repo_root / config_path).resolve()

    cfg_yaml = yaml.safe_load(config_path.read_text())
    if not isinstance(cfg_yaml, dict):
        raise ValueError("config.yaml must be a mapping")

    dataset_cfg = cfg_yaml.get("dataset", {}) if isinstance(cfg_yaml.get("dataset"), dict) else {}
    model_cfg_raw = cfg_yaml.get("model", {}) if isinstance(cfg_yaml.get("model"), dict) else {}
    split_cfg = cfg_yaml.get("split", {}) if isinstance(cfg_yaml.get("split"), dict) else {}

    paths = ProjectPaths.from_repo_root(repo_root, raw_dir=Path(str(dataset_cfg.get("raw_dir", "data/raw"))))
    ratings_df = load_ratings_csv(paths.raw_dir / str(dataset_cfg.get("ratings_file", "ratings.csv")))
    feedback_df = None
    feedback_file = dataset_cfg.get("feedback_file")
    if feedback_file:
        feedback_df = load_feedback_csv(paths.raw_dir / str(feedback_file))

    model_name = str(args.model or model_cfg_raw.get("type", "asymmetric"))
    hyper = dict(model_cfg_raw.get("hyperparameters", {}) or {})
    for key, value in (
        ("num_factors", args.num_factors),
        ("num_iter", args.num_iter),
        ("learn_rate", args.learn_rate),
    ):
        if value is not None:
            hyper[key] = value
    base = ASYMMETRIC_DEFAULTS if model_name == "asymmetric" else FactorModelConfig()
    cfg = model_config_from_mapping(hyper, base=base)

    out_dir = Path(args.out_dir) if args.out_dir is not None else paths.model_dir
    if not out_dir.is_absolute():
        out_dir = (repo_root / out_dir).resolve()

    logger.info("Building %s artifacts to %s", model_name, out_dir)
    train_factor_model(
        ratings_df,
        out_dir=out_dir,
        model_name=model_name,
        cfg=cfg,
        feedback_df=feedback_df,
        test_size=float(split_cfg.get("test_size", 0.1)),
        test_as_feedback=bool(split_cfg.get("test_as_feedback", True)),
        seed=int(args.seed if args.seed is not None else split_cfg.get("random_state", 42)),
    )


if __name__ == "__main__":
    main()
