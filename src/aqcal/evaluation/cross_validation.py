# src/aqcal/evaluation/cross_validation.py
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import matplotlib
matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from aqcal.model.errors import (
    CalibrationError, FoldImbalance, InvalidSpecification, UnidentifiableModel,
)
from aqcal.model.fitted import FittedModel
from aqcal.model.inference import fit

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CVFold:
    block: tuple                 # super-region value(s) held out together
    rows: np.ndarray             # positions of the scored held-out rows
    truth: np.ndarray
    prediction: np.ndarray       # posterior mean of the linear predictor
    n_train: int
    rmse: float
    fitted: Optional[FittedModel] = None


@dataclass(frozen=True, eq=False)
class CVResult:
    folds: tuple                 # successful folds, sorted by block
    errors: Dict[tuple, CalibrationError]

    @property
    def blocks(self) -> tuple:
        return tuple(f.block for f in self.folds)

    @property
    def fold_rmse(self) -> np.ndarray:
        return np.array([f.rmse for f in self.folds])

    @property
    def mean_rmse(self) -> float:
        return float(np.mean(self.fold_rmse))

    def as_frame(self) -> pd.DataFrame:
        records = [
            {"block": "+".join(map(str, f.block)), "n_train": f.n_train, "n_test": int(f.rows.size),
             "rmse": f.rmse, "error": None}
            for f in self.folds
        ]
        records += [
            {"block": "+".join(map(str, b)), "n_train": np.nan, "n_test": np.nan, "rmse": np.nan, "error": str(e)}
            for b, e in self.errors.items()
        ]
        return pd.DataFrame(records).sort_values("block").reset_index(drop=True)


def _block_key(block) -> tuple:
    if isinstance(block, (list, tuple, set, frozenset, np.ndarray)):
        return tuple(sorted(block, key=str))
    return (block,)


def _order(block: tuple):
    return tuple(str(v) for v in block)


def spatial_blocks(store, key: str = "super_region") -> list:
    """One block per level of `key`."""
    return [(lv,) for lv in store.levels(key)]


def rmse(y_true, y_pred) -> float:
    y_true = np.asarray(y_true, dtype=np.float64)
    y_pred = np.asarray(y_pred, dtype=np.float64)
    return float(np.sqrt(np.mean((y_true - y_pred) ** 2)))


def _run_fold(store, spec, graph, key, block, cfg) -> CVFold:
    held = store.rows_in(key, block)
    test_rows = np.flatnonzero(held & store.observed_mask)
    if test_rows.size == 0:
        raise FoldImbalance("held-out block has no observed rows to score", block=block)

    train = store.hold_out(key, block)
    min_train = int(cfg.get("min_train_rows", 2))
    if train.n_observed < min_train:
        raise FoldImbalance(
            f"training view has {train.n_observed} observed rows (< {min_train})", block=block
        )

    try:
        fitted = fit(spec, train, graph, cfg)
    except UnidentifiableModel as e:
        raise FoldImbalance(f"training view cannot identify the model: {e}", block=block) from e

    prediction = fitted.predict()["mean"].to_numpy()[test_rows]
    truth = store.target[test_rows]
    fold = CVFold(
        block=block,
        rows=test_rows,
        truth=truth,
        prediction=prediction,
        n_train=train.n_observed,
        rmse=rmse(truth, prediction),
        fitted=fitted if cfg.get("keep_models", False) else None,
    )
    logger.info("CV fold %s: n_train=%d n_test=%d rmse=%.4f", block, fold.n_train, test_rows.size, fold.rmse)
    return fold


def cross_validate(store, spec, blocks=None, graph=None, key: str = "super_region",
                   cfg: Optional[dict] = None) -> CVResult:
    """
    Spatial-block cross-validation.

    Each block's targets are masked, the specification is refitted on the rest,
    and the posterior-mean predictions for the block's observed rows are scored
    by RMSE. Folds share nothing but the read-only store and graph.

    cfg keys: n_jobs (threads, default 1), min_train_rows (2), keep_models (False),
    plus any `fit` option.
    """
    cfg = dict(cfg or {})
    spec.validate(store, graph)

    blocks = spatial_blocks(store, key) if blocks is None else [_block_key(b) for b in blocks]
    if not blocks:
        raise InvalidSpecification("no cross-validation blocks requested")
    if len(set(blocks)) != len(blocks):
        raise InvalidSpecification("a cross-validation block is listed more than once")
    known = set(store.levels(key))
    for block in blocks:
        unknown = [v for v in block if v not in known]
        if unknown:
            raise InvalidSpecification(f"block {block} names unknown '{key}' values {unknown}")

    def run(block):
        try:
            return block, _run_fold(store, spec, graph, key, block, cfg), None
        except CalibrationError as e:
            logger.warning("CV fold %s failed: %s", block, e)
            return block, None, e

    n_jobs = int(cfg.get("n_jobs", 1))
    if n_jobs > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as pool:
            outcomes = list(pool.map(run, blocks))
    else:
        outcomes = [run(b) for b in blocks]

    folds = sorted((f for _, f, _ in outcomes if f is not None), key=lambda f: _order(f.block))
    errors = {b: e for b, _, e in sorted(outcomes, key=lambda o: _order(o[0])) if e is not None}
    if not folds:
        raise FoldImbalance(f"every cross-validation fold failed ({len(errors)} folds)")

    result = CVResult(folds=tuple(folds), errors=errors)
    logger.info("CV '%s': %d folds, mean rmse=%.4f, %d failed", spec.name, len(folds), result.mean_rmse, len(errors))
    return result


def plot_cv_rmse(results: Dict[str, CVResult], out_path: Optional[Path] = None):
    """Grouped bar chart of per-fold RMSE for each model."""
    names = list(results)
    blocks = sorted({f.block for r in results.values() for f in r.folds}, key=_order)
    width = 0.8 / max(len(names), 1)
    x = np.arange(len(blocks))

    fig, ax = plt.subplots(figsize=(max(6, 1.2 * len(blocks) * len(names)), 4))
    for i, name in enumerate(names):
        by_block = {f.block: f.rmse for f in results[name].folds}
        vals = [by_block.get(b, np.nan) for b in blocks]
        ax.bar(x + i * width, vals, width=width, label=f"{name} (mean {results[name].mean_rmse:.3f})")
    ax.set_xticks(x + width * (len(names) - 1) / 2)
    ax.set_xticklabels(["+".join(map(str, b)) for b in blocks], rotation=30, ha="right")
    ax.set_ylabel("RMSE")
    ax.set_title("Spatial-block cross-validation")
    ax.legend(fontsize=8)
    fig.tight_layout()

    if out_path is not None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path, dpi=150)
        logger.info("CV RMSE chart -> %s", out_path)
    return fig
