# src/aqcal/evaluation/model_fit.py
from pathlib import Path

import numpy as np
import matplotlib
matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import arviz as az
import pandas as pd


# ----------------------------
# Helpers
# ----------------------------
def _ensure_dir(path):
    """Create and return Path (or None)."""
    if path is None:
        return None
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def _stack_samples(da):
    """(samples, obs) ndarray from a DataArray with chain/draw dims and one observation dim."""
    if ("chain" in da.dims) and ("draw" in da.dims):
        da = da.stack(sample=("chain", "draw"))
    elif "sample" not in da.dims:
        da = da.expand_dims(sample=[0])

    obs_dims = [d for d in da.dims if d != "sample"]
    if len(obs_dims) != 1:
        raise ValueError(f"_stack_samples expects exactly 1 obs dim, got {da.dims}")
    return da.transpose("sample", obs_dims[0]).values


def _get_draws(idata, observed_var: str):
    """(samples, obs) draws of posterior_predictive[observed_var]."""
    if hasattr(idata, "posterior_predictive") and observed_var in idata.posterior_predictive:
        return _stack_samples(idata.posterior_predictive[observed_var])
    raise KeyError(f"'{observed_var}' not found in posterior_predictive")


def _interval(draws, hdi_prob: float):
    """HDI per observation from draws (samples, obs)."""
    lo_hi = az.hdi(draws[None, :, :], hdi_prob=hdi_prob)  # (obs, 2)
    return lo_hi[:, 0], lo_hi[:, 1]


def _metrics(y, pred, lo, hi):
    resid = y - pred
    rmse = float(np.sqrt(np.mean(resid**2)))
    mae = float(np.mean(np.abs(resid)))
    sst = ((y - y.mean()) ** 2).sum()
    r2 = float(1 - (resid ** 2).sum() / sst) if sst > 0 else np.nan
    coverage = float(np.mean((y >= lo) & (y <= hi)))
    return rmse, mae, r2, coverage


# ----------------------------
# Pooled posterior-predictive fit
# ----------------------------
def evaluate_ppc(
    idata,
    observed_var: str = "y_obs",
    output_dir: str | Path | None = None,
    hdi_prob: float = 0.95,
    groups=None,
    prefix: str = "",
):
    """
    In-sample fit of posterior-predictive draws against the observed targets.

    - Pooled RMSE / MAE / R2 and HDI coverage.
    - With `groups` (one label per observed row, e.g. super_region) the same
      metrics per group.
    - Observed-vs-predicted scatter and residual plots when `output_dir` is set.

    Returns (results, figs).
    """
    out = _ensure_dir(output_dir)

    y = np.asarray(idata.observed_data[observed_var].values, dtype=np.float64)
    draws = _get_draws(idata, observed_var)
    if draws.shape[1] != len(y):
        raise ValueError(f"n_obs mismatch: draws has {draws.shape[1]} obs, y has {len(y)}")

    pred = draws.mean(axis=0)
    lo, hi = _interval(draws, hdi_prob)
    rmse, mae, r2, coverage = _metrics(y, pred, lo, hi)
    results = {
        "fit_metrics": {"rmse": rmse, "mae": mae, "r2": r2, "coverage": coverage,
                        "hdi_prob": hdi_prob, "n_obs": int(len(y))},
        "residuals": y - pred,
        "paths": {},
    }

    if groups is not None:
        groups = np.asarray(groups)
        if len(groups) != len(y):
            raise ValueError(f"len(groups)={len(groups)} != len(y)={len(y)}")
        rows = []
        for g in sorted(pd.unique(groups), key=str):
            mask = groups == g
            g_rmse, g_mae, g_r2, g_cov = _metrics(y[mask], pred[mask], lo[mask], hi[mask])
            rows.append({"group": g, "rmse": g_rmse, "mae": g_mae, "r2": g_r2,
                         "coverage": g_cov, "n_obs": int(mask.sum())})
        results["group_metrics"] = pd.DataFrame(rows).set_index("group")

    figs = {}

    # 1) Observed vs predicted with interval
    fig, ax = plt.subplots(figsize=(5, 5))
    ax.errorbar(y, pred, yerr=[pred - lo, hi - pred], fmt="o", ms=3, alpha=0.4, elinewidth=0.5)
    lims = [min(y.min(), lo.min()), max(y.max(), hi.max())]
    ax.plot(lims, lims, color="k", ls="--", lw=1)
    ax.set_xlabel("Observed")
    ax.set_ylabel(f"Predicted mean ({int(hdi_prob*100)}% HDI)")
    ax.set_title("Observed vs Predicted")
    figs["obs_vs_pred"] = fig

    # 2) Residuals against fitted
    fig, ax = plt.subplots(figsize=(7, 3.2))
    ax.scatter(pred, y - pred, s=10, alpha=0.6)
    ax.axhline(0, color="k", ls="--", lw=1)
    ax.set_xlabel("Predicted mean")
    ax.set_ylabel("Obs - Pred")
    ax.set_title("Residuals")
    figs["residuals"] = fig

    if out is not None:
        for name, f in figs.items():
            path = out / f"{prefix}{name}.png"
            f.savefig(path, dpi=150, bbox_inches="tight")
            results["paths"][name] = str(path)
        if "group_metrics" in results:
            results["group_metrics"].to_csv(out / f"{prefix}group_metrics.csv")
    for f in figs.values():
        plt.close(f)

    return results, figs
