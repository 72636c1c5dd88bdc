# src/aqcal/model/sampler.py
import logging
from typing import Optional

import arviz as az
import numpy as np
from scipy.linalg import solve_triangular

from aqcal.model.fitted import FittedModel

logger = logging.getLogger(__name__)


def sample_posterior(fitted: FittedModel, n: int, seed: Optional[int] = None,
                     observed_var: str = "y_obs") -> az.InferenceData:
    """
    Joint posterior draws from a FittedModel.

    Each draw first picks a hyperparameter integration point with probability
    equal to its weight (under empirical Bayes, theta is instead drawn from the
    Gaussian N(mode, H^-1) clipped to the hyperparameter box), then draws the latent field from that point's Gaussian
    conditional (x = mu + L^-T z with Q_post = L L^T), and finally a replicate
    of the target from the Gaussian likelihood.

    Returns InferenceData with:
      - posterior: intercept, fixed coefficients, one variable per random-effect
        term (dim "<term>_level"), "<term>_structured" for BYM2 terms,
        hyperparameters on their natural scale, eta
      - posterior_predictive: `observed_var` on observed rows, y_pred on all rows
      - observed_data: `observed_var`
    """
    n = int(n)
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}")

    rng = np.random.default_rng(seed)
    model = fitted.latent_model
    if fitted.strategy == "eb":
        lo, hi = np.array(model.bounds(), dtype=np.float64).T
        draws = rng.multivariate_normal(fitted.mode, np.linalg.inv(fitted.hessian), size=n)
        points = np.clip(draws, lo, hi)
        k = np.arange(n)
    else:
        points = fitted.points
        k = rng.choice(fitted.n_points, size=n, p=fitted.weights)

    X = np.empty((n, model.n_latent))
    tau = np.empty(n)
    theta = np.empty((n, len(fitted.hyper_names)))
    for idx in np.unique(k):
        rows = np.flatnonzero(k == idx)
        cond = model.conditional(points[idx])
        L = np.tril(cond.chol[0])
        z = rng.standard_normal((model.n_latent, rows.size))
        X[rows] = cond.mean + solve_triangular(L, z, lower=True, trans="T").T
        tau[rows] = cond.noise_precision
        theta[rows] = points[idx]

    eta = X @ model.A.T
    R = X @ model.T.T
    y_rep = eta + rng.standard_normal(eta.shape) / np.sqrt(tau)[:, None]

    posterior, coords, dims = {}, {"row": np.arange(model.n_rows)}, {"eta": ["row"], "y_pred": ["row"]}
    for block in model.report_blocks:
        if block.kind == "fixed":
            for j, name in enumerate(block.levels):
                posterior[name] = R[None, :, block.start + j]
            continue
        dim = f"{block.owner or block.term}_level"
        posterior[block.term] = R[None, :, block.start:block.stop]
        coords[dim] = [str(lv) for lv in block.levels]
        dims[block.term] = [dim]
    for j, h in enumerate(model.hyper):
        posterior[h.name] = h.to_user(theta[None, :, j])
    posterior["eta"] = eta[None]

    obs_rows = np.flatnonzero(model.observed)
    coords["obs"] = obs_rows
    dims[observed_var] = ["obs"]

    idata = az.from_dict(
        posterior=posterior,
        posterior_predictive={observed_var: y_rep[None][:, :, obs_rows], "y_pred": y_rep[None]},
        observed_data={observed_var: model.y_obs},
        coords=coords,
        dims=dims,
    )
    logger.info("Drew %d joint posterior samples over %d hyperparameter values", n, np.unique(k).size)
    return idata
