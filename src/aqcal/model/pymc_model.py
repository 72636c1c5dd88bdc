# src/aqcal/model/pymc_model.py
import math

import numpy as np
import pymc as pm
import pytensor.tensor as at

from aqcal.model.priors import Fixed, LogGammaPrecision, PCMixing, PCPrecision
from aqcal.model.specification import BYM2Effect

# Grid on which the PC mixing density is tabulated for pm.Interpolated
PHI_GRID = np.linspace(1e-4, 1.0 - 1e-4, 400)


def _sigma(name, prior):
    """Standard deviation sigma = tau^-1/2 for a precision prior."""
    if isinstance(prior, PCPrecision):
        # PC prior on a precision == exponential prior on sigma with P(sigma > U) = alpha
        return pm.Exponential(f"{name}_sigma", lam=prior.rate)
    if isinstance(prior, LogGammaPrecision):
        tau = pm.Gamma(f"{name}_precision", alpha=prior.shape, beta=prior.rate)
        return pm.Deterministic(f"{name}_sigma", tau ** -0.5)
    if isinstance(prior, Fixed):
        if prior.value <= 0:
            raise ValueError(f"'{name}': a fixed precision of {prior.value} has no proper prior to sample from")
        return 1.0 / math.sqrt(prior.value)
    raise ValueError(f"'{name}': unsupported precision prior {prior!r}")


def _mixing(name, prior, gamma):
    if isinstance(prior, Fixed):
        return float(prior.value)
    if isinstance(prior, PCMixing):
        bound = prior.bind(gamma)
        pdf = np.array([bound.density_phi(p) for p in PHI_GRID])
        return pm.Interpolated(f"{name}_phi", PHI_GRID, pdf)
    raise ValueError(f"'{name}': unsupported mixing prior {prior!r}")


def build_pymc_model(spec, store, graph=None) -> pm.Model:
    """
    PyMC translation of a ModelSpecification, used for prior-predictive draws.

      - intercept and fixed coefficients: Normal priors (a flat prior cannot be sampled)
      - i.i.d. terms: non-centred, effect = sigma * z
      - BYM2 terms: effect = sigma * (sqrt(1 - phi) * z_u + sqrt(phi) * B z_s),
        B = V diag(sqrt(gamma)) from the scaled eigen-basis of the graph
      - y_obs observed on the rows with a target, mu over every row
    """
    spec.validate(store, graph)

    # ----------------
    # Coordinates, Indices & Arrays
    # ----------------
    n = store.n_rows
    observed = store.observed_mask
    obs_rows = np.flatnonzero(observed)
    coords = {"obs": np.arange(n), "obs_observed": obs_rows}

    level_index = {}
    for term in spec.random_terms:
        levels = list(graph.nodes) if isinstance(term, BYM2Effect) else store.levels(term.key)
        lookup = {lv: i for i, lv in enumerate(levels)}
        coords[f"{term.name}_level"] = [str(lv) for lv in levels]
        level_index[term.name] = np.array([lookup[k] for k in store.column(term.key)], dtype="int64")

    with pm.Model(coords=coords) as model:
        # ----------------
        # Data containers
        # ----------------
        data = {}

        def covariate(col):
            if col not in data:
                data[col] = pm.Data(f"x_{col}", store.covariate(col), dims="obs")
            return data[col]

        # ----------------
        # Intercept & fixed effects
        # ----------------
        ip = spec.intercept_prior
        if math.isinf(ip.variance):
            raise ValueError("intercept has a flat prior; give it a finite variance to sample from the prior")
        intercept = pm.Normal("intercept", mu=ip.mean, sigma=math.sqrt(ip.variance))
        mu = intercept * at.ones(n)

        for term in spec.fixed_terms:
            if math.isinf(term.prior.variance):
                raise ValueError(f"fixed effect '{term.column}' has a flat prior")
            beta = pm.Normal(term.column, mu=term.prior.mean, sigma=math.sqrt(term.prior.variance))
            mu = mu + beta * covariate(term.column)

        # ----------------
        # Random effects (non-centred)
        # ----------------
        for term in spec.random_terms:
            dim = f"{term.name}_level"
            if isinstance(term, BYM2Effect):
                V, gamma = graph.bym2_basis()
                sigma = _sigma(term.name, term.precision_prior)
                phi = _mixing(term.name, term.mixing_prior, gamma)
                z_u = pm.Normal(f"{term.name}_z_unstructured", 0.0, 1.0, dims=dim)
                z_s = pm.Normal(f"{term.name}_z_structured", 0.0, 1.0, dims=dim)
                structured = at.dot(V * np.sqrt(gamma), z_s)  # Cov = V diag(gamma) V^T, sums to zero per component
                effect = pm.Deterministic(
                    term.name, sigma * (at.sqrt(1.0 - phi) * z_u + at.sqrt(phi) * structured), dims=dim
                )
            else:
                sigma = _sigma(term.name, term.prior)
                z = pm.Normal(f"{term.name}_z", 0.0, 1.0, dims=dim)
                effect = pm.Deterministic(term.name, sigma * z, dims=dim)

            contribution = effect[level_index[term.name]]
            if term.covariate:
                contribution = contribution * covariate(term.covariate)
            mu = mu + contribution

        mu = pm.Deterministic("mu", mu, dims="obs")

        # ----------------
        # Likelihood
        # ----------------
        sigma_y = _sigma("noise", spec.noise_prior)
        pm.Normal(
            "y_obs", mu=mu[obs_rows], sigma=sigma_y,
            observed=store.target[observed], dims="obs_observed",
        )

    return model
