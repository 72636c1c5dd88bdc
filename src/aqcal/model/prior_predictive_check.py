# src/aqcal/model/prior_predictive_check.py
import logging

import arviz as az
import pymc as pm

from aqcal.model.pymc_model import build_pymc_model

logger = logging.getLogger(__name__)


def run_prior_predictive(model: pm.Model, cfg: dict) -> az.InferenceData:
    """
    Run prior predictive sampling for the free parameters, the observed variable
    and any extra deterministics listed under cfg["prior_vars"].
    """
    n_samples = int(cfg.get("prior_samples", 500))
    observed_var = cfg.get("observed_var", "y_obs")
    user_vars = tuple(cfg.get("prior_vars", ()))  # e.g. the BYM2 effect deterministic
    seed = cfg.get("seed")

    with model:
        param_names = [rv.name for rv in model.free_RVs]
        keep = list(dict.fromkeys(param_names + [observed_var]))

        if user_vars:
            available = set(model.named_vars.keys())
            keep += [v for v in user_vars if v in available]
            keep = list(dict.fromkeys(keep))

        prior_idata = pm.sample_prior_predictive(
            draws=n_samples,
            var_names=keep,
            random_seed=seed,
            return_inferencedata=True,
        )

    logger.info("Prior predictive: %d draws of %s", n_samples, keep)
    return prior_idata


def prior_predictive_for_spec(spec, store, graph=None, cfg=None) -> az.InferenceData:
    """Build the PyMC translation of `spec` and draw from its prior predictive."""
    return run_prior_predictive(build_pymc_model(spec, store, graph), dict(cfg or {}))
