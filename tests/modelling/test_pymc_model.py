# tests/modelling/test_pymc_model.py
import numpy as np
import pymc as pm
import pytest

from aqcal.model.priors import Fixed, LogGammaPrecision, NormalPrior, PCMixing
from aqcal.model.prior_predictive_check import prior_predictive_for_spec, run_prior_predictive
from aqcal.model.pymc_model import build_pymc_model
from aqcal.model.specification import BYM2Effect, FixedEffect, IIDEffect, ModelSpecification


@pytest.fixture
def proper_spec():
    return ModelSpecification(
        terms=(FixedEffect("log_satellite", NormalPrior(1.0, 1.0)), IIDEffect("super_region")),
        intercept_prior=NormalPrior(0.0, 10.0),
        noise_prior=LogGammaPrecision(2.0, 0.5),
        name="proper",
    )


def test_build_pymc_model_names_variables(proper_spec, synthetic_store):
    model = build_pymc_model(proper_spec, synthetic_store)
    assert isinstance(model, pm.Model)
    for name in ("intercept", "log_satellite", "super_region", "super_region_sigma",
                 "noise_precision", "noise_sigma", "mu", "y_obs", "x_log_satellite"):
        assert name in model.named_vars
    assert list(model.coords["super_region_level"]) == ["SR1", "SR2", "SR3"]
    assert len(model.coords["obs_observed"]) == synthetic_store.n_observed


def test_prior_predictive_draws(proper_spec, synthetic_store):
    model = build_pymc_model(proper_spec, synthetic_store)
    idata = run_prior_predictive(model, {"prior_samples": 20, "seed": 5, "prior_vars": ["mu"]})
    assert "prior" in idata and "prior_predictive" in idata
    y = idata.prior_predictive["y_obs"].values
    assert y.shape == (1, 20, synthetic_store.n_observed)
    assert np.isfinite(y).all()
    assert "mu" in idata.prior


def test_flat_intercept_prior_cannot_be_sampled(synthetic_store):
    with pytest.raises(ValueError):
        build_pymc_model(ModelSpecification(terms=(FixedEffect("log_satellite"),)), synthetic_store)


def test_zero_fixed_precision_cannot_be_sampled(synthetic_store):
    spec = ModelSpecification(
        terms=(IIDEffect("super_region", prior=Fixed(0.0)),), intercept_prior=NormalPrior(0.0, 1.0),
    )
    with pytest.raises(ValueError):
        build_pymc_model(spec, synthetic_store)


def test_bym2_translation_draws_mixing_in_unit_interval(synthetic_store, synthetic_graph):
    spec = ModelSpecification(
        terms=(BYM2Effect("country", mixing_prior=PCMixing(0.5, 0.6667)),),
        intercept_prior=NormalPrior(0.0, 1.0),
        noise_prior=Fixed(4.0),
    )
    model = build_pymc_model(spec, synthetic_store, synthetic_graph)
    assert "country_phi" in model.named_vars
    assert len(model.coords["country_level"]) == len(synthetic_graph.nodes)

    idata = prior_predictive_for_spec(
        spec, synthetic_store, synthetic_graph,
        {"prior_samples": 10, "seed": 2, "prior_vars": ["country_z_structured"]},
    )
    phi = idata.prior["country_phi"].values
    assert ((phi > 0) & (phi < 1)).all()
    assert idata.prior_predictive["y_obs"].shape == (1, 10, synthetic_store.n_observed)
