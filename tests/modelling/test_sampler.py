# tests/modelling/test_sampler.py
import arviz as az
import numpy as np
import pytest

from aqcal.model.inference import fit
from aqcal.model.sampler import sample_posterior
from aqcal.model.specification import FixedEffect, IIDEffect, ModelSpecification


def test_sample_posterior_returns_inferencedata(hierarchical_fit, synthetic_store):
    idata = sample_posterior(hierarchical_fit, 200, seed=1)
    assert isinstance(idata, az.InferenceData)
    for group in ("posterior", "posterior_predictive", "observed_data"):
        assert group in idata

    post = idata.posterior
    assert post["super_region"].shape == (1, 200, 3)
    assert list(post["super_region"].coords["super_region_level"].values) == ["SR1", "SR2", "SR3"]
    assert post["eta"].shape == (1, 200, synthetic_store.n_rows)
    assert "noise_precision" in post and "super_region_precision" in post
    assert (post["noise_precision"].values > 0).all()

    n_obs = synthetic_store.n_observed
    assert idata.posterior_predictive["y_obs"].shape == (1, 200, n_obs)
    assert idata.posterior_predictive["y_pred"].shape == (1, 200, synthetic_store.n_rows)
    np.testing.assert_allclose(
        idata.observed_data["y_obs"].values, synthetic_store.target[synthetic_store.observed_mask]
    )


def test_sample_means_agree_with_marginals(hierarchical_fit):
    n = 4000
    idata = sample_posterior(hierarchical_fit, n, seed=3)
    for name in ("intercept", "log_satellite"):
        marg = hierarchical_fit.marginal(name)
        draws = idata.posterior[name].values.ravel()
        assert abs(draws.mean() - marg.mean) < 5 * marg.sd / np.sqrt(n)


def test_same_seed_same_draws(hierarchical_fit):
    a = sample_posterior(hierarchical_fit, 50, seed=9)
    b = sample_posterior(hierarchical_fit, 50, seed=9)
    np.testing.assert_array_equal(a.posterior["eta"].values, b.posterior["eta"].values)


def test_sample_count_must_be_positive(hierarchical_fit):
    with pytest.raises(ValueError):
        sample_posterior(hierarchical_fit, 0)


def test_empirical_bayes_draws_spread_hyperparameters(small_store):
    spec = ModelSpecification(terms=(FixedEffect("log_satellite"), IIDEffect("super_region")))
    fm = fit(spec, small_store, cfg={"strategy": "eb"})
    n = 2000
    draws = sample_posterior(fm, n, seed=5).posterior["noise_precision"].values.ravel()

    marg = fm.marginal("noise_precision")
    assert np.unique(draws).size > n // 2
    assert draws.std() == pytest.approx(marg.sd, rel=0.15)
    assert abs(draws.mean() - marg.mean) < 5 * marg.sd / np.sqrt(n)


def test_bym2_structured_draws_sum_to_zero(bym2_fit, synthetic_graph):
    idata = sample_posterior(bym2_fit, 100, seed=2)
    structured = idata.posterior["country_structured"]
    assert structured.shape == (1, 100, synthetic_graph.n_nodes)
    assert list(structured.coords["country_level"].values) == [str(n) for n in synthetic_graph.nodes]
    for comp in synthetic_graph.components():
        np.testing.assert_allclose(structured.values[0][:, comp].sum(axis=1), 0.0, atol=1e-8)
