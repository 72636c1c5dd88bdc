import numpy as np
import pandas as pd
import pytest
from scipy.integrate import trapezoid

from aqcal.data.observations import ObservationStore
from aqcal.model.errors import InferenceDidNotConverge, InvalidSpecification, UnidentifiableModel
from aqcal.model.inference import fit, fit_models
from aqcal.model.latent import LatentGaussianModel
from aqcal.model.priors import Fixed, LogGammaPrecision, NormalPrior
from aqcal.model.specification import BYM2Effect, FixedEffect, IIDEffect, ModelSpecification


def test_intercept_only_matches_conjugate_update():
    rng = np.random.default_rng(0)
    y = rng.normal(2.0, 0.5, size=20)
    store = ObservationStore(pd.DataFrame({"log_ground_pm25": y}))
    m0, v0, tau = 1.0, 0.5, 4.0
    spec = ModelSpecification(intercept_prior=NormalPrior(m0, v0), noise_prior=Fixed(tau))

    fm = fit(spec, store)

    post_prec = 1.0 / v0 + tau * y.size
    post_mean = (m0 / v0 + tau * y.sum()) / post_prec
    marg = fm.marginal("intercept")
    assert marg.mean == pytest.approx(post_mean, rel=1e-10)
    assert marg.variance == pytest.approx(1.0 / post_prec, rel=1e-8)
    assert fm.strategy == "fixed"
    assert fm.n_points == 1


def test_hierarchical_fit_recovers_slope_and_region_intercepts(hierarchical_fit, synthetic_df):
    truth = synthetic_df.attrs["truth"]
    slope = hierarchical_fit.marginal("log_satellite")
    assert abs(slope.mean - truth["slope"]) < 0.1

    for region, offset in truth["region_offsets"].items():
        combined = hierarchical_fit.lincomb({"intercept": 1.0, f"super_region[{region}]": 1.0})
        assert abs(combined.quantile(0.5) - (truth["intercept"] + offset)) < 0.2


def test_hierarchical_intervals_narrower_than_independent_fits(hierarchical_fit, synthetic_store):
    independent = ModelSpecification(terms=(FixedEffect("log_satellite"),))
    for region in synthetic_store.levels("super_region"):
        alone = fit(independent, synthetic_store.subset("super_region", [region]))
        lo, hi = alone.marginal("intercept").interval(0.95)

        combined = hierarchical_fit.lincomb({"intercept": 1.0, f"super_region[{region}]": 1.0})
        h_lo, h_hi = combined.interval(0.95)
        assert h_hi - h_lo < hi - lo


def test_hyperparameters_are_reported_on_natural_scale(hierarchical_fit):
    assert hierarchical_fit.hyper_names == ("noise_precision", "super_region_precision")
    noise = hierarchical_fit.marginal("noise_precision")
    # noise sd 0.3 -> precision ~ 11
    assert 8.0 < noise.mean < 14.0
    assert hierarchical_fit.strategy == "grid"
    assert hierarchical_fit.weights.sum() == pytest.approx(1.0)


def test_fitted_arrays_are_read_only(hierarchical_fit):
    with pytest.raises(ValueError):
        hierarchical_fit.latent_mean[0, 0] = 0.0


def test_single_level_tight_term_is_degenerate_limit(small_df):
    base = ModelSpecification(terms=(FixedEffect("log_satellite"),))
    df = small_df.assign(everywhere="all")
    store = ObservationStore.from_frame(df)
    tight = base.with_term(IIDEffect("everywhere", prior=Fixed(1e10)))

    a = fit(base, store)
    b = fit(tight, store)
    for name in ("intercept", "log_satellite"):
        assert b.marginal(name).mean == pytest.approx(a.marginal(name).mean, abs=1e-3)
        assert b.marginal(name).sd == pytest.approx(a.marginal(name).sd, rel=1e-2)
    assert abs(b.marginal("everywhere[all]").mean) < 1e-6


def test_missing_targets_get_predictions(tiny_frame):
    store = ObservationStore.from_frame(tiny_frame)
    spec = ModelSpecification(terms=(FixedEffect("log_satellite"),), noise_prior=Fixed(25.0))
    pred = fit(spec, store).predict()
    assert not pred.loc[2, "observed"]
    assert np.isfinite(pred.loc[2, "mean"])
    assert pred.loc[2, "predictive_sd"] > pred.loc[2, "sd"]


def test_empty_level_with_improper_prior_is_unidentifiable(tiny_frame):
    df = tiny_frame.copy()
    df.loc[df["country"] == "C", "log_ground_pm25"] = np.nan
    store = ObservationStore.from_frame(df)
    spec = ModelSpecification(terms=(IIDEffect("country", prior=Fixed(0.0)),))
    with pytest.raises(UnidentifiableModel) as err:
        fit(spec, store)
    assert err.value.term == "country"


def test_no_observed_rows_is_unidentifiable(tiny_frame):
    store = ObservationStore.from_frame(tiny_frame.assign(log_ground_pm25=np.nan))
    with pytest.raises(UnidentifiableModel):
        fit(ModelSpecification(), store)


def test_iteration_cap_reports_gradient(synthetic_store):
    spec = ModelSpecification(
        terms=(FixedEffect("log_satellite"),),
        noise_prior=LogGammaPrecision(1.0, 5e-5, initial=14.0),
    )
    with pytest.raises(InferenceDidNotConverge) as err:
        fit(spec, synthetic_store, cfg={"max_iter": 1})
    assert err.value.gradient_norm > 0
    assert err.value.iterations <= 1


def test_unknown_strategy_and_columns(synthetic_store):
    with pytest.raises(ValueError):
        fit(ModelSpecification(), synthetic_store, cfg={"strategy": "mcmc"})
    with pytest.raises(InvalidSpecification):
        fit(ModelSpecification(terms=(FixedEffect("elevation"),)), synthetic_store)


def test_bym2_fit_smooths_every_node(synthetic_df, synthetic_graph):
    df = synthetic_df.copy()
    unseen = synthetic_graph.nodes[0]
    df.loc[df["country"] == unseen, "log_ground_pm25"] = np.nan
    store = ObservationStore.from_frame(df)
    spec = ModelSpecification(terms=(FixedEffect("log_satellite"), BYM2Effect("country")))

    fm = fit(spec, store, synthetic_graph, cfg={"strategy": "eb"})
    assert fm.strategy == "eb"
    assert "country_phi" in fm.hyper_names
    phi = fm.marginal("country_phi")
    assert 0.0 < phi.mean < 1.0
    assert np.isfinite(fm.marginal(f"country[{unseen}]").mean)
    assert len([n for n in fm.latent_names if n.startswith("country[")]) == synthetic_graph.n_nodes


def test_fit_models_keeps_variants_separate(small_store):
    base = ModelSpecification(terms=(FixedEffect("log_satellite"),), name="m1")
    specs = {"m1": base, "m2": base.with_term(IIDEffect("super_region"), name="m2")}
    fitted = fit_models(specs, small_store, cfg={"n_jobs": 2})
    assert set(fitted) == {"m1", "m2"}
    assert fitted["m1"] is not fitted["m2"]
    assert "super_region[G1]" in fitted["m2"].latent_names
    assert "super_region[G1]" not in fitted["m1"].latent_names


def test_grid_hyperparameter_marginal_matches_quadrature():
    y = np.array([2.1, 2.6, 1.8, 2.9, 2.4, 2.2])
    store = ObservationStore(pd.DataFrame({"log_ground_pm25": y}))
    spec = ModelSpecification(intercept_prior=NormalPrior(0.0, 1.0))
    fm = fit(spec, store, cfg={"strategy": "grid"})

    model = LatentGaussianModel(spec, store)
    s = 1.0 / np.sqrt(fm.hessian[0, 0])
    z = np.linspace(fm.mode[0] - 12.0 * s, fm.mode[0] + 12.0 * s, 4001)
    lp = np.array([model.log_posterior(np.array([v])) for v in z])
    f = np.exp(lp - lp.max())
    mass = trapezoid(f, z)
    mean = trapezoid(np.exp(z) * f, z) / mass
    sd = np.sqrt(trapezoid(np.exp(2.0 * z) * f, z) / mass - mean ** 2)

    noise = fm.marginal("noise_precision")
    assert noise.mean == pytest.approx(mean, rel=2e-3)
    assert noise.sd == pytest.approx(sd, rel=1e-2)
    assert fm.hyper_grid.shape == fm.hyper_density.shape == (1, 401)


def test_bym2_structured_component_sums_to_zero_per_component(bym2_fit, synthetic_graph):
    nodes = synthetic_graph.nodes
    names = [f"country_structured[{node}]" for node in nodes]
    assert set(names) <= set(bym2_fit.latent_names)

    for comp in synthetic_graph.components():
        idx = [bym2_fit.latent_names.index(names[i]) for i in comp]
        np.testing.assert_allclose(bym2_fit.latent_mean[:, idx].sum(axis=1), 0.0, atol=1e-8)
        total = bym2_fit.lincomb({names[i]: 1.0 for i in comp})
        assert abs(total.mean) < 1e-8
        assert total.sd < 1e-6
    assert bym2_fit.marginal(names[0]).sd > 0
