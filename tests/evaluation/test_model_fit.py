# tests/evaluation/test_model_fit.py
import numpy as np
import pandas as pd
import pytest

from aqcal.evaluation.model_fit import evaluate_ppc
from aqcal.model.sampler import sample_posterior


@pytest.fixture(scope="module")
def ppc_idata(hierarchical_fit):
    return sample_posterior(hierarchical_fit, 300, seed=4)


def test_returns_metrics_and_saves_figures(ppc_idata, synthetic_store, tmp_path):
    groups = synthetic_store.column("super_region")[synthetic_store.observed_mask]
    results, figs = evaluate_ppc(ppc_idata, observed_var="y_obs", output_dir=tmp_path, groups=groups)

    metrics = results["fit_metrics"]
    for k in ("rmse", "mae", "r2", "coverage", "hdi_prob", "n_obs"):
        assert k in metrics
    assert metrics["n_obs"] == synthetic_store.n_observed
    # noise sd 0.3 in the synthetic data
    assert 0.2 < metrics["rmse"] < 0.4
    assert metrics["coverage"] > 0.85
    assert metrics["r2"] > 0.5

    assert isinstance(results["residuals"], np.ndarray)
    assert set(figs) == {"obs_vs_pred", "residuals"}
    for name in figs:
        assert (tmp_path / f"{name}.png").exists()
        assert results["paths"][name] == str(tmp_path / f"{name}.png")

    gm = results["group_metrics"]
    assert isinstance(gm, pd.DataFrame)
    assert list(gm.index) == ["SR1", "SR2", "SR3"]
    assert gm["n_obs"].sum() == synthetic_store.n_observed
    assert (tmp_path / "group_metrics.csv").exists()


def test_no_output_dir_saves_nothing(ppc_idata):
    results, figs = evaluate_ppc(ppc_idata, observed_var="y_obs")
    assert results["paths"] == {}
    assert "group_metrics" not in results
    assert len(figs) == 2


def test_missing_variable_raises(ppc_idata):
    with pytest.raises(KeyError):
        evaluate_ppc(ppc_idata, observed_var="not_there")


def test_group_length_mismatch_raises(ppc_idata):
    with pytest.raises(ValueError):
        evaluate_ppc(ppc_idata, groups=["SR1", "SR2"])
