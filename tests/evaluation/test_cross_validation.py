# tests/evaluation/test_cross_validation.py
import numpy as np
import pytest

from aqcal.evaluation.cross_validation import (
    CVResult, cross_validate, plot_cv_rmse, rmse, spatial_blocks,
)
from aqcal.model.errors import FoldImbalance, InvalidSpecification, UnidentifiableModel
from aqcal.model.fitted import FittedModel
from aqcal.model.priors import Fixed, NormalPrior
from aqcal.model.specification import FixedEffect, IIDEffect, ModelSpecification


@pytest.fixture(scope="module")
def linear_spec():
    return ModelSpecification(terms=(FixedEffect("log_satellite"),), name="linear")


@pytest.fixture(scope="module")
def default_cv(synthetic_store, linear_spec):
    return cross_validate(synthetic_store, linear_spec)


def test_rmse():
    assert rmse([1.0, 2.0], [1.0, 4.0]) == pytest.approx(np.sqrt(2.0))


def test_spatial_blocks_one_per_region(synthetic_store):
    assert spatial_blocks(synthetic_store) == [("SR1",), ("SR2",), ("SR3",)]


def test_one_fold_per_region(default_cv, synthetic_store):
    assert isinstance(default_cv, CVResult)
    assert default_cv.blocks == (("SR1",), ("SR2",), ("SR3",))
    assert default_cv.errors == {}
    for fold in default_cv.folds:
        held = synthetic_store.rows_in("super_region", fold.block)
        assert fold.rows.size == held.sum()
        assert fold.n_train == synthetic_store.n_observed - held.sum()
        assert fold.rmse == pytest.approx(rmse(fold.truth, fold.prediction))
        assert fold.fitted is None
    assert default_cv.mean_rmse == pytest.approx(default_cv.fold_rmse.mean())


def test_block_order_does_not_matter(default_cv, synthetic_store, linear_spec):
    shuffled = cross_validate(synthetic_store, linear_spec, blocks=[["SR3"], ["SR1"], ["SR2"]])
    assert shuffled.blocks == default_cv.blocks
    np.testing.assert_allclose(shuffled.fold_rmse, default_cv.fold_rmse)


def test_threads_give_the_same_result(default_cv, synthetic_store, linear_spec):
    threaded = cross_validate(synthetic_store, linear_spec, cfg={"n_jobs": 3})
    assert threaded.blocks == default_cv.blocks
    np.testing.assert_allclose(threaded.fold_rmse, default_cv.fold_rmse)


def test_region_offsets_inflate_out_of_region_error(default_cv):
    # SR1 (-0.4) and SR3 (+0.5) sit away from the pooled intercept
    by_block = dict(zip(default_cv.blocks, default_cv.fold_rmse))
    assert by_block[("SR1",)] > 0.3
    assert by_block[("SR3",)] > 0.3


def test_keep_models(synthetic_store, linear_spec):
    res = cross_validate(synthetic_store, linear_spec, blocks=[("SR1",)], cfg={"keep_models": True})
    fitted = res.folds[0].fitted
    assert isinstance(fitted, FittedModel)
    assert fitted.store.n_observed == res.folds[0].n_train


def test_invalid_blocks(synthetic_store, linear_spec):
    with pytest.raises(InvalidSpecification):
        cross_validate(synthetic_store, linear_spec, blocks=[])
    with pytest.raises(InvalidSpecification):
        cross_validate(synthetic_store, linear_spec, blocks=[("SR9",)])
    with pytest.raises(InvalidSpecification):
        cross_validate(synthetic_store, linear_spec, blocks=[("SR1",), ["SR1"]])


def test_small_training_view_fails_only_its_fold(synthetic_store, linear_spec):
    res = cross_validate(
        synthetic_store, linear_spec, blocks=[("SR1",), ("SR2", "SR3")], cfg={"min_train_rows": 300},
    )
    assert res.blocks == (("SR1",),)
    assert set(res.errors) == {("SR2", "SR3")}
    err = res.errors[("SR2", "SR3")]
    assert isinstance(err, FoldImbalance)
    assert err.block == ("SR2", "SR3")

    frame = res.as_frame()
    assert list(frame["block"]) == ["SR1", "SR2+SR3"]
    assert np.isnan(frame.loc[1, "rmse"])


def test_unidentifiable_folds_raise_when_all_fail(synthetic_store):
    # a country effect with zero prior precision loses every held-out country
    spec = ModelSpecification(
        terms=(IIDEffect("country", prior=Fixed(0.0)),),
        intercept_prior=NormalPrior(0.0, 1.0),
    )
    with pytest.raises(FoldImbalance) as info:
        cross_validate(synthetic_store, spec)
    assert not isinstance(info.value, UnidentifiableModel)


def test_plot_cv_rmse(default_cv, tmp_path):
    out = tmp_path / "cv" / "rmse.png"
    fig = plot_cv_rmse({"linear": default_cv}, out_path=out)
    assert out.exists()
    assert fig.axes[0].get_ylabel() == "RMSE"
