# tests/conftest.py
import pytest
import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg", force=True)

from aqcal.data.make_synthetic_data import (
    make_synthetic_calibration_data, make_regional_adjacency, simulate_from_model,
)
from aqcal.data.observations import ObservationStore
from aqcal.model.inference import fit
from aqcal.model.specification import BYM2Effect, FixedEffect, IIDEffect, ModelSpecification


@pytest.fixture(scope="session")
def synthetic_df():
    """600 rows over 3 super-regions: y = 0.5 + 1.0 * x + offset + N(0, 0.3^2)."""
    return make_synthetic_calibration_data(n_rows=600, n_super_regions=3, countries_per_region=6, seed=7)


@pytest.fixture(scope="session")
def synthetic_store(synthetic_df):
    return ObservationStore.from_frame(synthetic_df)


@pytest.fixture(scope="session")
def synthetic_graph(synthetic_df):
    return make_regional_adjacency(synthetic_df)


@pytest.fixture(scope="session")
def hierarchical_spec():
    return ModelSpecification(
        terms=(FixedEffect("log_satellite"), IIDEffect("super_region")),
        name="region_intercept",
    )


@pytest.fixture(scope="session")
def hierarchical_fit(hierarchical_spec, synthetic_store):
    """Random super-region intercept fitted once for the whole session."""
    return fit(hierarchical_spec, synthetic_store)


@pytest.fixture
def small_df():
    """30 rows, 3 groups; small enough for refit-per-observation checks."""
    return simulate_from_model(n_rows=30, n_groups=3, seed=11, noise_sd=0.3)


@pytest.fixture
def small_store(small_df):
    return ObservationStore.from_frame(small_df)


@pytest.fixture
def tiny_frame():
    return pd.DataFrame({
        "log_satellite": [2.0, 2.5, 3.0, 2.2, 2.8, 3.1],
        "log_ground_pm25": [2.4, 3.1, np.nan, 2.6, 3.3, 3.5],
        "country": ["A", "A", "B", "B", "C", "C"],
        "super_region": ["R1", "R1", "R1", "R2", "R2", "R2"],
    })


@pytest.fixture
def ring_neighbors():
    return {"A": ["B", "E"], "B": ["A", "C"], "C": ["B", "D"], "D": ["C", "E"], "E": ["D", "A"]}


@pytest.fixture(scope="session")
def bym2_fit(synthetic_store, synthetic_graph):
    """Country BYM2 on three disconnected rings of six countries, empirical Bayes."""
    spec = ModelSpecification(terms=(FixedEffect("log_satellite"), BYM2Effect("country")), name="country_bym2")
    return fit(spec, synthetic_store, synthetic_graph, cfg={"strategy": "eb"})
