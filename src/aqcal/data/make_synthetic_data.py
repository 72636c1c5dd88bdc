# src/aqcal/data/make_synthetic_data.py
import numpy as np
import pandas as pd

from aqcal.data.adjacency import AdjacencyGraph


def make_synthetic_calibration_data(
    n_rows=600, n_super_regions=3, countries_per_region=6, seed=42,
    intercept=0.5, slope=1.0, noise_sd=0.3, region_offsets=(-0.4, 0.0, 0.5),
    country_sd=0.0, missing_frac=0.0,
) -> pd.DataFrame:
    """
    Ground/satellite pairings with known truth:

        log_ground_pm25 = intercept + slope * log_satellite + offset[super_region]
                          (+ country effect) + N(0, noise_sd^2)

    Rows are spread evenly across super-regions and uniformly across the
    countries of each region. The truth is kept in `df.attrs["truth"]`.
    """
    rng = np.random.default_rng(seed)

    region_offsets = np.asarray(region_offsets, dtype=np.float64)
    if region_offsets.size != n_super_regions:
        raise ValueError(
            f"region_offsets has {region_offsets.size} values for {n_super_regions} super-regions"
        )

    # ---- Region / country structure ----
    regions = [f"SR{r + 1}" for r in range(n_super_regions)]
    countries = {reg: [f"{reg}_C{c + 1:02d}" for c in range(countries_per_region)] for reg in regions}
    country_effect = {c: float(rng.normal(0.0, country_sd)) if country_sd > 0 else 0.0
                      for reg in regions for c in countries[reg]}

    region_idx = np.arange(n_rows) % n_super_regions
    super_region = np.array([regions[i] for i in region_idx], dtype=object)
    country = np.array([countries[reg][rng.integers(countries_per_region)] for reg in super_region], dtype=object)

    # ---- Satellite signal and ground truth ----
    log_satellite = rng.normal(2.5, 0.5, n_rows)
    mu = (intercept + slope * log_satellite + region_offsets[region_idx]
          + np.array([country_effect[c] for c in country]))
    log_ground = mu + rng.normal(0.0, noise_sd, n_rows)

    if missing_frac > 0:
        log_ground[rng.random(n_rows) < missing_frac] = np.nan

    df = pd.DataFrame({
        "log_satellite": log_satellite,
        "log_ground_pm25": log_ground,
        "country": country,
        "super_region": super_region,
    })
    df.attrs["truth"] = {
        "intercept": intercept,
        "slope": slope,
        "noise_sd": noise_sd,
        "region_offsets": dict(zip(regions, region_offsets.tolist())),
        "country_effects": country_effect,
    }
    return df


def make_ring_adjacency(countries) -> AdjacencyGraph:
    """Each country neighbours the next one, closing the ring (a single edge for two, isolated for one)."""
    countries = list(countries)
    n = len(countries)
    mapping = {c: set() for c in countries}
    if n >= 2:
        for i, c in enumerate(countries):
            nxt = countries[(i + 1) % n]
            if nxt != c:
                mapping[c].add(nxt)
                mapping[nxt].add(c)
    return AdjacencyGraph.from_neighbors(mapping)


def make_regional_adjacency(frame: pd.DataFrame, key="country", region_key="super_region") -> AdjacencyGraph:
    """One ring of countries per super-region; no edges cross regions."""
    mapping = {}
    for _, grp in frame.groupby(region_key, sort=True):
        ring = make_ring_adjacency(sorted(pd.unique(grp[key]), key=str))
        mapping.update({node: ring.neighbors(node) for node in ring.nodes})
    return AdjacencyGraph.from_neighbors(mapping)


def simulate_from_model(
    n_rows=300, n_groups=8, seed=0, intercept=1.0, slope=0.8, group_sd=0.5, noise_sd=0.4,
) -> pd.DataFrame:
    """Data drawn exactly from a random-intercept model (i.i.d. group effects, Gaussian noise)."""
    rng = np.random.default_rng(seed)
    groups = [f"G{g + 1}" for g in range(n_groups)]
    effects = rng.normal(0.0, group_sd, n_groups)
    g_idx = rng.integers(n_groups, size=n_rows)
    x = rng.normal(0.0, 1.0, n_rows)
    y = intercept + slope * x + effects[g_idx] + rng.normal(0.0, noise_sd, n_rows)

    df = pd.DataFrame({
        "log_satellite": x,
        "log_ground_pm25": y,
        "country": np.array([groups[i] for i in g_idx], dtype=object),
        "super_region": np.array([groups[i] for i in g_idx], dtype=object),
    })
    df.attrs["truth"] = {"intercept": intercept, "slope": slope,
                         "group_effects": dict(zip(groups, effects.tolist())), "noise_sd": noise_sd}
    return df
