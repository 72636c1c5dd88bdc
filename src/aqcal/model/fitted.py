# src/aqcal/model/fitted.py
import json
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd
import xarray as xr
from scipy.integrate import trapezoid
from scipy.optimize import brentq
from scipy.special import expit, logit
from scipy.stats import norm

from aqcal.data.adjacency import AdjacencyGraph
from aqcal.data.observations import ObservationStore
from aqcal.model.specification import specification_from_json

FORMAT_VERSION = "aqcal-fitted-2"


# ----------------------------
# Marginals
# ----------------------------
class Marginal:
    """
    Posterior marginal represented as a mixture of Gaussians on an internal
    scale, optionally pushed through exp (precisions) or expit (mixing).

    Exposes the reported triple (mean, variance, density curve over a bounded
    support) plus cdf / quantile / interval.
    """

    def __init__(self, name: str, means, sds, weights, transform: str = "identity", n_curve: int = 101):
        self.name = name
        self.means = np.atleast_1d(np.asarray(means, dtype=np.float64))
        self.sds = np.maximum(np.atleast_1d(np.asarray(sds, dtype=np.float64)), 1e-300)
        self.weights = np.atleast_1d(np.asarray(weights, dtype=np.float64))
        self.weights = self.weights / self.weights.sum()
        if transform not in ("identity", "exp", "expit"):
            raise ValueError(f"unknown transform '{transform}'")
        self.transform = transform
        self.n_curve = int(n_curve)

    # ---- internal scale helpers ----
    def _forward(self, z):
        if self.transform == "exp":
            return np.exp(z)
        if self.transform == "expit":
            return expit(z)
        return z

    def _inverse(self, v):
        if self.transform == "exp":
            return np.log(v)
        if self.transform == "expit":
            return logit(v)
        return v

    def _jacobian(self, z):
        if self.transform == "exp":
            return np.exp(z)
        if self.transform == "expit":
            p = expit(z)
            return p * (1.0 - p)
        return np.ones_like(z)

    @property
    def _support(self):
        return float((self.means - 6.0 * self.sds).min()), float((self.means + 6.0 * self.sds).max())

    def _internal_density(self, z):
        z = np.asarray(z, dtype=np.float64)[..., None]
        return (self.weights * norm.pdf(z, self.means, self.sds)).sum(axis=-1)

    def _internal_cdf(self, z):
        z = np.asarray(z, dtype=np.float64)[..., None]
        return (self.weights * norm.cdf(z, self.means, self.sds)).sum(axis=-1)

    # ---- reported quantities ----
    @cached_property
    def mean(self) -> float:
        return self._moments[0]

    @cached_property
    def variance(self) -> float:
        return self._moments[1]

    @property
    def sd(self) -> float:
        return float(np.sqrt(self.variance))

    @cached_property
    def _moments(self):
        w, m, s = self.weights, self.means, self.sds
        if self.transform == "identity":
            mean = float(w @ m)
            second = float(w @ (s ** 2 + m ** 2))
        elif self.transform == "exp":
            mean = float(w @ np.exp(m + 0.5 * s ** 2))
            second = float(w @ np.exp(2.0 * m + 2.0 * s ** 2))
        else:
            lo, hi = self._support
            z = np.linspace(lo, hi, 2001)
            f = self._internal_density(z)
            g = expit(z)
            mass = trapezoid(f, z)
            mean = float(trapezoid(g * f, z) / mass)
            second = float(trapezoid(g ** 2 * f, z) / mass)
        return mean, max(second - mean ** 2, 0.0)

    @cached_property
    def curve(self):
        """(x, density) on the user scale over a bounded support."""
        lo, hi = self._support
        z = np.linspace(lo, hi, self.n_curve)
        x = self._forward(z)
        dens = self._internal_density(z) / self._jacobian(z)
        return x, dens

    @property
    def x(self) -> np.ndarray:
        return self.curve[0]

    @property
    def density(self) -> np.ndarray:
        return self.curve[1]

    def cdf(self, value) -> float:
        return float(self._internal_cdf(self._inverse(np.asarray(value, dtype=np.float64))))

    def quantile(self, q: float) -> float:
        if not 0.0 < q < 1.0:
            raise ValueError(f"q must be in (0, 1), got {q}")
        if self.means.size == 1:
            return float(self._forward(norm.ppf(q, self.means[0], self.sds[0])))
        lo, hi = self._support
        z = brentq(lambda t: float(self._internal_cdf(t)) - q, lo - 1.0, hi + 1.0, xtol=1e-12)
        return float(self._forward(z))

    def interval(self, prob: float = 0.95):
        a = (1.0 - prob) / 2.0
        return self.quantile(a), self.quantile(1.0 - a)

    def mode(self) -> float:
        x, d = self.curve
        return float(x[int(np.argmax(d))])

    def to_dict(self) -> dict:
        x, d = self.curve
        lo, hi = self.interval(0.95)
        return {
            "mean": self.mean,
            "variance": self.variance,
            "sd": self.sd,
            "q0.025": lo,
            "q0.5": self.quantile(0.5),
            "q0.975": hi,
            "x": x,
            "density": d,
        }

    def __repr__(self) -> str:
        return f"Marginal('{self.name}', mean={self.mean:.4g}, sd={self.sd:.4g})"


# ----------------------------
# Fitted model
# ----------------------------
@dataclass(frozen=True, eq=False)
class FittedModel:
    """
    Output of `aqcal.model.inference.fit`. Every array is read-only; the
    object is owned by whoever requested the fit and is never updated.

    points          : (K, d) hyperparameter integration points (internal scale)
    weights         : (K,)   normalised posterior weights of the points
    latent_mean/var : (K, p) Gaussian conditional moments per point
    eta_mean/var    : (K, n) linear predictor moments per point and row
    noise_precision : (K,)   observation precision per point
    hyper_grid, hyper_density : (d, m) tabulated hyperparameter marginals (internal scale)
    """
    spec: object
    store: ObservationStore
    graph: Optional[AdjacencyGraph]
    latent_names: tuple
    latent_terms: tuple
    hyper_names: tuple
    hyper_transforms: tuple
    points: np.ndarray
    log_post: np.ndarray
    weights: np.ndarray
    latent_mean: np.ndarray
    latent_var: np.ndarray
    eta_mean: np.ndarray
    eta_var: np.ndarray
    noise_precision: np.ndarray
    mode: np.ndarray
    hessian: np.ndarray
    hyper_grid: np.ndarray
    hyper_density: np.ndarray
    strategy: str
    log_marginal_likelihood: float
    diagnostics: Dict = field(default_factory=dict)

    def __post_init__(self):
        for name in ("points", "log_post", "weights", "latent_mean", "latent_var",
                     "eta_mean", "eta_var", "noise_precision", "mode", "hessian",
                     "hyper_grid", "hyper_density"):
            arr = np.array(getattr(self, name), dtype=np.float64, copy=True)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    # ---- shapes ----
    @property
    def n_points(self) -> int:
        return int(self.weights.shape[0])

    @property
    def n_rows(self) -> int:
        return int(self.eta_mean.shape[1])

    @cached_property
    def latent_model(self):
        """Latent Gaussian model rebuilt from spec + data, for sampling and linear combinations."""
        from aqcal.model.latent import LatentGaussianModel
        return LatentGaussianModel(self.spec, self.store, self.graph)

    # ---- marginals ----
    def hyper_marginal(self, name: str) -> Marginal:
        """Tabulated marginal as a mixture of narrow Gaussians centred on its grid."""
        j = self.hyper_names.index(name)
        grid, dens = self.hyper_grid[j], self.hyper_density[j]
        dx = float(grid[1] - grid[0])
        return Marginal(name, grid, dx, dens * dx, transform=self.hyper_transforms[j])

    def latent_marginal(self, name: str) -> Marginal:
        j = self.latent_names.index(name)
        return Marginal(name, self.latent_mean[:, j], np.sqrt(self.latent_var[:, j]), self.weights)

    def marginal(self, name: str) -> Marginal:
        if name in self.latent_names:
            return self.latent_marginal(name)
        if name in self.hyper_names:
            return self.hyper_marginal(name)
        raise KeyError(f"no parameter named '{name}'")

    @cached_property
    def marginals(self) -> Dict[str, Marginal]:
        out = {n: self.latent_marginal(n) for n in self.latent_names}
        out.update({n: self.hyper_marginal(n) for n in self.hyper_names})
        return out

    def linear_predictor(self, row: int) -> Marginal:
        return Marginal(f"eta[{row}]", self.eta_mean[:, row], np.sqrt(self.eta_var[:, row]), self.weights)

    def predictive(self, row: int) -> Marginal:
        """Posterior predictive of the target at `row` (observation noise included)."""
        sd = np.sqrt(self.eta_var[:, row] + 1.0 / self.noise_precision)
        return Marginal(f"y[{row}]", self.eta_mean[:, row], sd, self.weights)

    def predict(self) -> pd.DataFrame:
        """Per-row posterior mean/sd of the linear predictor and the predictive sd."""
        w = self.weights
        mean = w @ self.eta_mean
        var = w @ (self.eta_var + self.eta_mean ** 2) - mean ** 2
        pred_var = var + w @ (1.0 / self.noise_precision)
        return pd.DataFrame({
            "mean": mean,
            "sd": np.sqrt(np.maximum(var, 0.0)),
            "predictive_sd": np.sqrt(np.maximum(pred_var, 0.0)),
            "observed": self.store.observed_mask,
        })

    def lincomb(self, weights: Dict[str, float], name: str = "lincomb") -> Marginal:
        """Marginal of sum_j c_j x_j over latent coordinates, exact per integration point."""
        model = self.latent_model
        c = model.internal_weights(weights)

        means, sds = [], []
        for theta in self.points:
            cond = model.conditional(theta)
            means.append(float(c @ cond.mean))
            Sc = model.covariance_times(cond, c)
            sds.append(float(np.sqrt(max(c @ Sc, 0.0))))
        return Marginal(name, means, sds, self.weights)

    # ---- serialisation ----
    def to_dataset(self) -> xr.Dataset:
        frame = self.store.frame
        data_vars = {
            "points": (("point", "hyper"), self.points),
            "log_post": (("point",), self.log_post),
            "weights": (("point",), self.weights),
            "latent_mean": (("point", "latent"), self.latent_mean),
            "latent_var": (("point", "latent"), self.latent_var),
            "eta_mean": (("point", "row"), self.eta_mean),
            "eta_var": (("point", "row"), self.eta_var),
            "noise_precision": (("point",), self.noise_precision),
            "mode": (("hyper",), self.mode),
            "hessian": (("hyper", "hyper_col"), self.hessian),
            "hyper_grid": (("hyper", "hyper_node"), self.hyper_grid),
            "hyper_density": (("hyper", "hyper_node"), self.hyper_density),
        }
        numeric_cols, string_cols = [], []
        for col in frame.columns:
            values = frame[col]
            if pd.api.types.is_numeric_dtype(values):
                data_vars[f"data__{col}"] = (("row",), values.to_numpy(dtype=np.float64))
                numeric_cols.append(col)
            else:
                data_vars[f"data__{col}"] = (("row",), values.astype(str).to_numpy(dtype=object))
                string_cols.append(col)

        attrs = {
            "format": FORMAT_VERSION,
            "spec": self.spec.to_json(),
            "graph": json.dumps(list(self.graph.to_dict().items()) if self.graph is not None else None),
            "target": self.store.target_name,
            "columns": json.dumps([str(c) for c in frame.columns]),
            "numeric_columns": json.dumps(numeric_cols),
            "string_columns": json.dumps(string_cols),
            "integer_columns": json.dumps([c for c in numeric_cols
                                           if pd.api.types.is_integer_dtype(frame[c])]),
            "latent_terms": json.dumps(list(self.latent_terms)),
            "hyper_transforms": json.dumps(list(self.hyper_transforms)),
            "strategy": self.strategy,
            "log_marginal_likelihood": float(self.log_marginal_likelihood),
            "diagnostics": json.dumps(self.diagnostics, default=float),
        }
        coords = {
            "latent": np.array(self.latent_names, dtype=object),
            "hyper": np.array(self.hyper_names, dtype=object),
            "row": np.arange(self.n_rows),
        }
        return xr.Dataset(data_vars=data_vars, coords=coords, attrs=attrs)

    def to_netcdf(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataset().to_netcdf(path, engine="h5netcdf")
        return path

    @classmethod
    def from_dataset(cls, ds: xr.Dataset) -> "FittedModel":
        if ds.attrs.get("format") != FORMAT_VERSION:
            raise ValueError(f"unsupported fitted-model format {ds.attrs.get('format')!r}")
        spec = specification_from_json(ds.attrs["spec"])

        columns = {}
        integer_cols = set(json.loads(ds.attrs["integer_columns"]))
        for col in json.loads(ds.attrs["numeric_columns"]):
            values = ds[f"data__{col}"].values.astype(np.float64)
            columns[col] = values.astype(np.int64) if col in integer_cols else values
        for col in json.loads(ds.attrs["string_columns"]):
            columns[col] = ds[f"data__{col}"].values.astype(str).astype(object)
        order = json.loads(ds.attrs["columns"])
        store = ObservationStore(pd.DataFrame(columns)[order], target=ds.attrs["target"])

        graph = None
        pairs = json.loads(ds.attrs["graph"])
        if pairs is not None:
            graph = AdjacencyGraph.from_neighbors({node: nbs for node, nbs in pairs})

        return cls(
            spec=spec,
            store=store,
            graph=graph,
            latent_names=tuple(str(v) for v in ds["latent"].values),
            latent_terms=tuple(json.loads(ds.attrs["latent_terms"])),
            hyper_names=tuple(str(v) for v in ds["hyper"].values),
            hyper_transforms=tuple(json.loads(ds.attrs["hyper_transforms"])),
            points=ds["points"].values,
            log_post=ds["log_post"].values,
            weights=ds["weights"].values,
            latent_mean=ds["latent_mean"].values,
            latent_var=ds["latent_var"].values,
            eta_mean=ds["eta_mean"].values,
            eta_var=ds["eta_var"].values,
            noise_precision=ds["noise_precision"].values,
            mode=ds["mode"].values,
            hessian=ds["hessian"].values,
            hyper_grid=ds["hyper_grid"].values,
            hyper_density=ds["hyper_density"].values,
            strategy=str(ds.attrs["strategy"]),
            log_marginal_likelihood=float(ds.attrs["log_marginal_likelihood"]),
            diagnostics=json.loads(ds.attrs["diagnostics"]),
        )

    @classmethod
    def from_netcdf(cls, path) -> "FittedModel":
        with xr.open_dataset(path, engine="h5netcdf") as ds:
            return cls.from_dataset(ds.load())

    def __repr__(self) -> str:
        return (f"FittedModel(spec='{self.spec.name}', latent={len(self.latent_names)}, "
                f"hyper={len(self.hyper_names)}, points={self.n_points}, strategy='{self.strategy}')")


# ----------------------------
# Summaries
# ----------------------------
def _kind(fitted: FittedModel, name: str) -> str:
    if name in fitted.hyper_names:
        return "hyperparameter"
    term = fitted.latent_terms[fitted.latent_names.index(name)]
    return "fixed" if name == term else "random"


def summarize(fitted: FittedModel) -> Dict[str, dict]:
    """Per-parameter {mean, variance, sd, quantiles, x, density} for every latent quantity and hyperparameter."""
    out = {}
    for name, marg in fitted.marginals.items():
        entry = marg.to_dict()
        entry["kind"] = _kind(fitted, name)
        out[name] = entry
    return out


def summary_table(fitted: FittedModel) -> pd.DataFrame:
    """Tabular view of `summarize` without the density curves."""
    rows = []
    for name, entry in summarize(fitted).items():
        rows.append({k: v for k, v in entry.items() if k not in ("x", "density")} | {"parameter": name})
    cols = ["parameter", "kind", "mean", "sd", "variance", "q0.025", "q0.5", "q0.975"]
    return pd.DataFrame(rows)[cols].set_index("parameter")
