# src/aqcal/model/priors.py
"""
Prior families for fixed effects and hyperparameters.

Hyperparameter priors are evaluated on the internal scale used by the
inference engine (log precision, logit mixing), with the Jacobian of the
transformation included, so that `log_density(theta)` is a density in theta.
"""
import math
from dataclasses import dataclass, asdict
from typing import Optional

import numpy as np
from scipy.optimize import brentq
from scipy.special import expit, gammaln

from aqcal.model.errors import InvalidSpecification


# ----------------------------
# Fixed-effect prior
# ----------------------------
@dataclass(frozen=True)
class NormalPrior:
    """Normal prior on a fixed coefficient. variance=inf gives a flat prior."""
    mean: float = 0.0
    variance: float = 1000.0

    family = "normal"

    def validate(self, role: str = "fixed"):
        if role != "fixed":
            raise InvalidSpecification(f"{self.family} prior cannot be used for '{role}'")
        if not np.isfinite(self.mean):
            raise InvalidSpecification(f"normal prior mean must be finite, got {self.mean}")
        if not self.variance > 0:
            raise InvalidSpecification(f"normal prior variance must be > 0, got {self.variance}")

    @property
    def precision(self) -> float:
        return 0.0 if math.isinf(self.variance) else 1.0 / self.variance

    def to_dict(self) -> dict:
        return {"family": self.family, **asdict(self)}


# ----------------------------
# Hyperparameter priors
# ----------------------------
@dataclass(frozen=True)
class PCPrecision:
    """
    Penalised-complexity prior on a precision tau, stated on sigma = tau^-1/2:
    P(sigma > u) = alpha. Equivalent to sigma ~ Exponential(lam), lam = -log(alpha)/u.
    """
    u: float = 1.0
    alpha: float = 0.01
    initial: Optional[float] = None

    family = "pc.prec"

    def validate(self, role: str = "precision"):
        if role != "precision":
            raise InvalidSpecification(f"{self.family} prior cannot be used for '{role}'")
        if not self.u > 0:
            raise InvalidSpecification(f"{self.family}: U must be > 0, got {self.u}")
        if not 0 < self.alpha < 1:
            raise InvalidSpecification(f"{self.family}: alpha must be in (0, 1), got {self.alpha}")

    @property
    def rate(self) -> float:
        return -math.log(self.alpha) / self.u

    def log_density(self, theta):
        # pi(theta) for theta = log(tau)
        lam = self.rate
        return math.log(lam / 2.0) - theta / 2.0 - lam * np.exp(-theta / 2.0)

    def to_dict(self) -> dict:
        return {"family": self.family, **asdict(self)}


@dataclass(frozen=True)
class LogGammaPrecision:
    """Gamma(shape, rate) prior on a precision, i.e. log-gamma on log precision."""
    shape: float = 1.0
    rate: float = 5e-5
    initial: Optional[float] = None

    family = "loggamma"

    def validate(self, role: str = "precision"):
        if role != "precision":
            raise InvalidSpecification(f"{self.family} prior cannot be used for '{role}'")
        if not (self.shape > 0 and self.rate > 0):
            raise InvalidSpecification(
                f"{self.family}: shape and rate must be > 0, got ({self.shape}, {self.rate})"
            )

    def log_density(self, theta):
        a, b = self.shape, self.rate
        return a * math.log(b) - gammaln(a) + a * theta - b * np.exp(theta)

    def to_dict(self) -> dict:
        return {"family": self.family, **asdict(self)}


def _kld_terms(phi: float, gamma: np.ndarray):
    """KLD between BYM2 at phi and the unstructured base model, and its derivative."""
    g1 = gamma - 1.0
    x = phi * g1
    small = np.abs(x) < 1e-4
    core = np.where(small, x ** 2 / 2.0 - x ** 3 / 3.0, x - np.log1p(np.where(small, 0.0, x)))
    kld = 0.5 * float(core.sum())
    dkld = 0.5 * float((g1 ** 2 * phi / (1.0 + x)).sum())
    return kld, dkld


@dataclass(frozen=True)
class PCMixing:
    """
    Penalised-complexity prior on the BYM2 mixing parameter phi, shrinking towards
    the unstructured model (phi = 0): P(phi < u) = alpha.

    The density depends on the graph through the eigenvalues `gamma` of the
    scaled generalised inverse; it is attached at fit time via `bind`.
    """
    u: float = 0.5
    alpha: float = 2.0 / 3.0
    initial: Optional[float] = None

    family = "pc.mixing"

    def validate(self, role: str = "mixing"):
        if role != "mixing":
            raise InvalidSpecification(f"{self.family} prior cannot be used for '{role}'")
        if not 0 < self.u < 1:
            raise InvalidSpecification(f"{self.family}: U must be in (0, 1), got {self.u}")
        if not 0 < self.alpha < 1:
            raise InvalidSpecification(f"{self.family}: alpha must be in (0, 1), got {self.alpha}")

    def bind(self, gamma: np.ndarray) -> "BoundPCMixing":
        return BoundPCMixing(self, np.asarray(gamma, dtype=np.float64))

    def to_dict(self) -> dict:
        return {"family": self.family, **asdict(self)}


class BoundPCMixing:
    """PC mixing prior evaluated against a particular graph."""

    def __init__(self, prior: PCMixing, gamma: np.ndarray):
        self.prior = prior
        self.gamma = gamma
        self.degenerate = bool(np.allclose(gamma, 1.0))
        if self.degenerate:
            # every node isolated: phi is not identified, fall back to Uniform(0, 1)
            self.lam = None
            return

        d_u = self.distance(prior.u)
        self.lam = -math.log(1.0 - prior.alpha) / d_u
        self.log_norm = 0.0
        if np.all(gamma > 1e-12):
            # no sum-to-zero direction: d(1) is finite, solve the truncated exponential
            d_max = self.distance(1.0)

            def excess(lam):
                return math.expm1(-lam * d_u) / math.expm1(-lam * d_max) - prior.alpha

            if excess(1e-8) < 0.0:
                self.lam = brentq(excess, 1e-8, 1e4)
                self.log_norm = math.log(-math.expm1(-self.lam * d_max))

    def distance(self, phi: float) -> float:
        kld, _ = _kld_terms(phi, self.gamma)
        return math.sqrt(max(2.0 * kld, 0.0))

    def density_phi(self, phi: float) -> float:
        """Density on the phi scale."""
        if self.degenerate:
            return 1.0
        kld, dkld = _kld_terms(phi, self.gamma)
        d = math.sqrt(max(2.0 * kld, 0.0))
        if d <= 0.0:
            # limit phi -> 0: d'(0) = sqrt(sum (gamma-1)^2 / 2)
            ddist = math.sqrt(float(((self.gamma - 1.0) ** 2).sum()) / 2.0)
        else:
            ddist = dkld / d
        return self.lam * math.exp(-self.lam * d - self.log_norm) * abs(ddist)

    def log_density(self, theta) -> float:
        phi = float(expit(theta))
        jac = phi * (1.0 - phi)
        if jac <= 0.0:
            return -np.inf
        dens = self.density_phi(phi)
        return math.log(dens) + math.log(jac) if dens > 0 else -np.inf


@dataclass(frozen=True)
class Fixed:
    """Hyperparameter held at `value` (precision, or mixing phi) and not estimated."""
    value: float = 1.0

    family = "fixed"

    def validate(self, role: str = "precision"):
        if role == "precision" and not (np.isfinite(self.value) and self.value >= 0):
            raise InvalidSpecification(f"fixed precision must be finite and >= 0, got {self.value}")
        if role == "mixing" and not 0 <= self.value < 1:
            raise InvalidSpecification(f"fixed mixing must be in [0, 1), got {self.value}")
        if role not in ("precision", "mixing"):
            raise InvalidSpecification(f"fixed prior cannot be used for '{role}'")

    def to_dict(self) -> dict:
        return {"family": self.family, **asdict(self)}


PRIOR_FAMILIES = {
    NormalPrior.family: NormalPrior,
    PCPrecision.family: PCPrecision,
    LogGammaPrecision.family: LogGammaPrecision,
    PCMixing.family: PCMixing,
    Fixed.family: Fixed,
}


def prior_from_dict(d: dict):
    d = dict(d)
    family = d.pop("family", None)
    if family not in PRIOR_FAMILIES:
        raise InvalidSpecification(f"unknown prior family '{family}'; expected one of {sorted(PRIOR_FAMILIES)}")
    try:
        return PRIOR_FAMILIES[family](**d)
    except TypeError as e:
        raise InvalidSpecification(f"bad parameters for prior '{family}': {e}") from e
