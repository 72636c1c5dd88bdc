# src/aqcal/model/latent.py
"""
Latent Gaussian field for a ModelSpecification.

All coefficients (intercept, fixed effects, every random-effect level) form one
Gaussian vector x with prior N(m0, Q(theta)^-1). Observations are
y = A x + eps, eps ~ N(0, 1/tau_y), so x | y, theta is Gaussian in closed form:

    Q_post = Q(theta) + tau_y A'A
    mu     = Q_post^-1 (Q(theta) m0 + tau_y A'y)

BYM2 terms carry two latent blocks: the combined effect b per node and the
coefficients s of the scaled structured component u* = V+ s in the graph's
eigen-basis, with b | s ~ N(sqrt(phi / tau) u*, (1 - phi) / tau I). Reported
latent quantities are T x: every coordinate as is, except s, which is reported
as u* per node.

The hyperparameter posterior is available up to a constant via

    log pi(theta | y) = log pi(theta) + log pi(x*|theta) + log pi(y|x*,theta) - log pi_G(x*|y,theta)

evaluated at x* = mu.
"""
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.special import expit

from aqcal.model.errors import UnidentifiableModel
from aqcal.model.priors import Fixed, PCMixing
from aqcal.model.specification import BYM2Effect, IIDEffect

LOG_2PI = math.log(2.0 * math.pi)

# Box on the internal scale; keeps Q_post numerically positive definite
LOG_PRECISION_BOUNDS = (-15.0, 15.0)
LOGIT_MIXING_BOUNDS = (-10.0, 10.0)


@dataclass
class HyperParameter:
    name: str
    term: str
    kind: str            # "precision" | "mixing"
    prior: object        # exposes log_density(theta) on the internal scale
    initial: float

    def to_user(self, theta):
        return np.exp(theta) if self.kind == "precision" else expit(theta)

    @property
    def transform(self) -> str:
        return "exp" if self.kind == "precision" else "expit"

    @property
    def bounds(self):
        return LOG_PRECISION_BOUNDS if self.kind == "precision" else LOGIT_MIXING_BOUNDS


@dataclass
class Block:
    """Contiguous slice of the latent vector owned by one term."""
    term: str
    kind: str                      # "fixed" | "iid" | "bym2"
    start: int
    stop: int
    levels: list
    precision: Optional[int] = None     # index into theta, or None when fixed
    fixed_precision: Optional[float] = None
    mixing: Optional[int] = None
    fixed_mixing: Optional[float] = None
    basis: Optional[tuple] = None       # (V+, gamma+) for BYM2, zero eigenvalues dropped
    structured: Optional[tuple] = None  # internal (start, stop) of the BYM2 basis coefficients
    owner: Optional[str] = None         # term a reported block belongs to

    @property
    def size(self) -> int:
        return self.stop - self.start


@dataclass
class Conditional:
    """Gaussian conditional x | y, theta at one hyperparameter point."""
    theta: np.ndarray
    mean: np.ndarray
    chol: tuple                    # scipy cho_factor output of Q_post
    noise_precision: float
    log_posterior: float
    log_likelihood: float          # log p(y | theta), latent field integrated out


class LatentGaussianModel:
    """Design matrix, prior structure and hyperparameter layout of a specification."""

    def __init__(self, spec, store, graph=None):
        self.spec = spec
        self.store = store
        self.graph = graph

        y = store.target
        self.observed = ~np.isnan(y)
        self.y_obs = y[self.observed]
        self.n_rows = store.n_rows
        self.n_obs = int(self.observed.sum())

        self.hyper: List[HyperParameter] = []
        self.blocks: List[Block] = []
        self.names: List[str] = []
        self.column_terms: List[str] = []
        columns, prior_mean, fixed_prec = [], [], []

        var_y = float(np.var(self.y_obs)) if self.n_obs > 1 else 1.0
        default_log_prec = -math.log(max(var_y, 1e-8))

        # ---- noise ----
        self.noise_index = self._add_hyper("noise_precision", "noise", "precision",
                                           spec.noise_prior, default_log_prec)
        self.noise_fixed = spec.noise_prior.value if isinstance(spec.noise_prior, Fixed) else None

        # ---- intercept + fixed effects ----
        start = 0
        columns.append(np.ones(self.n_rows))
        self.names.append("intercept")
        self.column_terms.append("intercept")
        prior_mean.append(spec.intercept_prior.mean)
        fixed_prec.append(spec.intercept_prior.precision)
        for term in spec.fixed_terms:
            columns.append(store.covariate(term.column))
            self.names.append(term.column)
            self.column_terms.append(term.name)
            prior_mean.append(term.prior.mean)
            fixed_prec.append(term.prior.precision)
        self.n_fixed = len(columns)
        self.blocks.append(Block("fixed", "fixed", start, self.n_fixed, list(self.names)))
        self.report_blocks: List[Block] = [Block("fixed", "fixed", start, self.n_fixed, list(self.names))]
        self.fixed_precision = np.asarray(fixed_prec, dtype=np.float64)
        self.internal_names = list(self.names)
        self.internal_terms = list(self.column_terms)
        # (report start, internal start, map from internal slice to reported rows)
        pieces = [(0, 0, np.eye(self.n_fixed))]

        A_fixed = np.column_stack(columns)
        A_parts = [A_fixed]
        offset = self.n_fixed

        # ---- random effects ----
        for term in spec.random_terms:
            if isinstance(term, BYM2Effect):
                levels = list(graph.nodes)
            else:
                levels = store.levels(term.key)
            index = {lv: i for i, lv in enumerate(levels)}
            m = len(levels)

            keys = store.column(term.key)
            multiplier = store.covariate(term.covariate) if term.covariate else np.ones(self.n_rows)
            Z = np.zeros((self.n_rows, m))
            Z[np.arange(self.n_rows), [index[k] for k in keys]] = multiplier
            A_parts.append(Z)

            block = Block(term.name, term.kind, offset, offset + m, levels)
            prec_prior = term.prior if isinstance(term, IIDEffect) else term.precision_prior
            if isinstance(prec_prior, Fixed):
                block.fixed_precision = float(prec_prior.value)
            else:
                block.precision = self._add_hyper(f"{term.name}_precision", term.name, "precision",
                                                  prec_prior, default_log_prec)

            names = [f"{term.name}[{lv}]" for lv in levels]
            self._report(pieces, term.name, term.kind, levels, names, offset, np.eye(m))
            self.internal_names.extend(names)
            self.internal_terms.extend([term.name] * m)
            prior_mean.extend([0.0] * m)
            offset += m

            if isinstance(term, BYM2Effect):
                V, gamma = graph.bym2_basis()
                keep = gamma > 0
                r = int(keep.sum())
                block.basis = (V[:, keep], gamma[keep])
                block.structured = (offset, offset + r)
                A_parts.append(np.zeros((self.n_rows, r)))

                mix = term.mixing_prior
                if isinstance(mix, Fixed):
                    block.fixed_mixing = float(mix.value)
                elif isinstance(mix, PCMixing):
                    block.mixing = self._add_hyper(f"{term.name}_phi", term.name, "mixing",
                                                   mix.bind(gamma), -3.0)

                label = f"{term.name}_structured"
                self._report(pieces, label, "structured", levels, [f"{label}[{lv}]" for lv in levels],
                             offset, block.basis[0], owner=term.name)
                self.internal_names.extend(f"{label}_basis[{k}]" for k in range(r))
                self.internal_terms.extend([term.name] * r)
                prior_mean.extend([0.0] * r)
                offset += r

            self.blocks.append(block)

        self.A = np.hstack(A_parts)
        self.n_latent = self.A.shape[1]
        self.prior_mean = np.asarray(prior_mean, dtype=np.float64)

        self.T = np.zeros((len(self.names), self.n_latent))
        for r0, i0, M in pieces:
            self.T[r0:r0 + M.shape[0], i0:i0 + M.shape[1]] = M

        A_obs = self.A[self.observed]
        self.A_obs = A_obs
        self.AtA = A_obs.T @ A_obs
        self.Aty = A_obs.T @ self.y_obs

    def _report(self, pieces, label, kind, levels, names, internal_start, M, owner=None):
        """Append a reported block of len(levels) quantities equal to M @ x[internal_start:...]."""
        r0 = len(self.names)
        pieces.append((r0, internal_start, M))
        self.report_blocks.append(Block(label, kind, r0, r0 + len(levels), levels, owner=owner))
        self.names.extend(names)
        self.column_terms.extend([label] * len(levels))

    # ----------------------------
    # Hyperparameters
    # ----------------------------
    def _add_hyper(self, name, term, kind, prior, default_initial):
        if isinstance(prior, Fixed):
            return None
        initial = getattr(getattr(prior, "prior", prior), "initial", None)
        self.hyper.append(HyperParameter(name, term, kind, prior,
                                         default_initial if initial is None else float(initial)))
        return len(self.hyper) - 1

    @property
    def n_hyper(self) -> int:
        return len(self.hyper)

    @property
    def hyper_names(self) -> List[str]:
        return [h.name for h in self.hyper]

    def initial_theta(self) -> np.ndarray:
        return np.array([h.initial for h in self.hyper], dtype=np.float64)

    def bounds(self):
        return [h.bounds for h in self.hyper]

    def log_prior(self, theta) -> float:
        return float(sum(h.prior.log_density(float(t)) for h, t in zip(self.hyper, theta)))

    def noise_precision(self, theta) -> float:
        if self.noise_index is None:
            return float(self.noise_fixed)
        return float(np.exp(theta[self.noise_index]))

    def _block_values(self, block: Block, theta):
        tau = block.fixed_precision if block.precision is None else float(np.exp(theta[block.precision]))
        phi = None
        if block.kind == "bym2":
            phi = block.fixed_mixing if block.mixing is None else float(expit(theta[block.mixing]))
        return tau, phi

    # ----------------------------
    # Prior precision
    # ----------------------------
    def prior_precision(self, theta):
        """Return (Q, logdet of the proper part of Q, number of proper coordinates)."""
        p = self.n_latent
        Q = np.zeros((p, p))
        fixed_idx = np.arange(self.n_fixed)
        Q[fixed_idx, fixed_idx] = self.fixed_precision
        proper = self.fixed_precision > 0
        logdet = float(np.log(self.fixed_precision[proper]).sum())
        n_proper = int(proper.sum())

        for block in self.blocks[1:]:
            tau, phi = self._block_values(block, theta)
            sl = slice(block.start, block.stop)
            m = block.size
            if block.kind == "bym2":
                # u* = V+ s with s ~ N(0, diag(gamma+)), proper whatever tau is
                Vp, gp = block.basis
                ss = slice(*block.structured)
                r = gp.size
                Q[ss, ss] = np.diag(1.0 / gp)
                logdet -= float(np.log(gp).sum())
                n_proper += r
            if tau == 0.0:
                continue
            if block.kind == "iid":
                Q[sl, sl] = tau * np.eye(m)
                logdet += m * math.log(tau)
            else:
                # b | s ~ N(sqrt(phi / tau) V+ s, (1 - phi) / tau I)
                c = tau / (1.0 - phi)
                Q[sl, sl] = c * np.eye(m)
                Q[sl, ss] = -math.sqrt(tau * phi) / (1.0 - phi) * Vp
                Q[ss, sl] = Q[sl, ss].T
                Q[ss, ss] += phi / (1.0 - phi) * np.eye(r)
                logdet += m * math.log(c)
            n_proper += m
        return Q, logdet, n_proper

    # ----------------------------
    # Identifiability
    # ----------------------------
    def check_identifiable(self, theta=None):
        """
        Raise UnidentifiableModel when the conditional precision is singular at theta.
        A coordinate with zero prior precision and no observations names its term.
        """
        theta = self.initial_theta() if theta is None else theta
        Q, _, _ = self.prior_precision(theta)
        has_data = np.abs(self.A_obs).sum(axis=0) > 0
        free = (np.diag(Q) == 0.0) & ~has_data
        if free.any():
            j = int(np.flatnonzero(free)[0])
            raise UnidentifiableModel(
                f"latent coordinate '{self.internal_names[j]}' has no observations and an improper prior",
                term=self.internal_terms[j],
            )
        try:
            self.conditional(theta)
        except LinAlgError:
            improper = [self.internal_terms[j] for j in np.flatnonzero(np.diag(Q) == 0.0)]
            raise UnidentifiableModel(
                "conditional precision of the latent field is singular",
                term=improper[-1] if improper else None,
            ) from None

    # ----------------------------
    # Gaussian conditional
    # ----------------------------
    def conditional(self, theta) -> Conditional:
        """Gaussian x | y, theta and the unnormalised log pi(theta | y). Raises LinAlgError."""
        theta = np.asarray(theta, dtype=np.float64)
        tau_y = self.noise_precision(theta)
        Q, logdet_Q, n_proper = self.prior_precision(theta)

        Q_post = Q + tau_y * self.AtA
        b = Q @ self.prior_mean + tau_y * self.Aty
        chol = cho_factor(Q_post, lower=True, check_finite=False)
        diag = np.diag(chol[0])
        # a pivot far below its diagonal means the coordinate is a combination of earlier ones
        if not np.all(diag > 0) or np.any(diag ** 2 < 1e-12 * np.diag(Q_post)):
            raise LinAlgError("conditional precision is singular")
        mu = cho_solve(chol, b, check_finite=False)

        dev = mu - self.prior_mean
        resid = self.y_obs - self.A_obs @ mu
        log_prior_x = -0.5 * dev @ Q @ dev + 0.5 * logdet_Q - 0.5 * n_proper * LOG_2PI
        log_lik = 0.5 * self.n_obs * (math.log(tau_y) - LOG_2PI) - 0.5 * tau_y * float(resid @ resid)
        log_post_x = float(np.log(diag).sum()) - 0.5 * self.n_latent * LOG_2PI
        log_marginal = float(log_prior_x + log_lik - log_post_x)

        return Conditional(
            theta=theta,
            mean=mu,
            chol=chol,
            noise_precision=tau_y,
            log_posterior=log_marginal + self.log_prior(theta),
            log_likelihood=log_marginal,
        )

    def log_posterior(self, theta) -> float:
        try:
            return self.conditional(theta).log_posterior
        except LinAlgError:
            return -np.inf

    def covariance(self, cond: Conditional) -> np.ndarray:
        return cho_solve(cond.chol, np.eye(self.n_latent), check_finite=False)

    def covariance_times(self, cond: Conditional, c) -> np.ndarray:
        return cho_solve(cond.chol, np.asarray(c, dtype=np.float64), check_finite=False)

    def moments(self, cond: Conditional):
        """Reported latent means/variances plus linear-predictor means/variances for every row."""
        Sigma = self.covariance(cond)
        latent_mean = self.T @ cond.mean
        latent_var = ((self.T @ Sigma) * self.T).sum(axis=1)
        eta_mean = self.A @ cond.mean
        eta_var = ((self.A @ Sigma) * self.A).sum(axis=1)
        return latent_mean, np.maximum(latent_var, 0.0), eta_mean, np.maximum(eta_var, 0.0)

    def internal_weights(self, weights: dict) -> np.ndarray:
        """Coefficients on x of the linear combination sum_j c_j (T x)_j named by reported names."""
        c = np.zeros(len(self.names))
        for key, coef in weights.items():
            c[self.latent_index(key)] = float(coef)
        return self.T.T @ c

    def hyper_user_values(self, theta) -> dict:
        return {h.name: float(h.to_user(t)) for h, t in zip(self.hyper, theta)}

    def latent_index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"no latent coordinate named '{name}'") from None
