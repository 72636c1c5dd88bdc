# src/aqcal/model/specification.py
import json
import math
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from aqcal.model.errors import InvalidSpecification
from aqcal.model.priors import (
    Fixed, LogGammaPrecision, NormalPrior, PCMixing, PCPrecision, prior_from_dict,
)

# ----------------
# Terms
# ----------------


@dataclass(frozen=True)
class FixedEffect:
    """A named covariate column contributing one coefficient."""
    column: str
    prior: NormalPrior = NormalPrior(0.0, 1000.0)

    kind = "fixed"

    @property
    def name(self) -> str:
        return self.column

    def priors(self):
        return [("fixed", self.prior)]

    def to_dict(self) -> dict:
        return {"type": self.kind, "column": self.column, "prior": self.prior.to_dict()}


@dataclass(frozen=True)
class IIDEffect:
    """
    Exchangeable random effect: one latent value per level of `key`, shared
    precision. With `covariate` set the effect multiplies that column (slope-type),
    otherwise it is an intercept-type effect.
    """
    key: str
    covariate: Optional[str] = None
    prior: object = PCPrecision(1.0, 0.01)
    label: Optional[str] = None

    kind = "iid"

    @property
    def role(self) -> str:
        return "intercept" if self.covariate is None else f"slope:{self.covariate}"

    @property
    def name(self) -> str:
        if self.label:
            return self.label
        return self.key if self.covariate is None else f"{self.key}:{self.covariate}"

    def priors(self):
        return [("precision", self.prior)]

    def to_dict(self) -> dict:
        return {"type": self.kind, "key": self.key, "covariate": self.covariate,
                "label": self.label, "prior": self.prior.to_dict()}


@dataclass(frozen=True)
class BYM2Effect:
    """
    Besag-York-Mollie (BYM2) spatial effect over the nodes of an AdjacencyGraph:
    b = sigma * (sqrt(1 - phi) * v + sqrt(phi) * u*), v unstructured, u* a scaled ICAR.
    """
    key: str
    covariate: Optional[str] = None
    precision_prior: object = PCPrecision(1.0, 0.01)
    mixing_prior: object = PCMixing(0.5, 2.0 / 3.0)
    label: Optional[str] = None

    kind = "bym2"

    @property
    def role(self) -> str:
        return "intercept" if self.covariate is None else f"slope:{self.covariate}"

    @property
    def name(self) -> str:
        if self.label:
            return self.label
        return self.key if self.covariate is None else f"{self.key}:{self.covariate}"

    def priors(self):
        return [("precision", self.precision_prior), ("mixing", self.mixing_prior)]

    def to_dict(self) -> dict:
        return {"type": self.kind, "key": self.key, "covariate": self.covariate,
                "label": self.label, "precision_prior": self.precision_prior.to_dict(),
                "mixing_prior": self.mixing_prior.to_dict()}


TERM_TYPES = {"fixed": FixedEffect, "iid": IIDEffect, "bym2": BYM2Effect}


# ----------------
# Specification
# ----------------
@dataclass(frozen=True)
class ModelSpecification:
    """
    Ordered set of terms plus the implicit global intercept and the
    observation-noise precision prior. Immutable: variants are new objects.
    """
    terms: Tuple = ()
    intercept_prior: NormalPrior = NormalPrior(0.0, math.inf)
    noise_prior: object = LogGammaPrecision(1.0, 5e-5)
    name: str = "model"

    def __post_init__(self):
        object.__setattr__(self, "terms", tuple(self.terms))
        self._check_terms()

    # ---- structural checks (no data needed) ----
    def _check_terms(self):
        names, columns, roles = set(), set(), set()
        for term in self.terms:
            if not isinstance(term, tuple(TERM_TYPES.values())):
                raise InvalidSpecification(f"unsupported term {term!r}")
            if term.name in names or term.name in ("intercept", "noise"):
                raise InvalidSpecification(f"duplicate or reserved term name '{term.name}'")
            names.add(term.name)

            if isinstance(term, FixedEffect):
                if term.column in columns:
                    raise InvalidSpecification(f"fixed effect '{term.column}' declared twice")
                columns.add(term.column)
            else:
                if (term.key, term.role) in roles:
                    raise InvalidSpecification(
                        f"grouping key '{term.key}' appears twice with role '{term.role}'"
                    )
                roles.add((term.key, term.role))

            for role, prior in term.priors():
                try:
                    prior.validate(role)
                except AttributeError:
                    raise InvalidSpecification(f"term '{term.name}': {prior!r} is not a prior")

        if not isinstance(self.intercept_prior, NormalPrior):
            raise InvalidSpecification("intercept prior must be a NormalPrior")
        self.intercept_prior.validate("fixed")
        self.noise_prior.validate("precision")
        if isinstance(self.noise_prior, Fixed) and self.noise_prior.value <= 0:
            raise InvalidSpecification("fixed noise precision must be > 0")

    # ---- data-dependent checks ----
    def validate(self, store, graph=None):
        """Check every referenced column exists and BYM2 terms have a covering graph."""
        schema = set(store.schema)
        for term in self.terms:
            needed = [term.column] if isinstance(term, FixedEffect) else [term.key]
            if getattr(term, "covariate", None):
                needed.append(term.covariate)
            missing = [c for c in needed if c not in schema]
            if missing:
                raise InvalidSpecification(f"term '{term.name}' references unknown columns {missing}")

            if isinstance(term, BYM2Effect):
                if graph is None:
                    raise InvalidSpecification(f"BYM2 term '{term.name}' requires an AdjacencyGraph")
                uncovered = graph.covers(store.levels(term.key))
                if uncovered:
                    raise InvalidSpecification(
                        f"BYM2 term '{term.name}': levels {uncovered[:5]} are not nodes of the graph"
                    )
        return self

    # ---- variants ----
    @property
    def random_terms(self) -> tuple:
        return tuple(t for t in self.terms if not isinstance(t, FixedEffect))

    @property
    def fixed_terms(self) -> tuple:
        return tuple(t for t in self.terms if isinstance(t, FixedEffect))

    @property
    def needs_graph(self) -> bool:
        return any(isinstance(t, BYM2Effect) for t in self.terms)

    def with_term(self, term, name: Optional[str] = None) -> "ModelSpecification":
        return replace(self, terms=self.terms + (term,), name=name or self.name)

    def without_term(self, term_name: str, name: Optional[str] = None) -> "ModelSpecification":
        kept = tuple(t for t in self.terms if t.name != term_name)
        if len(kept) == len(self.terms):
            raise KeyError(f"no term named '{term_name}'")
        return replace(self, terms=kept, name=name or self.name)

    def renamed(self, name: str) -> "ModelSpecification":
        return replace(self, name=name)

    # ---- serialisation ----
    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "intercept_prior": self.intercept_prior.to_dict(),
            "noise_prior": self.noise_prior.to_dict(),
            "terms": [t.to_dict() for t in self.terms],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_json_float)


def _json_float(o):
    return float(o)


def _term_from_dict(d: dict):
    d = dict(d)
    kind = d.pop("type", None)
    if kind not in TERM_TYPES:
        raise InvalidSpecification(f"unknown term type '{kind}'; expected one of {sorted(TERM_TYPES)}")
    for key in ("prior", "precision_prior", "mixing_prior"):
        if key in d and isinstance(d[key], dict):
            d[key] = prior_from_dict(d[key])
    try:
        return TERM_TYPES[kind](**d)
    except TypeError as e:
        raise InvalidSpecification(f"bad parameters for term '{kind}': {e}") from e


def specification_from_dict(d: dict) -> ModelSpecification:
    kwargs = {"terms": tuple(_term_from_dict(t) for t in d.get("terms", ()))}
    if "name" in d:
        kwargs["name"] = d["name"]
    if d.get("intercept_prior") is not None:
        kwargs["intercept_prior"] = prior_from_dict(d["intercept_prior"])
    if d.get("noise_prior") is not None:
        kwargs["noise_prior"] = prior_from_dict(d["noise_prior"])
    return ModelSpecification(**kwargs)


def specification_from_json(text: str) -> ModelSpecification:
    return specification_from_dict(json.loads(text))


def specification_from_config(model_cfg: dict) -> ModelSpecification:
    """
    Build a specification from the YAML model block used by scripts/main.py:

        name: m3_region_slope
        fixed: [log_satellite]                      # or [{column: ..., prior: {...}}]
        random:
          - {type: iid, key: super_region}
          - {type: iid, key: super_region, covariate: log_satellite}
          - {type: bym2, key: country}
        intercept_prior: {family: normal, mean: 0, variance: 100}
        noise_prior: {family: pc.prec, u: 1, alpha: 0.01}
    """
    terms = []
    for entry in model_cfg.get("fixed") or []:
        if isinstance(entry, str):
            terms.append(FixedEffect(entry))
        else:
            terms.append(_term_from_dict({"type": "fixed", **entry}))
    for entry in model_cfg.get("random") or []:
        terms.append(_term_from_dict(entry))

    return specification_from_dict({
        "name": model_cfg.get("name", "model"),
        "terms": [t.to_dict() for t in terms],
        "intercept_prior": model_cfg.get("intercept_prior"),
        "noise_prior": model_cfg.get("noise_prior"),
    })
