import math

import numpy as np
import pytest
from scipy.integrate import quad

from aqcal.data.adjacency import AdjacencyGraph
from aqcal.model.errors import InvalidSpecification
from aqcal.model.priors import (
    Fixed, LogGammaPrecision, NormalPrior, PCMixing, PCPrecision, prior_from_dict,
)


@pytest.mark.parametrize("prior", [
    PCPrecision(u=0.0), PCPrecision(alpha=1.0), PCPrecision(alpha=0.0),
    LogGammaPrecision(shape=-1.0), PCMixing(u=1.0), PCMixing(alpha=0.0),
])
def test_out_of_domain_parameters_rejected(prior):
    role = "mixing" if isinstance(prior, PCMixing) else "precision"
    with pytest.raises(InvalidSpecification):
        prior.validate(role)


def test_roles_are_enforced():
    with pytest.raises(InvalidSpecification):
        PCPrecision().validate("mixing")
    with pytest.raises(InvalidSpecification):
        Fixed(1.5).validate("mixing")
    with pytest.raises(InvalidSpecification):
        NormalPrior(0.0, 0.0).validate()


def test_flat_normal_has_zero_precision():
    assert NormalPrior(0.0, math.inf).precision == 0.0
    assert NormalPrior(0.0, 4.0).precision == 0.25


def test_pc_precision_tail_probability():
    prior = PCPrecision(u=0.5, alpha=0.05)
    # sigma > u  <=>  theta = log tau < -2 log u
    tail, _ = quad(lambda t: math.exp(prior.log_density(t)), -60.0, -2.0 * math.log(prior.u))
    assert tail == pytest.approx(0.05, rel=1e-4)
    total, _ = quad(lambda t: math.exp(prior.log_density(t)), -60.0, 60.0)
    assert total == pytest.approx(1.0, rel=1e-6)


def test_loggamma_density_normalised():
    prior = LogGammaPrecision(shape=2.0, rate=1.0)
    total, _ = quad(lambda t: math.exp(prior.log_density(t)), -30.0, 10.0)
    assert total == pytest.approx(1.0, rel=1e-6)


def test_pc_mixing_tail_probability(ring_neighbors):
    _, gamma = AdjacencyGraph.from_neighbors(ring_neighbors).bym2_basis()
    bound = PCMixing(u=0.5, alpha=2.0 / 3.0).bind(gamma)
    below, _ = quad(bound.density_phi, 0.0, 0.5, limit=200)
    assert below == pytest.approx(2.0 / 3.0, rel=1e-3)


def test_pc_mixing_without_null_space_is_truncated():
    # no zero eigenvalue: d(1) is finite and the prior is renormalised on [0, 1]
    gamma = np.array([0.5, 0.8, 1.3, 1.6])
    bound = PCMixing(u=0.5, alpha=0.8).bind(gamma)
    total, _ = quad(bound.density_phi, 0.0, 1.0, limit=200)
    below, _ = quad(bound.density_phi, 0.0, 0.5, limit=200)
    assert total == pytest.approx(1.0, rel=1e-3)
    assert below == pytest.approx(0.8, rel=1e-3)


def test_pc_mixing_all_isolated_is_uniform():
    bound = PCMixing().bind(np.ones(4))
    assert bound.degenerate
    assert bound.density_phi(0.3) == 1.0
    # logit scale: density of a Uniform(0,1) is phi (1 - phi)
    assert math.exp(bound.log_density(0.0)) == pytest.approx(0.25)


def test_prior_from_dict_roundtrip_and_errors():
    p = PCMixing(u=0.4, alpha=0.7, initial=-1.0)
    assert prior_from_dict(p.to_dict()) == p
    with pytest.raises(InvalidSpecification):
        prior_from_dict({"family": "cauchy"})
    with pytest.raises(InvalidSpecification):
        prior_from_dict({"family": "pc.prec", "scale": 1.0})
