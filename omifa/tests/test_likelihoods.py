"""Tests for the likelihood surrogates."""

import torch
import torch.nn.functional as F

from omifa import Likelihood
from omifa.model.likelihoods import BernoulliLikelihood
from omifa.model.likelihoods import GaussianLikelihood
from omifa.model.likelihoods import PoissonLikelihood
from omifa.model.likelihoods import make_likelihood


def _data(kind, shape=(6, 10), seed=0):
    gen = torch.Generator().manual_seed(seed)
    if kind == "binary":
        return torch.bernoulli(torch.full(shape, 0.4, dtype=torch.float64), generator=gen)
    if kind == "count":
        return torch.poisson(torch.full(shape, 3.0, dtype=torch.float64), generator=gen)
    return torch.randn(shape, generator=gen, dtype=torch.float64)


def _eta(shape=(6, 10), seed=1):
    gen = torch.Generator().manual_seed(seed)
    return torch.randn(shape, generator=gen, dtype=torch.float64)


def test_make_likelihood_dispatch():
    y = _data("continuous")
    mask = torch.ones_like(y, dtype=torch.bool)

    assert isinstance(make_likelihood(Likelihood.CONTINUOUS, y, mask, 1e-3, 1e-3), GaussianLikelihood)
    assert isinstance(make_likelihood(Likelihood.COUNT, y.abs(), mask, 1e-3, 1e-3), PoissonLikelihood)
    assert isinstance(make_likelihood(Likelihood.BINARY, (y > 0).double(), mask, 1e-3, 1e-3), BernoulliLikelihood)


def test_bernoulli_bound_is_tight_at_optimum():
    """With a point-mass predictor the bound equals the exact log-likelihood at xi = |eta|."""
    y = _data("binary")
    lik = BernoulliLikelihood(y, torch.ones_like(y, dtype=torch.bool), 1e-3, 1e-3)
    eta = _eta()

    local = lik.update_local(eta, eta**2)
    bound = lik.expected_log_likelihood(eta, eta**2, local, None, None)

    full = lik.offset[:, None] + eta
    exact = (y * full - F.softplus(full)).sum()
    torch.testing.assert_close(bound, exact)

    loose = lik.expected_log_likelihood(eta, eta**2, local + 1.0, None, None)
    assert loose < exact


def test_poisson_bound_is_tight_at_optimum():
    y = _data("count")
    lik = PoissonLikelihood(y, torch.ones_like(y, dtype=torch.bool), 1e-3, 1e-3)
    eta = _eta()

    local = lik.update_local(eta, eta**2)
    bound = lik.expected_log_likelihood(eta, eta**2, local, None, None)

    rate = F.softplus(lik.offset[:, None] + eta)
    exact = (y * torch.log(rate) - rate - torch.lgamma(y + 1)).sum()
    torch.testing.assert_close(bound, exact)

    loose = lik.expected_log_likelihood(eta, eta**2, local + 0.5, None, None)
    assert loose <= exact


def test_missing_entries_have_zero_precision():
    for kind, cls in (("binary", BernoulliLikelihood), ("count", PoissonLikelihood)):
        y = _data(kind)
        mask = torch.ones_like(y, dtype=torch.bool)
        mask[0, :3] = False
        lik = cls(y, mask, 1e-3, 1e-3)
        eta = _eta()

        target, precision = lik.pseudo_data(lik.update_local(eta, eta**2), None, None)

        assert (precision[0, :3] == 0).all()
        assert (target[0, :3] == 0).all()
        assert (precision[mask] > 0).all()


def test_missing_entries_do_not_change_the_bound():
    y = _data("binary")
    mask = torch.ones_like(y, dtype=torch.bool)
    mask[2, 4] = False
    eta = _eta()

    lik = BernoulliLikelihood(y, mask, 1e-3, 1e-3)
    flipped = y.clone()
    flipped[2, 4] = 1 - flipped[2, 4]
    other = BernoulliLikelihood(flipped, mask, 1e-3, 1e-3)

    local = lik.update_local(eta, eta**2)
    torch.testing.assert_close(
        lik.expected_log_likelihood(eta, eta**2, local, None, None),
        other.expected_log_likelihood(eta, eta**2, local, None, None),
    )


def test_gaussian_noise_update():
    y = _data("continuous")
    mask = torch.ones_like(y, dtype=torch.bool)
    mask[1, 0] = False
    lik = GaussianLikelihood(y, mask, 1e-3, 1e-3)

    zeros = torch.zeros_like(y)
    tau_a, tau_b = lik.update_noise(zeros, zeros)

    torch.testing.assert_close(tau_a, 1e-3 + 0.5 * mask.sum(dim=1).double())
    torch.testing.assert_close(tau_b, 1e-3 + 0.5 * (y**2 * mask).sum(dim=1))

    target, precision = lik.pseudo_data(None, tau_a, tau_b)
    assert precision[1, 0] == 0
    torch.testing.assert_close(precision[0], (tau_a / tau_b)[0].expand(y.shape[1]))


def test_gaussian_noise_kl_vanishes_at_prior():
    y = _data("continuous")
    lik = GaussianLikelihood(y, torch.ones_like(y, dtype=torch.bool), 2.0, 3.0)
    a = torch.full((y.shape[0],), 2.0, dtype=torch.float64)
    b = torch.full((y.shape[0],), 3.0, dtype=torch.float64)

    torch.testing.assert_close(lik.noise_kl(a, b), torch.tensor(0.0, dtype=torch.float64))
    assert lik.noise_kl(a * 2, b) > 0
