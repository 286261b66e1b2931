"""Observation models.

Every likelihood exposes the same Gaussian form to the engine: a per-entry
pseudo target and a per-entry precision. Continuous views use their data
and the noise precision directly; count and binary views replace their
log-likelihood by a quadratic lower bound around a local expansion point,
which yields pseudo-data with the same closed-form updates.

The strategy for each view is picked once, from its :class:`Likelihood` tag,
when the engine is built.
"""

import logging
import math

import pyro.distributions as dist
import torch
import torch.nn.functional as F
from torch.distributions import kl_divergence

from omifa.options import Likelihood

logger = logging.getLogger(__name__)

LOG_2PI = math.log(2 * math.pi)


class LikelihoodModel:
    """Base class of the per-view observation models.

    Parameters
    ----------
    data : torch.Tensor
        Feature x sample targets, zero where missing
    mask : torch.Tensor
        Boolean feature x sample mask, True where observed
    a0 : float
        Shape of the Gamma prior on the noise precision
    b0 : float
        Rate of the Gamma prior on the noise precision
    """

    kind: Likelihood
    has_noise: bool = False

    def __init__(self, data: torch.Tensor, mask: torch.Tensor, a0: float, b0: float) -> None:
        self.data = data
        self.mask = mask
        self.fmask = mask.to(data.dtype)
        self.a0 = a0
        self.b0 = b0
        self.n_obs = self.fmask.sum(dim=1)
        self.offset = torch.zeros(data.shape[0], dtype=data.dtype, device=data.device)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(n_features={self.data.shape[0]})"

    def full_moments(
        self, eta_mean: torch.Tensor, eta_sq: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Moments of the linear predictor including the fixed feature offset."""
        o = self.offset[:, None]
        return o + eta_mean, o**2 + 2 * o * eta_mean + eta_sq

    def init_local(self, eta_mean: torch.Tensor, eta_sq: torch.Tensor) -> torch.Tensor | None:
        return self.update_local(eta_mean, eta_sq)

    def update_local(self, eta_mean: torch.Tensor, eta_sq: torch.Tensor) -> torch.Tensor | None:
        """Optimal local bound parameters for the current predictor moments."""
        return None

    def pseudo_data(
        self,
        local: torch.Tensor | None,
        tau_a: torch.Tensor | None,
        tau_b: torch.Tensor | None,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Return (target, precision) of the Gaussian surrogate, precision 0 where missing."""
        raise NotImplementedError

    def expected_log_likelihood(
        self,
        eta_mean: torch.Tensor,
        eta_sq: torch.Tensor,
        local: torch.Tensor | None,
        tau_a: torch.Tensor | None,
        tau_b: torch.Tensor | None,
    ) -> torch.Tensor:
        raise NotImplementedError

    def update_noise(
        self, eta_mean: torch.Tensor, eta_sq: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor] | None:
        return None

    def noise_kl(self, tau_a: torch.Tensor | None, tau_b: torch.Tensor | None) -> torch.Tensor:
        return torch.zeros((), dtype=self.data.dtype, device=self.data.device)


class GaussianLikelihood(LikelihoodModel):
    """Normal observations with a Gamma posterior over each feature's precision."""

    kind = Likelihood.CONTINUOUS
    has_noise = True

    def init_noise(self) -> tuple[torch.Tensor, torch.Tensor]:
        # start from E[tau] = 1
        tau_a = self.a0 + 0.5 * self.n_obs
        return tau_a, tau_a.clone()

    def _expected_sq_residual(self, eta_mean: torch.Tensor, eta_sq: torch.Tensor) -> torch.Tensor:
        y = self.data
        return (self.fmask * (y**2 - 2 * y * eta_mean + eta_sq)).sum(dim=1)

    def pseudo_data(self, local, tau_a, tau_b):
        precision = self.fmask * (tau_a / tau_b)[:, None]
        return self.data, precision

    def update_noise(self, eta_mean, eta_sq):
        tau_a = self.a0 + 0.5 * self.n_obs
        tau_b = self.b0 + 0.5 * self._expected_sq_residual(eta_mean, eta_sq).clamp_min(0.0)
        return tau_a, tau_b

    def expected_log_likelihood(self, eta_mean, eta_sq, local, tau_a, tau_b):
        e_log_tau = torch.digamma(tau_a) - torch.log(tau_b)
        e_tau = tau_a / tau_b
        sq_res = self._expected_sq_residual(eta_mean, eta_sq)
        return (0.5 * self.n_obs * (e_log_tau - LOG_2PI) - 0.5 * e_tau * sq_res).sum()

    def noise_kl(self, tau_a, tau_b):
        q = dist.Gamma(tau_a, tau_b)
        p = dist.Gamma(torch.full_like(tau_a, self.a0), torch.full_like(tau_b, self.b0))
        return kl_divergence(q, p).sum()


class BernoulliLikelihood(LikelihoodModel):
    """Binary observations with the Jaakkola-Jordan bound on the logistic likelihood.

    ``log sigmoid(x) >= log sigmoid(xi) + (x - xi) / 2 - lambda(xi) (x^2 - xi^2)``
    with ``lambda(xi) = tanh(xi / 2) / (4 xi)``. The bound is tight at
    ``xi^2 = E[eta^2]``.
    """

    kind = Likelihood.BINARY

    def __init__(self, data, mask, a0, b0):
        super().__init__(data, mask, a0, b0)
        p = (self.data * self.fmask).sum(dim=1) / self.n_obs.clamp_min(1.0)
        p = p.clamp(1e-3, 1 - 1e-3)
        self.offset = torch.log(p) - torch.log1p(-p)

    @staticmethod
    def _lambda(xi: torch.Tensor) -> torch.Tensor:
        xi = xi.abs()
        safe = xi.clamp_min(1e-6)
        return torch.where(xi < 1e-6, torch.full_like(xi, 0.125), torch.tanh(safe / 2) / (4 * safe))

    def update_local(self, eta_mean, eta_sq):
        _, full_sq = self.full_moments(eta_mean, eta_sq)
        return torch.sqrt(full_sq.clamp_min(0.0))

    def pseudo_data(self, local, tau_a, tau_b):
        precision = 2 * self._lambda(local)
        target = (self.data - 0.5) / precision - self.offset[:, None]
        return target * self.fmask, precision * self.fmask

    def expected_log_likelihood(self, eta_mean, eta_sq, local, tau_a, tau_b):
        full_mean, full_sq = self.full_moments(eta_mean, eta_sq)
        lam = self._lambda(local)
        bound = (
            F.logsigmoid(local)
            + 0.5 * ((2 * self.data - 1) * full_mean - local)
            - lam * (full_sq - local**2)
        )
        return (self.fmask * bound).sum()


class PoissonLikelihood(LikelihoodModel):
    """Count observations, ``y ~ Poisson(softplus(eta))``.

    The log-likelihood is bounded below by its second-order expansion around
    ``zeta`` with the curvature replaced by the upper bound
    ``kappa_d = 1/4 + 0.17 max_n y_nd``. The bound is tight at ``zeta = E[eta]``.
    """

    kind = Likelihood.COUNT

    def __init__(self, data, mask, a0, b0):
        super().__init__(data, mask, a0, b0)
        observed = torch.where(self.mask, self.data, torch.zeros_like(self.data))
        self.kappa = 0.25 + 0.17 * observed.max(dim=1).values.clamp_min(0.0)
        mean = observed.sum(dim=1) / self.n_obs.clamp_min(1.0)
        mean = mean.clamp_min(1e-2)
        # inverse softplus
        self.offset = mean + torch.log(-torch.expm1(-mean))
        self._log_factorial = torch.lgamma(observed.clamp_min(0.0) + 1)

    @staticmethod
    def _rate_ratio(zeta: torch.Tensor) -> torch.Tensor:
        # sigmoid(zeta) / softplus(zeta), tends to 1 for zeta -> -inf
        return torch.sigmoid(zeta) / F.softplus(zeta).clamp_min(1e-300)

    def _log_lik_and_grad(self, zeta: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        rate = F.softplus(zeta)
        log_rate = torch.log(rate.clamp_min(1e-300))
        value = self.data * log_rate - rate - self._log_factorial
        grad = self.data * self._rate_ratio(zeta) - torch.sigmoid(zeta)
        return value, grad

    def update_local(self, eta_mean, eta_sq):
        full_mean, _ = self.full_moments(eta_mean, eta_sq)
        return full_mean

    def pseudo_data(self, local, tau_a, tau_b):
        _, grad = self._log_lik_and_grad(local)
        kappa = self.kappa[:, None]
        target = local + grad / kappa - self.offset[:, None]
        precision = kappa.expand_as(local)
        return target * self.fmask, precision * self.fmask

    def expected_log_likelihood(self, eta_mean, eta_sq, local, tau_a, tau_b):
        full_mean, full_sq = self.full_moments(eta_mean, eta_sq)
        value, grad = self._log_lik_and_grad(local)
        sq_dev = full_sq - 2 * local * full_mean + local**2
        bound = value + grad * (full_mean - local) - 0.5 * self.kappa[:, None] * sq_dev
        return (self.fmask * bound).sum()


LIKELIHOODS: dict[Likelihood, type[LikelihoodModel]] = {
    Likelihood.CONTINUOUS: GaussianLikelihood,
    Likelihood.COUNT: PoissonLikelihood,
    Likelihood.BINARY: BernoulliLikelihood,
}


def make_likelihood(
    kind: Likelihood,
    data: torch.Tensor,
    mask: torch.Tensor,
    a0: float,
    b0: float,
) -> LikelihoodModel:
    """Build the observation model registered for ``kind``."""
    return LIKELIHOODS[kind](data, mask, a0, b0)
