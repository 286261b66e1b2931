"""Mean-field coordinate-ascent variational inference.

The engine fits a multi-view, multi-group factor model

    y_nd ~ p_m(y | o_d + w_d . z_n)

with Gaussian factors (optionally spike-and-slab, optionally with ARD per
group), spike-and-slab / ARD weights per view, Gamma noise precisions for
continuous views and quadratic bounds for count and binary views
(see :mod:`omifa.model.likelihoods`).

One iteration updates, in order, the factors, the weights, the noise (or
local bound parameters), the sparsity priors and finally evaluates the
ELBO. Each step reads a consistent snapshot of every other parameter class
and commits its own results at the end, so independent rows of a class are
updated together as one tensor operation.
"""

import logging
import math
from collections.abc import Callable
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pyro.distributions as dist
import torch
from sklearn.decomposition import PCA
from torch.distributions import kl_divergence
from tqdm import tqdm

from omifa.data.container import ProcessedData
from omifa.errors import ConfigurationError
from omifa.errors import NumericInstabilityError
from omifa.model.likelihoods import GaussianLikelihood
from omifa.model.likelihoods import LikelihoodModel
from omifa.model.likelihoods import make_likelihood
from omifa.model.state import FactorPosterior
from omifa.model.state import TrainingState
from omifa.model.state import ViewPosterior
from omifa.options import Likelihood
from omifa.options import ModelOptions
from omifa.options import TrainingOptions

logger = logging.getLogger(__name__)

# bounds on the logit of the inclusion probabilities
MAX_LOGIT = 30.0
# relative ELBO decrease tolerated before warning
ELBO_DECREASE_TOL = 1e-8


@dataclass
class EngineResult:
    """Outcome of :meth:`VariationalEngine.run`."""

    state: TrainingState
    converged: bool
    stopped_early: bool


def _xlogx(x: torch.Tensor) -> torch.Tensor:
    return torch.special.xlogy(x, x)


def _gamma_moments(a: torch.Tensor, b: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """E[x] and E[log x] under Gamma(a, b)."""
    return a / b, torch.digamma(a) - torch.log(b)


def _beta_logit(a: torch.Tensor, b: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """E[log theta] and E[log(1 - theta)] under Beta(a, b)."""
    total = torch.digamma(a + b)
    return torch.digamma(a) - total, torch.digamma(b) - total


class VariationalEngine:
    """Coordinate-ascent variational inference for group factor analysis.

    Parameters
    ----------
    data : ProcessedData
        Preprocessed targets and masks, one entry per view
    likelihoods : Mapping[str, Likelihood]
        Likelihood of every view
    group_index : np.ndarray
        Integer group of every sample
    model_options : ModelOptions
        Resolved model options (see :meth:`ModelOptions.resolve`)
    training_options : TrainingOptions
        Training options
    device : torch.device, optional
        Device for all tensors, by default cpu
    """

    def __init__(
        self,
        data: ProcessedData,
        likelihoods: Mapping[str, Likelihood],
        group_index: np.ndarray,
        model_options: ModelOptions,
        training_options: TrainingOptions,
        device: torch.device | str | None = None,
    ) -> None:
        self.device = torch.device("cpu") if device is None else torch.device(device)
        self.dtype = torch.float64
        self.model_options = model_options
        self.training_options = training_options
        self.view_names = list(data.targets.keys())
        self.K = model_options.num_factors

        self.group_index = torch.as_tensor(np.array(group_index), dtype=torch.long, device=self.device)
        self.n_samples = int(self.group_index.shape[0])
        self.n_groups = int(self.group_index.max().item()) + 1
        # (n_groups, n_samples) indicator used for per-group sums
        self.group_onehot = torch.nn.functional.one_hot(self.group_index, self.n_groups).T.to(self.dtype)
        self.group_sizes = self.group_onehot.sum(dim=1)

        self.likelihoods: dict[str, LikelihoodModel] = {}
        for vn in self.view_names:
            target = torch.as_tensor(np.asarray(data.targets[vn]), dtype=self.dtype, device=self.device)
            mask = torch.as_tensor(np.asarray(data.masks[vn]), dtype=torch.bool, device=self.device)
            if target.shape[1] != self.n_samples:
                raise ConfigurationError(
                    f"View `{vn}` has {target.shape[1]} samples, expected {self.n_samples}"
                )
            self.likelihoods[vn] = make_likelihood(
                likelihoods[vn],
                target,
                mask,
                model_options.prior_a0,
                model_options.prior_b0,
            )
        logger.debug("Likelihood models: %s", self.likelihoods)

        self.state: TrainingState | None = None
        self.checkpoint: TrainingState | None = None

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def _zeros(self, *size: int) -> torch.Tensor:
        return torch.zeros(*size, dtype=self.dtype, device=self.device)

    def _ones(self, *size: int) -> torch.Tensor:
        return torch.ones(*size, dtype=self.dtype, device=self.device)

    def _initial_matrix(self) -> np.ndarray:
        """Sample x feature matrix of mean-imputed, centred initial targets."""
        blocks = []
        for lik in self.likelihoods.values():
            y = lik.data.cpu().numpy()
            mask = lik.mask.cpu().numpy()
            if lik.kind == Likelihood.COUNT:
                y = np.log1p(np.clip(y, 0, None))
            counts = np.maximum(mask.sum(axis=1, keepdims=True), 1)
            means = np.where(mask, y, 0.0).sum(axis=1, keepdims=True) / counts
            blocks.append(np.where(mask, y - means, 0.0))
        return np.concatenate(blocks, axis=0).T

    def _init_loadings(self, generator: torch.Generator) -> tuple[torch.Tensor, dict[str, torch.Tensor]]:
        n_features = {vn: lik.data.shape[0] for vn, lik in self.likelihoods.items()}
        total = sum(n_features.values())

        z = torch.randn(self.n_samples, self.K, generator=generator, dtype=self.dtype)
        w = torch.randn(total, self.K, generator=generator, dtype=self.dtype)

        if self.model_options.init_factors == "pca":
            matrix = self._initial_matrix()
            n_components = min(self.K, self.n_samples, total)
            pca = PCA(n_components=n_components, svd_solver="full")
            scores = pca.fit_transform(matrix)
            scale = scores.std(axis=0)
            scale[scale == 0] = 1.0
            z[:, :n_components] = torch.as_tensor(scores / scale, dtype=self.dtype)
            w[:, :n_components] = torch.as_tensor(pca.components_.T * scale, dtype=self.dtype)
            logger.info(
                "Initialized %d factors with PCA (%.1f%% variance), %d at random.",
                n_components,
                100 * pca.explained_variance_ratio_.sum(),
                self.K - n_components,
            )
        else:
            logger.info("Initialized %d factors at random.", self.K)

        offsets = np.cumsum([0, *n_features.values()])
        weights = {
            vn: w[offsets[m] : offsets[m + 1]].to(self.device) for m, vn in enumerate(self.likelihoods)
        }
        return z.to(self.device), weights

    def initialize(self, seed: int | None = None) -> TrainingState:
        """Create and install the initial training state.

        Parameters
        ----------
        seed : int, optional
            Seed for the random parts of the initialization

        Returns
        -------
        TrainingState
            The initial state (iteration 0, empty ELBO trace)
        """
        opts = self.model_options
        generator = torch.Generator()
        if seed is not None:
            generator.manual_seed(seed)
        else:
            generator.seed()

        z, weights = self._init_loadings(generator)
        N, K, G = self.n_samples, self.K, self.n_groups

        factors = FactorPosterior(
            mean=z,
            cov=torch.eye(K, dtype=self.dtype, device=self.device).expand(N, K, K).clone(),
            gamma=self._ones(N, K),
        )
        if opts.ard_factors:
            factors.alpha_a = opts.prior_a0 + 0.5 * self.group_sizes[:, None].expand(G, K).clone()
            factors.alpha_b = factors.alpha_a.clone()
        if opts.spikeslab_factors:
            factors.theta_a = torch.full((G, K), opts.prior_theta_a, dtype=self.dtype, device=self.device)
            factors.theta_b = torch.full((G, K), opts.prior_theta_b, dtype=self.dtype, device=self.device)

        views = {}
        for vn, lik in self.likelihoods.items():
            D = lik.data.shape[0]
            vp = ViewPosterior(
                w_mean=weights[vn],
                w_var=torch.full((D, K), 0.01, dtype=self.dtype, device=self.device),
                w_gamma=self._ones(D, K),
            )
            if opts.ard_weights:
                vp.alpha_a = opts.prior_a0 + 0.5 * D * self._ones(K)
                vp.alpha_b = vp.alpha_a.clone()
            if opts.spikeslab_weights:
                vp.theta_a = torch.full((K,), opts.prior_theta_a, dtype=self.dtype, device=self.device)
                vp.theta_b = torch.full((K,), opts.prior_theta_b, dtype=self.dtype, device=self.device)
            if isinstance(lik, GaussianLikelihood):
                vp.tau_a, vp.tau_b = lik.init_noise()
            views[vn] = vp

        self.state = TrainingState(factors=factors, views=views)
        for vn, lik in self.likelihoods.items():
            mean, sq = self.eta_moments(vn)
            self.state.views[vn].local = lik.init_local(mean, sq)

        self.checkpoint = self.state.clone()
        return self.state

    def load_state(self, state: TrainingState) -> TrainingState:
        """Install an existing state (e.g. a checkpoint) to resume training."""
        if state.n_factors != self.K:
            raise ConfigurationError(
                f"Training state has {state.n_factors} factors, options ask for {self.K}"
            )
        if state.factors.mean.shape[0] != self.n_samples:
            raise ConfigurationError(
                f"Training state has {state.factors.mean.shape[0]} samples, data has {self.n_samples}"
            )
        if set(state.views) != set(self.view_names):
            raise ConfigurationError(
                f"Training state views {sorted(state.views)} do not match {sorted(self.view_names)}"
            )
        for vn, vp in state.views.items():
            D = self.likelihoods[vn].data.shape[0]
            if vp.w_mean.shape != (D, self.K):
                raise ConfigurationError(
                    f"Training state weights of `{vn}` have shape {tuple(vp.w_mean.shape)}, "
                    f"expected {(D, self.K)}"
                )
        self.state = state.to(self.device)
        self.checkpoint = self.state.clone()
        logger.info("Resuming from iteration %d", state.iteration)
        return self.state

    # -------------------------------------------------------------------------
    # Moments
    # -------------------------------------------------------------------------

    def factor_second_moment(self) -> torch.Tensor:
        """E[z_n z_n^T] for every sample, (n_samples, K, K)."""
        f = self.state.factors
        ez = f.expectation
        if self.model_options.spikeslab_factors:
            diag = f.gamma * (f.mean**2 + f.var) - ez**2
            return ez[:, :, None] * ez[:, None, :] + torch.diag_embed(diag)
        return f.mean[:, :, None] * f.mean[:, None, :] + f.cov

    def eta_moments(self, vn: str, zz: torch.Tensor | None = None) -> tuple[torch.Tensor, torch.Tensor]:
        """E[w_d . z_n] and E[(w_d . z_n)^2] of a view, both (n_features, n_samples)."""
        vp = self.state.views[vn]
        ez = self.state.factors.expectation
        ew = vp.expectation
        if zz is None:
            zz = self.factor_second_moment()

        mean = ew @ ez.T
        cross = torch.einsum("dj,njk,dk->dn", ew, zz, ew)
        extra = (vp.second_moment - ew**2) @ torch.diagonal(zz, dim1=-2, dim2=-1).T
        return mean, cross + extra

    def pseudo_data(self, vn: str) -> tuple[torch.Tensor, torch.Tensor]:
        vp = self.state.views[vn]
        return self.likelihoods[vn].pseudo_data(vp.local, vp.tau_a, vp.tau_b)

    def _factor_prior_precision(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Per-sample E[alpha] and E[log alpha] of the factor prior, (n_samples, K)."""
        f = self.state.factors
        if f.alpha_a is None:
            return self._ones(self.n_samples, self.K), self._zeros(self.n_samples, self.K)
        e_alpha, e_log_alpha = _gamma_moments(f.alpha_a, f.alpha_b)
        return e_alpha[self.group_index], e_log_alpha[self.group_index]

    @staticmethod
    def _weight_prior_precision(vp: ViewPosterior, K: int, like: torch.Tensor):
        if vp.alpha_a is None:
            return torch.ones(K, dtype=like.dtype, device=like.device), torch.zeros(
                K, dtype=like.dtype, device=like.device
            )
        return _gamma_moments(vp.alpha_a, vp.alpha_b)

    # -------------------------------------------------------------------------
    # 1. Factors
    # -------------------------------------------------------------------------

    def update_factors(self) -> None:
        """Update the posterior of every sample's factors."""
        if self.model_options.spikeslab_factors:
            self._update_factors_sparse()
        else:
            self._update_factors_dense()

    def _update_factors_dense(self) -> None:
        N, K = self.n_samples, self.K
        e_alpha, _ = self._factor_prior_precision()

        precision = torch.diag_embed(e_alpha)
        linear = self._zeros(N, K)
        for vn in self.view_names:
            vp = self.state.views[vn]
            target, prec = self.pseudo_data(vn)
            ew = vp.expectation
            ww = ew[:, :, None] * ew[:, None, :] + torch.diag_embed(vp.second_moment - ew**2)
            precision = precision + torch.einsum("dn,djk->njk", prec, ww)
            linear = linear + (prec * target).T @ ew

        chol, info = torch.linalg.cholesky_ex(precision)
        if (info != 0).any():
            bad = int(torch.nonzero(info)[0].item())
            raise NumericInstabilityError(
                "factors.covariance", self.state.iteration + 1, index=(bad,), checkpoint=self.checkpoint
            )
        cov = torch.cholesky_inverse(chol)
        mean = torch.cholesky_solve(linear[:, :, None], chol)[:, :, 0]

        f = self.state.factors
        f.mean, f.cov = mean, cov

    def _update_factors_sparse(self) -> None:
        N, K = self.n_samples, self.K
        f = self.state.factors
        e_alpha, _ = self._factor_prior_precision()

        snapshot = {}
        for vn in self.view_names:
            vp = self.state.views[vn]
            target, prec = self.pseudo_data(vn)
            ew = vp.expectation
            snapshot[vn] = (prec, ew, vp.second_moment, target - ew @ f.expectation.T)

        mean, var = f.mean.clone(), f.var.clone()
        ez = f.gamma * mean
        for k in range(K):
            num = self._zeros(N)
            prec_lik = self._zeros(N)
            for prec, ew, ew2, resid in snapshot.values():
                partial = resid + ew[:, k, None] * ez[None, :, k]
                num += (prec * partial * ew[:, k, None]).sum(dim=0)
                prec_lik += (prec * ew2[:, k, None]).sum(dim=0)
            total = prec_lik + e_alpha[:, k]
            mean[:, k] = num / total
            var[:, k] = 1.0 / total

            new_ez = f.gamma[:, k] * mean[:, k]
            for prec, ew, ew2, resid in snapshot.values():
                resid -= ew[:, k, None] * (new_ez - ez[:, k])[None, :]
            ez[:, k] = new_ez

        f.mean, f.cov = mean, torch.diag_embed(var)

    # -------------------------------------------------------------------------
    # 2. Weights
    # -------------------------------------------------------------------------

    def update_weights(self) -> None:
        """Update the slab posterior of every weight, view by view."""
        zz = self.factor_second_moment()
        ez = self.state.factors.expectation
        updates = {}
        for vn in self.view_names:
            updates[vn] = self._update_view_weights(vn, ez, zz)
        for vn, (mean, var) in updates.items():
            self.state.views[vn].w_mean = mean
            self.state.views[vn].w_var = var

    def _weight_statistics(self, vn: str, ez: torch.Tensor, zz: torch.Tensor):
        target, prec = self.pseudo_data(vn)
        # sum_n T_dn E[z_n z_n^T], (n_features, K, K)
        tzz = torch.einsum("dn,njk->djk", prec, zz)
        trz = (prec * target) @ ez
        return tzz, trz

    def _update_view_weights(self, vn: str, ez: torch.Tensor, zz: torch.Tensor):
        vp = self.state.views[vn]
        e_alpha, _ = self._weight_prior_precision(vp, self.K, ez)
        tzz, trz = self._weight_statistics(vn, ez, zz)

        mean, var = vp.w_mean.clone(), vp.w_var.clone()
        ew = vp.w_gamma * mean
        for k in range(self.K):
            prec_lik = tzz[:, k, k]
            num = trz[:, k] - (ew[:, :, None] * tzz[:, :, k : k + 1]).sum(dim=1)[:, 0] + ew[:, k] * prec_lik
            total = prec_lik + e_alpha[k]
            mean[:, k] = num / total
            var[:, k] = 1.0 / total
            ew[:, k] = vp.w_gamma[:, k] * mean[:, k]
        return mean, var

    # -------------------------------------------------------------------------
    # 3. Noise and local bound parameters
    # -------------------------------------------------------------------------

    def update_noise(self) -> None:
        """Update noise precisions (continuous) or local bound parameters (count, binary)."""
        zz = self.factor_second_moment()
        updates = {}
        for vn, lik in self.likelihoods.items():
            mean, sq = self.eta_moments(vn, zz)
            if lik.has_noise:
                updates[vn] = ("noise", lik.update_noise(mean, sq))
            else:
                updates[vn] = ("local", lik.update_local(mean, sq))
        for vn, (kind, value) in updates.items():
            vp = self.state.views[vn]
            if kind == "noise":
                vp.tau_a, vp.tau_b = value
            else:
                vp.local = value

    # -------------------------------------------------------------------------
    # 4. Sparsity priors
    # -------------------------------------------------------------------------

    def update_sparsity(self) -> None:
        """Update inclusion probabilities, inclusion rates and ARD precisions.

        Weight sparsity of all views is committed before the factor sparsity
        is updated, so the latter sees the new weight inclusion probabilities.
        """
        opts = self.model_options
        zz = self.factor_second_moment()
        ez = self.state.factors.expectation

        view_updates = {}
        for vn in self.view_names:
            vp = self.state.views[vn]
            gamma = vp.w_gamma
            if opts.spikeslab_weights:
                gamma = self._update_weight_inclusion(vn, ez, zz)
            view_updates[vn] = self._weight_hyperparameters(vp, gamma)

        for vn, values in view_updates.items():
            for name, value in values.items():
                setattr(self.state.views[vn], name, value)

        if opts.spikeslab_factors or opts.ard_factors:
            gamma = self.state.factors.gamma
            if opts.spikeslab_factors:
                gamma = self._update_factor_inclusion()
            for name, value in self._factor_hyperparameters(gamma).items():
                setattr(self.state.factors, name, value)

    def _inclusion_logit(
        self,
        num: torch.Tensor,
        prec_lik: torch.Tensor,
        mean: torch.Tensor,
        var: torch.Tensor,
        e_alpha: torch.Tensor,
        e_log_alpha: torch.Tensor,
        e_log_theta: torch.Tensor,
        e_log_1m_theta: torch.Tensor,
    ) -> torch.Tensor:
        second = mean**2 + var
        logit = (
            e_log_theta
            - e_log_1m_theta
            + num * mean
            - 0.5 * prec_lik * second
            + 0.5 * e_log_alpha
            - 0.5 * e_alpha * second
            + 0.5
            + 0.5 * torch.log(var)
        )
        return logit.clamp(-MAX_LOGIT, MAX_LOGIT)

    def _update_weight_inclusion(self, vn: str, ez: torch.Tensor, zz: torch.Tensor) -> torch.Tensor:
        vp = self.state.views[vn]
        e_alpha, e_log_alpha = self._weight_prior_precision(vp, self.K, ez)
        e_log_theta, e_log_1m_theta = _beta_logit(vp.theta_a, vp.theta_b)
        tzz, trz = self._weight_statistics(vn, ez, zz)

        gamma = vp.w_gamma.clone()
        ew = gamma * vp.w_mean
        for k in range(self.K):
            prec_lik = tzz[:, k, k]
            num = trz[:, k] - (ew[:, :, None] * tzz[:, :, k : k + 1]).sum(dim=1)[:, 0] + ew[:, k] * prec_lik
            logit = self._inclusion_logit(
                num,
                prec_lik,
                vp.w_mean[:, k],
                vp.w_var[:, k],
                e_alpha[k],
                e_log_alpha[k],
                e_log_theta[k],
                e_log_1m_theta[k],
            )
            gamma[:, k] = torch.sigmoid(logit)
            ew[:, k] = gamma[:, k] * vp.w_mean[:, k]
        return gamma

    def _weight_hyperparameters(self, vp: ViewPosterior, gamma: torch.Tensor) -> dict[str, torch.Tensor]:
        opts = self.model_options
        out = {"w_gamma": gamma}
        slab_second = vp.w_mean**2 + vp.w_var
        if opts.spikeslab_weights:
            out["theta_a"] = opts.prior_theta_a + gamma.sum(dim=0)
            out["theta_b"] = opts.prior_theta_b + (1 - gamma).sum(dim=0)
        if opts.ard_weights:
            out["alpha_a"] = opts.prior_a0 + 0.5 * gamma.sum(dim=0)
            out["alpha_b"] = opts.prior_b0 + 0.5 * (gamma * slab_second).sum(dim=0)
        return out

    def _update_factor_inclusion(self) -> torch.Tensor:
        N, K = self.n_samples, self.K
        f = self.state.factors
        e_alpha, e_log_alpha = self._factor_prior_precision()
        e_log_theta, e_log_1m_theta = _beta_logit(f.theta_a, f.theta_b)
        e_log_theta = e_log_theta[self.group_index]
        e_log_1m_theta = e_log_1m_theta[self.group_index]

        snapshot = []
        for vn in self.view_names:
            vp = self.state.views[vn]
            target, prec = self.pseudo_data(vn)
            ew = vp.expectation
            snapshot.append((prec, ew, vp.second_moment, target - ew @ f.expectation.T))

        var = f.var
        gamma = f.gamma.clone()
        ez = gamma * f.mean
        for k in range(K):
            num = self._zeros(N)
            prec_lik = self._zeros(N)
            for prec, ew, ew2, resid in snapshot:
                partial = resid + ew[:, k, None] * ez[None, :, k]
                num += (prec * partial * ew[:, k, None]).sum(dim=0)
                prec_lik += (prec * ew2[:, k, None]).sum(dim=0)
            logit = self._inclusion_logit(
                num,
                prec_lik,
                f.mean[:, k],
                var[:, k],
                e_alpha[:, k],
                e_log_alpha[:, k],
                e_log_theta[:, k],
                e_log_1m_theta[:, k],
            )
            gamma[:, k] = torch.sigmoid(logit)
            new_ez = gamma[:, k] * f.mean[:, k]
            for prec, ew, ew2, resid in snapshot:
                resid -= ew[:, k, None] * (new_ez - ez[:, k])[None, :]
            ez[:, k] = new_ez
        return gamma

    def _factor_hyperparameters(self, gamma: torch.Tensor) -> dict[str, torch.Tensor]:
        opts = self.model_options
        f = self.state.factors
        out = {"gamma": gamma}
        if opts.spikeslab_factors:
            out["theta_a"] = opts.prior_theta_a + self.group_onehot @ gamma
            out["theta_b"] = opts.prior_theta_b + self.group_onehot @ (1 - gamma)
        if opts.ard_factors:
            if opts.spikeslab_factors:
                weight = gamma
                second = gamma * (f.mean**2 + f.var)
            else:
                weight = torch.ones_like(gamma)
                second = f.mean**2 + f.var
            out["alpha_a"] = opts.prior_a0 + 0.5 * self.group_onehot @ weight
            out["alpha_b"] = opts.prior_b0 + 0.5 * self.group_onehot @ second
        return out

    # -------------------------------------------------------------------------
    # 5. ELBO
    # -------------------------------------------------------------------------

    def _sparse_prior_term(
        self,
        gamma: torch.Tensor,
        mean: torch.Tensor,
        var: torch.Tensor,
        e_alpha: torch.Tensor,
        e_log_alpha: torch.Tensor,
        e_log_theta: torch.Tensor | None,
        e_log_1m_theta: torch.Tensor | None,
    ) -> torch.Tensor:
        """E[log p(w, s)] - E[log q(w, s)] for elementwise spike-and-slab (or plain Gaussian) variables."""
        slab = 0.5 * e_log_alpha - 0.5 * e_alpha * (mean**2 + var) + 0.5 + 0.5 * torch.log(var)
        total = (gamma * slab).sum()
        if e_log_theta is not None:
            total = total + (
                gamma * e_log_theta
                + (1 - gamma) * e_log_1m_theta
                - _xlogx(gamma)
                - _xlogx(1 - gamma)
            ).sum()
        return total

    def _gamma_kl(self, a: torch.Tensor | None, b: torch.Tensor | None) -> torch.Tensor:
        if a is None:
            return self._zeros(())
        opts = self.model_options
        prior = dist.Gamma(torch.full_like(a, opts.prior_a0), torch.full_like(b, opts.prior_b0))
        return kl_divergence(dist.Gamma(a, b), prior).sum()

    def _beta_kl(self, a: torch.Tensor | None, b: torch.Tensor | None) -> torch.Tensor:
        if a is None:
            return self._zeros(())
        opts = self.model_options
        prior = dist.Beta(torch.full_like(a, opts.prior_theta_a), torch.full_like(b, opts.prior_theta_b))
        return kl_divergence(dist.Beta(a, b), prior).sum()

    def compute_elbo(self) -> float:
        """Evidence lower bound of the current state."""
        f = self.state.factors
        zz = self.factor_second_moment()
        elbo = self._zeros(())

        for vn, lik in self.likelihoods.items():
            vp = self.state.views[vn]
            mean, sq = self.eta_moments(vn, zz)
            elbo = elbo + lik.expected_log_likelihood(mean, sq, vp.local, vp.tau_a, vp.tau_b)
            elbo = elbo - lik.noise_kl(vp.tau_a, vp.tau_b)

            e_alpha, e_log_alpha = self._weight_prior_precision(vp, self.K, mean)
            e_log_theta = e_log_1m_theta = None
            if vp.theta_a is not None:
                e_log_theta, e_log_1m_theta = _beta_logit(vp.theta_a, vp.theta_b)
            elbo = elbo + self._sparse_prior_term(
                vp.w_gamma, vp.w_mean, vp.w_var, e_alpha, e_log_alpha, e_log_theta, e_log_1m_theta
            )
            elbo = elbo - self._gamma_kl(vp.alpha_a, vp.alpha_b) - self._beta_kl(vp.theta_a, vp.theta_b)

        e_alpha, e_log_alpha = self._factor_prior_precision()
        if self.model_options.spikeslab_factors:
            e_log_theta, e_log_1m_theta = _beta_logit(f.theta_a, f.theta_b)
            elbo = elbo + self._sparse_prior_term(
                f.gamma,
                f.mean,
                f.var,
                e_alpha,
                e_log_alpha,
                e_log_theta[self.group_index],
                e_log_1m_theta[self.group_index],
            )
        else:
            diag = torch.diagonal(zz, dim1=-2, dim2=-1)
            _, logdet = torch.linalg.slogdet(f.cov)
            elbo = elbo + (
                0.5 * e_log_alpha.sum()
                - 0.5 * (e_alpha * diag).sum()
                + 0.5 * self.n_samples * self.K
                + 0.5 * logdet.sum()
            )
        elbo = elbo - self._gamma_kl(f.alpha_a, f.alpha_b) - self._beta_kl(f.theta_a, f.theta_b)
        return float(elbo.item())

    # -------------------------------------------------------------------------
    # Iterations
    # -------------------------------------------------------------------------

    def _check(self, step: str) -> None:
        problem = self.state.find_invalid()
        if problem is not None:
            parameter, index = problem
            logger.error(
                "Numeric instability after the %s update at iteration %d: %s %s",
                step,
                self.state.iteration + 1,
                parameter,
                index,
            )
            raise NumericInstabilityError(
                parameter, self.state.iteration + 1, index=index, checkpoint=self.checkpoint
            )

    def step(self) -> float:
        """Run one full iteration and return its ELBO."""
        self.update_factors()
        self._check("factor")
        self.update_weights()
        self._check("weight")
        self.update_noise()
        self._check("noise")
        self.update_sparsity()
        self._check("sparsity")

        elbo = self.compute_elbo()
        iteration = self.state.iteration + 1
        if not math.isfinite(elbo):
            raise NumericInstabilityError("elbo", iteration, checkpoint=self.checkpoint)

        history = self.state.elbo
        if history and elbo < history[-1] - ELBO_DECREASE_TOL * abs(history[-1]):
            logger.warning(
                "ELBO decreased at iteration %d: %.6f -> %.6f", iteration, history[-1], elbo
            )
        history.append(elbo)
        self.state.iteration = iteration
        return elbo

    def run(
        self,
        callbacks: Sequence[Callable] | None = None,
    ) -> EngineResult:
        """Iterate until convergence, ``maxiter`` or a stop request from a callback.

        Parameters
        ----------
        callbacks : list of Callback, optional
            Objects with ``on_iteration_end(iteration, elbo, history, state) -> bool``
            and ``on_train_end(history)``; returning True stops training.

        Returns
        -------
        EngineResult
            Final state and termination flags
        """
        if self.state is None:
            self.initialize(self.training_options.seed)

        opts = self.training_options
        tol = opts.tolerance
        callbacks = list(callbacks or [])
        converged = False
        stopped_early = False

        iterations = range(self.state.iteration, opts.maxiter)
        pbar = tqdm(iterations, desc="Training") if opts.verbose else iterations

        for _ in pbar:
            previous = self.state.elbo[-1] if self.state.elbo else None
            elbo = self.step()
            iteration = self.state.iteration

            if opts.verbose and isinstance(pbar, tqdm):
                pbar.set_postfix({"ELBO": f"{elbo:.2f}"})

            delta = None
            if previous is not None:
                delta = (elbo - previous) / abs(previous) if previous != 0 else elbo - previous
            logger.debug(
                "Iteration %d: ELBO = %.4f (relative change %s)",
                iteration,
                elbo,
                "n/a" if delta is None else f"{delta:.2e}",
            )

            if iteration % opts.checkpoint_every == 0:
                self.checkpoint = self.state.clone()

            current = self.state.clone() if callbacks else None
            if any(cb.on_iteration_end(iteration, elbo, current.elbo, current) for cb in callbacks):
                logger.info("Training stopped by a callback at iteration %d", iteration)
                stopped_early = True
                break

            if delta is not None and iteration >= opts.min_iter and abs(delta) < tol:
                converged = True
                logger.info(
                    "Converged after %d iterations (relative ELBO change %.2e < %.0e)",
                    iteration,
                    abs(delta),
                    tol,
                )
                break

        for cb in callbacks:
            cb.on_train_end(self.state.elbo)

        return EngineResult(state=self.state, converged=converged, stopped_early=stopped_early)
