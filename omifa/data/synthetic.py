"""Synthetic data generation for OMIFA."""

import logging
from collections.abc import Mapping
from collections.abc import Sequence

import numpy as np
import pandas as pd
import pyro.distributions as dist
import torch
import torch.nn.functional as F

from omifa.options import Likelihood
from omifa.utils.seeds import set_all_seeds

logger = logging.getLogger(__name__)


class DataGenerator:
    """Generate synthetic multi-view data with a known factor structure.

    Factors are drawn from a standard normal distribution, weights from a
    spike-and-slab distribution where each factor is active in a random,
    non-empty subset of views. Observations follow the likelihood of each
    view given the linear predictor ``W Z^T``.

    Parameters
    ----------
    n_samples : int, optional
        Number of samples, by default 100
    n_features : Sequence[int], optional
        Number of features per view, by default (50, 40, 30)
    n_factors : int, optional
        Number of factors, by default 5
    likelihoods : Likelihood, str or Mapping, optional
        Likelihood of all views or per view, by default continuous
    n_groups : int, optional
        Number of sample groups (contiguous blocks), by default 1
    view_names : Sequence[str], optional
        Names of the views, by default ``view_0``, ``view_1``, ...
    sparsity : float, optional
        Fraction of inactive weights within an active (factor, view), by default 0.5
    view_activity : float, optional
        Probability of a factor being active in a view, by default 0.7
    a : float, optional
        Concentration parameter of the noise precision, by default 1.0
    b : float, optional
        Rate parameter of the noise precision, by default 0.5

    Attributes
    ----------
    Z : np.ndarray
        Sample x factor matrix
    W : dict
        View name -> feature x factor weights
    Y : dict
        View name -> feature x sample observations (NaN where missing)

    Example
    -------
    >>> from omifa.data import DataGenerator
    >>> gen = DataGenerator(n_samples=50, n_features=[30, 20], n_factors=3)
    >>> gen.generate(seed=42)
    >>> views = gen.get_views()
    >>> views["view_0"].shape
    (30, 50)
    """

    def __init__(
        self,
        n_samples: int = 100,
        n_features: Sequence[int] = (50, 40, 30),
        n_factors: int = 5,
        likelihoods: Likelihood | str | Mapping[str, Likelihood | str] = Likelihood.CONTINUOUS,
        n_groups: int = 1,
        view_names: Sequence[str] | None = None,
        sparsity: float = 0.5,
        view_activity: float = 0.7,
        a: float = 1.0,
        b: float = 0.5,
    ) -> None:
        self.n_samples = n_samples
        self.n_features = list(n_features)
        self.n_factors = n_factors
        self.n_groups = n_groups
        self.sparsity = sparsity
        self.view_activity = view_activity
        self.a = a
        self.b = b

        if view_names is None:
            view_names = [f"view_{m}" for m in range(len(self.n_features))]
        if len(view_names) != len(self.n_features):
            raise ValueError(f"Expected {len(self.n_features)} view names, got {len(view_names)}")
        self.view_names = list(view_names)

        if isinstance(likelihoods, Mapping):
            self.likelihoods = {vn: Likelihood(likelihoods.get(vn, "continuous")) for vn in self.view_names}
        else:
            self.likelihoods = {vn: Likelihood(likelihoods) for vn in self.view_names}

        self.sample_names = [f"sample_{i}" for i in range(n_samples)]
        self.group_names = [f"group_{g}" for g in range(n_groups)]

        self.Z: np.ndarray | None = None
        self.W: dict[str, np.ndarray] | None = None
        self.Y: dict[str, np.ndarray] | None = None
        self.active: np.ndarray | None = None
        self.groups: np.ndarray | None = None

    def generate(self, seed: int | None = 0) -> np.random.Generator:
        """Generate factors, weights and observations.

        Parameters
        ----------
        seed : int, optional
            Random seed for reproducibility, by default 0

        Returns
        -------
        np.random.Generator
            The random number generator used
        """
        rng = np.random.default_rng()

        if seed is not None:
            rng = np.random.default_rng(seed)
            set_all_seeds(seed)

        logger.debug(
            "Generating synthetic data: %d samples, %d views %s, K=%d",
            self.n_samples,
            len(self.view_names),
            self.n_features,
            self.n_factors,
        )

        M, K = len(self.view_names), self.n_factors
        self.groups = np.repeat(np.arange(self.n_groups), int(np.ceil(self.n_samples / self.n_groups)))[
            : self.n_samples
        ]
        self.Z = rng.standard_normal((self.n_samples, K))

        # every factor is active in at least one view
        active = rng.random((M, K)) < self.view_activity
        for k in range(K):
            if not active[:, k].any():
                active[rng.integers(M), k] = True
        self.active = active

        self.W, self.Y = {}, {}
        for m, (vn, D) in enumerate(zip(self.view_names, self.n_features, strict=True)):
            slab = rng.normal(0.0, 1.0, size=(D, K))
            spike = rng.random((D, K)) >= self.sparsity
            w = slab * spike * active[m]
            self.W[vn] = w

            eta = torch.as_tensor(w @ self.Z.T)
            likelihood = self.likelihoods[vn]
            if likelihood == Likelihood.CONTINUOUS:
                tau = torch.as_tensor(rng.gamma(self.a, 1.0 / self.b, size=(D, 1)))
                y = dist.Normal(eta, 1.0 / torch.sqrt(tau)).sample()
            elif likelihood == Likelihood.COUNT:
                y = dist.Poisson(F.softplus(eta)).sample()
            else:
                y = dist.Bernoulli(logits=eta).sample()
            self.Y[vn] = y.numpy()

            logger.debug("Generated view `%s` with shape %s", vn, self.Y[vn].shape)

        return rng

    def generate_missingness(
        self,
        p: float = 0.1,
        n_missing_samples: int = 0,
        seed: int | None = None,
    ) -> None:
        """Introduce missing values into the generated views.

        Parameters
        ----------
        p : float, optional
            Proportion of entries set as missing in each view, by default 0.1
        n_missing_samples : int, optional
            Number of samples removed entirely from each view, by default 0
        seed : int, optional
            Random seed, by default None
        """
        if self.Y is None:
            raise RuntimeError("Call `generate` before `generate_missingness`")
        rng = np.random.default_rng(seed)
        logger.debug("Generating %.1f%% missing values", p * 100)

        for vn, y in self.Y.items():
            y = y.copy()
            y[rng.random(y.shape) < p] = np.nan
            if n_missing_samples > 0:
                cols = rng.choice(self.n_samples, size=n_missing_samples, replace=False)
                y[:, cols] = np.nan
            self.Y[vn] = y

    def get_sim_data(self) -> dict:
        """Get the generated simulation data.

        Returns
        -------
        dict
            Dictionary containing:
            - 'Z_sim': Sample x factor matrix
            - 'W_sim': View name -> feature x factor weights
            - 'Y_sim': View name -> feature x sample observations
            - 'active': View x factor activity pattern
            - 'groups': Integer group of every sample
        """
        return {
            "Z_sim": self.Z,
            "W_sim": self.W,
            "Y_sim": self.Y,
            "active": self.active,
            "groups": self.groups,
        }

    def get_views(self) -> dict[str, pd.DataFrame]:
        """Observations as feature x sample DataFrames."""
        if self.Y is None:
            raise RuntimeError("Call `generate` first")
        return {
            vn: pd.DataFrame(
                y.copy(),
                index=[f"{vn}_feature_{j}" for j in range(y.shape[0])],
                columns=self.sample_names,
            )
            for vn, y in self.Y.items()
        }

    def get_groups(self) -> pd.Series:
        """Group label of every sample."""
        if self.groups is None:
            raise RuntimeError("Call `generate` first")
        return pd.Series(
            [self.group_names[g] for g in self.groups],
            index=self.sample_names,
            name="group",
        )
