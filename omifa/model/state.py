"""Posterior parameters held by the inference engine."""

import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from pathlib import Path
from typing import Any

import torch

from omifa.errors import PersistenceError

logger = logging.getLogger(__name__)

# (field name, must be strictly positive)
_FACTOR_FIELDS = (
    ("mean", False),
    ("cov", False),
    ("gamma", False),
    ("alpha_a", True),
    ("alpha_b", True),
    ("theta_a", True),
    ("theta_b", True),
)
_VIEW_FIELDS = (
    ("w_mean", False),
    ("w_var", True),
    ("w_gamma", False),
    ("alpha_a", True),
    ("alpha_b", True),
    ("theta_a", True),
    ("theta_b", True),
    ("tau_a", True),
    ("tau_b", True),
    ("local", False),
)


def _clone(value: torch.Tensor | None) -> torch.Tensor | None:
    return None if value is None else value.detach().clone()


def _first_bad_index(tensor: torch.Tensor, positive: bool) -> tuple[int, ...] | None:
    bad = ~torch.isfinite(tensor)
    if positive:
        bad |= tensor <= 0
    if not bad.any():
        return None
    return tuple(int(i) for i in bad.nonzero()[0].tolist())


@dataclass
class FactorPosterior:
    """Posterior over the sample x factor matrix Z.

    Attributes
    ----------
    mean : torch.Tensor
        Slab means, (n_samples, K)
    cov : torch.Tensor
        Slab covariances, (n_samples, K, K); diagonal when the factors
        carry a spike-and-slab prior
    gamma : torch.Tensor
        Inclusion probabilities, (n_samples, K); all ones without spike-and-slab
    alpha_a, alpha_b : torch.Tensor, optional
        Gamma posterior of the ARD precisions, (n_groups, K)
    theta_a, theta_b : torch.Tensor, optional
        Beta posterior of the inclusion rates, (n_groups, K)
    """

    mean: torch.Tensor
    cov: torch.Tensor
    gamma: torch.Tensor
    alpha_a: torch.Tensor | None = None
    alpha_b: torch.Tensor | None = None
    theta_a: torch.Tensor | None = None
    theta_b: torch.Tensor | None = None

    @property
    def var(self) -> torch.Tensor:
        return torch.diagonal(self.cov, dim1=-2, dim2=-1)

    @property
    def expectation(self) -> torch.Tensor:
        return self.gamma * self.mean

    def clone(self) -> "FactorPosterior":
        return FactorPosterior(**{f.name: _clone(getattr(self, f.name)) for f in fields(self)})


@dataclass
class ViewPosterior:
    """Posterior parameters of one view.

    Attributes
    ----------
    w_mean, w_var : torch.Tensor
        Slab means and variances of the weights, (n_features, K)
    w_gamma : torch.Tensor
        Inclusion probabilities, (n_features, K); all ones without spike-and-slab
    alpha_a, alpha_b : torch.Tensor, optional
        Gamma posterior of the ARD precisions, (K,)
    theta_a, theta_b : torch.Tensor, optional
        Beta posterior of the inclusion rates, (K,)
    tau_a, tau_b : torch.Tensor, optional
        Gamma posterior of the noise precisions, (n_features,), continuous views only
    local : torch.Tensor, optional
        Local bound parameters, (n_features, n_samples), count and binary views only
    """

    w_mean: torch.Tensor
    w_var: torch.Tensor
    w_gamma: torch.Tensor
    alpha_a: torch.Tensor | None = None
    alpha_b: torch.Tensor | None = None
    theta_a: torch.Tensor | None = None
    theta_b: torch.Tensor | None = None
    tau_a: torch.Tensor | None = None
    tau_b: torch.Tensor | None = None
    local: torch.Tensor | None = None

    @property
    def expectation(self) -> torch.Tensor:
        return self.w_gamma * self.w_mean

    @property
    def second_moment(self) -> torch.Tensor:
        """Elementwise E[w^2]."""
        return self.w_gamma * (self.w_mean**2 + self.w_var)

    def clone(self) -> "ViewPosterior":
        return ViewPosterior(**{f.name: _clone(getattr(self, f.name)) for f in fields(self)})


@dataclass
class TrainingState:
    """Complete variational posterior plus the ELBO trace.

    The state is owned by a single engine and only mutated between
    iterations; snapshots handed out (checkpoints, callbacks) are clones.
    """

    factors: FactorPosterior
    views: dict[str, ViewPosterior]
    elbo: list[float] = field(default_factory=list)
    iteration: int = 0

    @property
    def n_factors(self) -> int:
        return self.factors.mean.shape[1]

    def clone(self) -> "TrainingState":
        return TrainingState(
            factors=self.factors.clone(),
            views={vn: vp.clone() for vn, vp in self.views.items()},
            elbo=list(self.elbo),
            iteration=self.iteration,
        )

    def to(self, device: torch.device | str) -> "TrainingState":
        state = self.clone()
        for obj in (state.factors, *state.views.values()):
            for f in fields(obj):
                value = getattr(obj, f.name)
                if value is not None:
                    setattr(obj, f.name, value.to(device))
        return state

    def find_invalid(self) -> tuple[str, tuple[int, ...]] | None:
        """Locate the first non-finite or non-positive parameter.

        Returns
        -------
        tuple or None
            ``(parameter name, index)`` of the first problem, None if all is well
        """
        for name, positive in _FACTOR_FIELDS:
            value = getattr(self.factors, name)
            if value is None:
                continue
            idx = _first_bad_index(value, positive)
            if idx is not None:
                return f"factors.{name}", idx
        idx = _first_bad_index(self.factors.var, True)
        if idx is not None:
            return "factors.variance", idx

        for vn, vp in self.views.items():
            for name, positive in _VIEW_FIELDS:
                value = getattr(vp, name)
                if value is None:
                    continue
                idx = _first_bad_index(value, positive)
                if idx is not None:
                    return f"views[{vn}].{name}", idx
        return None

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Nested dict of tensors and plain python values, loadable with ``weights_only``."""
        return {
            "factors": {f.name: _clone(getattr(self.factors, f.name)) for f in fields(self.factors)},
            "views": {
                vn: {f.name: _clone(getattr(vp, f.name)) for f in fields(vp)}
                for vn, vp in self.views.items()
            },
            "elbo": [float(v) for v in self.elbo],
            "iteration": int(self.iteration),
        }

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "TrainingState":
        try:
            factors = FactorPosterior(**values["factors"])
            views = {vn: ViewPosterior(**vp) for vn, vp in values["views"].items()}
            elbo = [float(v) for v in values["elbo"]]
            iteration = int(values["iteration"])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PersistenceError(f"Invalid training state: {e}") from e

        for obj in (factors, *views.values()):
            for f in fields(obj):
                value = getattr(obj, f.name)
                if value is not None and not isinstance(value, torch.Tensor):
                    raise PersistenceError(f"Invalid training state: `{f.name}` is not a tensor")
        return cls(factors=factors, views=views, elbo=elbo, iteration=iteration)

    def save(self, path: str | Path) -> Path:
        """Write the state to ``path`` with :func:`torch.save`."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save({"kind": "training_state", "state": self.to(torch.device("cpu")).to_dict()}, path)
        logger.debug("Saved training state (iteration %d) to %s", self.iteration, path)
        return path

    @classmethod
    def load(cls, path: str | Path) -> "TrainingState":
        """Read a state written by :meth:`save`.

        Raises
        ------
        PersistenceError
            If the file is missing, unreadable or not a training state
        """
        try:
            payload = torch.load(Path(path), map_location="cpu", weights_only=True)
        except FileNotFoundError as e:
            raise PersistenceError(f"No training state at {path}") from e
        except Exception as e:
            raise PersistenceError(f"Could not read training state from {path}: {e}") from e

        if not isinstance(payload, dict) or payload.get("kind") != "training_state":
            raise PersistenceError(f"{path} does not contain a training state")
        return cls.from_dict(payload["state"])
