"""Option records for data handling, the model and training.

Each record is a frozen dataclass with documented defaults. Values are
validated on construction and invalid ones raise
:class:`~omifa.errors.ConfigurationError` before any fitting starts.
"""

import logging
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import MISSING
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import fields
from enum import Enum
from typing import Any

from omifa.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Likelihood(str, Enum):
    """Observation model of a view."""

    CONTINUOUS = "continuous"
    COUNT = "count"
    BINARY = "binary"


class ConvergenceMode(str, Enum):
    """Relative ELBO change required to declare convergence."""

    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"

    @property
    def tolerance(self) -> float:
        return _TOLERANCES[self]


_TOLERANCES = {
    ConvergenceMode.FAST: 5e-4,
    ConvergenceMode.MEDIUM: 5e-5,
    ConvergenceMode.SLOW: 5e-6,
}


class ComputeBackend(str, Enum):
    """Execution strategy for the dense linear algebra kernels."""

    CPU = "cpu"
    ACCELERATED = "accelerated"


def _to_enum(enum_cls: type[Enum], value: Any, name: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(e.value for e in enum_cls)
        raise ConfigurationError(f"`{name}` must be one of {{{choices}}}, got {value!r}") from None


def _check_positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float) or int(value) != value:
        raise ConfigurationError(f"`{name}` must be an integer, got {value!r}")
    if value <= 0:
        raise ConfigurationError(f"`{name}` must be positive, got {value}")
    return int(value)


def _check_non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float) or not float(value).is_integer():
        raise ConfigurationError(f"`{name}` must be a non-negative integer, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"`{name}` must be a non-negative integer, got {value}")
    return int(value)


def _check_positive_float(value: Any, name: str) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"`{name}` must be a number, got {value!r}") from None
    if not value > 0:
        raise ConfigurationError(f"`{name}` must be positive, got {value}")
    return value


@dataclass(frozen=True, kw_only=True)
class _Options:
    def __or__(self, other: "_Options") -> "_Options":
        if self.__class__ is not other.__class__:
            raise TypeError("Can only merge objects of the same type")

        kwargs = self.asdict()
        for f in fields(other):
            val = getattr(other, f.name)
            if f.default is not MISSING and val != f.default:
                kwargs[f.name] = val
        return self.__class__(**kwargs)

    def asdict(self) -> dict[str, Any]:
        """Plain-python representation; enums are stored by value."""
        out = {}
        for key, val in asdict(self).items():
            if isinstance(val, Enum):
                val = val.value
            elif isinstance(val, dict):
                val = {k: v.value if isinstance(v, Enum) else v for k, v in val.items()}
            out[key] = val
        return out

    @classmethod
    def fromdict(cls, values: Mapping[str, Any]) -> "_Options":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown {cls.__name__} fields: {sorted(unknown)}")
        return cls(**values)


@dataclass(frozen=True, kw_only=True)
class DataOptions(_Options):
    """Options for data handling.

    Args:
        scale_views: Scale each continuous view to unit global variance.
        scale_groups: Scale each (group, view) block of continuous data to unit variance.
        use_samples: How to align samples across views, ``"union"`` keeps samples
            present in at least one view, ``"intersection"`` only samples present in all.
    """

    scale_views: bool = False
    scale_groups: bool = False
    use_samples: str = "union"

    def __post_init__(self):
        if self.use_samples not in ("union", "intersection"):
            raise ConfigurationError(
                f'`use_samples` must be "union" or "intersection", got {self.use_samples!r}'
            )
        object.__setattr__(self, "scale_views", bool(self.scale_views))
        object.__setattr__(self, "scale_groups", bool(self.scale_groups))


@dataclass(frozen=True, kw_only=True)
class ModelOptions(_Options):
    """Options for the model.

    Args:
        num_factors: Number of latent factors K, fixed for the lifetime of a model.
        likelihoods: Likelihood of every view (if a single value) or per view (if a mapping).
        spikeslab_weights: Spike-and-slab prior on the weights.
        spikeslab_factors: Spike-and-slab prior on the factors.
        ard_weights: ARD prior per (factor, view); None means True if more than one view.
        ard_factors: ARD prior per (factor, group); None means True if more than one group.
        init_factors: Initialization, ``"pca"`` or ``"random"``.
        prior_a0: Shape of the Gamma priors on noise and ARD precisions.
        prior_b0: Rate of the Gamma priors on noise and ARD precisions.
        prior_theta_a: First Beta parameter of the spike-and-slab inclusion rates.
        prior_theta_b: Second Beta parameter of the spike-and-slab inclusion rates.
    """

    num_factors: int = 15
    likelihoods: Mapping[str, Likelihood | str] | Likelihood | str = Likelihood.CONTINUOUS
    spikeslab_weights: bool = True
    spikeslab_factors: bool = False
    ard_weights: bool | None = None
    ard_factors: bool | None = None
    init_factors: str = "pca"
    prior_a0: float = 1e-3
    prior_b0: float = 1e-3
    prior_theta_a: float = 1.0
    prior_theta_b: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "num_factors", _check_positive_int(self.num_factors, "num_factors"))

        if isinstance(self.likelihoods, Mapping):
            likelihoods = {
                str(k): _to_enum(Likelihood, v, f"likelihoods[{k}]")
                for k, v in self.likelihoods.items()
            }
        else:
            likelihoods = _to_enum(Likelihood, self.likelihoods, "likelihoods")
        object.__setattr__(self, "likelihoods", likelihoods)

        if self.init_factors not in ("pca", "random"):
            raise ConfigurationError(
                f'`init_factors` must be "pca" or "random", got {self.init_factors!r}'
            )
        for name in ("prior_a0", "prior_b0", "prior_theta_a", "prior_theta_b"):
            object.__setattr__(self, name, _check_positive_float(getattr(self, name), name))

    def view_likelihoods(self, view_names: Sequence[str]) -> dict[str, Likelihood]:
        """Likelihood of each view, defaulting to continuous for unlisted views."""
        if isinstance(self.likelihoods, Likelihood):
            return {vn: self.likelihoods for vn in view_names}
        unknown = set(self.likelihoods) - set(view_names)
        if unknown:
            raise ConfigurationError(f"Likelihoods given for unknown views: {sorted(unknown)}")
        return {vn: self.likelihoods.get(vn, Likelihood.CONTINUOUS) for vn in view_names}

    def resolve(self, view_names: Sequence[str], n_groups: int) -> "ModelOptions":
        """Return a copy with automatic defaults and per-view likelihoods filled in."""
        ard_weights = self.ard_weights
        if ard_weights is None:
            ard_weights = len(view_names) > 1
        ard_factors = self.ard_factors
        if ard_factors is None:
            ard_factors = n_groups > 1

        kwargs = {f.name: getattr(self, f.name) for f in fields(self)}
        kwargs.update(
            likelihoods=self.view_likelihoods(view_names),
            ard_weights=bool(ard_weights),
            ard_factors=bool(ard_factors),
        )
        resolved = self.__class__(**kwargs)
        logger.info(
            "Model options: K=%d, spike-and-slab (weights=%s, factors=%s), ARD (weights=%s, factors=%s)",
            resolved.num_factors,
            resolved.spikeslab_weights,
            resolved.spikeslab_factors,
            resolved.ard_weights,
            resolved.ard_factors,
        )
        return resolved


@dataclass(frozen=True, kw_only=True)
class TrainingOptions(_Options):
    """Options for training.

    Args:
        maxiter: Maximum number of iterations.
        convergence_mode: ``"fast"``, ``"medium"`` or ``"slow"``, see :class:`ConvergenceMode`.
        seed: Random seed for the initialization.
        compute_backend: ``"cpu"`` or ``"accelerated"`` (CUDA when available).
        checkpoint_every: Keep an in-memory snapshot of the training state every n iterations.
        min_iter: Minimum number of iterations before convergence can be declared.
        verbose: Show a progress bar.
        gpu_index: GPU to use with the accelerated backend; None picks the least loaded one.
    """

    maxiter: int = 1000
    convergence_mode: ConvergenceMode | str = ConvergenceMode.FAST
    seed: int | None = None
    compute_backend: ComputeBackend | str = ComputeBackend.CPU
    checkpoint_every: int = 25
    min_iter: int = 2
    verbose: bool = False
    gpu_index: int | None = None

    def __post_init__(self):
        object.__setattr__(self, "maxiter", _check_positive_int(self.maxiter, "maxiter"))
        object.__setattr__(
            self,
            "checkpoint_every",
            _check_positive_int(self.checkpoint_every, "checkpoint_every"),
        )
        object.__setattr__(self, "min_iter", _check_positive_int(self.min_iter, "min_iter"))
        object.__setattr__(
            self,
            "convergence_mode",
            _to_enum(ConvergenceMode, self.convergence_mode, "convergence_mode"),
        )
        object.__setattr__(
            self,
            "compute_backend",
            _to_enum(ComputeBackend, self.compute_backend, "compute_backend"),
        )
        for name in ("seed", "gpu_index"):
            if getattr(self, name) is not None:
                object.__setattr__(self, name, _check_non_negative_int(getattr(self, name), name))

    @property
    def tolerance(self) -> float:
        return self.convergence_mode.tolerance
