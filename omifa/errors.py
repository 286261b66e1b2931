"""Exceptions and warnings raised by OMIFA."""

from __future__ import annotations

from typing import TYPE_CHECKING
from typing import Any

if TYPE_CHECKING:
    from omifa.model.state import TrainingState


class OmifaError(Exception):
    """Base class for all OMIFA errors."""


class ConfigurationError(OmifaError, ValueError):
    """An option value is out of range or inconsistent with the data."""


class DataShapeError(OmifaError, ValueError):
    """A view is malformed (wrong dimensions, duplicate identifiers, ...)."""


class SampleAlignmentError(OmifaError, ValueError):
    """Views cannot be aligned on a common, non-empty sample set."""


class NumericInstabilityError(OmifaError, ArithmeticError):
    """A posterior parameter became non-finite or non-positive during fitting.

    Parameters
    ----------
    parameter : str
        Name of the offending parameter class, e.g. ``"weights[rna].variance"``
    iteration : int
        Iteration at which the problem was detected
    index : Any, optional
        First offending index within the parameter, by default None
    checkpoint : TrainingState, optional
        Last good training state kept by the engine, by default None
    """

    def __init__(
        self,
        parameter: str,
        iteration: int,
        index: Any = None,
        checkpoint: TrainingState | None = None,
    ) -> None:
        self.parameter = parameter
        self.iteration = iteration
        self.index = index
        self.checkpoint = checkpoint

        msg = f"Numeric instability in `{parameter}` at iteration {iteration}"
        if index is not None:
            msg += f" (index {index})"
        if checkpoint is not None:
            msg += f"; last checkpoint at iteration {checkpoint.iteration}"
        super().__init__(msg)


class PersistenceError(OmifaError, OSError):
    """A saved artifact is corrupt, incomplete or has an unknown format version."""


class ConvergenceWarning(UserWarning):
    """Training stopped at ``maxiter`` before the ELBO tolerance was met."""
