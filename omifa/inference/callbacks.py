"""Training callbacks for OMIFA.

Callbacks are invoked by the engine at the end of every iteration and allow
monitoring, checkpointing and cooperative cancellation of a fit.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from omifa.model.state import TrainingState

logger = logging.getLogger(__name__)


class Callback:
    """Base class for training callbacks."""

    def on_iteration_end(
        self,
        iteration: int,
        elbo: float,
        history: list[float],
        state: TrainingState,
    ) -> bool:
        """Called at the end of each iteration.

        Parameters
        ----------
        iteration : int
            Number of completed iterations
        elbo : float
            ELBO after this iteration
        history : List[float]
            Full ELBO trace
        state : TrainingState
            Current training state; must not be modified

        Returns
        -------
        bool
            Whether to stop training
        """
        return False

    def on_train_end(self, history: list[float]) -> None:
        """Called when training ends.

        Parameters
        ----------
        history : List[float]
            Full ELBO trace
        """


class CancelCallback(Callback):
    """Stop training as soon as a cancellation event is set.

    The event can be set from any thread; the request is honoured at the
    next iteration boundary.

    Parameters
    ----------
    event : threading.Event, optional
        Event to watch, by default a new one (see :meth:`cancel`)

    Example
    -------
    >>> cancel = CancelCallback()
    >>> threading.Timer(60, cancel.cancel).start()
    >>> model = omifa.fit(views, callbacks=[cancel])
    """

    def __init__(self, event: threading.Event | None = None) -> None:
        self.event = event if event is not None else threading.Event()

    def cancel(self) -> None:
        self.event.set()

    def on_iteration_end(self, iteration, elbo, history, state) -> bool:
        if self.event.is_set():
            logger.info("Cancellation requested, stopping after iteration %d", iteration)
            return True
        return False


class CheckpointCallback(Callback):
    """Save the training state to disk during training.

    Saved files can be read with :meth:`TrainingState.load` and passed to
    ``fit(..., resume_from=state)``.

    Parameters
    ----------
    path : str
        Directory to save checkpoints
    every_n_iterations : int, optional
        Save every N iterations, by default 100
    """

    def __init__(
        self,
        path: str | Path,
        every_n_iterations: int = 100,
    ) -> None:
        self.path = Path(path)
        self.every_n_iterations = every_n_iterations
        self.path.mkdir(parents=True, exist_ok=True)
        self.saved: list[Path] = []

    def on_iteration_end(self, iteration, elbo, history, state) -> bool:
        if iteration > 0 and iteration % self.every_n_iterations == 0:
            checkpoint_path = self.path / f"checkpoint_iter_{iteration}.pt"
            state.save(checkpoint_path)
            self.saved.append(checkpoint_path)
            logger.info("Saved checkpoint to %s", checkpoint_path)

        return False


class LogCallback(Callback):
    """Log training progress.

    Parameters
    ----------
    log_every : int, optional
        Log every N iterations, by default 100
    """

    def __init__(self, log_every: int = 100) -> None:
        self.log_every = log_every

    def on_iteration_end(self, iteration, elbo, history, state) -> bool:
        if iteration > 0 and iteration % self.log_every == 0:
            logger.info("Iteration %d: ELBO = %.4f", iteration, elbo)

        return False

    def on_train_end(self, history: list[float]) -> None:
        if history:
            logger.info("Training complete. Final ELBO: %.4f", history[-1])
