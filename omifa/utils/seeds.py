"""Seed management utilities for reproducibility."""

import logging

import numpy as np
import pyro
import torch

logger = logging.getLogger(__name__)


def set_all_seeds(seed: int = 42) -> None:
    """Set all random seeds for reproducibility.

    OMIFA draws random numbers from PyTorch (initialization), NumPy
    (synthetic data) and Pyro (distribution sampling); all three are seeded.

    Parameters
    ----------
    seed : int, optional
        Random seed value, by default 42

    Example
    -------
    >>> from omifa.utils import set_all_seeds
    >>> set_all_seeds(42)
    """
    logger.debug("Setting all random seeds to %d", seed)

    torch.manual_seed(seed)
    np.random.seed(seed)
    pyro.set_rng_seed(seed)

    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
