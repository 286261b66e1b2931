"""Utility functions for OMIFA."""

from omifa.utils.gpu import get_free_gpu_idx
from omifa.utils.seeds import set_all_seeds

__all__ = ["get_free_gpu_idx", "set_all_seeds"]
