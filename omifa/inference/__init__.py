"""Inference utilities for OMIFA."""

from omifa.inference.callbacks import Callback
from omifa.inference.callbacks import CancelCallback
from omifa.inference.callbacks import CheckpointCallback
from omifa.inference.callbacks import LogCallback

__all__ = [
    "Callback",
    "CancelCallback",
    "CheckpointCallback",
    "LogCallback",
]
