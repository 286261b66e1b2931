"""Model, inference engine and persistence for OMIFA."""

from omifa.model.core import OMIFA
from omifa.model.core import TrainedModel
from omifa.model.core import fit
from omifa.model.engine import VariationalEngine
from omifa.model.io import load_model
from omifa.model.io import save_model
from omifa.model.state import TrainingState

__all__ = [
    "OMIFA",
    "TrainedModel",
    "TrainingState",
    "VariationalEngine",
    "fit",
    "load_model",
    "save_model",
]
