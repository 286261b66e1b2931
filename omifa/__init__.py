"""OMIFA: Omics Integration via Factor Analysis.

A Bayesian group factor analysis framework that integrates several
heterogeneous, partially missing data views (e.g. transcriptomics,
methylation and mutation calls measured on overlapping samples) through a
small number of shared latent factors, fitted with mean-field variational
inference.

Example
-------
>>> import omifa
>>> gen = omifa.DataGenerator(n_samples=100, n_features=[200, 150, 80], n_factors=5)
>>> gen.generate(seed=42)
>>> model = omifa.fit(
...     gen.get_views(),
...     model_options=omifa.ModelOptions(num_factors=5),
...     training_options=omifa.TrainingOptions(seed=0),
... )
>>> model.variance_explained()
>>> from omifa import tl
>>> associations = tl.test(model, metadata=sample_metadata)
"""

import logging

from omifa import analysis as tl
from omifa.data.container import MultiViewData
from omifa.data.synthetic import DataGenerator
from omifa.errors import ConfigurationError
from omifa.errors import ConvergenceWarning
from omifa.errors import DataShapeError
from omifa.errors import NumericInstabilityError
from omifa.errors import OmifaError
from omifa.errors import PersistenceError
from omifa.errors import SampleAlignmentError
from omifa.inference.callbacks import Callback
from omifa.inference.callbacks import CancelCallback
from omifa.inference.callbacks import CheckpointCallback
from omifa.inference.callbacks import LogCallback
from omifa.model.core import OMIFA
from omifa.model.core import TrainedModel
from omifa.model.core import fit
from omifa.model.io import load_model as load
from omifa.model.state import TrainingState
from omifa.options import ComputeBackend
from omifa.options import ConvergenceMode
from omifa.options import DataOptions
from omifa.options import Likelihood
from omifa.options import ModelOptions
from omifa.options import TrainingOptions
from omifa.utils.gpu import get_free_gpu_idx
from omifa.utils.seeds import set_all_seeds

__version__ = "0.1.0"
__all__ = [
    "OMIFA",
    "Callback",
    "CancelCallback",
    "CheckpointCallback",
    "ComputeBackend",
    "ConfigurationError",
    "ConvergenceMode",
    "ConvergenceWarning",
    "DataGenerator",
    "DataOptions",
    "DataShapeError",
    "Likelihood",
    "LogCallback",
    "ModelOptions",
    "MultiViewData",
    "NumericInstabilityError",
    "OmifaError",
    "PersistenceError",
    "SampleAlignmentError",
    "TrainedModel",
    "TrainingOptions",
    "TrainingState",
    "fit",
    "get_free_gpu_idx",
    "load",
    "set_all_seeds",
    "tl",  # Tools/analysis module (like scanpy.tl)
]

# Configure logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
