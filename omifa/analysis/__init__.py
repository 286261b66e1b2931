"""Analysis utilities for OMIFA."""

from omifa.analysis.metrics import compute_silhouette_score
from omifa.analysis.metrics import filter_factors
from omifa.analysis.metrics import test
from omifa.analysis.metrics import test_metadata
from omifa.analysis.metrics import variance_explained
from omifa.analysis.metrics import variance_explained_per_factor
from omifa.analysis.variance import VarianceExplained
from omifa.analysis.variance import compute_variance_explained

__all__ = [
    "VarianceExplained",
    "compute_silhouette_score",
    "compute_variance_explained",
    "filter_factors",
    "test",
    "test_metadata",
    "variance_explained",
    "variance_explained_per_factor",
]
