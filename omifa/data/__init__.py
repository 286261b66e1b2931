"""Data handling for OMIFA."""

from omifa.data.container import MultiViewData
from omifa.data.container import ProcessedData
from omifa.data.synthetic import DataGenerator

__all__ = ["DataGenerator", "MultiViewData", "ProcessedData"]
