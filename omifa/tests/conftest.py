"""Pytest fixtures for OMIFA tests."""

import pytest
import torch

from omifa.utils.seeds import set_all_seeds


@pytest.fixture
def seed():
    """Default random seed for tests."""
    return 42


@pytest.fixture
def set_seeds(seed):
    """Set all random seeds for reproducibility."""
    set_all_seeds(seed)
    return seed


@pytest.fixture
def device():
    """Get the appropriate device for testing."""
    return torch.device("cpu")


@pytest.fixture
def small_generator(set_seeds):
    """Two continuous views of 20 and 15 features over 30 samples, 3 factors."""
    from omifa.data import DataGenerator

    generator = DataGenerator(n_samples=30, n_features=[20, 15], n_factors=3)
    generator.generate(seed=42)
    return generator


@pytest.fixture
def small_views(small_generator):
    """Feature x sample DataFrames of the small generator."""
    return small_generator.get_views()


@pytest.fixture(scope="session")
def scenario_generator():
    """Three continuous views over 50 fully overlapping samples, 5 factors."""
    from omifa.data import DataGenerator

    generator = DataGenerator(n_samples=50, n_features=[40, 30, 20], n_factors=5)
    generator.generate(seed=0)
    return generator


@pytest.fixture(scope="session")
def scenario_views(scenario_generator):
    return scenario_generator.get_views()


@pytest.fixture(scope="session")
def trained_model(scenario_views):
    """Model fitted with num_factors=5, maxiter=200 and fast convergence."""
    import omifa

    return omifa.fit(
        scenario_views,
        model_options=omifa.ModelOptions(num_factors=5),
        training_options=omifa.TrainingOptions(maxiter=200, convergence_mode="fast", seed=1),
    )


@pytest.fixture(scope="session")
def grouped_model():
    """Model fitted on two views with two sample groups and missing values."""
    import omifa

    generator = omifa.DataGenerator(n_samples=40, n_features=[25, 15], n_factors=3, n_groups=2)
    generator.generate(seed=3)
    generator.generate_missingness(p=0.1, n_missing_samples=3, seed=3)
    return omifa.fit(
        generator.get_views(),
        groups=generator.get_groups(),
        model_options=omifa.ModelOptions(num_factors=3),
        training_options=omifa.TrainingOptions(maxiter=100, seed=0),
    )
