"""Tests for option records."""

import pytest

from omifa import ComputeBackend
from omifa import ConfigurationError
from omifa import ConvergenceMode
from omifa import DataOptions
from omifa import Likelihood
from omifa import ModelOptions
from omifa import TrainingOptions


def test_defaults():
    model = ModelOptions()
    training = TrainingOptions()

    assert model.num_factors == 15
    assert model.likelihoods == Likelihood.CONTINUOUS
    assert model.spikeslab_weights is True
    assert model.spikeslab_factors is False
    assert training.maxiter == 1000
    assert training.convergence_mode == ConvergenceMode.FAST
    assert training.compute_backend == ComputeBackend.CPU
    assert training.seed is None
    assert DataOptions().use_samples == "union"


def test_strings_are_converted_to_enums():
    model = ModelOptions(likelihoods={"rna": "count", "mut": "BINARY"})
    training = TrainingOptions(convergence_mode="slow", compute_backend="accelerated")

    assert model.likelihoods == {"rna": Likelihood.COUNT, "mut": Likelihood.BINARY}
    assert training.convergence_mode == ConvergenceMode.SLOW
    assert training.compute_backend == ComputeBackend.ACCELERATED


def test_tolerances_are_ordered():
    fast, medium, slow = (TrainingOptions(convergence_mode=m).tolerance for m in ("fast", "medium", "slow"))

    assert fast > medium > slow > 0


@pytest.mark.parametrize(
    "cls, kwargs",
    [
        (ModelOptions, {"num_factors": 0}),
        (ModelOptions, {"num_factors": 2.5}),
        (ModelOptions, {"likelihoods": "gamma"}),
        (ModelOptions, {"init_factors": "svd"}),
        (ModelOptions, {"prior_a0": -1.0}),
        (TrainingOptions, {"maxiter": 0}),
        (TrainingOptions, {"maxiter": -5}),
        (TrainingOptions, {"convergence_mode": "instant"}),
        (TrainingOptions, {"compute_backend": "tpu"}),
        (TrainingOptions, {"seed": -1}),
        (TrainingOptions, {"seed": "abc"}),
        (TrainingOptions, {"seed": 1.5}),
        (TrainingOptions, {"gpu_index": "first"}),
        (TrainingOptions, {"gpu_index": -2}),
        (TrainingOptions, {"checkpoint_every": 0}),
        (DataOptions, {"use_samples": "all"}),
    ],
)
def test_invalid_values_raise(cls, kwargs):
    with pytest.raises(ConfigurationError):
        cls(**kwargs)


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        ModelOptions(num_factors=-1)


def test_options_are_frozen():
    with pytest.raises(AttributeError):
        ModelOptions().num_factors = 3


def test_resolve_automatic_ard():
    single = ModelOptions().resolve(["rna"], n_groups=1)
    multi = ModelOptions().resolve(["rna", "met"], n_groups=2)
    explicit = ModelOptions(ard_weights=False).resolve(["rna", "met"], n_groups=1)

    assert single.ard_weights is False and single.ard_factors is False
    assert multi.ard_weights is True and multi.ard_factors is True
    assert explicit.ard_weights is False


def test_resolve_fills_view_likelihoods():
    resolved = ModelOptions(likelihoods={"mut": "binary"}).resolve(["rna", "mut"], n_groups=1)

    assert resolved.likelihoods == {"rna": Likelihood.CONTINUOUS, "mut": Likelihood.BINARY}


def test_likelihood_for_unknown_view_raises():
    with pytest.raises(ConfigurationError, match="unknown views"):
        ModelOptions(likelihoods={"atac": "count"}).view_likelihoods(["rna"])


def test_merge_with_or():
    merged = TrainingOptions(maxiter=50) | TrainingOptions(seed=3)

    assert merged.maxiter == 50
    assert merged.seed == 3

    with pytest.raises(TypeError):
        TrainingOptions() | ModelOptions()


def test_asdict_fromdict():
    opts = ModelOptions(num_factors=4, likelihoods={"rna": "count"})
    values = opts.asdict()

    assert values["likelihoods"] == {"rna": "count"}
    assert ModelOptions.fromdict(values) == opts

    with pytest.raises(ConfigurationError, match="Unknown"):
        TrainingOptions.fromdict({"epochs": 10})
