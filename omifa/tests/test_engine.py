"""Tests for the variational inference engine."""

import warnings

import numpy as np
import pytest
import torch

import omifa
from omifa import ConfigurationError
from omifa import ModelOptions
from omifa import MultiViewData
from omifa import NumericInstabilityError
from omifa import TrainingOptions
from omifa.model.engine import VariationalEngine


def _build_engine(views, model_options, training_options=None, groups=None, mask_entry=None):
    data = MultiViewData(views, groups=groups)
    model_options = model_options.resolve(list(data.view_names), data.n_groups)
    likelihoods = model_options.view_likelihoods(list(data.view_names))
    processed = data.preprocess(likelihoods)

    if mask_entry is not None:
        vn, d, n = mask_entry
        masks = dict(processed.masks)
        mask = masks[vn].copy()
        mask[d, n] = False
        masks[vn] = mask
        processed = type(processed)(
            targets=processed.targets,
            masks=masks,
            feature_means=processed.feature_means,
            scales=processed.scales,
        )

    return VariationalEngine(
        processed,
        likelihoods,
        data.group_index,
        model_options,
        training_options or TrainingOptions(),
    )


def _assert_monotone(elbo):
    elbo = np.asarray(elbo)
    assert np.isfinite(elbo).all()
    decrease = elbo[:-1] - elbo[1:]
    assert (decrease <= 1e-6 * np.abs(elbo[:-1])).all(), elbo


@pytest.fixture(scope="module")
def mixed_generator():
    gen = omifa.DataGenerator(
        n_samples=40,
        n_features=[20, 15, 10],
        n_factors=3,
        likelihoods={"view_0": "continuous", "view_1": "count", "view_2": "binary"},
        n_groups=2,
    )
    gen.generate(seed=7)
    gen.generate_missingness(p=0.1, n_missing_samples=2, seed=7)
    return gen


@pytest.mark.parametrize(
    "spikeslab_weights, ard_weights, spikeslab_factors, ard_factors",
    [
        (True, True, False, True),
        (False, True, False, False),
        (True, False, False, False),
        (False, False, False, False),
        (True, True, True, True),
        (False, True, True, False),
    ],
)
def test_elbo_is_monotone(mixed_generator, spikeslab_weights, ard_weights, spikeslab_factors, ard_factors):
    """The ELBO never decreases, for every likelihood and prior combination."""
    model_options = ModelOptions(
        num_factors=4,
        likelihoods=mixed_generator.likelihoods,
        spikeslab_weights=spikeslab_weights,
        ard_weights=ard_weights,
        spikeslab_factors=spikeslab_factors,
        ard_factors=ard_factors,
    )
    engine = _build_engine(
        mixed_generator.get_views(),
        model_options,
        TrainingOptions(maxiter=25, convergence_mode="slow", min_iter=25, seed=0),
        groups=mixed_generator.get_groups(),
    )
    result = engine.run()

    assert len(result.state.elbo) == 25
    _assert_monotone(result.state.elbo)


@pytest.mark.parametrize("likelihood", ["continuous", "count", "binary"])
def test_elbo_is_monotone_per_likelihood(likelihood):
    gen = omifa.DataGenerator(n_samples=30, n_features=[12, 8], n_factors=2, likelihoods=likelihood)
    gen.generate(seed=11)
    engine = _build_engine(
        gen.get_views(),
        ModelOptions(num_factors=3, likelihoods=likelihood),
        TrainingOptions(maxiter=20, min_iter=20, convergence_mode="slow", seed=1),
    )
    result = engine.run()

    _assert_monotone(result.state.elbo)


def test_random_initialization(small_views):
    engine = _build_engine(small_views, ModelOptions(num_factors=3, init_factors="random"))
    engine.initialize(seed=0)
    elbo = [engine.step() for _ in range(10)]

    _assert_monotone(elbo)
    assert engine.state.iteration == 10


def test_initialization_is_seeded(small_views):
    a = _build_engine(small_views, ModelOptions(num_factors=3, init_factors="random"))
    b = _build_engine(small_views, ModelOptions(num_factors=3, init_factors="random"))

    torch.testing.assert_close(a.initialize(seed=5).factors.mean, b.initialize(seed=5).factors.mean)


def test_factor_update_is_isolated_per_sample(small_views):
    """Masking one entry only changes the factor posterior of its sample."""
    options = ModelOptions(num_factors=3)
    first = _build_engine(small_views, options)
    second = _build_engine(small_views, options, mask_entry=("view_0", 2, 7))

    state = first.initialize(seed=0)
    for _ in range(3):
        first.step()
    state = first.state.clone()
    first.load_state(state)
    second.load_state(state)

    first.update_factors()
    second.update_factors()

    others = np.arange(state.factors.mean.shape[0]) != 7
    torch.testing.assert_close(
        first.state.factors.mean[others], second.state.factors.mean[others], rtol=1e-12, atol=1e-12
    )
    torch.testing.assert_close(
        first.state.factors.cov[others], second.state.factors.cov[others], rtol=1e-12, atol=1e-12
    )
    assert not torch.allclose(first.state.factors.mean[7], second.state.factors.mean[7])


def test_missing_view_for_one_sample_is_isolated(small_views):
    """Dropping a whole view for one sample leaves the other samples untouched."""
    options = ModelOptions(num_factors=3)
    first = _build_engine(small_views, options)
    second = _build_engine(small_views, options, mask_entry=("view_1", slice(None), 7))

    first.initialize(seed=0)
    for _ in range(3):
        first.step()
    state = first.state.clone()
    first.load_state(state)
    second.load_state(state)

    first.update_factors()
    second.update_factors()

    others = np.arange(state.factors.mean.shape[0]) != 7
    torch.testing.assert_close(
        first.state.factors.mean[others], second.state.factors.mean[others], rtol=1e-12, atol=1e-12
    )
    torch.testing.assert_close(
        first.state.factors.cov[others], second.state.factors.cov[others], rtol=1e-12, atol=1e-12
    )
    assert not torch.allclose(first.state.factors.cov[7], second.state.factors.cov[7])


def test_weight_update_is_isolated_per_feature(small_views):
    options = ModelOptions(num_factors=3)
    first = _build_engine(small_views, options)
    second = _build_engine(small_views, options, mask_entry=("view_1", 4, 0))

    first.initialize(seed=0)
    first.step()
    state = first.state.clone()
    first.load_state(state)
    second.load_state(state)

    first.update_weights()
    second.update_weights()

    torch.testing.assert_close(first.state.views["view_0"].w_mean, second.state.views["view_0"].w_mean)
    others = np.arange(15) != 4
    torch.testing.assert_close(
        first.state.views["view_1"].w_mean[others], second.state.views["view_1"].w_mean[others]
    )


def test_convergence_flag(small_views):
    engine = _build_engine(
        small_views, ModelOptions(num_factors=3), TrainingOptions(maxiter=500, seed=0)
    )
    result = engine.run()

    assert result.converged
    assert not result.stopped_early
    assert result.state.iteration < 500
    elbo = result.state.elbo
    assert abs(elbo[-1] - elbo[-2]) / abs(elbo[-2]) < TrainingOptions().tolerance


def test_numeric_instability_reports_parameter_and_checkpoint(small_views):
    engine = _build_engine(small_views, ModelOptions(num_factors=3))
    engine.initialize(seed=0)
    engine.step()
    engine.checkpoint = engine.state.clone()
    engine.state.views["view_1"].tau_b[0] = float("nan")

    with pytest.raises(NumericInstabilityError) as excinfo:
        engine.step()

    err = excinfo.value
    assert err.iteration == 2
    assert err.checkpoint is not None
    assert err.checkpoint.iteration == 1
    assert isinstance(err, ArithmeticError)
    # the corrupted noise precision first breaks the factor posterior
    assert err.parameter.startswith("factors.")
    assert err.index is not None


def test_load_state_validates_dimensions(small_views):
    engine = _build_engine(small_views, ModelOptions(num_factors=3))
    other = _build_engine(small_views, ModelOptions(num_factors=2))

    with pytest.raises(ConfigurationError, match="factors"):
        engine.load_state(other.initialize(seed=0))


def test_callbacks_stop_training(small_views):
    class StopAfter(omifa.Callback):
        def __init__(self):
            self.calls = 0

        def on_iteration_end(self, iteration, elbo, history, state):
            self.calls += 1
            return iteration == 3

    engine = _build_engine(
        small_views, ModelOptions(num_factors=3), TrainingOptions(maxiter=50, min_iter=50)
    )
    callback = StopAfter()
    result = engine.run(callbacks=[callback])

    assert result.stopped_early
    assert not result.converged
    assert result.state.iteration == 3
    assert callback.calls == 3


def test_callbacks_cannot_alter_the_fit(small_views):
    class Vandal(omifa.Callback):
        def on_iteration_end(self, iteration, elbo, history, state):
            state.factors.mean.zero_()
            history.clear()
            return False

    options = ModelOptions(num_factors=3)
    training = TrainingOptions(maxiter=10, min_iter=10, seed=0)
    plain = _build_engine(small_views, options, training).run()
    vandalized = _build_engine(small_views, options, training).run(callbacks=[Vandal()])

    np.testing.assert_allclose(vandalized.state.elbo, plain.state.elbo)
    torch.testing.assert_close(vandalized.state.factors.mean, plain.state.factors.mean)


def test_engine_setup_does_not_warn(small_views):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        _build_engine(small_views, ModelOptions(num_factors=3))

    assert not [w for w in caught if "not writable" in str(w.message)]
