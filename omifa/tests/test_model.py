"""Tests for fitting OMIFA models and querying the results."""

import threading
import warnings

import numpy as np
import pandas as pd
import pytest

import omifa
from omifa import ConvergenceWarning
from omifa import Likelihood
from omifa import ModelOptions
from omifa import MultiViewData
from omifa import TrainingOptions


def test_synthetic_data_generation(small_generator):
    """Test that synthetic data is generated correctly."""
    data = small_generator.get_sim_data()

    assert data["Z_sim"].shape == (30, 3)
    assert data["W_sim"]["view_0"].shape == (20, 3)
    assert data["Y_sim"]["view_1"].shape == (15, 30)
    assert data["active"].any(axis=0).all()


def test_data_generator_missingness(small_generator):
    small_generator.generate_missingness(p=0.2, n_missing_samples=2, seed=0)
    views = small_generator.get_views()

    assert views["view_0"].isna().to_numpy().any()
    assert views["view_0"].isna().all(axis=0).sum() >= 2


def test_scenario(trained_model, scenario_views):
    """3 views x 50 samples, K=5, maxiter=200, fast mode."""
    assert trained_model.n_iterations <= 200
    assert len(trained_model.elbo_trace) == trained_model.n_iterations
    assert trained_model.factors().shape == (50, 5)
    for vn, view in scenario_views.items():
        assert trained_model.weights(vn).shape == (view.shape[0], 5)

    r2 = trained_model.variance_explained()
    assert r2.shape == (5, 3)
    assert r2.size == 15
    assert ((r2.to_numpy() >= 0) & (r2.to_numpy() <= 100)).all()

    total = trained_model.variance_explained("total")
    assert list(total.index) == list(scenario_views)
    assert ((total >= 0) & (total <= 100)).all()


def test_fit_converges_or_warns(scenario_views):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        model = omifa.fit(
            scenario_views,
            model_options=ModelOptions(num_factors=5),
            training_options=TrainingOptions(maxiter=3, min_iter=10, seed=0),
        )

    assert not model.converged
    assert model.n_iterations == 3
    assert any(issubclass(w.category, ConvergenceWarning) for w in caught)


def test_total_r2_matches_reconstruction(trained_model, scenario_views):
    data = MultiViewData(scenario_views)
    processed = data.preprocess({vn: Likelihood.CONTINUOUS for vn in data.view_names})
    z = trained_model.factors(as_df=False)
    total = trained_model.variance_explained("total")

    for vn in data.view_names:
        y, mask = processed.targets[vn], processed.masks[vn]
        w = trained_model.weights(vn, as_df=False)
        rss = np.square(np.where(mask, y - w @ z.T, 0.0)).sum()
        tss = np.square(np.where(mask, y, 0.0)).sum()
        expected = 100 * np.clip(1 - rss / tss, 0, 1)
        assert total[vn] == pytest.approx(expected, rel=1e-10)


def test_top_n_weights(trained_model):
    ranked = trained_model.weights("view_0", factor="Factor_1", top_n=10)

    assert len(ranked) == 10
    assert ranked.index.is_unique
    magnitudes = ranked.abs().to_numpy()
    assert (np.diff(magnitudes) <= 0).all()

    full = trained_model.weights("view_0", factor=0)
    assert len(full) == 40
    assert full.abs().iloc[0] == pytest.approx(magnitudes[0])


def test_scaled_weights(trained_model):
    scaled = trained_model.weights("view_1", scaled=True)
    assert np.allclose(scaled.std(axis=0, ddof=0)[scaled.std(axis=0) > 0], 1.0)

    ranked = trained_model.weights("view_1", factor=2, top_n=5, scaled=True)
    np.testing.assert_allclose(ranked.to_numpy(), scaled.loc[ranked.index, ranked.name].to_numpy())


def test_weights_errors(trained_model):
    with pytest.raises(KeyError):
        trained_model.weights("unknown")
    with pytest.raises(ValueError, match="single factor"):
        trained_model.weights("view_0", top_n=5)
    with pytest.raises(KeyError):
        trained_model.weights("view_0", factor="Factor_99")


def test_factor_subsets(trained_model):
    subset = trained_model.factors(samples=["sample_3", "sample_1"], factors=["Factor_2", 0])

    assert list(subset.index) == ["sample_3", "sample_1"]
    assert list(subset.columns) == ["Factor_2", "Factor_1"]
    full = trained_model.factors()
    assert subset.loc["sample_1", "Factor_1"] == full.loc["sample_1", "Factor_1"]

    with pytest.raises(IndexError):
        trained_model.factors(factors=7)


def test_trained_model_is_immutable(trained_model):
    before = trained_model.factors()
    values = trained_model.factors(as_df=False)
    values[:] = 0.0

    pd.testing.assert_frame_equal(trained_model.factors(), before)
    with pytest.raises(AttributeError):
        trained_model.converged = False


def test_same_seed_reproduces_fit(small_views):
    options = dict(
        model_options=ModelOptions(num_factors=3),
        training_options=TrainingOptions(maxiter=30, seed=4),
    )
    first = omifa.fit(small_views, **options)
    second = omifa.fit(small_views, **options)

    np.testing.assert_allclose(first.factors(as_df=False), second.factors(as_df=False))
    np.testing.assert_allclose(first.elbo_trace, second.elbo_trace)


def test_refit_from_other_seed_agrees_on_variance(small_views):
    """Refits from different seeds agree on the explained variance."""
    fits = [
        omifa.fit(
            small_views,
            model_options=ModelOptions(num_factors=3, init_factors="random"),
            training_options=TrainingOptions(maxiter=300, convergence_mode="medium", seed=s),
        )
        for s in (0, 1)
    ]
    totals = [m.variance_explained("total") for m in fits]

    pd.testing.assert_series_equal(totals[0], totals[1], atol=5.0, check_exact=False)


def test_groups(grouped_model):
    assert grouped_model.n_groups == 2
    per_group = grouped_model.variance_explained(per_group=True)

    assert set(per_group) == {"group_0", "group_1"}
    for table in per_group.values():
        assert table.shape == (3, 2)
        assert ((table.to_numpy() >= 0) & (table.to_numpy() <= 100)).all()

    totals = grouped_model.variance_explained("total", per_group=True)
    assert set(totals) == {"group_0", "group_1"}
    assert grouped_model.groups.value_counts().to_dict() == {"group_0": 20, "group_1": 20}


def test_missing_samples_get_factors(grouped_model):
    factors = grouped_model.factors()

    assert factors.shape == (40, 3)
    assert np.isfinite(factors.to_numpy()).all()


def test_mixed_likelihoods():
    gen = omifa.DataGenerator(
        n_samples=40,
        n_features=[20, 15, 10],
        n_factors=3,
        likelihoods={"view_0": "continuous", "view_1": "count", "view_2": "binary"},
    )
    gen.generate(seed=5)
    model = omifa.fit(
        gen.get_views(),
        model_options=ModelOptions(num_factors=3, likelihoods=gen.likelihoods),
        training_options=TrainingOptions(maxiter=100, seed=0),
    )

    assert model.likelihoods["view_2"] == Likelihood.BINARY
    r2 = model.variance_explained()
    assert ((r2.to_numpy() >= 0) & (r2.to_numpy() <= 100)).all()

    probs = model.reconstruction("view_2")
    assert ((probs.to_numpy() > 0) & (probs.to_numpy() < 1)).all()
    rates = model.reconstruction("view_1")
    assert (rates.to_numpy() > 0).all()


def test_reconstruction_original_scale(trained_model, scenario_views):
    recon = trained_model.reconstruction("view_0")
    observed = scenario_views["view_0"]

    assert recon.shape == observed.shape
    assert list(recon.index) == list(observed.index)
    residual = np.square(observed - recon).to_numpy().sum()
    spread = np.square(observed.sub(observed.mean(axis=1), axis=0)).to_numpy().sum()
    assert residual < spread


def test_cancel_callback(scenario_views):
    event = threading.Event()
    event.set()
    model = omifa.fit(
        scenario_views,
        model_options=ModelOptions(num_factors=5),
        training_options=TrainingOptions(maxiter=100, seed=0),
        callbacks=[omifa.CancelCallback(event)],
    )

    assert model.stopped_early
    assert not model.converged
    assert model.n_iterations == 1


def test_checkpoint_and_resume(small_views, tmp_path):
    checkpoint = omifa.CheckpointCallback(tmp_path, every_n_iterations=5)
    options = dict(model_options=ModelOptions(num_factors=3))
    first = omifa.fit(
        small_views,
        training_options=TrainingOptions(maxiter=10, min_iter=10, seed=0),
        callbacks=[checkpoint],
        **options,
    )
    assert [p.name for p in checkpoint.saved] == ["checkpoint_iter_5.pt", "checkpoint_iter_10.pt"]

    state = omifa.TrainingState.load(tmp_path / "checkpoint_iter_5.pt")
    assert state.iteration == 5

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        resumed = omifa.fit(
            small_views,
            training_options=TrainingOptions(maxiter=10, min_iter=10, seed=0),
            resume_from=state,
            **options,
        )

    assert resumed.n_iterations == 10
    np.testing.assert_allclose(resumed.elbo_trace, first.elbo_trace)
    np.testing.assert_allclose(resumed.factors(as_df=False), first.factors(as_df=False))


def test_accelerated_backend_falls_back(small_views):
    model = omifa.OMIFA(
        small_views,
        model_options=ModelOptions(num_factors=2),
        training_options=TrainingOptions(maxiter=5, compute_backend="accelerated"),
    )

    assert model.device.type in ("cpu", "cuda")


def test_invalid_options_type(small_views):
    with pytest.raises(omifa.ConfigurationError):
        omifa.OMIFA(small_views, model_options=TrainingOptions())


def test_more_factors_keep_leading_loadings(scenario_views):
    """Going from 10 to 15 factors keeps the leading factor's loadings, up to sign."""
    fits = {
        k: omifa.fit(
            scenario_views,
            model_options=ModelOptions(num_factors=k),
            training_options=TrainingOptions(maxiter=200, seed=0),
        )
        for k in (10, 15)
    }
    leading = omifa.tl.variance_explained_per_factor(fits[10]).index[0]
    w10 = np.concatenate([fits[10].weights(vn, factor=[leading], as_df=False)[:, 0] for vn in scenario_views])
    w15 = np.concatenate([fits[15].weights(vn, as_df=False) for vn in scenario_views])

    corr = np.array([np.corrcoef(w10, w15[:, k])[0, 1] for k in range(15)])
    match = np.nanargmax(np.abs(corr))

    assert abs(corr[match]) > 0.9
    ratio = np.linalg.norm(w15[:, match]) / np.linalg.norm(w10)
    assert 0.5 < ratio < 2.0
