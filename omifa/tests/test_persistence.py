"""Tests for saving and loading models and training states."""

import io

import numpy as np
import pandas as pd
import pytest
import torch

import omifa
from omifa import PersistenceError
from omifa.model.io import FORMAT_VERSION
from omifa.model.io import KIND


def _assert_same_queries(loaded, model):
    pd.testing.assert_frame_equal(loaded.factors(), model.factors())
    for vn in model.view_names:
        pd.testing.assert_frame_equal(loaded.weights(vn), model.weights(vn))
        pd.testing.assert_frame_equal(loaded.reconstruction(vn), model.reconstruction(vn))
    pd.testing.assert_frame_equal(loaded.variance_explained(), model.variance_explained())
    pd.testing.assert_series_equal(
        loaded.variance_explained("total"), model.variance_explained("total")
    )
    np.testing.assert_array_equal(loaded.elbo_trace, model.elbo_trace)
    assert loaded.converged == model.converged
    assert loaded.stopped_early == model.stopped_early
    assert loaded.model_options == model.model_options
    assert loaded.training_options == model.training_options


def test_save_and_load_path(trained_model, tmp_path):
    path = tmp_path / "nested" / "model.pt"
    trained_model.save(path)
    loaded = omifa.load(path)

    _assert_same_queries(loaded, trained_model)


def test_save_and_load_buffer(grouped_model):
    buffer = io.BytesIO()
    grouped_model.save(buffer)
    buffer.seek(0)
    loaded = omifa.TrainedModel.load(buffer)

    _assert_same_queries(loaded, grouped_model)
    pd.testing.assert_series_equal(loaded.groups, grouped_model.groups)
    for group in grouped_model.group_names:
        pd.testing.assert_frame_equal(
            loaded.variance_explained(per_group=True)[group],
            grouped_model.variance_explained(per_group=True)[group],
        )


def test_missing_file(tmp_path):
    with pytest.raises(PersistenceError, match="No model file"):
        omifa.load(tmp_path / "absent.pt")


def test_corrupt_file(tmp_path):
    path = tmp_path / "model.pt"
    path.write_bytes(b"definitely not a torch archive")

    with pytest.raises(PersistenceError):
        omifa.load(path)


def _payload(model):
    buffer = io.BytesIO()
    model.save(buffer)
    buffer.seek(0)
    return torch.load(buffer, weights_only=True)


def _write(payload, path):
    torch.save(payload, path)
    return path


def test_unknown_format_version(trained_model, tmp_path):
    payload = _payload(trained_model)
    payload["format_version"] = 99

    with pytest.raises(PersistenceError, match="format version"):
        omifa.load(_write(payload, tmp_path / "model.pt"))


def test_wrong_kind(tmp_path):
    with pytest.raises(PersistenceError, match="does not contain"):
        omifa.load(_write({"kind": "something_else", "format_version": FORMAT_VERSION}, tmp_path / "x.pt"))


def test_missing_section(trained_model, tmp_path):
    payload = _payload(trained_model)
    del payload["state"]

    with pytest.raises(PersistenceError, match="missing"):
        omifa.load(_write(payload, tmp_path / "model.pt"))


def test_views_not_a_mapping(trained_model, tmp_path):
    payload = _payload(trained_model)
    payload["state"]["views"] = []

    with pytest.raises(PersistenceError, match="state.views"):
        omifa.load(_write(payload, tmp_path / "model.pt"))


def test_feature_names_not_a_mapping(trained_model, tmp_path):
    payload = _payload(trained_model)
    payload["names"]["features"] = list(payload["names"]["features"].values())

    with pytest.raises(PersistenceError, match="names.features"):
        omifa.load(_write(payload, tmp_path / "model.pt"))


def test_training_state_with_malformed_views(trained_model):
    values = trained_model.state.to_dict()
    values["views"] = []

    with pytest.raises(PersistenceError, match="training state"):
        omifa.TrainingState.from_dict(values)


def test_inconsistent_variance_table(trained_model, tmp_path):
    payload = _payload(trained_model)
    payload["variance"]["per_factor"] = payload["variance"]["per_factor"][:2]

    with pytest.raises(PersistenceError, match="variance"):
        omifa.load(_write(payload, tmp_path / "model.pt"))


def test_payload_is_plain(trained_model):
    payload = _payload(trained_model)

    assert payload["kind"] == KIND
    assert payload["format_version"] == FORMAT_VERSION
    assert set(payload["names"]["features"]) == set(trained_model.view_names)


def test_training_state_round_trip(trained_model, tmp_path):
    state = trained_model.state
    path = state.save(tmp_path / "state.pt")
    loaded = omifa.TrainingState.load(path)

    assert loaded.iteration == state.iteration
    assert loaded.elbo == state.elbo
    torch.testing.assert_close(loaded.factors.mean, state.factors.mean)
    for vn, view in state.views.items():
        torch.testing.assert_close(loaded.views[vn].w_mean, view.w_mean)


def test_training_state_errors(trained_model, tmp_path):
    with pytest.raises(PersistenceError):
        omifa.TrainingState.load(tmp_path / "absent.pt")

    trained_model.save(tmp_path / "model.pt")
    with pytest.raises(PersistenceError, match="training state"):
        omifa.TrainingState.load(tmp_path / "model.pt")
