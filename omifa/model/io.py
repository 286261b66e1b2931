"""Saving and loading fitted models.

A model is written as a single :func:`torch.save` archive holding plain
python values and tensors only, so it can be read back with
``torch.load(..., weights_only=True)``.
"""

import logging
from pathlib import Path
from typing import IO
from typing import Any

import numpy as np
import torch

from omifa.analysis.variance import VarianceExplained
from omifa.errors import PersistenceError
from omifa.model.core import TrainedModel
from omifa.model.state import TrainingState
from omifa.options import DataOptions
from omifa.options import ModelOptions
from omifa.options import TrainingOptions

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
KIND = "omifa_model"

_REQUIRED_KEYS = (
    "kind",
    "format_version",
    "options",
    "names",
    "group_index",
    "data",
    "state",
    "converged",
    "stopped_early",
    "variance",
)
_DATA_KEYS = ("references", "masks", "feature_means", "scales", "offsets")


def _tensors(values: dict[str, np.ndarray]) -> dict[str, torch.Tensor]:
    return {k: torch.as_tensor(np.array(v, copy=True)) for k, v in values.items()}


def _arrays(values: Any, what: str, dtype=np.float64) -> dict[str, np.ndarray]:
    if not isinstance(values, dict):
        raise PersistenceError(f"Invalid model file: `{what}` is not a mapping")
    out = {}
    for k, v in values.items():
        if not isinstance(v, torch.Tensor):
            raise PersistenceError(f"Invalid model file: `{what}[{k}]` is not a tensor")
        out[k] = v.numpy().astype(dtype, copy=False)
    return out


def save_model(model: TrainedModel, target: str | Path | IO[bytes]) -> None:
    """Write a fitted model.

    Parameters
    ----------
    model : TrainedModel
        The model to save
    target : str, Path or binary file object
        Destination; parent directories of a path are created
    """
    variance = model.variance.to_dict()
    for key in ("per_factor", "total", "per_factor_group", "total_group"):
        variance[key] = torch.as_tensor(variance[key])

    payload = {
        "kind": KIND,
        "format_version": FORMAT_VERSION,
        "options": {
            "data": model.data_options.asdict(),
            "model": model.model_options.asdict(),
            "training": model.training_options.asdict(),
        },
        "names": {
            "samples": [str(s) for s in model.sample_names],
            "features": {vn: [str(f) for f in idx] for vn, idx in model.feature_names.items()},
            "groups": [str(g) for g in model.group_names],
        },
        "group_index": torch.as_tensor(np.array(model._group_index, copy=True)),
        "data": {
            "references": _tensors(model._references),
            "masks": _tensors(model._masks),
            "feature_means": _tensors(model._feature_means),
            "scales": _tensors(model._scales),
            "offsets": _tensors(model._offsets),
        },
        "state": model.state.to_dict(),
        "converged": model.converged,
        "stopped_early": model.stopped_early,
        "variance": variance,
    }

    if isinstance(target, str | Path):
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
    torch.save(payload, target)
    logger.info("Saved model to %s", target)


def load_model(source: str | Path | IO[bytes]) -> TrainedModel:
    """Read a model written by :func:`save_model`.

    Parameters
    ----------
    source : str, Path or binary file object
        File to read

    Returns
    -------
    TrainedModel
        The restored model; its queries match those of the saved model

    Raises
    ------
    PersistenceError
        If the source is missing, corrupt, incomplete or has another format version
    """
    if isinstance(source, str | Path):
        source = Path(source)
        if not source.exists():
            raise PersistenceError(f"No model file at {source}")

    try:
        payload = torch.load(source, map_location="cpu", weights_only=True)
    except Exception as e:
        raise PersistenceError(f"Could not read model from {source}: {e}") from e

    if not isinstance(payload, dict) or payload.get("kind") != KIND:
        raise PersistenceError(f"{source} does not contain an OMIFA model")
    version = payload.get("format_version")
    if version != FORMAT_VERSION:
        raise PersistenceError(
            f"Unsupported model format version {version!r}, expected {FORMAT_VERSION}"
        )
    missing = [k for k in _REQUIRED_KEYS if k not in payload]
    if missing:
        raise PersistenceError(f"Invalid model file: missing {missing}")

    try:
        model = _restore(payload)
    except PersistenceError:
        raise
    except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
        raise PersistenceError(f"Invalid model file: {e}") from e

    logger.info("Loaded model from %s", source)
    return model


def _restore(payload: dict[str, Any]) -> TrainedModel:
    for what, value in (
        ("options", payload["options"]),
        ("names", payload["names"]),
        ("data", payload["data"]),
        ("state", payload["state"]),
        ("variance", payload["variance"]),
    ):
        if not isinstance(value, dict):
            raise PersistenceError(f"Invalid model file: `{what}` is not a mapping")
    for what, value in (
        ("names.features", payload["names"].get("features")),
        ("state.factors", payload["state"].get("factors")),
        ("state.views", payload["state"].get("views")),
    ):
        if not isinstance(value, dict):
            raise PersistenceError(f"Invalid model file: `{what}` is not a mapping")

    options = payload["options"]
    data = payload["data"]
    missing = [k for k in _DATA_KEYS if k not in data]
    if missing:
        raise PersistenceError(f"Invalid model file: missing data {missing}")

    state = TrainingState.from_dict(payload["state"])
    for obj in (state.factors, *state.views.values()):
        for name, value in vars(obj).items():
            if value is not None and value.dtype != torch.float64:
                raise PersistenceError(f"Invalid model file: `{name}` has dtype {value.dtype}")

    names = payload["names"]
    features = names["features"]
    if list(state.views) != list(features):
        raise PersistenceError("Invalid model file: views of the state and the names differ")

    group_index = payload["group_index"]
    if not isinstance(group_index, torch.Tensor):
        raise PersistenceError("Invalid model file: `group_index` is not a tensor")
    group_index = group_index.numpy()
    if len(group_index) and (group_index.min() < 0 or group_index.max() >= len(names["groups"])):
        raise PersistenceError("Invalid model file: group index out of range")

    raw = payload["variance"]
    variance = VarianceExplained.from_dict(
        {
            **raw,
            **{k: raw[k].numpy() for k in ("per_factor", "total", "per_factor_group", "total_group")},
        }
    )
    K, M, G = state.n_factors, len(features), len(names["groups"])
    if (
        variance.per_factor.shape != (K, M)
        or variance.total.shape != (M,)
        or variance.per_factor_group.shape != (G, K, M)
        or variance.total_group.shape != (G, M)
    ):
        raise PersistenceError("Invalid model file: variance table does not match the model dimensions")

    return TrainedModel(
        state=state,
        data_options=DataOptions.fromdict(options["data"]),
        model_options=ModelOptions.fromdict(options["model"]),
        training_options=TrainingOptions.fromdict(options["training"]),
        sample_names=names["samples"],
        feature_names=features,
        group_names=names["groups"],
        group_index=group_index,
        references=_arrays(data["references"], "references"),
        masks=_arrays(data["masks"], "masks", dtype=bool),
        feature_means=_arrays(data["feature_means"], "feature_means"),
        scales=_arrays(data["scales"], "scales"),
        offsets=_arrays(data["offsets"], "offsets"),
        converged=bool(payload["converged"]),
        stopped_early=bool(payload["stopped_early"]),
        variance=variance,
    )
