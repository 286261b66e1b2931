"""Core OMIFA model implementation.

This module contains the OMIFA class, which wires the data container, the
options and the variational inference engine together, and the
:class:`TrainedModel` it produces.
"""

import logging
import warnings
from collections.abc import Callable
from collections.abc import Mapping
from collections.abc import Sequence
from pathlib import Path
from typing import IO

import numpy as np
import pandas as pd
import torch
import torch.nn.functional as F

from omifa.analysis import metrics
from omifa.analysis.variance import VarianceExplained
from omifa.analysis.variance import compute_variance_explained
from omifa.data.container import MultiViewData
from omifa.data.container import ProcessedData
from omifa.errors import ConfigurationError
from omifa.errors import ConvergenceWarning
from omifa.model.engine import VariationalEngine
from omifa.model.state import TrainingState
from omifa.options import ComputeBackend
from omifa.options import DataOptions
from omifa.options import Likelihood
from omifa.options import ModelOptions
from omifa.options import TrainingOptions
from omifa.utils.gpu import get_free_gpu_idx
from omifa.utils.seeds import set_all_seeds

logger = logging.getLogger(__name__)


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


def _setup_device(training_options: TrainingOptions) -> torch.device:
    """Pick the compute device, falling back to cpu if no GPU is usable."""
    if training_options.compute_backend == ComputeBackend.CPU:
        return torch.device("cpu")

    if not torch.cuda.is_available():
        logger.warning("Accelerated backend requested but no CUDA device is available, using cpu.")
        return torch.device("cpu")

    gpu_idx = training_options.gpu_index
    if gpu_idx is None:
        gpu_idx = get_free_gpu_idx()
    elif gpu_idx >= torch.cuda.device_count():
        logger.warning(
            "GPU %d requested but only %d available, using cpu.", gpu_idx, torch.cuda.device_count()
        )
        return torch.device("cpu")

    logger.info("GPU available, running computations on cuda:%d.", gpu_idx)
    return torch.device(f"cuda:{gpu_idx}")


class TrainedModel:
    """Immutable result of a fit.

    Holds the variational posterior at termination, the options it was fitted
    with, the ELBO trace, the convergence flags and the variance
    decomposition. All accessors return copies; nothing is recomputed or
    cached after construction.

    Instances are created by :func:`fit` and :func:`load`, not directly.

    Example
    -------
    >>> model = omifa.fit(views, model_options=omifa.ModelOptions(num_factors=5))
    >>> model.factors().shape
    (50, 5)
    >>> model.weights("rna", factor="Factor_1", top_n=10)
    >>> model.variance_explained()
    """

    def __init__(
        self,
        *,
        state: TrainingState,
        data_options: DataOptions,
        model_options: ModelOptions,
        training_options: TrainingOptions,
        sample_names: pd.Index,
        feature_names: Mapping[str, pd.Index],
        group_names: pd.Index,
        group_index: np.ndarray,
        references: Mapping[str, np.ndarray],
        masks: Mapping[str, np.ndarray],
        feature_means: Mapping[str, np.ndarray],
        scales: Mapping[str, np.ndarray],
        offsets: Mapping[str, np.ndarray],
        converged: bool,
        stopped_early: bool,
        variance: VarianceExplained | None = None,
    ) -> None:
        self._state = state.to(torch.device("cpu"))
        self._data_options = data_options
        self._model_options = model_options
        self._training_options = training_options

        self._sample_names = pd.Index(sample_names, name="sample")
        self._view_names = pd.Index(list(feature_names.keys()), name="view")
        self._feature_names = {vn: pd.Index(idx, name="feature") for vn, idx in feature_names.items()}
        self._group_names = pd.Index(group_names, name="group")
        self._group_index = _readonly(np.asarray(group_index, dtype=np.int64))
        self._factor_names = pd.Index(
            [f"Factor_{k + 1}" for k in range(self._state.n_factors)], name="factor"
        )

        self._references = {vn: _readonly(np.asarray(v, dtype=np.float64)) for vn, v in references.items()}
        self._masks = {vn: _readonly(np.asarray(v, dtype=bool)) for vn, v in masks.items()}
        self._feature_means = {vn: _readonly(v) for vn, v in feature_means.items()}
        self._scales = {vn: _readonly(v) for vn, v in scales.items()}
        self._offsets = {vn: _readonly(v) for vn, v in offsets.items()}

        self._converged = bool(converged)
        self._stopped_early = bool(stopped_early)

        self._z = _readonly(self._state.factors.expectation.numpy())
        self._w = {vn: _readonly(vp.expectation.numpy()) for vn, vp in self._state.views.items()}
        self._check_dimensions()

        if variance is None:
            variance = compute_variance_explained(
                self._z,
                self._w,
                self._references,
                self._masks,
                self._group_index,
                self._factor_names,
                self._group_names,
            )
        self._variance = variance

    def _check_dimensions(self) -> None:
        N, K = self._z.shape
        if N != len(self._sample_names) or len(self._group_index) != N:
            raise ValueError(f"Factors have {N} rows for {len(self._sample_names)} samples")
        if set(self._w) != set(self._view_names):
            raise ValueError("Weights and feature names cover different views")
        for vn, w in self._w.items():
            D = len(self._feature_names[vn])
            if w.shape != (D, K):
                raise ValueError(f"Weights of `{vn}` have shape {w.shape}, expected {(D, K)}")
            if self._references[vn].shape != (D, N) or self._masks[vn].shape != (D, N):
                raise ValueError(f"Reference data of `{vn}` does not have shape {(D, N)}")

    def __repr__(self) -> str:
        return (
            f"TrainedModel(n_samples={self.n_samples}, n_factors={self.n_factors}, "
            f"views={list(self._view_names)}, converged={self._converged}, "
            f"n_iterations={self.n_iterations})"
        )

    # -------------------------------------------------------------------------
    # Properties for accessing model dimensions and names
    # -------------------------------------------------------------------------

    @property
    def n_factors(self) -> int:
        """Number of factors."""
        return self._z.shape[1]

    @property
    def n_samples(self) -> int:
        return len(self._sample_names)

    @property
    def n_views(self) -> int:
        return len(self._view_names)

    @property
    def n_groups(self) -> int:
        return len(self._group_names)

    @property
    def factor_names(self) -> pd.Index:
        return self._factor_names

    @property
    def sample_names(self) -> pd.Index:
        return self._sample_names

    @property
    def view_names(self) -> pd.Index:
        return self._view_names

    @property
    def feature_names(self) -> dict[str, pd.Index]:
        return dict(self._feature_names)

    @property
    def group_names(self) -> pd.Index:
        return self._group_names

    @property
    def groups(self) -> pd.Series:
        """Group label of every sample."""
        return pd.Series(self._group_names[self._group_index], index=self._sample_names, name="group")

    @property
    def likelihoods(self) -> dict[str, Likelihood]:
        return self._model_options.view_likelihoods(list(self._view_names))

    @property
    def data_options(self) -> DataOptions:
        return self._data_options

    @property
    def model_options(self) -> ModelOptions:
        return self._model_options

    @property
    def training_options(self) -> TrainingOptions:
        return self._training_options

    @property
    def elbo_trace(self) -> np.ndarray:
        return np.asarray(self._state.elbo, dtype=np.float64)

    @property
    def converged(self) -> bool:
        return self._converged

    @property
    def stopped_early(self) -> bool:
        """Whether training was stopped by a callback or a cancellation request."""
        return self._stopped_early

    @property
    def n_iterations(self) -> int:
        return self._state.iteration

    @property
    def state(self) -> TrainingState:
        """Copy of the training state at termination, e.g. to resume training."""
        return self._state.clone()

    def feature_means(self, view: str) -> pd.DataFrame:
        """Means removed from each feature, per group, before training."""
        self._check_view(view)
        return pd.DataFrame(
            self._feature_means[view].copy(),
            index=self._feature_names[view],
            columns=self._group_names,
        )

    # -------------------------------------------------------------------------
    # Accessor methods
    # -------------------------------------------------------------------------

    def _check_view(self, view: str) -> None:
        if view not in self._feature_names:
            raise KeyError(f"Unknown view `{view}`, available views: {list(self._view_names)}")

    def _normalize_factor_idx(self, factor_idx: int | str | list) -> list[int]:
        """Normalize factor index to list of integers.

        Parameters
        ----------
        factor_idx : int, str, or list
            Factor position(s) or name(s)

        Returns
        -------
        list
            List of integer indices
        """
        if isinstance(factor_idx, int | np.integer):
            factor_idx = [factor_idx]
        elif isinstance(factor_idx, str):
            factor_idx = [factor_idx]
        elif not isinstance(factor_idx, list | tuple | np.ndarray | pd.Index):
            raise TypeError(f"Invalid factor index type: {type(factor_idx)}")

        result = []
        for idx in factor_idx:
            if isinstance(idx, str):
                if idx not in self._factor_names:
                    raise KeyError(f"Factor '{idx}' not found")
                result.append(self._factor_names.get_loc(idx))
            elif isinstance(idx, int | np.integer):
                if not -self.n_factors <= idx < self.n_factors:
                    raise IndexError(f"Factor index {idx} out of range for {self.n_factors} factors")
                result.append(int(idx) % self.n_factors)
            else:
                raise TypeError(f"Invalid factor index: {idx!r}")
        return result

    def _normalize_sample_idx(self, samples: str | int | Sequence) -> list[int]:
        if isinstance(samples, str | int | np.integer):
            samples = [samples]
        result = []
        for s in samples:
            if isinstance(s, str):
                if s not in self._sample_names:
                    raise KeyError(f"Sample '{s}' not found")
                result.append(self._sample_names.get_loc(s))
            else:
                if not -self.n_samples <= s < self.n_samples:
                    raise IndexError(f"Sample index {s} out of range for {self.n_samples} samples")
                result.append(int(s) % self.n_samples)
        return result

    def factors(
        self,
        samples: str | int | Sequence | None = None,
        factors: int | str | list | None = None,
        as_df: bool = True,
    ) -> pd.DataFrame | np.ndarray:
        """Get posterior mean factor values.

        Parameters
        ----------
        samples : str, int or list, optional
            Samples to return (names or positions). If None, returns all samples.
        factors : int, str or list, optional
            Factors to return (names or positions). If None, returns all factors.
        as_df : bool, optional
            Whether to return as DataFrame, by default True

        Returns
        -------
        pd.DataFrame or np.ndarray
            Sample x factor matrix
        """
        rows = np.arange(self.n_samples) if samples is None else self._normalize_sample_idx(samples)
        cols = np.arange(self.n_factors) if factors is None else self._normalize_factor_idx(factors)
        values = self._z[np.ix_(rows, cols)].copy()

        if as_df:
            return pd.DataFrame(values, index=self._sample_names[rows], columns=self._factor_names[cols])
        return values

    def weights(
        self,
        view: str,
        factor: int | str | list | None = None,
        top_n: int | None = None,
        scaled: bool = False,
        as_df: bool = True,
    ) -> pd.DataFrame | pd.Series | np.ndarray:
        """Get posterior mean weights of a view.

        Parameters
        ----------
        view : str
            Name of the view
        factor : int, str or list, optional
            Factors to return. A single factor returns its weights ranked by
            descending absolute value.
        top_n : int, optional
            Number of top-ranked features to return, only for a single factor
        scaled : bool, optional
            Divide each factor's weights by their standard deviation across
            all features of the view, by default False
        as_df : bool, optional
            Whether to return pandas objects, by default True

        Returns
        -------
        pd.DataFrame, pd.Series or np.ndarray
            Feature x factor matrix, or a ranked Series for a single factor
        """
        self._check_view(view)
        w = self._w[view].copy()
        if scaled:
            std = w.std(axis=0)
            std[std == 0] = 1.0
            w = w / std

        single = isinstance(factor, int | np.integer | str)
        cols = np.arange(self.n_factors) if factor is None else self._normalize_factor_idx(factor)
        w = w[:, cols]

        if not single:
            if top_n is not None:
                raise ValueError("`top_n` requires a single factor")
            if as_df:
                return pd.DataFrame(w, index=self._feature_names[view], columns=self._factor_names[cols])
            return w

        values = w[:, 0]
        order = np.argsort(-np.abs(values), kind="stable")
        if top_n is not None:
            if top_n <= 0:
                raise ValueError(f"`top_n` must be positive, got {top_n}")
            order = order[:top_n]

        if as_df:
            return pd.Series(
                values[order],
                index=self._feature_names[view][order],
                name=self._factor_names[cols[0]],
            )
        return values[order]

    def variance_explained(
        self,
        granularity: str = "factor",
        per_group: bool = False,
    ) -> pd.DataFrame | pd.Series | dict:
        """Variance explained (R², in percent).

        Parameters
        ----------
        granularity : str, optional
            ``"factor"`` for a factor x view table, ``"total"`` for the R² of
            the full reconstruction per view. By default ``"factor"``
        per_group : bool, optional
            Return a dict group name -> table instead of the pooled table

        Returns
        -------
        pd.DataFrame, pd.Series or dict
            R² values in [0, 100]
        """
        if granularity == "factor":
            table = self._variance.factor_table
        elif granularity == "total":
            table = self._variance.total_table
        else:
            raise ValueError(f'`granularity` must be "factor" or "total", got {granularity!r}')

        if per_group:
            return {group: table(group) for group in self._group_names}
        return table()

    @property
    def variance(self) -> VarianceExplained:
        """The immutable variance decomposition record."""
        return self._variance

    def reconstruction(self, view: str, as_df: bool = True) -> pd.DataFrame | np.ndarray:
        """Expected observations of a view under the posterior means.

        Continuous views are returned on the original scale (scaling and
        centring undone), count views as Poisson rates and binary views as
        probabilities.

        Parameters
        ----------
        view : str
            Name of the view
        as_df : bool, optional
            Whether to return as DataFrame, by default True

        Returns
        -------
        pd.DataFrame or np.ndarray
            Feature x sample matrix
        """
        self._check_view(view)
        eta = self._w[view] @ self._z.T
        likelihood = self.likelihoods[view]
        if likelihood == Likelihood.CONTINUOUS:
            g = self._group_index
            values = eta * self._scales[view][:, g] + self._feature_means[view][:, g]
        else:
            eta = torch.as_tensor(eta + self._offsets[view][:, None])
            if likelihood == Likelihood.COUNT:
                values = F.softplus(eta).numpy()
            else:
                values = torch.sigmoid(eta).numpy()

        if as_df:
            return pd.DataFrame(values, index=self._feature_names[view], columns=self._sample_names)
        return values

    # -------------------------------------------------------------------------
    # Downstream analysis
    # -------------------------------------------------------------------------

    def associate(
        self,
        covariates: pd.DataFrame | pd.Series,
        method: str = "spearman",
        p_adj_method: str = "fdr_bh",
        factors: int | str | list | None = None,
    ) -> pd.DataFrame:
        """Test factors for association with sample covariates.

        See :func:`omifa.analysis.metrics.test`.
        """
        return metrics.test(self, covariates, factor_idx=factors, method=method, p_adj_method=p_adj_method)

    def silhouette(self, labels: pd.Series, factors: int | str | list | None = None) -> float:
        """Silhouette score of sample labels in factor space."""
        return metrics.compute_silhouette_score(self, labels, factor_idx=factors)

    def filter_factors(
        self,
        r2_thresh: float | int = 0.95,
        min_factors: int = 1,
        view: str | None = None,
    ) -> list[str]:
        """Names of the factors that explain most of the variance."""
        return metrics.filter_factors(self, r2_thresh=r2_thresh, min_factors=min_factors, view=view)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self, target: str | Path | IO[bytes]) -> None:
        """Write the model to a file or binary buffer, see :func:`omifa.model.io.save_model`."""
        from omifa.model.io import save_model

        save_model(self, target)

    @classmethod
    def load(cls, source: str | Path | IO[bytes]) -> "TrainedModel":
        """Read a model written by :meth:`save`."""
        from omifa.model.io import load_model

        return load_model(source)


class OMIFA:
    """OMIFA: Omics Integration via Factor Analysis.

    A Bayesian group factor analysis model for several heterogeneous,
    partially missing data views, fitted with mean-field variational
    inference.

    Parameters
    ----------
    views : Mapping[str, pd.DataFrame or np.ndarray] or MultiViewData
        View name -> feature x sample matrix, or an existing container
    data_options : DataOptions, optional
        Options for data handling
    model_options : ModelOptions, optional
        Options for the model
    training_options : TrainingOptions, optional
        Options for training
    groups : Mapping or pd.Series, optional
        Sample name -> group label
    sample_names, feature_names : optional
        Identifiers for array input, see :class:`MultiViewData`

    Example
    -------
    >>> from omifa import OMIFA, DataGenerator, ModelOptions
    >>> gen = DataGenerator(n_samples=100, n_features=[200, 150], n_factors=5)
    >>> gen.generate(seed=42)
    >>> model = OMIFA(gen.get_views(), model_options=ModelOptions(num_factors=5))
    >>> trained = model.fit()
    """

    def __init__(
        self,
        views: Mapping[str, pd.DataFrame | np.ndarray] | MultiViewData,
        data_options: DataOptions | None = None,
        model_options: ModelOptions | None = None,
        training_options: TrainingOptions | None = None,
        groups: Mapping[str, str] | pd.Series | None = None,
        sample_names: Sequence[str] | Mapping[str, Sequence[str]] | None = None,
        feature_names: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        self.data_options = data_options if data_options is not None else DataOptions()
        self.model_options = model_options if model_options is not None else ModelOptions()
        self.training_options = training_options if training_options is not None else TrainingOptions()
        for opts, cls in (
            (self.data_options, DataOptions),
            (self.model_options, ModelOptions),
            (self.training_options, TrainingOptions),
        ):
            if not isinstance(opts, cls):
                raise ConfigurationError(f"Expected {cls.__name__}, got {type(opts).__name__}")

        self.data = self._setup_data(views, groups, sample_names, feature_names)
        self.device = _setup_device(self.training_options)
        self._engine: VariationalEngine | None = None

    def _setup_data(self, views, groups, sample_names, feature_names) -> MultiViewData:
        if isinstance(views, MultiViewData):
            if groups is not None or sample_names is not None or feature_names is not None:
                raise ConfigurationError(
                    "`groups`, `sample_names` and `feature_names` cannot be combined with a MultiViewData"
                )
            return views
        return MultiViewData(
            views,
            sample_names=sample_names,
            feature_names=feature_names,
            groups=groups,
            use_samples=self.data_options.use_samples,
        )

    def _setup_engine(self) -> tuple[VariationalEngine, ProcessedData]:
        model_options = self.model_options.resolve(list(self.data.view_names), self.data.n_groups)
        if model_options.num_factors > self.data.n_samples:
            logger.warning(
                "num_factors=%d exceeds the number of samples (%d).",
                model_options.num_factors,
                self.data.n_samples,
            )
        likelihoods = model_options.view_likelihoods(list(self.data.view_names))
        self.data.check_likelihoods(likelihoods)

        processed = self.data.preprocess(
            likelihoods,
            scale_views=self.data_options.scale_views,
            scale_groups=self.data_options.scale_groups,
        )
        engine = VariationalEngine(
            processed,
            likelihoods,
            self.data.group_index,
            model_options,
            self.training_options,
            device=self.device,
        )
        self.model_options = model_options
        return engine, processed

    def fit(
        self,
        callbacks: list[Callable] | None = None,
        resume_from: TrainingState | None = None,
    ) -> TrainedModel:
        """Perform variational inference to fit the model.

        Parameters
        ----------
        callbacks : List[Callback], optional
            Callbacks to run each iteration, by default None
        resume_from : TrainingState, optional
            Training state to continue from (e.g. a loaded checkpoint)

        Returns
        -------
        TrainedModel
            The immutable fitted model

        Raises
        ------
        NumericInstabilityError
            If a posterior parameter becomes invalid; carries the last checkpoint
        """
        seed = self.training_options.seed
        if seed is not None:
            logger.info("Setting training seed to %d", seed)
            set_all_seeds(seed)

        logger.info("Preparing engine on %s...", self.device)
        engine, processed = self._setup_engine()
        self._engine = engine

        if resume_from is not None:
            engine.load_state(resume_from)
        else:
            engine.initialize(seed)

        logger.info("Starting training...")
        result = engine.run(callbacks=callbacks)

        if not result.converged and not result.stopped_early:
            msg = (
                f"Training did not converge within maxiter={self.training_options.maxiter} iterations; "
                "consider increasing `maxiter` or using a faster convergence mode."
            )
            logger.warning(msg)
            warnings.warn(msg, ConvergenceWarning, stacklevel=2)

        references = {}
        for vn, lik in engine.likelihoods.items():
            if lik.kind == Likelihood.CONTINUOUS:
                references[vn] = processed.targets[vn]
            else:
                target, _ = engine.pseudo_data(vn)
                references[vn] = target.cpu().numpy()

        logger.info(
            "Training complete after %d iterations. Final ELBO: %.2f",
            result.state.iteration,
            result.state.elbo[-1] if result.state.elbo else float("nan"),
        )

        return TrainedModel(
            state=result.state,
            data_options=self.data_options,
            model_options=self.model_options,
            training_options=self.training_options,
            sample_names=self.data.sample_names,
            feature_names=self.data.feature_names,
            group_names=self.data.group_names,
            group_index=self.data.group_index,
            references=references,
            masks=processed.masks,
            feature_means=processed.feature_means,
            scales=processed.scales,
            offsets={vn: lik.offset.cpu().numpy() for vn, lik in engine.likelihoods.items()},
            converged=result.converged,
            stopped_early=result.stopped_early,
        )


def fit(
    views: Mapping[str, pd.DataFrame | np.ndarray] | MultiViewData,
    data_options: DataOptions | None = None,
    model_options: ModelOptions | None = None,
    training_options: TrainingOptions | None = None,
    groups: Mapping[str, str] | pd.Series | None = None,
    sample_names: Sequence[str] | Mapping[str, Sequence[str]] | None = None,
    feature_names: Mapping[str, Sequence[str]] | None = None,
    callbacks: list[Callable] | None = None,
    resume_from: TrainingState | None = None,
) -> TrainedModel:
    """Fit a group factor analysis model to a collection of views.

    Shorthand for ``OMIFA(views, ...).fit(callbacks, resume_from)``.

    Example
    -------
    >>> import omifa
    >>> model = omifa.fit(
    ...     {"rna": rna_df, "methylation": met_df},
    ...     model_options=omifa.ModelOptions(num_factors=10),
    ...     training_options=omifa.TrainingOptions(seed=0, convergence_mode="medium"),
    ... )
    """
    return OMIFA(
        views,
        data_options=data_options,
        model_options=model_options,
        training_options=training_options,
        groups=groups,
        sample_names=sample_names,
        feature_names=feature_names,
    ).fit(callbacks=callbacks, resume_from=resume_from)
