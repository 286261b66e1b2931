"""Multi-view data container.

Aligns a collection of feature x sample matrices on a common sample axis,
records which entries are observed and, optionally, a partition of the
samples into groups.
"""

import logging
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from pandas.api.types import is_string_dtype

from omifa.errors import DataShapeError
from omifa.errors import SampleAlignmentError
from omifa.options import Likelihood

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "group_0"


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


def _as_index(values, what: str, view: str | None = None) -> pd.Index:
    idx = pd.Index(values)
    if not is_string_dtype(idx):
        idx = idx.astype(str)
    if not idx.is_unique:
        dupes = idx[idx.duplicated()].unique().tolist()[:5]
        where = f" in view `{view}`" if view is not None else ""
        raise DataShapeError(f"Duplicate {what} identifiers{where}: {dupes}")
    return idx


@dataclass(frozen=True)
class ProcessedData:
    """Preprocessed training targets derived from a :class:`MultiViewData`.

    Attributes
    ----------
    targets : dict
        View name -> feature x sample array, missing entries set to 0
    masks : dict
        View name -> boolean array, True where observed
    feature_means : dict
        View name -> feature x group array of the means removed per group
    scales : dict
        View name -> feature x group array of the divisors applied per group
    """

    targets: dict[str, np.ndarray]
    masks: dict[str, np.ndarray]
    feature_means: dict[str, np.ndarray]
    scales: dict[str, np.ndarray]


class MultiViewData:
    """Views sharing a sample axis, aligned by sample identifier.

    Parameters
    ----------
    views : Mapping[str, pd.DataFrame or np.ndarray]
        View name -> feature x sample matrix. DataFrames carry feature
        identifiers in their index and sample identifiers in their columns.
    sample_names : Sequence or Mapping, optional
        Sample identifiers for array input, shared by all views (sequence) or
        given per view (mapping). Defaults to ``sample_{i}``.
    feature_names : Mapping[str, Sequence], optional
        Feature identifiers per view for array input. Defaults to
        ``{view}_feature_{j}``.
    groups : Mapping or pd.Series, optional
        Sample identifier -> group label. If omitted all samples form one group.
    use_samples : str, optional
        ``"union"`` keeps samples observed in at least one view (absent
        samples become fully missing in that view), ``"intersection"`` keeps
        samples present in every view. By default ``"union"``.

    Raises
    ------
    DataShapeError
        If a view is not two-dimensional, not numeric, has duplicate
        identifiers, or its identifiers do not match its shape.
    SampleAlignmentError
        If the aligned sample set is empty or a sample has no group label.

    Example
    -------
    >>> data = MultiViewData({"rna": rna_df, "methylation": met_df}, groups=cohort)
    >>> data.n_samples, data.n_features
    (200, {'rna': 5000, 'methylation': 3000})
    """

    def __init__(
        self,
        views: Mapping[str, pd.DataFrame | np.ndarray],
        sample_names: Sequence[str] | Mapping[str, Sequence[str]] | None = None,
        feature_names: Mapping[str, Sequence[str]] | None = None,
        groups: Mapping[str, str] | pd.Series | None = None,
        use_samples: str = "union",
    ) -> None:
        if views is None or len(views) == 0:
            raise DataShapeError("No views provided, pass a mapping of view name to matrix.")
        if use_samples not in ("union", "intersection"):
            raise ValueError(f'`use_samples` must be "union" or "intersection", got {use_samples!r}')

        frames = {
            str(vn): self._to_frame(str(vn), matrix, sample_names, feature_names)
            for vn, matrix in views.items()
        }

        self._view_names = pd.Index(list(frames.keys()))
        self._sample_names = self._align_samples(frames, use_samples)

        self._feature_names: dict[str, pd.Index] = {}
        self._views: dict[str, np.ndarray] = {}
        self._masks: dict[str, np.ndarray] = {}
        for vn, frame in frames.items():
            aligned = frame.reindex(columns=self._sample_names)
            values = aligned.to_numpy(dtype=np.float64, copy=True)
            mask = ~np.isnan(values)
            self._feature_names[vn] = frame.index.copy()
            self._views[vn] = _readonly(values)
            self._masks[vn] = _readonly(mask)

            empty = ~mask.any(axis=1)
            if empty.any():
                logger.warning(
                    "View `%s` has %d features without any observed value.", vn, int(empty.sum())
                )
            logger.info(
                "View `%s`: %d features, %.1f%% missing.",
                vn,
                values.shape[0],
                100.0 * (1.0 - mask.mean()),
            )

        self._setup_groups(groups)

    @staticmethod
    def _to_frame(
        vn: str,
        matrix: pd.DataFrame | np.ndarray,
        sample_names: Sequence[str] | Mapping[str, Sequence[str]] | None,
        feature_names: Mapping[str, Sequence[str]] | None,
    ) -> pd.DataFrame:
        if isinstance(matrix, pd.DataFrame):
            frame = matrix
            if frame.ndim != 2:
                raise DataShapeError(f"View `{vn}` must be two-dimensional.")
            feature_idx = _as_index(frame.index, "feature", vn)
            sample_idx = _as_index(frame.columns, "sample", vn)
            values = frame.to_numpy()
        else:
            values = np.asarray(matrix)
            if values.ndim != 2:
                raise DataShapeError(
                    f"View `{vn}` must be a two-dimensional feature x sample matrix, "
                    f"got shape {values.shape}."
                )
            n_features, n_samples = values.shape

            if isinstance(sample_names, Mapping):
                view_samples = sample_names.get(vn)
            else:
                view_samples = sample_names
            if view_samples is None:
                view_samples = [f"sample_{i}" for i in range(n_samples)]
            if len(view_samples) != n_samples:
                raise DataShapeError(
                    f"View `{vn}` has {n_samples} samples but {len(view_samples)} sample names."
                )

            view_features = None if feature_names is None else feature_names.get(vn)
            if view_features is None:
                view_features = [f"{vn}_feature_{j}" for j in range(n_features)]
            if len(view_features) != n_features:
                raise DataShapeError(
                    f"View `{vn}` has {n_features} features but {len(view_features)} feature names."
                )

            feature_idx = _as_index(view_features, "feature", vn)
            sample_idx = _as_index(view_samples, "sample", vn)

        try:
            values = np.asarray(values, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise DataShapeError(f"View `{vn}` contains non-numeric values: {e}") from e

        if values.shape[0] == 0:
            raise DataShapeError(f"View `{vn}` has no features.")

        # inputs are never mutated
        return pd.DataFrame(values.copy(), index=feature_idx, columns=sample_idx)

    @staticmethod
    def _align_samples(frames: dict[str, pd.DataFrame], method: str) -> pd.Index:
        sample_sets = [frame.columns for frame in frames.values()]

        if method == "union":
            aligned = sample_sets[0]
            for idx in sample_sets[1:]:
                aligned = aligned.append(idx.difference(aligned, sort=False))
        else:
            aligned = sample_sets[0]
            for idx in sample_sets[1:]:
                aligned = aligned[aligned.isin(idx)]

        if len(aligned) == 0:
            raise SampleAlignmentError(
                f"The {method} of samples across views {list(frames)} is empty."
            )

        n_total = len(set().union(*sample_sets))
        if method == "intersection" and n_total > len(aligned):
            logger.info("Dropping %d samples not present in every view.", n_total - len(aligned))

        return pd.Index(aligned, name="sample")

    def _setup_groups(self, groups: Mapping[str, str] | pd.Series | None) -> None:
        if groups is None:
            self._group_names = pd.Index([DEFAULT_GROUP])
            self._group_index = _readonly(np.zeros(self.n_samples, dtype=np.int64))
            return

        labels = pd.Series(groups)
        labels.index = labels.index.astype(str)
        labels = labels.reindex(self._sample_names)
        if labels.isna().any():
            missing = labels.index[labels.isna()].tolist()[:5]
            raise SampleAlignmentError(f"No group label for samples {missing}.")

        labels = labels.astype(str)
        self._group_names = pd.Index(pd.unique(labels.to_numpy()), name="group")
        self._group_index = _readonly(self._group_names.get_indexer(labels.to_numpy()).astype(np.int64))
        logger.info("Found %d groups: %s", self.n_groups, list(self._group_names))

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def view_names(self) -> pd.Index:
        return self._view_names

    @property
    def n_views(self) -> int:
        return len(self._view_names)

    @property
    def sample_names(self) -> pd.Index:
        return self._sample_names

    @property
    def n_samples(self) -> int:
        return len(self._sample_names)

    @property
    def feature_names(self) -> dict[str, pd.Index]:
        return dict(self._feature_names)

    @property
    def n_features(self) -> dict[str, int]:
        return {vn: len(idx) for vn, idx in self._feature_names.items()}

    @property
    def group_names(self) -> pd.Index:
        return self._group_names

    @property
    def n_groups(self) -> int:
        return len(self._group_names)

    @property
    def group_index(self) -> np.ndarray:
        """Integer group of every aligned sample."""
        return self._group_index

    def view(self, name: str) -> np.ndarray:
        """Aligned feature x sample values of a view, NaN where missing."""
        return self._views[name]

    def mask(self, name: str) -> np.ndarray:
        """Boolean feature x sample mask of a view, True where observed."""
        return self._masks[name]

    def missing_fraction(self) -> dict[str, float]:
        return {vn: float(1.0 - self._masks[vn].mean()) for vn in self._view_names}

    def __repr__(self) -> str:
        views = ", ".join(f"{vn}: {n}" for vn, n in self.n_features.items())
        return (
            f"MultiViewData(n_samples={self.n_samples}, n_groups={self.n_groups}, "
            f"views=[{views}])"
        )

    # -------------------------------------------------------------------------
    # Likelihood checks and preprocessing
    # -------------------------------------------------------------------------

    def check_likelihoods(self, likelihoods: Mapping[str, Likelihood]) -> None:
        """Warn about likelihoods that do not match the empirical data distribution.

        A mismatch degrades the fit but is never an error.
        """
        for vn, likelihood in likelihoods.items():
            values = self._views[vn][self._masks[vn]]
            if values.size == 0:
                continue
            is_binary = np.isin(values, (0.0, 1.0)).all()
            is_count = (values >= 0).all() and np.allclose(values, np.round(values))

            if likelihood == Likelihood.BINARY and not is_binary:
                logger.warning(
                    "View `%s` uses a binary likelihood but contains values other than 0 and 1.",
                    vn,
                )
            elif likelihood == Likelihood.COUNT and not is_count:
                logger.warning(
                    "View `%s` uses a count likelihood but contains negative or non-integer values.",
                    vn,
                )
            elif likelihood == Likelihood.CONTINUOUS and is_binary:
                logger.warning(
                    "View `%s` looks binary, consider a binary likelihood.",
                    vn,
                )
            elif likelihood == Likelihood.CONTINUOUS and is_count and values.max() > 1:
                logger.warning(
                    "View `%s` looks like count data, consider a count likelihood "
                    "or a log transform.",
                    vn,
                )

    def preprocess(
        self,
        likelihoods: Mapping[str, Likelihood],
        scale_views: bool = False,
        scale_groups: bool = False,
    ) -> ProcessedData:
        """Centre and optionally scale continuous views, per group.

        Count and binary views are passed through unchanged. Missing entries
        are set to zero in the returned targets and excluded by the masks.

        Parameters
        ----------
        likelihoods : Mapping[str, Likelihood]
            Likelihood of each view
        scale_views : bool, optional
            Divide each continuous view by its global standard deviation
        scale_groups : bool, optional
            Divide each (group, view) block by its standard deviation

        Returns
        -------
        ProcessedData
            Training targets, masks, removed means and applied scales
        """
        targets, feature_means, scales = {}, {}, {}
        for vn in self._view_names:
            values = np.where(self._masks[vn], self._views[vn], 0.0)
            mask = self._masks[vn]
            n_features = values.shape[0]
            means = np.zeros((n_features, self.n_groups))
            divisors = np.ones((n_features, self.n_groups))

            if likelihoods[vn] == Likelihood.CONTINUOUS:
                for g in range(self.n_groups):
                    cols = self._group_index == g
                    counts = mask[:, cols].sum(axis=1)
                    sums = values[:, cols].sum(axis=1)
                    means[:, g] = np.divide(sums, counts, out=np.zeros(n_features), where=counts > 0)
                    values[:, cols] -= means[:, g, None]

                if scale_groups:
                    for g in range(self.n_groups):
                        cols = self._group_index == g
                        block_mask = mask[:, cols]
                        if not block_mask.any():
                            continue
                        std = np.sqrt(np.square(values[:, cols][block_mask]).mean())
                        if std > 0:
                            logger.info("Scaling group `%s` of view `%s` by %.3f.", self._group_names[g], vn, std)
                            values[:, cols] /= std
                            divisors[:, g] *= std

                if scale_views and mask.any():
                    std = np.sqrt(np.square(values[mask]).mean())
                    if std > 0:
                        logger.info("Scaling view `%s` by %.3f.", vn, std)
                        values /= std
                        divisors *= std

            values[~mask] = 0.0
            targets[vn] = _readonly(values)
            feature_means[vn] = _readonly(means)
            scales[vn] = _readonly(divisors)

        return ProcessedData(
            targets=targets,
            masks=dict(self._masks),
            feature_means=feature_means,
            scales=scales,
        )
