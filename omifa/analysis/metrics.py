"""Downstream statistics on fitted OMIFA models."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.metrics import silhouette_score
from statsmodels.stats import multitest

if TYPE_CHECKING:
    from omifa.model.core import TrainedModel

logger = logging.getLogger(__name__)

METHODS = ("spearman", "pearson", "kruskal", "anova")


def compute_silhouette_score(
    model: TrainedModel,
    labels: pd.Series,
    factor_idx: int | str | list | None = None,
) -> float:
    """Compute the silhouette score of sample labels in factor space.

    Parameters
    ----------
    model : TrainedModel
        A fitted model
    labels : pd.Series
        Label per sample, indexed by sample name
    factor_idx : int, str, list, optional
        Factors spanning the embedding. If None, uses all factors.

    Returns
    -------
    float
        Silhouette score in [-1, 1]
    """
    factors = model.factors(factors=factor_idx)
    labels = pd.Series(labels)
    labels.index = labels.index.astype(str)
    labels = labels.reindex(factors.index)

    keep = labels.notna().to_numpy()
    if keep.sum() < len(keep):
        logger.warning("Ignoring %d samples without a label.", int((~keep).sum()))

    cluster_labels = labels[keep].astype("category").cat.codes
    if cluster_labels.nunique() < 2:
        raise ValueError("Silhouette score needs at least two distinct labels")

    silhouette_avg = silhouette_score(factors.to_numpy()[keep], cluster_labels.to_numpy())
    logger.debug("Silhouette score: %.4f", silhouette_avg)

    return float(silhouette_avg)


# -----------------------------------------------------------------------------
# Variance Explained (R²)
# -----------------------------------------------------------------------------


def variance_explained(
    model: TrainedModel,
    granularity: str = "factor",
    per_group: bool = False,
) -> pd.DataFrame | pd.Series | dict:
    """Variance explained (R², in percent) by a fitted model.

    See :meth:`TrainedModel.variance_explained`.
    """
    return model.variance_explained(granularity=granularity, per_group=per_group)


def variance_explained_per_factor(
    model: TrainedModel,
    view: str | None = None,
    cumulative: bool = False,
) -> pd.DataFrame:
    """Compute variance explained per factor, sorted by importance.

    Parameters
    ----------
    model : TrainedModel
        A fitted model
    view : str, optional
        Rank by the R² in this view. If None, ranks by the mean over views.
    cumulative : bool, optional
        Whether to also return cumulative R², by default False

    Returns
    -------
    pd.DataFrame
        DataFrame with factor names as index and a column ``r2`` (percent)
    """
    table = model.variance_explained(granularity="factor")
    if view is None:
        r2 = table.mean(axis=1)
    else:
        if view not in table.columns:
            raise KeyError(f"Unknown view `{view}`")
        r2 = table[view]

    df = r2.to_frame("r2").sort_values("r2", ascending=False)

    if cumulative:
        df["cumulative_r2"] = df["r2"].cumsum()

    return df


# -----------------------------------------------------------------------------
# Association Testing
# -----------------------------------------------------------------------------


def test(
    model: TrainedModel,
    metadata: pd.DataFrame | pd.Series,
    factor_idx: int | str | list | None = None,
    method: str = "spearman",
    p_adj_method: str = "fdr_bh",
) -> pd.DataFrame:
    """Test association between factor values and sample covariates.

    Performs one statistical test per (factor, covariate) pair and corrects
    the p-values for multiple testing.

    Parameters
    ----------
    model : TrainedModel
        A fitted model
    metadata : pd.DataFrame or pd.Series
        Sample covariates to test associations against.
        If DataFrame, tests each column separately.
        Index should match sample names.
    factor_idx : int, str, list, optional
        Factors to test. If None, tests all factors.
    method : str, optional
        Statistical test method:
        - 'spearman': Spearman correlation (for continuous covariates)
        - 'pearson': Pearson correlation (for continuous covariates)
        - 'kruskal': Kruskal-Wallis test (for categorical covariates)
        - 'anova': One-way ANOVA (for categorical covariates)
        Categorical covariates are always tested with Kruskal-Wallis unless
        'anova' is requested. By default 'spearman'
    p_adj_method : str, optional
        Method for multiple testing correction, any method accepted by
        ``statsmodels.stats.multitest.multipletests`` (e.g. 'fdr_bh',
        'bonferroni', 'holm'). By default 'fdr_bh'

    Returns
    -------
    pd.DataFrame
        Long table with columns 'factor', 'covariate', 'statistic', 'pvalue',
        'pvalue_adj' and 'significant' (p_adj < 0.05), sorted by 'pvalue_adj'

    Examples
    --------
    >>> import omifa
    >>> model = omifa.fit(views, model_options=omifa.ModelOptions(num_factors=5))
    >>> results = omifa.tl.test(model, metadata=cohort, method="kruskal")
    >>> print(results[results["significant"]])
    """
    if method not in METHODS:
        raise ValueError(f"`method` must be one of {METHODS}, got {method!r}")

    factor_values = model.factors(factors=factor_idx)

    if isinstance(metadata, pd.Series):
        metadata = metadata.to_frame()
    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)

    # Align indices
    common_idx = factor_values.index.intersection(metadata.index)
    if len(common_idx) == 0:
        # Try to match by position if indices don't match
        if len(factor_values) == len(metadata):
            logger.warning(
                "Sample indices don't match, aligning covariates by position."
            )
            metadata.index = factor_values.index
            common_idx = factor_values.index
        else:
            raise ValueError(
                f"No common samples between factors ({len(factor_values)}) "
                f"and covariates ({len(metadata)})"
            )

    factor_values = factor_values.loc[common_idx]
    metadata = metadata.loc[common_idx]

    results = []

    for meta_col in metadata.columns:
        meta_values = metadata[meta_col]

        # Determine if categorical or continuous
        is_categorical = (
            meta_values.dtype == "object"
            or meta_values.dtype.name == "category"
            or meta_values.dtype == bool
            or meta_values.nunique() < 10
        )

        for factor_name in factor_values.columns:
            values = factor_values[factor_name].to_numpy()

            # Remove NaN values
            mask = ~(np.isnan(values) | pd.isna(meta_values).to_numpy())
            fv = values[mask]
            mv = meta_values[mask]

            if len(fv) < 3:
                logger.warning("Skipping %s x %s: too few valid samples", factor_name, meta_col)
                continue

            if is_categorical:
                groups = [fv[(mv == cat).to_numpy()] for cat in mv.unique()]
                groups = [g for g in groups if len(g) > 0]
                if len(groups) < 2:
                    continue
                if method == "anova":
                    stat, pval = stats.f_oneway(*groups)
                else:
                    stat, pval = stats.kruskal(*groups)
            elif method == "pearson":
                stat, pval = stats.pearsonr(fv, mv.astype(float))
            else:
                stat, pval = stats.spearmanr(fv, mv.astype(float))

            results.append(
                {
                    "factor": factor_name,
                    "covariate": meta_col,
                    "statistic": float(stat),
                    "pvalue": float(pval),
                }
            )

    if not results:
        return pd.DataFrame(
            columns=["factor", "covariate", "statistic", "pvalue", "pvalue_adj", "significant"]
        )

    df = pd.DataFrame(results)

    # Multiple testing correction
    _, pvals_adj, _, _ = multitest.multipletests(
        df["pvalue"].fillna(1.0).to_numpy(),
        method=p_adj_method,
        alpha=0.05,
    )
    df["pvalue_adj"] = pvals_adj
    df["significant"] = df["pvalue_adj"] < 0.05

    return df.sort_values("pvalue_adj").reset_index(drop=True)


def test_metadata(
    model: TrainedModel,
    metadata: pd.DataFrame | pd.Series,
    **kwargs,
) -> pd.DataFrame:
    """Alias for test() function.

    See :func:`test` for documentation.
    """
    return test(model, metadata, **kwargs)


# -----------------------------------------------------------------------------
# Factor Filtering
# -----------------------------------------------------------------------------


def filter_factors(
    model: TrainedModel,
    r2_thresh: float | int = 0.95,
    min_factors: int = 1,
    view: str | None = None,
) -> list[str]:
    """Filter factors based on cumulative variance explained.

    Parameters
    ----------
    model : TrainedModel
        A fitted model
    r2_thresh : float or int, optional
        If float < 1: share of the summed R² to retain (e.g., 0.95 = 95%)
        If int >= 1: number of top factors to keep
        By default 0.95
    min_factors : int, optional
        Minimum number of factors to return, by default 1
    view : str, optional
        Rank by the R² in this view, by default the mean over views

    Returns
    -------
    list[str]
        Names of factors to keep, most important first
    """
    r2_df = variance_explained_per_factor(model, view=view, cumulative=True)
    total = r2_df["r2"].sum()

    if isinstance(r2_thresh, float) and r2_thresh < 1:
        if total <= 0:
            n_keep = min_factors
        else:
            # Keep factors until the cumulative share reaches the threshold
            share = r2_df["cumulative_r2"] / total
            n_keep = max(int((share < r2_thresh).sum()) + 1, min_factors)
    else:
        n_keep = max(int(r2_thresh), min_factors)

    return r2_df.index[: min(n_keep, len(r2_df))].tolist()
