"""Variance decomposition (R²) of a fitted factor model.

All functions are pure: they take factor and weight matrices plus the
reference data and return new arrays. Missing entries never enter a sum.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


def _to_percent(rss: np.ndarray, tss: float | np.ndarray) -> np.ndarray:
    tss = np.asarray(tss, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        r2 = np.where(tss > 0, 1.0 - rss / tss, 0.0)
    return 100.0 * np.clip(r2, 0.0, 1.0)


def center_reference(y: np.ndarray, mask: np.ndarray, group_index: np.ndarray) -> np.ndarray:
    """Centre every feature within every group over its observed entries.

    Parameters
    ----------
    y : np.ndarray
        Feature x sample reference data
    mask : np.ndarray
        Boolean feature x sample mask, True where observed
    group_index : np.ndarray
        Integer group of every sample

    Returns
    -------
    np.ndarray
        Centred copy of ``y`` with zeros at missing entries
    """
    out = np.where(mask, y, 0.0).astype(np.float64)
    for g in np.unique(group_index):
        cols = group_index == g
        counts = mask[:, cols].sum(axis=1)
        means = np.divide(out[:, cols].sum(axis=1), counts, out=np.zeros(out.shape[0]), where=counts > 0)
        out[:, cols] -= means[:, None]
    out[~mask] = 0.0
    return out


def r2_per_factor(y: np.ndarray, mask: np.ndarray, z: np.ndarray, w: np.ndarray) -> np.ndarray:
    """R² (in percent) of each single-factor reconstruction ``w_k z_k^T``.

    Parameters
    ----------
    y : np.ndarray
        Centred feature x sample reference, zero where missing
    mask : np.ndarray
        Boolean feature x sample mask
    z : np.ndarray
        Sample x factor matrix
    w : np.ndarray
        Feature x factor matrix

    Returns
    -------
    np.ndarray
        One value per factor, in [0, 100]
    """
    m = mask.astype(np.float64)
    y = np.where(mask, y, 0.0)
    tss = np.square(y).sum()
    # sum_obs (y - w_k z_k)^2 expanded per factor
    cross = (w * (y @ z)).sum(axis=0)
    quad = (np.square(w) * (m @ np.square(z))).sum(axis=0)
    rss = tss - 2.0 * cross + quad
    return _to_percent(rss, tss)


def r2_total(y: np.ndarray, mask: np.ndarray, z: np.ndarray, w: np.ndarray) -> float:
    """R² (in percent) of the joint reconstruction ``W Z^T``."""
    y = np.where(mask, y, 0.0)
    tss = np.square(y).sum()
    resid = np.where(mask, y - w @ z.T, 0.0)
    return float(_to_percent(np.square(resid).sum(), tss))


@dataclass(frozen=True)
class VarianceExplained:
    """Immutable variance decomposition of a fitted model.

    Attributes
    ----------
    factor_names, view_names, group_names : pd.Index
        Labels of the three axes
    per_factor : np.ndarray
        Pooled R² per (factor, view), shape (K, n_views)
    total : np.ndarray
        Pooled R² of the full reconstruction per view, shape (n_views,)
    per_factor_group : np.ndarray
        R² per (group, factor, view), shape (n_groups, K, n_views)
    total_group : np.ndarray
        R² of the full reconstruction per (group, view), shape (n_groups, n_views)
    """

    factor_names: pd.Index
    view_names: pd.Index
    group_names: pd.Index
    per_factor: np.ndarray
    total: np.ndarray
    per_factor_group: np.ndarray
    total_group: np.ndarray

    def __post_init__(self):
        for name in ("per_factor", "total", "per_factor_group", "total_group"):
            object.__setattr__(self, name, _readonly(getattr(self, name)))

    @property
    def n_groups(self) -> int:
        return len(self.group_names)

    def factor_table(self, group: str | None = None) -> pd.DataFrame:
        """Factor x view table of R² values, pooled or for one group."""
        if group is None:
            values = self.per_factor
        else:
            values = self.per_factor_group[self.group_names.get_loc(group)]
        return pd.DataFrame(values.copy(), index=self.factor_names, columns=self.view_names)

    def total_table(self, group: str | None = None) -> pd.Series:
        """R² of the full reconstruction per view, pooled or for one group."""
        if group is None:
            values = self.total
        else:
            values = self.total_group[self.group_names.get_loc(group)]
        return pd.Series(values.copy(), index=self.view_names, name="r2")

    def to_long(self) -> pd.DataFrame:
        """Long table with columns factor, view, group and r2.

        Pooled rows carry the group ``"all"``; per-group rows are only
        present when the model has more than one group.
        """
        frames = []
        groups = [None] + (list(self.group_names) if self.n_groups > 1 else [])
        for group in groups:
            df = self.factor_table(group).stack().rename("r2").reset_index()
            df.columns = ["factor", "view", "r2"]
            df.insert(2, "group", "all" if group is None else group)
            frames.append(df)
        return pd.concat(frames, ignore_index=True)

    def to_dict(self) -> dict:
        return {
            "factor_names": list(self.factor_names),
            "view_names": list(self.view_names),
            "group_names": list(self.group_names),
            "per_factor": self.per_factor.copy(),
            "total": self.total.copy(),
            "per_factor_group": self.per_factor_group.copy(),
            "total_group": self.total_group.copy(),
        }

    @classmethod
    def from_dict(cls, values: Mapping) -> "VarianceExplained":
        return cls(
            factor_names=pd.Index(values["factor_names"]),
            view_names=pd.Index(values["view_names"]),
            group_names=pd.Index(values["group_names"]),
            per_factor=np.asarray(values["per_factor"]),
            total=np.asarray(values["total"]),
            per_factor_group=np.asarray(values["per_factor_group"]),
            total_group=np.asarray(values["total_group"]),
        )


def compute_variance_explained(
    z: np.ndarray,
    weights: Mapping[str, np.ndarray],
    references: Mapping[str, np.ndarray],
    masks: Mapping[str, np.ndarray],
    group_index: np.ndarray,
    factor_names: pd.Index,
    group_names: pd.Index,
) -> VarianceExplained:
    """Variance decomposition per factor, view and group.

    Parameters
    ----------
    z : np.ndarray
        Sample x factor posterior means
    weights : Mapping[str, np.ndarray]
        View name -> feature x factor posterior means
    references : Mapping[str, np.ndarray]
        View name -> feature x sample reference data (training targets)
    masks : Mapping[str, np.ndarray]
        View name -> boolean mask, True where observed
    group_index : np.ndarray
        Integer group of every sample
    factor_names, group_names : pd.Index
        Labels used in the returned tables

    Returns
    -------
    VarianceExplained
        Pooled and per-group R² values in percent
    """
    view_names = pd.Index(list(weights.keys()))
    K, M, G = z.shape[1], len(view_names), len(group_names)

    per_factor = np.zeros((K, M))
    total = np.zeros(M)
    per_factor_group = np.zeros((G, K, M))
    total_group = np.zeros((G, M))

    for m, vn in enumerate(view_names):
        mask = np.asarray(masks[vn], dtype=bool)
        y = center_reference(np.asarray(references[vn]), mask, group_index)
        w = np.asarray(weights[vn])

        per_factor[:, m] = r2_per_factor(y, mask, z, w)
        total[m] = r2_total(y, mask, z, w)
        for g in range(G):
            cols = group_index == g
            per_factor_group[g, :, m] = r2_per_factor(y[:, cols], mask[:, cols], z[cols], w)
            total_group[g, m] = r2_total(y[:, cols], mask[:, cols], z[cols], w)

        logger.debug("View `%s`: total R2 %.2f%%", vn, total[m])

    return VarianceExplained(
        factor_names=pd.Index(factor_names),
        view_names=view_names,
        group_names=pd.Index(group_names),
        per_factor=per_factor,
        total=total,
        per_factor_group=per_factor_group,
        total_group=total_group,
    )
