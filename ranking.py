# ranking.py
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans

from errors import EmptyResultSet

__all__ = [
    "top_n",
    "cluster_scenario_loss",
    "identify_outliers",
]

logger = logging.getLogger(__name__)

# Quantiles used as the loss "fingerprint" of a scenario when clustering
_PROFILE_QUANTILES = (0.10, 0.25, 0.50, 0.75, 0.90, 0.95, 0.99)


def top_n(scenario_summary: pd.DataFrame, n: int = 10, by: str = "ale_var") -> pd.DataFrame:
    """
    The `n` scenarios with the highest `by`, descending; ties break on
    scenario_id (then domain_id) ascending so the order is reproducible.
    """
    if n < 0:
        raise ValueError("n must be >= 0")
    keys = [by, "scenario_id"] + (["domain_id"] if "domain_id" in scenario_summary else [])
    ordered = scenario_summary.sort_values(keys, ascending=[False] + [True] * (len(keys) - 1),
                                           kind="mergesort")
    return ordered.head(n).reset_index(drop=True)


def _profiles(samples: pd.DataFrame) -> pd.DataFrame:
    q = list(_PROFILE_QUANTILES)
    prof = (samples.groupby(["domain_id", "scenario_id"])["ale"]
            .quantile(q).unstack())
    return np.log1p(prof.clip(lower=0.0))


def cluster_scenario_loss(samples: pd.DataFrame, n_clusters: int = 3, random_state: int = 0) -> pd.DataFrame:
    """
    Group scenarios with similar loss distributions for side-by-side plots.

    `samples` is the long simulation table (domain_id, scenario_id, ale, ...).
    Scenarios whose total simulated loss is exactly zero are dropped. The rest
    are clustered with KMeans over their log-ALE quantile profile and the
    returned sample rows gain a `cluster` column (1 = highest mean VaR).
    Returns an empty frame, with an EmptyResultSet warning, when nothing is left.
    """
    totals = samples.groupby(["domain_id", "scenario_id"])["ale"].sum()
    keep = totals[totals > 0].index
    if len(keep) == 0:
        warnings.warn("no scenario produced a nonzero loss", EmptyResultSet, stacklevel=2)
        return samples.iloc[0:0].assign(cluster=pd.Series(dtype=int))

    dropped = len(totals) - len(keep)
    if dropped:
        logger.info("Excluding %d zero-loss scenario(s) from clustering", dropped)

    keyed = samples.set_index(["domain_id", "scenario_id"])
    subset = keyed.loc[keyed.index.isin(keep)].reset_index()
    prof = _profiles(subset)

    distinct = len(np.unique(prof.to_numpy(), axis=0))
    k = max(1, min(int(n_clusters), distinct))
    if k == 1:
        labels = np.zeros(len(prof), dtype=int)
    else:
        labels = KMeans(n_clusters=k, n_init=10, random_state=random_state).fit_predict(prof.to_numpy())

    # Relabel so cluster 1 holds the scenarios with the highest mean VaR
    var = prof[0.95]
    order = (pd.Series(var.to_numpy(), index=labels).groupby(level=0).mean()
             .sort_values(ascending=False, kind="mergesort"))
    relabel = {old: new for new, old in enumerate(order.index, start=1)}
    assignment = pd.Series([relabel[l] for l in labels], index=prof.index, name="cluster")

    out = subset.merge(assignment.reset_index(), on=["domain_id", "scenario_id"], how="left")
    return out.sort_values(["cluster", "domain_id", "scenario_id", "iteration"], kind="mergesort").reset_index(drop=True)


def identify_outliers(scenario_summary: pd.DataFrame, by: str = "ale_var") -> pd.DataFrame:
    """Flag scenarios above the Tukey fence (Q3 + 1.5 IQR) of `by`."""
    out = scenario_summary.copy()
    if out.empty:
        out["outlier"] = pd.Series(dtype=bool)
        return out
    x = out[by].to_numpy(dtype=float)
    q1, q3 = np.percentile(x, [25, 75], method="linear")
    out["outlier"] = x > q3 + 1.5 * (q3 - q1)
    return out
