# summarize.py
"""
Aggregation of raw simulation samples
-------------------------------------
Three independent reductions over the same sample set:
  - per scenario:  statistics over that scenario's iterations
  - per domain:    sum each iteration across the domain's scenarios first,
                   then compute the same statistics over those sums
  - overall:       per-iteration totals across the whole model (VaR, LEC)

Percentiles use numpy's "linear" method (interpolation between closest
ranks, Hyndman & Fan type 7) so the same samples always give the same VaR.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from engine import SimulationResults

__all__ = [
    "PERCENTILE_METHOD",
    "SUMMARY_COLUMNS",
    "describe_losses",
    "summarize_scenarios",
    "summarize_domains",
    "summarize_iterations",
    "overall_summary",
    "var_confidence_interval",
    "loss_exceedance_curve",
]

logger = logging.getLogger(__name__)

PERCENTILE_METHOD = "linear"

SUMMARY_COLUMNS = [
    "iterations",
    "ale_min", "ale_median", "ale_mean", "ale_max", "ale_sd", "ale_var",
    "loss_events_mean", "loss_events_min", "loss_events_max",
    "mean_tc_exceedance", "mean_vuln",
    "sle_min", "sle_median", "sle_mean", "sle_max",
]


def _percentile(x: np.ndarray, q: float) -> float:
    return float(np.percentile(x, q * 100.0, method=PERCENTILE_METHOD))


def describe_losses(frame: pd.DataFrame, quantile: float = 0.95) -> Dict[str, float]:
    """
    Statistics for one per-iteration loss sequence. `frame` needs the sample
    columns ale, loss_events, tc_exceeded and sle_min/sle_max/sle_mean.
    """
    ale = frame["ale"].to_numpy(dtype=float)
    events = frame["loss_events"].to_numpy(dtype=float)
    n = ale.size
    if n == 0:
        raise ValueError("cannot summarize an empty sample set")

    hit = events > 0
    sle_means = frame["sle_mean"].to_numpy(dtype=float)[hit]
    return {
        "iterations": int(n),
        "ale_min": float(ale.min()),
        "ale_median": _percentile(ale, 0.5),
        "ale_mean": float(ale.mean()),
        "ale_max": float(ale.max()),
        "ale_sd": float(ale.std(ddof=1)) if n > 1 else 0.0,
        "ale_var": _percentile(ale, quantile),
        "loss_events_mean": float(events.mean()),
        "loss_events_min": float(events.min()),
        "loss_events_max": float(events.max()),
        "mean_tc_exceedance": float(frame["tc_exceeded"].to_numpy(dtype=float).mean()),
        "mean_vuln": float(hit.mean()),
        "sle_min": float(frame["sle_min"].to_numpy(dtype=float)[hit].min()) if hit.any() else 0.0,
        "sle_median": _percentile(sle_means, 0.5) if hit.any() else 0.0,
        "sle_mean": float(sle_means.mean()) if hit.any() else 0.0,
        "sle_max": float(frame["sle_max"].to_numpy(dtype=float)[hit].max()) if hit.any() else 0.0,
    }


def _quantile(results: SimulationResults, quantile: Optional[float]) -> float:
    return results.config.var_quantile if quantile is None else quantile


def summarize_scenarios(results: SimulationResults, quantile: Optional[float] = None) -> pd.DataFrame:
    q = _quantile(results, quantile)
    rows = []
    for (domain_id, scenario_id), df in sorted(results.samples.items()):
        rows.append({"domain_id": domain_id, "scenario_id": scenario_id, **describe_losses(df, q)})
    return pd.DataFrame(rows, columns=["domain_id", "scenario_id"] + SUMMARY_COLUMNS)


def _domain_iterations(frames) -> pd.DataFrame:
    """Per-iteration domain totals: sum ALE and loss events across scenarios."""
    stacked = pd.concat(frames, ignore_index=True)
    hit = stacked["loss_events"] > 0
    stacked["sle_min"] = stacked["sle_min"].where(hit)
    stacked["sle_max"] = stacked["sle_max"].where(hit)
    stacked["tc_exceeded"] = stacked["tc_exceeded"].astype(float)
    per_iter = stacked.groupby("iteration", sort=True).agg(
        ale=("ale", "sum"),
        loss_events=("loss_events", "sum"),
        tc_exceeded=("tc_exceeded", "mean"),
        sle_min=("sle_min", "min"),
        sle_max=("sle_max", "max"),
    )
    events = per_iter["loss_events"].to_numpy(dtype=float)
    per_iter["sle_mean"] = np.divide(per_iter["ale"].to_numpy(dtype=float), events,
                                     out=np.zeros_like(events), where=events > 0)
    return per_iter.fillna(0.0).reset_index()


def summarize_domains(results: SimulationResults, quantile: Optional[float] = None) -> pd.DataFrame:
    """
    Domain statistics computed on the per-iteration sum of the domain's
    scenarios (sum first, then summarize). Domains with no scenarios are omitted.
    """
    q = _quantile(results, quantile)
    names = {d.domain_id: d.name for d in results.model.domains}
    by_domain: Dict[str, list] = {}
    for (domain_id, _), df in sorted(results.samples.items()):
        by_domain.setdefault(domain_id, []).append(df)

    rows = []
    for domain_id, frames in sorted(by_domain.items()):
        stats = describe_losses(_domain_iterations(frames), q)
        rows.append({"domain_id": domain_id, "domain": names.get(domain_id, domain_id),
                     "scenarios": len(frames), **stats})
    return pd.DataFrame(rows, columns=["domain_id", "domain", "scenarios"] + SUMMARY_COLUMNS)


def summarize_iterations(results: SimulationResults) -> pd.DataFrame:
    """One row per iteration with totals across every scenario in the model."""
    cols = ["iteration", "ale_sum", "loss_events", "max_loss", "min_loss"]
    if not results.samples:
        return pd.DataFrame(columns=cols)
    stacked = pd.concat(results.samples.values(), ignore_index=True)
    out = stacked.groupby("iteration", sort=True).agg(
        ale_sum=("ale", "sum"),
        loss_events=("loss_events", "sum"),
        max_loss=("ale", "max"),
        min_loss=("ale", "min"),
    ).reset_index()
    return out[cols]


def var_confidence_interval(losses: np.ndarray, alpha: float = 0.95, n_boot: int = 500,
                            seed: Optional[int] = None, level: float = 0.95) -> Dict[str, float]:
    """Bootstrap CI for VaR(alpha) by resampling the annual loss vector."""
    x = np.asarray(losses, dtype=float)
    point = _percentile(x, alpha)
    if n_boot <= 0 or x.size < 2:
        return {"point": point, "ci_lower": point, "ci_upper": point}
    rng = np.random.default_rng(seed)
    boot = np.empty(n_boot, dtype=float)
    for i in range(n_boot):
        boot[i] = _percentile(rng.choice(x, size=x.size, replace=True), alpha)
    tail = (1.0 - level) / 2.0
    return {
        "point": point,
        "ci_lower": _percentile(boot, tail),
        "ci_upper": _percentile(boot, 1.0 - tail),
    }


def overall_summary(iteration_summary: pd.DataFrame, quantile: float = 0.95,
                    bootstrap_reps: int = 0, seed: Optional[int] = None) -> Dict[str, float]:
    """Headline figures: VaR of total annual loss, median loss events, etc."""
    if iteration_summary.empty:
        raise ValueError("cannot summarize an empty iteration summary")
    x = iteration_summary["ale_sum"].to_numpy(dtype=float)
    ci = var_confidence_interval(x, quantile, bootstrap_reps, seed)
    return {
        "iterations": int(x.size),
        "ale_var": ci["point"],
        "var_ci_lower": ci["ci_lower"],
        "var_ci_upper": ci["ci_upper"],
        "ale_mean": float(x.mean()),
        "ale_median": _percentile(x, 0.5),
        "ale_max": float(x.max()),
        "loss_events_median": _percentile(iteration_summary["loss_events"].to_numpy(dtype=float), 0.5),
    }


def loss_exceedance_curve(losses: np.ndarray, n: int = 200) -> pd.DataFrame:
    """
    Exceedance curve of simulated annual loss, normally the per-iteration
    `ale_sum`: P(ALE >= x) at `n` geometric loss levels running from the 1st
    percentile of the loss-making years (at least $1) up to the worst year.
    Probabilities are floored at 1/years so the curve stays on a log axis.
    """
    ale = np.asarray(losses, dtype=float)
    ale = np.sort(ale[np.isfinite(ale)])
    years = ale.size
    loss_years = ale[ale > 0]
    if loss_years.size == 0:
        return pd.DataFrame({"Loss": [1.0], "Exceedance_Prob": [0.0]})

    floor = max(1.0, _percentile(loss_years, 0.01))
    worst = float(ale[-1])
    if worst <= floor:
        return pd.DataFrame({"Loss": [worst], "Exceedance_Prob": [float(np.mean(ale >= worst))]})

    levels = np.geomspace(floor, worst, n)
    at_least = years - np.searchsorted(ale, levels, side="left")
    prob = np.clip(at_least / years, 1.0 / years, 1.0)
    return pd.DataFrame({"Loss": levels, "Exceedance_Prob": prob})
