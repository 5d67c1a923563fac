# sampler.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy import stats

from model_store import DistributionSpec, Scenario

__all__ = [
    "LossSample",
    "SAMPLE_COLUMNS",
    "sample_distribution",
    "exceedance_probability",
    "sample_scenario",
    "draw_loss_sample",
]

PERT_SHAPE = 4.0

SAMPLE_COLUMNS = [
    "iteration",
    "threat_events",
    "tc_exceeded",
    "vuln",
    "loss_events",
    "sle_min",
    "sle_max",
    "sle_mean",
    "ale",
]


@dataclass(frozen=True)
class LossSample:
    """One Monte Carlo year for one scenario."""
    domain_id: str
    scenario_id: str
    iteration: int
    threat_events: int
    tc_exceeded: bool
    vuln: float
    loss_events: int
    sle_min: float
    sle_max: float
    sle_mean: float
    ale: float


# ---------------------------------------------------------------------
# Distributions
# ---------------------------------------------------------------------

def _pert_ab(spec: DistributionSpec):
    lam = PERT_SHAPE if spec.shape is None else spec.shape
    span = spec.max - spec.min
    a = 1.0 + lam * (spec.mode - spec.min) / span
    b = 1.0 + lam * (spec.max - spec.mode) / span
    return a, b


def _frozen(spec: DistributionSpec):
    """scipy frozen distribution for every non-constant family."""
    if spec.func == "pert":
        a, b = _pert_ab(spec)
        return stats.beta(a, b, loc=spec.min, scale=spec.max - spec.min)
    if spec.func == "triangular":
        span = spec.max - spec.min
        return stats.triang(c=(spec.mode - spec.min) / span, loc=spec.min, scale=span)
    if spec.func == "uniform":
        return stats.uniform(loc=spec.min, scale=spec.max - spec.min)
    if spec.func == "lognormal":
        return stats.lognorm(s=spec.sdlog, scale=np.exp(spec.meanlog))
    raise ValueError(f"no continuous form for {spec.func!r}")


def _constant(spec: DistributionSpec) -> float:
    return float(spec.mode if spec.mode is not None else spec.min)


def sample_distribution(spec: DistributionSpec, size: int, rng: np.random.Generator) -> np.ndarray:
    """Draw `size` values from `spec` using the caller's generator."""
    if size == 0:
        return np.zeros(0, dtype=float)
    if spec.func == "constant":
        return np.full(size, _constant(spec), dtype=float)
    out = np.asarray(_frozen(spec).rvs(size=size, random_state=rng), dtype=float)
    if spec.func == "lognormal" and spec.max is not None:
        out = np.minimum(out, spec.max)
    return out


def exceedance_probability(spec: DistributionSpec, threshold: float) -> float:
    """P(X > threshold) under `spec`."""
    if spec.func == "constant":
        return 1.0 if _constant(spec) > threshold else 0.0
    if spec.func == "lognormal" and spec.max is not None and threshold >= spec.max:
        return 0.0
    return float(np.clip(_frozen(spec).sf(threshold), 0.0, 1.0))


# ---------------------------------------------------------------------
# Scenario sampling
# ---------------------------------------------------------------------

def _per_event_losses(loss_events: np.ndarray, lm: DistributionSpec, rng: np.random.Generator):
    n = loss_events.size
    ale = np.zeros(n, dtype=float)
    sle_min = np.zeros(n, dtype=float)
    sle_max = np.zeros(n, dtype=float)

    hit = np.flatnonzero(loss_events > 0)
    if hit.size == 0:
        return ale, sle_min, sle_max, np.zeros(n, dtype=float)

    counts = loss_events[hit]
    draws = np.clip(sample_distribution(lm, int(counts.sum()), rng), 0.0, None)
    starts = np.concatenate(([0], np.cumsum(counts)[:-1]))
    ale[hit] = np.add.reduceat(draws, starts)
    sle_min[hit] = np.minimum.reduceat(draws, starts)
    sle_max[hit] = np.maximum.reduceat(draws, starts)

    sle_mean = np.zeros(n, dtype=float)
    sle_mean[hit] = ale[hit] / counts
    return ale, sle_min, sle_max, sle_mean


def _single_loss(loss_events: np.ndarray, lm: DistributionSpec, rng: np.random.Generator):
    magnitude = np.clip(sample_distribution(lm, loss_events.size, rng), 0.0, None)
    sle = np.where(loss_events > 0, magnitude, 0.0)
    return loss_events * magnitude, sle, sle.copy(), sle.copy()


def sample_scenario(
    scenario: Scenario,
    resistance: float,
    iterations: int,
    rng: np.random.Generator,
    vulnerability_policy: str = "threshold",
    loss_policy: str = "per_event",
    start_iteration: int = 1,
) -> pd.DataFrame:
    """
    Draw `iterations` years for one scenario and return one row per year
    (columns: SAMPLE_COLUMNS). Iteration numbers start at `start_iteration`.

    Threat events are rounded TEF draws. Each year draws one threat
    capability value and compares it against the scenario's resistance
    strength; `tc_exceeded` records that comparison whatever the policy.
      threshold:      every threat event in an exceeding year is a loss event
      probabilistic:  loss events ~ Binomial(threat events, P(TC > resistance))
    """
    n = int(iterations)
    tef = np.clip(np.rint(sample_distribution(scenario.tef_params, n, rng)), 0, None).astype(np.int64)
    tc = np.clip(sample_distribution(scenario.tc_params, n, rng), 0.0, 1.0)
    tc_exceeded = tc > resistance

    if vulnerability_policy == "threshold":
        vuln = tc_exceeded.astype(float)
        loss_events = np.where(tc_exceeded, tef, 0).astype(np.int64)
    elif vulnerability_policy == "probabilistic":
        p = exceedance_probability(scenario.tc_params, resistance)
        vuln = np.full(n, p, dtype=float)
        loss_events = rng.binomial(tef, p).astype(np.int64)
    else:
        raise ValueError(f"unknown vulnerability policy {vulnerability_policy!r}")

    if loss_policy == "per_event":
        ale, sle_min, sle_max, sle_mean = _per_event_losses(loss_events, scenario.lm_params, rng)
    elif loss_policy == "single":
        ale, sle_min, sle_max, sle_mean = _single_loss(loss_events, scenario.lm_params, rng)
    else:
        raise ValueError(f"unknown loss policy {loss_policy!r}")

    return pd.DataFrame({
        "iteration": np.arange(start_iteration, start_iteration + n, dtype=np.int64),
        "threat_events": tef,
        "tc_exceeded": tc_exceeded,
        "vuln": vuln,
        "loss_events": loss_events,
        "sle_min": sle_min,
        "sle_max": sle_max,
        "sle_mean": sle_mean,
        "ale": ale,
    }, columns=SAMPLE_COLUMNS)


def draw_loss_sample(
    scenario: Scenario,
    resistance: float,
    iteration: int,
    rng: Optional[np.random.Generator] = None,
    vulnerability_policy: str = "threshold",
    loss_policy: str = "per_event",
) -> LossSample:
    """Single-year convenience wrapper around sample_scenario."""
    rng = rng if rng is not None else np.random.default_rng()
    row = sample_scenario(scenario, resistance, 1, rng, vulnerability_policy,
                          loss_policy, start_iteration=iteration).iloc[0]
    return LossSample(
        domain_id=scenario.domain_id,
        scenario_id=scenario.scenario_id,
        iteration=int(row["iteration"]),
        threat_events=int(row["threat_events"]),
        tc_exceeded=bool(row["tc_exceeded"]),
        vuln=float(row["vuln"]),
        loss_events=int(row["loss_events"]),
        sle_min=float(row["sle_min"]),
        sle_max=float(row["sle_max"]),
        sle_mean=float(row["sle_mean"]),
        ale=float(row["ale"]),
    )
