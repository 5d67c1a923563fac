# risk.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Sequence, Tuple

import numpy as np
import pandas as pd

__all__ = [
    "RiskTolerance",
    "DEFAULT_RISK_TOLERANCES",
    "IMPACT_LEVELS",
    "LIKELIHOOD_LEVELS",
    "impact_level",
    "likelihood_level",
    "classify_tolerance",
    "tolerance_status",
    "classify_summary",
    "risk_matrix",
]

# ---------------------------
# Fixed matrix thresholds
# ---------------------------
# Each bin is [lower, upper): a value sitting exactly on an edge belongs to the
# higher bin. The top bin is open-ended.

IMPACT_LEVELS: Tuple[Tuple[str, float], ...] = (
    ("Low", 0.0),
    ("Medium", 2e6),
    ("High", 5e6),
    ("Serious", 15e6),
    ("Extreme", 40e6),
)

LIKELIHOOD_LEVELS: Tuple[Tuple[str, float], ...] = (
    ("Rare", 0.0),
    ("Unlikely", 0.05),
    ("Possible", 0.30),
    ("Likely", 0.50),
    ("Almost Certain", 0.80),
)

_STATUS = {"high": "danger", "medium": "warning", "low": "success"}


@dataclass(frozen=True)
class RiskTolerance:
    level: str      # low | medium | high
    amount: float   # VaR at or above this amount reaches the level

    def __post_init__(self):
        if self.level not in _STATUS:
            raise ValueError(f"risk tolerance level must be low/medium/high, got {self.level!r}")
        if not np.isfinite(self.amount) or self.amount < 0:
            raise ValueError(f"risk tolerance amount must be a finite value >= 0, got {self.amount!r}")


DEFAULT_RISK_TOLERANCES: Tuple[RiskTolerance, ...] = (
    RiskTolerance("low", 1e6),
    RiskTolerance("medium", 5e6),
    RiskTolerance("high", 15e6),
)


def _bin(value: float, levels: Sequence[Tuple[str, float]]) -> str:
    if value is None or not np.isfinite(value):
        raise ValueError(f"cannot classify non-finite value {value!r}")
    if value < levels[0][1]:
        raise ValueError(f"cannot classify negative value {value!r}")
    label = levels[0][0]
    for name, lower in levels:
        if value >= lower:
            label = name
    return label


def impact_level(ale_var: float) -> str:
    """Impact bin for a VaR figure: Low / Medium / High / Serious / Extreme."""
    return _bin(ale_var, IMPACT_LEVELS)


def likelihood_level(mean_loss_events: float) -> str:
    """
    Likelihood bin for a mean annual loss-event rate. Rates above 1.0 are
    treated as Almost Certain.
    """
    return _bin(mean_loss_events, LIKELIHOOD_LEVELS)


def classify_tolerance(ale_var: float, tolerances: Iterable[RiskTolerance]) -> str:
    """
    Compare VaR against the high then medium thresholds; the first one met
    wins, otherwise the scenario is within tolerance ("low").
    """
    amounts: Dict[str, float] = {t.level: t.amount for t in tolerances}
    for level in ("high", "medium"):
        if level in amounts and ale_var >= amounts[level]:
            return level
    return "low"


def tolerance_status(level: str) -> str:
    """Dashboard status colour for a tolerance level (danger / warning / success)."""
    return _STATUS[level]


def classify_summary(summary: pd.DataFrame, tolerances: Iterable[RiskTolerance]) -> pd.DataFrame:
    """
    Return a copy of a scenario or domain summary with `impact`, `likelihood`
    and `tolerance` columns added. The input frame is not modified.
    """
    tolerances = tuple(tolerances)
    out = summary.copy()
    if out.empty:
        for col in ("impact", "likelihood", "tolerance"):
            out[col] = pd.Series(dtype=object)
        return out
    out["impact"] = [impact_level(v) for v in out["ale_var"]]
    out["likelihood"] = [likelihood_level(v) for v in out["loss_events_mean"]]
    out["tolerance"] = [classify_tolerance(v, tolerances) for v in out["ale_var"]]
    return out


def risk_matrix(summary: pd.DataFrame, label: str = "scenario_id") -> pd.DataFrame:
    """
    Impact x Likelihood grid (rows: impact, high to low; columns: likelihood,
    low to high) holding the count of summary rows in each cell.
    """
    impacts = [name for name, _ in IMPACT_LEVELS][::-1]
    likelihoods = [name for name, _ in LIKELIHOOD_LEVELS]
    grid = pd.DataFrame(0, index=pd.Index(impacts, name="impact"),
                        columns=pd.Index(likelihoods, name="likelihood"))
    if summary.empty:
        return grid
    classified = summary if "impact" in summary else classify_summary(summary, DEFAULT_RISK_TOLERANCES)
    counts = classified.groupby(["impact", "likelihood"])[label].count()
    for (imp, lik), n in counts.items():
        grid.loc[imp, lik] = int(n)
    return grid
