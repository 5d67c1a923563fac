## controls.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

__all__ = [
    "ControlProfile",
    "control_profile",
    "resistance_strength",
]

# ---------------------------
# Data structures
# ---------------------------

@dataclass(frozen=True)
class ControlProfile:
    """Difficulties (and weights) of the capabilities applied to one scenario."""
    capability_ids: Tuple[str, ...] = ()
    difficulties: Tuple[float, ...] = ()
    weights: Tuple[float, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.difficulties


def control_profile(model, scenario) -> ControlProfile:
    caps = model.controls_for(scenario)
    return ControlProfile(
        capability_ids=tuple(c.capability_id for c in caps),
        difficulties=tuple(float(c.difficulty) for c in caps),
        weights=tuple(float(c.weight) for c in caps),
    )

# ---------------------------
# Combination policies
# ---------------------------

def _weighted(d: np.ndarray, w: np.ndarray) -> float:
    total = w.sum()
    if total <= 0:
        return float(d.mean())
    return float((d * w).sum() / total)


def resistance_strength(
    difficulties: Sequence[float],
    policy: str = "min",
    weights: Optional[Sequence[float]] = None,
) -> float:
    """
    Combine control difficulties into a single resistance strength in [0, 1].
      - min:      weakest control dominates
      - mean:     simple average
      - max:      strongest control dominates
      - weighted: weight-averaged difficulty
    No controls means no resistance (0.0).
    """
    d = np.asarray(difficulties, dtype=float)
    if d.size == 0:
        return 0.0
    if policy == "min":
        r = float(d.min())
    elif policy == "mean":
        r = float(d.mean())
    elif policy == "max":
        r = float(d.max())
    elif policy == "weighted":
        w = np.ones_like(d) if weights is None else np.asarray(weights, dtype=float)
        if w.shape != d.shape:
            raise ValueError("weights must match difficulties")
        r = _weighted(d, w)
    else:
        raise ValueError(f"unknown resistance policy {policy!r}")
    return float(np.clip(r, 0.0, 1.0))
