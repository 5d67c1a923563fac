# config.py
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

__all__ = [
    "SimulationConfig",
    "load_config",
    "models_dir",
    "RESISTANCE_POLICIES",
    "VULNERABILITY_POLICIES",
    "LOSS_POLICIES",
    "EXECUTORS",
]

logger = logging.getLogger(__name__)

MODELS_DIR_ENV = "EVALUATOR_MODELS_DIR"
DEFAULT_MODELS_DIR = "models"

RESISTANCE_POLICIES = ("min", "mean", "max", "weighted")
VULNERABILITY_POLICIES = ("threshold", "probabilistic")
LOSS_POLICIES = ("per_event", "single")
EXECUTORS = ("process", "thread", "serial")


@dataclass(frozen=True)
class SimulationConfig:
    iterations: int = 10000          # Monte Carlo years per scenario
    seed: int = 42                   # base seed; per-scenario streams derive from it
    workers: Optional[int] = None    # pool size (None = executor default)
    executor: str = "process"        # process | thread | serial
    batch_size: int = 10000          # iterations per work unit within a scenario
    resistance_policy: str = "min"   # how multiple control difficulties combine
    vulnerability_policy: str = "threshold"
    loss_policy: str = "per_event"   # per_event: independent LM per loss event
    var_quantile: float = 0.95       # ale_var percentile
    bootstrap_reps: int = 500        # VaR CI resamples (0 disables)

    def __post_init__(self):
        if self.executor not in EXECUTORS:
            raise ValueError(f"executor must be one of {EXECUTORS}, got {self.executor!r}")
        if self.resistance_policy not in RESISTANCE_POLICIES:
            raise ValueError(f"resistance_policy must be one of {RESISTANCE_POLICIES}")
        if self.vulnerability_policy not in VULNERABILITY_POLICIES:
            raise ValueError(f"vulnerability_policy must be one of {VULNERABILITY_POLICIES}")
        if self.loss_policy not in LOSS_POLICIES:
            raise ValueError(f"loss_policy must be one of {LOSS_POLICIES}")
        if not 0.0 < self.var_quantile < 1.0:
            raise ValueError("var_quantile must be in (0, 1)")
        if self.seed < 0:
            raise ValueError("seed must be >= 0")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.workers is not None and self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.bootstrap_reps < 0:
            raise ValueError("bootstrap_reps must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SimulationConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            logger.warning("Ignoring unknown simulation config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in d.items() if k in known})


def load_config(path: Union[str, Path]) -> SimulationConfig:
    """
    Read a JSON parameters file. Accepts either a flat mapping or one with
    the settings under a "simulation" block (the dashboard's export format).
    """
    with open(path, "r", encoding="utf-8") as fh:
        params = json.load(fh)
    block = params.get("simulation", params)
    return SimulationConfig.from_dict(block)


def models_dir() -> Path:
    return Path(os.environ.get(MODELS_DIR_ENV, DEFAULT_MODELS_DIR))
