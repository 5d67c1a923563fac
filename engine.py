# engine.py
from __future__ import annotations

import logging
import math
import time
import uuid
import zlib
from concurrent.futures import FIRST_COMPLETED, Executor, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from config import SimulationConfig
from controls import control_profile, resistance_strength
from errors import InvalidIterationCount, ModelInvalid, SimulationCancelled, SimulationFailure
from model_store import Model, Scenario
from sampler import SAMPLE_COLUMNS, sample_scenario

__all__ = [
    "SimulationResults",
    "validate_iterations",
    "scenario_seed",
    "simulate_scenario",
    "run_simulation",
]

logger = logging.getLogger(__name__)

ScenarioKey = Tuple[str, str]
RESULT_COLUMNS = ["domain_id", "scenario_id"] + SAMPLE_COLUMNS

# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class SimulationResults:
    """
    Complete output of one run: one sample frame per (domain_id, scenario_id),
    each holding exactly `iterations` rows. Never mutated after construction.
    """
    model: Model
    config: SimulationConfig
    iterations: int
    samples: Dict[ScenarioKey, pd.DataFrame]
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    elapsed: float = 0.0

    def scenario_samples(self, domain_id: str, scenario_id: str) -> pd.DataFrame:
        return self.samples[(domain_id, scenario_id)]

    def to_frame(self) -> pd.DataFrame:
        """Long table: one row per scenario per iteration."""
        if not self.samples:
            return pd.DataFrame(columns=RESULT_COLUMNS)
        parts = []
        for (domain_id, scenario_id), df in sorted(self.samples.items()):
            parts.append(df.assign(domain_id=domain_id, scenario_id=scenario_id))
        return pd.concat(parts, ignore_index=True)[RESULT_COLUMNS]

    @classmethod
    def from_frame(cls, model: Model, frame: pd.DataFrame,
                   config: Optional[SimulationConfig] = None) -> "SimulationResults":
        """Rebuild results from a saved long table (no simulation)."""
        missing = [c for c in RESULT_COLUMNS if c not in frame.columns]
        if missing:
            raise ModelInvalid("simulation_results", f"missing columns {missing}")
        known = {s.key for s in model.scenarios}
        samples: Dict[ScenarioKey, pd.DataFrame] = {}
        for key, df in frame.groupby(["domain_id", "scenario_id"], sort=True):
            key = (str(key[0]), str(key[1]))
            if key not in known:
                raise ModelInvalid("simulation_results", f"unknown scenario {key[0]}/{key[1]}")
            df = df.sort_values("iteration")[SAMPLE_COLUMNS].reset_index(drop=True)
            df["tc_exceeded"] = df["tc_exceeded"].astype(bool)
            samples[key] = df
        counts = {len(df) for df in samples.values()}
        if len(counts) > 1:
            raise ModelInvalid("simulation_results", "scenarios have different iteration counts")
        iterations = counts.pop() if counts else 0
        cfg = config or SimulationConfig(iterations=max(iterations, 1))
        return cls(model=model, config=cfg, iterations=iterations, samples=samples)


# ---------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------

def _stable_key(s: str) -> int:
    """Process-independent 32-bit key for a string (hash() is salted per process)."""
    return zlib.crc32(str(s).encode("utf-8"))


def scenario_seed(seed: int, domain_id: str, scenario_id: str, batch: int = 0) -> np.random.SeedSequence:
    """
    Independent, reproducible stream for one batch of one scenario. Depends only
    on the run seed, the scenario identity and the batch number, never on
    scheduling, so any worker count yields the same draws.
    """
    return np.random.SeedSequence(int(seed), spawn_key=(_stable_key(domain_id), _stable_key(scenario_id), int(batch)))


def validate_iterations(iterations) -> int:
    if isinstance(iterations, bool):
        raise InvalidIterationCount(iterations)
    if isinstance(iterations, float):
        if not iterations.is_integer():
            raise InvalidIterationCount(iterations)
        iterations = int(iterations)
    if not isinstance(iterations, (int, np.integer)) or iterations < 1:
        raise InvalidIterationCount(iterations)
    return int(iterations)


def _validate_scenarios(model: Model) -> None:
    for i, s in enumerate(model.scenarios):
        for prefix, spec, upper in (("tef", s.tef_params, math.inf),
                                    ("tc", s.tc_params, 1.0),
                                    ("lm", s.lm_params, math.inf)):
            try:
                spec.validate(0.0, upper)
            except ValueError as exc:
                raise ModelInvalid("qualitative_scenarios",
                                   f"scenario {s.scenario_id!r} {prefix}: {exc}", row=i) from None


# ---------------------------------------------------------------------
# Work units
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class _WorkUnit:
    scenario: Scenario
    resistance: float
    batch: int
    start: int      # first iteration number (1-based)
    size: int
    seed: int
    vulnerability_policy: str
    loss_policy: str


def _run_unit(unit: _WorkUnit) -> pd.DataFrame:
    rng = np.random.default_rng(scenario_seed(unit.seed, unit.scenario.domain_id,
                                              unit.scenario.scenario_id, unit.batch))
    return sample_scenario(unit.scenario, unit.resistance, unit.size, rng,
                           vulnerability_policy=unit.vulnerability_policy,
                           loss_policy=unit.loss_policy, start_iteration=unit.start)


def _plan(model: Model, iterations: int, config: SimulationConfig) -> List[_WorkUnit]:
    units = []
    for scenario in model.scenarios:
        profile = control_profile(model, scenario)
        resistance = resistance_strength(profile.difficulties, config.resistance_policy, profile.weights)
        n_batches = max(1, math.ceil(iterations / config.batch_size))
        for b in range(n_batches):
            start = b * config.batch_size
            size = min(config.batch_size, iterations - start)
            units.append(_WorkUnit(scenario=scenario, resistance=resistance, batch=b,
                                   start=start + 1, size=size, seed=config.seed,
                                   vulnerability_policy=config.vulnerability_policy,
                                   loss_policy=config.loss_policy))
    return units


def simulate_scenario(scenario: Scenario, model: Model, iterations: int,
                      config: Optional[SimulationConfig] = None) -> pd.DataFrame:
    """All iterations for one scenario, in-process. Same draws as run_simulation."""
    config = config or SimulationConfig(iterations=iterations)
    iterations = validate_iterations(iterations)
    sub = Model(name=model.name, domains=model.domains, capabilities=model.capabilities,
                scenarios=(scenario,), risk_tolerances=model.risk_tolerances)
    frames = [_run_unit(u) for u in _plan(sub, iterations, config)]
    return pd.concat(frames, ignore_index=True)


def _make_executor(config: SimulationConfig) -> Executor:
    if config.executor == "process":
        return ProcessPoolExecutor(max_workers=config.workers)
    return ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="simulate")


# ---------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------

def run_simulation(
    model: Model,
    config: Optional[SimulationConfig] = None,
    iterations: Optional[int] = None,
    cancel_event=None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> SimulationResults:
    """
    Simulate every scenario in `model` for `iterations` years (defaults to
    config.iterations). Work is split into per-scenario batches and fanned
    out over the configured executor; nothing is returned until every unit
    has finished.

    Raises InvalidIterationCount, ModelInvalid (before any work starts),
    SimulationFailure naming the first scenario that raised, or
    SimulationCancelled if `cancel_event` is set while the run is in flight.
    """
    config = config or SimulationConfig()
    iterations = validate_iterations(config.iterations if iterations is None else iterations)
    _validate_scenarios(model)

    units = _plan(model, iterations, config)
    total = len(units)
    logger.info("Simulating model %s: %d scenarios x %d iterations (%d units, executor=%s)",
                model.name, len(model.scenarios), iterations, total, config.executor)
    t0 = time.perf_counter()

    done: Dict[Tuple[ScenarioKey, int], pd.DataFrame] = {}

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _record(unit: _WorkUnit, frame: pd.DataFrame):
        done[(unit.scenario.key, unit.batch)] = frame
        logger.debug("Scenario %s/%s batch %d done", unit.scenario.domain_id,
                     unit.scenario.scenario_id, unit.batch)
        if progress is not None:
            progress(len(done), total)

    if config.executor == "serial" or total <= 1:
        for unit in units:
            if _cancelled():
                raise SimulationCancelled(f"run of {model.name} cancelled")
            try:
                frame = _run_unit(unit)
            except Exception as exc:
                logger.error("Sampling failed for scenario %s/%s: %s",
                             unit.scenario.domain_id, unit.scenario.scenario_id, exc)
                raise SimulationFailure(unit.scenario.domain_id, unit.scenario.scenario_id, exc) from exc
            _record(unit, frame)
    else:
        executor = _make_executor(config)
        try:
            pending = {executor.submit(_run_unit, u): u for u in units}
            while pending:
                if _cancelled():
                    raise SimulationCancelled(f"run of {model.name} cancelled")
                finished, _ = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                for fut in finished:
                    unit = pending.pop(fut)
                    try:
                        frame = fut.result()
                    except Exception as exc:
                        logger.error("Sampling failed for scenario %s/%s: %s",
                                     unit.scenario.domain_id, unit.scenario.scenario_id, exc)
                        raise SimulationFailure(unit.scenario.domain_id,
                                                unit.scenario.scenario_id, exc) from exc
                    _record(unit, frame)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    samples: Dict[ScenarioKey, pd.DataFrame] = {}
    for scenario in model.scenarios:
        batches = sorted((b, f) for (k, b), f in done.items() if k == scenario.key)
        frame = pd.concat([f for _, f in batches], ignore_index=True)
        if len(frame) != iterations:
            raise SimulationFailure(scenario.domain_id, scenario.scenario_id,
                                    RuntimeError(f"expected {iterations} samples, got {len(frame)}"))
        samples[scenario.key] = frame

    elapsed = time.perf_counter() - t0
    logger.info("Simulation of %s finished in %.2fs", model.name, elapsed)
    return SimulationResults(model=model, config=config, iterations=iterations,
                             samples=samples, elapsed=elapsed)
