# api.py
"""
Engine API used by the dashboard
--------------------------------
run_model_simulation        load a named model and simulate it
summarize_model_simulation  reduce a run into the summary tables
load_simulation_model       rebuild a run from saved samples (no simulation)
save_simulation_model       replace a model's saved samples with this run
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, Optional

import pandas as pd

from config import SimulationConfig, models_dir
from engine import SimulationResults, run_simulation, validate_iterations
from model_store import ModelStore
from ranking import identify_outliers
from risk import RiskTolerance, classify_summary
from summarize import (
    loss_exceedance_curve,
    overall_summary,
    summarize_domains,
    summarize_iterations,
    summarize_scenarios,
)

__all__ = [
    "SummaryResults",
    "default_store",
    "run_model_simulation",
    "summarize_model_simulation",
    "load_simulation_model",
    "save_simulation_model",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SummaryResults:
    domain_summary: pd.DataFrame
    scenario_summary: pd.DataFrame
    scenarios: pd.DataFrame
    iteration_summary: pd.DataFrame
    risk_tolerances: pd.DataFrame
    overall: Dict[str, float]
    exceedance_curve: pd.DataFrame


def default_store() -> ModelStore:
    return ModelStore(models_dir())


def run_model_simulation(
    model_name: str,
    iterations: int,
    store: Optional[ModelStore] = None,
    config: Optional[SimulationConfig] = None,
    cancel_event=None,
    progress=None,
) -> SimulationResults:
    """
    Raises InvalidIterationCount before touching the store, then
    ModelNotFound / ModelInvalid from loading, then whatever the run raises.
    """
    iterations = validate_iterations(iterations)
    store = store or default_store()
    model = store.load(model_name)
    config = replace(config or SimulationConfig(), iterations=iterations)
    return run_simulation(model, config, cancel_event=cancel_event, progress=progress)


def _tolerance_frame(tolerances: Iterable[RiskTolerance]) -> pd.DataFrame:
    return pd.DataFrame([{"level": t.level, "amount": t.amount} for t in tolerances],
                        columns=["level", "amount"])


def summarize_model_simulation(
    model_results: SimulationResults,
    risk_tolerances: Optional[Iterable[RiskTolerance]] = None,
) -> SummaryResults:
    """Build every summary table for one completed run."""
    tolerances = tuple(risk_tolerances) if risk_tolerances is not None else model_results.model.risk_tolerances
    q = model_results.config.var_quantile

    scenario_summary = identify_outliers(classify_summary(summarize_scenarios(model_results, q), tolerances))
    domain_summary = classify_summary(summarize_domains(model_results, q), tolerances)
    iteration_summary = summarize_iterations(model_results)

    if iteration_summary.empty:
        logger.warning("Model %s has no scenarios; summaries are empty", model_results.model.name)
        overall: Dict[str, float] = {}
        curve = loss_exceedance_curve([])
    else:
        overall = overall_summary(iteration_summary, q,
                                  bootstrap_reps=model_results.config.bootstrap_reps,
                                  seed=model_results.config.seed)
        curve = loss_exceedance_curve(iteration_summary["ale_sum"].to_numpy())
        if overall["ale_max"] == 0:
            logger.warning("Model %s produced no losses in %d iterations",
                           model_results.model.name, overall["iterations"])

    return SummaryResults(
        domain_summary=domain_summary,
        scenario_summary=scenario_summary,
        scenarios=model_results.model.scenarios_frame(),
        iteration_summary=iteration_summary,
        risk_tolerances=_tolerance_frame(tolerances),
        overall=overall,
        exceedance_curve=curve,
    )


def load_simulation_model(model_name: str, store: Optional[ModelStore] = None,
                          config: Optional[SimulationConfig] = None) -> SimulationResults:
    """Saved results for `model_name`, validated against the model definition."""
    store = store or default_store()
    model = store.load(model_name)
    results = SimulationResults.from_frame(model, store.load_results(model_name), config)
    logger.info("Loaded saved results for %s (%d iterations)", model_name, results.iterations)
    return results


def save_simulation_model(model_results: SimulationResults, store: Optional[ModelStore] = None) -> Path:
    store = store or default_store()
    return store.save_results(model_results.model.name, model_results.to_frame())
