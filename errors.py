# errors.py
from __future__ import annotations

from typing import Optional

__all__ = [
    "EvaluatorError",
    "ModelNotFound",
    "ModelInvalid",
    "InvalidIterationCount",
    "SimulationFailure",
    "SimulationCancelled",
    "EmptyResultSet",
]


class EvaluatorError(Exception):
    """Base class for every error raised by the simulation engine."""


class ModelNotFound(EvaluatorError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"model not found: {name!r}")


class ModelInvalid(EvaluatorError):
    """
    A model failed validation. `table` names the source table
    (domains / capabilities / qualitative_scenarios / risk_tolerances /
    simulation_results) and `row` the offending row (0-based) when one can
    be pinned down.
    """

    def __init__(self, table: str, message: str, row: Optional[int] = None):
        self.table = table
        self.row = row
        self.message = message
        where = table if row is None else f"{table}[row {row}]"
        super().__init__(f"model invalid: {where}: {message}")


class InvalidIterationCount(EvaluatorError, ValueError):
    def __init__(self, iterations):
        self.iterations = iterations
        super().__init__(f"iterations must be a positive integer, got {iterations!r}")


class SimulationFailure(EvaluatorError):
    """Sampling raised for one scenario; the whole run is discarded."""

    def __init__(self, domain_id: str, scenario_id: str, cause: BaseException):
        self.domain_id = domain_id
        self.scenario_id = scenario_id
        self.cause = cause
        super().__init__(f"simulation failed for scenario {domain_id}/{scenario_id}: {cause}")


class SimulationCancelled(EvaluatorError):
    """The run was abandoned before every scenario finished."""


class EmptyResultSet(UserWarning):
    """No scenario produced a nonzero loss. Valid, but nothing to plot."""
