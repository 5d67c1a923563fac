# results.py
"""
Published results and the request runner
-----------------------------------------
The dashboard never touches shared state directly. It submits a
LoadResultsRequest or RunSimulationRequest to a TaskRunner and listens for
RunCompleted events. Only a run that finished, and is still the newest
request, replaces the ResultStore snapshot; readers therefore always see
one complete run.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

import api
from config import SimulationConfig
from engine import SimulationResults
from errors import EvaluatorError, SimulationCancelled
from model_store import ModelStore

__all__ = [
    "ResultSnapshot",
    "ResultStore",
    "LoadResultsRequest",
    "RunSimulationRequest",
    "RunCompleted",
    "TaskRunner",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResultSnapshot:
    model_name: str
    source: str                      # "simulation" | "saved"
    results: SimulationResults
    summary: api.SummaryResults
    completed_at: float = field(default_factory=time.time)

    @property
    def run_id(self) -> str:
        return self.results.run_id


class ResultStore:
    """Holds the current snapshot; replacement is a single reference swap under a lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot: Optional[ResultSnapshot] = None

    @property
    def current(self) -> Optional[ResultSnapshot]:
        with self._lock:
            return self._snapshot

    def publish(self, snapshot: ResultSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot
        logger.info("Published results for %s (run %s)", snapshot.model_name, snapshot.run_id)


# ---------------------------
# Requests / events
# ---------------------------

@dataclass(frozen=True)
class LoadResultsRequest:
    model_name: str
    config: Optional[SimulationConfig] = None    # runner default when None


@dataclass(frozen=True)
class RunSimulationRequest:
    model_name: str
    iterations: int
    save: bool = False               # also replace the model's saved samples
    config: Optional[SimulationConfig] = None


Request = Union[LoadResultsRequest, RunSimulationRequest]


@dataclass(frozen=True)
class RunCompleted:
    request: Request
    status: str                      # completed | cancelled | superseded | failed
    snapshot: Optional[ResultSnapshot] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class TaskRunner:
    """
    Processes requests one at a time on a background thread. Submitting a new
    request cancels the one in flight; a cancelled, superseded or failed
    request leaves the ResultStore untouched. Requests may carry their own
    SimulationConfig, so one runner serves every settings combination.
    """

    def __init__(self, result_store: ResultStore, model_store: ModelStore,
                 config: Optional[SimulationConfig] = None):
        self.result_store = result_store
        self.model_store = model_store
        self.config = config or SimulationConfig()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="task-runner")
        self._lock = threading.Lock()
        self._generation = 0
        self._cancel: Optional[threading.Event] = None
        self._listeners: List[Callable[[RunCompleted], None]] = []

    def subscribe(self, callback: Callable[[RunCompleted], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    def submit(self, request: Request) -> "Future[RunCompleted]":
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()
            self._generation += 1
            generation = self._generation
            cancel = threading.Event()
            self._cancel = cancel
        logger.info("Queued %s (generation %d)", request, generation)
        return self._executor.submit(self._process, request, generation, cancel)

    def cancel(self) -> None:
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()

    def shutdown(self, wait: bool = True) -> None:
        self.cancel()
        self._executor.shutdown(wait=wait)

    def _execute(self, request: Request, cancel: threading.Event) -> ResultSnapshot:
        config = request.config or self.config
        if isinstance(request, RunSimulationRequest):
            results = api.run_model_simulation(request.model_name, request.iterations,
                                               store=self.model_store, config=config,
                                               cancel_event=cancel)
            source = "simulation"
        elif isinstance(request, LoadResultsRequest):
            results = api.load_simulation_model(request.model_name, store=self.model_store,
                                                config=config)
            source = "saved"
        else:
            raise TypeError(f"unsupported request {request!r}")

        if cancel.is_set():
            raise SimulationCancelled(f"{request} cancelled")
        summary = api.summarize_model_simulation(results)
        return ResultSnapshot(model_name=request.model_name, source=source,
                              results=results, summary=summary)

    def _process(self, request: Request, generation: int, cancel: threading.Event) -> RunCompleted:
        try:
            snapshot = self._execute(request, cancel)
        except SimulationCancelled:
            logger.info("%s cancelled", request)
            event = RunCompleted(request, "cancelled")
        except EvaluatorError as exc:
            logger.error("%s failed: %s", request, exc)
            event = RunCompleted(request, "failed", error=exc)
        except Exception as exc:
            logger.exception("%s failed unexpectedly", request)
            event = RunCompleted(request, "failed", error=exc)
        else:
            with self._lock:
                current = generation == self._generation and not cancel.is_set()
                if current:
                    self.result_store.publish(snapshot)
            if not current:
                event = RunCompleted(request, "superseded")
            else:
                event = self._save(request, snapshot)
        self._emit(event)
        return event

    def _save(self, request: Request, snapshot: ResultSnapshot) -> RunCompleted:
        """The run is already published; a failed save still reports the request as failed."""
        if not getattr(request, "save", False):
            return RunCompleted(request, "completed", snapshot=snapshot)
        try:
            api.save_simulation_model(snapshot.results, store=self.model_store)
        except Exception as exc:
            logger.exception("Saving results for %s failed", request.model_name)
            return RunCompleted(request, "failed", snapshot=snapshot, error=exc)
        return RunCompleted(request, "completed", snapshot=snapshot)

    def _emit(self, event: RunCompleted) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(event)
            except Exception:
                logger.exception("Completion listener %r raised", callback)
