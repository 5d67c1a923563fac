"""Pytest configuration and fixtures for the risk evaluator tests."""

import sys
from pathlib import Path

import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import SimulationConfig  # noqa: E402
from model_store import ModelStore, build_model  # noqa: E402


def scenario_row(scenario_id, domain_id, controls="", tef=("pert", 0, 2, 6),
                 tc=("pert", 0.2, 0.6, 0.95), lm=("pert", 1e4, 1e5, 1e6), **extra):
    """One qualitative_scenarios row; distributions given as (func, min, mode, max)."""
    row = {"scenario_id": scenario_id, "domain_id": domain_id,
           "scenario": f"scenario {scenario_id}", "tcomm": "Organized crime",
           "controls": controls}
    for prefix, (func, lo, mode, hi) in (("tef", tef), ("tc", tc), ("lm", lm)):
        row.update({f"{prefix}_func": func, f"{prefix}_min": lo,
                    f"{prefix}_mode": mode, f"{prefix}_max": hi})
    row.update(extra)
    return row


def make_tables(scenarios):
    domains = pd.DataFrame({"domain_id": ["D1", "D2"], "domain": ["Network", "Applications"]})
    capabilities = pd.DataFrame({
        "capability_id": ["C1", "C2", "C3"],
        "domain_id": ["D1", "D1", "D2"],
        "capability": ["Firewall", "Segmentation", "Secure SDLC"],
        "difficulty": [0.5, 0.7, 0.4],
    })
    return domains, capabilities, pd.DataFrame(scenarios)


@pytest.fixture
def model_tables():
    """Two domains, three scenarios with mixed distribution families."""
    return make_tables([
        scenario_row("S1", "D1", "C1, C2", tef=("pert", 1, 3, 10)),
        scenario_row("S2", "D1", "C2", tef=("pert", 0, 1, 5), tc=("pert", 0.1, 0.5, 0.9),
                     lm=("lognormal", None, None, None), lm_meanlog=11.0, lm_sdlog=1.0),
        scenario_row("S3", "D2", "C3", tc=("uniform", 0.0, None, 1.0),
                     lm=("triangular", 5e3, 5e4, 5e5)),
    ])


@pytest.fixture
def model(model_tables):
    return build_model("test", *model_tables)


@pytest.fixture
def constant_model():
    """Every draw fixed: 2 threat events, TC 0.9 beats every control, 1,000 per event."""
    const = dict(tef=("constant", None, 2, None), tc=("constant", None, 0.9, None),
                 lm=("constant", None, 1000, None))
    return build_model("constant", *make_tables([
        scenario_row("S1", "D1", "C1, C2", **const),
        scenario_row("S2", "D1", "C2", **const),
        scenario_row("S3", "D2", "C3", **const),
    ]))


@pytest.fixture
def config():
    return SimulationConfig(iterations=1000, seed=42, executor="serial", bootstrap_reps=0)


def write_model(base: Path, name: str, tables, tolerances=None) -> Path:
    path = base / name
    path.mkdir(parents=True)
    domains, capabilities, scenarios = tables
    domains.to_csv(path / "domains.csv", index=False)
    capabilities.to_csv(path / "capabilities.csv", index=False)
    scenarios.to_csv(path / "qualitative_scenarios.csv", index=False)
    if tolerances is not None:
        tolerances.to_csv(path / "risk_tolerances.csv", index=False)
    return path


@pytest.fixture
def store(tmp_path, model_tables):
    """Model directory holding 'test' (stochastic) and 'constant' models."""
    write_model(tmp_path, "test", model_tables,
                pd.DataFrame({"level": ["low", "medium", "high"], "amount": [1e5, 1e6, 5e6]}))
    const = dict(tef=("constant", None, 2, None), tc=("constant", None, 0.9, None),
                 lm=("constant", None, 1000, None))
    write_model(tmp_path, "constant", make_tables([
        scenario_row("S1", "D1", "C1, C2", **const),
        scenario_row("S2", "D1", "C2", **const),
        scenario_row("S3", "D2", "C3", **const),
    ]))
    return ModelStore(tmp_path)
