# model_store.py
"""
Model Store
-----------
Loads a named model (domains, capabilities, qualitative scenarios) from a
directory of CSV tables and returns an immutable, validated in-memory Model.

Layout of a model directory:
    <models_dir>/<name>/domains.csv
    <models_dir>/<name>/capabilities.csv
    <models_dir>/<name>/qualitative_scenarios.csv
    <models_dir>/<name>/risk_tolerances.csv       (optional)
    <models_dir>/<name>/simulation_results.csv    (written by save_results)
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from errors import ModelInvalid, ModelNotFound
from risk import DEFAULT_RISK_TOLERANCES, RiskTolerance

__all__ = [
    "DistributionSpec",
    "Domain",
    "Capability",
    "Scenario",
    "Model",
    "build_model",
    "read_risk_tolerances",
    "ModelStore",
    "DISTRIBUTIONS",
]

logger = logging.getLogger(__name__)

DISTRIBUTIONS = ("pert", "triangular", "uniform", "lognormal", "constant")

DOMAINS_FILE = "domains.csv"
CAPABILITIES_FILE = "capabilities.csv"
SCENARIOS_FILE = "qualitative_scenarios.csv"
TOLERANCES_FILE = "risk_tolerances.csv"
RESULTS_FILE = "simulation_results.csv"
RESULTS_TABLE = "simulation_results"

# Accepted column spellings, first match wins
_DOMAIN_COLS = {
    "domain_id": ["domain_id", "domain id", "id"],
    "name": ["domain", "name", "domain_name"],
}
_CAPABILITY_COLS = {
    "capability_id": ["capability_id", "capability id", "control_id", "id"],
    "domain_id": ["domain_id", "domain id"],
    "name": ["capability", "name", "control"],
    "difficulty": ["difficulty", "diff", "strength"],
    "weight": ["weight"],
}
_SCENARIO_COLS = {
    "scenario_id": ["scenario_id", "scenario id", "id"],
    "domain_id": ["domain_id", "domain id"],
    "description": ["scenario", "description"],
    "threat_community": ["tcomm", "threat_community", "threat community"],
    "applied_controls": ["controls", "applied_controls", "capabilities"],
}
_DIST_FIELDS = ("func", "min", "mode", "max", "shape", "meanlog", "sdlog")


# ---------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class DistributionSpec:
    """Shape + parameters for one quantity (TEF, TC or LM)."""
    func: str = "pert"
    min: Optional[float] = None
    mode: Optional[float] = None
    max: Optional[float] = None
    shape: Optional[float] = None    # PERT lambda (default 4)
    meanlog: Optional[float] = None  # lognormal only
    sdlog: Optional[float] = None    # lognormal only

    def validate(self, lower: float = 0.0, upper: float = math.inf) -> None:
        """Raise ValueError if the parameters cannot be sampled."""
        if self.func not in DISTRIBUTIONS:
            raise ValueError(f"unknown distribution {self.func!r}")
        for name in ("min", "mode", "max", "shape", "meanlog", "sdlog"):
            v = getattr(self, name)
            if v is not None and not math.isfinite(v):
                raise ValueError(f"{name} is not finite")

        if self.func == "constant":
            v = self.mode if self.mode is not None else self.min
            if v is None:
                raise ValueError("constant needs mode or min")
            if not lower <= v <= upper:
                raise ValueError(f"constant {v} outside [{lower}, {upper}]")
            return

        if self.func == "lognormal":
            if self.meanlog is None or self.sdlog is None:
                raise ValueError("lognormal needs meanlog and sdlog")
            if self.sdlog <= 0:
                raise ValueError("sdlog must be > 0")
            if self.max is not None and not lower <= self.max <= upper:
                raise ValueError(f"max {self.max} outside [{lower}, {upper}]")
            if upper < math.inf and self.max is None:
                raise ValueError("lognormal on a bounded quantity needs a max cap")
            return

        if self.min is None or self.max is None:
            raise ValueError(f"{self.func} needs min and max")
        if not self.min < self.max:
            raise ValueError(f"min ({self.min}) must be < max ({self.max})")
        if self.min < lower or self.max > upper:
            raise ValueError(f"range [{self.min}, {self.max}] outside [{lower}, {upper}]")
        if self.func in ("pert", "triangular"):
            if self.mode is None:
                raise ValueError(f"{self.func} needs mode")
            if not self.min <= self.mode <= self.max:
                raise ValueError(f"mode ({self.mode}) outside [{self.min}, {self.max}]")
        if self.shape is not None and self.shape <= 0:
            raise ValueError("shape must be > 0")


@dataclass(frozen=True)
class Domain:
    domain_id: str
    name: str


@dataclass(frozen=True)
class Capability:
    domain_id: str
    capability_id: str
    name: str
    difficulty: float          # control strength in [0, 1]
    weight: float = 1.0        # used only by the "weighted" resistance policy


@dataclass(frozen=True)
class Scenario:
    domain_id: str
    scenario_id: str
    description: str
    threat_community: str
    tef_params: DistributionSpec
    tc_params: DistributionSpec
    lm_params: DistributionSpec
    applied_controls: Tuple[str, ...] = ()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.domain_id, self.scenario_id)


@dataclass(frozen=True)
class Model:
    name: str
    domains: Tuple[Domain, ...]
    capabilities: Tuple[Capability, ...]
    scenarios: Tuple[Scenario, ...]
    risk_tolerances: Tuple[RiskTolerance, ...] = field(default=DEFAULT_RISK_TOLERANCES)

    def domain_name(self, domain_id: str) -> str:
        for d in self.domains:
            if d.domain_id == domain_id:
                return d.name
        raise KeyError(domain_id)

    def controls_for(self, scenario: Scenario) -> Tuple[Capability, ...]:
        lookup = {(c.domain_id, c.capability_id): c for c in self.capabilities}
        return tuple(lookup[(scenario.domain_id, cid)] for cid in scenario.applied_controls)

    def scenarios_frame(self) -> pd.DataFrame:
        """Scenario table joined with domain names, for display."""
        names = {d.domain_id: d.name for d in self.domains}
        rows = [{
            "domain_id": s.domain_id,
            "domain": names.get(s.domain_id, s.domain_id),
            "scenario_id": s.scenario_id,
            "scenario": s.description,
            "tcomm": s.threat_community,
            "controls": ", ".join(s.applied_controls),
        } for s in self.scenarios]
        cols = ["domain_id", "domain", "scenario_id", "scenario", "tcomm", "controls"]
        return pd.DataFrame(rows, columns=cols)

    def domains_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{"domain_id": d.domain_id, "domain": d.name} for d in self.domains],
                            columns=["domain_id", "domain"])


# ---------------------------------------------------------------------
# Table parsing helpers
# ---------------------------------------------------------------------

def _resolve_columns(df: pd.DataFrame, wanted: Dict[str, List[str]], table: str,
                     optional: Iterable[str] = ()) -> Dict[str, Optional[str]]:
    """Map canonical names to the actual column names present in `df`."""
    lower = {str(c).strip().lower(): c for c in df.columns}
    out: Dict[str, Optional[str]] = {}
    for key, alternatives in wanted.items():
        found = next((lower[a] for a in alternatives if a in lower), None)
        if found is None and key not in optional:
            raise ModelInvalid(table, f"missing column {key!r} (tried {alternatives})")
        out[key] = found
    return out


def _cell(row: pd.Series, col: Optional[str]) -> Optional[str]:
    if col is None:
        return None
    v = row.get(col)
    if v is None or (isinstance(v, float) and np.isnan(v)):
        return None
    s = str(v).strip()
    return s or None


def _number(v) -> Optional[float]:
    if v is None:
        return None
    if isinstance(v, str):
        v = v.strip()
        if not v:
            return None
    x = float(v)
    return None if np.isnan(x) else x


def _parse_distribution(row: pd.Series, prefix: str, lower_cols: Dict[str, str]) -> DistributionSpec:
    values = {}
    for f in _DIST_FIELDS:
        col = lower_cols.get(f"{prefix}_{f}")
        raw = row.get(col) if col is not None else None
        if f == "func":
            values[f] = (str(raw).strip().lower() if raw is not None and not
                         (isinstance(raw, float) and np.isnan(raw)) else "pert")
        else:
            values[f] = _number(raw)
    return DistributionSpec(**values)


def _split_controls(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    parts = [p.strip() for p in raw.replace(";", ",").split(",")]
    return tuple(p for p in parts if p)


def build_model(
    name: str,
    domains: pd.DataFrame,
    capabilities: pd.DataFrame,
    scenarios: pd.DataFrame,
    risk_tolerances: Optional[Sequence[RiskTolerance]] = None,
) -> Model:
    """
    Validate the three definition tables and assemble a Model.
    Raises ModelInvalid naming the table and row of the first problem found.
    """
    dcols = _resolve_columns(domains, _DOMAIN_COLS, "domains")
    doms: List[Domain] = []
    seen_domains = set()
    for i, row in domains.reset_index(drop=True).iterrows():
        did = _cell(row, dcols["domain_id"])
        if did is None:
            raise ModelInvalid("domains", "empty domain_id", row=i)
        if did in seen_domains:
            raise ModelInvalid("domains", f"duplicate domain_id {did!r}", row=i)
        seen_domains.add(did)
        doms.append(Domain(domain_id=did, name=_cell(row, dcols["name"]) or did))

    ccols = _resolve_columns(capabilities, _CAPABILITY_COLS, "capabilities",
                             optional=("name", "weight"))
    caps: List[Capability] = []
    seen_caps = set()
    for i, row in capabilities.reset_index(drop=True).iterrows():
        cid = _cell(row, ccols["capability_id"])
        did = _cell(row, ccols["domain_id"])
        if cid is None or did is None:
            raise ModelInvalid("capabilities", "empty capability_id or domain_id", row=i)
        if did not in seen_domains:
            raise ModelInvalid("capabilities", f"unknown domain_id {did!r}", row=i)
        if (did, cid) in seen_caps:
            raise ModelInvalid("capabilities", f"duplicate capability_id {cid!r} in {did!r}", row=i)
        try:
            diff = _number(row.get(ccols["difficulty"]))
            weight = _number(row.get(ccols["weight"])) if ccols["weight"] else None
        except (TypeError, ValueError):
            raise ModelInvalid("capabilities", "difficulty/weight is not numeric", row=i) from None
        if diff is None or not 0.0 <= diff <= 1.0:
            raise ModelInvalid("capabilities", f"difficulty must be in [0, 1], got {diff!r}", row=i)
        if weight is not None and weight < 0:
            raise ModelInvalid("capabilities", "weight must be >= 0", row=i)
        seen_caps.add((did, cid))
        caps.append(Capability(domain_id=did, capability_id=cid,
                               name=_cell(row, ccols["name"]) or cid,
                               difficulty=diff, weight=1.0 if weight is None else weight))

    scols = _resolve_columns(scenarios, _SCENARIO_COLS, "qualitative_scenarios",
                             optional=("description", "threat_community", "applied_controls"))
    lower_cols = {str(c).strip().lower(): c for c in scenarios.columns}
    scens: List[Scenario] = []
    seen_scens = set()
    for i, row in scenarios.reset_index(drop=True).iterrows():
        sid = _cell(row, scols["scenario_id"])
        did = _cell(row, scols["domain_id"])
        if sid is None or did is None:
            raise ModelInvalid("qualitative_scenarios", "empty scenario_id or domain_id", row=i)
        if did not in seen_domains:
            raise ModelInvalid("qualitative_scenarios", f"unknown domain_id {did!r}", row=i)
        if (did, sid) in seen_scens:
            raise ModelInvalid("qualitative_scenarios",
                               f"duplicate scenario_id {sid!r} in domain {did!r}", row=i)
        controls = _split_controls(_cell(row, scols["applied_controls"]))
        for cid in controls:
            if (did, cid) not in seen_caps:
                raise ModelInvalid("qualitative_scenarios",
                                   f"scenario {sid!r} references unknown capability {cid!r}", row=i)

        specs = {}
        for prefix, lower, upper in (("tef", 0.0, math.inf), ("tc", 0.0, 1.0), ("lm", 0.0, math.inf)):
            try:
                spec = _parse_distribution(row, prefix, lower_cols)
                spec.validate(lower, upper)
            except (TypeError, ValueError) as exc:
                raise ModelInvalid("qualitative_scenarios",
                                   f"scenario {sid!r} {prefix}: {exc}", row=i) from None
            specs[prefix] = spec

        seen_scens.add((did, sid))
        scens.append(Scenario(
            domain_id=did,
            scenario_id=sid,
            description=_cell(row, scols["description"]) or "",
            threat_community=_cell(row, scols["threat_community"]) or "",
            tef_params=specs["tef"],
            tc_params=specs["tc"],
            lm_params=specs["lm"],
            applied_controls=controls,
        ))

    tolerances = tuple(risk_tolerances) if risk_tolerances is not None else DEFAULT_RISK_TOLERANCES
    logger.debug("Built model %s: %d domains, %d capabilities, %d scenarios",
                 name, len(doms), len(caps), len(scens))
    return Model(name=name, domains=tuple(doms), capabilities=tuple(caps),
                 scenarios=tuple(scens), risk_tolerances=tolerances)


def read_risk_tolerances(df: pd.DataFrame) -> Tuple[RiskTolerance, ...]:
    cols = {str(c).strip().lower(): c for c in df.columns}
    if "level" not in cols or "amount" not in cols:
        raise ModelInvalid("risk_tolerances", "needs 'level' and 'amount' columns")
    out = []
    for i, row in df.reset_index(drop=True).iterrows():
        level = str(row[cols["level"]]).strip().lower()
        try:
            out.append(RiskTolerance(level=level, amount=float(row[cols["amount"]])))
        except (TypeError, ValueError) as exc:
            raise ModelInvalid("risk_tolerances", str(exc), row=i) from None
    return tuple(out)


# ---------------------------------------------------------------------
# Directory-backed store
# ---------------------------------------------------------------------

class ModelStore:
    """Named models, one sub-directory each, under `base_dir`."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)

    def list_models(self) -> List[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(p.name for p in self.base_dir.iterdir()
                      if p.is_dir() and (p / SCENARIOS_FILE).is_file())

    def _model_dir(self, name: str) -> Path:
        if not name or os.sep in name or name in (".", "..") or (os.altsep and os.altsep in name):
            raise ModelNotFound(name)
        path = self.base_dir / name
        if not (path / SCENARIOS_FILE).is_file():
            raise ModelNotFound(name)
        return path

    @staticmethod
    def _read_table(path: Path, table: str) -> pd.DataFrame:
        if not path.is_file():
            raise ModelInvalid(table, f"missing table {path.name}")
        try:
            # everything as text; numbers are parsed per column during validation
            return pd.read_csv(path, dtype=str)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
            raise ModelInvalid(table, f"unreadable: {exc}") from None

    def load(self, name: str) -> Model:
        path = self._model_dir(name)
        domains = self._read_table(path / DOMAINS_FILE, "domains")
        capabilities = self._read_table(path / CAPABILITIES_FILE, "capabilities")
        scenarios = self._read_table(path / SCENARIOS_FILE, "qualitative_scenarios")
        tolerances = None
        if (path / TOLERANCES_FILE).is_file():
            tolerances = read_risk_tolerances(self._read_table(path / TOLERANCES_FILE, "risk_tolerances"))
        model = build_model(name, domains, capabilities, scenarios, tolerances)
        logger.info("Loaded model %s (%d scenarios)", name, len(model.scenarios))
        return model

    def save_results(self, name: str, samples: pd.DataFrame) -> Path:
        """Replace the model's saved simulation results."""
        path = self._model_dir(name) / RESULTS_FILE
        tmp = path.with_suffix(".csv.tmp")
        samples.to_csv(tmp, index=False)
        os.replace(tmp, path)
        logger.info("Saved %d simulation rows to %s", len(samples), path)
        return path

    def load_results(self, name: str) -> pd.DataFrame:
        """Saved samples. Ids stay text exactly as written; every other column must be numeric."""
        path = self._model_dir(name) / RESULTS_FILE
        if not path.is_file():
            raise ModelNotFound(f"{name} (no saved simulation results)")
        try:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
            raise ModelInvalid(RESULTS_TABLE, f"unreadable: {exc}") from None
        if df.empty:
            raise ModelInvalid(RESULTS_TABLE, "no samples")

        for col in df.columns:
            if col in ("domain_id", "scenario_id"):
                continue
            if col == "tc_exceeded":
                flags = df[col].str.strip().str.lower().map({"true": True, "false": False, "1": True, "0": False})
                if flags.isna().any():
                    raise ModelInvalid(RESULTS_TABLE, f"column {col!r} must hold True/False")
                df[col] = flags.astype(bool)
                continue
            values = pd.to_numeric(df[col].str.strip().replace("", np.nan), errors="coerce")
            if values.isna().any():
                bad = int(values.isna().to_numpy().nonzero()[0][0])
                raise ModelInvalid(RESULTS_TABLE, f"non-numeric value in column {col!r}", row=bad)
            df[col] = values
        return df
