import json
import logging

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import streamlit as st

from config import SimulationConfig, models_dir
from model_store import ModelStore
from ranking import cluster_scenario_loss, top_n
from results import LoadResultsRequest, ResultStore, RunSimulationRequest, TaskRunner
from risk import IMPACT_LEVELS, LIKELIHOOD_LEVELS, classify_tolerance, risk_matrix, tolerance_status

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Configure Streamlit page (title + full-width). Needs to be at the top.
st.set_page_config(page_title="FAIR Risk Evaluator", layout="wide")

# App header
st.title("FAIR Risk Evaluator")
st.caption("OpenFAIR Monte Carlo simulation of annual loss exposure by scenario and domain.")

# ===========================
# HELP / HOW-TO (collapsible)
# ===========================
with st.expander("❓ Help & How to Use This App", expanded=False):
    st.markdown("""
## Overview
Pick a model, then either **Run simulation** (fresh Monte Carlo run) or **Load results**
(previously saved samples). Every table and chart below comes from the last run that
finished; a failed or superseded run never replaces it.

### Key Metrics
- **ALE (Annual Loss Exposure)**: total loss in one simulated year
- **VaR**: the 95th percentile of annual loss across iterations
- **Loss events**: threat events where threat capability beat the applied controls
- **Vulnerability**: share of simulated years with at least one loss event

### Risk Matrix
- **Impact** (VaR): Low < $2M ≤ Medium < $5M ≤ High < $15M ≤ Serious < $40M ≤ Extreme
- **Likelihood** (mean loss events/yr): Rare < 0.05 ≤ Unlikely < 0.30 ≤ Possible < 0.50 ≤ Likely < 0.80 ≤ Almost Certain
    """)

# ==================
# UTILITY FUNCTIONS
# ==================
CURRENCY_COLS = ["ale_min", "ale_median", "ale_mean", "ale_max", "ale_sd", "ale_var",
                 "sle_min", "sle_median", "sle_mean", "sle_max"]
PERCENT_COLS = ["mean_tc_exceedance", "mean_vuln"]


def _format_map(df: pd.DataFrame) -> dict:
    """Display-only formats; stored numbers are left as they are."""
    fmt = {c: "${:,.0f}" for c in CURRENCY_COLS if c in df.columns}
    fmt.update({c: "{:.1%}" for c in PERCENT_COLS if c in df.columns})
    if "loss_events_mean" in df.columns:
        fmt["loss_events_mean"] = "{:.2f}"
    return fmt


def _styled(df: pd.DataFrame):
    return df.style.format(_format_map(df), na_rep="—")


@st.cache_resource(show_spinner=False)
def get_runner(base_dir: str) -> TaskRunner:
    """One runner (and result store) per models directory; settings travel with each request."""
    return TaskRunner(ResultStore(), ModelStore(base_dir))


def lec_figure(curve: pd.DataFrame, var: float):
    fig = px.line(curve, x="Loss", y="Exceedance_Prob", title="Loss Exceedance Curve",
                  labels={"Loss": "Annual Loss ($)", "Exceedance_Prob": "P(Loss ≥ x)"})
    fig.update_xaxes(type="log")
    fig.update_yaxes(type="log", range=[-3, 0])
    fig.add_vline(x=max(var, 1.0), line_dash="dot", opacity=0.5,
                  annotation_text="VaR", annotation_position="top")
    return fig


def risk_matrix_figure(grid: pd.DataFrame, title: str):
    fig = go.Figure(go.Heatmap(z=grid.to_numpy(), x=list(grid.columns), y=list(grid.index),
                               colorscale="YlOrRd", text=grid.to_numpy(), texttemplate="%{text}",
                               showscale=False))
    fig.update_layout(title=title, xaxis_title="Likelihood", yaxis_title="Impact")
    return fig


def cluster_figure(clustered: pd.DataFrame, cluster: int):
    x = clustered[clustered["cluster"] == cluster]
    x = x[x["ale"] > 0].assign(scenario=lambda d: d["domain_id"] + "/" + d["scenario_id"])
    fig = px.box(x, x="scenario", y="ale", points=False, log_y=True,
                 title=f"Loss distribution: cluster {cluster}",
                 labels={"ale": "Annual Loss ($, log)", "scenario": "Scenario"})
    return fig

# =========================
# SIDEBAR: USER PARAMETERS
# =========================
st.sidebar.header("⚙️ Model Selection")

base_dir = str(models_dir())
store = ModelStore(base_dir)
names = store.list_models()
if not names:
    st.warning(f"No models found under `{base_dir}`. Set EVALUATOR_MODELS_DIR or add a model directory.")
    st.stop()

model_name = st.sidebar.selectbox("Model", names)

with st.sidebar.expander("📁 Load parameter JSON", expanded=False):
    pj = st.file_uploader("Upload parameters.json", type=["json"], key="params_json")
    if pj:
        try:
            st.session_state["_sim_cfg"] = SimulationConfig.from_dict(json.load(pj).get("simulation", {})).to_dict()
            st.success("✓ Simulation parameters loaded")
        except (ValueError, TypeError) as e:
            st.error(f"Invalid parameters: {e}")

defaults = st.session_state.get("_sim_cfg", SimulationConfig().to_dict())
with st.sidebar.expander("🎲 Simulation Config", expanded=True):
    iterations = st.number_input("Iterations", 100, 1_000_000, int(defaults["iterations"]), 1000)
    seed = st.number_input("Random Seed", 0, 2**31 - 1, int(defaults["seed"]))
    resistance_policy = st.selectbox("Combine control difficulties", ["min", "mean", "max", "weighted"],
                                     index=["min", "mean", "max", "weighted"].index(defaults["resistance_policy"]))
    vulnerability_policy = st.selectbox("Vulnerability", ["threshold", "probabilistic"],
                                        index=["threshold", "probabilistic"].index(defaults["vulnerability_policy"]))
    loss_policy = st.selectbox("Loss magnitude", ["per_event", "single"],
                               index=["per_event", "single"].index(defaults["loss_policy"]))
    save_run = st.checkbox("Save samples after the run", value=False)

cfg = SimulationConfig.from_dict({**defaults, "iterations": int(iterations), "seed": int(seed),
                                  "resistance_policy": resistance_policy,
                                  "vulnerability_policy": vulnerability_policy,
                                  "loss_policy": loss_policy})
runner = get_runner(base_dir)

c_run, c_load = st.sidebar.columns(2)
request = None
if c_run.button("▶️ Run simulation"):
    request = RunSimulationRequest(model_name, int(iterations), save=save_run, config=cfg)
if c_load.button("📂 Load results"):
    request = LoadResultsRequest(model_name, config=cfg)

if request is not None:
    with st.spinner(f"Processing {type(request).__name__} for {model_name}…"):
        event = runner.submit(request).result()
    if event.ok:
        st.session_state["_last_run"] = event.snapshot.run_id
        st.success(f"✓ {model_name}: results updated")
    elif event.status == "failed":
        st.error(f"{event.error}")
    else:
        st.warning(f"Request {event.status}; showing the previous results.")

snapshot = runner.result_store.current
if snapshot is None:
    st.info("Run a simulation or load saved results to see the dashboard.")
    st.stop()

summary = snapshot.summary
results = snapshot.results

# ============================
# HEADLINE VALUE BOXES
# ============================
st.header(f"🎯 {snapshot.model_name}: {results.iterations:,} iterations ({snapshot.source})")
overall = summary.overall
if not overall:
    st.info("This model has no scenarios.")
    st.stop()

tolerances = results.model.risk_tolerances
level = classify_tolerance(overall["ale_var"], tolerances)
col1, col2, col3, col4 = st.columns(4)
with col1:
    st.metric("Value at Risk (95%)", f"${overall['ale_var']:,.0f}")
    st.caption(f"CI ${overall['var_ci_lower']:,.0f} – ${overall['var_ci_upper']:,.0f}")
with col2:
    st.metric("Expected Annual Loss", f"${overall['ale_mean']:,.0f}")
with col3:
    st.metric("Median loss events / yr", f"{overall['loss_events_median']:.1f}")
with col4:
    status = tolerance_status(level)
    (st.error if status == "danger" else st.warning if status == "warning" else st.success)(
        f"Risk tolerance: **{level}**")

# ============================
# DOMAIN & SCENARIO TABLES
# ============================
st.header("🏢 Domains")
dom_cols = ["domain", "scenarios", "ale_mean", "ale_var", "loss_events_mean", "mean_vuln", "impact", "likelihood", "tolerance"]
st.dataframe(_styled(summary.domain_summary[dom_cols]), use_container_width=True)
st.plotly_chart(risk_matrix_figure(risk_matrix(summary.domain_summary, label="domain_id"),
                                   "Domain Risk Matrix"), use_container_width=True)

st.header("📋 Scenarios")
top_count = st.slider("Top scenarios by VaR", 1, max(1, len(summary.scenario_summary)),
                      min(10, max(1, len(summary.scenario_summary))))
top = top_n(summary.scenario_summary, top_count, by="ale_var").merge(
    summary.scenarios[["domain_id", "scenario_id", "scenario", "tcomm"]],
    on=["domain_id", "scenario_id"], how="left")
scen_cols = ["domain_id", "scenario_id", "scenario", "tcomm", "ale_mean", "ale_var",
             "loss_events_mean", "mean_tc_exceedance", "mean_vuln", "sle_mean", "impact", "tolerance", "outlier"]
st.dataframe(_styled(top[scen_cols]), use_container_width=True)
st.plotly_chart(risk_matrix_figure(risk_matrix(summary.scenario_summary), "Scenario Risk Matrix"),
                use_container_width=True)

with st.expander("All scenario definitions", expanded=False):
    st.dataframe(summary.scenarios, use_container_width=True)

# ============================
# DISTRIBUTIONS
# ============================
st.header("📊 Loss Distributions")
st.plotly_chart(lec_figure(summary.exceedance_curve, overall["ale_var"]), use_container_width=True)
st.download_button("📥 Download LEC Points (CSV)", summary.exceedance_curve.to_csv(index=False).encode("utf-8"),
                   "lec_points.csv", "text/csv")

ale_sum = summary.iteration_summary["ale_sum"].to_numpy(dtype=float)
positive = ale_sum[ale_sum > 0]
if positive.size:
    fig = go.Figure([go.Histogram(x=np.log10(positive), nbinsx=60)])
    fig.update_layout(title="Total Annual Loss (log10 $)", xaxis_title="Annual Loss (log10 $)", yaxis_title="Frequency")
    st.plotly_chart(fig, use_container_width=True)

samples = results.to_frame()
clustered = cluster_scenario_loss(samples)
if clustered.empty:
    st.info("No scenario produced a loss; nothing to compare.")
else:
    for c in sorted(clustered["cluster"].unique()):
        st.plotly_chart(cluster_figure(clustered, int(c)), use_container_width=True)

st.download_button("📥 Download Simulation Samples (CSV)", samples.to_csv(index=False).encode("utf-8"),
                   "simulation_results.csv", "text/csv")

# ============================
# RISK TOLERANCES / THRESHOLDS
# ============================
with st.expander("⚖️ Risk tolerances & matrix thresholds", expanded=False):
    st.dataframe(summary.risk_tolerances.style.format({"amount": "${:,.0f}"}), use_container_width=True)
    st.markdown("**Impact** lower bounds: " + ", ".join(f"{n} ${v:,.0f}" for n, v in IMPACT_LEVELS))
    st.markdown("**Likelihood** lower bounds: " + ", ".join(f"{n} {v:.2f}" for n, v in LIKELIHOOD_LEVELS))

# ============================
# EXPORT CURRENT CONFIG (JSON)
# ============================
st.sidebar.markdown("---")
export_config = {
    "schema_version": "1.0.0",
    "timestamp": pd.Timestamp.utcnow().isoformat(),
    "model": model_name,
    "simulation": cfg.to_dict(),
}
st.sidebar.download_button(
    label="💾 Download config.json",
    data=json.dumps(export_config, indent=2),
    file_name="evaluator_config.json",
    mime="application/json",
)
