"""Tests for the simulation engine."""

import dataclasses
import threading

import numpy as np
import pandas as pd
import pytest

import engine
from config import SimulationConfig
from engine import run_simulation, scenario_seed, simulate_scenario, validate_iterations
from errors import InvalidIterationCount, ModelInvalid, SimulationCancelled, SimulationFailure
from model_store import DistributionSpec, Model


class TestIterations:

    @pytest.mark.parametrize("k", [1, 37, 1000])
    def test_k_samples_per_scenario(self, model, config, k):
        """Every scenario gets exactly k samples numbered 1..k."""
        cfg = dataclasses.replace(config, batch_size=10)
        results = run_simulation(model, cfg, iterations=k)
        assert results.iterations == k
        assert set(results.samples) == {s.key for s in model.scenarios}
        for df in results.samples.values():
            assert len(df) == k
            assert list(df["iteration"]) == list(range(1, k + 1))

    @pytest.mark.parametrize("bad", [0, -5, 2.5, True, "10"])
    def test_invalid_iterations(self, model, config, bad):
        with pytest.raises(InvalidIterationCount):
            run_simulation(model, config, iterations=bad)

    def test_integral_float_accepted(self):
        assert validate_iterations(100.0) == 100


class TestValidation:

    def test_malformed_spec_fails_before_running(self, model, config):
        """A malformed distribution is reported against its scenario before any sampling."""
        bad = dataclasses.replace(model.scenarios[1], tef_params=DistributionSpec("pert", 5, 1, 2))
        broken = dataclasses.replace(model, scenarios=(model.scenarios[0], bad, model.scenarios[2]))
        with pytest.raises(ModelInvalid, match="S2"):
            run_simulation(broken, config)


class TestFailures:

    @pytest.mark.parametrize("executor", ["serial", "thread"])
    def test_sampler_error_names_scenario(self, model, config, monkeypatch, executor):
        real = engine.sample_scenario

        def flaky(scenario, *args, **kwargs):
            if scenario.scenario_id == "S2":
                raise FloatingPointError("boom")
            return real(scenario, *args, **kwargs)

        monkeypatch.setattr(engine, "sample_scenario", flaky)
        cfg = dataclasses.replace(config, executor=executor, workers=2)
        with pytest.raises(SimulationFailure) as exc:
            run_simulation(model, cfg)
        assert (exc.value.domain_id, exc.value.scenario_id) == ("D1", "S2")
        assert isinstance(exc.value.__cause__, FloatingPointError)


class TestReproducibility:

    def test_same_seed_same_samples(self, model, config):
        a = run_simulation(model, config).to_frame()
        b = run_simulation(model, config).to_frame()
        pd.testing.assert_frame_equal(a, b)

    def test_different_seed_differs(self, model, config):
        a = run_simulation(model, config).to_frame()
        b = run_simulation(model, dataclasses.replace(config, seed=43)).to_frame()
        assert not np.array_equal(a["ale"].to_numpy(), b["ale"].to_numpy())

    def test_parallel_matches_serial(self, model, config):
        """Worker count and executor do not change the draws."""
        serial = dataclasses.replace(config, batch_size=250)
        threaded = dataclasses.replace(serial, executor="thread", workers=3)
        pd.testing.assert_frame_equal(run_simulation(model, serial).to_frame(),
                                      run_simulation(model, threaded).to_frame())

    def test_scenario_order_irrelevant(self, model, config):
        """Reordering scenarios in the model leaves each scenario's draws unchanged."""
        flipped = dataclasses.replace(model, scenarios=tuple(reversed(model.scenarios)))
        a = run_simulation(model, config)
        b = run_simulation(flipped, config)
        for key, df in a.samples.items():
            pd.testing.assert_frame_equal(df, b.samples[key])

    def test_scenario_seed_stable(self):
        a = scenario_seed(42, "D1", "S1").generate_state(4)
        b = scenario_seed(42, "D1", "S1").generate_state(4)
        c = scenario_seed(42, "D1", "S1", batch=1).generate_state(4)
        assert np.array_equal(a, b)
        assert not np.array_equal(a, c)

    def test_simulate_scenario_matches_run(self, model, config):
        scenario = model.scenarios[0]
        alone = simulate_scenario(scenario, model, config.iterations, config)
        pd.testing.assert_frame_equal(alone, run_simulation(model, config).samples[scenario.key])


class TestCancellation:

    def test_cancelled_before_start(self, model, config):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SimulationCancelled):
            run_simulation(model, config, cancel_event=cancel)

    def test_cancelled_mid_run(self, model, config):
        """Setting the token after the first unit stops the run with no results."""
        cancel = threading.Event()
        seen = []

        def progress(done, total):
            seen.append((done, total))
            cancel.set()

        cfg = dataclasses.replace(config, batch_size=100)
        with pytest.raises(SimulationCancelled):
            run_simulation(model, cfg, cancel_event=cancel, progress=progress)
        assert seen == [(1, 30)]


class TestResultsFrame:

    def test_to_frame_columns(self, model, config):
        df = run_simulation(model, config).to_frame()
        assert list(df.columns[:2]) == ["domain_id", "scenario_id"]
        assert len(df) == 3 * config.iterations

    def test_from_frame_round_trip(self, model, config):
        results = run_simulation(model, config)
        rebuilt = engine.SimulationResults.from_frame(model, results.to_frame(), config)
        assert rebuilt.iterations == config.iterations
        for key, df in results.samples.items():
            pd.testing.assert_frame_equal(df, rebuilt.samples[key], check_dtype=False)

    def test_from_frame_unknown_scenario(self, model, config):
        df = run_simulation(model, config).to_frame()
        df.loc[0, "scenario_id"] = "S9"
        with pytest.raises(ModelInvalid):
            engine.SimulationResults.from_frame(model, df)

    def test_empty_model(self, model, config):
        empty = Model(name="empty", domains=model.domains, capabilities=(), scenarios=())
        results = run_simulation(empty, config)
        assert results.samples == {}
        assert results.to_frame().empty
