"""Tests for simulation configuration."""

import json
import logging

import pytest

from config import SimulationConfig, load_config, models_dir


class TestSimulationConfig:

    def test_defaults(self):
        cfg = SimulationConfig()
        assert cfg.iterations == 10000
        assert cfg.seed == 42
        assert cfg.resistance_policy == "min"
        assert cfg.var_quantile == 0.95

    @pytest.mark.parametrize("kwargs", [
        {"executor": "gpu"},
        {"resistance_policy": "median"},
        {"vulnerability_policy": "fuzzy"},
        {"loss_policy": "aggregate"},
        {"var_quantile": 1.0},
        {"batch_size": 0},
        {"workers": 0},
        {"seed": -1},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SimulationConfig(**kwargs)

    def test_from_dict_ignores_unknown(self, caplog):
        with caplog.at_level(logging.WARNING, logger="config"):
            cfg = SimulationConfig.from_dict({"seed": 7, "colour": "blue"})
        assert cfg.seed == 7
        assert "colour" in caplog.text

    def test_round_trip(self):
        cfg = SimulationConfig(seed=3, loss_policy="single")
        assert SimulationConfig.from_dict(cfg.to_dict()) == cfg


class TestLoadConfig:

    def test_simulation_block(self, tmp_path):
        path = tmp_path / "params.json"
        path.write_text(json.dumps({"model": "demo", "simulation": {"iterations": 500, "executor": "thread"}}))
        cfg = load_config(path)
        assert cfg.iterations == 500 and cfg.executor == "thread"

    def test_flat(self, tmp_path):
        path = tmp_path / "params.json"
        path.write_text(json.dumps({"seed": 11}))
        assert load_config(path).seed == 11


class TestModelsDir:

    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EVALUATOR_MODELS_DIR", str(tmp_path))
        assert models_dir() == tmp_path

    def test_default(self, monkeypatch):
        monkeypatch.delenv("EVALUATOR_MODELS_DIR", raising=False)
        assert str(models_dir()) == "models"
