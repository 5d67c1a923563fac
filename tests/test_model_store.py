"""Tests for model loading and validation."""

import pandas as pd
import pytest

from conftest import make_tables, scenario_row, write_model
from errors import ModelInvalid, ModelNotFound
from model_store import DistributionSpec, ModelStore, build_model
from risk import DEFAULT_RISK_TOLERANCES


class TestBuildModel:
    """Tests for building a model from tables."""

    def test_counts(self, model):
        """All domains, capabilities and scenarios are loaded."""
        assert len(model.domains) == 2
        assert len(model.capabilities) == 3
        assert [s.scenario_id for s in model.scenarios] == ["S1", "S2", "S3"]

    def test_controls_parsed(self, model):
        """Comma separated controls become a tuple of capability ids."""
        s1 = model.scenarios[0]
        assert s1.applied_controls == ("C1", "C2")
        assert [c.difficulty for c in model.controls_for(s1)] == [0.5, 0.7]

    def test_distribution_specs(self, model):
        """Distribution columns map onto DistributionSpec fields."""
        s2 = model.scenarios[1]
        assert s2.lm_params.func == "lognormal"
        assert s2.lm_params.meanlog == 11.0
        assert s2.tef_params == DistributionSpec("pert", 0.0, 1.0, 5.0)

    def test_default_tolerances(self, model):
        """Models without a tolerance table use the defaults."""
        assert model.risk_tolerances == DEFAULT_RISK_TOLERANCES

    def test_same_scenario_id_in_two_domains(self):
        """Scenario ids only need to be unique within a domain."""
        m = build_model("m", *make_tables([scenario_row("S1", "D1"), scenario_row("S1", "D2")]))
        assert {s.key for s in m.scenarios} == {("D1", "S1"), ("D2", "S1")}

    def test_scenarios_frame(self, model):
        """Scenario table carries the domain name."""
        df = model.scenarios_frame()
        assert list(df["domain"]) == ["Network", "Network", "Applications"]


class TestValidation:
    """Malformed models fail with ModelInvalid naming table and row."""

    def test_duplicate_scenario(self):
        tables = make_tables([scenario_row("S1", "D1"), scenario_row("S1", "D1")])
        with pytest.raises(ModelInvalid) as exc:
            build_model("m", *tables)
        assert exc.value.table == "qualitative_scenarios"
        assert exc.value.row == 1

    def test_unknown_domain(self):
        tables = make_tables([scenario_row("S1", "D9")])
        with pytest.raises(ModelInvalid, match="unknown domain_id"):
            build_model("m", *tables)

    def test_dangling_capability(self):
        tables = make_tables([scenario_row("S1", "D1", "C3")])
        with pytest.raises(ModelInvalid, match="unknown capability 'C3'"):
            build_model("m", *tables)

    def test_min_greater_than_max(self):
        tables = make_tables([scenario_row("S1", "D1"),
                              scenario_row("S2", "D1", lm=("pert", 5e5, 1e5, 1e4))])
        with pytest.raises(ModelInvalid) as exc:
            build_model("m", *tables)
        assert exc.value.row == 1
        assert "S2" in str(exc.value) and "lm" in str(exc.value)

    def test_unknown_distribution(self):
        tables = make_tables([scenario_row("S1", "D1", tef=("gamma", 0, 1, 2))])
        with pytest.raises(ModelInvalid, match="unknown distribution"):
            build_model("m", *tables)

    def test_threat_capability_out_of_range(self):
        tables = make_tables([scenario_row("S1", "D1", tc=("pert", 0.5, 0.9, 1.5))])
        with pytest.raises(ModelInvalid, match="tc"):
            build_model("m", *tables)

    def test_lognormal_needs_parameters(self):
        tables = make_tables([scenario_row("S1", "D1", lm=("lognormal", None, None, None))])
        with pytest.raises(ModelInvalid, match="meanlog"):
            build_model("m", *tables)

    def test_difficulty_out_of_range(self):
        domains, caps, scens = make_tables([scenario_row("S1", "D1")])
        caps.loc[0, "difficulty"] = 1.2
        with pytest.raises(ModelInvalid) as exc:
            build_model("m", domains, caps, scens)
        assert exc.value.table == "capabilities"
        assert exc.value.row == 0

    def test_missing_column(self):
        domains, caps, scens = make_tables([scenario_row("S1", "D1")])
        with pytest.raises(ModelInvalid, match="domain_id"):
            build_model("m", domains, caps, scens.drop(columns=["domain_id"]))


class TestModelStore:
    """Tests for the directory-backed store."""

    def test_list_models(self, store, tmp_path):
        """Only directories with a scenario table are listed, sorted."""
        (tmp_path / "not_a_model").mkdir()
        assert store.list_models() == ["constant", "test"]

    def test_list_missing_dir(self, tmp_path):
        assert ModelStore(tmp_path / "nope").list_models() == []

    def test_load(self, store):
        """CSV tables load into the same model as the in-memory tables."""
        m = store.load("test")
        assert m.name == "test"
        assert m.scenarios[0].applied_controls == ("C1", "C2")
        assert m.scenarios[2].applied_controls == ("C3",)
        assert m.scenarios[1].lm_params.sdlog == 1.0

    def test_load_tolerances(self, store):
        levels = {t.level: t.amount for t in store.load("test").risk_tolerances}
        assert levels == {"low": 1e5, "medium": 1e6, "high": 5e6}

    def test_unknown_model(self, store):
        with pytest.raises(ModelNotFound):
            store.load("missing")

    def test_path_traversal_is_not_found(self, store):
        with pytest.raises(ModelNotFound):
            store.load("../test")

    def test_missing_table(self, tmp_path, model_tables):
        path = write_model(tmp_path, "broken", model_tables)
        (path / "capabilities.csv").unlink()
        with pytest.raises(ModelInvalid) as exc:
            ModelStore(tmp_path).load("broken")
        assert exc.value.table == "capabilities"

    def test_no_saved_results(self, store):
        with pytest.raises(ModelNotFound):
            store.load_results("test")

    def test_save_replaces_results(self, store):
        first = pd.DataFrame({"domain_id": ["D1"], "scenario_id": ["S1"], "ale": [1.0]})
        second = pd.DataFrame({"domain_id": ["D1"], "scenario_id": ["S1"], "ale": [2.0]})
        store.save_results("test", first)
        store.save_results("test", second)
        assert list(store.load_results("test")["ale"]) == [2.0]

    def test_saved_ids_keep_their_text(self, store):
        """Ids such as '001' are not read back as numbers."""
        saved = pd.DataFrame({"domain_id": ["010"], "scenario_id": ["001"], "ale": [5.0]})
        store.save_results("test", saved)
        loaded = store.load_results("test")
        assert list(loaded["domain_id"]) == ["010"]
        assert list(loaded["scenario_id"]) == ["001"]
        assert loaded["ale"].dtype.kind == "f"

    def test_saved_flags_parse_as_bool(self, store):
        saved = pd.DataFrame({"domain_id": ["D1", "D1"], "scenario_id": ["S1", "S1"],
                              "tc_exceeded": [True, False]})
        store.save_results("test", saved)
        assert list(store.load_results("test")["tc_exceeded"]) == [True, False]

    @pytest.mark.parametrize("content", ["", "domain_id,scenario_id,ale\n"])
    def test_empty_results_file(self, store, tmp_path, content):
        (tmp_path / "test" / "simulation_results.csv").write_text(content)
        with pytest.raises(ModelInvalid) as exc:
            store.load_results("test")
        assert exc.value.table == "simulation_results"

    def test_corrupt_results_value(self, store, tmp_path):
        (tmp_path / "test" / "simulation_results.csv").write_text(
            "domain_id,scenario_id,ale\nD1,S1,10\nD1,S1,lots\n")
        with pytest.raises(ModelInvalid) as exc:
            store.load_results("test")
        assert exc.value.table == "simulation_results"
        assert exc.value.row == 1

    def test_unparseable_results_file(self, store, tmp_path):
        (tmp_path / "test" / "simulation_results.csv").write_text(
            'domain_id,scenario_id,ale\nD1,"S1,10\n')
        with pytest.raises(ModelInvalid):
            store.load_results("test")
