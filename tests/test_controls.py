"""Tests for combining control difficulties into resistance strength."""

import pytest

from controls import control_profile, resistance_strength


class TestResistanceStrength:

    def test_no_controls(self):
        """No applied controls means no resistance."""
        assert resistance_strength([], "min") == 0.0

    def test_min_is_weakest_control(self):
        assert resistance_strength([0.7, 0.4, 0.9], "min") == pytest.approx(0.4)

    def test_mean_and_max(self):
        assert resistance_strength([0.2, 0.6], "mean") == pytest.approx(0.4)
        assert resistance_strength([0.2, 0.6], "max") == pytest.approx(0.6)

    def test_weighted(self):
        assert resistance_strength([0.2, 0.8], "weighted", [3, 1]) == pytest.approx(0.35)

    def test_weighted_zero_weights_falls_back_to_mean(self):
        assert resistance_strength([0.2, 0.8], "weighted", [0, 0]) == pytest.approx(0.5)

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            resistance_strength([0.5], "median")


class TestControlProfile:

    def test_profile_from_model(self, model):
        prof = control_profile(model, model.scenarios[0])
        assert prof.capability_ids == ("C1", "C2")
        assert prof.difficulties == (0.5, 0.7)
        assert not prof.empty
