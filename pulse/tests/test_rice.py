"""Tests for severity tiers, impact weights and RICE scoring."""
from __future__ import annotations

import pytest

from pulse.rice import (
    Severity,
    classify_opportunity,
    classify_severity,
    compute_impact,
    compute_reach,
    compute_rice,
)


class TestComputeRice:
    def test_reference_score(self):
        assert compute_rice(100, 9, 0.7, 5) == 126.0

    def test_zero_effort_scores_zero(self):
        assert compute_rice(500, 10, 1.0, 0) == 0.0

    def test_rounds_to_one_decimal(self):
        # 10 * 7 * 0.7 / 3 = 16.333...
        assert compute_rice(10, 7, 0.7, 3) == 16.3

    def test_half_rounds_up(self):
        # 1 * 1 * 0.25 / 1 = 0.25 -> 0.3
        assert compute_rice(1, 1, 0.25, 1) == 0.3


class TestClassifySeverity:
    @pytest.mark.parametrize("avg, intensity, expected", [
        (-0.8, 150, Severity.CRITICAL),
        (-0.7, 100, Severity.CRITICAL),
        (-0.6, 80, Severity.HIGH),
        (-0.75, 60, Severity.HIGH),
        (-0.4, 35, Severity.MEDIUM),
        (-0.55, 25, Severity.MEDIUM),
        (-0.2, 500, Severity.LOW),
        (-0.9, 5, Severity.LOW),
        (0.5, 1000, Severity.LOW),
    ])
    def test_tiers(self, avg, intensity, expected):
        assert classify_severity(avg, intensity) is expected

    @pytest.mark.parametrize("avg", [-1.0, -0.5, 0.0, 1.0])
    @pytest.mark.parametrize("intensity", [0, 10, 100, 10_000])
    def test_total(self, avg, intensity):
        assert classify_severity(avg, intensity) in set(Severity)


class TestComputeImpact:
    def test_base_weights(self):
        assert compute_impact("Network", 0.0) == 9
        assert compute_impact("Billing", 0.0) == 8
        assert compute_impact("Home Internet", 0.0) == 7
        assert compute_impact("Mobile App", 0.0) == 6
        assert compute_impact("Unknown Area", 0.0) == 5

    def test_negative_sentiment_bumps(self):
        assert compute_impact("Billing", -0.5) == 9
        assert compute_impact("Billing", -0.8) == 10

    def test_capped_at_ten(self):
        assert compute_impact("Network", -0.9) == 10

    def test_custom_weights(self):
        assert compute_impact("Retail", 0.0, {"Retail": 3}) == 3


class TestClassifyOpportunity:
    def test_reference_evidence(self, make_signal):
        signals = [make_signal(sentiment=-0.3, intensity=50), make_signal(sentiment=-0.3, intensity=50)]
        result = classify_opportunity(signals, "Network", effort=5, confidence=0.7)
        assert result.reach == 100
        assert result.impact == 9
        assert result.rice_score == 126.0
        assert result.severity is Severity.MEDIUM
        assert result.signal_count == 2

    def test_empty_evidence(self):
        result = classify_opportunity([], "Billing")
        assert result.reach == 0
        assert result.rice_score == 0.0
        assert result.severity is Severity.LOW

    def test_to_dict_serializes_severity(self, make_signal):
        data = classify_opportunity([make_signal()], "General").to_dict()
        assert data["severity"] == "low"
        assert set(data) >= {"reach", "impact", "confidence", "effort", "rice_score"}

    def test_reach_sums_intensity(self, make_signal):
        assert compute_reach([make_signal(intensity=2.5), make_signal(intensity=4)]) == 6.5
