"""Tests for velocity classification, per-area counts and early-warning projections."""
from __future__ import annotations

from datetime import timedelta

import pytest

from pulse.models import ProductArea
from pulse.signals import TopicKey
from pulse.velocity import (
    Trajectory,
    VelocityBucket,
    classify_trajectory,
    early_warnings,
    group_signals,
    project_warning,
    velocity_by_product_area,
    velocity_severity,
)

HOUR = 60


@pytest.fixture()
def areas() -> list[ProductArea]:
    return [
        ProductArea(id=1, name="Network", color="#E8258E"),
        ProductArea(id=2, name="Billing", color=""),
    ]


class TestClassifyTrajectory:
    def test_growing_reference(self):
        # mean 27.5 vs 11 -> +16.5
        assert classify_trajectory([10, 12], [25, 30]) is Trajectory.GROWING

    def test_declining(self):
        assert classify_trajectory([25, 30], [10, 12]) is Trajectory.DECLINING

    def test_threshold_is_exclusive(self):
        assert classify_trajectory([10], [12]) is Trajectory.STABLE
        assert classify_trajectory([12], [10]) is Trajectory.STABLE

    def test_new_issue_is_growing(self):
        assert classify_trajectory([], [1]) is Trajectory.GROWING

    def test_quiet_issue_is_declining(self):
        assert classify_trajectory([5], []) is Trajectory.DECLINING

    def test_empty(self):
        assert classify_trajectory([], []) is None


class TestGroupSignals:
    def test_groups_by_normalized_topic_and_area(self, make_signal, now):
        signals = [
            make_signal(topic="Outage", minutes_ago=20 * HOUR, intensity=10),
            make_signal(topic=" outage ", minutes_ago=2 * HOUR, intensity=25),
            make_signal(topic="OUTAGE", product_area_id=2, minutes_ago=2 * HOUR),
        ]
        buckets = group_signals(signals, now - timedelta(hours=12))
        assert set(buckets) == {TopicKey("outage", 1), TopicKey("outage", 2)}
        network = buckets[TopicKey("outage", 1)]
        assert network.earlier == [10]
        assert network.recent == [25]
        assert network.display_topic == "Outage"

    def test_velocity_change(self):
        bucket = VelocityBucket(key=TopicKey("x", 1), display_topic="x", earlier=[10, 12], recent=[25, 30])
        assert bucket.velocity_change == pytest.approx(16.5)


class TestVelocityByProductArea:
    def test_counts_per_area(self, fake_store, make_signal, areas, now):
        fake_store.signals = [
            # growing on Network
            make_signal(topic="5G drop", minutes_ago=20 * HOUR, intensity=10),
            make_signal(topic="5G drop", minutes_ago=18 * HOUR, intensity=12),
            make_signal(topic="5G drop", minutes_ago=3 * HOUR, intensity=25),
            make_signal(topic="5G drop", minutes_ago=1 * HOUR, intensity=30),
            # stable on Network
            make_signal(topic="Roaming", minutes_ago=20 * HOUR, intensity=5),
            make_signal(topic="Roaming", minutes_ago=2 * HOUR, intensity=6),
            # declining on Billing (only earlier)
            make_signal(topic="Late fee", product_area_id=2, minutes_ago=15 * HOUR, intensity=4),
            # unassigned: ignored
            make_signal(topic="Misc", product_area_id=None, minutes_ago=1 * HOUR),
            # outside lookback: ignored
            make_signal(topic="Old", minutes_ago=30 * HOUR),
        ]
        rows = {r["product_area_name"]: r for r in velocity_by_product_area(fake_store, areas, now)}
        assert rows["Network"]["growing"] == 1
        assert rows["Network"]["stable"] == 1
        assert rows["Network"]["declining"] == 0
        assert rows["Billing"]["declining"] == 1
        assert rows["Billing"]["color"] == "#6B7280"

    def test_every_area_listed_when_empty(self, fake_store, areas, now):
        rows = velocity_by_product_area(fake_store, areas, now)
        assert [r["product_area_name"] for r in rows] == ["Network", "Billing"]
        assert all(r["growing"] == r["stable"] == r["declining"] == 0 for r in rows)

    def test_store_failure_degrades_to_zero_counts(self, fake_store, areas, now):
        fake_store.fail = True
        rows = velocity_by_product_area(fake_store, areas, now)
        assert len(rows) == 2
        assert rows[0]["growing"] == 0


class TestEarlyWarnings:
    def test_velocity_severity(self):
        assert velocity_severity(60) == "critical"
        assert velocity_severity(30) == "high"
        assert velocity_severity(11) == "medium"
        assert velocity_severity(10) == "low"

    def test_projection(self):
        bucket = VelocityBucket(key=TopicKey("x", 1), display_topic="x", earlier=[10, 12], recent=[25, 30])
        velocity, current, projected, time_to_spread, affected = project_warning(bucket, 12, 6, 100, 10)
        assert velocity == pytest.approx(1.375)
        assert current == 55
        assert projected == pytest.approx(63.25)
        assert time_to_spread == pytest.approx(45 / 1.375)
        assert affected == 633

    def test_only_growing_topics_fastest_first(self, fake_store, make_signal, areas, now):
        fake_store.signals = [
            make_signal(topic="Slow", minutes_ago=20 * HOUR, intensity=1),
            make_signal(topic="Slow", minutes_ago=2 * HOUR, intensity=5),
            make_signal(topic="Fast", product_area_id=2, minutes_ago=20 * HOUR, intensity=1),
            make_signal(topic="Fast", product_area_id=2, minutes_ago=2 * HOUR, intensity=100),
            make_signal(topic="Flat", minutes_ago=20 * HOUR, intensity=5),
            make_signal(topic="Flat", minutes_ago=2 * HOUR, intensity=5),
        ]
        warnings = early_warnings(fake_store, areas, now)
        assert [w.topic for w in warnings] == ["Fast", "Slow"]
        assert warnings[0].product_area_name == "Billing"
        assert warnings[0].to_dict()["severity"] == velocity_severity(warnings[0].velocity_per_hour)

    def test_limit(self, fake_store, make_signal, areas, now):
        fake_store.signals = [make_signal(topic=f"t{i}", minutes_ago=HOUR) for i in range(5)]
        assert len(early_warnings(fake_store, areas, now, limit=3)) == 3

    def test_store_failure_is_empty(self, fake_store, areas, now):
        fake_store.fail = True
        assert early_warnings(fake_store, areas, now) == []
