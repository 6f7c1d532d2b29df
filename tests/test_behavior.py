"""Tests for the Human Behavior Engine."""
import random
from datetime import date

import pytest

from core.behavior import (
    PATTERNS, HumanBehaviorEngine, daily_variation, pattern_bounds, position_multiplier, risk_level,
)
from models.schemas import ActivityPattern, RiskLevel, TypingSpeed


@pytest.fixture
def engine():
    return HumanBehaviorEngine(random.Random(1234))


class TestComputeDelay:
    @pytest.mark.parametrize("pattern", list(ActivityPattern))
    def test_always_within_pattern_bounds(self, engine, pattern):
        bounds = PATTERNS[pattern]
        extremes = [
            dict(message_length=0, position=1, batch_size=3, daily_count=0),
            dict(message_length=5000, position=0, batch_size=10, daily_count=10_000),
            dict(message_length=120, position=9, batch_size=10, daily_count=250),
        ]
        for day in (date(2024, 1, 3), date(2024, 6, 30), date(2025, 2, 14)):
            for kwargs in extremes:
                for _ in range(25):
                    delay = engine.compute_delay(pattern, day=day, **kwargs)
                    assert bounds.min_ms <= delay <= bounds.max_ms

    def test_long_message_hits_upper_bound(self, engine):
        delay = engine.compute_delay(ActivityPattern.AGGRESSIVE, 10_000, day=date(2024, 1, 3))
        assert delay == PATTERNS[ActivityPattern.AGGRESSIVE].max_ms

    def test_unknown_pattern_falls_back_to_moderate(self):
        assert pattern_bounds("reckless") == PATTERNS[ActivityPattern.MODERATE]


class TestHelpers:
    def test_daily_variation_is_stable_per_day(self):
        day = date(2024, 1, 3)
        assert daily_variation(day) == daily_variation(day)
        assert 0.8 <= daily_variation(day) <= 1.4

    def test_position_multiplier(self):
        assert position_multiplier(0, 5) == 1.5
        assert position_multiplier(4, 5) == 1.3
        assert position_multiplier(2, 5) == 1.0

    def test_typing_time_scales_with_speed(self):
        slow = HumanBehaviorEngine(random.Random(5)).typing_time(100, TypingSpeed.SLOW)
        fast = HumanBehaviorEngine(random.Random(5)).typing_time(100, TypingSpeed.FAST)
        assert slow > fast
        assert 100 / 2.5 * 700 <= slow <= 100 / 2.5 * 1300

    @pytest.mark.parametrize("count,average,level", [
        (16, 9_000, RiskLevel.CRITICAL),
        (11, 14_000, RiskLevel.HIGH),
        (7, 19_000, RiskLevel.MEDIUM),
        (7, 25_000, RiskLevel.LOW),
        (3, 1_000, RiskLevel.LOW),
    ])
    def test_risk_levels(self, count, average, level):
        assert risk_level(count, average) == level


class TestBurstAnalysis:
    def test_dense_sends_are_a_burst(self, engine):
        now = 1_000_000_000
        timestamps = [now - i * 5_000 for i in range(16)]
        result = engine.analyze_burst(timestamps, now)
        assert result.is_burst is True
        assert result.risk_level == RiskLevel.CRITICAL
        assert 60_000 <= result.recommended_cooldown_ms <= 180_000

    def test_old_sends_fall_out_of_window(self, engine):
        now = 1_000_000_000
        timestamps = [now - 400_000 - i * 1_000 for i in range(20)]
        result = engine.analyze_burst(timestamps, now)
        assert result.messages_in_window == 0
        assert result.is_burst is False
        assert result.recommended_cooldown_ms == 0

    def test_spaced_sends_are_low_risk(self, engine):
        now = 1_000_000_000
        timestamps = [now - i * 30_000 for i in range(8)]
        result = engine.analyze_burst(timestamps, now)
        assert result.risk_level == RiskLevel.LOW
        assert result.average_interval_ms == 30_000


class TestOptimalOrder:
    def test_no_back_to_back_recipient_when_avoidable(self, engine):
        items = [("a", 1), ("a", 2), ("a", 3), ("b", 1), ("b", 2), ("c", 1)]
        ordered = engine.optimal_order(items, key=lambda i: i[0])
        assert sorted(ordered) == sorted(items)
        recipients = [r for r, _ in ordered]
        assert all(x != y for x, y in zip(recipients, recipients[1:]))

    def test_single_recipient_keeps_everything(self, engine):
        items = [("a", n) for n in range(4)]
        assert sorted(engine.optimal_order(items, key=lambda i: i[0])) == items

    def test_empty(self, engine):
        assert engine.optimal_order([], key=str) == []
