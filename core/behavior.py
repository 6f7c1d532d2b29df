"""
Human Behavior Engine — timing that does not look machine-generated.

Stateless apart from its random source:
  - compute_delay():  inter-message delay from pattern, typing time, jitter,
                      batch position, day-of-run variation and fatigue,
                      clamped to the pattern's bounds
  - typing_time():    simulated typing duration for a message length
  - analyze_burst():  risk scoring over a trailing window of send timestamps
  - optimal_order():  shuffle then interleave recipients

Pass a seeded random.Random for reproducible runs.
"""
from __future__ import annotations

import random
import structlog
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from models.schemas import ActivityPattern, BurstAnalysis, RiskLevel, TypingSpeed

logger = structlog.get_logger()

T = TypeVar("T")

BURST_WINDOW_MS = 300_000


@dataclass(frozen=True)
class PatternBounds:
    min_seconds: float
    max_seconds: float
    base_seconds: float

    @property
    def min_ms(self) -> int:
        return int(self.min_seconds * 1000)

    @property
    def max_ms(self) -> int:
        return int(self.max_seconds * 1000)

    @property
    def base_ms(self) -> int:
        return int(self.base_seconds * 1000)


PATTERNS: dict[ActivityPattern, PatternBounds] = {
    ActivityPattern.CONSERVATIVE: PatternBounds(8, 20, 15),
    ActivityPattern.MODERATE: PatternBounds(5, 15, 10),
    ActivityPattern.AGGRESSIVE: PatternBounds(2, 12, 6),
}

# characters per second
TYPING_SPEEDS: dict[TypingSpeed, float] = {
    TypingSpeed.SLOW: 2.5,
    TypingSpeed.NORMAL: 4.2,
    TypingSpeed.FAST: 6.8,
}


def pattern_bounds(pattern: ActivityPattern | str) -> PatternBounds:
    try:
        return PATTERNS[ActivityPattern(pattern)]
    except ValueError:
        return PATTERNS[ActivityPattern.MODERATE]


def daily_variation(day: date) -> float:
    """Multiplier in [0.8, 1.4], fixed for a calendar date."""
    return random.Random(day.isoformat()).uniform(0.8, 1.4)


def position_multiplier(position: int, batch_size: int) -> float:
    if position == 0:
        return 1.5   # thinking time
    if position == batch_size - 1:
        return 1.3
    return 1.0


def risk_level(messages_in_window: int, average_interval_ms: float) -> RiskLevel:
    if messages_in_window > 15 and average_interval_ms < 10_000:
        return RiskLevel.CRITICAL
    if messages_in_window > 10 and average_interval_ms < 15_000:
        return RiskLevel.HIGH
    if messages_in_window > 6 and average_interval_ms < 20_000:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class HumanBehaviorEngine:
    """Computes human-like delays; holds no per-tenant state."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def typing_time(self, message_length: int, speed: TypingSpeed | str = TypingSpeed.NORMAL) -> int:
        """Typing duration in ms, ±30% around length / chars-per-second."""
        cps = TYPING_SPEEDS.get(TypingSpeed(speed), TYPING_SPEEDS[TypingSpeed.NORMAL])
        base = max(0, message_length) / cps * 1000
        return int(base * self._rng.uniform(0.7, 1.3))

    def compute_delay(
        self,
        pattern: ActivityPattern | str,
        message_length: int,
        position: int = 0,
        batch_size: int = 1,
        daily_count: int = 0,
        day: Optional[date] = None,
        typing_speed: TypingSpeed | str = TypingSpeed.NORMAL,
        jitter: bool = True,
    ) -> int:
        """Delay in ms before the next send, always within the pattern's [min, max]."""
        bounds = pattern_bounds(pattern)
        typing = self.typing_time(message_length, typing_speed)
        jitter_mult = self._rng.uniform(0.3, 1.5) if jitter else 1.0
        variation = daily_variation(day or date.today())
        fatigue = 1 + max(0, daily_count) * 0.01

        raw = int(
            (typing + bounds.base_ms * jitter_mult)
            * position_multiplier(position, batch_size)
            * variation
            * fatigue
        )
        delay = max(bounds.min_ms, min(bounds.max_ms, raw))
        logger.debug("human_delay_computed",
                     pattern=getattr(pattern, "value", pattern),
                     message_length=message_length, position=position,
                     batch_size=batch_size, daily_count=daily_count,
                     raw_ms=raw, delay_ms=delay)
        return delay

    def analyze_burst(
        self,
        timestamps_ms: Iterable[float],
        now_ms: float,
        window_ms: int = BURST_WINDOW_MS,
    ) -> BurstAnalysis:
        recent = sorted(t for t in timestamps_ms if now_ms - t <= window_ms)
        count = len(recent)
        average = (recent[-1] - recent[0]) / (count - 1) if count > 1 else 0.0

        is_burst = count > 10 and average < 15_000
        cooldown = int(60_000 + self._rng.random() * 120_000) if is_burst else 0
        return BurstAnalysis(
            is_burst=is_burst,
            risk_level=risk_level(count, average),
            messages_in_window=count,
            average_interval_ms=average,
            recommended_cooldown_ms=cooldown,
        )

    def optimal_order(self, items: Sequence[T], key: Callable[[T], str]) -> list[T]:
        """
        Shuffle, then interleave by recipient so no recipient is hit twice in
        a row unless nothing else remains.

        Each step takes the recipient with the most remaining items other
        than the one just used; ties keep shuffled order.
        """
        shuffled = list(items)
        self._rng.shuffle(shuffled)

        groups: dict[str, list[T]] = {}
        for item in shuffled:
            groups.setdefault(key(item), []).append(item)

        result: list[T] = []
        last: Optional[str] = None
        while groups:
            choices = [r for r in groups if r != last] or list(groups)
            pick = max(choices, key=lambda r: len(groups[r]))
            result.append(groups[pick].pop(0))
            if not groups[pick]:
                del groups[pick]
            last = pick
        return result

    def estimate_delay_ms(self, pattern: ActivityPattern | str) -> int:
        """Baseline per-message delay, used for queue wait estimates."""
        return pattern_bounds(pattern).base_ms
