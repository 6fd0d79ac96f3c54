from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionKind(str, Enum):
    # Values match the stored ``test_type`` column.
    WARMUP = "warmup"
    FULL = "test"


class LatencyRating(str, Enum):
    FAST = "fast"
    AVERAGE = "average"
    SLOW = "slow"


FAST_BELOW_MS = 300.0
AVERAGE_BELOW_MS = 400.0


def rate_latency(latency_ms: float) -> LatencyRating:
    if latency_ms < FAST_BELOW_MS:
        return LatencyRating.FAST
    if latency_ms < AVERAGE_BELOW_MS:
        return LatencyRating.AVERAGE
    return LatencyRating.SLOW


@dataclass(frozen=True, slots=True)
class TestResult:
    """Finalized outcome of one completed session.

    Produced once by the engine when the last trial is recorded. Best/worst/median
    are derived on demand and never stored separately.
    """

    __test__ = False  # not a pytest class

    kind: SessionKind
    reaction_times_ms: tuple[float, ...]
    average_ms: float
    early_clicks: int = 0

    @property
    def trials(self) -> int:
        return len(self.reaction_times_ms)

    @property
    def best_ms(self) -> float:
        return min(self.reaction_times_ms)

    @property
    def worst_ms(self) -> float:
        return max(self.reaction_times_ms)

    @property
    def median_ms(self) -> float:
        rts = sorted(self.reaction_times_ms)
        mid = len(rts) // 2
        if len(rts) % 2 == 1:
            return float(rts[mid])
        return float(rts[mid - 1] + rts[mid]) / 2.0

    def ratings(self) -> list[LatencyRating]:
        return [rate_latency(rt) for rt in self.reaction_times_ms]


def result_from_latencies(
    kind: SessionKind,
    reaction_times_ms: list[float],
    *,
    early_clicks: int = 0,
) -> TestResult:
    """Build a TestResult from a completed latency list."""

    if not reaction_times_ms:
        raise ValueError("reaction_times_ms must not be empty")
    rts = tuple(float(rt) for rt in reaction_times_ms)
    return TestResult(
        kind=kind,
        reaction_times_ms=rts,
        average_ms=sum(rts) / float(len(rts)),
        early_clicks=int(early_clicks),
    )


def format_result_lines(result: TestResult) -> list[str]:
    title = "Warmup Complete!" if result.kind is SessionKind.WARMUP else "Test Complete!"
    lines = [
        title,
        "",
        f"Average Time: {result.average_ms:.0f}ms",
        f"Best Time:    {result.best_ms:.0f}ms",
        f"Trials:       {result.trials}",
    ]
    if result.early_clicks:
        lines.append(f"Early clicks: {result.early_clicks}")
    return lines
