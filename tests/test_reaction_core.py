from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from reaction_trainer.clock import PollingScheduler, TimerHandle
from reaction_trainer.reaction_core import (
    Phase,
    ReactionTestConfig,
    ReactionTimeTest,
    ResponseOutcome,
    SeededRng,
    StimulusScheduler,
    TrialStage,
    build_reaction_time_test,
)
from reaction_trainer.results import SessionKind


@dataclass
class FakeClock:
    t: float = 0.0

    def now(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)


@dataclass
class ManualScheduler:
    """Records timers and fires them only when told, ignoring cancellation."""

    scheduled: list[tuple[TimerHandle, Callable[[], None]]] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)

    def schedule(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(timer_id=len(self.scheduled) + 1, due_at_s=float(delay_s))
        self.scheduled.append((handle, callback))
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        self.cancelled.append(handle.timer_id)

    def fire(self, index: int) -> None:
        self.scheduled[index][1]()


def _make(seed: int = 11) -> tuple[FakeClock, PollingScheduler, ReactionTimeTest]:
    clock = FakeClock()
    timers = PollingScheduler(clock)
    engine = build_reaction_time_test(clock=clock, seed=seed, scheduler=timers)
    return clock, timers, engine


def _reveal(clock: FakeClock, engine: ReactionTimeTest) -> None:
    clock.advance(4.0)
    engine.update()
    assert engine.stage is TrialStage.STIMULUS


def _finish_pause(clock: FakeClock, engine: ReactionTimeTest) -> None:
    clock.advance(1.0)
    engine.update()
    assert engine.stage is TrialStage.ARMED


def test_start_session_moves_setup_to_instructions() -> None:
    _, _, engine = _make()
    assert engine.phase is Phase.SETUP
    assert engine.total_trials == 0

    assert engine.start_session(SessionKind.WARMUP) is True
    assert engine.phase is Phase.INSTRUCTIONS
    assert engine.total_trials == 5
    assert engine.trial_index == 0
    assert engine.reaction_times_ms == []


def test_full_session_has_twenty_trials_and_accepts_string_kind() -> None:
    _, _, engine = _make()
    assert engine.start_session("test") is True
    assert engine.kind is SessionKind.FULL
    assert engine.total_trials == 20


def test_illegal_transitions_are_no_ops() -> None:
    _, timers, engine = _make()

    assert engine.begin_running() is False
    assert engine.phase is Phase.SETUP
    assert engine.respond() is ResponseOutcome.IGNORED

    engine.start_session(SessionKind.WARMUP)
    assert engine.start_session(SessionKind.FULL) is False
    assert engine.kind is SessionKind.WARMUP
    assert engine.respond() is ResponseOutcome.IGNORED

    assert engine.begin_running() is True
    assert engine.begin_running() is False
    assert timers.pending_count() == 1


def test_unknown_session_kind_raises() -> None:
    _, _, engine = _make()
    with pytest.raises(ValueError):
        engine.start_session("marathon")


@pytest.mark.parametrize(
    "config",
    [
        ReactionTestConfig(warmup_trials=0),
        ReactionTestConfig(min_delay_s=0.0),
        ReactionTestConfig(min_delay_s=2.0, max_delay_s=2.0),
        ReactionTestConfig(inter_trial_pause_s=-1.0),
        ReactionTestConfig(early_warning_s=-0.5),
    ],
)
def test_invalid_config_rejected(config: ReactionTestConfig) -> None:
    with pytest.raises(ValueError):
        ReactionTimeTest(clock=FakeClock(), seed=1, config=config)


def test_begin_running_arms_first_trial_without_stimulus() -> None:
    clock, timers, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()

    assert engine.phase is Phase.RUNNING
    assert engine.stage is TrialStage.ARMED
    assert engine.awaiting_response is False
    assert engine.stimulus_onset_s is None
    assert timers.pending_count() == 1

    clock.advance(0.999)
    engine.update()
    assert engine.awaiting_response is False


def test_stimulus_onset_sets_awaiting_and_timestamp_together() -> None:
    clock, _, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()
    _reveal(clock, engine)

    assert engine.awaiting_response is True
    assert engine.stimulus_onset_s == pytest.approx(4.0)


def test_valid_response_records_latency_and_pauses() -> None:
    clock, timers, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()
    _reveal(clock, engine)

    clock.advance(0.25)
    assert engine.respond() is ResponseOutcome.ACCEPTED
    assert engine.reaction_times_ms == [pytest.approx(250.0)]
    assert engine.trial_index == 1
    assert engine.awaiting_response is False
    assert engine.stimulus_onset_s is None
    assert engine.stage is TrialStage.PAUSE
    assert timers.pending_count() == 1

    clock.advance(0.75)
    engine.update()
    assert engine.stage is TrialStage.PAUSE
    clock.advance(0.25)
    engine.update()
    assert engine.stage is TrialStage.ARMED


def test_explicit_timestamp_is_used_for_latency() -> None:
    clock, _, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()
    _reveal(clock, engine)
    onset = engine.stimulus_onset_s
    assert onset is not None

    clock.advance(5.0)
    assert engine.respond(at_s=onset + 0.180) is ResponseOutcome.ACCEPTED
    assert engine.reaction_times_ms == [pytest.approx(180.0)]


def test_early_click_keeps_trial_index_and_retries_same_trial() -> None:
    clock, timers, engine = _make()
    engine.start_session(SessionKind.FULL)
    engine.begin_running()

    clock.advance(0.5)
    engine.update()
    assert engine.respond() is ResponseOutcome.EARLY
    assert engine.early_click is True
    assert engine.stage is TrialStage.EARLY_WARNING
    assert engine.trial_index == 0
    assert engine.reaction_times_ms == []
    # The onset timer was replaced by the warning timer.
    assert timers.pending_count() == 1

    clock.advance(1.25)
    engine.update()
    assert engine.awaiting_response is False
    assert engine.stage is TrialStage.EARLY_WARNING

    clock.advance(0.25)
    engine.update()
    assert engine.stage is TrialStage.ARMED
    assert engine.early_click is False
    assert engine.trial_index == 0

    _reveal(clock, engine)
    clock.advance(0.3)
    assert engine.respond() is ResponseOutcome.ACCEPTED
    assert engine.trial_index == 1
    assert engine.reaction_times_ms == [pytest.approx(300.0)]


def test_early_click_during_warning_restarts_window() -> None:
    clock, timers, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()

    assert engine.respond() is ResponseOutcome.EARLY
    clock.advance(1.0)
    assert engine.respond() is ResponseOutcome.EARLY
    assert timers.pending_count() == 1

    clock.advance(1.0)
    engine.update()
    assert engine.stage is TrialStage.EARLY_WARNING

    clock.advance(0.5)
    engine.update()
    assert engine.stage is TrialStage.ARMED


def test_duplicate_response_after_valid_one_is_ignored() -> None:
    clock, _, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()
    _reveal(clock, engine)

    clock.advance(0.25)
    assert engine.respond() is ResponseOutcome.ACCEPTED
    assert engine.respond() is ResponseOutcome.IGNORED
    clock.advance(0.01)
    assert engine.respond() is ResponseOutcome.IGNORED

    assert engine.reaction_times_ms == [pytest.approx(250.0)]
    assert engine.trial_index == 1
    assert engine.early_click is False
    assert engine.stage is TrialStage.PAUSE


def test_negative_latency_is_discarded_and_trial_rearmed() -> None:
    clock, timers, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()
    _reveal(clock, engine)
    onset = engine.stimulus_onset_s
    assert onset is not None

    assert engine.respond(at_s=onset - 0.05) is ResponseOutcome.DISCARDED
    assert engine.reaction_times_ms == []
    assert engine.trial_index == 0
    assert engine.awaiting_response is False
    assert engine.stimulus_onset_s is None
    assert engine.stage is TrialStage.ARMED
    assert timers.pending_count() == 1


def test_reset_mid_trial_cancels_timer_and_returns_to_setup() -> None:
    clock, timers, engine = _make()
    engine.start_session(SessionKind.FULL)
    engine.begin_running()
    _reveal(clock, engine)
    clock.advance(0.2)
    engine.respond()
    _finish_pause(clock, engine)

    engine.reset()
    assert engine.phase is Phase.SETUP
    assert timers.pending_count() == 0

    clock.advance(10.0)
    engine.update()
    assert engine.phase is Phase.SETUP
    assert engine.awaiting_response is False
    assert engine.stage is None

    assert engine.start_session(SessionKind.WARMUP) is True
    assert engine.trial_index == 0
    assert engine.reaction_times_ms == []
    assert engine.early_click is False


def test_stale_onset_callback_after_early_click_is_discarded() -> None:
    clock = FakeClock()
    timers = ManualScheduler()
    engine = ReactionTimeTest(clock=clock, seed=3, scheduler=timers)
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()

    engine.respond()
    assert timers.cancelled == [1]
    assert len(timers.scheduled) == 2

    # Cancelled onset fires anyway.
    clock.advance(2.0)
    timers.fire(0)
    assert engine.awaiting_response is False
    assert engine.stimulus_onset_s is None
    assert engine.stage is TrialStage.EARLY_WARNING

    timers.fire(1)
    assert engine.stage is TrialStage.ARMED
    timers.fire(2)
    assert engine.stage is TrialStage.STIMULUS
    # A one-shot timer delivered twice is stale the second time.
    clock.advance(0.3)
    timers.fire(2)
    assert engine.stimulus_onset_s == pytest.approx(2.0)
    assert engine.respond() is ResponseOutcome.ACCEPTED
    assert engine.reaction_times_ms == [pytest.approx(300.0)]


def test_stale_callback_after_reset_does_not_touch_new_session() -> None:
    clock = FakeClock()
    timers = ManualScheduler()
    engine = ReactionTimeTest(clock=clock, seed=3, scheduler=timers)
    engine.start_session(SessionKind.WARMUP)
    engine.begin_running()

    engine.reset()
    engine.start_session(SessionKind.FULL)
    timers.fire(0)

    assert engine.phase is Phase.INSTRUCTIONS
    assert engine.awaiting_response is False
    assert engine.stage is None


def test_can_exit_everywhere_but_running() -> None:
    _, _, engine = _make()
    assert engine.can_exit() is True
    engine.start_session(SessionKind.WARMUP)
    assert engine.can_exit() is True
    engine.begin_running()
    assert engine.can_exit() is False
    engine.reset()
    assert engine.can_exit() is True


def test_snapshot_prompts_follow_trial_stage() -> None:
    clock, _, engine = _make()
    engine.start_session(SessionKind.WARMUP)
    snap = engine.snapshot()
    assert snap.phase is Phase.INSTRUCTIONS
    assert "You'll complete 5 trials" in snap.prompt

    engine.begin_running()
    assert engine.snapshot().prompt == "Wait for it..."

    engine.respond()
    snap = engine.snapshot()
    assert snap.early_click is True
    assert snap.prompt.startswith("Too early!")

    clock.advance(1.5)
    engine.update()
    _reveal(clock, engine)
    snap = engine.snapshot()
    assert snap.awaiting_response is True
    assert snap.prompt == ""

    clock.advance(0.2)
    engine.respond()
    snap = engine.snapshot()
    assert snap.prompt == "Get ready..."
    assert snap.trial_index == 1
    assert snap.total_trials == 5
    assert snap.result is None


def test_onset_delays_are_in_range_and_distinct() -> None:
    stim = StimulusScheduler(
        scheduler=ManualScheduler(),
        rng=SeededRng(2024),
        min_delay_s=1.0,
        max_delay_s=4.0,
    )
    delays = [stim.next_delay_s() for _ in range(200)]
    assert all(1.0 <= d < 4.0 for d in delays)
    assert len(set(delays)) == len(delays)


def test_same_seed_same_delay_stream() -> None:
    a = SeededRng(42)
    b = SeededRng(42)
    assert [a.uniform_half_open(1.0, 4.0) for _ in range(10)] == [
        b.uniform_half_open(1.0, 4.0) for _ in range(10)
    ]


def test_stimulus_scheduler_cancel_bumps_generation() -> None:
    timers = ManualScheduler()
    stim = StimulusScheduler(scheduler=timers, rng=SeededRng(1), min_delay_s=1.0, max_delay_s=4.0)
    fired: list[str] = []

    stim.arm_trial(lambda: fired.append("onset"))
    assert stim.pending is True
    before = stim.generation
    stim.cancel()
    assert stim.generation == before + 1
    assert stim.pending is False

    timers.fire(0)
    assert fired == []
