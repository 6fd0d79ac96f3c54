from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .clock import Clock, PollingScheduler, Scheduler, TimerHandle
from .results import SessionKind, TestResult, result_from_latencies

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    SETUP = "setup"
    INSTRUCTIONS = "instructions"
    RUNNING = "running"
    RESULTS = "results"


class TrialStage(str, Enum):
    ARMED = "armed"  # waiting for the onset timer, nothing visible
    STIMULUS = "stimulus"  # stimulus visible, awaiting response
    EARLY_WARNING = "early_warning"
    PAUSE = "pause"  # between trials


class ResponseOutcome(str, Enum):
    IGNORED = "ignored"
    EARLY = "early"
    ACCEPTED = "accepted"
    DISCARDED = "discarded"


@dataclass(frozen=True, slots=True)
class ReactionTestConfig:
    warmup_trials: int = 5
    full_trials: int = 20
    min_delay_s: float = 1.0
    max_delay_s: float = 4.0
    inter_trial_pause_s: float = 1.0
    early_warning_s: float = 1.5

    def total_trials(self, kind: SessionKind) -> int:
        return self.warmup_trials if kind is SessionKind.WARMUP else self.full_trials


@dataclass(frozen=True, slots=True)
class ReactionSnapshot:
    """View model for the UI (pure data)."""

    title: str
    phase: Phase
    kind: SessionKind | None
    stage: TrialStage | None
    prompt: str
    trial_index: int
    total_trials: int
    awaiting_response: bool
    early_click: bool
    result: TestResult | None = None


class SeededRng:
    """Simple seeded RNG wrapper to keep deterministic streams explicit."""

    def __init__(self, seed: int) -> None:
        self._rng = random.Random(int(seed))

    def random(self) -> float:
        return self._rng.random()

    def uniform_half_open(self, a: float, b: float) -> float:
        """Uniform draw from [a, b)."""
        return a + (b - a) * self._rng.random()


class StimulusScheduler:
    """Owns the single live timer of a session.

    Every arm cancels the previous timer and bumps the generation; a callback
    from an older generation is dropped even if the underlying scheduler
    failed to cancel it.
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        rng: SeededRng,
        min_delay_s: float,
        max_delay_s: float,
    ) -> None:
        self._scheduler = scheduler
        self._rng = rng
        self._min_delay_s = float(min_delay_s)
        self._max_delay_s = float(max_delay_s)
        self._handle: TimerHandle | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def generation(self) -> int:
        return self._generation

    def next_delay_s(self) -> float:
        return self._rng.uniform_half_open(self._min_delay_s, self._max_delay_s)

    def arm_trial(self, on_onset: Callable[[], None]) -> float:
        """Arm the onset timer with a fresh random delay. Returns the delay."""

        delay_s = self.next_delay_s()
        self._arm(delay_s, on_onset)
        return delay_s

    def arm_pause(self, delay_s: float, callback: Callable[[], None]) -> None:
        self._arm(float(delay_s), callback)

    def cancel(self) -> None:
        self._generation += 1
        if self._handle is not None:
            self._scheduler.cancel(self._handle)
            self._handle = None

    def _arm(self, delay_s: float, callback: Callable[[], None]) -> None:
        self.cancel()
        generation = self._generation

        def fire() -> None:
            if generation != self._generation:
                logger.debug("discarding stale timer (generation %d, current %d)", generation, self._generation)
                return
            self._handle = None
            self._generation += 1  # one-shot
            callback()

        self._handle = self._scheduler.schedule(delay_s, fire)


class ReactionTimeTest:
    """Simple visual reaction time test: setup -> instructions -> running -> results.

    - Stimulus onset is delayed by a random interval so it cannot be anticipated.
    - Responses before onset are early clicks; the same trial is retried.
    - Time is entirely via injected Clock; timers via injected Scheduler.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        seed: int,
        config: ReactionTestConfig | None = None,
        scheduler: Scheduler | None = None,
        title: str = "Reaction Time Test",
    ) -> None:
        cfg = config or ReactionTestConfig()
        if cfg.warmup_trials <= 0 or cfg.full_trials <= 0:
            raise ValueError("trial counts must be > 0")
        if cfg.min_delay_s <= 0.0:
            raise ValueError("min_delay_s must be > 0")
        if cfg.max_delay_s <= cfg.min_delay_s:
            raise ValueError("max_delay_s must be > min_delay_s")
        if cfg.inter_trial_pause_s < 0.0:
            raise ValueError("inter_trial_pause_s must be >= 0")
        if cfg.early_warning_s < 0.0:
            raise ValueError("early_warning_s must be >= 0")

        self._title = title
        self._clock = clock
        self._config = cfg
        self._seed = int(seed)
        self._timers: Scheduler = scheduler if scheduler is not None else PollingScheduler(clock)
        self._stimulus = StimulusScheduler(
            scheduler=self._timers,
            rng=SeededRng(self._seed),
            min_delay_s=cfg.min_delay_s,
            max_delay_s=cfg.max_delay_s,
        )

        self._phase = Phase.SETUP
        self._kind: SessionKind | None = None
        self._stage: TrialStage | None = None
        self._trial_index = 0
        self._reaction_times_ms: list[float] = []
        self._awaiting_response = False
        self._stimulus_onset_s: float | None = None
        self._early_click = False
        self._early_clicks = 0
        self._result: TestResult | None = None

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def config(self) -> ReactionTestConfig:
        return self._config

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def kind(self) -> SessionKind | None:
        return self._kind

    @property
    def stage(self) -> TrialStage | None:
        return self._stage

    @property
    def trial_index(self) -> int:
        return self._trial_index

    @property
    def total_trials(self) -> int:
        if self._kind is None:
            return 0
        return self._config.total_trials(self._kind)

    @property
    def reaction_times_ms(self) -> list[float]:
        return list(self._reaction_times_ms)

    @property
    def awaiting_response(self) -> bool:
        return self._awaiting_response

    @property
    def stimulus_onset_s(self) -> float | None:
        return self._stimulus_onset_s

    @property
    def early_click(self) -> bool:
        return self._early_click

    @property
    def result(self) -> TestResult | None:
        return self._result

    def can_exit(self) -> bool:
        return self._phase is not Phase.RUNNING

    def start_session(self, kind: SessionKind | str) -> bool:
        kind = SessionKind(kind)
        if self._phase is not Phase.SETUP:
            logger.debug("start_session ignored in phase %s", self._phase.value)
            return False
        self._kind = kind
        self._trial_index = 0
        self._reaction_times_ms = []
        self._early_clicks = 0
        self._result = None
        self._phase = Phase.INSTRUCTIONS
        logger.debug("session %s: %d trials", kind.value, self.total_trials)
        return True

    def begin_running(self) -> bool:
        if self._phase is not Phase.INSTRUCTIONS:
            logger.debug("begin_running ignored in phase %s", self._phase.value)
            return False
        self._phase = Phase.RUNNING
        self._arm_current_trial()
        return True

    def reset(self) -> None:
        self._stimulus.cancel()
        self._phase = Phase.SETUP
        self._kind = None
        self._stage = None
        self._trial_index = 0
        self._reaction_times_ms = []
        self._clear_stimulus()
        self._early_click = False
        self._early_clicks = 0
        self._result = None

    def update(self) -> None:
        """Fire due timers. The host calls this once per frame."""

        if isinstance(self._timers, PollingScheduler):
            self._timers.update()

    def respond(self, at_s: float | None = None) -> ResponseOutcome:
        """Handle one response event (pointer or key) stamped at ``at_s``."""

        if self._phase is not Phase.RUNNING:
            return ResponseOutcome.IGNORED
        if self._stage is TrialStage.PAUSE:
            # Window of the trial just recorded is closed; extra presses are noise.
            return ResponseOutcome.IGNORED

        now = self._clock.now() if at_s is None else float(at_s)

        if not self._awaiting_response:
            self._early_click = True
            self._early_clicks += 1
            self._stage = TrialStage.EARLY_WARNING
            self._stimulus.arm_pause(self._config.early_warning_s, self._arm_current_trial)
            logger.debug("early response on trial %d", self._trial_index)
            return ResponseOutcome.EARLY

        assert self._stimulus_onset_s is not None
        latency_ms = (now - self._stimulus_onset_s) * 1000.0
        if latency_ms < 0.0:
            logger.warning(
                "negative latency %.3f ms on trial %d; retrying trial", latency_ms, self._trial_index
            )
            self._arm_current_trial()
            return ResponseOutcome.DISCARDED

        self._early_click = False
        self._complete_trial(latency_ms)
        return ResponseOutcome.ACCEPTED

    def snapshot(self) -> ReactionSnapshot:
        return ReactionSnapshot(
            title=self._title,
            phase=self._phase,
            kind=self._kind,
            stage=self._stage,
            prompt=self._prompt_text(),
            trial_index=self._trial_index,
            total_trials=self.total_trials,
            awaiting_response=self._awaiting_response,
            early_click=self._early_click,
            result=self._result,
        )

    def _arm_current_trial(self) -> None:
        self._clear_stimulus()
        self._early_click = False
        self._stage = TrialStage.ARMED
        delay_s = self._stimulus.arm_trial(self._on_stimulus_onset)
        logger.debug("trial %d armed, onset in %.3fs", self._trial_index, delay_s)

    def _on_stimulus_onset(self) -> None:
        self._stage = TrialStage.STIMULUS
        self._stimulus_onset_s = self._clock.now()
        self._awaiting_response = True

    def _complete_trial(self, latency_ms: float) -> None:
        self._reaction_times_ms.append(latency_ms)
        self._clear_stimulus()
        self._trial_index += 1

        if self._trial_index >= self.total_trials:
            self._finish_to_results()
            return

        self._stage = TrialStage.PAUSE
        self._stimulus.arm_pause(self._config.inter_trial_pause_s, self._arm_current_trial)

    def _clear_stimulus(self) -> None:
        self._awaiting_response = False
        self._stimulus_onset_s = None

    def _finish_to_results(self) -> None:
        assert self._kind is not None
        self._stimulus.cancel()
        self._result = result_from_latencies(
            self._kind,
            self._reaction_times_ms,
            early_clicks=self._early_clicks,
        )
        self._phase = Phase.RESULTS
        self._stage = None
        logger.info(
            "session %s complete: %d trials, mean %.1f ms",
            self._kind.value,
            self._result.trials,
            self._result.average_ms,
        )

    def _prompt_text(self) -> str:
        if self._phase is Phase.SETUP:
            return "Choose Warmup (5 trials) or Full Test (20 trials)."
        if self._phase is Phase.INSTRUCTIONS:
            heading = "Warmup Instructions" if self._kind is SessionKind.WARMUP else "Test Instructions"
            return "\n".join(
                [
                    heading,
                    "",
                    "- A red circle will appear on screen after a random delay",
                    "- Click the circle (or press Space) as quickly as possible when it appears",
                    "- Don't click before the circle appears - wait for it!",
                    f"- You'll complete {self.total_trials} trials",
                    "",
                    "Press Enter to begin.",
                ]
            )
        if self._phase is Phase.RESULTS:
            return "Results"
        if self._stage is TrialStage.EARLY_WARNING:
            return "Too early!\nWait for the red circle to appear"
        if self._stage is TrialStage.STIMULUS:
            return ""
        if self._stage is TrialStage.ARMED:
            return "Wait for it..."
        return "Get ready..."


def build_reaction_time_test(
    *,
    clock: Clock,
    seed: int,
    config: ReactionTestConfig | None = None,
    scheduler: Scheduler | None = None,
) -> ReactionTimeTest:
    return ReactionTimeTest(
        clock=clock,
        seed=seed,
        config=config,
        scheduler=scheduler,
    )
