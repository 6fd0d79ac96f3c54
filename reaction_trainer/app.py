"""Pygame UI shell for the Reaction Trainer.

The main menu is the setup screen: pick a warmup (5 trials) or a full test
(20 trials). Space and a left click on the arena both go through the same
engine call, so neither can skip the early-click check.

Deterministic timing/state lives in reaction_trainer/reaction_core.py.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import pygame

from .clock import RealClock
from .persistence import PersistenceError, ResultStore, default_db_path, default_user_id
from .reaction_core import (
    Phase,
    ReactionSnapshot,
    ReactionTimeTest,
    TrialStage,
    build_reaction_time_test,
)
from .results import LatencyRating, SessionKind, format_result_lines

logger = logging.getLogger(__name__)

WINDOW_SIZE = (960, 540)
TARGET_FPS = 60

RATING_COLORS = {
    LatencyRating.FAST: (96, 200, 120),
    LatencyRating.AVERAGE: (230, 200, 90),
    LatencyRating.SLOW: (230, 96, 96),
}


class Screen(Protocol):
    def handle_event(self, event: pygame.event.Event) -> None: ...
    def render(self, surface: pygame.Surface) -> None: ...


@dataclass(frozen=True, slots=True)
class MenuItem:
    label: str
    action: Callable[[], None]


class App:
    def __init__(self, surface: pygame.Surface, font: pygame.font.Font) -> None:
        self._surface = surface
        self._font = font
        self._screens: list[Screen] = []
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def font(self) -> pygame.font.Font:
        return self._font

    def push(self, screen: Screen) -> None:
        self._screens.append(screen)

    def pop(self) -> None:
        # Never pop the last/root screen; root handles its own quit/back behavior.
        if len(self._screens) > 1:
            self._screens.pop()

    def quit(self) -> None:
        self._running = False

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.QUIT:
            self.quit()
            return
        if not self._screens:
            return
        self._screens[-1].handle_event(event)

    def render(self) -> None:
        if not self._screens:
            return
        self._screens[-1].render(self._surface)


class MenuScreen:
    def __init__(self, app: App, title: str, items: list[MenuItem], *, is_root: bool = False) -> None:
        self._app = app
        self._title = title
        self._items = items
        self._selected = 0
        self._is_root = is_root
        self._title_font = pygame.font.Font(None, 42)
        self._item_font = pygame.font.Font(None, 32)
        self._hint_font = pygame.font.Font(None, 22)

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.KEYDOWN:
            self._handle_key(event.key)

    def _handle_key(self, key: int) -> None:
        if key in (pygame.K_UP, pygame.K_w):
            self._move(-1)
        elif key in (pygame.K_DOWN, pygame.K_s):
            self._move(1)
        elif key in (pygame.K_RETURN, pygame.K_KP_ENTER, pygame.K_SPACE):
            self._activate()
        elif key in (pygame.K_ESCAPE, pygame.K_BACKSPACE):
            self._back()

    def _move(self, delta: int) -> None:
        if not self._items:
            return
        self._selected = (self._selected + delta) % len(self._items)

    def _activate(self) -> None:
        if not self._items:
            return
        self._items[self._selected].action()

    def _back(self) -> None:
        if self._is_root:
            self._app.quit()
        else:
            self._app.pop()

    def render(self, surface: pygame.Surface) -> None:
        w, h = surface.get_size()
        border = (226, 236, 255)
        text_main = (238, 245, 255)
        text_muted = (186, 200, 224)

        surface.fill((3, 9, 78))

        frame_margin = max(10, min(26, w // 34))
        frame = pygame.Rect(
            frame_margin,
            frame_margin,
            max(260, w - frame_margin * 2),
            max(220, h - frame_margin * 2),
        )
        pygame.draw.rect(surface, (8, 18, 104), frame)
        pygame.draw.rect(surface, border, frame, 2)

        title = self._title_font.render(self._title, True, text_main)
        surface.blit(title, title.get_rect(midtop=(frame.centerx, frame.y + 24)))

        subtitle = self._hint_font.render(
            "A red circle appears after a random delay: click it or press Space as fast as you can.",
            True,
            text_muted,
        )
        surface.blit(subtitle, subtitle.get_rect(midtop=(frame.centerx, frame.y + 70)))

        row_h = 44
        y = frame.y + 120
        for idx, item in enumerate(self._items):
            row = pygame.Rect(frame.centerx - 200, y, 400, row_h)
            selected = idx == self._selected
            if selected:
                pygame.draw.rect(surface, (244, 248, 255), row)
                pygame.draw.rect(surface, (120, 142, 196), row, 2)
            else:
                pygame.draw.rect(surface, (9, 20, 106), row)
                pygame.draw.rect(surface, (62, 84, 152), row, 1)

            color = (14, 26, 74) if selected else text_main
            text = self._item_font.render(item.label, True, color)
            surface.blit(text, text.get_rect(center=row.center))
            y += row_h + 10

        footer = "Enter/Space: Select  |  Esc: Back"
        foot = self._hint_font.render(footer, True, text_muted)
        surface.blit(foot, foot.get_rect(midbottom=(frame.centerx, frame.bottom - 10)))


class ReactionTestScreen:
    def __init__(
        self,
        app: App,
        *,
        engine_factory: Callable[[], ReactionTimeTest],
        kind: SessionKind,
        store: ResultStore | None = None,
        user_id: str = "",
    ) -> None:
        self._app = app
        self._engine = engine_factory()
        self._engine.start_session(kind)
        self._store = store
        self._user_id = user_id

        # Optional tags for a saved full test.
        self._condition = ""
        self._notes = ""
        self._active_field = 0  # 0 = condition, 1 = notes
        self._status: str | None = None
        self._saved = False

        self._arena_rect = pygame.Rect(0, 0, 0, 0)

        self._small_font = pygame.font.Font(None, 26)
        self._tiny_font = pygame.font.Font(None, 20)

    @property
    def engine(self) -> ReactionTimeTest:
        return self._engine

    def handle_event(self, event: pygame.event.Event) -> None:
        # Emergency exit: abandons the session from any phase.
        if event.type == pygame.KEYDOWN:
            shift_esc = event.key == pygame.K_ESCAPE and (getattr(event, "mod", 0) & pygame.KMOD_SHIFT)
            if event.key == pygame.K_F12 or shift_esc:
                self._leave()
                return

        phase = self._engine.phase
        if phase is Phase.INSTRUCTIONS:
            if event.type == pygame.KEYDOWN:
                if event.key in (pygame.K_RETURN, pygame.K_KP_ENTER, pygame.K_SPACE):
                    self._engine.begin_running()
                elif event.key == pygame.K_ESCAPE:
                    self._leave()
            return

        if phase is Phase.RUNNING:
            if event.type == pygame.KEYDOWN and event.key == pygame.K_SPACE:
                self._respond()
            elif event.type == pygame.MOUSEBUTTONDOWN and event.button == 1:
                if self._arena_rect.collidepoint(event.pos):
                    self._respond()
            return

        if phase is Phase.RESULTS and event.type == pygame.KEYDOWN:
            self._handle_results_key(event)

    def _respond(self) -> None:
        outcome = self._engine.respond()
        logger.debug("response on trial %d: %s", self._engine.trial_index, outcome.value)

    def _handle_results_key(self, event: pygame.event.Event) -> None:
        kind = self._engine.kind
        if event.key == pygame.K_ESCAPE:
            self._leave()
            return
        if kind is SessionKind.WARMUP:
            if event.key == pygame.K_r:
                self._leave()
            elif event.key == pygame.K_f:
                self._restart(SessionKind.FULL)
            return

        if self._saved:
            if event.key in (pygame.K_r, pygame.K_RETURN, pygame.K_KP_ENTER):
                self._leave()
            return

        if event.key == pygame.K_TAB:
            self._active_field = 1 - self._active_field
        elif event.key in (pygame.K_RETURN, pygame.K_KP_ENTER):
            self._save()
        elif event.key == pygame.K_BACKSPACE:
            if self._active_field == 0:
                self._condition = self._condition[:-1]
            else:
                self._notes = self._notes[:-1]
        elif getattr(event, "unicode", "") and event.unicode.isprintable():
            if self._active_field == 0:
                self._condition = (self._condition + event.unicode)[:80]
            else:
                self._notes = (self._notes + event.unicode)[:240]

    def _save(self) -> None:
        result = self._engine.result
        if result is None:
            return
        if self._store is None:
            self._status = "Saving is not configured."
            return
        try:
            row_id = self._store.save(
                result,
                user_id=self._user_id,
                condition=self._condition,
                notes=self._notes,
            )
        except PersistenceError as exc:
            # Result stays in the engine; Enter retries.
            self._status = f"{exc} Press Enter to try again."
            return
        self._saved = True
        self._status = f"Saved (#{row_id}). Press Enter for another test."

    def _restart(self, kind: SessionKind) -> None:
        self._engine.reset()
        self._engine.start_session(kind)
        self._condition = ""
        self._notes = ""
        self._status = None
        self._saved = False

    def _leave(self) -> None:
        self._engine.reset()
        self._app.pop()

    def render(self, surface: pygame.Surface) -> None:
        self._engine.update()
        snap = self._engine.snapshot()

        surface.fill((10, 10, 14))
        w, h = surface.get_size()

        if snap.phase is Phase.RUNNING:
            self._render_running(surface, snap)
        elif snap.phase is Phase.RESULTS:
            self._render_results(surface, snap)
        else:
            title = self._app.font.render(snap.title, True, (235, 235, 245))
            surface.blit(title, (40, 30))
            y = 90
            for line in snap.prompt.split("\n"):
                txt = self._small_font.render(line, True, (235, 235, 245))
                surface.blit(txt, (40, y))
                y += 30

        if not self._engine.can_exit():
            lock = self._tiny_font.render("Test in progress. F12 abandons the session.", True, (140, 140, 150))
            surface.blit(lock, (40, h - 30))

    def _render_running(self, surface: pygame.Surface, snap: ReactionSnapshot) -> None:
        w, h = surface.get_size()
        label = "Warmup" if snap.kind is SessionKind.WARMUP else "Test"
        header = self._app.font.render(f"{label} in Progress", True, (235, 235, 245))
        surface.blit(header, header.get_rect(midtop=(w // 2, 20)))

        counter = self._small_font.render(
            f"Trial {snap.trial_index + 1} of {snap.total_trials}", True, (180, 180, 190)
        )
        surface.blit(counter, counter.get_rect(midtop=(w // 2, 60)))

        bar = pygame.Rect(w // 2 - 200, 92, 400, 8)
        pygame.draw.rect(surface, (60, 60, 72), bar)
        done = min(snap.total_trials, snap.trial_index + 1)
        fill_w = int(bar.w * done / max(1, snap.total_trials))
        pygame.draw.rect(surface, (90, 120, 230), pygame.Rect(bar.x, bar.y, fill_w, bar.h))

        self._arena_rect = pygame.Rect(60, 120, w - 120, h - 190)
        pygame.draw.rect(surface, (34, 34, 42), self._arena_rect)
        pygame.draw.rect(surface, (90, 90, 110), self._arena_rect, 2)

        if snap.stage is TrialStage.STIMULUS:
            center = self._arena_rect.center
            pygame.draw.circle(surface, (220, 40, 40), center, 48)
        else:
            lines = snap.prompt.split("\n")
            y = self._arena_rect.centery - 14 * len(lines)
            for i, line in enumerate(lines):
                color = (230, 80, 80) if snap.early_click and i == 0 else (170, 170, 180)
                txt = self._small_font.render(line, True, color)
                surface.blit(txt, txt.get_rect(midtop=(self._arena_rect.centerx, y)))
                y += 30

        hint = self._tiny_font.render(
            "Click the red circle or press Space when it appears", True, (140, 140, 150)
        )
        surface.blit(hint, hint.get_rect(midtop=(w // 2, self._arena_rect.bottom + 8)))

    def _render_results(self, surface: pygame.Surface, snap: ReactionSnapshot) -> None:
        result = snap.result
        if result is None:
            return
        y = 30
        for line in format_result_lines(result):
            txt = self._small_font.render(line, True, (235, 235, 245))
            surface.blit(txt, (40, y))
            y += 28

        # Per-trial latencies, five per row, colour-coded.
        y += 8
        for i, (rt, rating) in enumerate(zip(result.reaction_times_ms, result.ratings())):
            col = i % 5
            if i and col == 0:
                y += 24
            cell = self._tiny_font.render(f"{rt:.0f}ms", True, RATING_COLORS[rating])
            surface.blit(cell, (40 + col * 90, y))
        y += 40

        if result.kind is SessionKind.WARMUP:
            lines = [
                "This was a warmup session. Take the full test to save your results.",
                "F: Take Full Test  |  R: Take Another Test  |  Esc: Menu",
            ]
        elif self._saved:
            lines = [self._status or ""]
        else:
            marker_c = ">" if self._active_field == 0 else " "
            marker_n = ">" if self._active_field == 1 else " "
            lines = [
                f"{marker_c} Condition (optional): {self._condition}",
                f"{marker_n} Notes (optional): {self._notes}",
                "Tab: switch field  |  Enter: Save Results  |  Esc: discard",
            ]
            if self._status:
                lines.append(self._status)
        for line in lines:
            txt = self._tiny_font.render(line, True, (200, 200, 210))
            surface.blit(txt, (40, y))
            y += 24


def _new_seed() -> int:
    return random.SystemRandom().randint(1, 2**31 - 1)


def run(
    *,
    max_frames: int | None = None,
    event_injector: Callable[[int], None] | None = None,
    db_path: Path | None = None,
) -> int:
    pygame.init()

    pygame.display.set_caption("Reaction Trainer")
    surface = pygame.display.set_mode(WINDOW_SIZE, pygame.RESIZABLE)

    font = pygame.font.Font(None, 36)
    clock = pygame.time.Clock()

    app = App(surface=surface, font=font)

    real_clock = RealClock()
    store = ResultStore(db_path or default_db_path())
    user_id = default_user_id()

    def open_test(kind: SessionKind) -> None:
        seed = _new_seed()
        app.push(
            ReactionTestScreen(
                app,
                engine_factory=lambda: build_reaction_time_test(clock=real_clock, seed=seed),
                kind=kind,
                store=store,
                user_id=user_id,
            )
        )

    main_items = [
        MenuItem("Warmup (5 trials)", lambda: open_test(SessionKind.WARMUP)),
        MenuItem("Full Test (20 trials)", lambda: open_test(SessionKind.FULL)),
        MenuItem("Quit", app.quit),
    ]

    app.push(MenuScreen(app, "Brain Reaction Time Test", main_items, is_root=True))

    frame = 0
    try:
        while app.running:
            if event_injector is not None:
                event_injector(frame)

            for event in pygame.event.get():
                app.handle_event(event)

            app.render()

            pygame.display.flip()

            frame += 1
            if max_frames is not None and frame >= max_frames:
                break

            clock.tick(TARGET_FPS)
    finally:
        pygame.quit()

    return 0
