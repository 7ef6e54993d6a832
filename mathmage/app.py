"""Pygame UI shell for Mathmage.

The shell is a thin rendering and input adapter: every rule, timer and score
lives in the combat engine (``mathmage.combat``). Screens read engine
snapshots each frame and forward answer choices; they never mutate game state
directly.
"""

from __future__ import annotations

import logging
import os
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import pygame

from .clock import RealClock
from .combat import MONSTER_EXPLOSION, CombatSnapshot, CombatStateMachine, build_combat_session
from .game_core import CombatMode, CombatPhase
from .sequencer import EffectKind

logger = logging.getLogger(__name__)

WINDOW_SIZE = (960, 540)
TARGET_FPS = 60
SEED_ENV = "MATHMAGE_SEED"

# Field coordinates used by the engine (x in [0, 800], y in [0, 400]).
FIELD_W = 800.0
FIELD_H = 400.0

OPTION_KEYS = (pygame.K_1, pygame.K_2, pygame.K_3, pygame.K_4, pygame.K_5)
KEYPAD_OPTION_KEYS = (pygame.K_KP1, pygame.K_KP2, pygame.K_KP3, pygame.K_KP4, pygame.K_KP5)


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
        self._title_font = pygame.font.Font(None, 56)
        self._item_font = pygame.font.Font(None, 34)
        self._hint_font = pygame.font.Font(None, 22)

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type != pygame.KEYDOWN:
            return
        if event.key in (pygame.K_UP, pygame.K_w):
            self._move(-1)
        elif event.key in (pygame.K_DOWN, pygame.K_s):
            self._move(1)
        elif event.key in (pygame.K_RETURN, pygame.K_KP_ENTER, pygame.K_SPACE):
            if self._items:
                self._items[self._selected].action()
        elif event.key in (pygame.K_ESCAPE, pygame.K_BACKSPACE):
            if self._is_root:
                self._app.quit()
            else:
                self._app.pop()

    def _move(self, delta: int) -> None:
        if not self._items:
            return
        self._selected = (self._selected + delta) % len(self._items)

    def render(self, surface: pygame.Surface) -> None:
        w, h = surface.get_size()
        surface.fill((22, 18, 52))

        title = self._title_font.render(self._title, True, (255, 215, 0))
        surface.blit(title, title.get_rect(center=(w // 2, h // 5)))

        row_h = 46
        y = h // 5 + 70
        for idx, item in enumerate(self._items):
            row = pygame.Rect(w // 2 - 160, y, 320, row_h - 8)
            selected = idx == self._selected
            pygame.draw.rect(surface, (244, 236, 200) if selected else (48, 40, 96), row, border_radius=6)
            pygame.draw.rect(surface, (140, 120, 200), row, 2, border_radius=6)
            color = (40, 26, 70) if selected else (235, 230, 250)
            text = self._item_font.render(item.label, True, color)
            surface.blit(text, text.get_rect(center=row.center))
            y += row_h

        foot = self._hint_font.render("Enter/Space: Select  |  Esc: Back", True, (170, 160, 210))
        surface.blit(foot, foot.get_rect(midbottom=(w // 2, h - 14)))


class GameScreen:
    """Renders combat snapshots and turns clicks/keys into answers."""

    def __init__(self, app: App, *, engine_factory: Callable[[], CombatStateMachine]) -> None:
        self._app = app
        self._engine = engine_factory()
        self._option_hitboxes: list[tuple[pygame.Rect, int]] = []

        self._small_font = pygame.font.Font(None, 26)
        self._mid_font = pygame.font.Font(None, 44)
        self._big_font = pygame.font.Font(None, 72)

    @property
    def engine(self) -> CombatStateMachine:
        return self._engine

    def handle_event(self, event: pygame.event.Event) -> None:
        snap = self._engine.snapshot()
        if event.type == pygame.KEYDOWN:
            if event.key == pygame.K_ESCAPE:
                self._app.pop()
                return
            if event.key == pygame.K_r and snap.state.game_over:
                self._engine.restart()
                return
            for keys in (OPTION_KEYS, KEYPAD_OPTION_KEYS):
                if event.key in keys:
                    self._choose(snap, keys.index(event.key))
                    return
        elif event.type == pygame.MOUSEBUTTONDOWN and getattr(event, "button", 0) == 1:
            pos = getattr(event, "pos", None)
            if pos is None:
                return
            for rect, index in self._option_hitboxes:
                if rect.collidepoint(pos):
                    self._choose(snap, index)
                    return

    def _choose(self, snap: CombatSnapshot, index: int) -> None:
        if index >= len(snap.options):
            return
        outcome = self._engine.submit_answer(snap.options[index])
        logger.debug("option %d (%s): %s", index, snap.options[index], outcome.value)

    # -- Rendering ----------------------------------------------------------
    def render(self, surface: pygame.Surface) -> None:
        self._engine.update()
        snap = self._engine.snapshot()

        w, h = surface.get_size()
        field_h = int(h * 0.68)
        field = pygame.Rect(0, 0, w, field_h)
        sx = w / FIELD_W
        sy = field_h / FIELD_H

        def to_screen(x: float, y: float) -> tuple[int, int]:
            return int(x * sx), int(y * sy)

        self._render_field(surface, field, snap)
        self._render_actors(surface, snap, to_screen, sx)
        self._render_effects(surface, snap, to_screen, sx)
        self._render_hud(surface, snap)
        self._render_answers(surface, snap, pygame.Rect(0, field_h, w, h - field_h))

        if snap.announcement is not None and not snap.state.game_over:
            self._render_banner(surface, snap.announcement, field.center)
        if snap.summary is not None:
            self._render_summary(surface, snap)

    def _render_field(self, surface: pygame.Surface, field: pygame.Rect, snap: CombatSnapshot) -> None:
        sky = (120, 180, 235) if snap.state.is_day else (18, 22, 60)
        ground = (70, 140, 70) if snap.state.is_day else (30, 60, 40)
        pygame.draw.rect(surface, sky, field)
        horizon = field.y + int(field.h * 0.72)
        pygame.draw.rect(surface, ground, pygame.Rect(field.x, horizon, field.w, field.bottom - horizon))

    def _render_actors(
        self,
        surface: pygame.Surface,
        snap: CombatSnapshot,
        to_screen: Callable[[float, float], tuple[int, int]],
        scale: float,
    ) -> None:
        s = snap.state

        wizard_scale = 1.0
        if s.player_defeat_phase == "inflate":
            wizard_scale = 1.6
        if s.player_defeat_phase != "explode" and snap.summary is None:
            wx, wy = to_screen(90, 190)
            radius = int(30 * scale * wizard_scale)
            pygame.draw.circle(surface, (110, 60, 170), (wx, wy), radius)
            pygame.draw.polygon(
                surface,
                (70, 30, 120),
                [(wx - radius, wy - radius // 2), (wx + radius, wy - radius // 2), (wx, wy - radius * 2)],
            )

        if s.mode is CombatMode.MONSTER and s.phase is not CombatPhase.GAME_OVER:
            inflating = any(e.name == MONSTER_EXPLOSION for e in snap.effects)
            grow = 1.0
            for e in snap.effects:
                if e.name == MONSTER_EXPLOSION:
                    grow = 1.0 + e.progress * 1.2
            mx, my = to_screen(s.monster_x + 30, 200)
            color = (200, 50, 50) if not inflating else (240, 120, 60)
            pygame.draw.circle(surface, color, (mx, my), int(28 * scale * grow))
        elif s.mode is CombatMode.BOSS:
            if s.boss_death_phase == "explode":
                return
            bx, by = to_screen(s.boss_x, 110)
            size = int(180 * scale * (1.5 if s.boss_death_phase == "inflate" else 1.0))
            visible = s.boss_death_phase != "blink" or (pygame.time.get_ticks() // 80) % 2 == 0
            if visible:
                pygame.draw.rect(surface, (90, 20, 110), pygame.Rect(bx, by, size, size), border_radius=12)
            for i in range(self._engine.config.boss_health):
                pip = pygame.Rect(bx + i * 26, by - 26, 20, 14)
                pygame.draw.rect(surface, (220, 40, 40) if i < s.boss_health else (60, 60, 60), pip)

    def _render_effects(
        self,
        surface: pygame.Surface,
        snap: CombatSnapshot,
        to_screen: Callable[[float, float], tuple[int, int]],
        scale: float,
    ) -> None:
        for effect in snap.effects:
            if effect.kind is not EffectKind.APPROACH or effect.position is None:
                continue
            color = (255, 215, 0) if effect.hit_resolution else (200, 200, 255)
            for i, (tx, ty) in enumerate(effect.trail):
                pygame.draw.circle(surface, color, to_screen(tx, ty), max(1, int((10 - i) * scale * 0.6)))
            radius = 4 if effect.phase == "charge" else 12
            pygame.draw.circle(surface, (255, 255, 255), to_screen(*effect.position), int(radius * scale))

    def _render_hud(self, surface: pygame.Surface, snap: CombatSnapshot) -> None:
        s = snap.state
        lines = [
            f"Score: {s.score}",
            f"Correct: {s.correct_count}",
            f"Stage {s.stage}: {snap.stage_name}",
        ]
        x = 12
        for line in lines:
            text = self._small_font.render(line, True, (255, 255, 255))
            surface.blit(text, (x, 10))
            x += text.get_width() + 28

    def _render_answers(self, surface: pygame.Surface, snap: CombatSnapshot, area: pygame.Rect) -> None:
        pygame.draw.rect(surface, (28, 22, 58), area)
        question = self._mid_font.render(snap.question_text, True, (255, 236, 170))
        surface.blit(question, question.get_rect(midtop=(area.centerx, area.y + 12)))

        self._option_hitboxes = []
        count = len(snap.options)
        if count == 0:
            return
        gap = 14
        btn_w = min(120, (area.w - gap * (count + 1)) // count)
        btn_h = 54
        total = count * btn_w + (count - 1) * gap
        x = area.centerx - total // 2
        y = area.bottom - btn_h - 18
        for index, value in enumerate(snap.options):
            rect = pygame.Rect(x, y, btn_w, btn_h)
            fill = (90, 70, 160) if snap.input_enabled else (60, 56, 80)
            pygame.draw.rect(surface, fill, rect, border_radius=8)
            pygame.draw.rect(surface, (200, 180, 255), rect, 2, border_radius=8)
            label = self._mid_font.render(str(value), True, (255, 255, 255))
            surface.blit(label, label.get_rect(center=rect.center))
            self._option_hitboxes.append((rect, index))
            x += btn_w + gap

    def _render_banner(self, surface: pygame.Surface, text: str, center: tuple[int, int]) -> None:
        banner = self._big_font.render(text, True, (255, 215, 0))
        surface.blit(banner, banner.get_rect(center=center))

    def _render_summary(self, surface: pygame.Surface, snap: CombatSnapshot) -> None:
        summary = snap.summary
        assert summary is not None
        w, h = surface.get_size()
        overlay = pygame.Surface((w, h), pygame.SRCALPHA)
        overlay.fill((0, 0, 0, 170))
        surface.blit(overlay, (0, 0))
        lines = [
            "Game Over",
            f"Stage reached: {summary.stage}",
            f"Correct answers: {summary.correct_count}",
            f"Bonus: {summary.bonus}",
            f"Final score: {summary.final_score}",
            "",
            "R: play again  |  Esc: menu",
        ]
        y = h // 5
        for i, line in enumerate(lines):
            font = self._big_font if i == 0 else self._small_font
            text = font.render(line, True, (255, 255, 255))
            surface.blit(text, text.get_rect(midtop=(w // 2, y)))
            y += text.get_height() + 12


def _new_seed() -> int:
    fixed = os.environ.get(SEED_ENV, "").strip()
    if fixed:
        try:
            return int(fixed)
        except ValueError:
            logger.warning("ignoring non-integer %s=%r", SEED_ENV, fixed)
    return random.SystemRandom().randint(1, 2**31 - 1)


def run(*, max_frames: int | None = None, event_injector: Callable[[int], None] | None = None) -> int:
    pygame.init()

    pygame.display.set_caption("Mathmage")
    surface = pygame.display.set_mode(WINDOW_SIZE, pygame.RESIZABLE)

    font = pygame.font.Font(None, 36)
    clock = pygame.time.Clock()

    app = App(surface=surface, font=font)
    real_clock = RealClock()

    def open_game() -> None:
        seed = _new_seed()
        logger.info("starting session with seed %d", seed)
        app.push(GameScreen(app, engine_factory=lambda: build_combat_session(clock=real_clock, seed=seed)))

    main_items = [
        MenuItem("Play", open_game),
        MenuItem("Quit", app.quit),
    ]
    app.push(MenuScreen(app, "Mathmage", main_items, is_root=True))

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
