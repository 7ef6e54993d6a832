"""Deterministic combat/progression engine.

The engine owns one immutable ``CombatState`` value and replaces it on every
transition; the renderer only ever sees snapshots. Time flows through the
injected ``Clock``: ``update()`` moves the monster or boss by wall-clock
rates and runs the delayed effects whose callbacks drive scoring, boss damage
and stage advance.

Stage loop::

    MONSTER x4 -> BOSS_INTRO -> BOSS_FIGHT (5 hits) -> BOSS_DEFEAT_SEQUENCE -> MONSTER (stage + 1)

Any monster or boss reaching the player ends the game (GAME_OVER, terminal
until ``restart()``).
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum

from .clock import Clock, ms
from .game_core import (
    AnswerOutcome,
    CombatMode,
    CombatPhase,
    InputAfterTerminal,
    SeededRng,
)
from .history import HistoryWindow
from .questions import Question, QuestionGenerator, score_for_response
from .sequencer import EffectView, Phase, Point, TimedEventSequencer
from .stage_rules import GradeCatalog, StageRuleTable, default_stage_table

logger = logging.getLogger(__name__)

SPELL = "spell"
MISS_SPELL = "miss_spell"
MONSTER_EXPLOSION = "monster_explosion"
BOSS_INTRO = "boss_intro"
BOSS_DEATH = "boss_death"
PLAYER_DEFEAT = "player_defeat"
STAGE_ANNOUNCEMENT = "stage_announcement"


@dataclass(frozen=True, slots=True)
class CombatConfig:
    questions_per_stage: int = 4
    boss_health: int = 5

    base_monster_speed: float = 1.0
    wrong_answer_speed_step: float = 0.5
    # None keeps the speed uncapped.
    max_monster_speed: float | None = None

    field_width: float = 800.0
    monster_px_per_s: float = 60.0  # at monster_speed 1.0
    boss_px_per_s: float = 30.0
    monster_reach_x: float = 130.0
    boss_reach_x: float = 150.0

    spell_origin: Point = (140.0, 150.0)
    target_y: float = 200.0
    monster_target_dx: float = 30.0
    boss_target_dx: float = 100.0
    miss_spread_x: float = 100.0
    miss_offset_y: tuple[float, float] = (150.0, 250.0)

    monster_inflate_s: float = ms(600)
    boss_intro_s: float = 1.5
    announcement_s: float = 2.0
    boss_death_phases_s: tuple[float, float, float, float] = (0.0, ms(500), ms(1200), ms(3000))
    player_defeat_phases_s: tuple[float, float, float] = (0.0, ms(800), ms(1300))

    correct_answer_bonus: int = 5
    event_log_capacity: int = 1000

    def __post_init__(self) -> None:
        if self.questions_per_stage < 1:
            raise ValueError("questions_per_stage must be >= 1")
        if self.event_log_capacity < 1:
            raise ValueError("event_log_capacity must be >= 1")
        if self.boss_health < 1:
            raise ValueError("boss_health must be >= 1")
        if self.base_monster_speed < 1.0:
            raise ValueError("base_monster_speed must be >= 1.0")
        if self.wrong_answer_speed_step < 0:
            raise ValueError("wrong_answer_speed_step must be >= 0")
        if self.max_monster_speed is not None and self.max_monster_speed < self.base_monster_speed:
            raise ValueError("max_monster_speed must be >= base_monster_speed")
        for name in ("monster_inflate_s", "boss_intro_s", "announcement_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        for name in ("boss_death_phases_s", "player_defeat_phases_s"):
            delays = getattr(self, name)
            if any(b < a for a, b in zip(delays, delays[1:])) or delays[0] < 0:
                raise ValueError(f"{name} must be non-negative and non-decreasing")


@dataclass(frozen=True, slots=True)
class CombatState:
    stage: int = 1
    questions_completed_in_stage: int = 0
    mode: CombatMode = CombatMode.MONSTER
    phase: CombatPhase = CombatPhase.MONSTER
    monster_speed: float = 1.0
    boss_health: int = 5
    score: int = 0
    correct_count: int = 0
    pending_score: int = 0
    game_over: bool = False
    is_day: bool = True
    monster_x: float = 800.0
    boss_x: float = 800.0
    announcement_stage: int | None = None
    boss_death_phase: str | None = None
    player_defeat_phase: str | None = None


class TransitionKind(StrEnum):
    QUESTION_DEALT = "question_dealt"
    ANSWER_CORRECT = "answer_correct"
    ANSWER_WRONG = "answer_wrong"
    HIT_RESOLVED = "hit_resolved"
    BOSS_INTRO = "boss_intro"
    BOSS_FIGHT = "boss_fight"
    BOSS_HIT = "boss_hit"
    BOSS_DEFEATED = "boss_defeated"
    STAGE_ADVANCED = "stage_advanced"
    GAME_OVER = "game_over"
    RESTARTED = "restarted"


@dataclass(frozen=True, slots=True)
class TransitionEvent:
    kind: TransitionKind
    at_s: float
    stage: int
    detail: str = ""


@dataclass(frozen=True, slots=True)
class GameSummary:
    score: int
    correct_count: int
    stage: int
    bonus: int
    final_score: int


@dataclass(frozen=True, slots=True)
class CombatSnapshot:
    """View model for the renderer (pure data)."""

    state: CombatState
    stage_name: str
    question_text: str
    options: tuple[int, ...]
    input_enabled: bool
    effects: tuple[EffectView, ...]
    announcement: str | None = None
    summary: GameSummary | None = None


Observer = Callable[[TransitionEvent], None]


class CombatStateMachine:
    """Monster/boss encounter loop driven by answers and delayed effects.

    - Deterministic: question and effect randomness come from seeded RNGs.
    - Time is entirely via injected Clock.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        rng: SeededRng,
        effects_rng: SeededRng | None = None,
        table: StageRuleTable | None = None,
        config: CombatConfig | None = None,
    ) -> None:
        self._clock = clock
        self._fx_rng = effects_rng or rng
        self._table = table or default_stage_table()
        self._config = config or CombatConfig()
        self._generator = QuestionGenerator(rng)
        self._history = HistoryWindow()
        self._sequencer = TimedEventSequencer(clock)

        self._events: deque[TransitionEvent] = deque(maxlen=self._config.event_log_capacity)
        self._observers: list[Observer] = []

        self._state = self._initial_state()
        self._question: Question | None = None
        self._presented_at_s = 0.0
        self._hit_pending = False
        self._summary_visible = False
        self._last_update_s = clock.now()

        self._begin_stage()

    # -- Read-only views ----------------------------------------------------
    @property
    def state(self) -> CombatState:
        return self._state

    @property
    def phase(self) -> CombatPhase:
        return self._state.phase

    @property
    def config(self) -> CombatConfig:
        return self._config

    @property
    def table(self) -> StageRuleTable:
        return self._table

    @property
    def current_question(self) -> Question | None:
        return self._question

    @property
    def hit_pending(self) -> bool:
        return self._hit_pending

    @property
    def input_enabled(self) -> bool:
        try:
            self._guard_input()
        except InputAfterTerminal:
            return False
        return True

    def events(self) -> list[TransitionEvent]:
        return list(self._events)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def summary(self) -> GameSummary | None:
        s = self._state
        if not s.game_over:
            return None
        bonus = s.correct_count * self._config.correct_answer_bonus
        return GameSummary(
            score=s.score,
            correct_count=s.correct_count,
            stage=s.stage,
            bonus=bonus,
            final_score=s.score + bonus,
        )

    def snapshot(self) -> CombatSnapshot:
        s = self._state
        q = self._question
        announcement = None
        if s.announcement_stage is not None:
            announcement = f"Stage {s.announcement_stage}: {self._table.stage_name(s.announcement_stage)}"
        return CombatSnapshot(
            state=s,
            stage_name=self._table.stage_name(s.stage),
            question_text="" if q is None else q.display_text,
            options=() if q is None else q.options,
            input_enabled=self.input_enabled,
            effects=self._sequencer.views(),
            announcement=announcement,
            summary=self.summary() if self._summary_visible else None,
        )

    # -- Input ----------------------------------------------------------------
    def submit_answer(self, value: int) -> AnswerOutcome:
        """Handle an answer-button press.

        Ignored (not an error) while the game is over, a hit is resolving or
        the boss death sequence runs.
        """

        try:
            self._guard_input()
        except InputAfterTerminal as exc:
            logger.debug("answer %s ignored: %s", value, exc)
            return AnswerOutcome.IGNORED

        assert self._question is not None
        if self._question.is_correct(value):
            self._on_correct()
            return AnswerOutcome.CORRECT
        self._on_wrong(value)
        return AnswerOutcome.WRONG

    def restart(self) -> None:
        """Drop every pending effect and the transition log, then reset to stage 1."""

        self._sequencer.cancel_all()
        self._history.clear()
        self._state = self._initial_state()
        self._question = None
        self._hit_pending = False
        self._summary_visible = False
        self._last_update_s = self._clock.now()
        self._events.clear()
        self._emit(TransitionKind.RESTARTED)
        self._begin_stage()

    # -- Tick -----------------------------------------------------------------
    def update(self) -> None:
        now = self._clock.now()
        dt = max(0.0, now - self._last_update_s)
        self._last_update_s = now

        s = self._state
        if s.phase is CombatPhase.MONSTER:
            step = s.monster_speed * self._config.monster_px_per_s * dt
            self._state = replace(s, monster_x=s.monster_x - step)
        elif s.phase is CombatPhase.BOSS_FIGHT:
            self._state = replace(s, boss_x=s.boss_x - self._config.boss_px_per_s * dt)

        self._sequencer.update()
        self._check_player_reached()

    # -- Transitions ----------------------------------------------------------
    def _on_correct(self) -> None:
        s = self._state
        response_time_s = max(0.0, self._clock.now() - self._presented_at_s)
        points = score_for_response(response_time_s)
        self._state = replace(s, pending_score=points, correct_count=s.correct_count + 1)
        self._hit_pending = True
        self._emit(TransitionKind.ANSWER_CORRECT, f"+{points} after {response_time_s:.2f}s")

        self._sequencer.cancel(MISS_SPELL)
        self._sequencer.start_approach(
            SPELL,
            origin=self._config.spell_origin,
            target=self._opponent_target,
            on_arrival=self._on_spell_arrival,
            hit_resolution=True,
        )

    def _on_wrong(self, value: int) -> None:
        s = self._state
        if s.mode is CombatMode.MONSTER:
            speed = s.monster_speed + self._config.wrong_answer_speed_step
            cap = self._config.max_monster_speed
            if cap is not None:
                speed = min(speed, cap)
            self._state = replace(s, monster_speed=speed)
        self._emit(TransitionKind.ANSWER_WRONG, f"{value} (speed {self._state.monster_speed:.1f})")

        cfg = self._config
        base_x, base_y = self._opponent_target()
        offset_y = self._fx_rng.uniform(*cfg.miss_offset_y)
        miss_point = (
            base_x + self._fx_rng.uniform(-cfg.miss_spread_x, cfg.miss_spread_x),
            base_y + (offset_y if self._fx_rng.random() < 0.5 else -offset_y),
        )
        self._sequencer.cancel(MISS_SPELL)
        self._sequencer.start_approach(MISS_SPELL, origin=cfg.spell_origin, target=lambda: miss_point)

    def _on_spell_arrival(self) -> None:
        if self._state.game_over:
            return
        if self._state.mode is CombatMode.BOSS:
            self._resolve_boss_hit()
            return
        self._sequencer.start_sequence(
            MONSTER_EXPLOSION,
            [
                Phase(0.0, "inflate"),
                Phase(self._config.monster_inflate_s, "explode", self._resolve_monster_hit),
            ],
            hit_resolution=True,
        )

    def _resolve_monster_hit(self) -> None:
        s = self._state
        if s.game_over:
            return
        cfg = self._config
        completed = s.questions_completed_in_stage + 1
        s = replace(
            s,
            score=s.score + s.pending_score,
            pending_score=0,
            questions_completed_in_stage=completed,
            monster_speed=cfg.base_monster_speed,
            monster_x=cfg.field_width,
        )
        self._state = s
        self._hit_pending = False
        self._emit(TransitionKind.HIT_RESOLVED, f"{completed}/{cfg.questions_per_stage}")

        if completed >= cfg.questions_per_stage:
            self._state = replace(
                s,
                mode=CombatMode.BOSS,
                phase=CombatPhase.BOSS_INTRO,
                boss_health=cfg.boss_health,
                boss_x=cfg.field_width,
                questions_completed_in_stage=0,
            )
            self._emit(TransitionKind.BOSS_INTRO)
            self._sequencer.schedule(cfg.boss_intro_s, self._end_boss_intro, name=BOSS_INTRO)
        self._deal_question()

    def _end_boss_intro(self) -> None:
        if self._state.phase is not CombatPhase.BOSS_INTRO:
            return
        self._state = replace(self._state, phase=CombatPhase.BOSS_FIGHT)
        self._emit(TransitionKind.BOSS_FIGHT)

    def _resolve_boss_hit(self) -> None:
        s = self._state
        health = max(0, s.boss_health - 1)
        self._state = replace(s, boss_health=health)
        self._emit(TransitionKind.BOSS_HIT, f"health {health}")

        if health > 0:
            self._state = replace(self._state, score=s.score + s.pending_score, pending_score=0)
            self._hit_pending = False
            self._deal_question()
            return

        # The hit stays pending until the death sequence advances the stage.
        self._sequencer.cancel(BOSS_INTRO)
        self._question = None
        self._state = replace(self._state, phase=CombatPhase.BOSS_DEFEAT_SEQUENCE)
        self._emit(TransitionKind.BOSS_DEFEATED)
        blink, inflate, explode, advance = self._config.boss_death_phases_s
        self._sequencer.start_sequence(
            BOSS_DEATH,
            [
                Phase(blink, "blink", lambda: self._set_boss_death_phase("blink")),
                Phase(inflate, "inflate", lambda: self._set_boss_death_phase("inflate")),
                Phase(explode, "explode", lambda: self._set_boss_death_phase("explode")),
                Phase(advance, "stage_advance", self._advance_stage),
            ],
            hit_resolution=True,
        )

    def _set_boss_death_phase(self, name: str) -> None:
        self._state = replace(self._state, boss_death_phase=name)

    def _advance_stage(self) -> None:
        s = self._state
        cfg = self._config
        self._state = replace(
            s,
            stage=s.stage + 1,
            is_day=not s.is_day,
            mode=CombatMode.MONSTER,
            phase=CombatPhase.MONSTER,
            questions_completed_in_stage=0,
            boss_health=cfg.boss_health,
            monster_speed=cfg.base_monster_speed,
            monster_x=cfg.field_width,
            boss_x=cfg.field_width,
            score=s.score + s.pending_score,
            pending_score=0,
            boss_death_phase=None,
        )
        self._hit_pending = False
        self._emit(TransitionKind.STAGE_ADVANCED, self._table.stage_name(self._state.stage))
        self._begin_stage()

    def _check_player_reached(self) -> None:
        s = self._state
        cfg = self._config
        if s.game_over:
            return
        if s.phase is CombatPhase.MONSTER:
            if s.monster_x < cfg.monster_reach_x and not self._sequencer.is_active(MONSTER_EXPLOSION):
                self._defeat_player("monster reached the player")
        elif s.phase is CombatPhase.BOSS_FIGHT:
            if s.boss_x < cfg.boss_reach_x:
                self._defeat_player("boss reached the player")

    def _defeat_player(self, reason: str) -> None:
        for name in (SPELL, MISS_SPELL, MONSTER_EXPLOSION, BOSS_INTRO):
            self._sequencer.cancel(name)
        self._hit_pending = False
        self._state = replace(self._state, phase=CombatPhase.GAME_OVER, game_over=True)
        self._emit(TransitionKind.GAME_OVER, reason)
        inflate, explode, show = self._config.player_defeat_phases_s
        self._sequencer.start_sequence(
            PLAYER_DEFEAT,
            [
                Phase(inflate, "inflate", lambda: self._set_player_defeat_phase("inflate")),
                Phase(explode, "explode", lambda: self._set_player_defeat_phase("explode")),
                Phase(show, "summary", self._show_summary),
            ],
        )

    def _set_player_defeat_phase(self, name: str) -> None:
        self._state = replace(self._state, player_defeat_phase=name)

    def _show_summary(self) -> None:
        self._state = replace(self._state, player_defeat_phase=None)
        self._summary_visible = True

    # -- Helpers --------------------------------------------------------------
    def _begin_stage(self) -> None:
        stage = self._state.stage
        self._state = replace(self._state, announcement_stage=stage)
        self._sequencer.cancel(STAGE_ANNOUNCEMENT)
        self._sequencer.start_sequence(
            STAGE_ANNOUNCEMENT,
            [Phase(0.0, "show"), Phase(self._config.announcement_s, "hide", self._hide_announcement)],
        )
        self._deal_question()

    def _hide_announcement(self) -> None:
        self._state = replace(self._state, announcement_stage=None)

    def _deal_question(self) -> None:
        rule = self._table.rule_for(self._state.stage)
        self._question = self._generator.generate(rule, self._history)
        self._presented_at_s = self._clock.now()
        detail = self._question.display_text
        if self._question.retry_exhausted:
            detail += " (retry cap reached)"
        self._emit(TransitionKind.QUESTION_DEALT, detail)

    def _guard_input(self) -> None:
        s = self._state
        if s.game_over:
            raise InputAfterTerminal("game is over")
        if self._hit_pending:
            raise InputAfterTerminal("a hit is still resolving")
        if s.phase is CombatPhase.BOSS_DEFEAT_SEQUENCE:
            raise InputAfterTerminal("boss defeat sequence running")
        if self._question is None:
            raise InputAfterTerminal("no question on screen")

    def _opponent_target(self) -> Point:
        s = self._state
        cfg = self._config
        if s.mode is CombatMode.BOSS:
            return (s.boss_x + cfg.boss_target_dx, cfg.target_y)
        return (s.monster_x + cfg.monster_target_dx, cfg.target_y)

    def _initial_state(self) -> CombatState:
        cfg = self._config
        return CombatState(
            monster_speed=cfg.base_monster_speed,
            boss_health=cfg.boss_health,
            monster_x=cfg.field_width,
            boss_x=cfg.field_width,
        )

    def _emit(self, kind: TransitionKind, detail: str = "") -> None:
        event = TransitionEvent(kind=kind, at_s=self._clock.now(), stage=self._state.stage, detail=detail)
        self._events.append(event)
        logger.debug("stage %d %s %s", event.stage, kind.value, detail)
        for observer in list(self._observers):
            observer(event)


def build_combat_session(
    *,
    clock: Clock,
    seed: int,
    config: CombatConfig | None = None,
    grade: int | None = None,
    catalog: GradeCatalog | None = None,
) -> CombatStateMachine:
    """Factory for one game session.

    Questions and cosmetic effects draw from separate seeded streams so a
    miss spell's random offset never shifts the question sequence.
    """

    table = (catalog or GradeCatalog()).table_for(grade)
    return CombatStateMachine(
        clock=clock,
        rng=SeededRng(seed),
        effects_rng=SeededRng(seed + 1),
        table=table,
        config=config,
    )
