from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import pytest

from mathmage.combat import (
    MISS_SPELL,
    CombatConfig,
    CombatStateMachine,
    TransitionEvent,
    TransitionKind,
    build_combat_session,
)
from mathmage.game_core import AnswerOutcome, CombatMode, CombatPhase


@dataclass
class FakeClock:
    t: float = 0.0

    def now(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


def answer_correctly(engine: CombatStateMachine) -> AnswerOutcome:
    q = engine.current_question
    assert q is not None
    return engine.submit_answer(q.correct_answer)


def wrong_value(engine: CombatStateMachine) -> int:
    q = engine.current_question
    assert q is not None
    return next(v for v in q.options if v != q.correct_answer)


def run_until(
    engine: CombatStateMachine,
    clock: FakeClock,
    predicate: Callable[[], bool],
    *,
    step: float = 0.03,
    limit_s: float = 10.0,
) -> None:
    deadline = clock.t + limit_s
    while not predicate():
        assert clock.t < deadline, "condition not reached in time"
        clock.advance(step)
        engine.update()


def clear_monsters(engine: CombatStateMachine, clock: FakeClock) -> None:
    for _ in range(engine.config.questions_per_stage):
        assert answer_correctly(engine) is AnswerOutcome.CORRECT
        run_until(engine, clock, lambda: not engine.hit_pending)


def test_initial_state_and_announcement() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=1)

    s = engine.state
    assert (s.stage, s.mode, s.phase) == (1, CombatMode.MONSTER, CombatPhase.MONSTER)
    assert s.score == 0 and s.correct_count == 0 and s.pending_score == 0
    assert s.boss_health == 5
    assert s.monster_speed == 1.0
    assert s.is_day is True
    assert engine.input_enabled

    snap = engine.snapshot()
    assert snap.stage_name == "Enchanted Forest"
    assert snap.announcement == "Stage 1: Enchanted Forest"
    assert len(snap.options) == 5
    assert snap.summary is None

    run_until(engine, clock, lambda: engine.snapshot().announcement is None, limit_s=3.0)
    assert clock.t == pytest.approx(2.0, abs=0.05)


def test_same_seed_same_questions() -> None:
    a = build_combat_session(clock=FakeClock(), seed=77)
    b = build_combat_session(clock=FakeClock(), seed=77)
    assert a.current_question == b.current_question


def test_score_is_pending_until_the_hit_resolves() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=2)

    clock.advance(2.0)
    engine.update()
    assert answer_correctly(engine) is AnswerOutcome.CORRECT
    assert engine.state.pending_score == 18
    assert engine.state.score == 0
    assert engine.state.correct_count == 1
    assert engine.hit_pending
    assert not engine.input_enabled

    run_until(engine, clock, lambda: not engine.hit_pending)
    s = engine.state
    assert s.score == 18
    assert s.pending_score == 0
    assert s.questions_completed_in_stage == 1
    assert s.monster_x == 800.0
    assert engine.input_enabled


def test_second_submit_while_hit_pending_is_ignored() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=3)
    first = engine.current_question

    assert answer_correctly(engine) is AnswerOutcome.CORRECT
    assert answer_correctly(engine) is AnswerOutcome.IGNORED
    assert engine.submit_answer(wrong_value(engine)) is AnswerOutcome.IGNORED
    assert engine.state.correct_count == 1
    assert engine.state.monster_speed == 1.0

    run_until(engine, clock, lambda: not engine.hit_pending)
    assert engine.current_question is not first
    assert [e.kind for e in engine.events()].count(TransitionKind.HIT_RESOLVED) == 1


def test_wrong_answers_speed_up_the_monster() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=4)

    assert engine.submit_answer(wrong_value(engine)) is AnswerOutcome.WRONG
    assert engine.state.monster_speed == 1.5
    assert engine.submit_answer(wrong_value(engine)) is AnswerOutcome.WRONG
    assert engine.state.monster_speed == 2.0
    # Input stays open after a miss.
    assert engine.input_enabled

    clock.advance(1.0)
    engine.update()
    assert engine.state.monster_x == pytest.approx(800.0 - 120.0)

    # A kill resets the speed.
    answer_correctly(engine)
    run_until(engine, clock, lambda: not engine.hit_pending)
    assert engine.state.monster_speed == 1.0


def test_speed_ceiling_when_configured() -> None:
    engine = build_combat_session(clock=FakeClock(), seed=4, config=CombatConfig(max_monster_speed=1.5))
    engine.submit_answer(wrong_value(engine))
    engine.submit_answer(wrong_value(engine))
    assert engine.state.monster_speed == 1.5


def test_four_kills_summon_the_boss() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=5)

    clear_monsters(engine, clock)
    s = engine.state
    assert s.mode is CombatMode.BOSS
    assert s.phase is CombatPhase.BOSS_INTRO
    assert s.boss_health == 5
    assert s.questions_completed_in_stage == 0
    assert engine.current_question is not None

    intro_at = clock.t
    run_until(engine, clock, lambda: engine.phase is CombatPhase.BOSS_FIGHT, limit_s=3.0)
    assert clock.t - intro_at == pytest.approx(1.5, abs=0.05)

    # Misses against the boss do not touch the monster speed.
    engine.submit_answer(wrong_value(engine))
    assert engine.state.monster_speed == 1.0


def test_answers_during_boss_intro_still_hit() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=6)
    clear_monsters(engine, clock)
    assert engine.phase is CombatPhase.BOSS_INTRO

    assert answer_correctly(engine) is AnswerOutcome.CORRECT
    run_until(engine, clock, lambda: not engine.hit_pending)
    assert engine.state.boss_health == 4


def _defeat_boss(engine: CombatStateMachine, clock: FakeClock) -> int:
    """Land every boss hit; returns the points gained along the way."""

    run_until(engine, clock, lambda: engine.phase is CombatPhase.BOSS_FIGHT, limit_s=3.0)
    gained = 0
    for _ in range(engine.config.boss_health):
        assert answer_correctly(engine) is AnswerOutcome.CORRECT
        gained += engine.state.pending_score
        run_until(
            engine,
            clock,
            lambda: not engine.hit_pending or engine.phase is CombatPhase.BOSS_DEFEAT_SEQUENCE,
        )
    return gained


def test_boss_defeat_advances_the_stage_after_the_death_sequence() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=7)
    clear_monsters(engine, clock)
    score_before_boss = engine.state.score

    gained = _defeat_boss(engine, clock)
    assert engine.phase is CombatPhase.BOSS_DEFEAT_SEQUENCE
    assert engine.state.boss_health == 0
    assert not engine.input_enabled
    assert engine.current_question is None
    assert engine.submit_answer(0) is AnswerOutcome.IGNORED

    defeated_at = clock.t
    seen_phases: list[str] = []

    def advanced() -> bool:
        phase = engine.state.boss_death_phase
        if phase is not None and phase not in seen_phases:
            seen_phases.append(phase)
        return engine.state.stage == 2

    run_until(engine, clock, advanced, limit_s=5.0)
    assert clock.t - defeated_at == pytest.approx(3.0, abs=0.05)
    assert seen_phases == ["blink", "inflate", "explode"]

    s = engine.state
    assert s.mode is CombatMode.MONSTER
    assert s.phase is CombatPhase.MONSTER
    assert s.is_day is False
    assert s.boss_health == 5
    assert s.questions_completed_in_stage == 0
    assert s.boss_death_phase is None
    assert s.score == score_before_boss + gained
    assert s.pending_score == 0
    assert engine.input_enabled
    assert engine.snapshot().announcement == "Stage 2: Stone Mountains"
    assert engine.current_question is not None
    assert engine.current_question.stage_number == 2


def test_restart_during_boss_death_cancels_the_stage_advance() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=8)
    clear_monsters(engine, clock)
    _defeat_boss(engine, clock)
    assert engine.phase is CombatPhase.BOSS_DEFEAT_SEQUENCE

    engine.restart()
    s = engine.state
    assert (s.stage, s.mode, s.phase) == (1, CombatMode.MONSTER, CombatPhase.MONSTER)
    assert s.boss_health == 5
    assert s.score == 0 and s.correct_count == 0
    assert not engine.hit_pending
    assert engine.input_enabled

    for _ in range(int(5.0 / 0.03)):
        clock.advance(0.03)
        engine.update()
    assert engine.state.stage == 1
    kinds = [e.kind for e in engine.events()]
    restarted_at = kinds.index(TransitionKind.RESTARTED)
    assert TransitionKind.STAGE_ADVANCED not in kinds[restarted_at:]


def test_monster_reaching_the_player_ends_the_game() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=9)

    run_until(engine, clock, lambda: engine.state.game_over, limit_s=15.0)
    # 670 px at 60 px/s.
    assert 11.1 < clock.t < 11.3
    assert engine.phase is CombatPhase.GAME_OVER
    assert not engine.input_enabled
    assert answer_correctly(engine) is AnswerOutcome.IGNORED
    assert engine.snapshot().summary is None

    over_at = clock.t
    clock.advance(0.9)
    engine.update()
    assert engine.state.player_defeat_phase == "explode"
    assert engine.snapshot().summary is None

    run_until(engine, clock, lambda: engine.snapshot().summary is not None, limit_s=2.0)
    assert clock.t - over_at == pytest.approx(1.3, abs=0.05)


def test_summary_adds_the_correct_answer_bonus() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=10)
    assert engine.summary() is None

    answer_correctly(engine)
    run_until(engine, clock, lambda: not engine.hit_pending)
    run_until(engine, clock, lambda: engine.snapshot().summary is not None, limit_s=20.0)

    summary = engine.snapshot().summary
    assert summary is not None
    assert summary.score == 20
    assert summary.correct_count == 1
    assert summary.bonus == 5
    assert summary.final_score == 25
    assert summary.stage == 1

    engine.restart()
    assert engine.summary() is None
    assert engine.snapshot().summary is None
    assert engine.phase is CombatPhase.MONSTER


def test_boss_reaching_the_player_ends_the_game() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=11)
    clear_monsters(engine, clock)
    run_until(engine, clock, lambda: engine.phase is CombatPhase.BOSS_FIGHT, limit_s=3.0)

    fight_at = clock.t
    run_until(engine, clock, lambda: engine.state.game_over, limit_s=30.0)
    # 650 px at 30 px/s.
    assert 21.6 < clock.t - fight_at < 21.8
    assert engine.events()[-1].kind is TransitionKind.GAME_OVER
    assert engine.events()[-1].detail == "boss reached the player"


def test_observers_see_transitions_until_unsubscribed() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=12)
    seen: list[TransitionEvent] = []
    unsubscribe = engine.subscribe(seen.append)

    answer_correctly(engine)
    run_until(engine, clock, lambda: not engine.hit_pending)
    kinds = [e.kind for e in seen]
    assert kinds[:3] == [TransitionKind.ANSWER_CORRECT, TransitionKind.HIT_RESOLVED, TransitionKind.QUESTION_DEALT]
    assert seen == engine.events()[-3:]

    unsubscribe()
    engine.restart()
    assert len(seen) == 3


def test_stages_past_the_table_keep_the_last_rule() -> None:
    clock = FakeClock()
    engine = build_combat_session(
        clock=clock,
        seed=13,
        config=CombatConfig(questions_per_stage=1, boss_health=1),
    )

    for stage in range(1, 9):
        assert engine.state.stage == stage
        clear_monsters(engine, clock)
        _defeat_boss(engine, clock)
        run_until(engine, clock, lambda: engine.state.stage == stage + 1, limit_s=5.0)

    assert engine.state.stage == 9
    assert engine.state.is_day is True
    snap = engine.snapshot()
    assert snap.stage_name == "Molten Core"
    assert snap.announcement == "Stage 9: Molten Core"
    q = engine.current_question
    assert q is not None
    assert len(q.operands) == 3
    assert q.result <= 20


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        CombatConfig(questions_per_stage=0)
    with pytest.raises(ValueError):
        CombatConfig(boss_health=0)
    with pytest.raises(ValueError):
        CombatConfig(max_monster_speed=0.5)
    with pytest.raises(ValueError):
        CombatConfig(player_defeat_phases_s=(0.0, 1.0, 0.5))


def test_miss_spell_flies_to_an_offset_point() -> None:
    clock = FakeClock()
    engine = build_combat_session(clock=clock, seed=14)
    cfg = engine.config

    for _ in range(20):
        engine.submit_answer(wrong_value(engine))
        (miss,) = [e for e in engine.snapshot().effects if e.name == MISS_SPELL]
        assert miss.target is not None
        assert not miss.hit_resolution
        tx, ty = miss.target
        # Monster has not moved: it is aimed at from x=800 + 30, y=200.
        assert abs(tx - (800.0 + cfg.monster_target_dx)) <= 100.0
        assert 150.0 <= abs(ty - cfg.target_y) <= 250.0


def test_transition_log_is_bounded_and_cleared_on_restart() -> None:
    engine = build_combat_session(clock=FakeClock(), seed=15, config=CombatConfig(event_log_capacity=5))

    for _ in range(8):
        engine.submit_answer(wrong_value(engine))
    events = engine.events()
    assert len(events) == 5
    assert all(e.kind is TransitionKind.ANSWER_WRONG for e in events)

    engine.restart()
    kinds = [e.kind for e in engine.events()]
    assert kinds == [TransitionKind.RESTARTED, TransitionKind.QUESTION_DEALT]

    with pytest.raises(ValueError):
        CombatConfig(event_log_capacity=0)
