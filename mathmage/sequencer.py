"""Wall-clock driven delayed effects.

Two effect shapes cover every animation the combat engine waits on:

* ``PhaseSequence``: named phases at fixed offsets from the start time, each
  firing its side effect exactly once and strictly in order (boss death,
  monster inflation, player defeat, stage announcement).
* ``ConvergingApproach``: a point that, every fixed step, closes a fixed
  fraction of the remaining distance to a (possibly moving) target and fires
  its arrival callback once it is within ``epsilon`` on both axes (spells).

Effects advance on ``update()`` from the injected clock only, so the outcome
does not depend on how often the render loop calls it. Due work is processed
in time order across all effects, including effects started by a callback
during the same ``update()``; such an effect starts at the due time of the
step that started it, not at the time ``update()`` was called.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from .clock import Clock, ms
from .game_core import clamp01

logger = logging.getLogger(__name__)

Point = tuple[float, float]

APPROACH_FRACTION = 0.2
APPROACH_EPSILON = 10.0
APPROACH_STEP_S = ms(30)
CHARGE_S = ms(200)
TRAIL_LENGTH = 6


class EffectKind(StrEnum):
    SEQUENCE = "sequence"
    APPROACH = "approach"


@dataclass(frozen=True, slots=True)
class Phase:
    delay_s: float
    name: str
    side_effect: Callable[[], None] | None = None


@dataclass(frozen=True, slots=True)
class EffectView:
    """Read-only view of an active effect for the renderer."""

    effect_id: int
    name: str
    kind: EffectKind
    phase: str | None
    progress: float
    position: Point | None = None
    trail: tuple[Point, ...] = ()
    hit_resolution: bool = False
    target: Point | None = None


@dataclass(slots=True, eq=False)
class ScheduledEffect:
    effect_id: int
    name: str
    started_at_s: float
    hit_resolution: bool
    done: bool = field(default=False, init=False)

    def next_due_s(self) -> float | None:
        raise NotImplementedError

    def fire(self, at_s: float) -> None:
        raise NotImplementedError

    def view(self, now_s: float) -> EffectView:
        raise NotImplementedError


@dataclass(slots=True, eq=False)
class PhaseSequence(ScheduledEffect):
    phases: tuple[Phase, ...] = ()
    fired: int = field(default=0, init=False)

    @property
    def current_phase(self) -> str | None:
        if self.fired == 0:
            return None
        return self.phases[self.fired - 1].name

    @property
    def duration_s(self) -> float:
        return self.phases[-1].delay_s if self.phases else 0.0

    def next_due_s(self) -> float | None:
        if self.done or self.fired >= len(self.phases):
            return None
        return self.started_at_s + self.phases[self.fired].delay_s

    def fire(self, at_s: float) -> None:
        phase = self.phases[self.fired]
        self.fired += 1
        if self.fired >= len(self.phases):
            self.done = True
        logger.debug("effect %s -> phase %s at %.3fs", self.name, phase.name, at_s)
        if phase.side_effect is not None:
            phase.side_effect()

    def view(self, now_s: float) -> EffectView:
        total = self.duration_s
        progress = 1.0 if total <= 0 else clamp01((now_s - self.started_at_s) / total)
        return EffectView(
            effect_id=self.effect_id,
            name=self.name,
            kind=EffectKind.SEQUENCE,
            phase=self.current_phase,
            progress=progress,
            hit_resolution=self.hit_resolution,
        )


@dataclass(slots=True, eq=False)
class ConvergingApproach(ScheduledEffect):
    origin: Point = (0.0, 0.0)
    target: Callable[[], Point] = lambda: (0.0, 0.0)
    on_arrival: Callable[[], None] | None = None
    fraction: float = APPROACH_FRACTION
    epsilon: float = APPROACH_EPSILON
    step_s: float = APPROACH_STEP_S
    charge_s: float = CHARGE_S
    x: float = field(default=0.0, init=False)
    y: float = field(default=0.0, init=False)
    steps: int = field(default=0, init=False)
    charging: bool = field(default=True, init=False)
    trail: list[Point] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self.x, self.y = self.origin

    def next_due_s(self) -> float | None:
        if self.done:
            return None
        return self.started_at_s + (self.steps + 1) * self.step_s

    def fire(self, at_s: float) -> None:
        self.steps += 1
        if self.charging:
            if at_s - self.started_at_s < self.charge_s:
                return
            self.charging = False

        tx, ty = self.target()
        self.x += (tx - self.x) * self.fraction
        self.y += (ty - self.y) * self.fraction
        self.trail.insert(0, (self.x, self.y))
        del self.trail[TRAIL_LENGTH:]

        if abs(self.x - tx) < self.epsilon and abs(self.y - ty) < self.epsilon:
            # Finish before the callback so it may start a follow-up effect.
            self.done = True
            logger.debug("effect %s arrived after %d steps", self.name, self.steps)
            if self.on_arrival is not None:
                self.on_arrival()

    def view(self, now_s: float) -> EffectView:
        tx, ty = self.target()
        if self.charging:
            phase = "charge"
            progress = clamp01((now_s - self.started_at_s) / self.charge_s) if self.charge_s > 0 else 1.0
        else:
            phase = "travel"
            total = math.hypot(tx - self.origin[0], ty - self.origin[1])
            left = math.hypot(tx - self.x, ty - self.y)
            progress = 1.0 if total <= 0 else clamp01(1.0 - left / total)
        return EffectView(
            effect_id=self.effect_id,
            name=self.name,
            kind=EffectKind.APPROACH,
            phase=phase,
            progress=progress,
            position=(self.x, self.y),
            trail=tuple(self.trail),
            hit_resolution=self.hit_resolution,
            target=(tx, ty),
        )


class TimedEventSequencer:
    """Owns every pending delayed effect of one game session."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._effects: list[ScheduledEffect] = []
        self._next_id = 1
        # Bumped by cancel_all() so an update() in progress stops touching stale effects.
        self._generation = 0
        # Due time of the step being fired; effects started from its callback anchor here.
        self._firing_at_s: float | None = None

    @property
    def hit_resolution_pending(self) -> bool:
        return any(e.hit_resolution and not e.done for e in self._effects)

    def is_active(self, name: str) -> bool:
        return any(e.name == name and not e.done for e in self._effects)

    def active(self) -> tuple[ScheduledEffect, ...]:
        return tuple(e for e in self._effects if not e.done)

    def views(self) -> tuple[EffectView, ...]:
        now = self._clock.now()
        return tuple(e.view(now) for e in self._effects if not e.done)

    def start_sequence(
        self,
        name: str,
        phases: Sequence[Phase],
        *,
        hit_resolution: bool = False,
    ) -> PhaseSequence:
        ordered = tuple(phases)
        if not ordered:
            raise ValueError("a phase sequence needs at least one phase")
        delays = [p.delay_s for p in ordered]
        if delays[0] < 0 or any(b < a for a, b in zip(delays, delays[1:])):
            raise ValueError("phase delays must be non-negative and non-decreasing")
        self._guard_hit_resolution(hit_resolution)
        effect = PhaseSequence(
            effect_id=self._take_id(),
            name=name,
            started_at_s=self._start_time(),
            hit_resolution=hit_resolution,
            phases=ordered,
        )
        self._effects.append(effect)
        return effect

    def schedule(self, delay_s: float, callback: Callable[[], None], *, name: str) -> PhaseSequence:
        """Single-shot callback after ``delay_s`` seconds."""

        if delay_s < 0:
            raise ValueError("delay_s must be non-negative")
        return self.start_sequence(name, [Phase(delay_s, name, callback)])

    def start_approach(
        self,
        name: str,
        *,
        origin: Point,
        target: Callable[[], Point],
        on_arrival: Callable[[], None] | None = None,
        hit_resolution: bool = False,
        charge_s: float = CHARGE_S,
    ) -> ConvergingApproach:
        self._guard_hit_resolution(hit_resolution)
        effect = ConvergingApproach(
            effect_id=self._take_id(),
            name=name,
            started_at_s=self._start_time(),
            hit_resolution=hit_resolution,
            origin=(float(origin[0]), float(origin[1])),
            target=target,
            on_arrival=on_arrival,
            charge_s=float(charge_s),
        )
        self._effects.append(effect)
        return effect

    def cancel(self, name: str) -> int:
        cancelled = 0
        for effect in self._effects:
            if effect.name == name and not effect.done:
                effect.done = True
                cancelled += 1
        self._prune()
        return cancelled

    def cancel_all(self) -> None:
        for effect in self._effects:
            effect.done = True
        self._effects.clear()
        self._generation += 1

    def update(self) -> int:
        """Run every step and phase due by now; returns how many fired."""

        now = self._clock.now()
        generation = self._generation
        fired = 0
        while True:
            due = self._earliest_due(now)
            if due is None:
                break
            effect, at_s = due
            self._firing_at_s = at_s
            try:
                effect.fire(at_s)
            finally:
                self._firing_at_s = None
            fired += 1
            if self._generation != generation:
                break
        self._prune()
        return fired

    def _earliest_due(self, now: float) -> tuple[ScheduledEffect, float] | None:
        best: tuple[ScheduledEffect, float] | None = None
        for effect in self._effects:
            at_s = effect.next_due_s()
            if at_s is None or at_s > now:
                continue
            if best is None or at_s < best[1]:
                best = (effect, at_s)
        return best

    def _guard_hit_resolution(self, hit_resolution: bool) -> None:
        if hit_resolution and self.hit_resolution_pending:
            raise RuntimeError("a hit resolution is already pending")

    def _start_time(self) -> float:
        if self._firing_at_s is not None:
            return self._firing_at_s
        return self._clock.now()

    def _take_id(self) -> int:
        effect_id = self._next_id
        self._next_id += 1
        return effect_id

    def _prune(self) -> None:
        self._effects = [e for e in self._effects if not e.done]
