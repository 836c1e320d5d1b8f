"""
NPC controllers — one call site, several strategies.

A strategy is stateless: everything it has to remember between ticks lives
in a memory object created by `new_memory()` and owned by the session slot.
Each tick the scheduler calls

    decision = strategy.decide(state, player, config, memory, ctx)

and feeds `decision.command` (units this tick, + = right) to the physics.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Hashable, Optional, Type

import numpy as np

from difficulty import NPCConfig, PIDGains
from physics import GameState, TechniqueEffect
from timers import TimerHandle, TimerQueue
from trajectory import predict_for_player

logger = logging.getLogger(__name__)


@dataclass
class TickContext:
    """Per-tick services handed to a strategy by its session."""
    now_ms: float
    tick_ms: float
    rng: np.random.Generator
    paddle_speed: float
    timers: TimerQueue = field(default_factory=TimerQueue)
    timer_key: Hashable = None

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        return self.timers.call_at(self.timer_key, self.now_ms + max(0.0, delay_ms), callback)


@dataclass
class Decision:
    command: float = 0.0
    target_x: Optional[float] = None
    should_return: bool = False
    effect: Optional[TechniqueEffect] = None


def roll_miss_offset(rng: np.random.Generator, return_rate: float, paddle_width: float) -> float:
    """0.0 when this ball will be returned, otherwise an offset that makes the paddle miss."""
    if rng.random() < return_rate:
        return 0.0
    side = -1.0 if rng.random() < 0.5 else 1.0
    return side * paddle_width * rng.uniform(0.75, 1.5)


class ControllerStrategy:
    """Base class. Subclasses override `new_memory` and `decide`."""

    name = "base"

    def new_memory(self, config: NPCConfig):
        raise NotImplementedError

    def decide(self, state: GameState, player: int, config: NPCConfig,
               memory, ctx: TickContext) -> Decision:
        raise NotImplementedError

    def on_contact(self, memory) -> None:
        """Called after this side's paddle touched the ball."""

    def cancel(self, memory) -> None:
        """Drop anything pending (session stopped)."""

    def debug_info(self, memory, config: NPCConfig) -> dict:
        return {"algorithm": self.name, "difficulty": config.difficulty}


_REGISTRY: Dict[str, Type[ControllerStrategy]] = {}


def register_strategy(name: str):
    def decorator(cls):
        cls.name = name
        _REGISTRY[name] = cls
        return cls
    return decorator


def create_strategy(mode: str) -> ControllerStrategy:
    try:
        return _REGISTRY[mode]()
    except KeyError:
        raise ValueError(f"unknown NPC mode {mode!r}; known: {sorted(_REGISTRY)}") from None


def registered_modes() -> list:
    return sorted(_REGISTRY)


# ──────────────────────────────────────────────────────────────────────────────
# Shared tracking memory (reaction delay + per-approach miss)
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class TrackingMemory:
    last_direction: float = 0.0
    direction_changed_ms: float = -math.inf
    miss_offset: float = 0.0
    noise_offset: float = 0.0
    target_x: Optional[float] = None


def _track_direction(memory: TrackingMemory, state: GameState, player: int,
                     config: NPCConfig, ctx: TickContext) -> bool:
    """Update direction bookkeeping. True once the reaction delay has elapsed.

    A new vertical direction re-rolls the per-approach noise and, when the
    ball is heading for this paddle, whether it will be missed.
    """
    direction = float(np.sign(state.ball.dy))
    if direction != memory.last_direction:
        memory.last_direction = direction
        memory.direction_changed_ms = ctx.now_ms
        memory.noise_offset = ctx.rng.uniform(-1.0, 1.0) * config.tracking_noise
        if state.ball_moving_toward(player):
            memory.miss_offset = roll_miss_offset(ctx.rng, config.return_rate,
                                                  state.paddle(player).width)
        else:
            memory.miss_offset = 0.0
    return ctx.now_ms - memory.direction_changed_ms >= config.reaction_delay_ms


# ──────────────────────────────────────────────────────────────────────────────
# Heuristic: chase the ball's current x
# ──────────────────────────────────────────────────────────────────────────────

@register_strategy("heuristic")
class HeuristicStrategy(ControllerStrategy):
    """Cheapest controller: no prediction, just a noisy, delayed follow."""

    def new_memory(self, config: NPCConfig) -> TrackingMemory:
        return TrackingMemory()

    def decide(self, state, player, config, memory, ctx):
        paddle = state.paddle(player)
        if _track_direction(memory, state, player, config, ctx) or memory.target_x is None:
            jitter = ctx.rng.uniform(-1.0, 1.0) * config.tracking_noise
            memory.target_x = state.ball.x + jitter + memory.miss_offset

        cap = config.max_speed * ctx.paddle_speed
        command = float(np.clip(memory.target_x - paddle.center_x, -cap, cap))
        return Decision(command=command, target_x=memory.target_x)

    def debug_info(self, memory, config):
        info = super().debug_info(memory, config)
        info.update(target_x=memory.target_x, miss_offset=memory.miss_offset,
                    max_speed=config.max_speed, tracking_noise=config.tracking_noise)
        return info


# ──────────────────────────────────────────────────────────────────────────────
# PID: closed loop on the predicted arrival point
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class PIDMemory(TrackingMemory):
    integral: float = 0.0
    last_error: Optional[float] = None
    filtered_derivative: float = 0.0
    last_rally: int = 0
    last_output: float = 0.0

    def reset_loop(self) -> None:
        self.integral = 0.0
        self.last_error = None
        self.filtered_derivative = 0.0


def pid_step(memory: PIDMemory, error: float, gains: PIDGains, max_step: float) -> float:
    """One discrete PID update. Returns the movement for this tick.

    The integral only absorbs `error` when that does not push the output
    past `max_step` (conditional integration), and is clamped to
    ±max_integral either way.
    """
    if memory.last_error is None:
        raw_derivative = 0.0
    else:
        raw_derivative = error - memory.last_error
    f = gains.derivative_filter
    memory.filtered_derivative = f * memory.filtered_derivative + (1.0 - f) * raw_derivative
    memory.last_error = error

    candidate = float(np.clip(memory.integral + error, -gains.max_integral, gains.max_integral))
    output = gains.kp * error + gains.ki * candidate + gains.kd * memory.filtered_derivative
    if abs(output) <= max_step:
        memory.integral = candidate
    else:
        output = gains.kp * error + gains.ki * memory.integral + gains.kd * memory.filtered_derivative
    output = float(np.clip(output, -max_step, max_step))
    memory.last_output = output
    return output


@register_strategy("pid")
class PIDStrategy(ControllerStrategy):

    def new_memory(self, config: NPCConfig) -> PIDMemory:
        return PIDMemory()

    def decide(self, state, player, config, memory, ctx):
        if memory.last_rally != state.rally:
            memory.last_rally = state.rally
            memory.reset_loop()
            logger.debug("player %s: rally %s, PID loop reset", player, state.rally)

        paddle = state.paddle(player)
        if _track_direction(memory, state, player, config, ctx) or memory.target_x is None:
            memory.target_x = predict_for_player(state, player) + memory.noise_offset + memory.miss_offset

        error = memory.target_x - paddle.center_x
        max_step = config.pid.max_control_speed * ctx.tick_ms / 1000.0
        command = pid_step(memory, error, config.pid, max_step)
        return Decision(command=command, target_x=memory.target_x)

    def debug_info(self, memory, config):
        info = super().debug_info(memory, config)
        info.update(target_x=memory.target_x, integral=memory.integral,
                    error=memory.last_error, derivative=memory.filtered_derivative,
                    output=memory.last_output, gains=asdict(config.pid))
        return info
