"""
Technician — utility-based shot planner.

Layered timing on top of a four-technique planner:

  permission window   once per PERMISSION_WINDOW_MS (or right after a point)
                      the paddle may commit to a new repositioning
  initial movement    for INITIAL_MOVEMENT_MS after a grant, with nothing
                      planned yet, it may move even if the ball is receding
  reaction delay      planning runs `reaction_delay_ms` after it is wanted,
                      as a cancelable deferred task (never inline)

Planning scores Course / Straight / Bounce / DoubleBounce, applies a
diversity penalty (never the same technique twice running) and keeps the
winner as the active action until the paddle has closed on its target.
Targets are resolved every tick from the latest ball state.
"""

import enum
import logging
import math
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, List, Optional

import numpy as np

from difficulty import NPCConfig
from npc import ControllerStrategy, Decision, TickContext, register_strategy
from physics import MAX_BOUNCE_ANGLE_DEG, Ball, GameState, TechniqueEffect
from timers import TimerHandle
from trajectory import MIN_VERTICAL_SPEED, contact_line, predict_arrival_x

logger = logging.getLogger(__name__)

# ── Timing (ms) ───────────────────────────────────────────────────────────────
PERMISSION_WINDOW_MS = 1000.0
INITIAL_MOVEMENT_MS = 2000.0

# ── Movement (field units) ────────────────────────────────────────────────────
MOVE_SPEED = 7.0
DEAD_ZONE = 15.0
CLOSE_THRESHOLD = 25.0
CENTER_ZONE = 50.0
PREDICTION_STABILITY = 30.0

# ── Shot shaping ──────────────────────────────────────────────────────────────
HISTORY_SIZE = 5
STRAIGHT_OFFSET_RATIO = 0.087        # tan(5°): centre band that keeps the return near vertical
STRAIGHT_MAX_ANGLE_DEG = 15.0
MAX_AIM_HIT_POSITION = 0.9
COURSE_ERROR_SCALE = 40.0
PREDICTION_ERROR_SCALE = 80.0
MISS_ERROR_SCALE = 250.0
MISS_CHANCE_FACTOR = 1.2


class Technique(str, enum.Enum):
    COURSE = "course"
    STRAIGHT = "straight"
    BOUNCE = "bounce"
    DOUBLE_BOUNCE = "double_bounce"


@dataclass
class Action:
    technique: Technique
    target_x: float
    utility: float


@dataclass
class TechnicianMemory:
    config: Optional[NPCConfig] = None
    has_permission: bool = True
    permission_granted_ms: Optional[float] = None
    last_view_update_ms: float = -math.inf
    cached_arrival_x: Optional[float] = None
    last_predicted_x: float = 0.0
    last_rally: int = 0
    last_technique: Optional[Technique] = None
    history: Deque[Technique] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))
    current_action: Optional[Action] = None
    is_returning: bool = False
    target_position: float = 0.0
    resolved_target: Optional[float] = None
    aim_side: Optional[float] = None
    active_effect: Optional[TechniqueEffect] = None
    pending_plan: Optional[TimerHandle] = None
    planned_since_grant: bool = False
    plans: int = 0


def return_success_rate(config: NPCConfig) -> float:
    skill = config.technician
    return min(0.98, skill.prediction_accuracy * skill.course_accuracy * 0.95)


def move_towards(current: float, target: float,
                 speed: float = MOVE_SPEED, dead_zone: float = DEAD_ZONE) -> float:
    """Per-tick command that moves `current` toward `target`; 0 inside the dead zone."""
    distance = abs(target - current)
    if distance < dead_zone:
        return 0.0
    if distance < speed:
        return target - current
    return speed if target > current else -speed


# ──────────────────────────────────────────────────────────────────────────────
# Utilities and diversity
# ──────────────────────────────────────────────────────────────────────────────

def _bounded(utility: float) -> float:
    return max(0.1, min(1.0, utility))


def generate_actions(arrival_x: float, npc_x: float, opponent_x: float,
                     field_width: float, rng: np.random.Generator) -> List[Action]:
    """Score the four techniques for a ball arriving at `arrival_x`."""
    center = field_width / 2
    at_center = abs(npc_x - center) < CENTER_ZONE
    at_edge = not at_center

    course = 0.6 + (abs(opponent_x - center) / center) * 0.3
    if at_center:
        course += 0.2
    course += (rng.random() - 0.5) * 0.1

    straight = 0.5 + (0.2 if at_edge else 0.0) + (rng.random() - 0.5) * 0.2
    bounce = 0.4 + (rng.random() - 0.5) * 0.3
    double_bounce = 0.45 + (0.25 if at_edge else 0.0) + (rng.random() - 0.5) * 0.2

    return [
        Action(Technique.COURSE, arrival_x, _bounded(course)),
        Action(Technique.STRAIGHT, arrival_x, _bounded(straight)),
        Action(Technique.BOUNCE, arrival_x, _bounded(bounce)),
        Action(Technique.DOUBLE_BOUNCE, arrival_x, _bounded(double_bounce)),
    ]


def apply_diversity_penalty(actions: List[Action], last: Optional[Technique],
                            history) -> List[Action]:
    """Zero the previous technique; damp recently used ones (floor 0.5×)."""
    penalised = []
    for action in actions:
        multiplier = 0.0 if action.technique == last else 1.0
        recent = sum(1 for t in history if t == action.technique)
        if recent and multiplier > 0:
            multiplier *= max(0.5, 1.0 - recent * 0.2)
        penalised.append(replace(action, utility=action.utility * multiplier))
    return penalised


def choose_action(actions: List[Action], last: Optional[Technique], history) -> Action:
    """Best penalised action with utility > 0, else best raw action that is not `last`."""
    valid = [a for a in apply_diversity_penalty(actions, last, history) if a.utility > 0]
    if not valid:
        valid = [a for a in actions if a.technique != last] or list(actions)
    best = valid[0]
    for action in valid[1:]:
        if action.utility > best.utility:
            best = action
    return best


def record_technique(memory: TechnicianMemory, technique: Technique) -> None:
    memory.last_technique = technique
    memory.history.append(technique)


# ──────────────────────────────────────────────────────────────────────────────
# Target resolution
# ──────────────────────────────────────────────────────────────────────────────

def straight_target(state: GameState, player: int) -> float:
    """Paddle centre that meets the ball within tan(5°)·width of centre."""
    ball = state.ball
    paddle = state.paddle(player)
    predicted = ball.x
    if abs(ball.dy) > MIN_VERTICAL_SPEED:
        predicted = predict_arrival_x(ball, contact_line(state, player), state.field_width)

    max_offset = paddle.width * STRAIGHT_OFFSET_RATIO
    total = abs(ball.dx) + abs(ball.dy)
    horizontal_share = abs(ball.dx) / total if total > 0 else 0.0
    adjustment = horizontal_share * max_offset

    target = predicted
    if ball.dx > 0:
        target -= adjustment
    elif ball.dx < 0:
        target += adjustment
    half = paddle.width / 2
    return max(half, min(state.field_width - half, target))


def aim_point(technique: Technique, state: GameState, player: int,
              memory: TechnicianMemory, rng: np.random.Generator) -> float:
    """Where on the opponent's line the shot should land (real coordinates)."""
    width = state.field_width
    ball_x = state.ball.x
    if technique == Technique.COURSE:
        opponent_x = state.opponent_paddle(player).center_x
        return width * 0.8 if opponent_x < width / 2 else width * 0.2
    if technique == Technique.BOUNCE:
        return width * 0.85 if ball_x < width / 2 else width * 0.15
    # DOUBLE_BOUNCE
    if ball_x < width / 3:
        return width * 0.9
    if ball_x > width * 2 / 3:
        return width * 0.1
    if memory.aim_side is None:
        memory.aim_side = 0.9 if rng.random() > 0.5 else 0.1
    return width * memory.aim_side


_REFLECTIONS = {
    Technique.COURSE: 0,
    Technique.BOUNCE: 1,
    Technique.DOUBLE_BOUNCE: 2,
}


def aim_image(aim_x: float, reflections: int, from_x: float, field_width: float) -> float:
    """Unfolded coordinate of `aim_x` after `reflections` wall bounces, nearest `from_x`."""
    if reflections == 0:
        return aim_x
    if reflections == 1:
        images = (-aim_x, 2 * field_width - aim_x)
    else:
        images = (aim_x - 2 * field_width, aim_x + 2 * field_width)
    return min(images, key=lambda u: abs(u - from_x))


def paddle_center_for_aim(state: GameState, player: int, arrival_x: float,
                          aim_x: float, reflections: int) -> float:
    """Paddle centre whose contact angle sends a ball arriving at `arrival_x` to `aim_x`."""
    paddle = state.paddle(player)
    travel = abs(contact_line(state, 2 if player == 1 else 1) - contact_line(state, player))
    image = aim_image(aim_x, reflections, arrival_x, state.field_width)
    angle_deg = math.degrees(math.atan2(image - arrival_x, max(travel, 1.0)))
    hit = float(np.clip(angle_deg / MAX_BOUNCE_ANGLE_DEG, -MAX_AIM_HIT_POSITION, MAX_AIM_HIT_POSITION))
    half = paddle.width / 2
    return max(half, min(state.field_width - half, arrival_x - hit * half))


# ──────────────────────────────────────────────────────────────────────────────
# Strategy
# ──────────────────────────────────────────────────────────────────────────────

@register_strategy("technician")
class TechnicianStrategy(ControllerStrategy):

    def new_memory(self, config: NPCConfig) -> TechnicianMemory:
        return TechnicianMemory(config=config)

    # ── Permission bookkeeping ────────────────────────────────────────────────

    def _grant_initial_permission(self, memory: TechnicianMemory, state: GameState, now_ms: float) -> None:
        """New rally: fresh permission, nothing planned, prediction reset.

        Technique history, including the last pick, carries over.
        """
        if memory.pending_plan is not None:
            memory.pending_plan.cancel()
            memory.pending_plan = None
        memory.has_permission = True
        memory.permission_granted_ms = now_ms
        memory.planned_since_grant = False
        memory.current_action = None
        memory.is_returning = False
        memory.resolved_target = None
        memory.aim_side = None
        memory.active_effect = None
        memory.cached_arrival_x = state.ball.x

    @staticmethod
    def _initial_movement(memory: TechnicianMemory, now_ms: float) -> bool:
        if memory.permission_granted_ms is None:
            return False
        return (now_ms - memory.permission_granted_ms < INITIAL_MOVEMENT_MS
                and not memory.planned_since_grant
                and memory.current_action is None and not memory.is_returning)

    # ── Prediction ────────────────────────────────────────────────────────────

    def predict_arrival(self, state: GameState, player: int, config: NPCConfig,
                        memory: TechnicianMemory, rng: np.random.Generator) -> float:
        """Arrival x with skill-dependent error, stabilised against small changes."""
        ball: Ball = state.ball
        if not state.ball_moving_toward(player) or abs(ball.dy) < MIN_VERTICAL_SPEED:
            return ball.x

        future_x = predict_arrival_x(ball, contact_line(state, player), state.field_width)
        if abs(future_x - memory.last_predicted_x) <= PREDICTION_STABILITY:
            predicted = memory.last_predicted_x
        else:
            error_scale = (1.0 - config.technician.prediction_accuracy) * PREDICTION_ERROR_SCALE
            predicted = future_x + (rng.random() - 0.5) * error_scale
            miss_chance = 1.0 - return_success_rate(config)
            if rng.random() < miss_chance * MISS_CHANCE_FACTOR:
                predicted += (rng.random() - 0.5) * MISS_ERROR_SCALE
            memory.last_predicted_x = predicted
        return max(0.0, min(state.field_width, predicted))

    # ── Planning ──────────────────────────────────────────────────────────────

    def plan_action(self, state: GameState, player: int, config: NPCConfig,
                    memory: TechnicianMemory, rng: np.random.Generator) -> Action:
        memory.pending_plan = None
        arrival = self.predict_arrival(state, player, config, memory, rng)
        candidates = generate_actions(
            arrival,
            state.paddle(player).center_x,
            state.opponent_paddle(player).center_x,
            state.field_width,
            rng,
        )
        action = choose_action(candidates, memory.last_technique, memory.history)
        record_technique(memory, action.technique)
        memory.current_action = action
        memory.is_returning = True
        memory.target_position = arrival
        memory.aim_side = None
        memory.planned_since_grant = True
        memory.plans += 1
        logger.debug("player %s planned %s (utility %.2f) for arrival x=%.1f",
                     player, action.technique.value, action.utility, arrival)
        return action

    def _schedule_plan(self, state: GameState, player: int,
                       memory: TechnicianMemory, ctx: TickContext) -> None:
        rng = ctx.rng

        def _run():
            self.plan_action(state, player, memory.config, memory, rng)

        memory.pending_plan = ctx.call_later(memory.config.reaction_delay_ms, _run)
        memory.has_permission = False

    # ── Execution ─────────────────────────────────────────────────────────────

    def resolve_target(self, state: GameState, player: int, config: NPCConfig,
                       memory: TechnicianMemory, rng: np.random.Generator) -> float:
        action = memory.current_action
        if action.technique == Technique.STRAIGHT:
            return straight_target(state, player)
        aim = aim_point(action.technique, state, player, memory, rng)
        target = paddle_center_for_aim(state, player, memory.target_position, aim,
                                       _REFLECTIONS[action.technique])
        course_error = (1.0 - config.technician.course_accuracy) * COURSE_ERROR_SCALE
        return target + (rng.random() - 0.5) * course_error

    def _execute(self, state: GameState, player: int, config: NPCConfig,
                 memory: TechnicianMemory, rng: np.random.Generator) -> Decision:
        action = memory.current_action
        current = state.paddle(player).center_x
        target = self.resolve_target(state, player, config, memory, rng)
        memory.resolved_target = target
        command = move_towards(current, target)
        should_return = abs(current + command - target) < CLOSE_THRESHOLD
        if should_return:
            if action.technique == Technique.STRAIGHT:
                memory.active_effect = TechniqueEffect(Technique.STRAIGHT.value, STRAIGHT_MAX_ANGLE_DEG, player)
            memory.current_action = None
            memory.is_returning = False
        return Decision(command=command, target_x=target, should_return=should_return,
                        effect=memory.active_effect)

    # ── Tick ──────────────────────────────────────────────────────────────────

    def decide(self, state, player, config, memory, ctx):
        now = ctx.now_ms
        memory.config = config
        if memory.permission_granted_ms is None:
            memory.permission_granted_ms = now
            memory.last_rally = state.rally

        if state.rally != memory.last_rally:
            memory.last_rally = state.rally
            self._grant_initial_permission(memory, state, now)

        if now - memory.last_view_update_ms >= PERMISSION_WINDOW_MS:
            memory.last_view_update_ms = now
            memory.cached_arrival_x = self.predict_arrival(state, player, config, memory, ctx.rng)
            memory.has_permission = True
            memory.permission_granted_ms = now
            memory.planned_since_grant = False

        moving_to_npc = state.ball_moving_toward(player)
        initial = self._initial_movement(memory, now)
        plan_pending = memory.pending_plan is not None and not memory.pending_plan.done()
        if (memory.has_permission and (moving_to_npc or initial)
                and not memory.is_returning and not plan_pending):
            self._schedule_plan(state, player, memory, ctx)

        if memory.current_action is not None:
            return self._execute(state, player, config, memory, ctx.rng)

        paddle = state.paddle(player)
        if not memory.has_permission and not initial:
            return Decision(command=0.0, target_x=paddle.center_x, effect=memory.active_effect)

        if moving_to_npc or initial:
            target = memory.cached_arrival_x if memory.cached_arrival_x is not None else state.ball.x
        else:
            target = state.field_width / 2
        return Decision(command=move_towards(paddle.center_x, target), target_x=target,
                        effect=memory.active_effect)

    def on_contact(self, memory: TechnicianMemory) -> None:
        memory.active_effect = None

    def cancel(self, memory: TechnicianMemory) -> None:
        if memory.pending_plan is not None:
            memory.pending_plan.cancel()
            memory.pending_plan = None

    def debug_info(self, memory, config):
        info = super().debug_info(memory, config)
        action = memory.current_action
        info.update(
            current_action=action.technique.value if action else "none",
            last_technique=memory.last_technique.value if memory.last_technique else None,
            technique_history=[t.value for t in memory.history],
            target_position=memory.target_position,
            resolved_target=memory.resolved_target,
            is_returning=memory.is_returning,
            return_success_rate=return_success_rate(config),
            has_movement_permission=memory.has_permission,
            plan_pending=memory.pending_plan is not None and not memory.pending_plan.done(),
            active_technique_effect=memory.active_effect.technique if memory.active_effect else None,
            plans=memory.plans,
            technique_diversity={
                "history_length": len(memory.history),
                "unique_techniques": len(set(memory.history)),
            },
        )
        return info
