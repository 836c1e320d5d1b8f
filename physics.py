"""
Paddle Arena Physics Engine
Ball motion, wall/paddle collision, scoring and speed scaling.

Field layout (y grows downward):
  paddle1 sits near the top edge   → player 1 defends y = 0
  paddle2 sits near the bottom edge → player 2 defends y = field_height
Paddles move horizontally only.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# Constants (field units, per-tick velocities)
# ──────────────────────────────────────────────
FIELD_WIDTH: float = 800.0
FIELD_HEIGHT: float = 400.0
PADDLE_WIDTH: float = 80.0
PADDLE_HEIGHT: float = 12.0
PADDLE_MARGIN: float = 20.0          # distance from the paddle to its goal line
PADDLE_SPEED: float = 8.0            # max paddle travel per tick
BALL_RADIUS: float = 8.0
BALL_SPEED: float = 4.0              # base speed, units per tick
WINNING_SCORE: int = 11

# Speed scaling
SPEED_STEP: float = 0.15             # multiplier gained per paddle hit
MAX_SPEED_MULTIPLIER: float = 4.0

# Angles
MAX_BOUNCE_ANGLE_DEG: float = 60.0   # reflection angle at the paddle edge
LAUNCH_ANGLE_MIN_DEG: float = 15.0   # serve angle range, measured from vertical
LAUNCH_ANGLE_MAX_DEG: float = 45.0

# Numerical thresholds
VELOCITY_EPSILON: float = 1e-9


def speed_multiplier_for_hits(hits: int, cap: float = MAX_SPEED_MULTIPLIER) -> float:
    """Multiplier after `hits` paddle contacts in the current rally."""
    return min(1.0 + max(0, hits) * SPEED_STEP, cap)


def reflection_angle(hit_position: float, max_angle_deg: float = MAX_BOUNCE_ANGLE_DEG) -> float:
    """Outgoing angle from vertical (radians) for a hit position in [-1, 1]."""
    hit_position = max(-1.0, min(1.0, hit_position))
    return hit_position * math.radians(max_angle_deg)


@dataclass
class Ball:
    x: float = FIELD_WIDTH / 2
    y: float = FIELD_HEIGHT / 2
    dx: float = 0.0
    dy: float = 0.0
    radius: float = BALL_RADIUS
    speed: float = BALL_SPEED
    speed_multiplier: float = 1.0

    @property
    def target_speed(self) -> float:
        return self.speed * self.speed_multiplier

    @property
    def velocity_magnitude(self) -> float:
        return math.hypot(self.dx, self.dy)


@dataclass
class Paddle:
    x: float = 0.0
    y: float = 0.0
    width: float = PADDLE_WIDTH
    height: float = PADDLE_HEIGHT

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2

    def clamp(self, field_width: float) -> None:
        self.x = max(0.0, min(field_width - self.width, self.x))


@dataclass
class GameState:
    """Everything one simulation owns. Never shared across sessions."""
    ball: Ball = field(default_factory=Ball)
    paddle1: Paddle = field(default_factory=Paddle)
    paddle2: Paddle = field(default_factory=Paddle)
    field_width: float = FIELD_WIDTH
    field_height: float = FIELD_HEIGHT
    score: List[int] = field(default_factory=lambda: [0, 0])
    paddle_hits: int = 0
    rally: int = 0
    winner: Optional[int] = None

    def paddle(self, player: int) -> Paddle:
        return self.paddle1 if player == 1 else self.paddle2

    def opponent_paddle(self, player: int) -> Paddle:
        return self.paddle2 if player == 1 else self.paddle1

    def ball_moving_toward(self, player: int) -> bool:
        """Player 1 defends the top edge, player 2 the bottom edge."""
        return self.ball.dy < 0 if player == 1 else self.ball.dy > 0

    @property
    def finished(self) -> bool:
        return self.winner is not None


@dataclass
class TechniqueEffect:
    """Shot modifier a controller exposes for its next paddle contact only."""
    technique: str
    max_angle_deg: float
    player: int


class PhysicsEngine:
    """Deterministic paddle-game physics. Randomness only enters through `rng`."""

    def __init__(self,
                 rng: Optional[np.random.Generator] = None,
                 paddle_speed: float = PADDLE_SPEED,
                 winning_score: int = WINNING_SCORE,
                 max_speed_multiplier: float = MAX_SPEED_MULTIPLIER):
        self.rng = rng if rng is not None else np.random.default_rng()
        self.paddle_speed = paddle_speed
        self.winning_score = winning_score
        self.max_speed_multiplier = max_speed_multiplier
        self.events: list = []

    # ──────────────────────────────────────────
    # Setup
    # ──────────────────────────────────────────
    def new_state(self,
                  field_width: float = FIELD_WIDTH,
                  field_height: float = FIELD_HEIGHT,
                  paddle_width: float = PADDLE_WIDTH,
                  paddle_height: float = PADDLE_HEIGHT,
                  ball_radius: float = BALL_RADIUS,
                  ball_speed: float = BALL_SPEED) -> GameState:
        """Build a fresh state: centred paddles, served ball, zero score."""
        state = GameState(
            ball=Ball(radius=ball_radius, speed=ball_speed),
            paddle1=Paddle(width=paddle_width, height=paddle_height),
            paddle2=Paddle(width=paddle_width, height=paddle_height),
            field_width=field_width,
            field_height=field_height,
        )
        state.paddle1.x = field_width / 2 - paddle_width / 2
        state.paddle1.y = PADDLE_MARGIN
        state.paddle2.x = field_width / 2 - paddle_width / 2
        state.paddle2.y = field_height - PADDLE_MARGIN - paddle_height
        self.serve(state)
        return state

    def serve(self, state: GameState) -> None:
        """Reset the ball to field centre and launch it 15°–45° off vertical."""
        ball = state.ball
        ball.x = state.field_width / 2
        ball.y = state.field_height / 2
        angle = math.radians(self.rng.uniform(LAUNCH_ANGLE_MIN_DEG, LAUNCH_ANGLE_MAX_DEG))
        vertical = 1.0 if self.rng.random() > 0.5 else -1.0
        horizontal = 1.0 if self.rng.random() > 0.5 else -1.0
        ball.speed_multiplier = 1.0
        ball.dy = ball.speed * math.cos(angle) * vertical
        ball.dx = ball.speed * math.sin(angle) * horizontal
        state.paddle_hits = 0

    # ──────────────────────────────────────────
    # 1. Paddle movement
    # ──────────────────────────────────────────
    def move_paddle(self, state: GameState, player: int, command: float) -> None:
        """Apply a horizontal command, bounded by paddle speed and field edges."""
        if not math.isfinite(command):
            command = 0.0
        step = max(-self.paddle_speed, min(self.paddle_speed, command))
        paddle = state.paddle(player)
        paddle.x += step
        paddle.clamp(state.field_width)

    # ──────────────────────────────────────────
    # 2. Speed normalisation
    # ──────────────────────────────────────────
    @staticmethod
    def _normalize_velocity(ball: Ball) -> None:
        """Rescale (dx, dy) to the target speed. Zero-length velocity is left alone."""
        magnitude = ball.velocity_magnitude
        if magnitude < VELOCITY_EPSILON or not math.isfinite(magnitude):
            return
        scale = ball.target_speed / magnitude
        ball.dx *= scale
        ball.dy *= scale

    # ──────────────────────────────────────────
    # 4. Side walls
    # ──────────────────────────────────────────
    def _check_wall_collision(self, state: GameState) -> None:
        ball = state.ball
        if ball.x - ball.radius < 0:
            ball.x = ball.radius
            ball.dx = abs(ball.dx)
        elif ball.x + ball.radius > state.field_width:
            ball.x = state.field_width - ball.radius
            ball.dx = -abs(ball.dx)
        else:
            return
        self.events.append({"type": "wall", "x": ball.x, "y": ball.y})

    # ──────────────────────────────────────────
    # 5. Paddle contact
    # ──────────────────────────────────────────
    @staticmethod
    def _overlaps(ball: Ball, paddle: Paddle) -> bool:
        """AABB test between the ball's bounding box and the paddle rectangle."""
        return (ball.y - ball.radius < paddle.y + paddle.height and
                ball.y + ball.radius > paddle.y and
                ball.x + ball.radius > paddle.x and
                ball.x - ball.radius < paddle.x + paddle.width)

    @staticmethod
    def hit_position(ball: Ball, paddle: Paddle) -> float:
        """Contact offset from paddle centre normalised by half-width, clipped to [-1, 1]."""
        half = paddle.width / 2
        if half <= 0:
            return float("nan")
        return float(np.clip((ball.x - paddle.center_x) / half, -1.0, 1.0))

    def _check_paddle_collision(self, state: GameState, player: int,
                                effect: Optional[TechniqueEffect]) -> bool:
        ball = state.ball
        paddle = state.paddle(player)
        if not state.ball_moving_toward(player):
            return False
        if not self._overlaps(ball, paddle):
            return False

        hit = self.hit_position(ball, paddle)
        if not math.isfinite(hit):
            return False

        max_angle = MAX_BOUNCE_ANGLE_DEG
        if effect is not None:
            max_angle = min(max_angle, effect.max_angle_deg)
        angle = reflection_angle(hit, max_angle)
        if not math.isfinite(angle):
            return False

        # Reposition on the paddle surface so the ball never tunnels through
        if player == 1:
            ball.y = paddle.y + paddle.height + ball.radius
        else:
            ball.y = paddle.y - ball.radius

        state.paddle_hits += 1
        ball.speed_multiplier = speed_multiplier_for_hits(state.paddle_hits, self.max_speed_multiplier)
        speed = ball.target_speed
        away = 1.0 if player == 1 else -1.0
        ball.dx = math.sin(angle) * speed
        ball.dy = abs(math.cos(angle) * speed) * away

        self.events.append({
            "type": "paddle_hit", "player": player, "hit_position": hit,
            "angle_deg": math.degrees(angle), "hits": state.paddle_hits,
            "technique": effect.technique if effect is not None else None,
        })
        return True

    # ──────────────────────────────────────────
    # 6–7. Scoring and terminal check
    # ──────────────────────────────────────────
    def _check_score(self, state: GameState) -> Optional[int]:
        """Return the scoring player (1 or 2) or None."""
        ball = state.ball
        if ball.y - ball.radius < 0:
            scorer = 2
        elif ball.y + ball.radius > state.field_height:
            scorer = 1
        else:
            return None

        state.score[scorer - 1] += 1
        state.rally += 1
        self.events.append({"type": "score", "scorer": scorer, "score": list(state.score)})
        if state.score[scorer - 1] >= self.winning_score:
            state.winner = scorer
            self.events.append({"type": "game_over", "winner": scorer, "score": list(state.score)})
            logger.debug("game over: player %s wins %s", scorer, state.score)
        self.serve(state)
        return scorer

    # ──────────────────────────────────────────
    # Main Update Loop
    # ──────────────────────────────────────────
    def step(self, state: GameState,
             commands: Optional[Dict[int, float]] = None,
             effects: Optional[Dict[int, TechniqueEffect]] = None) -> list:
        """Advance one tick. Returns this tick's events (also kept in `self.events`)."""
        self.events = []
        if state.finished:
            return self.events

        commands = commands or {}
        effects = effects or {}
        for player in (1, 2):
            self.move_paddle(state, player, commands.get(player, 0.0))

        ball = state.ball
        self._normalize_velocity(ball)
        ball.x += ball.dx
        ball.y += ball.dy

        # Resolve one collision at a time: wall, then paddles, then goal lines
        self._check_wall_collision(state)
        for player in (1, 2):
            if self._check_paddle_collision(state, player, effects.get(player)):
                break
        self._check_score(state)
        return self.events

    def simulate(self, state: GameState, ticks: int,
                 commands: Optional[Dict[int, float]] = None) -> int:
        """Run up to `ticks` steps with fixed commands. Returns ticks actually run."""
        run = 0
        while run < ticks and not state.finished:
            self.step(state, commands)
            run += 1
        return run
