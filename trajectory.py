"""
Trajectory prediction — where will the ball cross a paddle's line?

Side walls are handled by unfolding: the straight-line projection is
mirrored across x = 0 / x = field_width until it lands inside the field.
"""

import logging
import math

from physics import Ball, GameState

logger = logging.getLogger(__name__)

MIN_VERTICAL_SPEED: float = 0.1      # below this the ball is treated as not approaching
MAX_REFLECTIONS: int = 64


def unfold(x: float, field_width: float, max_reflections: int = MAX_REFLECTIONS) -> float:
    """Mirror `x` back into [0, field_width].

    The loop is capped; when the cap is hit the last mirrored value is
    returned (still clamped by the caller).
    """
    for _ in range(max_reflections):
        if x < 0:
            x = -x
        elif x > field_width:
            x = 2 * field_width - x
        else:
            return x
    logger.warning("unfold: gave up after %d reflections (x=%s, width=%s)",
                   max_reflections, x, field_width)
    return x


def predict_arrival_x(ball: Ball, target_y: float, field_width: float,
                      approaching: bool = True) -> float:
    """Horizontal coordinate at which `ball` reaches `target_y`.

    Args:
        ball:        Current ball state.
        target_y:    Line the ball has to reach (usually a paddle surface).
        field_width: Width used for wall unfolding.
        approaching: False when the ball moves away from the target paddle;
                     the current x is returned in that case.
    """
    if not approaching or abs(ball.dy) < MIN_VERTICAL_SPEED:
        return ball.x
    if not all(math.isfinite(v) for v in (ball.x, ball.y, ball.dx, ball.dy, target_y)):
        return ball.x

    time_to_reach = abs((target_y - ball.y) / ball.dy)
    future_x = unfold(ball.x + ball.dx * time_to_reach, field_width)
    return max(0.0, min(field_width, future_x))


def contact_line(state: GameState, player: int) -> float:
    """y of the ball centre at the moment it touches `player`'s paddle."""
    paddle = state.paddle(player)
    if player == 1:
        return paddle.y + paddle.height + state.ball.radius
    return paddle.y - state.ball.radius


def predict_for_player(state: GameState, player: int) -> float:
    """Arrival x at `player`'s paddle, or the ball's x if it is moving away."""
    return predict_arrival_x(state.ball, contact_line(state, player), state.field_width,
                             approaching=state.ball_moving_toward(player))
