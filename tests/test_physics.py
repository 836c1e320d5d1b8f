"""
Physics Engine Tests — speed scaling, paddle reflection, walls, scoring.

Field reminder: paddle1 near the top (defends y = 0), paddle2 near the bottom.
"""

import sys
import os
import math
import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from physics import (
    PhysicsEngine, Paddle, speed_multiplier_for_hits, reflection_angle,
    FIELD_WIDTH, BALL_RADIUS, MAX_SPEED_MULTIPLIER,
    LAUNCH_ANGLE_MIN_DEG, LAUNCH_ANGLE_MAX_DEG,
)


# ── Helpers ──────────────────────────────────────────────

def make_engine(seed: int = 0, **kwargs):
    engine = PhysicsEngine(rng=np.random.default_rng(seed), **kwargs)
    return engine, engine.new_state()


def place_ball(state, x, y, dx, dy):
    ball = state.ball
    ball.x, ball.y, ball.dx, ball.dy = x, y, dx, dy
    ball.speed_multiplier = 1.0
    state.paddle_hits = 0


def event_types(events):
    return [e["type"] for e in events]


# ── Speed scaling ────────────────────────────────────────

class TestSpeedMultiplier:

    @pytest.mark.parametrize("hits, expected", [
        (0, 1.0), (1, 1.15), (4, 1.6), (20, 4.0), (21, 4.0), (500, 4.0),
    ])
    def test_formula(self, hits, expected):
        assert speed_multiplier_for_hits(hits) == pytest.approx(expected)

    def test_monotone_and_capped(self):
        values = [speed_multiplier_for_hits(h) for h in range(60)]
        assert all(b >= a for a, b in zip(values, values[1:]))
        assert max(values) == pytest.approx(MAX_SPEED_MULTIPLIER)

    def test_multiplier_grows_with_each_contact(self):
        engine, state = make_engine()
        paddle = state.paddle2
        place_ball(state, paddle.center_x, paddle.y - BALL_RADIUS - 1, 0.0, 4.0)
        engine.step(state)
        assert state.paddle_hits == 1
        assert state.ball.speed_multiplier == pytest.approx(1.15)
        assert state.ball.velocity_magnitude == pytest.approx(4.0 * 1.15)


# ── Paddle reflection ────────────────────────────────────

class TestPaddleReflection:

    @pytest.mark.parametrize("p", [-1.0, -0.5, 0.0, 0.25, 1.0])
    def test_reflection_angle_is_linear(self, p):
        assert reflection_angle(p) == pytest.approx(math.radians(p * 60.0))

    def test_hit_position_outside_range_is_clipped(self):
        assert reflection_angle(3.0) == pytest.approx(math.radians(60.0))

    @pytest.mark.parametrize("offset", [-39.0, -20.0, 0.0, 10.0, 39.0])
    def test_bottom_paddle_sends_ball_up(self, offset):
        engine, state = make_engine()
        paddle = state.paddle2
        place_ball(state, paddle.center_x + offset, paddle.y - BALL_RADIUS - 1, 0.0, 4.0)
        events = engine.step(state)

        assert "paddle_hit" in event_types(events)
        assert state.ball.dy < 0
        hit = offset / (paddle.width / 2)
        expected_dx = math.sin(math.radians(hit * 60.0)) * 4.0 * 1.15
        assert state.ball.dx == pytest.approx(expected_dx)

    @pytest.mark.parametrize("offset", [-30.0, 0.0, 30.0])
    def test_top_paddle_sends_ball_down(self, offset):
        engine, state = make_engine()
        paddle = state.paddle1
        place_ball(state, paddle.center_x + offset, paddle.y + paddle.height + BALL_RADIUS + 1, 0.0, -4.0)
        events = engine.step(state)

        assert "paddle_hit" in event_types(events)
        assert state.ball.dy > 0
        assert state.ball.y == pytest.approx(paddle.y + paddle.height + BALL_RADIUS)

    def test_no_contact_while_moving_away(self):
        engine, state = make_engine()
        paddle = state.paddle2
        place_ball(state, paddle.center_x, paddle.y + 2, 0.0, -4.0)
        events = engine.step(state)
        assert "paddle_hit" not in event_types(events)

    def test_technique_effect_caps_angle(self):
        from physics import TechniqueEffect
        engine, state = make_engine()
        paddle = state.paddle2
        place_ball(state, paddle.center_x + 39.0, paddle.y - BALL_RADIUS - 1, 0.0, 4.0)
        events = engine.step(state, effects={2: TechniqueEffect("straight", 15.0, 2)})

        hit = [e for e in events if e["type"] == "paddle_hit"][0]
        assert hit["technique"] == "straight"
        assert abs(hit["angle_deg"]) <= 15.0 + 1e-9

    def test_degenerate_paddle_is_no_contact(self):
        engine, state = make_engine()
        state.paddle2.width = 0.0
        state.paddle2.x = 400.0
        place_ball(state, 400.0, state.paddle2.y - BALL_RADIUS - 1, 0.0, 4.0)
        events = engine.step(state)
        assert "paddle_hit" not in event_types(events)
        assert all(math.isfinite(v) for v in (state.ball.x, state.ball.y, state.ball.dx, state.ball.dy))


# ── Walls, scoring, terminal state ───────────────────────

class TestWallsAndScoring:

    def test_side_wall_reflects(self):
        engine, state = make_engine()
        place_ball(state, FIELD_WIDTH - BALL_RADIUS - 2, 200.0, 4.0, 0.0)
        events = engine.step(state)
        assert "wall" in event_types(events)
        assert state.ball.dx < 0
        assert state.ball.x == pytest.approx(FIELD_WIDTH - BALL_RADIUS)

    def test_crossing_top_scores_for_player_two(self):
        engine, state = make_engine()
        place_ball(state, 100.0, 5.0, 0.0, -4.0)
        events = engine.step(state)

        assert "score" in event_types(events)
        assert state.score == [0, 1]
        assert state.rally == 1
        # re-served from the centre at base speed
        assert state.ball.x == pytest.approx(state.field_width / 2)
        assert state.ball.speed_multiplier == 1.0

    def test_crossing_bottom_scores_for_player_one(self):
        engine, state = make_engine()
        place_ball(state, 100.0, state.field_height - 5.0, 0.0, 4.0)
        engine.step(state)
        assert state.score == [1, 0]

    def test_winning_score_ends_game(self):
        engine, state = make_engine(winning_score=1)
        place_ball(state, 100.0, 5.0, 0.0, -4.0)
        events = engine.step(state)

        assert "game_over" in event_types(events)
        assert state.winner == 2
        frozen = (state.ball.x, state.ball.y)
        assert engine.step(state) == []
        assert (state.ball.x, state.ball.y) == frozen


# ── Paddles and serve ────────────────────────────────────

class TestPaddlesAndServe:

    def test_paddle_speed_is_bounded(self):
        engine, state = make_engine()
        start = state.paddle1.x
        engine.move_paddle(state, 1, 1000.0)
        assert state.paddle1.x == pytest.approx(start + engine.paddle_speed)

    def test_paddle_stays_in_field(self):
        engine, state = make_engine()
        for _ in range(200):
            engine.move_paddle(state, 2, 8.0)
        assert state.paddle2.x == pytest.approx(state.field_width - state.paddle2.width)
        for _ in range(200):
            engine.move_paddle(state, 2, -8.0)
        assert state.paddle2.x == 0.0

    def test_nan_command_is_ignored(self):
        engine, state = make_engine()
        start = state.paddle1.x
        engine.move_paddle(state, 1, float("nan"))
        assert state.paddle1.x == start

    def test_zero_velocity_is_left_alone(self):
        engine, state = make_engine()
        place_ball(state, 300.0, 200.0, 0.0, 0.0)
        engine.step(state)
        assert (state.ball.dx, state.ball.dy) == (0.0, 0.0)

    @pytest.mark.parametrize("seed", range(10))
    def test_serve_angle_range(self, seed):
        _, state = make_engine(seed)
        angle = math.degrees(math.atan2(abs(state.ball.dx), abs(state.ball.dy)))
        assert LAUNCH_ANGLE_MIN_DEG - 1e-9 <= angle <= LAUNCH_ANGLE_MAX_DEG + 1e-9

    def test_same_seed_same_rally(self):
        e1, s1 = make_engine(7)
        e2, s2 = make_engine(7)
        e1.simulate(s1, 2000)
        e2.simulate(s2, 2000)
        assert (s1.ball.x, s1.ball.y, s1.score) == (s2.ball.x, s2.ball.y, s2.score)

    def test_paddle_center(self):
        assert Paddle(x=10.0, width=80.0).center_x == 50.0
