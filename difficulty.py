"""
Difficulty presets and session configuration.

Payloads arrive from outside (HTTP body, match preset scripts) and are never
trusted: every field is read on its own and falls back to the documented
default when it is missing or malformed. Both snake_case and the camelCase
keys of the older wire format are accepted.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional, Tuple

import physics as _phys

logger = logging.getLogger(__name__)

MODES = ("heuristic", "pid", "technician")
DIFFICULTIES = ("Nightmare", "Hard", "Normal", "Easy", "Custom")

DEFAULT_MODE = "pid"
DEFAULT_DIFFICULTY = "Normal"
DEFAULT_TICK_MS = 1000.0 / 60.0

DIFFICULTY_SETTINGS = {
    "Nightmare": {
        "return_rate": 0.99, "reaction_delay_ms": 50, "max_speed": 1.2,
        "tracking_noise": 2, "tracking_timeout_ms": 10000,
        "pid": {"kp": 1.50, "ki": 0.04, "kd": 0.15, "max_integral": 120,
                "derivative_filter": 0.6, "max_control_speed": 900},
        "technician": {"prediction_accuracy": 0.95, "course_accuracy": 0.9},
    },
    "Hard": {
        "return_rate": 0.92, "reaction_delay_ms": 80, "max_speed": 1.1,
        "tracking_noise": 3, "tracking_timeout_ms": 8000,
        "pid": {"kp": 1.35, "ki": 0.05, "kd": 0.13, "max_integral": 110,
                "derivative_filter": 0.55, "max_control_speed": 800},
        "technician": {"prediction_accuracy": 0.88, "course_accuracy": 0.82},
    },
    "Normal": {
        "return_rate": 0.80, "reaction_delay_ms": 200, "max_speed": 0.8,
        "tracking_noise": 10, "tracking_timeout_ms": 6000,
        "pid": {"kp": 1.00, "ki": 0.10, "kd": 0.08, "max_integral": 80,
                "derivative_filter": 0.4, "max_control_speed": 600},
        "technician": {"prediction_accuracy": 0.8, "course_accuracy": 0.7},
    },
    "Easy": {
        "return_rate": 0.65, "reaction_delay_ms": 350, "max_speed": 0.55,
        "tracking_noise": 15, "tracking_timeout_ms": 4000,
        "pid": {"kp": 0.70, "ki": 0.08, "kd": 0.03, "max_integral": 60,
                "derivative_filter": 0.25, "max_control_speed": 450},
        "technician": {"prediction_accuracy": 0.65, "course_accuracy": 0.55},
    },
}

_ALIASES = {
    "return_rate": ("return_rate", "returnRate"),
    "reaction_delay_ms": ("reaction_delay_ms", "reactionDelayMs"),
    "max_speed": ("max_speed", "maxSpeed"),
    "tracking_noise": ("tracking_noise", "trackingNoise"),
    "tracking_timeout_ms": ("tracking_timeout_ms", "trackingTimeout"),
    "max_integral": ("max_integral", "maxIntegral"),
    "derivative_filter": ("derivative_filter", "derivativeFilter"),
    "max_control_speed": ("max_control_speed", "maxControlSpeed"),
    "prediction_accuracy": ("prediction_accuracy", "predictionAccuracy"),
    "course_accuracy": ("course_accuracy", "courseAccuracy"),
    "winning_score": ("winning_score", "winningScore"),
    "max_speed_multiplier": ("max_speed_multiplier", "maxSpeedMultiplier"),
    "paddle_speed": ("paddle_speed", "paddleSpeed"),
    "ball_radius": ("ball_radius", "ballRadius"),
    "paddle_width": ("paddle_width", "paddleWidth"),
    "paddle_height": ("paddle_height", "paddleHeight"),
    "ball_speed": ("ball_speed", "initialBallSpeed", "ballSpeed"),
    "field_width": ("field_width", "fieldWidth", "canvasWidth"),
    "field_height": ("field_height", "fieldHeight", "canvasHeight"),
    "tick_ms": ("tick_ms", "tickMs"),
}


# ── Payload helpers ───────────────────────────────────────────────────────────

def _lookup(payload: Any, name: str):
    if not isinstance(payload, dict):
        return None
    for key in _ALIASES.get(name, (name,)):
        if key in payload:
            return payload[key]
    return None


def _number(payload: Any, name: str, default: float,
            lo: Optional[float] = None, hi: Optional[float] = None) -> float:
    """Read a finite number in [lo, hi]; anything else yields `default`."""
    raw = _lookup(payload, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("config: %s=%r is not a number, using %s", name, raw, default)
        return default
    if isinstance(raw, bool) or not math.isfinite(value):
        logger.warning("config: %s=%r is not usable, using %s", name, raw, default)
        return default
    if (lo is not None and value < lo) or (hi is not None and value > hi):
        logger.warning("config: %s=%r outside [%s, %s], using %s", name, raw, lo, hi, default)
        return default
    return value


def _choice(raw: Any, allowed: Iterable[str], default: str) -> str:
    if raw is None:
        return default
    for option in allowed:
        if isinstance(raw, str) and raw.lower() == option.lower():
            return option
    logger.warning("config: %r is not one of %s, using %s", raw, tuple(allowed), default)
    return default


# ── Controller config ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PIDGains:
    kp: float = 1.0
    ki: float = 0.1
    kd: float = 0.08
    max_integral: float = 80.0
    derivative_filter: float = 0.4
    max_control_speed: float = 600.0   # units per second

    @classmethod
    def from_dict(cls, payload: Any, base: Optional["PIDGains"] = None) -> "PIDGains":
        base = base or cls()
        return cls(
            kp=_number(payload, "kp", base.kp, lo=0.0),
            ki=_number(payload, "ki", base.ki, lo=0.0),
            kd=_number(payload, "kd", base.kd, lo=0.0),
            max_integral=_number(payload, "max_integral", base.max_integral, lo=0.0),
            derivative_filter=_number(payload, "derivative_filter", base.derivative_filter, lo=0.0, hi=1.0),
            max_control_speed=_number(payload, "max_control_speed", base.max_control_speed, lo=0.0),
        )


@dataclass(frozen=True)
class TechnicianSkill:
    prediction_accuracy: float = 0.8
    course_accuracy: float = 0.7

    @classmethod
    def from_dict(cls, payload: Any, base: Optional["TechnicianSkill"] = None) -> "TechnicianSkill":
        base = base or cls()
        return cls(
            prediction_accuracy=_number(payload, "prediction_accuracy", base.prediction_accuracy, lo=0.0, hi=1.0),
            course_accuracy=_number(payload, "course_accuracy", base.course_accuracy, lo=0.0, hi=1.0),
        )


@dataclass(frozen=True)
class NPCConfig:
    """Resolved numeric parameters for one autonomous paddle."""
    player: int = 1
    mode: str = DEFAULT_MODE
    difficulty: str = DEFAULT_DIFFICULTY
    enabled: bool = True
    return_rate: float = 0.80
    reaction_delay_ms: float = 200.0
    max_speed: float = 0.8
    tracking_noise: float = 10.0
    tracking_timeout_ms: float = 6000.0
    pid: PIDGains = field(default_factory=PIDGains)
    technician: TechnicianSkill = field(default_factory=TechnicianSkill)

    @classmethod
    def preset(cls, difficulty: str, player: int = 1, mode: str = DEFAULT_MODE) -> "NPCConfig":
        """Config for a named tier. "Custom" starts from Normal."""
        settings = DIFFICULTY_SETTINGS.get(difficulty, DIFFICULTY_SETTINGS[DEFAULT_DIFFICULTY])
        return cls(
            player=player,
            mode=mode,
            difficulty=difficulty,
            return_rate=settings["return_rate"],
            reaction_delay_ms=settings["reaction_delay_ms"],
            max_speed=settings["max_speed"],
            tracking_noise=settings["tracking_noise"],
            tracking_timeout_ms=settings["tracking_timeout_ms"],
            pid=PIDGains(**settings["pid"]),
            technician=TechnicianSkill(**settings["technician"]),
        )

    @classmethod
    def from_dict(cls, payload: Any, default_player: int = 1,
                  base: Optional["NPCConfig"] = None) -> "NPCConfig":
        """Resolve a payload against its difficulty tier (or against `base`).

        Explicit numeric fields override the tier; malformed ones are ignored.
        """
        if not isinstance(payload, dict):
            if payload is not None:
                logger.warning("config: NPC payload %r is not an object, using defaults", payload)
            payload = {}

        if base is None:
            player = default_player
        else:
            player = base.player
        raw_player = payload.get("player")
        if raw_player in (1, 2, "1", "2"):
            player = int(raw_player)
        elif raw_player is not None:
            logger.warning("config: player=%r invalid, using %s", raw_player, player)

        mode = _choice(payload.get("mode"), MODES, base.mode if base else DEFAULT_MODE)
        difficulty = _choice(payload.get("difficulty"), DIFFICULTIES,
                             base.difficulty if base else DEFAULT_DIFFICULTY)
        if base is None or difficulty != base.difficulty:
            start = cls.preset(difficulty, player=player, mode=mode)
        else:
            start = replace(base, player=player, mode=mode)

        enabled = payload.get("enabled", start.enabled)
        if not isinstance(enabled, bool):
            enabled = start.enabled

        return replace(
            start,
            enabled=enabled,
            return_rate=_number(payload, "return_rate", start.return_rate, lo=0.0, hi=1.0),
            reaction_delay_ms=_number(payload, "reaction_delay_ms", start.reaction_delay_ms, lo=0.0),
            max_speed=_number(payload, "max_speed", start.max_speed, lo=0.0),
            tracking_noise=_number(payload, "tracking_noise", start.tracking_noise, lo=0.0),
            tracking_timeout_ms=_number(payload, "tracking_timeout_ms", start.tracking_timeout_ms, lo=0.0),
            pid=PIDGains.from_dict(payload.get("pid"), start.pid),
            technician=TechnicianSkill.from_dict(payload.get("technician"), start.technician),
        )


# ── Session config ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GameConfig:
    field_width: float = _phys.FIELD_WIDTH
    field_height: float = _phys.FIELD_HEIGHT
    paddle_width: float = _phys.PADDLE_WIDTH
    paddle_height: float = _phys.PADDLE_HEIGHT
    paddle_speed: float = _phys.PADDLE_SPEED
    ball_radius: float = _phys.BALL_RADIUS
    ball_speed: float = _phys.BALL_SPEED
    winning_score: int = _phys.WINNING_SCORE
    max_speed_multiplier: float = _phys.MAX_SPEED_MULTIPLIER
    tick_ms: float = DEFAULT_TICK_MS
    npcs: Tuple[NPCConfig, ...] = (NPCConfig(),)

    def npc_for(self, player: int) -> Optional[NPCConfig]:
        for npc in self.npcs:
            if npc.player == player and npc.enabled:
                return npc
        return None

    @classmethod
    def from_dict(cls, payload: Any) -> "GameConfig":
        """Build a session config. Missing `npc` means one PID NPC on side 1.

        NPC entries: `npc` (side 1 unless it says otherwise), `npc2`
        (side 2 unless it says otherwise) or a `npcs` list. A later entry
        for the same side replaces an earlier one.
        """
        if not isinstance(payload, dict):
            if payload is not None:
                logger.warning("config: game payload %r is not an object, using defaults", payload)
            payload = {}
        d = cls()

        entries = []
        if "npcs" in payload and isinstance(payload["npcs"], list):
            for i, raw in enumerate(payload["npcs"][:2]):
                entries.append(NPCConfig.from_dict(raw, default_player=i + 1))
        else:
            if "npc" in payload:
                if payload["npc"] is not None:
                    entries.append(NPCConfig.from_dict(payload["npc"], default_player=1))
            else:
                entries.append(NPCConfig())
            if payload.get("npc2") is not None:
                entries.append(NPCConfig.from_dict(payload["npc2"], default_player=2))

        by_player = {}
        for npc in entries:
            if npc.player in by_player:
                logger.warning("config: two NPC entries for player %s, keeping the last", npc.player)
            by_player[npc.player] = npc

        return cls(
            field_width=_number(payload, "field_width", d.field_width, lo=100.0),
            field_height=_number(payload, "field_height", d.field_height, lo=100.0),
            paddle_width=_number(payload, "paddle_width", d.paddle_width, lo=1.0),
            paddle_height=_number(payload, "paddle_height", d.paddle_height, lo=1.0),
            paddle_speed=_number(payload, "paddle_speed", d.paddle_speed, lo=0.0),
            ball_radius=_number(payload, "ball_radius", d.ball_radius, lo=1.0),
            ball_speed=_number(payload, "ball_speed", d.ball_speed, lo=0.1),
            winning_score=int(_number(payload, "winning_score", d.winning_score, lo=1)),
            max_speed_multiplier=_number(payload, "max_speed_multiplier", d.max_speed_multiplier, lo=1.0),
            tick_ms=_number(payload, "tick_ms", d.tick_ms, lo=1.0),
            npcs=tuple(by_player[p] for p in sorted(by_player)),
        )
