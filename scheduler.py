"""
Session scheduler — many independent matches on one fixed-rate loop.

Each session owns its GameState, its PhysicsEngine, one private random
generator per component (spawned from the session seed) and a slot per
NPC-controlled side. Nothing mutable is shared between sessions; the only
shared structures are the session map (guarded by a lock) and the timer
queue, whose entries are keyed by session id.

Per-tick order inside a session:

    deferred tasks due → controller decisions → physics step → terminal check
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

import technician  # noqa: F401  registers the "technician" strategy
from difficulty import GameConfig, NPCConfig
from npc import ControllerStrategy, Decision, TickContext, create_strategy
from physics import SPEED_STEP, GameState, PhysicsEngine
from timers import TimerQueue

logger = logging.getLogger(__name__)

DEFAULT_TICK_HZ = 60.0
DEFAULT_MAX_CATCH_UP = 3
DEFAULT_LINGER_MS = 5000.0


class SessionNotFoundError(KeyError):
    """Raised for any operation on an id the scheduler does not hold."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self):
        return f"session {self.session_id!r} not found"


@dataclass(frozen=True)
class PaddleIntent:
    """Human input for one tick: up = move left, down = move right."""
    up: bool = False
    down: bool = False

    def command(self, paddle_speed: float) -> float:
        return (int(self.down) - int(self.up)) * paddle_speed

    @classmethod
    def coerce(cls, raw: Any) -> "PaddleIntent":
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, dict):
            return cls(up=bool(raw.get("up", False)), down=bool(raw.get("down", False)))
        if isinstance(raw, (tuple, list)) and len(raw) == 2:
            return cls(up=bool(raw[0]), down=bool(raw[1]))
        if raw is not None:
            logger.warning("ignoring malformed paddle intent %r", raw)
        return cls()


@dataclass
class NPCSlot:
    strategy: ControllerStrategy
    config: NPCConfig
    memory: Any
    rng: np.random.Generator
    last_decision: Optional[Decision] = None


@dataclass
class Session:
    id: str
    config: GameConfig
    state: GameState
    engine: PhysicsEngine
    seed: Any
    slots: Dict[int, NPCSlot] = field(default_factory=dict)
    intents: Dict[int, PaddleIntent] = field(default_factory=dict)
    running: bool = True
    tick_count: int = 0
    finished_at: Optional[float] = None
    npc_seeds: Dict[int, np.random.SeedSequence] = field(default_factory=dict)

    @property
    def now_ms(self) -> float:
        return self.tick_count * self.config.tick_ms

    @property
    def human_players(self) -> List[int]:
        return [p for p in (1, 2) if p not in self.slots]


def _make_slot(config: NPCConfig, rng: np.random.Generator) -> NPCSlot:
    strategy = create_strategy(config.mode)
    return NPCSlot(strategy=strategy, config=config, memory=strategy.new_memory(config), rng=rng)


class SessionScheduler:
    """Owns every live session. All public methods take a session id."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self.timers = TimerQueue()

    # ──────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────────

    def create(self, config: Any = None, seed: Optional[int] = None) -> str:
        """Start a session from a GameConfig or a raw payload. Returns its id."""
        if not isinstance(config, GameConfig):
            config = GameConfig.from_dict(config)

        seq = np.random.SeedSequence(seed)
        physics_seq, npc1_seq, npc2_seq = seq.spawn(3)
        engine = PhysicsEngine(
            rng=np.random.default_rng(physics_seq),
            paddle_speed=config.paddle_speed,
            winning_score=config.winning_score,
            max_speed_multiplier=config.max_speed_multiplier,
        )
        state = engine.new_state(
            field_width=config.field_width,
            field_height=config.field_height,
            paddle_width=config.paddle_width,
            paddle_height=config.paddle_height,
            ball_radius=config.ball_radius,
            ball_speed=config.ball_speed,
        )
        npc_seqs = {1: npc1_seq, 2: npc2_seq}
        slots = {}
        for npc in config.npcs:
            if npc.enabled:
                slots[npc.player] = _make_slot(npc, np.random.default_rng(npc_seqs[npc.player]))

        session = Session(id=uuid.uuid4().hex, config=config, state=state, engine=engine,
                          seed=seq.entropy, slots=slots, npc_seeds=npc_seqs)
        with self._lock:
            self._sessions[session.id] = session
        logger.info("session %s created: npcs=%s seed=%s", session.id,
                    {p: s.config.mode for p, s in slots.items()}, seq.entropy)
        return session.id

    def _get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def stop(self, session_id: str) -> dict:
        """Stop and release a session. Returns its final snapshot."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._release(session)
        logger.info("session %s stopped at tick %d, score %s",
                    session.id, session.tick_count, session.state.score)
        return self._snapshot(session, include_debug=False)

    def stop_all(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._release(session)
        if sessions:
            logger.info("stopped %d session(s)", len(sessions))
        return len(sessions)

    def _release(self, session: Session) -> None:
        session.running = False
        self.timers.cancel_all(session.id)
        for slot in session.slots.values():
            slot.strategy.cancel(slot.memory)

    def reap(self, linger_ms: float = DEFAULT_LINGER_MS, now: Optional[float] = None) -> int:
        """Drop finished sessions that have lingered for `linger_ms`."""
        now = time.monotonic() if now is None else now
        with self._lock:
            expired = [s for s in self._sessions.values()
                       if s.finished_at is not None and (now - s.finished_at) * 1000 >= linger_ms]
            for session in expired:
                del self._sessions[session.id]
        for session in expired:
            logger.debug("session %s reaped", session.id)
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id):
        with self._lock:
            return session_id in self._sessions

    # ──────────────────────────────────────────────────────────────────────────
    # Ticking
    # ──────────────────────────────────────────────────────────────────────────

    def tick(self, session_id: str, inputs: Optional[Mapping[int, Any]] = None) -> list:
        """Advance one session by exactly one step. Returns the step's events."""
        session = self._get(session_id)
        if not session.running:
            return []
        return self._tick_session(session, inputs)

    def tick_all(self) -> int:
        """One step for every running session. Returns how many were ticked."""
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.running]
        for session in sessions:
            self._tick_session(session)
        return len(sessions)

    def _tick_session(self, session: Session, inputs: Optional[Mapping[int, Any]] = None) -> list:
        config = session.config
        state = session.state
        now = session.now_ms

        self.timers.run_due(session.id, now)

        commands: Dict[int, float] = {}
        effects = {}
        for player, slot in session.slots.items():
            ctx = TickContext(now_ms=now, tick_ms=config.tick_ms, rng=slot.rng,
                              paddle_speed=config.paddle_speed,
                              timers=self.timers, timer_key=session.id)
            decision = slot.strategy.decide(state, player, slot.config, slot.memory, ctx)
            slot.last_decision = decision
            commands[player] = decision.command
            if decision.effect is not None:
                effects[player] = decision.effect

        inputs = inputs or {}
        for player in session.human_players:
            raw = inputs.get(player, inputs.get(str(player)))
            intent = PaddleIntent.coerce(raw) if raw is not None else session.intents.get(player, PaddleIntent())
            commands[player] = intent.command(config.paddle_speed)

        events = session.engine.step(state, commands, effects)
        session.tick_count += 1

        for event in events:
            if event["type"] == "paddle_hit" and event["player"] in session.slots:
                slot = session.slots[event["player"]]
                slot.strategy.on_contact(slot.memory)
            elif event["type"] == "score":
                logger.debug("session %s: player %s scored, %s",
                             session.id, event["scorer"], event["score"])

        if state.finished:
            session.finished_at = time.monotonic()
            self._release(session)
            logger.info("session %s finished: player %s wins %s after %d ticks",
                        session.id, state.winner, state.score, session.tick_count)
        return events

    async def run(self, tick_hz: float = DEFAULT_TICK_HZ,
                  max_catch_up: int = DEFAULT_MAX_CATCH_UP,
                  linger_ms: float = DEFAULT_LINGER_MS) -> None:
        """Fixed-rate loop: tick every running session, catch up at most `max_catch_up` steps."""
        tick_s = 1.0 / tick_hz
        next_tick_time = time.perf_counter()
        logger.info("scheduler loop started at %.1f Hz", tick_hz)
        while True:
            now = time.perf_counter()
            if now < next_tick_time:
                await asyncio.sleep(next_tick_time - now)
                now = time.perf_counter()
            ticks_run = 0
            while now >= next_tick_time and ticks_run < max_catch_up:
                self.tick_all()
                next_tick_time += tick_s
                ticks_run += 1
                now = time.perf_counter()
            if now >= next_tick_time:
                next_tick_time = now + tick_s
            self.reap(linger_ms)

    # ──────────────────────────────────────────────────────────────────────────
    # Inputs and runtime changes
    # ──────────────────────────────────────────────────────────────────────────

    def set_input(self, session_id: str, player: int, intent: Any) -> PaddleIntent:
        """Hold a human intent for `player` until it is replaced."""
        session = self._get(session_id)
        if player not in (1, 2):
            raise ValueError(f"player must be 1 or 2, got {player!r}")
        if player in session.slots:
            raise ValueError(f"player {player} is NPC-controlled in session {session_id}")
        intent = PaddleIntent.coerce(intent)
        session.intents[player] = intent
        return intent

    def apply_speed_boost(self, session_id: str) -> float:
        """Raise the ball's multiplier by one hit step, capped. Returns the new value."""
        session = self._get(session_id)
        ball = session.state.ball
        ball.speed_multiplier = min(ball.speed_multiplier + SPEED_STEP,
                                    session.engine.max_speed_multiplier)
        logger.info("session %s speed boost: multiplier %.2f", session.id, ball.speed_multiplier)
        return ball.speed_multiplier

    def update_npc_config(self, session_id: str, player: int, payload: Any) -> Optional[NPCConfig]:
        """Merge `payload` over `player`'s NPC config.

        A new mode replaces the strategy and its memory. `enabled: false`
        hands the side back to human input. Returns the resulting config,
        or None when the side is no longer an NPC.
        """
        session = self._get(session_id)
        if player not in (1, 2):
            raise ValueError(f"player must be 1 or 2, got {player!r}")

        slot = session.slots.get(player)
        base = slot.config if slot is not None else None
        config = replace(NPCConfig.from_dict(payload, default_player=player, base=base), player=player)

        if not config.enabled:
            if slot is not None:
                slot.strategy.cancel(slot.memory)
                del session.slots[player]
                logger.info("session %s: player %s handed to human input", session.id, player)
        elif slot is None or slot.config.mode != config.mode:
            if slot is not None:
                slot.strategy.cancel(slot.memory)
                rng = slot.rng
            else:
                rng = np.random.default_rng(session.npc_seeds[player].spawn(1)[0])
            session.slots[player] = _make_slot(config, rng)
        else:
            slot.config = config

        session.config = replace(session.config,
                                 npcs=tuple(s.config for _, s in sorted(session.slots.items())))
        if not config.enabled:
            return None
        logger.info("session %s: player %s now %s/%s", session.id, player, config.mode, config.difficulty)
        return config

    # ──────────────────────────────────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────────────────────────────────

    def query(self, session_id: str, include_debug: bool = False) -> dict:
        """Read-only snapshot; mutating it never touches the session."""
        return self._snapshot(self._get(session_id), include_debug)

    def list_sessions(self, include_debug: bool = False) -> List[dict]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [self._snapshot(s, include_debug) for s in sessions]

    def status(self) -> dict:
        sessions = self.list_sessions()
        return {
            "active": sum(1 for s in sessions if s["running"]),
            "total": len(sessions),
            "sessions": sessions,
        }

    @staticmethod
    def _snapshot(session: Session, include_debug: bool) -> dict:
        state = session.state
        ball = state.ball

        def paddle(p):
            pad = state.paddle(p)
            return {"x": pad.x, "y": pad.y, "width": pad.width, "height": pad.height,
                    "controller": session.slots[p].config.mode if p in session.slots else "human"}

        snap = {
            "id": session.id,
            "running": session.running,
            "tick": session.tick_count,
            "time_ms": session.now_ms,
            "seed": session.seed,
            "field": {"width": state.field_width, "height": state.field_height},
            "ball": {"x": ball.x, "y": ball.y, "dx": ball.dx, "dy": ball.dy,
                     "radius": ball.radius, "speed_multiplier": ball.speed_multiplier},
            "paddle1": paddle(1),
            "paddle2": paddle(2),
            "score": list(state.score),
            "rally": state.rally,
            "paddle_hits": state.paddle_hits,
            "winner": state.winner,
            "npcs": [{"player": p, "mode": s.config.mode, "difficulty": s.config.difficulty}
                     for p, s in sorted(session.slots.items())],
        }
        if include_debug:
            snap["debug"] = {str(p): s.strategy.debug_info(s.memory, s.config)
                             for p, s in sorted(session.slots.items())}
        return snap
