"""Nightmare PID (top) against an Easy heuristic (bottom)."""

SCRIPT = {
    "winning_score": 11,
    "npc":  {"player": 1, "mode": "pid",       "difficulty": "Nightmare"},
    "npc2": {"player": 2, "mode": "heuristic", "difficulty": "Easy"},
}
