"""Two Hard heuristics; camelCase keys as sent by older clients."""

SCRIPT = {
    "winningScore": 5,
    "npcs": [
        {"mode": "heuristic", "difficulty": "Hard", "reactionDelayMs": 120},
        {"mode": "heuristic", "difficulty": "Hard", "trackingNoise": 6},
    ],
}
