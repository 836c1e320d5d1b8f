"""PID against the technique planner, both Normal, on a wider field."""

SCRIPT = {
    "field_width":  1000,
    "field_height": 400,
    "winning_score": 7,
    "npc":  {"player": 1, "mode": "pid",        "difficulty": "Normal"},
    "npc2": {"player": 2, "mode": "technician", "difficulty": "Normal",
             "technician": {"prediction_accuracy": 0.85}},
}
