"""
Greenhouse Platform — "10-Minute Storm" scenario phases

Each phase owns a half-open minute window [start_minute, end_minute) measured
from the moment the tenant started its simulation:

    minute  0    2    4  5  6    8    10 ...
            │CALM│HEAT│CR│AW│RECO│NORM──────────▶

Anything past the last window stays in NORMALIZATION.
"""

from enum import Enum


class Phase(Enum):
    CALM = (0, 2, "Normal operation. Temperature fluctuates slightly around 22°C.")
    HEATING = (2, 4, "Problem detected. Temperature rises rapidly.")
    CRITICAL = (4, 5, "Critical state. Temperature exceeds thresholds. Alerts should trigger.")
    ACTION_WAIT = (5, 6, "Waiting for actuator intervention. High temperature persists.")
    RECOVERY = (6, 8, "Recovery. If ventilated, temperature drops. Otherwise, stays high.")
    NORMALIZATION = (8, 10, "Return to normal. Temperature stabilizes.")

    def __init__(self, start_minute: int, end_minute: int, description: str) -> None:
        self.start_minute = start_minute
        self.end_minute = end_minute
        self.description = description

    def contains(self, minute: int) -> bool:
        return self.start_minute <= minute < self.end_minute


TERMINAL_PHASE = Phase.NORMALIZATION
SCENARIO_MINUTES = max(p.end_minute for p in Phase)


def phase_for_minute(minute: int) -> Phase:
    """Map minutes-since-start to the scenario phase."""
    if minute < 0:
        raise ValueError(f"minute must be non-negative, got {minute}")
    for phase in Phase:
        if phase.contains(minute):
            return phase
    return TERMINAL_PHASE
