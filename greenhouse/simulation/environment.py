"""
Greenhouse Platform — Simulated greenhouse environment

Per-phase temperature / humidity formulas for the "10-Minute Storm".
`phase_seconds` counts from the start of the current phase.

  CALM           t = 22 + sin(0.1·s) + n        h = 60 + n
  HEATING        t = 22 + 0.15·phase_s + n      h = 60 − 0.1·phase_s
  CRITICAL       t = 40 + n                     h = 30 + n
  ACTION_WAIT    t = 40 + n                     h = 30 + n
  RECOVERY       t = 40 + n                     h = 35 + n
  NORMALIZATION  t = 22 + n                     h = 55 + n

n = (U[0,1) − 0.5) · 0.5, drawn once per call, so |n| ≤ 0.25.
"""

import math
import random
from dataclasses import dataclass
from typing import Optional

from ..ingestion.config import settings
from .phases import Phase, phase_for_minute

NOISE_AMPLITUDE = 0.5


@dataclass(frozen=True, slots=True)
class SimulatedReading:
    temperature: float
    humidity: float
    phase: Phase
    is_alert_condition: bool


class EnvironmentModel:
    """
    Pure scenario model apart from the noise draw.

    Pass a seeded `random.Random` to make the output reproducible.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        critical_temperature: float = settings.CRITICAL_TEMPERATURE,
    ) -> None:
        self._rng = rng or random.Random()
        self.critical_temperature = critical_temperature

    def noise(self) -> float:
        return (self._rng.random() - 0.5) * NOISE_AMPLITUDE

    def compute_reading(self, phase: Phase, elapsed_seconds: int) -> tuple[float, float]:
        """Return (temperature °C, relative humidity %) for this instant."""
        n = self.noise()
        if phase is Phase.CALM:
            return 22.0 + math.sin(elapsed_seconds * 0.1) + n, 60.0 + n
        if phase is Phase.HEATING:
            phase_seconds = elapsed_seconds - phase.start_minute * 60
            return 22.0 + phase_seconds * 0.15 + n, 60.0 - phase_seconds * 0.1
        if phase in (Phase.CRITICAL, Phase.ACTION_WAIT):
            return 40.0 + n, 30.0 + n
        if phase is Phase.RECOVERY:
            return 40.0 + n, 35.0 + n
        return 22.0 + n, 55.0 + n

    def simulate(self, elapsed_seconds: int) -> SimulatedReading:
        phase = phase_for_minute(elapsed_seconds // 60)
        temperature, humidity = self.compute_reading(phase, elapsed_seconds)
        return SimulatedReading(
            temperature=temperature,
            humidity=humidity,
            phase=phase,
            is_alert_condition=temperature > self.critical_temperature,
        )
