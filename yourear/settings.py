"""Static parameters of a hearing test and the built-in presets."""

import math
from dataclasses import dataclass, replace
from numbers import Integral, Real
from typing import Tuple

from yourear.errors import ConfigError

# Standard audiometric frequencies (octave intervals)
TEST_FREQUENCIES = (250, 500, 1000, 2000, 4000, 8000)

# Including inter-octave (half-octave) frequencies
EXTENDED_FREQUENCIES = (125, 250, 500, 750, 1000, 1500, 2000, 3000, 4000,
                        6000, 8000)

QUICK_TEST_FREQUENCIES = (1000, 4000, 8000)


@dataclass(frozen=True)
class TestConfig:
    """Parameters of one sweep. Levels are in dB HL, durations in ms.

    The instance is validated on construction so a bad configuration is
    rejected before the first tone is played.
    """

    __test__ = False

    frequencies: Tuple[int, ...] = TEST_FREQUENCIES
    start_level: float = 40
    min_level: float = -10
    max_level: float = 90
    step_up: float = 5
    step_down: float = 10
    tone_duration_ms: float = 1500
    response_timeout_ms: float = 3000

    def __post_init__(self):
        # Accept any sequence but store a tuple so the config stays hashable.
        object.__setattr__(self, 'frequencies', tuple(self.frequencies))
        self.validate()

    def validate(self):
        if not self.frequencies:
            raise ConfigError("frequencies must not be empty")
        for freq in self.frequencies:
            if isinstance(freq, bool) or not isinstance(freq, Integral) or freq <= 0:
                raise ConfigError(
                    f"frequencies must be positive integers in Hz, got {freq!r}")
        if len(set(self.frequencies)) != len(self.frequencies):
            raise ConfigError(f"duplicate frequencies in {list(self.frequencies)}")

        for name in ('start_level', 'min_level', 'max_level', 'step_up',
                     'step_down', 'tone_duration_ms', 'response_timeout_ms'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, Real):
                raise ConfigError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise ConfigError(f"{name} must be finite, got {value!r}")

        if self.min_level > self.start_level:
            raise ConfigError(
                f"min_level ({self.min_level}) is above start_level "
                f"({self.start_level})")
        if self.start_level > self.max_level:
            raise ConfigError(
                f"start_level ({self.start_level}) is above max_level "
                f"({self.max_level})")
        for name in ('step_up', 'step_down', 'tone_duration_ms',
                     'response_timeout_ms'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} has to be positive, got {getattr(self, name)}")

    def with_overrides(self, **changes) -> 'TestConfig':
        """Return a copy with some fields replaced (validated again)."""
        return replace(self, **changes)


DEFAULT_TEST_CONFIG = TestConfig()

# Three key frequencies and faster timing (about two minutes).
QUICK_TEST_CONFIG = DEFAULT_TEST_CONFIG.with_overrides(
    frequencies=QUICK_TEST_FREQUENCIES,
    tone_duration_ms=1000,
    response_timeout_ms=2500,
)

# All frequencies including inter-octave ones (about fifteen minutes).
DETAILED_TEST_CONFIG = DEFAULT_TEST_CONFIG.with_overrides(
    frequencies=EXTENDED_FREQUENCIES,
)

PRESETS = {
    'default': DEFAULT_TEST_CONFIG,
    'quick': QUICK_TEST_CONFIG,
    'detailed': DETAILED_TEST_CONFIG,
}


def preset(name: str) -> TestConfig:
    try:
        return PRESETS[name]
    except KeyError:
        raise ConfigError(
            f"unknown test mode '{name}', choose one of {sorted(PRESETS)}") from None
