"""Interpretation helpers for finished audiograms.

Classifies hearing levels and computes the Pure Tone Average (PTA). These
run after a session has produced its result; the staircase itself never
looks at them.

Example Usage:
    >>> pure_tone_average({500: 20, 1000: 25, 2000: 30, 4000: 45})
    25.0
    >>> classify_hearing_loss(25.0)
    'slight'
"""

from typing import Dict, Optional

# Upper bound (inclusive) of each grade in dB HL.
CLASSIFICATION_THRESHOLDS = [
    (20, 'normal'),
    (25, 'slight'),
    (40, 'mild'),
    (55, 'moderate'),
    (70, 'moderately-severe'),
    (90, 'severe'),
]

SPEECH_FREQUENCIES = [500, 1000, 2000]  # For PTA calculation


def classify_hearing_loss(threshold_db: float) -> str:
    """Classify a hearing level (a single threshold or a PTA).

    Args:
        threshold_db: Hearing level in dB HL.

    Returns:
        One of 'normal', 'slight', 'mild', 'moderate', 'moderately-severe',
        'severe' or 'profound'.
    """
    for upper, grade in CLASSIFICATION_THRESHOLDS:
        if threshold_db <= upper:
            return grade
    return 'profound'


def pure_tone_average(ear_data: Dict[int, Optional[float]]) -> Optional[float]:
    """Calculate the Pure Tone Average of one ear.

    PTA is the average of thresholds at 500, 1000 and 2000 Hz. If fewer than
    two of those were measured, all available thresholds are averaged.
    Undetermined thresholds (None) are ignored.

    Args:
        ear_data: Dict of {frequency: threshold}.

    Returns:
        PTA value or None if there is no data.
    """
    measured = {int(f): float(v) for f, v in ear_data.items() if v is not None}

    speech_thresholds = [measured[f] for f in SPEECH_FREQUENCIES if f in measured]
    if len(speech_thresholds) >= 2:
        return sum(speech_thresholds) / len(speech_thresholds)

    # Fallback: use all available frequencies
    if measured:
        return sum(measured.values()) / len(measured)

    return None


def format_frequency(hz: int, style: str = 'short') -> str:
    """Format a frequency for display.

    'short' gives "4k", 'full' gives "4000" and 'spoken' gives
    "4 kilohertz".
    """
    if style == 'spoken':
        return f'{_trim(hz / 1000)} kilohertz' if hz >= 1000 else f'{hz} hertz'
    if style == 'full':
        return str(hz)
    if style == 'short':
        return f'{_trim(hz / 1000)}k' if hz >= 1000 else str(hz)
    raise ValueError(f"style must be 'short', 'full' or 'spoken', got '{style}'")


def _trim(value: float) -> str:
    # 4.0 -> "4", 1.5 -> "1.5"
    return f'{value:g}'


def summarize(result) -> Dict[str, dict]:
    """Per-ear PTA and grade of a ``TestResult``."""
    summary = {}
    for ear in ('right', 'left'):
        pta = result.pure_tone_average(ear)
        summary[ear] = {
            'pta': round(pta, 1) if pta is not None else None,
            'classification': classify_hearing_loss(pta) if pta is not None else 'unknown',
        }
    return summary
