"""Simplified Hughson-Westlake staircase for a single (frequency, ear) cell.

1. Start at a clearly audible level (40 dB HL by default).
2. If heard: decrease by ``step_down`` (10 dB).
3. If not heard: increase by ``step_up`` (5 dB); from now on the search is
   ascending and stays ascending.
4. While ascending: heard twice at the same level -> threshold found.

Two safety exits end the search early. Hearing the tone below ``min_level``
reports ``min_level`` itself as threshold, and missing it above
``max_level`` reports no threshold at all (None).

**WARNING**: This is a screening procedure for self-assessment. It does not
replace a clinical audiogram. Please, consult an audiologist!
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from yourear.errors import SeekerFinishedError


class Direction(str, Enum):
    DESCENDING = 'descending'
    ASCENDING = 'ascending'


class Action(str, Enum):
    PRESENT = 'present'
    FINALIZE = 'finalize'


class Reason(str, Enum):
    CONVERGED = 'converged'
    FLOOR = 'floor'
    CEILING = 'ceiling'


@dataclass(frozen=True)
class Decision:
    """What to do after a response.

    For ``Action.PRESENT`` ``level`` is the next presentation level. For
    ``Action.FINALIZE`` ``threshold`` holds the result (None at the ceiling)
    and ``reason`` tells which rule ended the search.
    """

    action: Action
    level: float
    threshold: Optional[float] = None
    reason: Optional[Reason] = None

    @property
    def finished(self) -> bool:
        return self.action is Action.FINALIZE


class ThresholdSeeker:

    def __init__(self, start_level, min_level, max_level, step_up, step_down):
        self.start_level = start_level
        self.min_level = min_level
        self.max_level = max_level
        self.step_up = step_up
        self.step_down = step_down

        self.level = start_level
        self.direction = Direction.DESCENDING
        self.last_level_heard = None
        self.hit_count_at_level = 0
        self.decision: Optional[Decision] = None
        self.history: List[Tuple[float, bool]] = []

    @classmethod
    def from_config(cls, config) -> 'ThresholdSeeker':
        return cls(config.start_level, config.min_level, config.max_level,
                   config.step_up, config.step_down)

    @property
    def finished(self) -> bool:
        return self.decision is not None

    @property
    def threshold(self) -> Optional[float]:
        if self.decision is None:
            return None
        return self.decision.threshold

    def respond(self, heard: bool) -> Decision:
        """Feed the response to the tone just presented at ``self.level``."""
        if self.finished:
            raise SeekerFinishedError(
                f"threshold already found ({self.decision.reason.value}); "
                "start a new seeker for the next cell")
        self.history.append((self.level, bool(heard)))
        if heard:
            return self._heard()
        return self._not_heard()

    def _heard(self) -> Decision:
        if self.direction is Direction.ASCENDING:
            if self.last_level_heard == self.level:
                self.hit_count_at_level += 1
            else:
                self.last_level_heard = self.level
                self.hit_count_at_level = 1
            logging.debug("Ascending: heard %s times at %s dB",
                          self.hit_count_at_level, self.level)

            if self.hit_count_at_level >= 2:
                return self._finalize(self.level, Reason.CONVERGED)
            # One more confirmation at the same level
            return Decision(Action.PRESENT, self.level)

        self.level -= self.step_down
        logging.debug("-%s", self.step_down)
        if self.level < self.min_level:
            return self._finalize(self.min_level, Reason.FLOOR)
        return Decision(Action.PRESENT, self.level)

    def _not_heard(self) -> Decision:
        self.direction = Direction.ASCENDING
        self.last_level_heard = None
        self.hit_count_at_level = 0

        self.level += self.step_up
        logging.debug("+%s", self.step_up)
        if self.level > self.max_level:
            return self._finalize(None, Reason.CEILING)
        return Decision(Action.PRESENT, self.level)

    def _finalize(self, threshold, reason) -> Decision:
        logging.info("Threshold %s (%s) after %s presentations",
                     threshold, reason.value, len(self.history))
        self.decision = Decision(Action.FINALIZE, self.level, threshold, reason)
        return self.decision
