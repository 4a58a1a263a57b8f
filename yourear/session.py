"""Sweep controller: runs the threshold search over every (frequency, ear).

The session presents a tone through the injected tone player, waits for the
listener's answer or the response timeout, feeds the answer to the
``ThresholdSeeker`` of the current cell and either presents again or records
the threshold and moves on to the next cell. Everything runs on one asyncio
event loop; the only suspension points are the tone playback and the
response window.

Example Usage:
    >>> session = TestSession(player, QUICK_TEST_CONFIG)
    >>> unsubscribe = session.on(lambda event, payload: print(event))
    >>> await session.start()
    >>> await session.respond_heard()
"""

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from yourear.models import (Cell, Phase, SessionState, TestResult, Threshold,
                            iter_cells)
from yourear.seeker import ThresholdSeeker
from yourear.settings import DEFAULT_TEST_CONFIG, TestConfig

STATE_CHANGE = 'stateChange'
TONE_START = 'toneStart'
TONE_END = 'toneEnd'
THRESHOLD_FOUND = 'thresholdFound'
FREQUENCY_COMPLETE = 'frequencyComplete'
EAR_COMPLETE = 'earComplete'
COMPLETED = 'completed'
ERROR = 'error'

EventHandler = Callable[[str, object], None]


class TestSession:

    __test__ = False

    def __init__(self, player, config: TestConfig = DEFAULT_TEST_CONFIG):
        """
        Args:
            player: Tone player with an awaitable
                ``present(frequency, level, duration_ms, channel)`` and a
                ``stop_immediately()`` method.
            config: Validated ``TestConfig``.
        """
        self._player = player
        self._config = config
        self._cells = tuple(iter_cells(config.frequencies))

        self._handlers: Dict[int, EventHandler] = {}
        self._handler_ids = itertools.count()
        self._tasks = set()

        self._phase = Phase.IDLE
        # Bumped by start() and stop(); work scheduled for an older run is
        # dropped.
        self._run_id = 0
        # Bumped for every response window; a timer only answers its own.
        self._wait_token = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._created_at: Optional[datetime] = None
        self._reset_sweep()

    # -- public API ---------------------------------------------------------

    @property
    def config(self) -> TestConfig:
        return self._config

    @property
    def cells(self):
        return self._cells

    @property
    def current_cell(self) -> Cell:
        return self._cells[self._cell_index]

    @property
    def thresholds(self):
        """Recorded thresholds in the order they were found."""
        return tuple(self._responses.values())

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to session events.

        ``handler(event, payload)`` is called synchronously for every event.
        Returns a function that removes this handler again.
        """
        token = next(self._handler_ids)
        self._handlers[token] = handler

        def unsubscribe():
            self._handlers.pop(token, None)

        return unsubscribe

    def get_state(self) -> SessionState:
        cell = self.current_cell
        return SessionState(
            current_frequency=cell.frequency,
            current_ear=cell.ear,
            current_level=self._level,
            is_presenting=self._is_presenting,
            phase=self._phase,
            awaiting_response=self._awaiting_response,
        )

    def get_progress(self) -> float:
        """Percentage of cells with a recorded threshold (None included)."""
        return len(self._responses) / len(self._cells) * 100

    def get_result(self) -> TestResult:
        return TestResult.from_thresholds(self._config.frequencies,
                                          list(self._responses.values()),
                                          created_at=self._created_at)

    async def start(self):
        """Start a new sweep with the right ear and the first frequency.

        Does nothing while a sweep is already running. If the tone player
        fails, the session is put back to idle and the error is raised.
        """
        if self._phase is Phase.RUNNING:
            logging.debug("start() ignored, session already running")
            return

        self._cancel_response_timer()
        self._run_id += 1
        self._reset_sweep()
        self._phase = Phase.RUNNING
        self._created_at = datetime.now(timezone.utc)
        logging.info("Begin hearing test: %s cells, freqs %s",
                     len(self._cells), list(self._config.frequencies))
        self._emit_state()
        await self._present(self._run_id)

    def stop(self):
        """Abort the sweep: cancel the response window and silence the tone."""
        self._run_id += 1
        self._cancel_response_timer()
        try:
            self._player.stop_immediately()
        except Exception as e:
            logging.warning(f"Error stopping audio immediately: {e}")

        changed = self._is_presenting or self._awaiting_response
        self._is_presenting = False
        self._awaiting_response = False
        if self._phase is Phase.RUNNING:
            self._phase = Phase.IDLE
            changed = True
        if changed:
            logging.info("Hearing test stopped at %s Hz, %s ear",
                         self.current_cell.frequency, self.current_cell.ear.value)
            self._emit_state()

    async def respond_heard(self):
        """The listener heard the last tone."""
        if not self._accept_response():
            logging.debug("respond_heard blocked: phase=%s awaiting=%s",
                          self._phase.value, self._awaiting_response)
            return
        await self._apply_response(True, self._run_id)

    async def respond_not_heard(self):
        """The listener did not hear the last tone."""
        if not self._accept_response():
            logging.debug("respond_not_heard blocked: phase=%s awaiting=%s",
                          self._phase.value, self._awaiting_response)
            return
        await self._apply_response(False, self._run_id)

    # -- state machine ------------------------------------------------------

    def _reset_sweep(self):
        self._cell_index = 0
        self._responses: Dict[Cell, Threshold] = {}
        self._is_presenting = False
        self._awaiting_response = False
        self._start_cell()

    def _start_cell(self):
        self._seeker = ThresholdSeeker.from_config(self._config)
        self._level = self._seeker.level

    def _is_current(self, run_id):
        return run_id == self._run_id and self._phase is Phase.RUNNING

    async def _present(self, run_id):
        cell = self.current_cell
        self._is_presenting = True
        self._emit_state()
        if not self._is_current(run_id):
            return
        self._emit(TONE_START, {'frequency': cell.frequency,
                                'level': self._level,
                                'ear': cell.ear})
        if not self._is_current(run_id):
            return

        logging.info("Playing %s Hz at %s dB to %s ear",
                     cell.frequency, self._level, cell.ear.value)
        try:
            await self._player.present(cell.frequency, self._level,
                                       self._config.tone_duration_ms,
                                       cell.ear.value)
        except Exception as exc:
            if not self._is_current(run_id):
                # stop() interrupted the tone; the failure is expected.
                logging.debug("Tone interrupted by stop()", exc_info=True)
                return
            logging.error("Tone presentation failed: %s", exc)
            self._abort()
            self._emit(ERROR, exc)
            raise

        if not self._is_current(run_id):
            return
        self._is_presenting = False
        self._emit(TONE_END)
        self._emit_state()
        if self._is_current(run_id):
            self._arm_response_timer(run_id)

    def _arm_response_timer(self, run_id):
        self._wait_token += 1
        self._awaiting_response = True
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._config.response_timeout_ms / 1000,
                                      self._on_response_timeout,
                                      run_id, self._wait_token)

    def _cancel_response_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_response_timeout(self, run_id, token):
        self._timer = None
        if not self._accept_response(token):
            return
        logging.info("Response timeout - treating as not heard")
        task = asyncio.ensure_future(
            self._apply_response(False, run_id, timed_out=True))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logging.error("Hearing test aborted after response timeout: %s",
                          task.exception())

    def _accept_response(self, token=None) -> bool:
        if self._phase is not Phase.RUNNING or not self._awaiting_response:
            return False
        if token is not None and token != self._wait_token:
            return False
        self._cancel_response_timer()
        self._awaiting_response = False
        return True

    async def _apply_response(self, heard, run_id, timed_out=False):
        if not self._is_current(run_id):
            return
        logging.info("%s at %s dB (%s)", 'Heard' if heard else 'Not heard',
                     self._level, self._seeker.direction.value)
        decision = self._seeker.respond(heard)
        if decision.finished:
            await self._record_threshold(decision.threshold, run_id,
                                         timed_out=timed_out and not heard)
            return
        self._level = decision.level
        await self._present(run_id)

    async def _record_threshold(self, level, run_id, timed_out=False):
        cell = self.current_cell
        threshold = Threshold(cell.frequency, cell.ear, level,
                              timed_out=timed_out and level is None)
        self._responses[cell] = threshold
        logging.info("Recorded threshold: %s-%s = %s dB",
                     cell.ear.value, cell.frequency, level)
        logging.info("Progress: %s%%", round(self.get_progress(), 1))
        next_index = self._cell_index + 1
        if next_index == len(self._cells):
            logging.info("Hearing test complete")
            self._phase = Phase.COMPLETE
            self._is_presenting = False
            self._emit(THRESHOLD_FOUND, threshold)
            self._emit_state()
            self._emit(COMPLETED, self.get_result())
            return

        self._emit(THRESHOLD_FOUND, threshold)
        self._emit_state()
        if not self._is_current(run_id):
            return

        self._cell_index = next_index
        self._start_cell()
        if self.current_cell.ear is cell.ear:
            self._emit(FREQUENCY_COMPLETE, cell)
        else:
            self._emit(EAR_COMPLETE, cell.ear)
        self._emit_state()
        if self._is_current(run_id):
            await self._present(run_id)

    def _abort(self):
        self._run_id += 1
        self._cancel_response_timer()
        self._is_presenting = False
        self._awaiting_response = False
        self._phase = Phase.IDLE
        self._emit_state()

    # -- events -------------------------------------------------------------

    def _emit_state(self):
        self._emit(STATE_CHANGE, self.get_state())

    def _emit(self, event, payload=None):
        for handler in list(self._handlers.values()):
            try:
                handler(event, payload)
            except Exception:
                logging.exception("Event handler failed on '%s'", event)
