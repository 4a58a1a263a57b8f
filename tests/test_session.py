"""Tests for the sweep controller (presentation, response window, events).

A fake tone player records every presentation instead of playing audio, so
the whole state machine runs without hardware.
"""

import asyncio
import dataclasses
import unittest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from yourear.errors import ToneError
from yourear.models import Cell, Ear, Phase, TestResult, Threshold
from yourear.session import (COMPLETED, EAR_COMPLETE, ERROR,
                             FREQUENCY_COMPLETE, STATE_CHANGE,
                             THRESHOLD_FOUND, TONE_END, TONE_START,
                             TestSession)
from yourear.settings import TestConfig

# Long enough that the response timer never fires during a test that
# answers explicitly.
NO_TIMEOUT_MS = 60000


class FakePlayer:
    def __init__(self, fail_with=None):
        self.calls = []
        self.stop_calls = 0
        self.fail_with = fail_with
        self.gate = None
        self._waiters = []

    async def present(self, frequency, level, duration_ms, channel):
        self.calls.append((frequency, level, channel))
        for count, event in self._waiters:
            if len(self.calls) >= count:
                event.set()
        if self.fail_with is not None:
            raise self.fail_with
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)

    def stop_immediately(self):
        self.stop_calls += 1

    async def wait_for_calls(self, count, timeout=2):
        event = asyncio.Event()
        self._waiters.append((count, event))
        if len(self.calls) >= count:
            event.set()
        await asyncio.wait_for(event.wait(), timeout)


def make_config(**overrides):
    values = dict(frequencies=[1000], start_level=40, min_level=-10,
                  max_level=90, step_up=5, step_down=10,
                  tone_duration_ms=10, response_timeout_ms=NO_TIMEOUT_MS)
    values.update(overrides)
    return TestConfig(**values)


class SessionTestCase(unittest.IsolatedAsyncioTestCase):

    def make_session(self, player=None, **overrides):
        self.player = player or FakePlayer()
        self.session = TestSession(self.player, make_config(**overrides))
        self.events = []
        self.session.on(lambda event, payload: self.events.append((event, payload)))
        return self.session

    def event_names(self):
        return [event for event, _ in self.events]

    async def asyncTearDown(self):
        if hasattr(self, 'session'):
            self.session.stop()


class TestInitialState(SessionTestCase):

    def test_idle_before_start(self):
        session = self.make_session(frequencies=[500, 1000], start_level=50)
        state = session.get_state()
        self.assertIs(state.phase, Phase.IDLE)
        self.assertIs(state.current_ear, Ear.RIGHT)
        self.assertEqual(state.current_frequency, 500)
        self.assertEqual(state.current_level, 50)
        self.assertFalse(state.is_presenting)
        self.assertEqual(session.get_progress(), 0)

    def test_sweep_order(self):
        session = self.make_session(frequencies=[1000, 4000])
        self.assertEqual(session.cells, (Cell(1000, Ear.RIGHT),
                                         Cell(4000, Ear.RIGHT),
                                         Cell(1000, Ear.LEFT),
                                         Cell(4000, Ear.LEFT)))

    def test_state_snapshot_is_read_only(self):
        session = self.make_session()
        state = session.get_state()
        with self.assertRaises(dataclasses.FrozenInstanceError):
            state.current_level = 0
        self.assertFalse(hasattr(state, 'responses'))


class TestStartAndPresentation(SessionTestCase):

    async def test_start_presents_first_tone(self):
        session = self.make_session(frequencies=[250, 500])
        await session.start()
        self.assertEqual(self.player.calls, [(250, 40, 'right')])
        state = session.get_state()
        self.assertIs(state.phase, Phase.RUNNING)
        self.assertFalse(state.is_presenting)
        self.assertTrue(state.awaiting_response)

    async def test_presentation_protocol_events(self):
        session = self.make_session()
        await session.start()
        names = self.event_names()
        self.assertEqual(names, [STATE_CHANGE, STATE_CHANGE, TONE_START,
                                 TONE_END, STATE_CHANGE])
        presenting = [payload.is_presenting for event, payload in self.events
                      if event == STATE_CHANGE]
        self.assertEqual(presenting, [False, True, False])
        tone = self.events[2][1]
        self.assertEqual(tone, {'frequency': 1000, 'level': 40, 'ear': Ear.RIGHT})

    async def test_start_is_not_reentrant(self):
        session = self.make_session()
        await asyncio.gather(session.start(), session.start())
        self.assertEqual(len(self.player.calls), 1)
        await session.start()
        self.assertEqual(len(self.player.calls), 1)

    async def test_player_failure_returns_to_idle(self):
        session = self.make_session(FakePlayer(fail_with=ToneError("no device")))
        with self.assertRaises(ToneError):
            await session.start()
        state = session.get_state()
        self.assertIs(state.phase, Phase.IDLE)
        self.assertFalse(state.is_presenting)
        self.assertFalse(state.awaiting_response)
        self.assertIn(ERROR, self.event_names())

        # The caller may retry the whole session once the device is back
        self.player.fail_with = None
        await session.start()
        self.assertIs(session.get_state().phase, Phase.RUNNING)


class TestResponses(SessionTestCase):

    async def test_concrete_scenario(self):
        """not heard, not heard, heard, heard -> 40, 45, 50, 50 -> 50 dB."""
        session = self.make_session()
        await session.start()
        await session.respond_not_heard()
        await session.respond_not_heard()
        await session.respond_heard()
        await session.respond_heard()

        self.assertEqual(self.player.calls, [(1000, 40, 'right'),
                                             (1000, 45, 'right'),
                                             (1000, 50, 'right'),
                                             (1000, 50, 'right'),
                                             (1000, 40, 'left')])
        self.assertEqual(session.thresholds, (Threshold(1000, Ear.RIGHT, 50),))
        state = session.get_state()
        self.assertIs(state.current_ear, Ear.LEFT)
        self.assertEqual(state.current_frequency, 1000)
        self.assertEqual(state.current_level, 40)
        self.assertIn(EAR_COMPLETE, self.event_names())

    async def test_respond_before_start_is_ignored(self):
        session = self.make_session()
        await session.respond_heard()
        await session.respond_not_heard()
        self.assertEqual(session.get_state().current_level, 40)
        self.assertEqual(self.player.calls, [])

    async def test_no_double_accept(self):
        session = self.make_session()
        await session.start()
        await asyncio.gather(session.respond_heard(), session.respond_heard())
        self.assertEqual(self.player.calls, [(1000, 40, 'right'),
                                             (1000, 30, 'right')])
        self.assertEqual(session.get_state().current_level, 30)

    async def test_response_while_presenting_is_ignored(self):
        player = FakePlayer()
        player.gate = asyncio.Event()
        session = self.make_session(player)
        start = asyncio.ensure_future(session.start())
        await player.wait_for_calls(1)
        self.assertTrue(session.get_state().is_presenting)
        await session.respond_heard()
        player.gate.set()
        await start
        self.assertEqual(session.get_state().current_level, 40)
        self.assertEqual(len(player.calls), 1)

    async def test_next_frequency_same_ear(self):
        session = self.make_session(frequencies=[1000, 2000], start_level=-10)
        await session.start()
        await session.respond_heard()   # floor at -10
        self.assertEqual(self.player.calls[-1], (2000, -10, 'right'))
        self.assertIn(FREQUENCY_COMPLETE, self.event_names())
        found = [payload for event, payload in self.events
                 if event == THRESHOLD_FOUND]
        self.assertEqual(found, [Threshold(1000, Ear.RIGHT, -10)])


class TestSweep(SessionTestCase):

    async def run_until_complete(self, heard=True):
        respond = (self.session.respond_heard if heard
                   else self.session.respond_not_heard)
        await self.session.start()
        while self.session.get_state().phase is Phase.RUNNING:
            await respond()

    async def test_full_sweep_order_and_result(self):
        session = self.make_session(frequencies=[1000, 4000])
        await self.run_until_complete(heard=True)

        order = []
        for freq, _, channel in self.player.calls:
            if not order or order[-1] != (freq, channel):
                order.append((freq, channel))
        self.assertEqual(order, [(1000, 'right'), (4000, 'right'),
                                 (1000, 'left'), (4000, 'left')])

        result = session.get_result()
        self.assertIsInstance(result, TestResult)
        self.assertEqual([r.frequency for r in result.thresholds], [1000, 4000])
        for record in result.thresholds:
            self.assertEqual(record.left_ear_threshold, -10)
            self.assertEqual(record.right_ear_threshold, -10)

    async def test_completed_emitted_once(self):
        session = self.make_session(frequencies=[1000, 4000])
        await self.run_until_complete()
        completed = [payload for event, payload in self.events
                     if event == COMPLETED]
        self.assertEqual(len(completed), 1)
        self.assertIsInstance(completed[0], TestResult)
        self.assertIs(session.get_state().phase, Phase.COMPLETE)
        self.assertFalse(session.get_state().is_presenting)
        # Nothing left to answer
        calls = len(self.player.calls)
        await session.respond_heard()
        self.assertEqual(len(self.player.calls), calls)

    async def test_progress_monotonic_and_full_only_when_complete(self):
        session = self.make_session(frequencies=[1000, 4000])
        seen = []
        session.on(lambda event, payload: seen.append(
            (session.get_progress(), session.get_state().phase)))
        await self.run_until_complete()

        progress = [p for p, _ in seen]
        self.assertEqual(progress, sorted(progress))
        for p, phase in seen:
            if p == 100:
                self.assertIs(phase, Phase.COMPLETE)
        self.assertEqual(session.get_progress(), 100)

    async def test_ceiling_counts_as_done(self):
        session = self.make_session(frequencies=[1000, 2000], max_level=50)
        await session.start()
        await session.respond_not_heard()   # 45
        await session.respond_not_heard()   # 50
        await session.respond_not_heard()   # 55 > 50 -> no threshold
        self.assertEqual(session.get_progress(), 25)
        self.assertEqual(session.thresholds, (Threshold(1000, Ear.RIGHT, None),))

    async def test_partial_result(self):
        session = self.make_session(frequencies=[1000, 4000], start_level=-10)
        await session.start()
        await session.respond_heard()
        result = session.get_result()
        self.assertEqual(result.thresholds[0].right_ear_threshold, -10)
        self.assertIsNone(result.thresholds[0].left_ear_threshold)
        self.assertIsNone(result.thresholds[1].right_ear_threshold)


class TestTimeout(SessionTestCase):

    async def test_timeout_equals_not_heard(self):
        timed = self.make_session(response_timeout_ms=30)
        timed_player = self.player
        await timed.start()
        await timed_player.wait_for_calls(2)
        while not timed.get_state().awaiting_response:
            await asyncio.sleep(0)
        timed_state = timed.get_state()
        timed.stop()

        explicit = self.make_session()
        await explicit.start()
        await explicit.respond_not_heard()

        self.assertEqual(timed_state, explicit.get_state())
        self.assertEqual(timed_player.calls, self.player.calls)

    async def test_timeouts_run_to_ceiling_with_provenance(self):
        session = self.make_session(response_timeout_ms=1, max_level=45)
        done = asyncio.get_running_loop().create_future()
        session.on(lambda event, payload: done.done() or
                   (event == COMPLETED and done.set_result(payload)))
        await session.start()
        result = await asyncio.wait_for(done, 2)

        self.assertIsNone(result.thresholds[0].right_ear_threshold)
        self.assertIsNone(result.thresholds[0].left_ear_threshold)
        self.assertTrue(all(t.timed_out for t in session.thresholds))
        self.assertEqual(session.get_progress(), 100)

    async def test_explicit_answer_cancels_timer(self):
        session = self.make_session(response_timeout_ms=50)
        await session.start()
        await session.respond_heard()            # -> 30, new window
        await asyncio.sleep(0.02)
        await session.respond_heard()            # -> 20 before the timer
        self.assertEqual([level for _, level, _ in self.player.calls],
                         [40, 30, 20])


class TestStop(SessionTestCase):

    async def test_stop_cancels_response_timer(self):
        session = self.make_session(response_timeout_ms=20)
        await session.start()
        session.stop()
        await asyncio.sleep(0.06)
        self.assertEqual(len(self.player.calls), 1)
        state = session.get_state()
        self.assertIs(state.phase, Phase.IDLE)
        self.assertFalse(state.awaiting_response)
        self.assertEqual(self.player.stop_calls, 1)

    async def test_stop_during_presentation(self):
        player = FakePlayer()
        player.gate = asyncio.Event()
        session = self.make_session(player, response_timeout_ms=20)
        start = asyncio.ensure_future(session.start())
        await player.wait_for_calls(1)
        session.stop()
        player.gate.set()
        await start
        await asyncio.sleep(0.05)
        state = session.get_state()
        self.assertIs(state.phase, Phase.IDLE)
        self.assertFalse(state.is_presenting)
        self.assertFalse(state.awaiting_response)
        self.assertEqual(len(player.calls), 1)

    async def test_stop_from_state_handler_skips_tone(self):
        session = self.make_session()

        def stop_when_presenting(event, payload):
            if event == STATE_CHANGE and payload.is_presenting:
                session.stop()

        session.on(stop_when_presenting)
        await session.start()
        self.assertNotIn(TONE_START, self.event_names())
        self.assertEqual(self.player.calls, [])
        state = session.get_state()
        self.assertIs(state.phase, Phase.IDLE)
        self.assertFalse(state.is_presenting)

    async def test_stop_is_idempotent(self):
        session = self.make_session()
        session.stop()
        self.assertEqual(self.events, [])
        await session.start()
        session.stop()
        session.stop()
        idle_states = [p for e, p in self.events
                       if e == STATE_CHANGE and p.phase is Phase.IDLE]
        self.assertEqual(len(idle_states), 1)

    async def test_restart_after_stop(self):
        session = self.make_session(start_level=-10, frequencies=[1000, 2000])
        await session.start()
        await session.respond_heard()
        session.stop()
        await session.start()
        self.assertEqual(session.get_progress(), 0)
        self.assertEqual(session.get_state().current_frequency, 1000)
        self.assertIs(session.get_state().phase, Phase.RUNNING)


class TestSubscription(SessionTestCase):

    async def test_unsubscribe_stops_delivery(self):
        session = self.make_session()
        first, second = [], []
        unsubscribe = session.on(lambda e, p: first.append(e))
        session.on(lambda e, p: second.append(e))
        unsubscribe()
        unsubscribe()
        await session.start()
        self.assertEqual(first, [])
        self.assertIn(STATE_CHANGE, second)

    async def test_failing_handler_does_not_break_session(self):
        session = self.make_session()

        def broken(event, payload):
            raise RuntimeError("boom")

        session.on(broken)
        with self.assertLogs(level='ERROR'):
            await session.start()
        await session.respond_heard()
        self.assertEqual(session.get_state().current_level, 30)


if __name__ == '__main__':
    unittest.main()
