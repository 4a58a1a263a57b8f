#!/usr/bin/env python3
"""Run a hearing test from the terminal.

Put on your headphones, start ``yourear`` and press Enter every time you
hear a tone. Type ``q`` and Enter to abort.

**WARNING**: This is a self-assessment, not a diagnosis. If you notice a
hearing problem, please consult an audiologist!
"""

import asyncio
import logging
import sys

from yourear import config as config_module
from yourear import interpretation
from yourear.errors import ToneError
from yourear.interpretation import format_frequency
from yourear.responder import ConsoleResponder
from yourear.session import (COMPLETED, EAR_COMPLETE, ERROR, THRESHOLD_FOUND,
                             TONE_START, TestSession)


def configure_logging(enabled):
    if enabled:
        logging.basicConfig(level=logging.DEBUG,
                            format='%(levelname)s:%(message)s',
                            handlers=[logging.FileHandler("logfile.log", 'w'),
                                      logging.StreamHandler()])
    else:
        logging.basicConfig(level=logging.WARNING,
                            format='%(levelname)s:%(message)s')


def _format_level(level):
    return 'no response' if level is None else f'{level:g} dB HL'


def print_result(result, out=None):
    out = out if out is not None else sys.stdout
    print("\nThresholds:", file=out)
    for record in result.thresholds:
        print(f"  {format_frequency(record.frequency):>5} Hz   "
              f"right: {_format_level(record.right_ear_threshold):<14} "
              f"left: {_format_level(record.left_ear_threshold)}", file=out)

    for ear, info in interpretation.summarize(result).items():
        pta = 'n/a' if info['pta'] is None else f"{info['pta']} dB HL"
        print(f"  {ear.capitalize()} ear PTA: {pta} ({info['classification']})",
              file=out)


async def run_session(args, player=None, stream=None, out=None):
    """Run one sweep; return the ``TestResult`` or None if the user quit.

    Raises:
        ToneError: The tone player failed.
    """
    out = out if out is not None else sys.stdout
    if player is None:
        from yourear.tone_player import SoundDeviceTonePlayer
        player = SoundDeviceTonePlayer(args.device, args.attack, args.release)

    loop = asyncio.get_running_loop()
    session = TestSession(player, args.test_config)
    done = loop.create_future()
    errors = []

    def finish(result=None):
        if not done.done():
            done.set_result(result)

    def on_event(event, payload):
        if event == TONE_START:
            print(f"{format_frequency(payload['frequency'])} Hz, "
                  f"{payload['ear'].value} ear", file=out)
        elif event == THRESHOLD_FOUND:
            print(f"  -> threshold {_format_level(payload.level)}", file=out)
        elif event == EAR_COMPLETE:
            print(f"\n{payload.value.capitalize()} ear done, "
                  "switching ears.\n", file=out)
        elif event == COMPLETED:
            finish(payload)
        elif event == ERROR:
            errors.append(payload)
            finish()

    session.on(on_event)
    print("Press Enter whenever you hear a tone, q + Enter to quit.\n", file=out)
    try:
        with ConsoleResponder(session, loop, stream, on_quit=finish):
            await session.start()
            result = await done
    finally:
        session.stop()
        if hasattr(player, 'close'):
            player.close()
    if errors:
        raise errors[0]
    return result


def main(argv=None):
    args = config_module.config(argv)
    configure_logging(args.logging)

    if args.list_devices:
        from yourear.tone_player import list_output_devices
        print("Audio output devices:")
        for index, name in list_output_devices():
            print(f"{index}: {name}")
        return 0

    try:
        result = asyncio.run(run_session(args))
    except ToneError as e:
        print(f"The test could not proceed: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130

    if result is None:
        print("Test stopped.")
        return 1
    print_result(result)
    return 0


if __name__ == '__main__':
    sys.exit(main())
