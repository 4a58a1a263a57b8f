"""Command line options and persisted preferences.

Preferences are a small JSON file with keys like 'mode' and 'device'. The
configuration directory can be overridden via the environment variable
`YOUREAR_CONFIG_DIR` for testing or portability.
"""
from pathlib import Path
import argparse
import json
import logging
import os

from yourear.errors import ConfigError
from yourear.settings import PRESETS, preset

DEFAULT_PREFS = {
    "mode": "default",
    "device": None,
}

_CONFIG_FILENAME = "config.json"


def get_config_dir() -> Path:
    env = os.environ.get('YOUREAR_CONFIG_DIR')
    if env:
        return Path(env)
    if os.name == 'nt':
        appdata = os.environ.get('APPDATA') or Path.home()
        return Path(appdata) / 'yourear'
    else:
        return Path.home() / '.config' / 'yourear'


def get_config_path() -> Path:
    d = get_config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / _CONFIG_FILENAME


def load_prefs() -> dict:
    path = get_config_path()
    if not path.exists():
        return dict(DEFAULT_PREFS)
    try:
        with path.open('r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logging.warning(f"Ignoring unreadable preferences {path}: {e}")
        return dict(DEFAULT_PREFS)
    if not isinstance(data, dict):
        logging.warning(f"Ignoring preferences {path}: expected a JSON object")
        return dict(DEFAULT_PREFS)
    # Merge with defaults for missing keys
    prefs = dict(DEFAULT_PREFS)
    prefs.update(data)
    return prefs


def save_prefs(prefs: dict) -> None:
    """Write ``prefs`` to the preference file, replacing its content."""
    path = get_config_path()
    with path.open('w', encoding='utf-8') as f:
        json.dump(prefs, f, indent=2)


def config(args=None, prefs=None):
    """Parse command line options.

    ``args`` defaults to ``sys.argv``. Values missing on the command line
    come from ``prefs`` (``load_prefs()`` when not given), then from the
    selected test mode.
    """
    if prefs is None:
        prefs = load_prefs()

    parser = argparse.ArgumentParser(
        prog='yourear', fromfile_prefix_chars='@',
        description="Self-administered pure tone hearing test. Press Enter "
                    "whenever you hear a tone.")
    parser.add_argument("--mode", choices=sorted(PRESETS),
                        default=prefs.get('mode', 'default'),
                        help="default: 6 octave frequencies, quick: 3 key "
                        "frequencies, detailed: 11 frequencies including "
                        "inter-octave ones")
    parser.add_argument("--freqs", type=int, nargs='+', default=None,
                        help="Frequencies to test in Hz, in test order. "
                        "Overrides the mode's frequency set")
    parser.add_argument("--start-level", type=float, default=None,
                        help="in dBHL")
    parser.add_argument("--min-level", type=float, default=None,
                        help="in dBHL")
    parser.add_argument("--max-level", type=float, default=None,
                        help="in dBHL")
    parser.add_argument("--step-up", type=float, default=None,
                        help="Level increment after a missed tone, in dB")
    parser.add_argument("--step-down", type=float, default=None,
                        help="Level decrement after a heard tone, in dB")
    parser.add_argument("--tone-duration", type=float, default=None,
                        help="in ms")
    parser.add_argument("--response-timeout", type=float, default=None,
                        help="Time to answer after the tone ended, in ms. "
                        "No answer counts as 'not heard'")
    parser.add_argument(
        "--device", help='How to select your soundcard is '
        'shown in http://python-sounddevice.readthedocs.org/'
        '#sounddevice.query_devices', type=int,
        default=prefs.get('device'))
    parser.add_argument("--list-devices", action='store_true',
                        help="Print the audio output devices and exit")
    parser.add_argument("--attack", type=float, default=20, help="in ms")
    parser.add_argument("--release", type=float, default=20, help="in ms")
    parser.add_argument("--logging", action='store_true',
                        help="Write a detailed log to logfile.log")
    parser.add_argument("--save-prefs", action='store_true',
                        help="Remember --mode and --device as the defaults "
                        "for the next runs")

    parsed_args = parser.parse_args(args)
    try:
        parsed_args.test_config = build_test_config(parsed_args)
    except ConfigError as e:
        parser.error(str(e))
    if parsed_args.save_prefs:
        remember_prefs(parsed_args, prefs)
    return parsed_args


def build_test_config(parsed_args):
    """Merge explicit command line values over the selected mode preset."""
    overrides = {
        'frequencies': parsed_args.freqs,
        'start_level': parsed_args.start_level,
        'min_level': parsed_args.min_level,
        'max_level': parsed_args.max_level,
        'step_up': parsed_args.step_up,
        'step_down': parsed_args.step_down,
        'tone_duration_ms': parsed_args.tone_duration,
        'response_timeout_ms': parsed_args.response_timeout,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return preset(parsed_args.mode).with_overrides(**overrides)


def remember_prefs(parsed_args, prefs):
    """Store the selected mode and device over the loaded preferences."""
    updated = dict(prefs)
    updated.update(mode=parsed_args.mode, device=parsed_args.device)
    save_prefs(updated)
    logging.info("Saved preferences to %s", get_config_path())
    return updated
