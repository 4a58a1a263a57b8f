"""Pure tone playback with strict stereo channel separation.

The test session only depends on the ``TonePlayer`` protocol. The
``SoundDeviceTonePlayer`` implements it on top of a sounddevice output
stream: tones are played ONLY in the requested ear, the other channel is
explicitly silenced to prevent audio leakage between ears.
"""

import asyncio
import logging
from typing import Optional, Protocol

import numpy as np
import sounddevice as sd

from yourear.errors import ConfigError, ToneError

samplerate = 44100

# 0 dB HL is played at -60 dBFS. Consumer hardware is not calibrated, so
# levels are relative, not absolute SPL.
REFERENCE_DB_FS = -60
MIN_GAIN_DB = -80
MAX_GAIN_DB = 0

CHANNELS = {'left': 0, 'right': 1}


class TonePlayer(Protocol):

    async def present(self, frequency, level, duration_ms, channel):
        """Play a tone and return when playback (including release) ended."""

    def stop_immediately(self):
        """Silence the current tone without waiting for it to finish."""


class SoundDeviceTonePlayer:
    """Tone player writing sine tones into a stereo sounddevice stream.

    Each tone gets a linear attack and release ramp to avoid audible clicks.
    The stream is opened lazily on the first tone so constructing the player
    never touches the audio device.
    """

    def __init__(self, device=None, attack=20, release=20):
        """
        Args:
            device: sounddevice device id or name, None for the default.
            attack: Fade-in time in ms.
            release: Fade-out time in ms.
        """
        if attack <= 0 or release <= 0:
            raise ConfigError("attack and release have to be positive "
                              "and different from zero")
        self._device = device
        self._stream = None
        self._attack = max(1, int(np.round(_seconds2samples(attack / 1000))))
        self._release = max(1, int(np.round(_seconds2samples(release / 1000))))
        self._release_seconds = release / 1000
        self._last_gain = 0.0
        self._channel = CHANNELS['right']
        self._index = 0
        self._target_gain = 0.0
        self._freq = 0
        self._callback_parameters = 0.0, 0.0, 0
        self._callback_status = sd.CallbackFlags()
        self._interrupt: Optional[asyncio.Event] = None

    def open(self):
        if self._stream is not None:
            return
        try:
            if self._device is not None:
                devinfo = sd.query_devices(self._device)
                max_out = int(devinfo.get('max_output_channels', 2))
                if max_out < 2:
                    logging.warning(
                        f"Selected audio device only supports {max_out} output channel(s). "
                        "Strict stereo separation may not be possible.")
            # Always request stereo so each ear gets its own channel.
            self._stream = sd.OutputStream(device=self._device,
                                           callback=self._callback,
                                           channels=2,
                                           samplerate=samplerate)
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._stream = None
            raise ToneError(f"Could not open audio output: {e}") from e

    def _callback(self, outdata, frames, time, status):
        self._callback_status |= status
        target_gain, slope, freq = self._callback_parameters

        k = np.arange(self._index, self._index + frames)
        ramp = np.arange(frames) * slope + self._last_gain + slope
        if slope > 0:
            gain = np.minimum(target_gain, ramp)
        elif slope == 0:
            # No ramp: the target gain wins over wherever the last block ended.
            gain = np.full(frames, target_gain)
        else:
            gain = np.maximum(target_gain, ramp)
        signal = gain * np.sin(2 * np.pi * freq * k / samplerate)

        # Zero out ALL channels first, then write the target channel only.
        outdata.fill(0)
        if outdata.shape[1] >= 2:
            outdata[:, self._channel] = signal
        else:
            outdata[:, 0] = signal

        self._index += frames
        self._last_gain = gain[-1]

    def _start(self, freq, gain_db, channel):
        target_gain = _db2lin(gain_db)
        self._channel = CHANNELS[channel]
        self._target_gain = target_gain
        self._freq = freq
        self._callback_parameters = target_gain, target_gain / self._attack, freq

    def _stop(self):
        slope = -self._target_gain / self._release
        self._target_gain = 0.0
        self._callback_parameters = 0.0, slope, self._freq

    async def present(self, frequency, level, duration_ms, channel):
        """Play ``frequency`` Hz at ``level`` dB HL into one ear.

        Raises:
            ToneError: The channel is invalid or the audio device failed.
        """
        if channel not in CHANNELS:
            raise ToneError(f"channel must be 'left' or 'right', got '{channel}'")
        self.open()

        self._interrupt = interrupt = asyncio.Event()
        self._start(frequency, hearing_level_to_dbfs(level), channel)
        if await _wait(interrupt, duration_ms / 1000):
            return
        self._stop()
        await _wait(interrupt, self._release_seconds)

    def stop_immediately(self):
        self._target_gain = 0.0
        self._last_gain = 0.0
        self._callback_parameters = 0.0, 0.0, self._freq
        if self._interrupt is not None:
            self._interrupt.set()

    def close(self):
        """Close the audio stream and log any callback errors."""
        if self._stream is None:
            return
        if self._callback_status:
            logging.warning(str(self._callback_status))
        self._stream.stop()
        self._stream.close()
        self._stream = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


async def _wait(event, seconds):
    """Sleep for ``seconds``; return True early if ``event`` got set."""
    try:
        await asyncio.wait_for(event.wait(), seconds)
    except asyncio.TimeoutError:
        return False
    return True


def hearing_level_to_dbfs(level):
    """Map dB HL onto the output scale, clamped to avoid clipping."""
    return float(np.clip(REFERENCE_DB_FS + level, MIN_GAIN_DB, MAX_GAIN_DB))


def list_output_devices():
    """Return ``[(index, name), ...]`` of devices with output channels."""
    return [(i, d['name']) for i, d in enumerate(sd.query_devices())
            if d['max_output_channels'] > 0]


def _db2lin(db_value):
    """Convert dB to linear gain."""
    return 10 ** (db_value / 20)


def _seconds2samples(seconds):
    """Convert seconds to number of samples at the current sample rate."""
    return samplerate * seconds
