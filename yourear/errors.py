"""Exceptions raised by the hearing test."""


class YourEarError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(YourEarError, ValueError):
    """Invalid test configuration, preference file or command line value."""


class ToneError(YourEarError):
    """The tone player could not present a tone.

    Typically the audio device is missing, busy or does not allow output.
    """


class SeekerFinishedError(YourEarError, RuntimeError):
    """A response was fed to a threshold seeker that already finalized."""
