# dripfeed/errors.py
from __future__ import annotations


class DripFeedError(Exception):
    """Base for every session-terminating failure."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(DripFeedError):
    """Bad or missing session parameters. Raised before any resource is touched."""


class FileReadError(DripFeedError):
    """The program file could not be opened, counted, or read."""


class ConnectError(DripFeedError):
    """The serial endpoint could not be opened (busy, missing, permission denied...)."""


class WriteError(DripFeedError):
    """A write was rejected, failed, or never acknowledged."""


class ChannelError(WriteError):
    """Out-of-band connection failure, e.g. the device was unplugged mid-session."""
