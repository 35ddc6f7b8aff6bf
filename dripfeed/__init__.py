"""dripfeed: stream stored G-code files to a controller over serial, one line at a time."""

__version__ = "0.1.0"
