"""envision: track, diff and restore shell environment changes."""

__version__ = "0.1.0"
