"""Asynchronous notification delivery queue."""

__version__ = "1.0.0"
