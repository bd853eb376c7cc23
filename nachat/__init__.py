"""Client library for the Matrix chat protocol: events, room state, timelines and sessions."""

__version__ = "0.1.0"