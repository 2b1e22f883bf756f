"""Queue-backed one-time-passcode delivery over a chat transport."""

__version__ = "0.3.0"
