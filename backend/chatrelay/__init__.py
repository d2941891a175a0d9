"""Real-time chat relay with presence tracking."""

__version__ = "0.1.0"
