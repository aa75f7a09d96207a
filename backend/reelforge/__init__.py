"""Timeline-driven video compositing and encoding."""

__version__ = "0.1.0"
