"""waflow - WhatsApp conversation automation engine."""

__version__ = "1.0.0"
