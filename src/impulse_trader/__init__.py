"""Impulse pullback setup detection and position lifecycle engines."""

__version__ = "0.1.0"
