"""Dosewatch: shared medication dose tracking for households with animals."""

__version__ = "0.1.0"
