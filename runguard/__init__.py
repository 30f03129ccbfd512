"""Runbook execution and safety engine."""

__version__ = "1.0.0"
