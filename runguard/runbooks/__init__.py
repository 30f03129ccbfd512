"""Runbook definitions and pack discovery."""

from runguard.runbooks.registry import RunbookRegistry, discover_runbooks
from runguard.runbooks.schema import RunbookDefinition, RunbookStep

__all__ = [
    "RunbookDefinition",
    "RunbookStep",
    "RunbookRegistry",
    "discover_runbooks",
]
