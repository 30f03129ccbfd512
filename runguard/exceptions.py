"""Exception hierarchy for runguard.

Controller operations convert these into result records; they only escape
to callers from the lower-level components (registry, collaborators, packs).
"""

from typing import List, Optional


class RunguardError(Exception):
    """Base exception for all runguard errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(RunguardError):
    """Invalid settings or an unloadable collaborator import path."""


class NotFoundError(RunguardError):
    """Unknown execution, step, runbook or approval request."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidTransitionError(RunguardError):
    """Operation attempted from an incompatible status."""

    def __init__(self, execution_id: str, current: str, operation: str) -> None:
        self.execution_id = execution_id
        self.current = current
        self.operation = operation
        super().__init__(f"Cannot {operation} execution {execution_id} while {current}")


class RetryExhaustedError(RunguardError):
    """Retry requested beyond a step's max_retries."""

    def __init__(self, step_id: str, max_retries: int) -> None:
        self.step_id = step_id
        self.max_retries = max_retries
        super().__init__(f"Max retries ({max_retries}) exceeded")


class ApprovalDeniedError(RunguardError):
    """An approver rejected a gated step."""

    def __init__(self, step_id: str, reason: Optional[str] = None) -> None:
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"Approval denied: {reason}")


class ApprovalExpiredError(ApprovalDeniedError):
    """No decision arrived before the approval request expired."""

    def __init__(self, step_id: str) -> None:
        super().__init__(step_id, "Approval expired")


class CollaboratorFailure(RunguardError):
    """A step or compensation executor raised or reported failure."""

    def __init__(self, message: str, output: Optional[str] = None) -> None:
        self.output = output
        super().__init__(message)


class RollbackFailure(RunguardError):
    """One or more compensation steps failed during rollback."""

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Rollback completed with {len(self.errors)} errors")
