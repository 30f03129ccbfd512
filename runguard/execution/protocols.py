"""Collaborator interfaces the engine depends on.

Implementations live outside the core: the engine only awaits these methods.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from runguard.execution.models import (
    ApprovalRequest,
    ApprovalResult,
    CompensationStep,
    RunbookExecution,
    StepExecutionResult,
)
from runguard.runbooks.schema import RunbookStep


@runtime_checkable
class StepExecutor(Protocol):
    """Runs a single runbook step. Raising signals step failure."""

    async def execute_step(
        self, step: RunbookStep, parameters: Optional[Dict[str, Any]]
    ) -> StepExecutionResult:
        ...


@runtime_checkable
class CompensationExecutor(Protocol):
    """Runs a registered compensation. Raising or returning False signals failure."""

    async def execute_compensation(self, compensation: CompensationStep) -> bool:
        ...


@runtime_checkable
class ExecutionRepository(Protocol):
    """Idempotent upsert/load of execution state."""

    async def save_execution(self, execution: RunbookExecution) -> None:
        ...

    async def get_execution(self, execution_id: str) -> Optional[RunbookExecution]:
        ...


@runtime_checkable
class ApprovalService(Protocol):
    """Blocks until an approver decides on a gated step."""

    async def wait_for_approval(self, request: ApprovalRequest) -> ApprovalResult:
        ...
