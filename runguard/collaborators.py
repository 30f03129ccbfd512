"""Reference collaborators: in-memory persistence, approval broker, executor loading."""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import CollaboratorFailure, ConfigurationError, NotFoundError
from .execution.models import (
    ApprovalRequest,
    ApprovalResult,
    CompensationStep,
    RunbookExecution,
    StepExecutionResult,
    utcnow,
)
from .runbooks.schema import RunbookStep

logger = logging.getLogger(__name__)


class InMemoryExecutionRepository:
    """Idempotent upsert store of execution snapshots."""

    def __init__(self) -> None:
        self._items: Dict[str, RunbookExecution] = {}
        self.save_count = 0

    async def save_execution(self, execution: RunbookExecution) -> None:
        self._items[execution.id] = execution.model_copy(deep=True)
        self.save_count += 1

    async def get_execution(self, execution_id: str) -> Optional[RunbookExecution]:
        item = self._items.get(execution_id)
        return item.model_copy(deep=True) if item is not None else None

    def all(self) -> List[RunbookExecution]:
        return [e.model_copy(deep=True) for e in self._items.values()]


class ApprovalBroker:
    """
    Approval service resolved by human approvers (HTTP surface, chat bot, ...).

    wait_for_approval() parks a Future per (execution, step); approve()/deny() resolve it.
    """

    def __init__(self) -> None:
        self._pending: Dict[Tuple[str, str], Tuple[ApprovalRequest, asyncio.Future]] = {}

    async def wait_for_approval(self, request: ApprovalRequest) -> ApprovalResult:
        key = (request.execution_id, request.step_id)
        if key in self._pending:
            raise ValueError(f"Approval already pending for {request.execution_id}:{request.step_id}")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = (request, future)
        try:
            return await future
        finally:
            self._pending.pop(key, None)

    def pending(self) -> List[ApprovalRequest]:
        return [request for request, _ in self._pending.values()]

    def approve(self, execution_id: str, step_id: str, approved_by: str, reason: Optional[str] = None) -> None:
        self._resolve(execution_id, step_id, ApprovalResult(
            approved=True,
            approved_by=approved_by,
            reason=reason,
            approved_at=utcnow(),
        ))

    def deny(self, execution_id: str, step_id: str, denied_by: str, reason: Optional[str] = None) -> None:
        self._resolve(execution_id, step_id, ApprovalResult(
            approved=False,
            approved_by=denied_by,
            reason=reason or f"Denied by {denied_by}",
        ))

    def _resolve(self, execution_id: str, step_id: str, result: ApprovalResult) -> None:
        entry = self._pending.get((execution_id, step_id))
        if entry is None or entry[1].done():
            raise NotFoundError("Approval request", f"{execution_id}:{step_id}")
        entry[1].set_result(result)
        verdict = "approved" if result.approved else "denied"
        logger.info(f"Step {step_id} of execution {execution_id} {verdict} by {result.approved_by}")


class UnconfiguredStepExecutor:
    """Default executor: refuses every real step so only dry runs succeed."""

    async def execute_step(self, step: RunbookStep, parameters: Optional[Dict[str, Any]]) -> StepExecutionResult:
        raise CollaboratorFailure(f"No step executor configured; cannot run step {step.id}")

    async def execute_compensation(self, compensation: CompensationStep) -> bool:
        raise CollaboratorFailure(f"No step executor configured; cannot run compensation {compensation.id}")


def load_collaborator(path: str) -> Any:
    """
    Import `module:attribute`. Classes and zero-argument factories are called.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid collaborator path {path!r}; expected 'module:attribute'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import {module_name}: {e}") from e
    try:
        target = getattr(module, attr)
    except AttributeError as e:
        raise ConfigurationError(f"{module_name} has no attribute {attr}") from e
    return target() if callable(target) else target
