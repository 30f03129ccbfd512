"""Compensation registration and reverse-order rollback."""

import logging
from typing import List, Optional

from runguard.execution.models import (
    CompensationStep,
    RollbackOptions,
    RollbackResult,
    RunbookExecution,
)
from runguard.execution.protocols import CompensationExecutor
from runguard.execution.registry import ExecutionRegistry

logger = logging.getLogger(__name__)


class CompensationManager:
    """Records compensation steps as steps complete and replays them on rollback."""

    def __init__(self, registry: ExecutionRegistry, executor: CompensationExecutor):
        """Initialize compensation manager.

        Args:
            registry: Registry of active executions
            executor: Collaborator that runs a compensation step
        """
        self.registry = registry
        self.executor = executor

    def register(self, execution_id: str, for_step_id: str, compensation: CompensationStep) -> bool:
        """Append a compensation for a step of an active execution.

        Returns:
            True if registered, False if the execution is not active
        """
        with self.registry.lock:
            execution = self.registry.get(execution_id)
            if execution is None:
                logger.warning(f"Cannot register compensation for inactive execution {execution_id}")
                return False
            execution.compensation_steps.append(compensation.model_copy(update={"for_step_id": for_step_id}))
        logger.info(f"Registered compensation for step {for_step_id} of execution {execution_id}")
        return True

    def select(self, execution: RunbookExecution, rollback_to_step: Optional[str]) -> List[CompensationStep]:
        """Compensations to replay, in reverse registration order."""
        candidates = list(execution.compensation_steps)
        if rollback_to_step is not None:
            target = execution.step_position(rollback_to_step)
            candidates = [
                c for c in candidates
                if execution.step_position(c.for_step_id) >= target
            ]
        candidates.reverse()
        return candidates

    async def rollback(self, execution: Optional[RunbookExecution], options: RollbackOptions) -> RollbackResult:
        """Replay compensations for an execution.

        Args:
            execution: Execution to roll back (None when unknown)
            options: Target step, dry-run and error policy

        Returns:
            RollbackResult; errors are collected, never raised
        """
        if execution is None:
            return RollbackResult(success=False, message="Execution not found")

        if not execution.compensation_steps:
            return RollbackResult(success=False, message="No compensation steps registered")

        rolled_back: List[str] = []
        errors: List[str] = []

        for compensation in self.select(execution, options.rollback_to_step):
            if options.dry_run:
                rolled_back.append(f"[DRY RUN] Would rollback: {compensation.description}")
                continue
            try:
                ok = await self.executor.execute_compensation(compensation)
                if ok is False:
                    raise RuntimeError("compensation reported failure")
                rolled_back.append(compensation.for_step_id)
                logger.info(f"Rolled back step {compensation.for_step_id} of execution {execution.id}")
            except Exception as e:
                logger.error(f"Rollback of step {compensation.for_step_id} failed: {e}")
                errors.append(f"Failed to rollback {compensation.for_step_id}: {e}")
                if not options.continue_on_error:
                    break

        if errors:
            message = f"Rollback completed with {len(errors)} errors"
        else:
            message = f"Rolled back {len(rolled_back)} steps"
        return RollbackResult(success=not errors, message=message, rolled_back_steps=rolled_back, errors=errors)
