"""Step runner: drives one execution through its steps."""

import asyncio
import logging
from datetime import timedelta
from typing import Optional, Set

from runguard.events import (
    ApprovalRequiredEvent,
    EventBus,
    ExecutionStateChangedEvent,
    StepCompletedEvent,
)
from runguard.exceptions import ApprovalDeniedError, ApprovalExpiredError, CollaboratorFailure
from runguard.execution.compensation import CompensationManager
from runguard.execution.models import (
    RUNNABLE_STEP_STATUSES,
    ApprovalRequest,
    ApprovalResult,
    ExecutionOptions,
    ExecutionStatus,
    RunbookExecution,
    StepExecution,
    StepExecutionResult,
    StepStatus,
    utcnow,
)
from runguard.execution.protocols import ApprovalService, ExecutionRepository, StepExecutor
from runguard.execution.registry import ExecutionRegistry
from runguard.runbooks.schema import RunbookDefinition, RunbookStep
from runguard.safety.gates import GateBuilder
from runguard.safety.models import GateType

logger = logging.getLogger(__name__)

DRY_RUN_OUTPUT = "[DRY RUN] Step simulated successfully"

_ABORT_STATUSES = (ExecutionStatus.ABORTING, ExecutionStatus.ABORTED)


class StepRunner:
    """Sequential control loop over a runbook's steps.

    Pause is cooperative: status is only re-checked at step boundaries and
    while polling, never while a step is in flight.
    """

    def __init__(
        self,
        registry: ExecutionRegistry,
        repository: ExecutionRepository,
        step_executor: StepExecutor,
        approvals: ApprovalService,
        compensation: CompensationManager,
        bus: EventBus,
        gates: Optional[GateBuilder] = None,
        pause_poll_interval: float = 1.0,
        dry_run_step_delay: float = 0.1,
        retry_delay: float = 0.0,
        approval_timeout: timedelta = timedelta(hours=24),
    ):
        """Initialize step runner.

        Args:
            registry: Registry of active executions
            repository: Persistence collaborator, called after every mutation
            step_executor: Collaborator that performs a step
            approvals: Collaborator that decides approval-gated steps
            compensation: Manager receiving compensations reported by steps
            bus: Event bus for outbound notifications
            gates: Gate builder used for approval requests
            pause_poll_interval: Seconds between status checks while paused
            dry_run_step_delay: Simulated duration of a dry-run step
            retry_delay: Seconds to wait before re-attempting a failed step
            approval_timeout: Expiry window for approval requests
        """
        self.registry = registry
        self.repository = repository
        self.step_executor = step_executor
        self.approvals = approvals
        self.compensation = compensation
        self.bus = bus
        self.gates = gates or GateBuilder(approval_expiry=approval_timeout)
        self.pause_poll_interval = pause_poll_interval
        self.dry_run_step_delay = dry_run_step_delay
        self.retry_delay = retry_delay
        self.approval_timeout = approval_timeout
        # executions whose step executor call is currently in flight
        self._in_step: Set[str] = set()

    def in_step(self, execution_id: str) -> bool:
        return execution_id in self._in_step

    async def run(
        self,
        execution: RunbookExecution,
        runbook: RunbookDefinition,
        options: ExecutionOptions,
    ) -> RunbookExecution:
        """Advance an execution until it finishes, fails, is blocked or aborted.

        Returns:
            The execution in its final state
        """
        logger.info(f"Runner started for execution {execution.id} ({execution.runbook_name})")
        approved: Set[str] = set()
        try:
            while True:
                halted = await self._drive(execution, runbook, options, approved)
                if halted is None:
                    break
                if await self._finalize(execution, failed=halted):
                    break
            return execution

        except asyncio.CancelledError:
            logger.warning(f"Runner for execution {execution.id} cancelled")
            previous = self._force_status(execution, ExecutionStatus.ABORTED, abort_reason="Cancelled")
            if previous is not None:
                try:
                    await self.repository.save_execution(execution)
                except Exception as e:
                    logger.error(f"Could not persist cancelled execution {execution.id}: {e}")
                self._state_changed(execution, previous, ExecutionStatus.ABORTED)
            raise

        except Exception as e:
            # Persistence (or other unexpected) failures are not retried: fail the run and re-raise.
            logger.error(f"Runner for execution {execution.id} failed: {e}", exc_info=True)
            previous = self._force_status(execution, ExecutionStatus.FAILED)
            if previous is not None:
                self._state_changed(execution, previous, ExecutionStatus.FAILED)
            raise

        finally:
            with self.registry.lock:
                if self.registry.get(execution.id) is execution:
                    self.registry.remove(execution.id)

    async def _drive(
        self,
        execution: RunbookExecution,
        runbook: RunbookDefinition,
        options: ExecutionOptions,
        approved: Set[str],
    ) -> Optional[bool]:
        """Run the step loop.

        Returns None when an abort took ownership of the terminal state, True when
        the loop halted on a failed step, False when no runnable step is left.
        """
        failed = False
        while True:
            index = self._next_runnable(execution)
            if index is None:
                break
            step = runbook.steps[index]
            step_exec = execution.steps[index]

            if not await self._checkpoint(execution):
                return None

            if step.has_approval_gate and step.id not in approved:
                approval = await self._request_approval(execution, step)
                if not approval.approved:
                    logger.warning(
                        f"Step {step.id} of execution {execution.id} blocked: approval denied ({approval.reason})"
                    )
                    step_exec.status = StepStatus.BLOCKED
                    step_exec.error = ApprovalDeniedError(step.id, approval.reason).message
                    step_exec.completed_at = utcnow()
                    await self.repository.save_execution(execution)
                    break
                logger.info(f"Step {step.id} of execution {execution.id} approved by {approval.approved_by}")
                approved.add(step.id)

                if not await self._checkpoint(execution):
                    return None

            step_exec.status = StepStatus.RUNNING
            step_exec.started_at = utcnow()
            await self.repository.save_execution(execution)

            try:
                result = await self._execute(execution, step, options)
            except Exception as e:
                if await self._handle_failure(execution, step_exec, options, e):
                    failed = True
                    break
                continue

            step_exec.output = result.output
            step_exec.error = None
            step_exec.status = StepStatus.COMPLETED
            step_exec.completed_at = utcnow()
            if result.compensation_step is not None:
                self.compensation.register(execution.id, step.id, result.compensation_step)
            logger.info(f"Step {step.id} of execution {execution.id} completed")
            self.bus.publish(StepCompletedEvent(
                execution_id=execution.id,
                step_id=step_exec.step_id,
                step_name=step_exec.step_name,
                success=True,
                output=step_exec.output,
            ))
            await self.repository.save_execution(execution)

        if execution.status in _ABORT_STATUSES:
            return None
        return failed

    async def _checkpoint(self, execution: RunbookExecution) -> bool:
        """Wait out a pause. Returns False if the execution is being aborted."""
        while execution.status == ExecutionStatus.PAUSED:
            await asyncio.sleep(self.pause_poll_interval)
        if execution.status in _ABORT_STATUSES:
            logger.info(f"Runner for execution {execution.id} stopping: {execution.status.value}")
            return False
        return True

    async def _execute(
        self,
        execution: RunbookExecution,
        step: RunbookStep,
        options: ExecutionOptions,
    ) -> StepExecutionResult:
        if execution.is_dry_run:
            await asyncio.sleep(self.dry_run_step_delay)
            return StepExecutionResult(success=True, output=DRY_RUN_OUTPUT)

        self._in_step.add(execution.id)
        try:
            call = self.step_executor.execute_step(step, options.parameters)
            if step.timeout_seconds:
                try:
                    result = await asyncio.wait_for(call, timeout=step.timeout_seconds)
                except asyncio.TimeoutError:
                    raise CollaboratorFailure(f"Step timed out after {step.timeout_seconds} seconds")
            else:
                result = await call
        finally:
            self._in_step.discard(execution.id)

        if not result.success:
            raise CollaboratorFailure(result.output or "Step reported failure", output=result.output)
        return result

    async def _handle_failure(
        self,
        execution: RunbookExecution,
        step_exec: StepExecution,
        options: ExecutionOptions,
        error: Exception,
    ) -> bool:
        """Record a step failure. Returns True when the loop must stop."""
        message = str(error) or error.__class__.__name__
        if isinstance(error, CollaboratorFailure) and error.output is not None:
            step_exec.output = error.output

        if options.auto_retry and step_exec.retry_count < step_exec.max_retries:
            step_exec.retry_count += 1
            step_exec.status = StepStatus.RETRYING
            step_exec.error = message
            logger.warning(
                f"Step {step_exec.step_id} of execution {execution.id} failed ({message}); "
                f"retry {step_exec.retry_count} of {step_exec.max_retries}"
            )
            await self.repository.save_execution(execution)
            if self.retry_delay:
                await asyncio.sleep(self.retry_delay)
            return False

        step_exec.status = StepStatus.FAILED
        step_exec.error = message
        step_exec.completed_at = utcnow()
        logger.error(f"Step {step_exec.step_id} of execution {execution.id} failed: {message}")
        await self.repository.save_execution(execution)
        self.bus.publish(StepCompletedEvent(
            execution_id=execution.id,
            step_id=step_exec.step_id,
            step_name=step_exec.step_name,
            success=False,
            output=step_exec.output,
            error=step_exec.error,
        ))

        return not options.continue_on_error

    async def _request_approval(self, execution: RunbookExecution, step: RunbookStep) -> ApprovalResult:
        finding = execution.safety_analysis.finding_for(step.id) if execution.safety_analysis else None
        gate = next(
            (g for g in self.gates.gates_for_step(step, finding) if g.gate_type == GateType.APPROVAL),
            None,
        )
        now = utcnow()
        request = ApprovalRequest(
            execution_id=execution.id,
            step_id=step.id,
            step_name=step.name,
            reason=f"Step '{step.name}' requires approval before proceeding",
            requested_at=now,
            expires_at=now + self.approval_timeout,
            gate=gate,
        )
        logger.info(f"Approval required for step {step.id} of execution {execution.id}")
        self.bus.publish(ApprovalRequiredEvent(request=request))

        timeout = max((request.expires_at - utcnow()).total_seconds(), 0.0)
        try:
            return await asyncio.wait_for(self.approvals.wait_for_approval(request), timeout=timeout)
        except asyncio.TimeoutError:
            return ApprovalResult(approved=False, reason=ApprovalExpiredError(step.id).reason)
        except Exception as e:
            logger.error(f"Approval service failed for step {step.id}: {e}", exc_info=True)
            return ApprovalResult(approved=False, reason=f"Approval service error: {e}")

    async def _finalize(self, execution: RunbookExecution, failed: bool) -> bool:
        """Settle the terminal status. Returns False when a step became runnable again."""
        with self.registry.lock:
            if execution.status in _ABORT_STATUSES:
                return True
            if failed:
                relaunch = any(s.status == StepStatus.RETRYING for s in execution.steps)
            else:
                relaunch = self._next_runnable(execution) is not None
            if relaunch:
                # manual retry landed after the loop stopped
                return False
            previous = execution.status
            if failed:
                execution.status = ExecutionStatus.FAILED
            elif previous in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED):
                all_completed = all(s.status == StepStatus.COMPLETED for s in execution.steps)
                execution.status = (
                    ExecutionStatus.COMPLETED if all_completed else ExecutionStatus.COMPLETED_WITH_ERRORS
                )
            execution.completed_at = utcnow()
            execution.paused_at = None
            execution.pause_reason = None

        await self.repository.save_execution(execution)
        logger.info(f"Execution {execution.id} finished: {execution.status.value}")
        self._state_changed(execution, previous, execution.status)
        return True

    def _force_status(
        self,
        execution: RunbookExecution,
        status: ExecutionStatus,
        abort_reason: Optional[str] = None,
    ) -> Optional[ExecutionStatus]:
        """Move a non-terminal execution to a terminal status. Returns the previous status, if changed."""
        with self.registry.lock:
            if execution.status.is_terminal:
                return None
            previous = execution.status
            execution.status = status
            execution.completed_at = utcnow()
            if status == ExecutionStatus.ABORTED:
                execution.aborted_at = execution.aborted_at or utcnow()
                execution.abort_reason = execution.abort_reason or abort_reason
            return previous

    def _state_changed(
        self,
        execution: RunbookExecution,
        previous: ExecutionStatus,
        current: ExecutionStatus,
    ) -> None:
        self.bus.publish(ExecutionStateChangedEvent(
            execution_id=execution.id,
            previous_status=previous,
            current_status=current,
        ))

    @staticmethod
    def _next_runnable(execution: RunbookExecution) -> Optional[int]:
        """Earliest pending/retrying step; a blocked step ends the run before anything after it."""
        for i, step in enumerate(execution.steps):
            if step.status == StepStatus.BLOCKED:
                return None
            if step.status in RUNNABLE_STEP_STATUSES:
                return i
        return None
