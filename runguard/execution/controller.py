"""Public execution operations: start, pause, resume, abort, retry and query."""

import asyncio
import functools
import logging
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from runguard.events import EventBus, ExecutionStateChangedEvent
from runguard.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RetryExhaustedError,
    RollbackFailure,
)
from runguard.execution.compensation import CompensationManager
from runguard.execution.dry_run import DryRunSimulator
from runguard.execution.models import (
    AbortOptions,
    AbortResult,
    CompensationStep,
    DryRunResult,
    ExecutionDetails,
    ExecutionOptions,
    ExecutionStatus,
    RollbackOptions,
    RollbackResult,
    RunbookExecution,
    RunbookExecutionResult,
    StepDetails,
    StepExecution,
    StepRetryResult,
    StepStatus,
    TriggerInfo,
    utcnow,
)
from runguard.execution.protocols import (
    ApprovalService,
    CompensationExecutor,
    ExecutionRepository,
    StepExecutor,
)
from runguard.execution.registry import ExecutionRegistry
from runguard.execution.runner import StepRunner
from runguard.runbooks.schema import RunbookDefinition
from runguard.safety.analyzer import SafetyAnalyzer
from runguard.safety.gates import GateBuilder
from runguard.safety.models import RunbookSafetyAnalysis
from runguard.settings import EngineSettings, get_settings

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = "This runbook requires manual trigger due to destructive operations"

# Halted executions a manual retry may bring back to life.
_RESUMABLE_STATUSES = (
    ExecutionStatus.RUNNING,
    ExecutionStatus.FAILED,
    ExecutionStatus.COMPLETED_WITH_ERRORS,
)


class ExecutionController:
    """Runbook execution with safety controls.

    Controller operations never raise for expected conditions (unknown ids,
    invalid transitions, exhausted retries); they return result records or
    bool/None instead. Persistence failures propagate.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        step_executor: StepExecutor,
        approvals: ApprovalService,
        compensation_executor: Optional[CompensationExecutor] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[ExecutionRegistry] = None,
        analyzer: Optional[SafetyAnalyzer] = None,
        settings: Optional[EngineSettings] = None,
    ):
        """Initialize execution controller.

        Args:
            repository: Persistence collaborator (idempotent save/load)
            step_executor: Collaborator that performs individual steps
            approvals: Collaborator that decides approval-gated steps
            compensation_executor: Collaborator that runs compensations (default: step_executor)
            bus: Event bus for outbound notifications
            registry: Registry of active executions
            analyzer: Safety analyzer
            settings: Engine settings (default: loaded settings)
        """
        self.settings = settings or get_settings()
        approval_timeout = timedelta(hours=self.settings.approval_timeout_hours)

        self.repository = repository
        self.approvals = approvals
        self.bus = bus or EventBus()
        self.registry = registry or ExecutionRegistry()
        self.analyzer = analyzer or SafetyAnalyzer(approval_expiry=approval_timeout)
        self.gates = GateBuilder(approval_expiry=approval_timeout)
        self.compensation = CompensationManager(
            self.registry,
            compensation_executor or step_executor,  # type: ignore[arg-type]
        )
        self.simulator = DryRunSimulator(
            self.analyzer,
            default_step_duration=self.settings.default_step_duration_seconds,
        )
        self.runner = StepRunner(
            registry=self.registry,
            repository=repository,
            step_executor=step_executor,
            approvals=approvals,
            compensation=self.compensation,
            bus=self.bus,
            gates=self.gates,
            pause_poll_interval=self.settings.pause_poll_interval,
            dry_run_step_delay=self.settings.dry_run_step_delay,
            retry_delay=self.settings.retry_delay_seconds,
            approval_timeout=approval_timeout,
        )

        self._tasks: Dict[str, asyncio.Task] = {}
        self._rollback_tasks: Dict[str, asyncio.Task] = {}
        self._definitions: Dict[str, Tuple[RunbookDefinition, ExecutionOptions]] = {}
        # finished execution ids, oldest first; bounded by finished_execution_retention
        self._finished: "OrderedDict[str, None]" = OrderedDict()

    # ------------------------------------------------------------------
    # Guardrails
    # ------------------------------------------------------------------

    def analyze(self, runbook: RunbookDefinition) -> RunbookSafetyAnalysis:
        return self.analyzer.analyze(runbook)

    def dry_run(self, runbook: RunbookDefinition, parameters: Optional[Dict[str, Any]] = None) -> DryRunResult:
        return self.simulator.simulate(runbook, parameters)

    # ------------------------------------------------------------------
    # Step-level control
    # ------------------------------------------------------------------

    async def start(
        self,
        runbook: RunbookDefinition,
        options: Optional[ExecutionOptions] = None,
    ) -> RunbookExecutionResult:
        """Start a runbook execution with safety controls.

        Risky runbooks that were not manually triggered come back Blocked and
        are never registered. Otherwise the step runner is launched in the
        background and this call returns immediately.

        Args:
            runbook: Runbook definition to execute
            options: Trigger metadata, dry-run and error policy

        Returns:
            RunbookExecutionResult with the safety analysis attached
        """
        options = options or ExecutionOptions()
        analysis = self.analyzer.analyze(runbook)

        if not analysis.can_run_automatically and not options.manual_trigger:
            logger.warning(
                f"Blocked automatic start of runbook {runbook.id}: risk={analysis.overall_risk.value}, "
                f"{len(analysis.required_approvals)} approvals required"
            )
            return RunbookExecutionResult(
                execution_id=None,
                status=ExecutionStatus.BLOCKED,
                message=BLOCKED_MESSAGE,
                safety_analysis=analysis,
            )

        execution = RunbookExecution(
            runbook_id=runbook.id,
            runbook_name=runbook.name,
            status=ExecutionStatus.RUNNING,
            trigger_reason=options.trigger_reason,
            triggered_by=options.triggered_by,
            trigger_type=options.trigger_type,
            is_dry_run=options.dry_run,
            steps=[
                StepExecution(
                    step_id=s.id,
                    step_name=s.name,
                    status=StepStatus.PENDING,
                    retry_count=0,
                    max_retries=s.max_retries,
                )
                for s in runbook.steps
            ],
            safety_analysis=analysis,
        )

        self.registry.register(execution)
        try:
            await self.repository.save_execution(execution)
        except Exception:
            self.registry.remove(execution.id)
            raise

        logger.info(
            f"Started execution {execution.id} of runbook {runbook.id} "
            f"(trigger={options.trigger_type.value}, by={options.triggered_by!r}, dry_run={options.dry_run})"
        )
        self._state_changed(execution.id, ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
        self._launch_runner(execution, runbook, options)

        return RunbookExecutionResult(
            execution_id=execution.id,
            status=ExecutionStatus.RUNNING,
            message="Dry run started" if options.dry_run else "Execution started",
            safety_analysis=analysis,
        )

    async def pause(self, execution_id: str, reason: str = "") -> bool:
        """Pause a running execution at its next step boundary."""
        try:
            execution = self._transition(execution_id, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED, "pause")
        except (NotFoundError, InvalidTransitionError) as e:
            logger.info(f"Pause rejected: {e}")
            return False

        with self.registry.lock:
            execution.paused_at = utcnow()
            execution.pause_reason = reason
        await self.repository.save_execution(execution)
        logger.info(f"Paused execution {execution_id}: {reason}")
        self._state_changed(execution_id, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
        return True

    async def resume(self, execution_id: str) -> bool:
        """Resume a paused execution."""
        try:
            execution = self._transition(execution_id, ExecutionStatus.PAUSED, ExecutionStatus.RUNNING, "resume")
        except (NotFoundError, InvalidTransitionError) as e:
            logger.info(f"Resume rejected: {e}")
            return False

        with self.registry.lock:
            execution.paused_at = None
            execution.pause_reason = None
        await self.repository.save_execution(execution)
        logger.info(f"Resumed execution {execution_id}")
        self._state_changed(execution_id, ExecutionStatus.PAUSED, ExecutionStatus.RUNNING)
        return True

    async def abort(self, execution_id: str, options: Optional[AbortOptions] = None) -> AbortResult:
        """Abort an active execution, optionally rolling back in the background.

        Returns:
            AbortResult telling whether compensation was triggered
        """
        options = options or AbortOptions()

        with self.registry.lock:
            execution = self.registry.get(execution_id)
            if execution is None:
                return AbortResult(success=False, message="Execution not found")
            if execution.status.is_terminal:
                return AbortResult(success=False, message=f"Execution already {execution.status.value}")
            previous = execution.status
            execution.status = ExecutionStatus.ABORTING
            execution.aborted_at = utcnow()
            execution.abort_reason = options.reason

        logger.critical(f"Aborting execution {execution_id}: {options.reason}")
        await self.repository.save_execution(execution)
        self._state_changed(execution_id, previous, ExecutionStatus.ABORTING)

        compensation_triggered = False
        if options.run_compensation and execution.compensation_steps:
            compensation_triggered = True
            self._launch_rollback(execution)

        with self.registry.lock:
            execution.status = ExecutionStatus.ABORTED
            execution.completed_at = utcnow()
        await self.repository.save_execution(execution)
        self._state_changed(execution_id, ExecutionStatus.ABORTING, ExecutionStatus.ABORTED)
        self.registry.remove(execution_id)

        # A runner parked outside the step executor (approval wait, pause poll,
        # retry delay) is cancelled; an in-flight step only when asked to.
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            if options.cancel_in_flight or not self.runner.in_step(execution_id):
                task.cancel()

        return AbortResult(
            success=True,
            message="Execution aborted",
            compensation_triggered=compensation_triggered,
        )

    async def retry_step(self, execution_id: str, step_id: str) -> StepRetryResult:
        """Retry a failed step.

        A live runner picks the step up at its next boundary. A halted execution
        is re-registered and a new runner is launched when the runbook definition
        is still known to this controller.
        """
        execution = self.registry.get(execution_id)
        if execution is None:
            execution = await self.repository.get_execution(execution_id)
            if execution is None:
                return StepRetryResult(success=False, message="Execution not found")
        step = execution.find_step(step_id)
        if step is None:
            return StepRetryResult(success=False, message="Step not found")

        while True:
            task = self._tasks.get(execution_id)
            with self.registry.lock:
                task_running = task is not None and not task.done()
                registered = self.registry.get(execution_id) is execution
                if not (task_running and registered and execution.status.is_terminal):
                    if step.status != StepStatus.FAILED:
                        return StepRetryResult(
                            success=False,
                            message="Only failed steps can be retried",
                            new_status=step.status,
                        )
                    if step.retry_count >= step.max_retries:
                        e = RetryExhaustedError(step_id, step.max_retries)
                        logger.info(f"Retry rejected for step {step_id} of execution {execution_id}: {e}")
                        return StepRetryResult(success=False, message=e.message, new_status=step.status)

                    step.status = StepStatus.RETRYING
                    step.retry_count += 1
                    step.completed_at = None
                    runner_alive = task_running and registered
                    break
            # The runner is settling a terminal status; let it deregister first.
            await asyncio.wait({task})

        message = f"Retry {step.retry_count} of {step.max_retries}"
        logger.info(f"Manual retry of step {step_id} in execution {execution_id}: {message}")

        if runner_alive:
            await self.repository.save_execution(execution)
            return StepRetryResult(success=True, message=message, new_status=StepStatus.RETRYING)

        definition = self._definitions.get(execution_id)
        if definition is None or execution.status not in _RESUMABLE_STATUSES:
            await self.repository.save_execution(execution)
            logger.warning(f"Execution {execution_id} cannot be resumed automatically after retry")
            return StepRetryResult(
                success=True,
                message=f"{message}; execution cannot be resumed automatically",
                new_status=StepStatus.RETRYING,
            )

        runbook, options = definition
        previous = execution.status
        with self.registry.lock:
            execution.status = ExecutionStatus.RUNNING
            execution.completed_at = None
        self.registry.register(execution)
        await self.repository.save_execution(execution)
        self._state_changed(execution_id, previous, ExecutionStatus.RUNNING)
        self._launch_runner(execution, runbook, options)
        return StepRetryResult(success=True, message=f"{message}; execution resumed", new_status=StepStatus.RETRYING)

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    async def get_execution_details(self, execution_id: str) -> Optional[ExecutionDetails]:
        """Snapshot of an execution from the registry, falling back to the repository."""
        with self.registry.lock:
            active = self.registry.get(execution_id)
            execution = active.model_copy(deep=True) if active is not None else None
        if execution is None:
            execution = await self.repository.get_execution(execution_id)
        if execution is None:
            return None
        return build_details(execution)

    def active_executions(self) -> List[str]:
        return self.registry.ids()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def register_compensation(self, execution_id: str, for_step_id: str, compensation: CompensationStep) -> bool:
        return self.compensation.register(execution_id, for_step_id, compensation)

    async def rollback(self, execution_id: str, options: Optional[RollbackOptions] = None) -> RollbackResult:
        """Roll back completed steps of an execution in reverse registration order."""
        execution = self.registry.get(execution_id)
        if execution is None:
            execution = await self.repository.get_execution(execution_id)
        return await self.compensation.rollback(execution, options or RollbackOptions())

    # ------------------------------------------------------------------
    # Background task supervision
    # ------------------------------------------------------------------

    async def wait(self, execution_id: str) -> Optional[RunbookExecution]:
        """Await the runner of an execution; re-raises its failure.

        Returns None for unknown executions and for finished ones already pruned
        from retention.
        """
        task = self._tasks.get(execution_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    async def wait_for_rollback(self, execution_id: str) -> Optional[RollbackResult]:
        """Await the rollback an abort launched in the background."""
        task = self._rollback_tasks.get(execution_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Cancel every background task and wait for them to settle."""
        tasks = [t for t in list(self._tasks.values()) + list(self._rollback_tasks.values()) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Controller shut down ({len(tasks)} tasks cancelled)")

    def _launch_runner(
        self,
        execution: RunbookExecution,
        runbook: RunbookDefinition,
        options: ExecutionOptions,
    ) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self.runner.run(execution, runbook, options), name=f"runbook-{execution.id}")
        task.add_done_callback(functools.partial(self._runner_done, execution.id))
        self._tasks[execution.id] = task
        self._definitions[execution.id] = (runbook, options)
        self._finished.pop(execution.id, None)

    def _launch_rollback(self, execution: RunbookExecution) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._abort_rollback(execution), name=f"rollback-{execution.id}")
        task.add_done_callback(functools.partial(self._rollback_done, execution.id))
        self._rollback_tasks[execution.id] = task

    async def _abort_rollback(self, execution: RunbookExecution) -> RollbackResult:
        result = await self.compensation.rollback(execution, RollbackOptions(continue_on_error=True))
        if result.success:
            logger.info(f"Abort rollback of execution {execution.id}: {result.message}")
        else:
            logger.error(f"Abort rollback of execution {execution.id}: {RollbackFailure(result.errors)}")
        return result

    def _runner_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._on_task_done(task)
        if self._tasks.get(execution_id) is not task:
            return
        self._finished[execution_id] = None
        self._finished.move_to_end(execution_id)
        while len(self._finished) > self.settings.finished_execution_retention:
            stale, _ = self._finished.popitem(last=False)
            self._forget(stale)

    def _rollback_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._on_task_done(task)
        if execution_id not in self._tasks and self._rollback_tasks.get(execution_id) is task:
            del self._rollback_tasks[execution_id]

    def _forget(self, execution_id: str) -> None:
        """Drop the retained task, definition and finished rollback of an execution."""
        self._tasks.pop(execution_id, None)
        self._definitions.pop(execution_id, None)
        rollback = self._rollback_tasks.get(execution_id)
        if rollback is not None and rollback.done():
            del self._rollback_tasks[execution_id]
        logger.debug(f"Pruned finished execution {execution_id} from retention")

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        target: ExecutionStatus,
        operation: str,
    ) -> RunbookExecution:
        with self.registry.lock:
            execution = self.registry.require(execution_id)
            if execution.status != expected:
                raise InvalidTransitionError(execution_id, execution.status.value, operation)
            execution.status = target
            return execution

    def _state_changed(self, execution_id: str, previous: ExecutionStatus, current: ExecutionStatus) -> None:
        self.bus.publish(ExecutionStateChangedEvent(
            execution_id=execution_id,
            previous_status=previous,
            current_status=current,
        ))


def build_details(execution: RunbookExecution) -> ExecutionDetails:
    end = execution.completed_at or utcnow()
    return ExecutionDetails(
        execution_id=execution.id,
        runbook_name=execution.runbook_name,
        status=execution.status,
        trigger_info=TriggerInfo(
            reason=execution.trigger_reason,
            triggered_by=execution.triggered_by,
            trigger_type=execution.trigger_type,
            triggered_at=execution.started_at,
        ),
        is_dry_run=execution.is_dry_run,
        steps=[
            StepDetails(
                step_id=s.step_id,
                step_name=s.step_name,
                status=s.status,
                started_at=s.started_at,
                completed_at=s.completed_at,
                output=s.output,
                error=s.error,
                retry_count=s.retry_count,
                max_retries=s.max_retries,
            )
            for s in execution.steps
        ],
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        duration=end - execution.started_at,
        pause_reason=execution.pause_reason,
        abort_reason=execution.abort_reason,
        compensation_steps=list(execution.compensation_steps),
        safety_analysis=execution.safety_analysis,
    )
