"""Shared pytest fixtures and collaborator fakes for runguard tests."""

import asyncio
from typing import Any, Dict, List, Optional, Union

import pytest

from runguard.collaborators import InMemoryExecutionRepository
from runguard.events import EventBus
from runguard.execution.controller import ExecutionController
from runguard.execution.models import (
    ApprovalRequest,
    ApprovalResult,
    CompensationStep,
    StepExecutionResult,
)
from runguard.runbooks.schema import RunbookDefinition, RunbookStep
from runguard.settings import EngineSettings

Outcome = Union[StepExecutionResult, Exception]


class FakeStepExecutor:
    """Scripted step executor.

    Outcomes are consumed per step id in order; once exhausted the step succeeds.
    """

    def __init__(self) -> None:
        self.outcomes: Dict[str, List[Outcome]] = {}
        self.calls: List[str] = []
        self.compensations_run: List[str] = []
        self.failing_compensations: set = set()
        self.parameters_seen: List[Optional[Dict[str, Any]]] = []
        self._blocks: Dict[str, asyncio.Event] = {}
        self._started: Dict[str, asyncio.Event] = {}

    def script(self, step_id: str, *outcomes: Outcome) -> None:
        self.outcomes.setdefault(step_id, []).extend(outcomes)

    def block(self, step_id: str) -> asyncio.Event:
        """Make the step wait until the returned event is set."""
        event = asyncio.Event()
        self._blocks[step_id] = event
        return event

    async def wait_started(self, step_id: str, timeout: float = 2.0) -> None:
        event = self._started.setdefault(step_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout)

    async def execute_step(self, step: RunbookStep, parameters: Optional[Dict[str, Any]]) -> StepExecutionResult:
        self.calls.append(step.id)
        self.parameters_seen.append(parameters)
        self._started.setdefault(step.id, asyncio.Event()).set()
        gate = self._blocks.get(step.id)
        if gate is not None:
            await gate.wait()
        queue = self.outcomes.get(step.id)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return StepExecutionResult(success=True, output=f"ran {step.id}")

    async def execute_compensation(self, compensation: CompensationStep) -> bool:
        if compensation.id in self.failing_compensations:
            raise RuntimeError(f"cannot undo {compensation.for_step_id}")
        self.compensations_run.append(compensation.id)
        return True


class FakeApprovals:
    """Approval service answering from a per-step decision table (default: approve)."""

    def __init__(self) -> None:
        self.decisions: Dict[str, ApprovalResult] = {}
        self.requests: List[ApprovalRequest] = []

    def deny(self, step_id: str, reason: str) -> None:
        self.decisions[step_id] = ApprovalResult(approved=False, approved_by="lead", reason=reason)

    async def wait_for_approval(self, request: ApprovalRequest) -> ApprovalResult:
        self.requests.append(request)
        return self.decisions.get(request.step_id, ApprovalResult(approved=True, approved_by="lead"))


def make_runbook(*steps: RunbookStep, runbook_id: str = "rb-1", name: str = "Test runbook") -> RunbookDefinition:
    return RunbookDefinition(id=runbook_id, name=name, steps=list(steps))


def make_step(step_id: str, name: Optional[str] = None, **kwargs: Any) -> RunbookStep:
    return RunbookStep(id=step_id, name=name or f"Step {step_id}", **kwargs)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        pause_poll_interval=0.01,
        dry_run_step_delay=0.0,
        retry_delay_seconds=0.0,
    )


@pytest.fixture
def repository() -> InMemoryExecutionRepository:
    return InMemoryExecutionRepository()


@pytest.fixture
def executor() -> FakeStepExecutor:
    return FakeStepExecutor()


@pytest.fixture
def approvals() -> FakeApprovals:
    return FakeApprovals()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus: EventBus) -> List[Any]:
    received: List[Any] = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def controller(repository, executor, approvals, bus, settings) -> ExecutionController:
    return ExecutionController(
        repository=repository,
        step_executor=executor,
        approvals=approvals,
        bus=bus,
        settings=settings,
    )
