"""Execution state, options and result records."""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from runguard.safety.models import ApprovalRequirement, GatedStep, RunbookSafetyAnalysis


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Status of a runbook execution."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    ABORTING = "aborting"
    ABORTED = "aborted"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.COMPLETED_WITH_ERRORS,
    ExecutionStatus.FAILED,
    ExecutionStatus.ABORTED,
    ExecutionStatus.BLOCKED,
})


class StepStatus(str, Enum):
    """Status of a single step within an execution."""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


RUNNABLE_STEP_STATUSES = frozenset({StepStatus.PENDING, StepStatus.RETRYING})


class ExecutionTriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    ALERT = "alert"
    WEBHOOK = "webhook"
    PIPELINE = "pipeline"


class CompensationStep(BaseModel):
    """Inverse action registered after a successful step, replayed on rollback."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique compensation ID")
    for_step_id: str = Field(default="", description="Step this compensation undoes")
    description: str = Field(description="Human-readable description")
    command: str = Field(description="Reversal command")


class StepExecution(BaseModel):
    """Runtime state of one step, positionally matching the definition."""

    step_id: str
    step_name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0


class RunbookExecution(BaseModel):
    """One invocation of a runbook."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique execution ID")
    runbook_id: str = Field(description="Source runbook ID")
    runbook_name: str = Field(description="Source runbook name")
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)

    trigger_reason: str = Field(default="", description="Why the runbook was started")
    triggered_by: str = Field(default="", description="Who or what started the runbook")
    trigger_type: ExecutionTriggerType = Field(default=ExecutionTriggerType.MANUAL)

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    aborted_at: Optional[datetime] = None
    abort_reason: Optional[str] = None

    is_dry_run: bool = False
    steps: List[StepExecution] = Field(default_factory=list)
    compensation_steps: List[CompensationStep] = Field(default_factory=list)
    safety_analysis: Optional[RunbookSafetyAnalysis] = None

    def find_step(self, step_id: str) -> Optional[StepExecution]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def step_position(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.step_id == step_id:
                return i
        return -1


class ExecutionOptions(BaseModel):
    trigger_reason: str = ""
    triggered_by: str = ""
    trigger_type: ExecutionTriggerType = ExecutionTriggerType.MANUAL
    dry_run: bool = False
    manual_trigger: bool = True
    continue_on_error: bool = False
    auto_retry: bool = True
    parameters: Optional[Dict[str, Any]] = None


class RunbookExecutionResult(BaseModel):
    execution_id: Optional[str]
    status: ExecutionStatus
    message: str
    safety_analysis: RunbookSafetyAnalysis


class AbortOptions(BaseModel):
    reason: str = ""
    run_compensation: bool = True
    # Also cancel the runner task, interrupting an in-flight step or approval wait
    cancel_in_flight: bool = False


class AbortResult(BaseModel):
    success: bool
    message: str
    compensation_triggered: bool = False


class StepRetryResult(BaseModel):
    success: bool
    message: str
    new_status: Optional[StepStatus] = None


class TriggerInfo(BaseModel):
    reason: str
    triggered_by: str
    trigger_type: ExecutionTriggerType
    triggered_at: datetime


class StepDetails(BaseModel):
    step_id: str
    step_name: str
    status: StepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0


class ExecutionDetails(BaseModel):
    execution_id: str
    runbook_name: str
    status: ExecutionStatus
    trigger_info: TriggerInfo
    is_dry_run: bool
    steps: List[StepDetails]
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration: timedelta
    pause_reason: Optional[str] = None
    abort_reason: Optional[str] = None
    compensation_steps: List[CompensationStep] = Field(default_factory=list)
    safety_analysis: Optional[RunbookSafetyAnalysis] = None


class RollbackOptions(BaseModel):
    rollback_to_step: Optional[str] = None
    dry_run: bool = False
    continue_on_error: bool = True


class RollbackResult(BaseModel):
    success: bool
    message: str
    rolled_back_steps: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class DryRunStepResult(BaseModel):
    step_id: str
    step_name: str
    would_succeed: bool
    simulated_output: str
    estimated_duration_seconds: int
    warnings: List[str] = Field(default_factory=list)
    requires_approval: bool = False


class DryRunResult(BaseModel):
    runbook_id: str
    simulated_steps: List[DryRunStepResult]
    would_succeed: bool
    safety_analysis: RunbookSafetyAnalysis
    estimated_duration: timedelta
    required_approvals: List[ApprovalRequirement] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ApprovalRequest(BaseModel):
    execution_id: str
    step_id: str
    step_name: str
    reason: str
    requested_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    gate: Optional[GatedStep] = None


class ApprovalResult(BaseModel):
    approved: bool
    approved_by: Optional[str] = None
    reason: Optional[str] = None
    approved_at: Optional[datetime] = None


class StepExecutionResult(BaseModel):
    success: bool = True
    output: Optional[str] = None
    compensation_step: Optional[CompensationStep] = None
