"""Runbook execution engine: registry, runner, compensation and controller."""

from runguard.execution.compensation import CompensationManager
from runguard.execution.controller import ExecutionController
from runguard.execution.dry_run import DryRunSimulator
from runguard.execution.models import (
    AbortOptions,
    AbortResult,
    ApprovalRequest,
    ApprovalResult,
    CompensationStep,
    DryRunResult,
    DryRunStepResult,
    ExecutionDetails,
    ExecutionOptions,
    ExecutionStatus,
    ExecutionTriggerType,
    RollbackOptions,
    RollbackResult,
    RunbookExecution,
    RunbookExecutionResult,
    StepExecution,
    StepExecutionResult,
    StepRetryResult,
    StepStatus,
)
from runguard.execution.registry import ExecutionRegistry
from runguard.execution.runner import StepRunner

__all__ = [
    "ExecutionController",
    "ExecutionRegistry",
    "StepRunner",
    "CompensationManager",
    "DryRunSimulator",
    "AbortOptions",
    "AbortResult",
    "ApprovalRequest",
    "ApprovalResult",
    "CompensationStep",
    "DryRunResult",
    "DryRunStepResult",
    "ExecutionDetails",
    "ExecutionOptions",
    "ExecutionStatus",
    "ExecutionTriggerType",
    "RollbackOptions",
    "RollbackResult",
    "RunbookExecution",
    "RunbookExecutionResult",
    "StepExecution",
    "StepExecutionResult",
    "StepRetryResult",
    "StepStatus",
]
