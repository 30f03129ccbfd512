from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

from runguard.runbooks.schema import RunbookDefinition, RunbookStep
from runguard.safety.analyzer import SafetyAnalyzer
from .models import DryRunResult, DryRunStepResult

DEFAULT_STEP_DURATION_SECONDS = 30


class DryRunSimulator:
    """Predicts a run's outcome without touching the registry or the repository."""

    def __init__(self, analyzer: SafetyAnalyzer, default_step_duration: int = DEFAULT_STEP_DURATION_SECONDS) -> None:
        self.analyzer = analyzer
        self.default_step_duration = default_step_duration

    def simulate(self, runbook: RunbookDefinition, parameters: Optional[Dict[str, Any]] = None) -> DryRunResult:
        analysis = self.analyzer.analyze(runbook)
        simulated = [self.simulate_step(step, parameters) for step in runbook.steps]

        step_warnings = [w for s in simulated for w in s.warnings]
        return DryRunResult(
            runbook_id=runbook.id,
            simulated_steps=simulated,
            would_succeed=all(s.would_succeed for s in simulated),
            safety_analysis=analysis,
            estimated_duration=timedelta(seconds=sum(s.estimated_duration_seconds for s in simulated)),
            required_approvals=analysis.required_approvals,
            warnings=analysis.warnings + step_warnings,
        )

    def simulate_step(self, step: RunbookStep, parameters: Optional[Dict[str, Any]] = None) -> DryRunStepResult:
        warnings = []
        if step.is_destructive:
            warnings.append("This step is destructive")
        if step.affects_production:
            warnings.append("This step affects production")

        return DryRunStepResult(
            step_id=step.id,
            step_name=step.name,
            would_succeed=True,
            simulated_output=f"[SIMULATED] {step.name} would execute: {step.command or ''}",
            estimated_duration_seconds=step.timeout_seconds or self.default_step_duration,
            warnings=warnings,
            requires_approval=step.has_approval_gate,
        )
