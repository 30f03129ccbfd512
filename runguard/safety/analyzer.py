"""Runbook safety analysis: danger classification, approvals and warnings."""

import logging
from datetime import timedelta
from typing import List, Optional

from runguard.runbooks.schema import RunbookDefinition, RunbookStep
from runguard.safety.models import (
    ApprovalRequirement,
    ApprovalType,
    DangerLevel,
    DangerousStepInfo,
    RiskLevel,
    RunbookSafetyAnalysis,
)
from runguard.safety.policy import DangerPolicy

logger = logging.getLogger(__name__)


class SafetyAnalyzer:
    """Classifies runbook steps by danger and derives the gating they need."""

    def __init__(
        self,
        policy: Optional[DangerPolicy] = None,
        approval_expiry: timedelta = timedelta(hours=24),
    ):
        """Initialize safety analyzer.

        Args:
            policy: Danger classification policy (default keyword rule table)
            approval_expiry: Validity window attached to derived approval requirements
        """
        self.policy = policy or DangerPolicy()
        self.approval_expiry = approval_expiry

    def analyze(self, runbook: RunbookDefinition) -> RunbookSafetyAnalysis:
        """Analyze a runbook for dangerous steps and required approvals.

        Pure function of the runbook: calling it twice yields equal results.

        Args:
            runbook: Runbook definition to analyze

        Returns:
            Safety analysis verdict
        """
        dangerous_steps: List[DangerousStepInfo] = []
        required_approvals: List[ApprovalRequirement] = []
        warnings: List[str] = []

        for step in runbook.steps:
            level = self.classify_step(step)
            if level.rank > DangerLevel.NONE.rank:
                reason = danger_reason(step)
                dangerous_steps.append(DangerousStepInfo(
                    step_id=step.id,
                    step_name=step.name,
                    danger_level=level,
                    reason=reason,
                    mitigations=mitigations_for(step),
                ))

                if level.rank >= DangerLevel.HIGH.rank:
                    required_approvals.append(ApprovalRequirement(
                        step_id=step.id,
                        reason=f"Step '{step.name}' performs {reason}",
                        approval_type=(
                            ApprovalType.MULTI_PERSON
                            if level == DangerLevel.CRITICAL
                            else ApprovalType.SINGLE_APPROVAL
                        ),
                        expires_after=self.approval_expiry,
                    ))

            if step.is_destructive and not step.has_confirmation:
                warnings.append(f"Step '{step.name}' is destructive but has no confirmation gate")

            if step.affects_production and not step.has_approval_gate:
                warnings.append(f"Step '{step.name}' affects production but has no approval gate")

        overall_risk = overall_risk_for(dangerous_steps)
        can_run_automatically = overall_risk.rank <= RiskLevel.LOW.rank and not required_approvals

        logger.debug(
            f"Analyzed runbook {runbook.id}: risk={overall_risk.value} "
            f"dangerous={len(dangerous_steps)} approvals={len(required_approvals)}"
        )

        return RunbookSafetyAnalysis(
            runbook_id=runbook.id,
            overall_risk=overall_risk,
            dangerous_steps=dangerous_steps,
            required_approvals=required_approvals,
            warnings=warnings,
            can_run_automatically=can_run_automatically,
            recommends_dry_run=bool(dangerous_steps),
        )

    def classify_step(self, step: RunbookStep) -> DangerLevel:
        return self.policy.classify(step)


def overall_risk_for(dangerous_steps: List[DangerousStepInfo]) -> RiskLevel:
    """Aggregate per-step findings into an overall runbook risk."""
    if not dangerous_steps:
        return RiskLevel.LOW
    levels = {s.danger_level for s in dangerous_steps}
    if DangerLevel.CRITICAL in levels:
        return RiskLevel.CRITICAL
    if DangerLevel.HIGH in levels:
        return RiskLevel.HIGH
    if len(dangerous_steps) > 3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def danger_reason(step: RunbookStep) -> str:
    if step.is_destructive:
        return "destructive operation"
    if step.affects_production:
        return "production environment changes"
    if "delete" in (step.command or "").lower():
        return "data deletion"
    return "potentially impactful changes"


def mitigations_for(step: RunbookStep) -> List[str]:
    mitigations = []

    if step.is_destructive:
        mitigations.append("Add confirmation gate before step")
        mitigations.append("Create backup before execution")

    if step.affects_production:
        mitigations.append("Require approval from team lead")
        mitigations.append("Run in staging first")

    mitigations.append("Enable dry-run mode")
    mitigations.append("Register compensation step for rollback")

    return mitigations
