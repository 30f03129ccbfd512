from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from runguard.runbooks.schema import RunbookStep
from .models import (
    ApprovalType,
    ConfirmationLevel,
    DangerLevel,
    DangerousStepInfo,
    GatedStep,
    GateType,
)

TYPED_CONFIRMATION_TEXT = "DELETE"
TIMED_CONFIRMATION_SECONDS = 30
DEFAULT_APPROVAL_EXPIRY = timedelta(hours=24)


class GateBuilder:
    """
    Pure factories for gate descriptors.
    The step runner consults the approval gate; confirmation gates are surfaced to callers.
    """

    def __init__(self, approval_expiry: timedelta = DEFAULT_APPROVAL_EXPIRY) -> None:
        self.approval_expiry = approval_expiry

    def confirmation_gate(
        self,
        step_id: str,
        message: str,
        level: ConfirmationLevel = ConfirmationLevel.STANDARD,
    ) -> GatedStep:
        typed = level == ConfirmationLevel.TYPE_TO_CONFIRM
        return GatedStep(
            step_id=step_id,
            gate_type=GateType.CONFIRMATION,
            message=message,
            level=level,
            requires_typed_confirmation=typed,
            confirmation_text=TYPED_CONFIRMATION_TEXT if typed else None,
            timeout_seconds=TIMED_CONFIRMATION_SECONDS if level == ConfirmationLevel.TIMED_CONFIRMATION else None,
        )

    def approval_gate(
        self,
        step_id: str,
        reason: str,
        approval_type: ApprovalType = ApprovalType.SINGLE_APPROVAL,
        required_approvers: Optional[List[str]] = None,
    ) -> GatedStep:
        return GatedStep(
            step_id=step_id,
            gate_type=GateType.APPROVAL,
            message=reason,
            approval_type=approval_type,
            required_approvers=list(required_approvers) if required_approvers is not None else None,
            expires_after=self.approval_expiry,
        )

    def gates_for_step(self, step: RunbookStep, finding: Optional[DangerousStepInfo] = None) -> List[GatedStep]:
        """Derive the gates a step carries from its flags and its safety finding."""
        gates = []
        if step.has_confirmation:
            level = ConfirmationLevel.TYPE_TO_CONFIRM if step.is_destructive else ConfirmationLevel.STANDARD
            gates.append(self.confirmation_gate(step.id, f"Confirm step '{step.name}'", level))
        if step.has_approval_gate:
            critical = finding is not None and finding.danger_level == DangerLevel.CRITICAL
            gates.append(self.approval_gate(
                step.id,
                f"Step '{step.name}' requires approval before proceeding",
                ApprovalType.MULTI_PERSON if critical else ApprovalType.SINGLE_APPROVAL,
            ))
        return gates


def check_confirmation(gate: GatedStep, typed_text: Optional[str]) -> bool:
    """Typed confirmations require a literal, case-sensitive match; other gates pass."""
    if gate.gate_type != GateType.CONFIRMATION or not gate.requires_typed_confirmation:
        return True
    return (typed_text or "") == gate.confirmation_text
