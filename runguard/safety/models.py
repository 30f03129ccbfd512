"""Safety classification models."""

from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class DangerLevel(str, Enum):
    """Danger of a single step."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _DANGER_ORDER[self]


class RiskLevel(str, Enum):
    """Overall risk of a runbook."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]


_DANGER_ORDER: Dict[DangerLevel, int] = {
    DangerLevel.NONE: 0,
    DangerLevel.LOW: 1,
    DangerLevel.MEDIUM: 2,
    DangerLevel.HIGH: 3,
    DangerLevel.CRITICAL: 4,
}

_RISK_ORDER: Dict[RiskLevel, int] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class ApprovalType(str, Enum):
    SINGLE_APPROVAL = "single_approval"
    MULTI_PERSON = "multi_person"
    TEAM_LEAD = "team_lead"
    ADMIN = "admin"


class GateType(str, Enum):
    CONFIRMATION = "confirmation"
    APPROVAL = "approval"


class ConfirmationLevel(str, Enum):
    STANDARD = "standard"
    TYPE_TO_CONFIRM = "type_to_confirm"
    TIMED_CONFIRMATION = "timed_confirmation"


class DangerousStepInfo(BaseModel):
    """A step the analyzer flagged as dangerous."""

    step_id: str = Field(description="ID of the flagged step")
    step_name: str = Field(description="Name of the flagged step")
    danger_level: DangerLevel = Field(description="Classified danger level")
    reason: str = Field(description="Why the step is considered dangerous")
    mitigations: List[str] = Field(default_factory=list, description="Suggested mitigations")


class ApprovalRequirement(BaseModel):
    """An approval the runbook needs before it may run."""

    step_id: str = Field(description="Step requiring approval")
    reason: str = Field(description="Human-readable reason")
    approval_type: ApprovalType = Field(description="Kind of approval required")
    expires_after: timedelta = Field(default=timedelta(hours=24), description="Approval validity window")


class RunbookSafetyAnalysis(BaseModel):
    """Safety verdict for a runbook, computed fresh on every analysis."""

    runbook_id: str = Field(description="Analyzed runbook ID")
    overall_risk: RiskLevel = Field(description="Aggregate risk level")
    dangerous_steps: List[DangerousStepInfo] = Field(default_factory=list)
    required_approvals: List[ApprovalRequirement] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    can_run_automatically: bool = Field(description="Whether an unattended start is allowed")
    recommends_dry_run: bool = Field(description="Whether a dry run should precede a real run")

    def finding_for(self, step_id: str) -> Optional[DangerousStepInfo]:
        for finding in self.dangerous_steps:
            if finding.step_id == step_id:
                return finding
        return None


class GatedStep(BaseModel):
    """Confirmation or approval checkpoint attached to a step. Never persisted."""

    step_id: str
    gate_type: GateType
    message: str
    level: ConfirmationLevel = ConfirmationLevel.STANDARD
    requires_typed_confirmation: bool = False
    confirmation_text: Optional[str] = None
    timeout_seconds: Optional[int] = None
    approval_type: ApprovalType = ApprovalType.SINGLE_APPROVAL
    required_approvers: Optional[List[str]] = None
    expires_after: Optional[timedelta] = None
