"""Safety analysis and gating."""

from runguard.safety.analyzer import SafetyAnalyzer
from runguard.safety.gates import GateBuilder, check_confirmation
from runguard.safety.models import (
    ApprovalRequirement,
    ApprovalType,
    ConfirmationLevel,
    DangerLevel,
    DangerousStepInfo,
    GatedStep,
    GateType,
    RiskLevel,
    RunbookSafetyAnalysis,
)
from runguard.safety.policy import DangerPolicy, DangerRule

__all__ = [
    "SafetyAnalyzer",
    "GateBuilder",
    "check_confirmation",
    "DangerPolicy",
    "DangerRule",
    "ApprovalRequirement",
    "ApprovalType",
    "ConfirmationLevel",
    "DangerLevel",
    "DangerousStepInfo",
    "GatedStep",
    "GateType",
    "RiskLevel",
    "RunbookSafetyAnalysis",
]
