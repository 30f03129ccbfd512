"""Tests for gate descriptors and typed confirmation."""

from datetime import timedelta

from runguard.safety.gates import GateBuilder, check_confirmation
from runguard.safety.models import (
    ApprovalType,
    ConfirmationLevel,
    DangerLevel,
    DangerousStepInfo,
    GateType,
)

from conftest import make_step


def test_type_to_confirm_gate():
    gate = GateBuilder().confirmation_gate("s1", "Really?", ConfirmationLevel.TYPE_TO_CONFIRM)
    assert gate.gate_type == GateType.CONFIRMATION
    assert gate.requires_typed_confirmation is True
    assert gate.confirmation_text == "DELETE"
    assert gate.timeout_seconds is None


def test_timed_confirmation_gate():
    gate = GateBuilder().confirmation_gate("s1", "Wait", ConfirmationLevel.TIMED_CONFIRMATION)
    assert gate.requires_typed_confirmation is False
    assert gate.confirmation_text is None
    assert gate.timeout_seconds == 30


def test_approval_gate_carries_expiry():
    gate = GateBuilder(approval_expiry=timedelta(hours=1)).approval_gate(
        "s1", "needs a lead", ApprovalType.TEAM_LEAD, ["alice", "bob"]
    )
    assert gate.gate_type == GateType.APPROVAL
    assert gate.approval_type == ApprovalType.TEAM_LEAD
    assert gate.required_approvers == ["alice", "bob"]
    assert gate.expires_after == timedelta(hours=1)


def test_gates_for_step():
    builder = GateBuilder()
    step = make_step("purge", "Purge cache", is_destructive=True, has_confirmation=True,
                     affects_production=True, has_approval_gate=True)
    finding = DangerousStepInfo(step_id="purge", step_name="Purge cache",
                                danger_level=DangerLevel.CRITICAL, reason="destructive operation")

    confirmation, approval = builder.gates_for_step(step, finding)
    assert confirmation.level == ConfirmationLevel.TYPE_TO_CONFIRM
    assert approval.approval_type == ApprovalType.MULTI_PERSON

    _, approval = builder.gates_for_step(step)
    assert approval.approval_type == ApprovalType.SINGLE_APPROVAL

    assert builder.gates_for_step(make_step("plain")) == []


def test_check_confirmation_is_literal():
    builder = GateBuilder()
    typed = builder.confirmation_gate("s1", "m", ConfirmationLevel.TYPE_TO_CONFIRM)
    assert check_confirmation(typed, "DELETE") is True
    assert check_confirmation(typed, "delete") is False
    assert check_confirmation(typed, None) is False

    standard = builder.confirmation_gate("s1", "m")
    assert check_confirmation(standard, None) is True
    assert check_confirmation(builder.approval_gate("s1", "r"), "anything") is True
