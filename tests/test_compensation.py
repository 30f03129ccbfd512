"""Tests for compensation registration and rollback."""

import pytest

from runguard.execution.compensation import CompensationManager
from runguard.execution.models import (
    CompensationStep,
    RollbackOptions,
    RunbookExecution,
    StepExecution,
)
from runguard.execution.registry import ExecutionRegistry


def _execution(*step_ids):
    return RunbookExecution(
        runbook_id="rb-1",
        runbook_name="Test runbook",
        steps=[StepExecution(step_id=s, step_name=s.upper()) for s in step_ids],
    )


def _compensation(comp_id):
    return CompensationStep(id=comp_id, description=f"undo {comp_id}", command=f"undo {comp_id}")


@pytest.fixture
def registry():
    return ExecutionRegistry()


@pytest.fixture
def manager(registry, executor):
    return CompensationManager(registry, executor)


@pytest.fixture
def execution(registry, manager):
    execution = _execution("a", "b", "c")
    registry.register(execution)
    manager.register(execution.id, "a", _compensation("c1"))
    manager.register(execution.id, "b", _compensation("c2"))
    manager.register(execution.id, "c", _compensation("c3"))
    return execution


def test_register_binds_step_id(execution):
    assert [(c.id, c.for_step_id) for c in execution.compensation_steps] == [
        ("c1", "a"), ("c2", "b"), ("c3", "c"),
    ]


def test_register_requires_active_execution(manager):
    assert manager.register("missing", "a", _compensation("c1")) is False


@pytest.mark.asyncio
async def test_rollback_runs_in_reverse_order(manager, execution, executor):
    result = await manager.rollback(execution, RollbackOptions())

    assert result.success is True
    assert result.message == "Rolled back 3 steps"
    assert result.rolled_back_steps == ["c", "b", "a"]
    assert executor.compensations_run == ["c3", "c2", "c1"]


@pytest.mark.asyncio
async def test_rollback_to_step(manager, execution, executor):
    result = await manager.rollback(execution, RollbackOptions(rollback_to_step="b"))

    assert result.rolled_back_steps == ["c", "b"]
    assert executor.compensations_run == ["c3", "c2"]


@pytest.mark.asyncio
async def test_dry_run_rollback_executes_nothing(manager, execution, executor):
    result = await manager.rollback(execution, RollbackOptions(dry_run=True))

    assert result.success is True
    assert result.rolled_back_steps == [
        "[DRY RUN] Would rollback: undo c3",
        "[DRY RUN] Would rollback: undo c2",
        "[DRY RUN] Would rollback: undo c1",
    ]
    assert executor.compensations_run == []


@pytest.mark.asyncio
async def test_errors_are_collected(manager, execution, executor):
    executor.failing_compensations.add("c2")

    result = await manager.rollback(execution, RollbackOptions())

    assert result.success is False
    assert result.message == "Rollback completed with 1 errors"
    assert result.errors == ["Failed to rollback b: cannot undo b"]
    assert executor.compensations_run == ["c3", "c1"]


@pytest.mark.asyncio
async def test_stop_on_first_error(manager, execution, executor):
    executor.failing_compensations.add("c3")

    result = await manager.rollback(execution, RollbackOptions(continue_on_error=False))

    assert result.success is False
    assert result.rolled_back_steps == []
    assert executor.compensations_run == []


@pytest.mark.asyncio
@pytest.mark.parametrize("dry_run", [True, False])
@pytest.mark.parametrize("continue_on_error", [True, False])
async def test_no_compensations_is_a_failure(manager, registry, executor, dry_run, continue_on_error):
    execution = _execution("a")
    registry.register(execution)

    result = await manager.rollback(
        execution, RollbackOptions(dry_run=dry_run, continue_on_error=continue_on_error)
    )

    assert result.success is False
    assert result.message == "No compensation steps registered"
    assert executor.compensations_run == []


@pytest.mark.asyncio
async def test_unknown_execution(manager):
    result = await manager.rollback(None, RollbackOptions())
    assert result.success is False
    assert result.message == "Execution not found"


@pytest.mark.asyncio
async def test_false_return_counts_as_failure(registry, execution):
    class Refusing:
        async def execute_compensation(self, compensation):
            return False

    result = await CompensationManager(registry, Refusing()).rollback(execution, RollbackOptions())

    assert result.success is False
    assert len(result.errors) == 3
    assert result.errors[0] == "Failed to rollback c: compensation reported failure"
