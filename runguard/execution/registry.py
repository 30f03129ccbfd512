"""In-memory index of in-flight executions."""

import logging
import threading
from typing import Dict, List, Optional

from runguard.exceptions import NotFoundError
from runguard.execution.models import RunbookExecution

logger = logging.getLogger(__name__)


class ExecutionRegistry:
    """Thread-safe map of execution id -> live RunbookExecution.

    Every controller operation and step runner goes through this object, so a
    persistent or distributed index can replace it without touching callers.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._executions: Dict[str, RunbookExecution] = {}

    def register(self, execution: RunbookExecution) -> None:
        with self._lock:
            self._executions[execution.id] = execution
        logger.debug(f"Registered execution {execution.id}")

    def get(self, execution_id: str) -> Optional[RunbookExecution]:
        with self._lock:
            return self._executions.get(execution_id)

    def require(self, execution_id: str) -> RunbookExecution:
        """Get an active execution or raise NotFoundError."""
        execution = self.get(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def remove(self, execution_id: str) -> Optional[RunbookExecution]:
        with self._lock:
            execution = self._executions.pop(execution_id, None)
        if execution is not None:
            logger.debug(f"Deregistered execution {execution_id}")
        return execution

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._executions)

    def snapshot(self) -> Dict[str, RunbookExecution]:
        """Copy of the active executions for read-only use."""
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._executions.items()}

    @property
    def lock(self) -> threading.RLock:
        """Lock guarding compound read-modify-write sequences on registered executions."""
        return self._lock

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._executions

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)
