from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Set, Tuple, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)


# Outbound notifications. These dataclasses keep payloads consistent between
# in-process subscribers, the webhook notifier and the HTTP surface.

EventType = Literal["approval_required", "step_completed", "execution_state_changed"]


@dataclass
class ApprovalRequiredEvent:
    type: Literal["approval_required"] = "approval_required"
    request: Any = None  # ApprovalRequest


@dataclass
class StepCompletedEvent:
    type: Literal["step_completed"] = "step_completed"
    execution_id: str = ""
    step_id: str = ""
    step_name: str = ""
    success: bool = False
    output: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ExecutionStateChangedEvent:
    type: Literal["execution_state_changed"] = "execution_state_changed"
    execution_id: str = ""
    previous_status: Any = None  # ExecutionStatus
    current_status: Any = None  # ExecutionStatus


Event = Union[ApprovalRequiredEvent, StepCompletedEvent, ExecutionStateChangedEvent]
Handler = Callable[[Event], Union[None, Awaitable[None]]]


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    return value


def asdict(event: Any) -> Dict[str, Any]:
    """
    Convert known event dataclasses to dict.
    Keeps a consistent structure for JSON payloads.
    """
    if isinstance(event, dict):
        return event
    if hasattr(event, "__dict__"):
        return {k: _plain(v) for k, v in event.__dict__.items()}
    return {"type": "error_event", "message": "Unknown event type", "detail": {"repr": repr(event)}}


class EventBus:
    """
    Observer fan-out for engine notifications.

    Sync handlers run inline; async handlers are scheduled on the running loop.
    A failing handler is logged and never affects other handlers or the engine.
    """

    def __init__(self) -> None:
        self._handlers: List[Tuple[Handler, Optional[Set[str]]]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, handler: Handler, event_types: Optional[List[str]] = None) -> Callable[[], None]:
        entry = (handler, set(event_types) if event_types else None)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def clear(self) -> None:
        self._handlers.clear()

    def publish(self, event: Event) -> None:
        for handler, event_types in list(self._handlers):
            if event_types is not None and event.type not in event_types:
                continue
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Event handler {handler!r} failed on {event.type}: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, event)

    def _schedule(self, awaitable: Awaitable[None], event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(_guarded(awaitable, event))
            return
        task = loop.create_task(_guarded(awaitable, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


async def _guarded(awaitable: Awaitable[None], event: Event) -> None:
    try:
        await awaitable
    except Exception as e:
        logger.error(f"Async event handler failed on {event.type}: {e}", exc_info=True)
