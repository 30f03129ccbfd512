# runguard/server.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .collaborators import (
    ApprovalBroker,
    InMemoryExecutionRepository,
    UnconfiguredStepExecutor,
    load_collaborator,
)
from .exceptions import NotFoundError
from .execution.controller import ExecutionController
from .execution.models import AbortOptions, ExecutionOptions, RollbackOptions
from .notifications.webhook import WebhookNotifier
from .runbooks.registry import RunbookRegistry, discover_runbooks
from .runbooks.schema import RunbookDefinition
from .settings import EngineSettings, get_settings

logger = logging.getLogger(__name__)


class StartRequest(BaseModel):
    runbook: RunbookDefinition
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)


class DryRunRequest(BaseModel):
    runbook: RunbookDefinition
    parameters: Optional[Dict[str, Any]] = None


class PauseRequest(BaseModel):
    reason: str = ""


class ApprovalDecision(BaseModel):
    approved: bool
    actor: str
    reason: Optional[str] = None


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


# returned by the approval routes when the controller's approvals are not an ApprovalBroker
NO_BROKER_MESSAGE = "Approvals are not handled by this server"


def build_controller(settings: Optional[EngineSettings] = None) -> tuple[ExecutionController, ApprovalBroker]:
    """Wire a controller from settings with the in-memory repository and approval broker."""
    settings = settings or get_settings()
    executor = load_collaborator(settings.step_executor) if settings.step_executor else UnconfiguredStepExecutor()
    approvals = ApprovalBroker()
    controller = ExecutionController(
        repository=InMemoryExecutionRepository(),
        step_executor=executor,
        approvals=approvals,
        settings=settings,
    )

    notifier = WebhookNotifier(settings.notifications)
    if notifier.active:
        notifier.attach(controller.bus)
        logger.info(f"Forwarding events to webhook {settings.notifications.webhook_url}")
    return controller, approvals


def create_app(
    controller: Optional[ExecutionController] = None,
    approvals: Optional[ApprovalBroker] = None,
    registry: Optional[RunbookRegistry] = None,
) -> FastAPI:
    if controller is None:
        controller, approvals = build_controller()
    if approvals is None and isinstance(controller.approvals, ApprovalBroker):
        approvals = controller.approvals
    packs_dir = controller.settings.packs_dir
    registry = registry or RunbookRegistry(packs_dir)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await controller.shutdown()

    app = FastAPI(title="runguard", version=__version__, lifespan=lifespan)
    app.state.controller = controller
    app.state.approvals = approvals

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": f"runguard-{__version__}"}

    # ------------------------------------------------------------------
    # Runbooks
    # ------------------------------------------------------------------

    @app.get("/api/runbooks")
    async def list_runbooks():
        return {"ok": True, "runbooks": discover_runbooks(registry.packs_dir)}

    @app.get("/api/runbooks/{name}")
    async def get_runbook(name: str):
        try:
            runbook = registry.load(name)
        except NotFoundError as e:
            return _error(e.message, 404)
        return {"ok": True, "runbook": runbook.model_dump(mode="json")}

    @app.post("/api/runbooks/analyze")
    async def analyze_runbook(runbook: RunbookDefinition):
        analysis = controller.analyze(runbook)
        gates = [
            g.model_dump(mode="json")
            for step in runbook.steps
            for g in controller.gates.gates_for_step(step, analysis.finding_for(step.id))
        ]
        return {"ok": True, "analysis": analysis.model_dump(mode="json"), "gates": gates}

    @app.post("/api/runbooks/dry-run")
    async def dry_run_runbook(req: DryRunRequest):
        result = controller.dry_run(req.runbook, req.parameters)
        return {"ok": True, "result": result.model_dump(mode="json")}

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    @app.post("/api/executions")
    async def start_execution(req: StartRequest):
        result = await controller.start(req.runbook, req.options)
        started = result.execution_id is not None
        body = {"ok": started, "result": result.model_dump(mode="json")}
        return JSONResponse(body, status_code=202 if started else 409)

    @app.get("/api/executions")
    async def list_executions():
        return {"ok": True, "active": controller.active_executions()}

    @app.get("/api/executions/{execution_id}")
    async def execution_details(execution_id: str):
        details = await controller.get_execution_details(execution_id)
        if details is None:
            return _error("Execution not found", 404)
        return {"ok": True, "execution": details.model_dump(mode="json")}

    @app.post("/api/executions/{execution_id}/pause")
    async def pause_execution(execution_id: str, req: Optional[PauseRequest] = None):
        reason = req.reason if req is not None else ""
        if not await controller.pause(execution_id, reason):
            return _error("Execution is not running", 409)
        return {"ok": True, "status": "paused"}

    @app.post("/api/executions/{execution_id}/resume")
    async def resume_execution(execution_id: str):
        if not await controller.resume(execution_id):
            return _error("Execution is not paused", 409)
        return {"ok": True, "status": "running"}

    @app.post("/api/executions/{execution_id}/abort")
    async def abort_execution(execution_id: str, options: Optional[AbortOptions] = None):
        result = await controller.abort(execution_id, options)
        if not result.success:
            return _error(result.message, 404 if result.message == "Execution not found" else 409)
        return {"ok": True, "result": result.model_dump(mode="json")}

    @app.post("/api/executions/{execution_id}/steps/{step_id}/retry")
    async def retry_step(execution_id: str, step_id: str):
        result = await controller.retry_step(execution_id, step_id)
        if not result.success:
            status = 404 if result.message.endswith("not found") else 409
            return JSONResponse({"ok": False, "error": result.message, "result": result.model_dump(mode="json")},
                                status_code=status)
        return {"ok": True, "result": result.model_dump(mode="json")}

    @app.post("/api/executions/{execution_id}/rollback")
    async def rollback_execution(execution_id: str, options: Optional[RollbackOptions] = None):
        result = await controller.rollback(execution_id, options)
        if result.message == "Execution not found":
            return _error(result.message, 404)
        return {"ok": result.success, "result": result.model_dump(mode="json")}

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    @app.get("/api/approvals")
    async def pending_approvals():
        if approvals is None:
            return _error(NO_BROKER_MESSAGE, 404)
        return {"ok": True, "pending": [r.model_dump(mode="json") for r in approvals.pending()]}

    @app.post("/api/approvals/{execution_id}/{step_id}")
    async def decide_approval(execution_id: str, step_id: str, decision: ApprovalDecision):
        if approvals is None:
            return _error(NO_BROKER_MESSAGE, 404)
        try:
            if decision.approved:
                approvals.approve(execution_id, step_id, decision.actor, decision.reason)
            else:
                approvals.deny(execution_id, step_id, decision.actor, decision.reason)
        except NotFoundError as e:
            return _error(e.message, 404)
        return {"ok": True, "approved": decision.approved}

    return app
