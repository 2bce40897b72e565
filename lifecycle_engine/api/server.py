"""
FastAPI Server for the Lifecycle Engine.

Provides REST API endpoints for starting, inspecting and cancelling
onboarding and offboarding workflows.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .. import __version__
from ..config import build_orchestrator, load_config
from ..engine import WorkflowOrchestrator
from ..exceptions import ValidationError, WorkflowNotFoundError
from ..models import WorkflowStatus
from ..workflows import parse_workflow_kind

logger = logging.getLogger(__name__)


# Pydantic models for API requests/responses
class StartWorkflowRequest(BaseModel):
    """Workflow start request."""
    kind: str = Field(..., description="Workflow kind (onboarding or offboarding)")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Flat key/value workflow inputs")


class StartWorkflowResponse(BaseModel):
    """Workflow start response."""
    instance_id: str
    kind: str
    subject_identity: str
    status: str


class CancelResponse(BaseModel):
    """Cancellation acknowledgement."""
    instance_id: str
    acknowledged: bool
    status: str


class ResumeResponse(BaseModel):
    """Resume acknowledgement."""
    instance_id: str
    resumed: bool
    status: str


class CredentialsResponse(BaseModel):
    """One-time secrets issued for a workflow; empty once collected."""
    instance_id: str
    credentials: Dict[str, str]


# Global components (initialized on startup)
orchestrator: Optional[WorkflowOrchestrator] = None
# Configuration handed over by start_server; LIFECYCLE_ENGINE_CONFIG otherwise
server_config: Optional[Dict[str, Any]] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global orchestrator

    logger.info("Initializing Lifecycle Engine API server components")

    orchestrator = build_orchestrator(server_config if server_config is not None else load_config())
    orchestrator.resume_incomplete()

    logger.info("Lifecycle Engine API server components initialized")

    yield

    logger.info("Shutting down Lifecycle Engine API server")
    orchestrator.shutdown(wait=False)
    orchestrator = None


app = FastAPI(
    title="Lifecycle Engine API",
    description="Identity lifecycle workflow engine - REST API for onboarding and offboarding",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_orchestrator() -> WorkflowOrchestrator:
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Workflow orchestrator not available")
    return orchestrator


def _drive_workflow(engine: WorkflowOrchestrator, instance_id: str):
    """Drive a workflow in the background."""
    instance = engine.drive(instance_id)
    logger.info(
        f"Workflow {instance_id} for {instance.subject_identity} ended {instance.status.value} "
        f"({instance.progress}%)"
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Lifecycle Engine API", "version": __version__, "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy" if orchestrator else "starting",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "orchestrator": orchestrator is not None,
            "directory_adapter": orchestrator.adapter.get_system_name() if orchestrator else None,
            "mock_mode": orchestrator.adapter.is_mock_mode() if orchestrator else None,
        },
    }


@app.post("/workflows", response_model=StartWorkflowResponse)
def start_workflow(request: StartWorkflowRequest, background_tasks: BackgroundTasks):
    """
    Start an onboarding or offboarding workflow.

    The instance is validated and persisted synchronously; its tasks run
    in the background. Poll GET /workflows/{id} for progress.
    """
    engine = _require_orchestrator()

    try:
        instance = engine.create(request.kind, request.parameters)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"message": str(e), "errors": e.errors}) from e

    background_tasks.add_task(_drive_workflow, engine, instance.id)

    return StartWorkflowResponse(
        instance_id=instance.id,
        kind=instance.kind.value,
        subject_identity=instance.subject_identity,
        status=instance.status.value,
    )


@app.get("/workflows")
def list_workflows(
    kind: Optional[str] = Query(None, description="Filter by workflow kind"),
    status: Optional[str] = Query(None, description="Filter by workflow status"),
) -> List[Dict[str, Any]]:
    """List workflow instances, newest first."""
    engine = _require_orchestrator()

    try:
        kind_filter = parse_workflow_kind(kind) if kind else None
        status_filter = WorkflowStatus(status.upper()) if status else None
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return [
        instance.model_dump(mode="json")
        for instance in engine.list_instances(kind=kind_filter, status=status_filter)
    ]


@app.get("/workflows/{instance_id}")
def get_workflow(instance_id: str) -> Dict[str, Any]:
    """Get full workflow state including per-task detail."""
    engine = _require_orchestrator()

    try:
        return engine.get_instance(instance_id).model_dump(mode="json")
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.post("/workflows/{instance_id}/cancel", response_model=CancelResponse)
def cancel_workflow(instance_id: str):
    """Cancel a workflow; a task already running is allowed to finish."""
    engine = _require_orchestrator()

    try:
        acknowledged = engine.cancel(instance_id)
        instance = engine.get_instance(instance_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return CancelResponse(
        instance_id=instance_id, acknowledged=acknowledged, status=instance.status.value
    )


@app.post("/workflows/{instance_id}/resume", response_model=ResumeResponse)
def resume_workflow(instance_id: str, background_tasks: BackgroundTasks):
    """Re-drive a workflow that has not reached a terminal state."""
    engine = _require_orchestrator()

    try:
        instance = engine.get_instance(instance_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    if instance.is_terminal:
        return ResumeResponse(instance_id=instance_id, resumed=False, status=instance.status.value)

    background_tasks.add_task(engine.resume, instance_id)
    return ResumeResponse(instance_id=instance_id, resumed=True, status=instance.status.value)


@app.get("/workflows/{instance_id}/audit")
def get_workflow_audit(instance_id: str) -> List[Dict[str, Any]]:
    """Audit trail of one workflow instance, oldest first."""
    engine = _require_orchestrator()

    try:
        records = engine.get_audit_trail(instance_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return [record.model_dump(mode="json") for record in records]


@app.get("/workflows/{instance_id}/summary")
def get_workflow_summary(instance_id: str) -> Dict[str, Any]:
    """Task counts and errors of one workflow."""
    engine = _require_orchestrator()

    try:
        return engine.get_execution_summary(instance_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.post("/workflows/{instance_id}/credentials", response_model=CredentialsResponse)
def collect_credentials(instance_id: str):
    """
    Collect one-time secrets such as a new account's temporary password.

    Secrets are never persisted and are returned by the first call only.
    """
    engine = _require_orchestrator()

    try:
        credentials = engine.take_credentials(instance_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    if credentials:
        logger.info(f"Credentials for workflow {instance_id} collected")
    return CredentialsResponse(instance_id=instance_id, credentials=credentials)


@app.get("/summary")
def get_summary() -> Dict[str, Any]:
    """Workflow counts by kind and status."""
    return _require_orchestrator().get_summary()


@app.get("/catalog/{kind}")
def get_catalog(kind: str) -> List[Dict[str, Any]]:
    """Ordered task templates for a workflow kind."""
    engine = _require_orchestrator()

    try:
        workflow_kind = parse_workflow_kind(kind)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return [t.model_dump(mode="json") for t in engine.catalog.get_templates(workflow_kind)]


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False,
                 log_level: str = "info", config: Optional[Dict[str, Any]] = None):
    """
    Start the FastAPI server.

    Args:
        host: Interface to bind
        port: Port to listen on
        reload: Restart on code changes (development only)
        log_level: Uvicorn and engine log level
        config: Engine configuration; when omitted the server loads it from
                LIFECYCLE_ENGINE_CONFIG or the defaults
    """
    global server_config
    server_config = config

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if config is not None and reload:
        logger.warning("Reload starts a fresh process; the given configuration is not carried over")
    uvicorn.run(
        "lifecycle_engine.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    start_server()
