"""FastAPI application entry point for the release pipeline.

Serves the submission, status, abort and approval endpoints, the probes and
Prometheus metrics, and runs the reconcile loop in the background.
"""

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from release_pipeline import __version__
from release_pipeline.approval.models import ApprovalDecision
from release_pipeline.bootstrap import PipelineServices, open_services
from release_pipeline.config import PipelineSettings, get_settings
from release_pipeline.events.metrics import generate_metrics_output
from release_pipeline.logging_config import configure_logging
from release_pipeline.orchestrator import RunTerminalError, SubmissionRejectedError
from release_pipeline.sources.artifacts import ArtifactResolutionError
from release_pipeline.state.machine import (
    RunNotFoundError,
    StageNotFoundError,
    VersionConflictError,
)

logger = structlog.get_logger(__name__)

# Set during lifespan startup
services: Optional[PipelineServices] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: PipelineSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info(
        "Pipeline configuration",
        database_url=_redact_secret(settings.database_url),
        pipeline_definition_path=settings.pipeline_definition_path,
        deployer=settings.deployer.value,
        cluster_api_url=settings.cluster_api_url,
        cluster_api_token=_redact_secret(settings.cluster_api_token),
        prometheus_url=settings.prometheus_url,
        deploy_timeout_seconds=settings.deploy_timeout_seconds,
        deploy_max_attempts=settings.deploy_max_attempts,
        registry_url=settings.registry_url,
        registry_token=_redact_secret(settings.registry_token),
        scanner_report_dir=settings.scanner_report_dir,
        event_sinks=settings.event_sinks,
        notification_webhook_url=_redact_secret(settings.notification_webhook_url),
        poll_interval_seconds=settings.poll_interval_seconds,
        lease_ttl_seconds=settings.lease_ttl_seconds,
        gate_timeout_seconds=settings.gate_timeout_seconds,
        reconcile_enabled=settings.reconcile_enabled,
        host=settings.host,
        port=settings.port,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and logging (with secrets redacted)
    - Dependency wiring and database connection
    - Starting and stopping the reconcile loop
    """
    global services

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("Release pipeline starting up", version=__version__)
    _log_configuration(settings)

    async with AsyncExitStack() as stack:
        services = await stack.enter_async_context(open_services(settings))

        reconcile_task: Optional[asyncio.Task] = None
        if settings.reconcile_enabled:
            reconcile_task = asyncio.create_task(services.reconcile_loop.run_forever())

        logger.info("Release pipeline started")

        try:
            yield
        finally:
            logger.info("Release pipeline shutting down")
            services.reconcile_loop.stop()
            if reconcile_task is not None:
                await reconcile_task
            services = None

    logger.info("Release pipeline shutdown complete")


app = FastAPI(
    title="Release Pipeline",
    description="Gated, progressive promotion of build artifacts across environments",
    version=__version__,
    lifespan=lifespan,
)


def _services() -> PipelineServices:
    if services is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return services


class SubmitRequest(BaseModel):
    artifact_ref: str = Field(..., min_length=1)


class ApprovalRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    decision: ApprovalDecision


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is running.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Checks connectivity to the state store.

    Returns:
        Status and dependency health, with 503 if the store is unavailable.
    """
    database_healthy = services is not None and await services.is_ready()
    body = {
        "status": "ready" if database_healthy else "not_ready",
        "dependencies": {
            "database": "healthy" if database_healthy else "unhealthy",
        },
    }
    return JSONResponse(body, status_code=200 if database_healthy else 503)


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output())


@app.post("/runs", status_code=201)
async def submit_run(request: SubmitRequest):
    """Submit an artifact for promotion."""
    try:
        run = await _services().orchestrator.submit(request.artifact_ref)
    except SubmissionRejectedError as e:
        raise HTTPException(status_code=422, detail=e.reason)
    except ArtifactResolutionError as e:
        logger.error(
            "Artifact builder unavailable",
            artifact_ref=request.artifact_ref,
            error=str(e),
        )
        raise HTTPException(status_code=503, detail="artifact builder unavailable")
    return {"run_id": run.run_id, "artifact_ref": run.artifact_ref}


@app.get("/runs/{run_id}")
async def get_run(run_id: str):
    try:
        run = await _services().orchestrator.status(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    return run.model_dump(mode="json")


@app.post("/runs/{run_id}/abort", status_code=202)
async def abort_run(run_id: str):
    """Request an abort; the reconcile loop honors it between transitions."""
    try:
        run = await _services().orchestrator.abort(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    except RunTerminalError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except VersionConflictError:
        raise HTTPException(status_code=409, detail="run is changing; retry")
    return {"run_id": run.run_id, "abort_requested": run.abort_requested}


@app.post("/approvals/{stage_id}")
async def decide_approval(stage_id: str, request: ApprovalRequest):
    """Approval webhook: record an approve or reject decision for a stage."""
    if request.decision not in (ApprovalDecision.APPROVED, ApprovalDecision.REJECTED):
        raise HTTPException(
            status_code=422, detail="decision must be approved or rejected"
        )
    try:
        outcome = await _services().orchestrator.decide(
            stage_id, request.actor, request.decision
        )
    except (RunNotFoundError, StageNotFoundError):
        raise HTTPException(
            status_code=404, detail=f"no approval for stage {stage_id}"
        )
    except VersionConflictError:
        raise HTTPException(status_code=409, detail="run is changing; retry")

    if not outcome.accepted:
        raise HTTPException(status_code=409, detail=outcome.error)
    return outcome.record.model_dump(mode="json")


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "release_pipeline.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
