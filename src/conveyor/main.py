"""FastAPI application entry point for the deployment orchestrator.

This module wires the orchestrator components together and exposes:
- POST /webhooks/github: push and pull request webhooks
- POST /chat/commands: approval decisions from the chat integration
- POST /deployments/rerun: operator re-runs of a stage for a commit
- PUT /applications/{org}/{name}: register or update an application
- GET /applications/{org}/{name}/deployments: dashboard listing
- GET /health, GET /ready, GET /metrics: health checks and Prometheus metrics

Pipeline runs are started as background tasks so webhooks are
acknowledged immediately; their outcomes are logged and notified.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from .approval import ApprovalGate
from .config import ConveyorSettings, get_settings
from .errors import (
    AlreadyInFlightError,
    ConcurrencyConflictError,
    ConveyorError,
    DeploymentNotFoundError,
    NoPendingApprovalError,
    StoreUnavailableError,
    UnauthorizedApproverError,
)
from .executor import HttpExecutorClient
from .metrics import generate_metrics_output, get_metrics
from .notifier import Notifier, create_notifier
from .orchestrator import StageOrchestrator
from .state.models import Application, Trigger, TriggerKind
from .state.repository import PostgresStore
from .state.store import (
    ApplicationStore,
    DeploymentStore,
    InMemoryApplicationStore,
    InMemoryDeploymentStore,
)
from .topology import ApplicationTopologyResolver, set_pr_tracking, topology_from_application
from .triggers.models import PullRequestClosed
from .triggers.normalizer import TriggerNormalizer, verify_signature

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: Optional[ConveyorSettings] = None
deployment_store: Optional[DeploymentStore] = None
application_store: Optional[ApplicationStore] = None
orchestrator: Optional[StageOrchestrator] = None
gate: Optional[ApprovalGate] = None
notifier: Optional[Notifier] = None
normalizer = TriggerNormalizer()

_postgres: Optional[PostgresStore] = None
_executor_client: Optional[HttpExecutorClient] = None
_background_tasks: Set[asyncio.Task] = set()


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if value is None:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: ConveyorSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Conveyor configuration:")
    logger.info(
        f"  GitHub Webhook Secret: {_redact_secret(cfg.github_webhook_secret)}"
    )
    logger.info(f"  Executor URL: {cfg.executor_url}")
    logger.info(f"  Executor Timeout Seconds: {cfg.executor_timeout_seconds}")
    logger.info(f"  Executor Max Retries: {cfg.executor_max_retries}")
    logger.info(f"  Artifact Bucket: {cfg.artifact_bucket}")
    logger.info(f"  Notifier Webhook URL: {_redact_secret(cfg.notifier_webhook_url, 12)}")
    logger.info(f"  Database URL: {_redact_secret(cfg.database_url)}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _build_orchestrator(
    cfg: ConveyorSettings,
    deployments: DeploymentStore,
    applications: ApplicationStore,
    outbound: Notifier,
    executor: HttpExecutorClient,
) -> StageOrchestrator:
    """Wire the approval gate and stage orchestrator."""
    metrics = get_metrics()
    resolver = ApplicationTopologyResolver(applications)

    approval_gate = ApprovalGate(
        store=deployments,
        topology=resolver,
        notifier=outbound,
        metrics=metrics,
    )
    stage_orchestrator = StageOrchestrator(
        store=deployments,
        topology=resolver,
        gate=approval_gate,
        executor=executor,
        notifier=outbound,
        metrics=metrics,
        artifact_bucket=cfg.artifact_bucket,
        execution_timeout=cfg.executor_timeout_seconds,
        max_retries=cfg.executor_max_retries,
        backoff_base=cfg.executor_backoff_base_seconds,
        backoff_max=cfg.executor_backoff_max_seconds,
        stale_grace=cfg.stale_grace_seconds,
    )
    approval_gate.set_trigger_sink(schedule_advance)
    return stage_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    global settings, deployment_store, application_store, orchestrator, gate
    global notifier, _postgres, _executor_client

    logger.info("Conveyor starting up...")

    settings = get_settings()
    _log_configuration(settings)

    if settings.database_url:
        _postgres = PostgresStore(
            settings.database_url,
            min_pool_size=settings.database_min_pool_size,
            max_pool_size=settings.database_max_pool_size,
        )
        await _postgres.connect()
        deployment_store = _postgres.deployments
        application_store = _postgres.applications
    else:
        logger.warning("No database_url configured; using in-memory state")
        deployment_store = InMemoryDeploymentStore()
        application_store = InMemoryApplicationStore()

    notifier = create_notifier(
        webhook_url=settings.notifier_webhook_url,
        webhook_timeout=settings.notifier_timeout_seconds,
    )
    _executor_client = HttpExecutorClient(
        settings.executor_url,
        timeout=settings.executor_timeout_seconds,
    )
    orchestrator = _build_orchestrator(
        settings, deployment_store, application_store, notifier, _executor_client
    )
    gate = orchestrator.gate

    logger.info("Conveyor started successfully")

    yield

    logger.info("Conveyor shutting down...")

    if _background_tasks:
        await asyncio.gather(*_background_tasks, return_exceptions=True)
    if _executor_client is not None:
        await _executor_client.close()
    if notifier is not None:
        await notifier.close()
    if _postgres is not None:
        await _postgres.disconnect()

    logger.info("Conveyor shutdown complete")


async def run_advance(trigger: Trigger) -> None:
    """Advance a trigger, logging instead of raising.

    Lost races are expected and logged at WARNING; other orchestrator
    errors at ERROR.
    """
    if orchestrator is None:
        logger.error("Orchestrator not initialized; dropping trigger")
        return

    try:
        outcome = await orchestrator.advance(trigger)
        logger.info(
            "Advance finished",
            extra={
                "application": trigger.full_name,
                "sha": trigger.sha,
                "outcome": outcome.value,
            },
        )
    except (AlreadyInFlightError, ConcurrencyConflictError) as e:
        logger.warning(
            "Advance dropped: %s",
            e.message,
            extra={"application": trigger.full_name, "sha": trigger.sha},
        )
    except ConveyorError as e:
        logger.error(
            "Advance failed: %s",
            e.message,
            extra={
                "application": trigger.full_name,
                "sha": trigger.sha,
                "error_type": type(e).__name__,
            },
        )
    except Exception:
        logger.exception(
            "Unexpected error while advancing",
            extra={"application": trigger.full_name, "sha": trigger.sha},
        )


async def schedule_advance(trigger: Trigger) -> None:
    """Start run_advance as a background task."""
    task = asyncio.create_task(run_advance(trigger))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


app = FastAPI(
    title="Conveyor",
    description="Multi-stage deployment pipeline orchestrator",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error("Store unavailable: %s", exc.message)
    return JSONResponse(
        status_code=503,
        content={"status": "error", "message": "Deployment store unavailable"},
    )


@app.get("/health")
async def health():
    """Liveness check endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness check endpoint.

    Returns 503 until components are wired and the store responds.
    """
    if deployment_store is None or orchestrator is None:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "dependencies": {"store": "uninitialized"}},
        )

    store_status = "healthy" if await deployment_store.health_check() else "unhealthy"
    content = {"status": "ready", "dependencies": {"store": store_status}}
    if store_status != "healthy":
        content["status"] = "not_ready"
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/github", status_code=202)
async def github_webhook(request: Request):
    """GitHub webhook receiver endpoint.

    Validates X-Hub-Signature-256, normalizes the event and starts the
    pipeline in the background.
    """
    if settings is None:
        raise HTTPException(status_code=503, detail="Conveyor not initialized")

    body = await request.body()
    if not verify_signature(
        body,
        request.headers.get("X-Hub-Signature-256"),
        settings.github_webhook_secret,
    ):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_type = request.headers.get("X-GitHub-Event")
    if event_type == "ping":
        return {"status": "pong"}

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    event = normalizer.parse_github_event(event_type, payload)
    if event is None:
        return {"status": "ignored", "message": "Unsupported or invalid event"}

    if isinstance(event, PullRequestClosed):
        if application_store is not None:
            await set_pr_tracking(
                application_store, event.org, event.name, event.pr_number, tracked=False
            )
        if event.merge is not None:
            await schedule_advance(event.merge)
            return {
                "status": "accepted",
                "pr_number": event.pr_number,
                "application": event.merge.full_name,
                "sha": event.merge.sha,
            }
        return {"status": "accepted", "pr_number": event.pr_number}

    if event.kind == TriggerKind.PR_UPDATE and application_store is not None:
        await set_pr_tracking(
            application_store, event.org, event.name, event.pr_number, tracked=True
        )

    await schedule_advance(event)
    return {"status": "accepted", "application": event.full_name, "sha": event.sha}


@app.post("/chat/commands")
async def chat_command(request: Request):
    """Apply an approval decision relayed by the chat integration."""
    if gate is None:
        raise HTTPException(status_code=503, detail="Conveyor not initialized")

    command = normalizer.parse_chat_command(await _json_body(request))
    if command is None:
        raise HTTPException(status_code=400, detail="Invalid chat command")

    try:
        status = await gate.resolve_command(command)
    except DeploymentNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except UnauthorizedApproverError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except NoPendingApprovalError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return {"deployment_id": str(command.key), "approval_status": status.value}


@app.post("/deployments/rerun", status_code=202)
async def rerun_deployment(request: Request):
    """Re-run a stage for a specific commit."""
    trigger = normalizer.parse_manual_rerun(await _json_body(request))
    if trigger is None:
        raise HTTPException(status_code=400, detail="Invalid re-run request")

    await schedule_advance(trigger)
    return {
        "status": "accepted",
        "application": trigger.full_name,
        "stage": trigger.stage_name,
        "sha": trigger.sha,
    }


@app.put("/applications/{org}/{name}")
async def put_application(org: str, name: str, application: Application):
    """Register or replace an application's configuration."""
    if application_store is None:
        raise HTTPException(status_code=503, detail="Conveyor not initialized")
    if application.org != org or application.name != name:
        raise HTTPException(status_code=400, detail="Path does not match body")

    try:
        topology_from_application(application)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await application_store.put(application)
    return application.model_dump(mode="json")


@app.get("/applications/{org}/{name}/deployments")
async def list_deployments(org: str, name: str):
    """List an application's deployment records grouped by stage."""
    if application_store is None or deployment_store is None:
        raise HTTPException(status_code=503, detail="Conveyor not initialized")

    if await application_store.get(org, name) is None:
        raise HTTPException(status_code=404, detail=f"Unknown application: {org}/{name}")

    deployments = await deployment_store.list_for_application(org, name)
    return {
        "application": f"{org}/{name}",
        "deployments": [d.model_dump(mode="json") for d in deployments],
    }


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.conveyor.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
