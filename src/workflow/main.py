"""FastAPI application entry point for the workflow engine.

Exposes discovery, instance control, status and plan approval over HTTP.
Instances started or resumed here run in the background of the server
process; their progress is visible through /status and the checkpoint
logs on disk.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field

from src.workflow.config import WorkflowSettings, get_settings
from src.workflow.discovery import DiscoveryService
from src.workflow.errors import (
    AlreadyClaimed,
    AmbiguousResume,
    CorruptState,
    LockTimeout,
    ResumeTargetNotFound,
    SourceUnavailable,
    WorkflowError,
)
from src.workflow.events import create_event_emitter, generate_metrics_output
from src.workflow.orchestrator import WorkflowOrchestrator
from src.workflow.provisioner import WorktreeProvisioner
from src.workflow.runner import CommandWorker
from src.workflow.sources.cache import PreferenceCache
from src.workflow.sources.factory import SourceWiring, build_source_registry
from src.workflow.sources.models import Policy, Task
from src.workflow.sources.policy import (
    PolicyResponses,
    get_custom_name_question,
    get_custom_type_questions,
    get_policy_questions,
    get_project_questions,
    parse_and_cache_policy,
)
from src.workflow.state import TaskRegistry
from src.workflow.workers import PendingApprovalGate, WorkerSet

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: WorkflowSettings
orchestrator: Optional[WorkflowOrchestrator] = None
preference_cache: Optional[PreferenceCache] = None
source_wiring: Optional[SourceWiring] = None

ERROR_STATUS_CODES = {
    AlreadyClaimed: 409,
    AmbiguousResume: 409,
    ResumeTargetNotFound: 404,
    SourceUnavailable: 503,
    LockTimeout: 503,
    CorruptState: 500,
}


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: WorkflowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Workflow configuration:")
    logger.info(f"  Repository Root: {cfg.repo_path}")
    logger.info(f"  State Directory: {cfg.state_path}")
    logger.info(f"  Worktree Base: {cfg.worktree_path}")
    logger.info(f"  Branch Prefix: {cfg.branch_prefix}")
    logger.info(f"  Lock Timeout: {cfg.lock_timeout}")
    logger.info(f"  Max Review Iterations: {cfg.max_review_iterations}")
    logger.info(f"  Max Validation Retries: {cfg.max_validation_retries}")
    logger.info(f"  Ranking Limit: {cfg.ranking_limit}")
    logger.info(f"  GitHub Base URL: {cfg.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(cfg.github_token)}")
    logger.info(f"  GitHub Repository: {cfg.github_repository}")
    logger.info(f"  GitLab Base URL: {cfg.gitlab_base_url}")
    logger.info(f"  GitLab Token: {_redact_secret(cfg.gitlab_token)}")
    logger.info(f"  GitLab Project: {cfg.gitlab_project}")
    logger.info(f"  Worker Command: {cfg.worker_command}")
    logger.info(f"  Worker Timeout: {cfg.worker_timeout}")
    logger.info(f"  Event Sinks: {[sink.value for sink in cfg.event_sinks]}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _build_orchestrator(cfg: WorkflowSettings, wiring: SourceWiring) -> WorkflowOrchestrator:
    """Wire all engine dependencies into a WorkflowOrchestrator."""
    registry = TaskRegistry.for_state_dir(cfg.state_path, lock_timeout=cfg.lock_timeout)
    worker = CommandWorker(cfg.worker_command, timeout_seconds=cfg.worker_timeout)
    provisioner = WorktreeProvisioner(
        repo_root=cfg.repo_path,
        base_path=cfg.worktree_path,
        branch_prefix=cfg.branch_prefix,
    )
    return WorkflowOrchestrator(
        registry=registry,
        discovery=DiscoveryService(wiring.adapters, registry),
        workers=WorkerSet.uniform(worker),
        approval_gate=PendingApprovalGate(),
        provisioner=provisioner,
        state_dir=cfg.state_path,
        emitter=create_event_emitter(cfg.event_sinks),
        max_review_iterations=cfg.max_review_iterations,
        max_validation_retries=cfg.max_validation_retries,
        ranking_limit=cfg.ranking_limit,
        lock_timeout=cfg.lock_timeout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load configuration, wire the orchestrator, and shut it down cleanly."""
    global settings, orchestrator, preference_cache, source_wiring

    logger.info("Workflow engine starting up...")

    settings = get_settings()
    _log_configuration(settings)

    source_wiring = build_source_registry(settings)
    orchestrator = _build_orchestrator(settings, source_wiring)
    preference_cache = PreferenceCache.for_state_dir(settings.state_path)

    logger.info("Workflow engine started successfully")

    yield

    logger.info("Workflow engine shutting down...")

    if orchestrator is not None:
        await orchestrator.shutdown()
        await orchestrator.emitter.close()
    if source_wiring is not None:
        await source_wiring.close()

    logger.info("Workflow engine shutdown complete")


app = FastAPI(
    title="Task Workflow Engine",
    description="Checkpointed, resumable task workflow orchestration",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = 422
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    logger.warning(
        "Request failed: %s",
        exc.render(),
        extra={"path": request.url.path, "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def _require_orchestrator() -> WorkflowOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Workflow engine not initialized")
    return orchestrator


def _require_cache() -> PreferenceCache:
    if preference_cache is None:
        raise HTTPException(status_code=503, detail="Workflow engine not initialized")
    return preference_cache


# -----------------------------------------------------------------------------
# Request bodies
# -----------------------------------------------------------------------------


class DiscoverRequest(BaseModel):
    policy: Policy
    limit: Optional[int] = Field(default=None, ge=1)


class StartRequest(BaseModel):
    task: Task
    policy: Policy


class TargetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target: Optional[str] = None
    remove_worktree: bool = Field(default=False, alias="removeWorktree")
    force: bool = False


class ApprovalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    approved: bool
    feedback: str = ""
    decided_by: Optional[str] = Field(default=None, alias="decidedBy")


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics in the text exposition format."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.get("/status")
async def status():
    engine = _require_orchestrator()
    return {
        "instances": [
            summary.model_dump(mode="json", by_alias=True) for summary in engine.status()
        ]
    }


@app.get("/policy/questions")
async def policy_questions():
    return get_policy_questions(_require_cache()).model_dump(mode="json", by_alias=True)


@app.get("/policy/questions/project")
async def policy_project_questions():
    return get_project_questions().model_dump(mode="json", by_alias=True)


@app.get("/policy/questions/custom")
async def policy_custom_questions(custom_type: Optional[str] = None):
    questions = (
        get_custom_name_question(custom_type) if custom_type else get_custom_type_questions()
    )
    return questions.model_dump(mode="json", by_alias=True)


@app.post("/policy")
async def select_policy(responses: PolicyResponses):
    """Turn policy answers into a Policy and remember the chosen source."""
    policy = parse_and_cache_policy(responses, _require_cache())
    return {"policy": policy.model_dump(mode="json", by_alias=True)}


@app.post("/discover")
async def discover(body: DiscoverRequest):
    ranked = await _require_orchestrator().discover(body.policy, limit=body.limit)
    return {"tasks": [item.model_dump(mode="json", by_alias=True) for item in ranked]}


@app.post("/instances", status_code=202)
async def start_instance(body: StartRequest):
    """Claim a task and run its workflow in the background.

    AlreadyClaimed is reported synchronously (409); phase failures are
    recorded in the instance's checkpoint log.
    """
    engine = _require_orchestrator()
    machine = await engine.prepare_start(body.task, body.policy)
    engine.launch(machine)
    return _accepted(machine.task.id, machine.task.source_kind.value, machine.resume_args)


@app.post("/instances/resume", status_code=202)
async def resume_instance(body: TargetRequest):
    engine = _require_orchestrator()
    machine = engine.prepare_resume(body.target)
    engine.launch(machine)
    return _accepted(machine.task.id, machine.task.source_kind.value, machine.resume_args)


@app.post("/instances/abort")
async def abort_instance(body: TargetRequest):
    result = await _require_orchestrator().abort(
        body.target, remove_worktree=body.remove_worktree, force=body.force
    )
    return result.model_dump(mode="json", by_alias=True)


@app.post("/instances/{task_id}/approval")
async def decide_approval(task_id: str, body: ApprovalRequest):
    resolved = _require_orchestrator().approve(
        task_id, body.approved, feedback=body.feedback, decided_by=body.decided_by
    )
    if not resolved:
        raise HTTPException(
            status_code=404, detail=f"No plan approval pending for task {task_id}"
        )
    return {"status": "decided", "taskId": task_id, "approved": body.approved}


def _accepted(task_id: str, source: str, resume_args: Any) -> Dict[str, Any]:
    return {"status": "accepted", "taskId": task_id, "source": source, "resume": resume_args}


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.workflow.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
    )
