"""FastAPI main application."""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import orjson
from fastapi import FastAPI, HTTPException, BackgroundTasks, Depends
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from carsync.config import config, METRICS_FILE
from carsync.errors import SyncError
from carsync.jobs.runner import SyncRunner, create_runner
from carsync.store.state import CheckpointManager

logger = logging.getLogger(__name__)

app = FastAPI(title="Car Sync API", version="0.1.0")

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)


def verify_api_key(api_key: str = Depends(API_KEY_HEADER)) -> bool:
    """Verify API key if configured."""
    expected_key = config.API_KEY_HEADER_SECRET
    if expected_key:
        if not api_key or api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


class SyncState:
    """The sync this process is running, and how the last one ended."""

    def __init__(self):
        self.running = False
        self.runner: Optional[SyncRunner] = None
        self.last_report: Optional[dict[str, Any]] = None
        self.last_error: Optional[str] = None


sync_state = SyncState()
checkpoints = CheckpointManager(max_age_seconds=config.CHECKPOINT_MAX_AGE_HOURS * 3600)


def get_checkpoints() -> CheckpointManager:
    return checkpoints


def get_runner_factory() -> Callable[..., SyncRunner]:
    return create_runner


@app.on_event("startup")
async def startup():
    """Initialize on startup."""
    await checkpoints.initialize()


class SyncRequest(BaseModel):
    """Request model for starting a sync."""
    fresh: bool = False
    max_pages: Optional[int] = None
    direct: bool = False
    dry_run: bool = False


class SyncResponse(BaseModel):
    """Response model for starting a sync."""
    run_id: str
    status: str
    message: str


@app.get("/health")
async def health():
    """Health check endpoint (no auth required)."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sync_running": sync_state.running,
    }


@app.post("/sync", response_model=SyncResponse, status_code=202)
async def start_sync(
    request: SyncRequest,
    background_tasks: BackgroundTasks,
    _: bool = Depends(verify_api_key),
    runner_factory: Callable[..., SyncRunner] = Depends(get_runner_factory),
):
    """Start a sync run in the background. Only one runs at a time."""
    if sync_state.running:
        raise HTTPException(status_code=409, detail="A sync is already running")

    try:
        config.validate(require_supabase=not request.dry_run)
        runner = runner_factory(
            config,
            resume=not request.fresh,
            direct=request.direct,
            dry_run=request.dry_run,
            max_pages=request.max_pages,
        )
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Configuration error: {e}")

    sync_state.running = True
    sync_state.runner = runner
    sync_state.last_error = None
    background_tasks.add_task(_run_sync, runner)

    return SyncResponse(
        run_id=runner.run_id,
        status="started",
        message="Resuming from checkpoint if one exists" if not request.fresh else "Fresh sync started",
    )


@app.get("/sync/status")
async def sync_status(_: bool = Depends(verify_api_key)):
    """Current phase and counters, plus the last final report."""
    runner = sync_state.runner
    return {
        "running": sync_state.running,
        "run_id": runner.run_id if runner else None,
        "phase": runner.phase.value if runner else None,
        "current_page": runner.current_page if runner else None,
        "metrics": runner.metrics.get_summary() if runner and sync_state.running else None,
        "last_report": sync_state.last_report,
        "last_error": sync_state.last_error,
    }


@app.get("/checkpoint")
async def get_checkpoint(
    _: bool = Depends(verify_api_key),
    store: CheckpointManager = Depends(get_checkpoints),
):
    """Stored checkpoint, with its age and whether a run would resume from it."""
    try:
        checkpoint = await store.read()
    except Exception as e:
        logger.error(f"Failed to read checkpoint: {e}")
        raise HTTPException(status_code=500, detail=f"Checkpoint store unavailable: {e}")

    if checkpoint is None:
        return {"checkpoint": None}

    return {
        "checkpoint": checkpoint.model_dump(),
        "age_hours": round(checkpoint.age() / 3600, 2),
        "valid": not checkpoint.is_stale(store.max_age_seconds),
        "resume_page": checkpoint.last_page + 1,
    }


@app.get("/metrics")
async def get_metrics(_: bool = Depends(verify_api_key)):
    """Last metrics snapshots (requires API key if configured)."""
    if not METRICS_FILE.exists():
        return {"error": "No metrics available"}

    lines = []
    with open(METRICS_FILE, "rb") as f:
        for line in f:
            if line.strip():
                lines.append(orjson.loads(line))

    return {"metrics": lines[-100:]}


async def _run_sync(runner: SyncRunner):
    """Run a sync (background task)."""
    try:
        sync_state.last_report = await runner.run()
        logger.info(f"Sync {runner.run_id} finished: {runner.phase.value}")
    except SyncError as e:
        sync_state.last_report = runner.report
        sync_state.last_error = str(e)
        logger.error(f"Sync {runner.run_id} failed: {e}")
    finally:
        sync_state.running = False


if __name__ == "__main__":
    import uvicorn
    config.validate()
    uvicorn.run(app, host="0.0.0.0", port=8000)
