"""
Converge - FastAPI Application

HTTP entry point for the convergence engine.
Provides endpoints for planning and applying configurations, following
run progress and inspecting state.
"""

from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse

from converge.config import configure_logging, load_settings
from converge.models import (
    RunCreateRequest,
    RunCreateResponse,
    RunStatus,
    RunStatusResponse,
    StateResponse,
)
from converge.adapters.base import ProviderError
from converge.engine.engine import ConvergeEngine, create_engine, generate_run_id
from converge.engine.graph import CycleError
from converge.engine.parser import ParseError
from converge.engine.planner import PlanError, render_plan
from converge.storage import LockError, LockHeldError, LockToken

logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION SETUP
# =============================================================================

_engine: Optional[ConvergeEngine] = None


def get_engine() -> ConvergeEngine:
    """Get the application engine, creating it from settings on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine(load_settings())
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = load_settings()
    configure_logging(settings.log_level)
    logger.info("Converge API starting...")
    logger.info(f"Workspace: {settings.workspace}, state dir: {settings.state_dir}")
    yield
    logger.info("Converge API shutting down...")
    if _engine is not None:
        _engine.close()


app = FastAPI(
    title="Converge",
    description="""
    ## Declarative Infrastructure Convergence Engine

    This API provides endpoints for:
    - **Planning** a YAML resource configuration against recorded state
    - **Applying** plans with bounded parallelism and retries
    - **Inspecting state** and outputs, tainting resources, unlocking state

    ### Execution Flow
    1. Submit YAML configuration via POST /runs (dry_run for a plan only)
    2. Engine parses, builds the dependency graph, plans and applies
    3. Monitor progress via GET /runs/{run_id}
    4. Read outputs via GET /state/outputs
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Runs started by this process
active_runs: Dict[str, Dict[str, Any]] = {}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _config_error(e: Exception) -> HTTPException:
    """Translate configuration errors raised before any provider call."""
    if isinstance(e, CycleError):
        detail = {"error": "Dependency cycle", "message": e.message, "cycle": e.cycle}
    elif isinstance(e, PlanError):
        detail = {"error": "Plan failed", "message": e.message, "errors": e.errors}
    else:
        detail = {
            "error": "Configuration validation failed",
            "message": e.message,
            "errors": getattr(e, "errors", []),
        }
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _provider_failure(e: ProviderError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"error": "Provider error", "code": e.code, "message": e.message},
    )


def _lock_conflict(e: LockHeldError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "error": "State locked",
            "message": e.message,
            "lock": e.lock_info.model_dump(mode="json") if e.lock_info else None,
        },
    )


async def execute_run_async(
    run_id: str,
    request: RunCreateRequest,
    engine: ConvergeEngine,
    token: LockToken,
) -> None:
    """
    Apply a run in the background, then release the state lock.

    The lock is taken by the request handler so concurrent submissions
    fail fast with 409.
    """
    def progress_callback(rid: str, percent: int, current: str) -> None:
        if rid in active_runs:
            active_runs[rid]["progress_percent"] = percent
            active_runs[rid]["current_resource"] = current

    try:
        active_runs[run_id]["status"] = RunStatus.APPLYING
        active_runs[run_id]["message"] = "Applying plan..."
        engine.set_progress_callback(progress_callback)

        summary = await engine.apply(
            request.config_yaml,
            variables=request.variables,
            destroy=request.destroy,
            refresh=request.refresh,
            run_id=run_id,
            token=token,
        )

        active_runs[run_id]["status"] = summary.status
        active_runs[run_id]["summary"] = summary
        active_runs[run_id]["message"] = summary.error_message or "Apply completed"
        active_runs[run_id]["progress_percent"] = 100
        logger.info(f"Run {run_id} finished: {summary.status.value}")

    except (ParseError, CycleError, PlanError) as e:
        logger.error(f"Run {run_id} planning failed: {e.message}")
        active_runs[run_id]["status"] = RunStatus.FAILED
        active_runs[run_id]["message"] = f"Configuration error: {e.message}"

    except ProviderError as e:
        logger.error(f"Run {run_id} refresh failed: {e}")
        active_runs[run_id]["status"] = RunStatus.FAILED
        active_runs[run_id]["message"] = f"Provider error: {e}"

    except Exception as e:
        logger.exception(f"Run {run_id} failed: {str(e)}")
        active_runs[run_id]["status"] = RunStatus.FAILED
        active_runs[run_id]["message"] = f"Execution error: {str(e)}"

    finally:
        engine.store.release(token)


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Converge",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "create_run": "POST /runs",
            "get_status": "GET /runs/{run_id}",
            "get_plan": "GET /runs/{run_id}/plan",
            "list_runs": "GET /runs",
            "state": "GET /state",
            "outputs": "GET /state/outputs",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check(engine: ConvergeEngine = Depends(get_engine)):
    """Health check endpoint."""
    lock = engine.store.current_lock()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "active_runs": len(
            [r for r in active_runs.values() if r["status"] == RunStatus.APPLYING]
        ),
        "state_locked": lock is not None,
    }


@app.post(
    "/runs",
    response_model=RunCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Runs"],
    summary="Plan and apply a configuration",
)
async def create_run(
    request: RunCreateRequest,
    background_tasks: BackgroundTasks,
    engine: ConvergeEngine = Depends(get_engine),
) -> RunCreateResponse:
    """
    Plan a configuration and, unless ``dry_run`` is set, apply it.

    The apply executes asynchronously. Use GET /runs/{run_id} to monitor it.

    **Errors:**
    - 400: malformed configuration, dependency cycle or forbidden plan
    - 409: another run holds the state lock
    - 502: the provider failed while refreshing state for a dry run
    """
    run_id = generate_run_id()

    # Validate configuration first; nothing touches state or provider
    try:
        engine.load(request.config_yaml, request.variables)
    except (ParseError, CycleError) as e:
        raise _config_error(e)

    try:
        token = engine.store.acquire("plan" if request.dry_run else "apply")
    except LockHeldError as e:
        raise _lock_conflict(e)

    if request.dry_run:
        try:
            plan = await engine.plan(
                request.config_yaml,
                variables=request.variables,
                destroy=request.destroy,
                refresh=request.refresh,
                run_id=run_id,
                token=token,
            )
        except PlanError as e:
            raise _config_error(e)
        except ProviderError as e:
            raise _provider_failure(e)
        finally:
            engine.store.release(token)

        plan_text = render_plan(plan)
        engine.artifacts.save_plan(run_id, plan, plan_text)
        return RunCreateResponse(
            run_id=run_id,
            status=RunStatus.CREATED,
            message="Dry run - plan created",
            plan=plan,
            plan_text=plan_text,
        )

    active_runs[run_id] = {
        "status": RunStatus.PLANNING,
        "message": "Run created, planning...",
        "progress_percent": 0,
        "current_resource": None,
        "created_at": datetime.utcnow().isoformat(),
    }

    background_tasks.add_task(execute_run_async, run_id, request, engine, token)

    logger.info(f"Run created: {run_id} (destroy={request.destroy})")
    return RunCreateResponse(
        run_id=run_id,
        status=RunStatus.CREATED,
        message="Run created" + (" (destroy)" if request.destroy else ""),
    )


@app.get(
    "/runs/{run_id}",
    response_model=RunStatusResponse,
    tags=["Runs"],
    summary="Get run status and progress",
)
async def get_run_status(
    run_id: str,
    engine: ConvergeEngine = Depends(get_engine),
) -> RunStatusResponse:
    """Get the current status of a run."""
    if run_id in active_runs:
        run_state = active_runs[run_id]
        return RunStatusResponse(
            run_id=run_id,
            status=run_state["status"],
            progress_percent=run_state.get("progress_percent", 0),
            current_resource=run_state.get("current_resource"),
            message=run_state.get("message"),
            summary=run_state.get("summary"),
        )

    summary = engine.artifacts.load_summary(run_id)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )

    return RunStatusResponse(
        run_id=run_id,
        status=summary.status,
        progress_percent=100,
        summary=summary,
    )


@app.get("/runs/{run_id}/plan", tags=["Runs"], summary="Get the plan of a run")
async def get_run_plan(run_id: str, engine: ConvergeEngine = Depends(get_engine)):
    """Return the stored plan and its rendering."""
    plan = engine.artifacts.load_plan(run_id)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Plan not found for run: {run_id}",
        )
    return {"plan": plan.model_dump(mode="json"), "plan_text": render_plan(plan)}


@app.get("/runs", tags=["Runs"], summary="List all runs")
async def list_runs(engine: ConvergeEngine = Depends(get_engine)):
    """List runs with their current status."""
    runs = []
    for run_id in engine.artifacts.get_all_runs():
        if run_id in active_runs:
            runs.append({
                "run_id": run_id,
                "status": active_runs[run_id]["status"],
                "progress_percent": active_runs[run_id].get("progress_percent", 0),
            })
            continue
        summary = engine.artifacts.load_summary(run_id)
        runs.append({
            "run_id": run_id,
            "status": summary.status if summary else RunStatus.CREATED,
            "completed_at": (
                summary.completed_at.isoformat()
                if summary and summary.completed_at else None
            ),
        })

    return {"runs": runs, "total": len(runs)}


@app.delete("/runs/{run_id}", tags=["Runs"], summary="Delete a run's artifacts")
async def delete_run(run_id: str, engine: ConvergeEngine = Depends(get_engine)):
    """Delete the stored plan and summary of a run."""
    if run_id in active_runs:
        if active_runs[run_id]["status"] in (RunStatus.PLANNING, RunStatus.APPLYING):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot delete a running apply",
            )
        del active_runs[run_id]

    if engine.artifacts.delete_run(run_id):
        return {"message": f"Run {run_id} deleted successfully"}
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Run not found: {run_id}",
    )


@app.post("/runs/{run_id}/cancel", tags=["Runs"], summary="Cancel a running apply")
async def cancel_run(run_id: str, engine: ConvergeEngine = Depends(get_engine)):
    """Stop issuing provider calls; in-flight calls finish."""
    run_state = active_runs.get(run_id)
    if run_state is None or run_state["status"] != RunStatus.APPLYING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run is not applying: {run_id}",
        )
    engine.cancel()
    run_state["message"] = "Cancellation requested"
    return {"message": f"Cancellation requested for {run_id}"}


@app.get("/state", response_model=StateResponse, tags=["State"])
async def get_state(engine: ConvergeEngine = Depends(get_engine)) -> StateResponse:
    """Current workspace state."""
    snapshot = engine.state()
    return StateResponse(
        workspace=snapshot.workspace,
        serial=snapshot.serial,
        lineage=snapshot.lineage,
        resources=list(snapshot.resources.values()),
        outputs=snapshot.outputs,
    )


@app.get("/state/outputs", tags=["State"])
async def get_outputs(engine: ConvergeEngine = Depends(get_engine)):
    """Named outputs of the last successful apply."""
    return engine.outputs()


def _set_taint(engine: ConvergeEngine, address: str, taint: bool):
    try:
        record = engine.taint(address) if taint else engine.untaint(address)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Resource not in state: {address}",
        )
    except LockHeldError as e:
        raise _lock_conflict(e)
    return {"address": record.address, "status": record.status}


@app.post("/state/resources/{address}/taint", tags=["State"])
async def taint_resource(address: str, engine: ConvergeEngine = Depends(get_engine)):
    """Force replacement of a resource on the next apply."""
    return _set_taint(engine, address, True)


@app.delete("/state/resources/{address}/taint", tags=["State"])
async def untaint_resource(address: str, engine: ConvergeEngine = Depends(get_engine)):
    """Clear a taint mark."""
    return _set_taint(engine, address, False)


@app.delete("/state/lock", tags=["State"])
async def force_unlock(lock_id: str, engine: ConvergeEngine = Depends(get_engine)):
    """Remove a stale state lock."""
    try:
        engine.store.force_unlock(lock_id)
    except LockError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    return {"message": f"Lock {lock_id} removed"}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        },
    )


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "converge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
