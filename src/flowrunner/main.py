import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .automation import validation
from .automation.errors import AutomationDisabledError, AutomationNotFoundError
from .automation.runner import run_automation
from .automation.schema import Automation
from .automation.store import AutomationStore
from .config import get_settings
from .connectors import close_service_layer, create_service_layer
from .models import (
    HealthResponse,
    OperationTestRequest,
    OperationTestResponse,
    RunAutomationRequest,
    ValidationResponse,
)
from .simulator import create_simulator

load_dotenv()

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="FlowRunner API",
    description="Stores automations and runs them against real or simulated collaborators",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

automation_store = AutomationStore(Path(settings.database_path))


@app.exception_handler(AutomationNotFoundError)
async def _not_found(request: Request, exc: AutomationNotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(AutomationDisabledError)
async def _disabled(request: Request, exc: AutomationDisabledError):
    return JSONResponse(status_code=409, content={"detail": exc.message})


def _load_or_404(automation_id: str) -> Automation:
    automation = automation_store.load(automation_id)
    if automation is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    return automation


def _dump(automation: Automation) -> dict:
    return automation.model_dump(mode="json", by_alias=True)


@app.get("/api/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")


# --- Automations ---

@app.post("/api/automations")
def create_automation(automation: Automation):
    if automation_store.load(automation.id) is not None:
        raise HTTPException(status_code=409, detail=f"Automation '{automation.id}' already exists")
    automation.normalize_order()
    automation_store.save(automation)
    return _dump(automation)


@app.get("/api/automations")
def list_automations(project_id: str | None = None):
    return [_dump(a) for a in automation_store.list_automations(project_id)]


@app.post("/api/automations/validate", response_model=ValidationResponse)
def validate_automation(automation: Automation):
    issues = validation.validate_automation(automation)
    return ValidationResponse(valid=not issues, issues=issues)


@app.get("/api/automations/{automation_id}")
def get_automation(automation_id: str):
    return _dump(_load_or_404(automation_id))


@app.put("/api/automations/{automation_id}")
def update_automation(automation_id: str, automation: Automation):
    existing = _load_or_404(automation_id)
    updated = automation.model_copy(update={"id": automation_id, "created_at": existing.created_at})
    updated.normalize_order()
    updated.touch()
    automation_store.save(updated)
    return _dump(updated)


@app.delete("/api/automations/{automation_id}")
def delete_automation(automation_id: str):
    deleted = automation_store.delete(automation_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Automation not found")
    return {"status": "deleted", "automation_id": automation_id}


# --- Runs ---

@app.post("/api/automations/{automation_id}/run")
async def run_automation_endpoint(automation_id: str, request: RunAutomationRequest):
    current = get_settings()
    _, services, failure_config = create_service_layer(current)
    try:
        result = await run_automation(
            automation_store,
            services,
            automation_id,
            inputs=request.inputs,
            environment=request.environment,
            settings=current,
            failure_config=failure_config,
            timeout=request.timeout,
        )
    finally:
        await close_service_layer(services)
    return result.to_dict()


@app.get("/api/automations/{automation_id}/runs")
def list_runs(automation_id: str, limit: int = 50):
    _load_or_404(automation_id)
    return [run.model_dump(mode="json") for run in automation_store.list_runs(automation_id, limit)]


@app.get("/api/automations/{automation_id}/runs/{run_id}")
def get_run(automation_id: str, run_id: str):
    run = automation_store.load_run(run_id)
    if run is None or run.automation_id != automation_id:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.model_dump(mode="json")


@app.get("/api/automations/{automation_id}/stats")
def run_stats(automation_id: str):
    _load_or_404(automation_id)
    return automation_store.run_stats(automation_id).model_dump(mode="json")


# --- Operation testing ---

@app.post(
    "/api/automations/{automation_id}/operations/{operation_id}/test",
    response_model=OperationTestResponse,
)
async def test_operation_endpoint(
    automation_id: str, operation_id: str, request: OperationTestRequest
):
    """Execute one operation against the simulator and store its validation status."""
    automation = _load_or_404(automation_id)
    op = automation.get_operation(operation_id)
    if op is None:
        raise HTTPException(status_code=404, detail="Operation not found")

    _, services, _ = create_simulator()
    outcome = await validation.test_operation(
        op,
        services,
        inputs=request.inputs,
        operation_outputs=request.operation_outputs,
        environment=request.environment,
        failure_config=request.failure_config,
    )

    op.validation_status = outcome.operation.validation_status
    automation.touch()
    automation_store.save(automation)
    logger.info("Tested operation %s of %s: %s", operation_id, automation_id, outcome.message)

    return OperationTestResponse(
        valid=outcome.valid,
        message=outcome.message,
        outputs=outcome.outputs,
        errors=outcome.errors,
        operation=outcome.operation,
    )


def serve() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    current = get_settings()
    uvicorn.run(app, host=current.api_host, port=current.api_port, log_level=current.log_level.lower())
