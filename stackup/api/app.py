"""FastAPI application exposing manifest checks and run state."""

import asyncio
import json
import os
from typing import Dict, List, Optional

import uvicorn
import yaml
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .. import __version__
from ..errors import StackupError
from ..events import read_events
from ..manifest import load_yaml, parse_manifest, plan_batches, validate_manifest
from ..obs.status import StatusDeriver
from ..state import list_runs, read_outputs_json, read_run_json, run_exists, get_run_dir


class ManifestRequest(BaseModel):
    manifest: str                       # YAML text
    project: Optional[str] = None


class ValidateResponse(BaseModel):
    project: str
    ok: bool
    errors: List[str]
    warnings: List[str]


class PlanResponse(BaseModel):
    project: str
    batches: List[List[str]]


class RunSummary(BaseModel):
    run_id: str
    project: Optional[str] = None
    engine: Optional[str] = None
    created_at: Optional[str] = None
    status: str


class StatusResponse(BaseModel):
    run_id: str
    status: str
    message: str
    services: Dict[str, str]
    endpoints: Dict[str, List[str]]
    failure_reason: Optional[str] = None
    failure_hint: Optional[str] = None
    updated_at: Optional[str] = None


app = FastAPI(
    title="Stackup API",
    description="Build images and bring up multi-service topologies",
    version=__version__
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("STACKUP_UI_ORIGIN", "*").split(","),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _parse(request: ManifestRequest):
    try:
        data = load_yaml(request.manifest) or {}
    except yaml.YAMLError as e:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_yaml", "message": str(e), "hint": "Check the manifest syntax"}
        )
    try:
        return parse_manifest(data, project=request.project, default_project="default")
    except StackupError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())


def _require_run(run_id: str) -> None:
    try:
        exists = run_exists(run_id)
    except ValueError:
        exists = False
    if not exists:
        raise HTTPException(
            status_code=404,
            detail={
                "code": "run_not_found",
                "message": f"Run {run_id} not found",
                "hint": "List runs with GET /runs"
            }
        )


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"message": "Stackup API is running", "version": __version__}


@app.post("/validate", response_model=ValidateResponse)
async def validate_endpoint(request: ManifestRequest):
    """Validate manifest text. Build recipes are not read."""
    manifest = _parse(request)
    report = validate_manifest(manifest, check_recipes=False)
    return ValidateResponse(project=manifest.project, ok=report.ok,
                            errors=report.errors, warnings=report.warnings)


@app.post("/plan", response_model=PlanResponse)
async def plan_endpoint(request: ManifestRequest):
    """Return the start batches for manifest text."""
    manifest = _parse(request)
    try:
        batches = plan_batches(manifest)
    except StackupError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    return PlanResponse(project=manifest.project, batches=batches)


@app.get("/runs", response_model=List[RunSummary])
async def runs_endpoint(limit: int = 50):
    """List recent runs, newest first."""
    deriver = StatusDeriver()
    summaries = []
    for run_id in list_runs()[:limit]:
        try:
            meta = read_run_json(run_id)
        except FileNotFoundError:
            meta = {}
        summaries.append(RunSummary(
            run_id=run_id,
            project=meta.get("project"),
            engine=meta.get("engine"),
            created_at=meta.get("created_at"),
            status=deriver.derive_status(read_events(run_id)).status.value,
        ))
    return summaries


@app.get("/runs/{run_id}/status", response_model=StatusResponse)
async def status_endpoint(run_id: str):
    """Get run status with per-service states."""
    _require_run(run_id)
    info = StatusDeriver().derive_status(read_events(run_id), read_outputs_json(run_id))
    return StatusResponse(
        run_id=run_id,
        status=info.status.value,
        message=info.message,
        services=info.services,
        endpoints=info.endpoints,
        failure_reason=info.failure_reason,
        failure_hint=info.failure_hint,
        updated_at=info.timestamp,
    )


@app.get("/runs/{run_id}/events")
async def events_endpoint(run_id: str, follow: bool = False, heartbeat: float = 15.0):
    """Return a run's events, or stream them as Server-Sent Events with ``follow``."""
    _require_run(run_id)
    if not follow:
        return {"run_id": run_id, "events": read_events(run_id)}

    events_file = get_run_dir(run_id) / "logs.ndjson"

    async def event_generator():
        last_size = 0
        while True:
            current_size = events_file.stat().st_size if events_file.exists() else 0
            if current_size > last_size:
                with open(events_file) as f:
                    f.seek(last_size)
                    for line in f:
                        line = line.strip()
                        if line:
                            yield f"data: {line}\n\n"
                last_size = current_size
            else:
                yield f"data: {json.dumps({'type': 'HEARTBEAT'})}\n\n"
            await asyncio.sleep(heartbeat)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(StackupError)
async def stackup_exception_handler(request: Request, exc: StackupError):
    return JSONResponse(status_code=400, content={"error": exc.to_dict()})


def serve(host: str = "127.0.0.1", port: Optional[int] = None) -> None:
    uvicorn.run(app, host=host, port=port or int(os.getenv("PORT", 8080)))


if __name__ == "__main__":
    serve(host="0.0.0.0")
