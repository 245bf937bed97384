"""Run trigger and status routes."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from docflow.errors import ValidationError
from docflow.services.orchestrator import Orchestrator
from docflow.services.run_store import RunStore, run_public_view, subject_status_view

router = APIRouter()
_RUNS_LOG = logging.getLogger("api.runs")


class BeginRunRequest(BaseModel):
    """Payload accepted by `POST /pipelines/{pipeline}/runs`."""

    subject_id: str = Field(alias="subjectId", min_length=1)
    owner_id: str = Field(alias="ownerId", min_length=1)
    source_uri: str | None = Field(default=None, alias="sourceUri")
    trace_id: str | None = Field(default=None, alias="traceId")

    model_config = {"populate_by_name": True}


def extract_trace_id(header: str | None) -> str | None:
    """Return the trace id portion of an `X-Cloud-Trace-Context` header."""
    if not header:
        return None
    trace = header.split("/", 1)[0].strip()
    return trace or None


def _orchestrator_for(request: Request, pipeline: str) -> Orchestrator:
    orchestrators: Mapping[str, Orchestrator] = request.app.state.orchestrators
    orchestrator = orchestrators.get(pipeline)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline {pipeline}")
    return orchestrator


async def _parse_begin_request(request: Request) -> BeginRunRequest:
    try:
        raw = await request.json()
    except ValueError as exc:
        raise ValidationError("Expected JSON body") from exc
    if not isinstance(raw, dict):
        raise ValidationError("Expected a JSON object")
    try:
        return BeginRunRequest(**raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid run request: {exc}") from exc


@router.post("/pipelines/{pipeline}/runs", tags=["runs"])
async def begin_run(request: Request, pipeline: str):
    orchestrator = _orchestrator_for(request, pipeline)
    payload = await _parse_begin_request(request)
    trace_id = (
        payload.trace_id
        or request.headers.get("x-trace-id")
        or extract_trace_id(request.headers.get("x-cloud-trace-context"))
    )
    run = await orchestrator.begin(
        payload.subject_id,
        payload.owner_id,
        source_uri=payload.source_uri,
        trace_id=trace_id,
    )
    _RUNS_LOG.info(
        "run_accepted",
        extra={
            "run_id": run.run_id,
            "pipeline": pipeline,
            "subject_id": run.subject_id,
            "external_job_id": run.external_job_id,
            "trace_id": run.trace_id,
        },
    )
    return JSONResponse(run_public_view(run), status_code=202)


@router.get("/runs/{run_id}", tags=["runs"])
async def run_status(request: Request, run_id: str) -> Dict[str, Any]:
    run_store: RunStore = request.app.state.run_store
    run = run_store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run_public_view(run)


@router.get("/pipelines/{pipeline}/subjects/{owner_id}/{subject_id}", tags=["runs"])
async def subject_status(request: Request, pipeline: str, owner_id: str, subject_id: str) -> Dict[str, Any]:
    """Status of a subject document, taken from its latest run."""
    _orchestrator_for(request, pipeline)
    run_store: RunStore = request.app.state.run_store
    run = run_store.latest_for_subject(pipeline, owner_id, subject_id)
    if run is None:
        raise HTTPException(status_code=404, detail="No runs for subject")
    return subject_status_view(run)


__all__ = ["router", "BeginRunRequest", "extract_trace_id"]
