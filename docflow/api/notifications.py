"""OCR completion notifications (Pub/Sub push) and internal maintenance routes."""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from docflow.models.events import MalformedNotificationError, OcrCompletionEvent
from docflow.services.listener import NotificationListener
from docflow.services.run_store import run_public_view
from docflow.services.sweeper import TimeoutSweeper

router = APIRouter()
_NOTIFY_LOG = logging.getLogger("api.notifications")


def _ignored(reason: str) -> JSONResponse:
    # 2xx so Pub/Sub acknowledges and does not redeliver
    return JSONResponse({"status": "ignored", "reason": reason}, status_code=200)


@router.post("/notifications/ocr", tags=["notifications"])
async def ocr_notification(request: Request):
    try:
        body = await request.json()
    except ValueError:
        _NOTIFY_LOG.warning("notification_invalid_json")
        return _ignored("invalid_json")
    if not isinstance(body, dict):
        _NOTIFY_LOG.warning("notification_not_object")
        return _ignored("invalid_payload")
    try:
        event = OcrCompletionEvent.from_push_envelope(body)
    except MalformedNotificationError as exc:
        _NOTIFY_LOG.warning("notification_malformed", extra={"error": str(exc)})
        return _ignored("malformed")

    _NOTIFY_LOG.info(
        "notification_received",
        extra={
            "external_job_id": event.external_job_id,
            "outcome": event.outcome.value,
            "message_id": event.message_id,
        },
    )
    listener: NotificationListener = request.app.state.listener
    run = await listener.handle_event(event)
    if run is None:
        return JSONResponse({"status": "dropped", "external_job_id": event.external_job_id}, status_code=200)
    return JSONResponse({"status": "resumed", "run": run_public_view(run)}, status_code=200)


@router.post("/internal/sweep", tags=["internal"])
async def sweep(request: Request):
    expected_token = request.app.state.internal_event_token
    provided = request.headers.get("x-internal-event-token", "")
    if not expected_token or not provided or not secrets.compare_digest(provided, expected_token):
        raise HTTPException(status_code=401, detail="Missing or invalid internal token")
    sweeper: TimeoutSweeper = request.app.state.sweeper
    return await sweeper.sweep()


__all__ = ["router"]
