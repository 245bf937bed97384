"""Runtime launcher for the docflow ingestion service."""

from __future__ import annotations

import logging
import multiprocessing
import os

import uvicorn

from docflow.logging_setup import configure_logging

LOG = logging.getLogger("docflow.runtime")


def _state_is_shared() -> bool:
    return os.getenv("PIPELINE_STATE_BACKEND", "memory").strip().lower() == "gcs"


def _worker_count() -> int:
    requested = os.getenv("UVICORN_WORKERS", "").strip()
    if not _state_is_shared():
        # Suspended runs and job records live in process memory; a second
        # worker would never see the records the first one wrote.
        if requested not in ("", "1"):
            LOG.warning("worker_count_forced", extra={"requested": requested, "workers": 1})
        return 1
    if requested.isdigit() and int(requested) > 0:
        return int(requested)
    return max(1, multiprocessing.cpu_count() or 1)


def main() -> None:
    configure_logging()
    workers = _worker_count()
    port = int(os.getenv("PORT", "8080"))
    LOG.info("server_starting", extra={"port": port, "workers": workers, "shared_state": _state_is_shared()})
    uvicorn.run(
        "docflow.main:create_app",
        host="0.0.0.0",
        port=port,
        factory=True,
        workers=workers,
        lifespan="on",
    )


if __name__ == "__main__":  # pragma: no cover - exercised in runtime
    main()
