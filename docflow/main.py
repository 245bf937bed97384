"""FastAPI application entrypoint for the docflow ingestion service."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from docflow import __version__
from docflow.api.notifications import router as notifications_router
from docflow.api.runs import extract_trace_id, router as runs_router
from docflow.config import AppConfig, get_config, parse_bool
from docflow.errors import ExternalServiceError, PersistenceError, PipelineError, ValidationError
from docflow.logging_setup import configure_logging, set_trace_id
from docflow.services.document_store import DocumentStore, create_document_store
from docflow.services.initiator import JobInitiator
from docflow.services.job_records import JobRecordStore, create_job_record_store
from docflow.services.listener import NotificationListener
from docflow.services.llm import GenerativeModel, create_model
from docflow.services.metrics import MetricsClient, NullMetrics, PrometheusMetrics
from docflow.services.object_locator import GCSObjectLocator, ObjectLocator
from docflow.services.ocr_provider import DocumentAIBatchProvider, OcrProvider
from docflow.services.orchestrator import Orchestrator
from docflow.services.processing import KnowledgeBaseProcessor, QuestionFileProcessor
from docflow.services.run_store import RunStore, create_run_store
from docflow.services.search_index import SearchIndex, create_search_index
from docflow.services.status_publisher import AsyncPubSubPublisher, PubSubPublisher, RunStatusNotifier
from docflow.services.sweeper import TimeoutSweeper
from docflow.utils.logging_utils import structured_log

_API_LOG = logging.getLogger("api")


def _health_payload() -> dict[str, str]:
    return {"status": "ok"}


def _metrics_enabled(default: bool) -> bool:
    raw = os.getenv("ENABLE_METRICS")
    if raw is None:
        return default
    return parse_bool(raw)


@dataclass(slots=True)
class PipelineServices:
    run_store: RunStore
    job_records: JobRecordStore
    document_store: DocumentStore
    search_index: SearchIndex
    orchestrators: Dict[str, Orchestrator]
    listener: NotificationListener
    sweeper: TimeoutSweeper

    async def aclose(self) -> None:
        """Stop background work and release network clients."""
        await self.sweeper.stop()
        await self.search_index.aclose()


def build_services(
    cfg: AppConfig,
    *,
    provider: OcrProvider | None = None,
    locator: ObjectLocator | None = None,
    model: GenerativeModel | None = None,
    document_store: DocumentStore | None = None,
    search_index: SearchIndex | None = None,
    publisher: PubSubPublisher | None = None,
    metrics: MetricsClient | None = None,
    clock: Callable[[], float] = time.time,
) -> PipelineServices:
    """Wire both pipelines onto one set of stores, provider and sweeper."""
    run_store = create_run_store(cfg, clock=clock)
    job_records = create_job_record_store(cfg)
    document_store = document_store or create_document_store(cfg)
    search_index = search_index or create_search_index(cfg)
    model = model or create_model(cfg)
    provider = provider or DocumentAIBatchProvider(
        processor_name=cfg.doc_ai_processor_name,
        output_bucket=cfg.ocr_output_bucket,
        location=cfg.doc_ai_location,
        kms_key_name=cfg.cmek_key_name,
    )
    locator = locator or GCSObjectLocator(bucket=cfg.intake_gcs_bucket)
    if publisher is None and cfg.status_topic:
        publisher = AsyncPubSubPublisher()
    notifier = RunStatusNotifier(publisher, cfg.status_topic)
    metrics = metrics or NullMetrics()

    initiator = JobInitiator(
        locator=locator,
        provider=provider,
        job_records=job_records,
        write_attempts=cfg.job_record_write_attempts,
        clock=clock,
    )
    processors = {
        "knowledge_base": KnowledgeBaseProcessor(
            provider=provider,
            document_store=document_store,
            search_index=search_index,
            model=model,
            max_chars=cfg.chunk_max_chars,
            overlap=cfg.chunk_overlap_chars,
            min_chars=cfg.chunk_min_chars,
        ),
        "question_file": QuestionFileProcessor(
            provider=provider,
            document_store=document_store,
            search_index=search_index,
            model=model,
        ),
    }
    orchestrators = {
        name: Orchestrator(
            pipeline=name,
            initiator=initiator,
            processor=processor,
            run_store=run_store,
            job_records=job_records,
            notifier=notifier,
            metrics=metrics,
            callback_timeout=cfg.callback_timeout_seconds,
            processing_timeout=cfg.processing_timeout_seconds,
            processing_grace=cfg.processing_grace_seconds,
            clock=clock,
        )
        for name, processor in processors.items()
    }
    return PipelineServices(
        run_store=run_store,
        job_records=job_records,
        document_store=document_store,
        search_index=search_index,
        orchestrators=orchestrators,
        listener=NotificationListener(job_records=job_records, orchestrators=orchestrators),
        sweeper=TimeoutSweeper(
            orchestrators=orchestrators.values(),
            job_records=job_records,
            interval_seconds=cfg.sweep_interval_seconds,
            ceiling_seconds=cfg.callback_timeout_seconds,
            clock=clock,
        ),
    )


def create_app(services: PipelineServices | None = None) -> FastAPI:
    configure_logging()
    get_config.cache_clear()

    cfg = get_config()
    app = FastAPI(title="docflow ingestion API", version=__version__)
    app.state.config = cfg
    if not cfg.internal_event_token:
        raise RuntimeError(
            "INTERNAL_EVENT_TOKEN must be configured via Secret Manager or environment variable"
        )
    app.state.internal_event_token = cfg.internal_event_token

    if _metrics_enabled(True):
        metrics: MetricsClient = PrometheusMetrics.instrument_app(app)
    else:
        metrics = NullMetrics()
    app.state.metrics = metrics

    services = services or build_services(cfg, metrics=metrics)
    app.state.services = services
    app.state.run_store = services.run_store
    app.state.orchestrators = services.orchestrators
    app.state.listener = services.listener
    app.state.sweeper = services.sweeper
    structured_log(
        _API_LOG,
        logging.INFO,
        "pipelines_configured",
        item_count=len(services.orchestrators),
    )

    @app.exception_handler(ValidationError)
    async def _val_handler(_r: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ExternalServiceError)
    async def _external_handler(_r: Request, exc: ExternalServiceError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def _persistence_handler(_r: Request, exc: PersistenceError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(PipelineError)
    async def _pipeline_handler(_r: Request, exc: PipelineError):
        _API_LOG.error("pipeline_error", extra={"error": str(exc), "error_type": type(exc).__name__})
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # Health endpoints ---------------------------------------------------------
    @app.get("/healthz", summary="Healthz")
    async def healthz():
        return _health_payload()

    @app.get("/readyz", include_in_schema=False)
    async def readyz():
        return _health_payload()

    @app.get("/", include_in_schema=False)
    async def root_health():
        return _health_payload()

    app.include_router(runs_router)
    app.include_router(notifications_router)

    @app.middleware("http")
    async def _trace_context(request: Request, call_next: Callable[[Request], Any]):
        set_trace_id(
            request.headers.get("x-trace-id")
            or extract_trace_id(request.headers.get("x-cloud-trace-context"))
        )
        return await call_next(request)

    @app.on_event("startup")
    async def _startup():  # pragma: no cover
        cfg.validate_required()
        if cfg.enable_sweeper:
            services.sweeper.start()
        routes = [getattr(r, "path", str(r)) for r in app.router.routes]
        _API_LOG.info("boot_canary", extra={"service": "docflow", "routes": routes, "version": app.version})

    @app.on_event("shutdown")
    async def _shutdown():
        await services.aclose()

    return app


__all__ = ["create_app", "build_services", "PipelineServices"]
