"""Runtime configuration for the docflow ingestion service.

Values are read from the environment (or a local `.env`) via pydantic-settings.
Secret-bearing fields accept `sm://` Secret Manager references which are
resolved once at construction.

Core variables (env names in parentheses):
 - PROJECT_ID / REGION
 - DOC_AI_PROCESSOR_ID, DOC_AI_LOCATION
 - INTAKE_GCS_BUCKET (subject uploads), OCR_OUTPUT_BUCKET (Document AI output)
 - PIPELINE_STATE_BACKEND (memory|gcs), PIPELINE_STATE_BUCKET, PIPELINE_STATE_PREFIX
 - DOCUMENT_STORE_BACKEND (memory|gcs), DOCUMENT_STORE_BUCKET
 - SEARCH_INDEX_URL (OpenSearch-compatible endpoint; memory index when unset)
 - OPENAI_API_KEY (generative enrichment disabled when unset)
 - CALLBACK_TIMEOUT_SECONDS, PROCESSING_TIMEOUT_SECONDS, SWEEP_INTERVAL_SECONDS
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from docflow.utils.secrets import resolve_secret

_STATE_BACKENDS = {"memory", "gcs"}


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class AppConfig(BaseSettings):
    project_id: str = Field('', validation_alias='PROJECT_ID')
    region: str = Field('us', validation_alias='REGION')
    doc_ai_location: str = Field('us', validation_alias=AliasChoices('DOC_AI_LOCATION', 'REGION'))
    doc_ai_processor_id: str = Field(
        '',
        validation_alias=AliasChoices('DOC_AI_PROCESSOR_ID', 'DOC_AI_OCR_PROCESSOR_ID'),
    )
    intake_gcs_bucket: str = Field('docflow-intake', validation_alias='INTAKE_GCS_BUCKET')
    ocr_output_bucket: str = Field(
        'docflow-ocr-output',
        validation_alias=AliasChoices('OCR_OUTPUT_BUCKET', 'OUTPUT_GCS_BUCKET'),
    )
    pipeline_state_backend: str = Field('memory', validation_alias='PIPELINE_STATE_BACKEND')
    pipeline_state_bucket: str | None = Field(None, validation_alias='PIPELINE_STATE_BUCKET')
    pipeline_state_prefix: str = Field('pipeline-state', validation_alias='PIPELINE_STATE_PREFIX')
    document_store_backend: str = Field('memory', validation_alias='DOCUMENT_STORE_BACKEND')
    document_store_bucket: str | None = Field(None, validation_alias='DOCUMENT_STORE_BUCKET')
    search_index_url: str | None = Field(None, validation_alias='SEARCH_INDEX_URL')
    search_index_prefix: str = Field('docflow', validation_alias='SEARCH_INDEX_PREFIX')
    openai_api_key: str | None = Field(None, validation_alias='OPENAI_API_KEY')
    openai_model: str = Field('gpt-4o-mini', validation_alias='OPENAI_MODEL')
    openai_embedding_model: str = Field('text-embedding-3-small', validation_alias='OPENAI_EMBEDDING_MODEL')
    status_topic: str | None = Field(None, validation_alias='PIPELINE_STATUS_TOPIC')
    internal_event_token: str | None = Field(None, validation_alias='INTERNAL_EVENT_TOKEN')
    cmek_key_name: str | None = Field(None, validation_alias='CMEK_KEY_NAME')
    callback_timeout_seconds: float = Field(30 * 60, validation_alias='CALLBACK_TIMEOUT_SECONDS')
    processing_timeout_seconds: float = Field(5 * 60, validation_alias='PROCESSING_TIMEOUT_SECONDS')
    processing_grace_seconds: float = Field(60, validation_alias='PROCESSING_GRACE_SECONDS')
    sweep_interval_seconds: float = Field(60, validation_alias='SWEEP_INTERVAL_SECONDS')
    enable_sweeper_raw: str | bool | None = Field(True, validation_alias='ENABLE_SWEEPER')
    job_record_write_attempts: int = Field(3, validation_alias='JOB_RECORD_WRITE_ATTEMPTS')
    chunk_max_chars: int = Field(2500, validation_alias='CHUNK_MAX_CHARS')
    chunk_overlap_chars: int = Field(250, validation_alias='CHUNK_OVERLAP_CHARS')
    chunk_min_chars: int = Field(200, validation_alias='CHUNK_MIN_CHARS')

    model_config = SettingsConfigDict(env_file='.env', extra='ignore', case_sensitive=False)

    def model_post_init(self, __context: Any) -> None:  # pylint: disable=W0221
        project_hint = self.project_id or os.getenv("PROJECT_ID")
        for field_name in ("openai_api_key", "internal_event_token", "doc_ai_processor_id", "cmek_key_name"):
            value = getattr(self, field_name, None)
            resolved = resolve_secret(value, project_id=project_hint)
            if resolved is not None:
                setattr(self, field_name, resolved)
        self.pipeline_state_backend = self.pipeline_state_backend.strip().lower()
        self.document_store_backend = self.document_store_backend.strip().lower()

    @property
    def enable_sweeper(self) -> bool:
        raw = self.enable_sweeper_raw
        if isinstance(raw, bool):
            return raw
        return parse_bool(str(raw))

    @property
    def doc_ai_processor_name(self) -> str:
        return (
            f"projects/{self.project_id}/locations/{self.doc_ai_location}"
            f"/processors/{self.doc_ai_processor_id}"
        )

    def validate_required(self) -> None:
        problems: list[str] = []
        if self.pipeline_state_backend not in _STATE_BACKENDS:
            problems.append(f"PIPELINE_STATE_BACKEND must be one of {sorted(_STATE_BACKENDS)}")
        if self.document_store_backend not in _STATE_BACKENDS:
            problems.append(f"DOCUMENT_STORE_BACKEND must be one of {sorted(_STATE_BACKENDS)}")
        if self.pipeline_state_backend == "gcs" and not self.pipeline_state_bucket:
            problems.append("PIPELINE_STATE_BUCKET required when PIPELINE_STATE_BACKEND=gcs")
        if self.document_store_backend == "gcs" and not self.document_store_bucket:
            problems.append("DOCUMENT_STORE_BUCKET required when DOCUMENT_STORE_BACKEND=gcs")
        if self.callback_timeout_seconds <= 0 or self.processing_timeout_seconds <= 0:
            problems.append("timeouts must be positive")
        if self.processing_grace_seconds < 0:
            problems.append("PROCESSING_GRACE_SECONDS must not be negative")
        if not self.internal_event_token:
            problems.append("INTERNAL_EVENT_TOKEN must be configured")
        if problems:
            raise RuntimeError("Invalid configuration: " + "; ".join(problems))


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = ["AppConfig", "get_config", "parse_bool"]
