"""Publishes terminal run status events to Pub/Sub."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Protocol

from google.api_core import exceptions as gexc
from google.cloud import pubsub_v1  # type: ignore

from docflow.models.events import RunStatusEvent
from docflow.services.run_store import PipelineRun

LOG = logging.getLogger("pipeline.status")


class PubSubPublisher(Protocol):
    async def publish(self, topic: str, data: bytes, attributes: Dict[str, str] | None = None) -> str: ...


class AsyncPubSubPublisher(PubSubPublisher):
    """Async wrapper around the Pub/Sub PublisherClient."""

    def __init__(self, client: pubsub_v1.PublisherClient | None = None) -> None:
        self.client = client or pubsub_v1.PublisherClient()

    async def publish(
        self,
        topic: str,
        data: bytes,
        attributes: Dict[str, str] | None = None,
    ) -> str:
        future = self.client.publish(topic, data, **(attributes or {}))
        return await asyncio.wrap_future(future)


class RunStatusNotifier:
    """Emits a `RunStatusEvent` when a run reaches SUCCEEDED or FAILED.

    The run's terminal state is already persisted when this is called, so a
    publish failure is logged and does not change the run.
    """

    def __init__(self, publisher: PubSubPublisher | None, topic: str | None) -> None:
        self.publisher = publisher
        self.topic = topic

    @property
    def enabled(self) -> bool:
        return bool(self.publisher and self.topic)

    async def notify(self, run: PipelineRun) -> str | None:
        if not self.enabled or not run.stage.terminal:
            return None
        event = RunStatusEvent(
            run_id=run.run_id,
            pipeline=run.pipeline,
            subject_id=run.subject_id,
            owner_id=run.owner_id,
            stage=run.stage.value,
            trace_id=run.trace_id,
            external_job_id=run.external_job_id,
            failure=run.failure,
            result=run.result,
        )
        data, attributes = event.to_pubsub()
        try:
            message_id = await self.publisher.publish(self.topic, data, attributes)  # type: ignore[union-attr,arg-type]
        except gexc.GoogleAPICallError as exc:
            LOG.warning(
                "run_status_publish_failed",
                extra={"run_id": run.run_id, "stage": run.stage.value, "error": str(exc)},
            )
            return None
        LOG.info("run_status_published", extra={"run_id": run.run_id, "stage": run.stage.value, "message_id": message_id})
        return message_id


__all__ = ["PubSubPublisher", "AsyncPubSubPublisher", "RunStatusNotifier"]
