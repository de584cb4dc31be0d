"""
Pipeline events.

Stages never call each other. Each one finishes by emitting the event that
triggers the next stage; the dispatcher maps events to Celery task names.

    media/transcription.requested  → pipeline.transcribe_media
    media/transcription.completed  → pipeline.chunk_media
    media/chunks.created           → pipeline.embed_media

Delivery is at-least-once, so every handler is written to be re-run.
"""

from typing import Protocol, runtime_checkable

from mediaflow.core.logging import get_logger

logger = get_logger(__name__)


TRANSCRIPTION_REQUESTED = "media/transcription.requested"
TRANSCRIPTION_COMPLETED = "media/transcription.completed"
CHUNKS_CREATED = "media/chunks.created"

EVENT_TASKS = {
    TRANSCRIPTION_REQUESTED: "pipeline.transcribe_media",
    TRANSCRIPTION_COMPLETED: "pipeline.chunk_media",
    CHUNKS_CREATED: "pipeline.embed_media",
}


class UnknownEventError(ValueError):
    pass


@runtime_checkable
class EventDispatcher(Protocol):
    def emit(self, event: str, item_id: str) -> None:
        ...


class CeleryEventDispatcher:
    """Publishes events as Celery tasks by name (no task imports needed)."""

    def __init__(self, app=None):
        self._app = app

    @property
    def app(self):
        if self._app is None:
            from mediaflow.workers.celery_app import celery_app
            self._app = celery_app
        return self._app

    def emit(self, event: str, item_id: str) -> None:
        task_name = EVENT_TASKS.get(event)
        if task_name is None:
            raise UnknownEventError(f"No handler registered for event '{event}'")

        result = self.app.send_task(task_name, args=[item_id])
        logger.info("event_emitted", event_name=event, item_id=item_id, task_id=result.id)


_default_dispatcher: CeleryEventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    global _default_dispatcher
    if _default_dispatcher is None:
        _default_dispatcher = CeleryEventDispatcher()
    return _default_dispatcher
