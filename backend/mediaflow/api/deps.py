"""
Service dependencies for API routes.

Tests replace these with app.dependency_overrides (recording dispatcher,
fake embedder) so no broker or model is needed.
"""

from mediaflow.services.pipeline.events import EventDispatcher, get_dispatcher
from mediaflow.services.processors.embedder import get_embedding_service
from mediaflow.services.providers.base import EmbeddingProvider


def get_event_dispatcher() -> EventDispatcher:
    return get_dispatcher()


async def get_query_embedder() -> EmbeddingProvider:
    return await get_embedding_service()
