"""
Semantic search over embedded transcript chunks (pgvector).

Only chunks of the tenant's non-deleted items that already carry an
embedding are candidates; items still in the pipeline show up as soon as
their first batch is committed.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.models.media import MediaChunk, MediaItem

logger = logging.getLogger(__name__)


async def search_similar_chunks(
    db: AsyncSession,
    tenant_id: str,
    query_embedding: List[float],
    limit: int = 5,
    media_item_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Nearest chunks by cosine distance.

    Args:
        tenant_id: Only this tenant's media is searched
        query_embedding: Query vector (EMBEDDING_DIMENSION floats)
        limit: Maximum results
        media_item_id: Optional restriction to one item

    Returns:
        Chunk dictionaries, most similar first, with `similarity` = 1 - distance
    """
    distance = MediaChunk.embedding.cosine_distance(query_embedding).label('distance')

    query = select(
        MediaChunk.id.label('chunk_id'),
        MediaChunk.media_item_id,
        MediaChunk.chunk_index,
        MediaChunk.text,
        MediaChunk.start_seconds,
        MediaChunk.end_seconds,
        MediaItem.title,
        distance,
    ).select_from(MediaChunk).join(
        MediaItem, MediaChunk.media_item_id == MediaItem.id
    ).where(
        and_(
            MediaItem.tenant_id == tenant_id,
            MediaItem.is_deleted.is_(False),
            MediaChunk.embedding.is_not(None),
        )
    )

    if media_item_id:
        query = query.where(MediaChunk.media_item_id == media_item_id)

    query = query.order_by(distance).limit(limit)

    result = await db.execute(query)
    rows = result.all()

    logger.debug(f"Semantic search for tenant {tenant_id} returned {len(rows)} chunks")

    return [
        {
            'chunk_id': row.chunk_id,
            'media_item_id': row.media_item_id,
            'title': row.title,
            'chunk_index': row.chunk_index,
            'text': row.text,
            'start_seconds': row.start_seconds,
            'end_seconds': row.end_seconds,
            'similarity': round(1.0 - float(row.distance), 4),
        }
        for row in rows
    ]
