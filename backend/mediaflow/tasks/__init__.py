"""
Celery tasks for background processing.
"""

from mediaflow.tasks.pipeline_tasks import (
    chunk_media,
    embed_media,
    get_processing_stats,
    transcribe_media,
)
from mediaflow.tasks.recovery_tasks import recover_stuck_media

__all__ = [
    "transcribe_media",
    "chunk_media",
    "embed_media",
    "get_processing_stats",
    "recover_stuck_media",
]
