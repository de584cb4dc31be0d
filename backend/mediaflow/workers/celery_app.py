"""
Celery application instance and configuration.
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from mediaflow.core.config import settings

# Create Celery application
celery_app = Celery(
    "mediaflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "mediaflow.tasks.pipeline_tasks",
        "mediaflow.tasks.recovery_tasks",
    ],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,  # long transcriptions; no hoarding
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    result_expires=3600,  # 1 hour
)

# Celery Beat Schedule (Periodic Tasks)
celery_app.conf.beat_schedule = {
    'recover-stuck-media': {
        'task': 'recovery.recover_stuck_media',
        'schedule': crontab(minute=f'*/{settings.RECOVERY_SCAN_INTERVAL_MINUTES}'),
        'options': {'queue': 'recovery'},
    },
    'processing-stats': {
        'task': 'pipeline.get_processing_stats',
        'schedule': crontab(minute='0'),  # Hourly
        'options': {'queue': 'monitoring'},
    },
}

# Task routing
celery_app.conf.task_routes = {
    'pipeline.transcribe_media': {'queue': 'transcription'},
    'pipeline.chunk_media': {'queue': 'processing'},
    'pipeline.embed_media': {'queue': 'processing'},
    'pipeline.get_processing_stats': {'queue': 'monitoring'},
    'recovery.*': {'queue': 'recovery'},
}


@worker_process_init.connect
def configure_worker_logging(**kwargs):
    from mediaflow.core.logging import setup_logging
    setup_logging()
