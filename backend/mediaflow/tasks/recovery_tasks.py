"""
Celery tasks for stuck-job recovery.

recovery.recover_stuck_media runs on Celery beat every
RECOVERY_SCAN_INTERVAL_MINUTES. Unlike the admin surface it fails items
that have used up their recovery attempts instead of skipping them, so
nothing stays stuck forever.
"""

import logging

from celery import Task
from sqlalchemy.exc import OperationalError

from mediaflow.db.session import AsyncSessionLocal
from mediaflow.services.recovery import recover
from mediaflow.tasks.pipeline_tasks import run_async
from mediaflow.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


class RecoveryTask(Task):
    """Retries only infrastructure errors of the selection query."""

    autoretry_for = (OperationalError,)
    retry_kwargs = {'max_retries': 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True


@celery_app.task(
    base=RecoveryTask,
    name='recovery.recover_stuck_media',
    bind=True,
)
def recover_stuck_media(self, dry_run: bool = False) -> dict:
    """
    Scan for stuck media items and apply the recovery decision matrix.

    Returns:
        Recovery summary:
        {
            'recovered': int,
            'failed': int,
            'skipped': int,
            'total': int,
            'results': [...]
        }
    """
    async def _recover():
        async with AsyncSessionLocal() as db:
            summary = await recover(db, dry_run=dry_run, terminate_exhausted=True)
            return summary.to_dict()

    result = run_async(_recover())

    if result['total']:
        logger.info(
            f"Recovery scan: {result['recovered']} recovered, {result['failed']} failed, "
            f"{result['skipped']} skipped of {result['total']} stuck items"
        )
    else:
        logger.debug("Recovery scan: no stuck media items")

    return result
