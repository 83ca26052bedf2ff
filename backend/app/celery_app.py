"""
Celery application
"""
from celery import Celery
from celery.signals import setup_logging

from app.config import settings
from app.logging_config import configure_logging


celery_app = Celery(
    "catalog_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.sync_square_data"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    beat_schedule={
        "sync-square-catalog": {
            "task": "app.tasks.sync_square_data.sync_catalog_periodic",
            "schedule": settings.CATALOG_SYNC_INTERVAL_MINUTES * 60,
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    # Connecting this signal stops Celery from replacing our root handlers
    configure_logging()
