"""Celery tasks for the Last Round cup.

This module configures Celery and registers the periodic cup tasks.
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from lastround.config import get_settings
from lastround.logging_config import configure_logging

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "lastround",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["lastround.tasks.cup"],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit
    # Whole-task retries are safe: cup point writes are keyed upserts
    task_acks_late=True,
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Cup activation check - daily at 06:00
    "detect-cup-activation": {
        "task": "lastround.tasks.cup.detect_cup_activation",
        "schedule": crontab(hour=6, minute=0),
        "options": {"expires": 3600},
    },
    # Cup points for the current season - hourly at :15
    "calculate-season-cup-points": {
        "task": "lastround.tasks.cup.calculate_current_season_cup_points",
        "schedule": crontab(minute=15),
        "options": {"expires": 3540},
    },
    # Cup winners for completed seasons - daily at 03:30
    "determine-cup-winners": {
        "task": "lastround.tasks.cup.determine_cup_winners",
        "schedule": crontab(hour=3, minute=30),
        "options": {"expires": 3600},
    },
}


@worker_process_init.connect
def _configure_worker_logging(**kwargs):
    configure_logging(settings.log_level)
