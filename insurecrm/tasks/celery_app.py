import os

from celery import Celery

from insurecrm.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "insurecrm",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=[
        "insurecrm.tasks.automation_tasks",
        "insurecrm.tasks.campaign_tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=1800,  # 30 minutes
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes

    worker_concurrency=int(os.getenv('CELERY_WORKER_CONCURRENCY', '4')),
    worker_prefetch_multiplier=int(os.getenv('CELERY_WORKER_PREFETCH', '1')),
    worker_max_tasks_per_child=int(os.getenv('CELERY_MAX_TASKS_PER_CHILD', '100')),

    # Periodic passes are idempotent; a lost one is picked up by the next tick
    task_acks_late=False,

    task_routes={
        'insurecrm.tasks.automation_tasks.*': {'queue': 'automation'},
        'insurecrm.tasks.campaign_tasks.*': {'queue': 'campaigns'},
    },
)

celery_app.conf.beat_schedule = {
    # Evaluate automation rules every 10 minutes
    'automation-rules-evaluate': {
        'task': 'evaluate_automation_rules',
        'schedule': 60.0 * 10,
        'options': {'queue': 'automation', 'expires': 300},
    },

    # Send the next batch of every running campaign
    'campaigns-dispatch': {
        'task': 'dispatch_campaigns',
        'schedule': 30.0,
        'options': {'queue': 'campaigns', 'expires': 25},
    },

    # Start scheduled campaigns whose time has come
    'campaigns-promote-scheduled': {
        'task': 'promote_scheduled_campaigns',
        'schedule': 60.0,
        'options': {'queue': 'campaigns', 'expires': 55},
    },
}
