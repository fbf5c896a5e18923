import os

from celery import Celery

from partner_messaging.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "partner_messaging",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=[
        "partner_messaging.tasks.template_tasks",
        "partner_messaging.tasks.campaign_tasks",
        "partner_messaging.tasks.webhook_tasks",
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

    # Campaigns pace one message per second and may sit paused for minutes
    task_time_limit=6 * 60 * 60,
    task_soft_time_limit=6 * 60 * 60 - 60,

    worker_concurrency=int(os.getenv('CELERY_WORKER_CONCURRENCY', '4')),
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=int(os.getenv('CELERY_MAX_TASKS_PER_CHILD', '100')),

    task_acks_late=True,
    task_reject_on_worker_lost=True,

    task_routes={
        'partner_messaging.tasks.template_tasks.*': {'queue': 'templates'},
        'partner_messaging.tasks.campaign_tasks.*': {'queue': 'campaigns'},
        'partner_messaging.tasks.webhook_tasks.*': {'queue': 'webhooks'},
    },
    task_default_queue='default',
    task_create_missing_queues=True,
)

celery_app.conf.beat_schedule = {
    # Pull WhatsApp approval status for submitted templates
    'poll-pending-templates': {
        'task': 'partner_messaging.tasks.template_tasks.poll_pending_templates',
        'schedule': 60.0 * settings.template_poll_interval_minutes,
        'options': {'queue': 'templates'},
    },
}
