"""
Celery Application Configuration

Sets up the Celery task queue with a Redis broker for background
marketplace maintenance: the offer-expiry sweep (scheduled by beat) and
redelivery of parked notifications.
"""

from celery import Celery

from compliance.config import load_settings

settings = load_settings()

# Celery app configuration
app = Celery(
    'agritrace_tasks',
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=['compliance.tasks.marketplace_tasks']
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_track_started=True,
    task_time_limit=120,
    task_soft_time_limit=90,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Retry settings
    task_acks_late=True,  # Only ack after task completes
    task_reject_on_worker_lost=True,  # Requeue if worker dies
)

# The sweep is the only unilateral transition in the marketplace
app.conf.beat_schedule = {
    'sweep-expired-offers': {
        'task': 'compliance.tasks.sweep_expired_offers',
        'schedule': float(settings.offer_sweep_interval_seconds),
    },
    'redeliver-parked-notifications': {
        'task': 'compliance.tasks.redeliver_notifications',
        'schedule': float(settings.offer_sweep_interval_seconds),
    },
}

app.conf.task_routes = {
    'compliance.tasks.*': {'queue': 'compliance_maintenance'},
}

if __name__ == '__main__':
    app.start()
