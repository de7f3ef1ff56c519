"""
Marketplace Celery Tasks

Background maintenance run by Celery beat.
"""

import logging
from typing import Dict, List

from compliance.errors import ExternalServiceError
from compliance.service.dependencies import get_services
from compliance.tasks.celery_app import app

logger = logging.getLogger(__name__)


@app.task(
    bind=True,
    name='compliance.tasks.sweep_expired_offers',
    max_retries=3,
    default_retry_delay=60
)
def sweep_expired_offers_task(self) -> Dict[str, List[str]]:
    """
    Background task: expire lapsed offers.

    Offers past ``expires_at`` become expired and their requests still
    awaiting review are rejected with reason ``offer_expired``.
    """
    try:
        summary = get_services().marketplace.sweep_expired_offers()
    except ExternalServiceError as e:
        logger.warning(f"Offer sweep could not reach the store: {e}")
        raise self.retry(exc=e)
    logger.info(
        f"Offer sweep: {len(summary['expired_offers'])} expired, "
        f"{len(summary['rejected_requests'])} request(s) rejected"
    )
    return summary


@app.task(name='compliance.tasks.redeliver_notifications')
def redeliver_notifications_task() -> Dict[str, int]:
    """Background task: one more delivery attempt for each parked notification."""
    services = get_services()
    result = services.operator_queue.redeliver_notifications(services.notifier)
    if result["delivered"] or result["failed"]:
        logger.info(f"Notification redelivery: {result['delivered']} delivered, {result['failed']} still failing")
    return result
