"""
Fulfillment Allocation Job
Periodic allocator pass promoting eligible orders to READY_TO_SEND
"""

import logging
from typing import Any, Dict

from services.actors import Actor
from services.fulfillment_allocator import fulfillment_allocator
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

JOB_ACTOR = Actor.system("fulfillment_allocation_job")


async def run_fulfillment_allocation() -> Dict[str, Any]:
    """Scheduled allocator pass"""
    started_at = get_naive_utc_now()
    try:
        summary = await fulfillment_allocator.run_allocation_pass(actor=JOB_ACTOR)
        return {
            'status': 'completed',
            'processed': summary.processed,
            'allocated': summary.allocated,
            'changed': summary.changed,
            'errors': summary.errors,
            'started_at': started_at.isoformat(),
        }
    except Exception as e:
        logger.error(f"❌ FULFILLMENT_ALLOCATION_JOB_FAILED: {e}", exc_info=True)
        return {'status': 'error', 'error': str(e), 'started_at': started_at.isoformat()}
