"""
Settlement Sender Job
Sends READY_TO_SEND orders when AUTO_SEND_ENABLED is on
"""

import logging
from typing import Any, Dict

from services.actors import Actor
from services.settlement_sender import settlement_sender

logger = logging.getLogger(__name__)

JOB_ACTOR = Actor.system("settlement_sender_job")


async def run_settlement_sender() -> Dict[str, Any]:
    try:
        result = await settlement_sender.process_ready_orders(actor=JOB_ACTOR)
        stuck = settlement_sender.list_stuck_orders()
        if stuck:
            logger.critical(
                f"🚨 SETTLEMENT_ATTENTION: {len(stuck)} order(s) awaiting a recorded settlement: "
                f"{[o.order_id for o in stuck[:10]]}"
            )
        result['awaiting_settlement'] = len(stuck)
        return result
    except Exception as e:
        logger.error(f"❌ SETTLEMENT_SENDER_JOB_FAILED: {e}", exc_info=True)
        return {'status': 'error', 'error': str(e)}
