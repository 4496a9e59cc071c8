"""
Treasury Reconciliation Job
Compares custody balances with the inventory ledger for each configured asset
"""

import logging
from typing import Any, Dict

from config import Config
from services.actors import Actor
from services.reconciliation_engine import reconciliation_engine

logger = logging.getLogger(__name__)

JOB_ACTOR = Actor.system("reconciliation_job")


async def run_treasury_reconciliation() -> Dict[str, Any]:
    if not getattr(reconciliation_engine.custody, 'is_configured', True):
        logger.info("🚫 TREASURY_RECONCILIATION: custody provider not configured - skipping")
        return {'status': 'skipped', 'reason': 'custody not configured'}
    try:
        results = await reconciliation_engine.reconcile_from_custody(Config.RECONCILIATION_ASSETS, actor=JOB_ACTOR)
        discrepancies = [asset for asset, r in results.items() if r.get('status') == 'DISCREPANCY']
        return {'status': 'completed', 'assets': results, 'discrepancies': discrepancies}
    except Exception as e:
        logger.error(f"❌ TREASURY_RECONCILIATION_FAILED: {e}", exc_info=True)
        return {'status': 'error', 'error': str(e)}
