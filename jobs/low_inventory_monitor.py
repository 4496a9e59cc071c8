"""
Low Inventory Monitor
Alerts when eligible BTC inventory falls below LOW_INVENTORY_THRESHOLD_BTC
"""

import logging
from typing import Any, Dict

from models import AssetType
from services.inventory_ledger import inventory_ledger
from services.system_settings import system_settings_service

logger = logging.getLogger(__name__)


async def monitor_low_inventory() -> Dict[str, Any]:
    try:
        threshold = system_settings_service.load_snapshot().low_inventory_threshold_btc
        is_low, eligible = inventory_ledger.is_low_inventory(AssetType.BTC.value, threshold)
        if is_low:
            logger.warning(
                f"🚨 LOW_INVENTORY: BTC eligible balance {eligible} below threshold {threshold}"
            )
            return {'status': 'low', 'asset_type': AssetType.BTC.value, 'eligible': str(eligible), 'threshold': str(threshold)}
        logger.debug(f"✅ LOW_INVENTORY_MONITOR: BTC eligible {eligible} >= {threshold}")
        return {'status': 'healthy', 'asset_type': AssetType.BTC.value, 'eligible': str(eligible), 'threshold': str(threshold)}
    except Exception as e:
        logger.error(f"❌ LOW_INVENTORY_MONITOR_FAILED: {e}", exc_info=True)
        return {'status': 'error', 'error': str(e)}
