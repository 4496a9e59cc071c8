"""
System Settings Service

Kill switches and numeric limits stored in system_settings. Every read goes
to the database; nothing is cached in-process so an emergency pause takes
effect on the next allocator pass.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.orm import Session

from config import Config
from models import AssetType, SettingValueType, SystemSetting
from services.actors import Actor
from services.audit_logger import audit_logger
from services.fulfillment_errors import SettingValidationError
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

AUTO_SEND_ENABLED = "AUTO_SEND_ENABLED"
PAYOUTS_PAUSED = "PAYOUTS_PAUSED"
BTC_PAYOUTS_PAUSED = "BTC_PAYOUTS_PAUSED"
USDC_PAYOUTS_PAUSED = "USDC_PAYOUTS_PAUSED"
DAILY_BTC_LIMIT = "DAILY_BTC_LIMIT"
MAX_TX_BTC_LIMIT = "MAX_TX_BTC_LIMIT"
LOW_INVENTORY_THRESHOLD_BTC = "LOW_INVENTORY_THRESHOLD_BTC"
RECONCILIATION_TOLERANCE_PCT = "RECONCILIATION_TOLERANCE_PCT"

# key -> (value type, default factory, description)
SETTING_DEFINITIONS: Dict[str, Tuple[str, Any, str]] = {
    AUTO_SEND_ENABLED: (
        SettingValueType.BOOLEAN.value,
        lambda: Config.DEFAULT_AUTO_SEND_ENABLED,
        "Automatically send READY_TO_SEND orders through the custody provider",
    ),
    PAYOUTS_PAUSED: (
        SettingValueType.BOOLEAN.value,
        lambda: False,
        "Global kill switch for all payouts",
    ),
    BTC_PAYOUTS_PAUSED: (
        SettingValueType.BOOLEAN.value,
        lambda: False,
        "Kill switch for BTC payouts",
    ),
    USDC_PAYOUTS_PAUSED: (
        SettingValueType.BOOLEAN.value,
        lambda: False,
        "Kill switch for USDC payouts",
    ),
    DAILY_BTC_LIMIT: (
        SettingValueType.DECIMAL.value,
        lambda: Config.DEFAULT_DAILY_BTC_LIMIT,
        "Maximum BTC committed to payouts per UTC day",
    ),
    MAX_TX_BTC_LIMIT: (
        SettingValueType.DECIMAL.value,
        lambda: Config.DEFAULT_MAX_TX_BTC_LIMIT,
        "Maximum BTC per single payout",
    ),
    LOW_INVENTORY_THRESHOLD_BTC: (
        SettingValueType.DECIMAL.value,
        lambda: Config.DEFAULT_LOW_INVENTORY_THRESHOLD_BTC,
        "Alert when eligible BTC inventory drops below this amount",
    ),
    RECONCILIATION_TOLERANCE_PCT: (
        SettingValueType.DECIMAL.value,
        lambda: Config.DEFAULT_RECONCILIATION_TOLERANCE_PCT,
        "Discrepancy percentage still classified as MATCHED",
    ),
}

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


def parse_setting_value(key: str, raw: Union[str, bool, int, float, Decimal]) -> Any:
    """Parse a raw value into the setting's declared type"""
    if key not in SETTING_DEFINITIONS:
        raise SettingValidationError(f"Unknown setting: {key}")
    value_type = SETTING_DEFINITIONS[key][0]

    if value_type == SettingValueType.BOOLEAN.value:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise SettingValidationError(f"{key} expects a boolean, got {raw!r}")

    if value_type == SettingValueType.DECIMAL.value:
        if isinstance(raw, bool):
            raise SettingValidationError(f"{key} expects a number, got {raw!r}")
        try:
            value = MonetaryDecimal.to_decimal(raw, key)
        except ValueError as e:
            raise SettingValidationError(f"{key} expects a number, got {raw!r}") from e
        if value < 0:
            raise SettingValidationError(f"{key} must be non-negative, got {value}")
        return value

    return str(raw)


def serialize_setting_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class SettingsSnapshot:
    """Settings as read at the start of a pass"""
    auto_send_enabled: bool
    payouts_paused: bool
    btc_payouts_paused: bool
    usdc_payouts_paused: bool
    daily_btc_limit: Decimal
    max_tx_btc_limit: Decimal
    low_inventory_threshold_btc: Decimal
    reconciliation_tolerance_pct: Decimal
    read_at: datetime

    def pause_reason(self, asset_type: str) -> Optional[str]:
        if self.payouts_paused:
            return "Payouts paused globally (PAYOUTS_PAUSED)"
        if asset_type == AssetType.BTC.value and self.btc_payouts_paused:
            return "BTC payouts paused (BTC_PAYOUTS_PAUSED)"
        if asset_type in (AssetType.USDC.value, AssetType.COMPANY_USDC.value) and self.usdc_payouts_paused:
            return "USDC payouts paused (USDC_PAYOUTS_PAUSED)"
        return None

    def is_asset_paused(self, asset_type: str) -> bool:
        return self.pause_reason(asset_type) is not None


class SystemSettingsService:
    """Read and mutate runtime settings"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def seed_defaults(self, session: Optional[Session] = None) -> int:
        """Insert rows for any missing setting key; returns rows created"""
        created = 0
        with atomic_transaction(session, self.session_factory) as s:
            existing = {row.setting_key for row in s.query(SystemSetting.setting_key).all()}
            for key, (value_type, default_factory, description) in SETTING_DEFINITIONS.items():
                if key in existing:
                    continue
                s.add(SystemSetting(
                    setting_key=key,
                    setting_value=serialize_setting_value(default_factory()),
                    value_type=value_type,
                    description=description,
                    updated_by="system",
                ))
                created += 1
        if created:
            logger.info(f"⚙️ SETTINGS_SEEDED: {created} default settings created")
        return created

    def _read_values(self, session: Session) -> Dict[str, Any]:
        values = {key: definition[1]() for key, definition in SETTING_DEFINITIONS.items()}
        for row in session.query(SystemSetting).populate_existing().all():
            if row.setting_key not in SETTING_DEFINITIONS:
                continue
            try:
                values[row.setting_key] = parse_setting_value(row.setting_key, row.setting_value)
            except SettingValidationError as e:
                logger.error(f"❌ SETTING_CORRUPT: {row.setting_key}={row.setting_value!r} ({e}); using default")
        return values

    def load_snapshot(self, session: Optional[Session] = None) -> SettingsSnapshot:
        """Read every setting fresh from the database"""
        with atomic_transaction(session, self.session_factory) as s:
            values = self._read_values(s)
        return SettingsSnapshot(
            auto_send_enabled=values[AUTO_SEND_ENABLED],
            payouts_paused=values[PAYOUTS_PAUSED],
            btc_payouts_paused=values[BTC_PAYOUTS_PAUSED],
            usdc_payouts_paused=values[USDC_PAYOUTS_PAUSED],
            daily_btc_limit=values[DAILY_BTC_LIMIT],
            max_tx_btc_limit=values[MAX_TX_BTC_LIMIT],
            low_inventory_threshold_btc=values[LOW_INVENTORY_THRESHOLD_BTC],
            reconciliation_tolerance_pct=values[RECONCILIATION_TOLERANCE_PCT],
            read_at=get_naive_utc_now(),
        )

    def list_settings(self, session: Optional[Session] = None) -> Dict[str, Dict[str, Any]]:
        with atomic_transaction(session, self.session_factory) as s:
            values = self._read_values(s)
            rows = {row.setting_key: row for row in s.query(SystemSetting).all()}
            result = {}
            for key, (value_type, _, description) in SETTING_DEFINITIONS.items():
                row = rows.get(key)
                result[key] = {
                    "value": serialize_setting_value(values[key]),
                    "value_type": value_type,
                    "description": description,
                    "updated_by": row.updated_by if row else None,
                    "updated_at": row.updated_at.isoformat() if row and row.updated_at else None,
                }
            return result

    def set_setting(
        self, key: str, raw_value: Any, actor: Actor, session: Optional[Session] = None
    ) -> Tuple[Any, Any]:
        """Validate, persist and audit one setting change; returns (old, new)"""
        new_value = parse_setting_value(key, raw_value)
        value_type, default_factory, description = SETTING_DEFINITIONS[key]

        with atomic_transaction(session, self.session_factory) as s:
            row = (
                s.query(SystemSetting)
                .filter(SystemSetting.setting_key == key)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if row is None:
                old_value = default_factory()
                row = SystemSetting(
                    setting_key=key,
                    value_type=value_type,
                    description=description,
                    setting_value=serialize_setting_value(new_value),
                )
                s.add(row)
            else:
                old_value = parse_setting_value(key, row.setting_value)
                row.setting_value = serialize_setting_value(new_value)
            row.updated_by = actor.actor_id or actor.actor_type
            row.updated_at = get_naive_utc_now()

            audit_logger.log_event(
                s,
                action="SETTING_UPDATED",
                actor=actor,
                entity_type="system_setting",
                entity_id=key,
                previous_state={"value": serialize_setting_value(old_value)},
                new_state={"value": serialize_setting_value(new_value)},
            )

        logger.warning(f"⚙️ SETTING_UPDATED: {key} {old_value} -> {new_value} by {actor.label}")
        return old_value, new_value


system_settings_service = SystemSettingsService()
