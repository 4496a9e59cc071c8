"""
Treasury Reconciliation Engine

Compares what the inventory ledger believes is in custody with the balance
the custody provider reports on-chain. Runs as a periodic job or on admin
request, never inside the payout path: a failing balance source only
produces log alerts.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from config import Config
from models import ReconciliationRecord, ReconciliationStatus
from services.actors import Actor, SYSTEM_ACTOR
from services.audit_logger import audit_logger
from services.custody_provider import CustodyProvider, custody_client
from services.fulfillment_errors import (
    CustodyNotConfigured, CustodyProviderError, Forbidden, ReconciliationNotFound,
    ReconciliationStateError,
)
from services.inventory_ledger import InventoryLedgerService, inventory_ledger, validate_asset_type
from services.system_settings import SystemSettingsService, system_settings_service
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


def classify_discrepancy(discrepancy_pct: Decimal, tolerance_pct: Decimal) -> str:
    if discrepancy_pct <= tolerance_pct:
        return ReconciliationStatus.MATCHED.value
    return ReconciliationStatus.DISCREPANCY.value


class ReconciliationEngine:
    """Ledger vs custody balance cross-check"""

    def __init__(
        self,
        session_factory=None,
        ledger: Optional[InventoryLedgerService] = None,
        custody: Optional[CustodyProvider] = None,
        settings_service: Optional[SystemSettingsService] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or inventory_ledger
        self.custody = custody or custody_client
        self.settings = settings_service or system_settings_service

    def record_reconciliation(
        self,
        asset_type: str,
        onchain_balance: Any,
        actor: Actor = SYSTEM_ACTOR,
        notes: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> ReconciliationRecord:
        """Snapshot the ledger balance, compare and persist a record"""
        asset = validate_asset_type(asset_type)
        onchain = MonetaryDecimal.quantize_crypto(onchain_balance)
        if onchain < 0:
            raise ReconciliationStateError(f"On-chain balance cannot be negative: {onchain}")

        with atomic_transaction(session, self.session_factory) as s:
            tolerance = self.settings.load_snapshot(s).reconciliation_tolerance_pct
            database_balance = self.ledger.get_ledger_balance(asset, s)
            discrepancy = MonetaryDecimal.quantize_crypto(onchain - database_balance)
            discrepancy_pct = MonetaryDecimal.percent_of(discrepancy, database_balance)
            status = classify_discrepancy(discrepancy_pct, tolerance)

            record = ReconciliationRecord(
                reconciliation_id=f"REC_{uuid.uuid4().hex[:16].upper()}",
                asset_type=asset,
                onchain_balance=onchain,
                database_balance=database_balance,
                discrepancy=discrepancy,
                discrepancy_pct=discrepancy_pct,
                tolerance_pct=tolerance,
                status=status,
                notes=notes,
                created_by_admin_id=actor.actor_id if actor.is_admin else None,
            )
            s.add(record)
            audit_logger.log_event(
                s,
                action="RECONCILIATION_RECORDED",
                actor=actor,
                entity_type="reconciliation_record",
                entity_id=record.reconciliation_id,
                previous_state=None,
                new_state={
                    "status": status,
                    "onchain_balance": onchain,
                    "database_balance": database_balance,
                    "discrepancy": discrepancy,
                    "discrepancy_pct": discrepancy_pct,
                },
                metadata={"asset_type": asset, "tolerance_pct": tolerance},
            )
            s.flush()

        if status == ReconciliationStatus.DISCREPANCY.value:
            logger.critical(
                f"🚨 TREASURY_DISCREPANCY: {asset} on-chain={onchain} ledger={database_balance} "
                f"diff={discrepancy} ({discrepancy_pct}%) record={record.reconciliation_id}"
            )
        else:
            logger.info(f"✅ RECONCILIATION_MATCHED: {asset} on-chain={onchain} ledger={database_balance}")
        return record

    def resolve_discrepancy(
        self, reconciliation_id: str, notes: str, actor: Actor, session: Optional[Session] = None
    ) -> ReconciliationRecord:
        """Admin-only DISCREPANCY -> RESOLVED; never touches the ledger"""
        if not actor.is_admin:
            raise Forbidden("Resolving discrepancies requires an admin")
        if not notes or not notes.strip():
            raise ReconciliationStateError("Resolution notes are required")

        with atomic_transaction(session, self.session_factory) as s:
            record = (
                s.query(ReconciliationRecord)
                .filter(ReconciliationRecord.reconciliation_id == reconciliation_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if record is None:
                raise ReconciliationNotFound(reconciliation_id)
            if record.status != ReconciliationStatus.DISCREPANCY.value:
                raise ReconciliationStateError(
                    f"Only DISCREPANCY records can be resolved; {reconciliation_id} is {record.status}"
                )
            record.status = ReconciliationStatus.RESOLVED.value
            record.resolution_notes = notes.strip()
            record.resolved_by_admin_id = actor.actor_id
            record.resolved_at = get_naive_utc_now()
            audit_logger.log_event(
                s,
                action="RECONCILIATION_RESOLVED",
                actor=actor,
                entity_type="reconciliation_record",
                entity_id=reconciliation_id,
                previous_state={"status": ReconciliationStatus.DISCREPANCY.value},
                new_state={"status": ReconciliationStatus.RESOLVED.value},
                metadata={"notes": record.resolution_notes, "asset_type": record.asset_type},
            )
            s.flush()

        logger.info(f"✅ RECONCILIATION_RESOLVED: {reconciliation_id} by {actor.label}")
        return record

    async def reconcile_from_custody(
        self, assets: Optional[Iterable[str]] = None, actor: Actor = SYSTEM_ACTOR
    ) -> Dict[str, Any]:
        """Fetch on-chain balances per asset and record them; failures are skipped"""
        results: Dict[str, Any] = {}
        for asset in assets or Config.RECONCILIATION_ASSETS:
            try:
                onchain = await self.custody.get_onchain_balance(asset)
            except (CustodyProviderError, CustodyNotConfigured) as e:
                logger.warning(f"⚠️ RECONCILIATION_SOURCE_UNAVAILABLE: {asset}: {e}")
                results[asset] = {"status": "error", "error": str(e)}
                continue
            record = self.record_reconciliation(asset, onchain, actor=actor, notes="Automated custody reconciliation")
            results[asset] = {
                "status": record.status,
                "reconciliation_id": record.reconciliation_id,
                "discrepancy": str(record.discrepancy),
            }
        return results

    def get_record(self, reconciliation_id: str, session: Optional[Session] = None) -> ReconciliationRecord:
        with atomic_transaction(session, self.session_factory) as s:
            record = (
                s.query(ReconciliationRecord)
                .filter(ReconciliationRecord.reconciliation_id == reconciliation_id)
                .first()
            )
            if record is None:
                raise ReconciliationNotFound(reconciliation_id)
            return record

    def list_records(
        self,
        status: Optional[str] = None,
        asset_type: Optional[str] = None,
        limit: int = 100,
        session: Optional[Session] = None,
    ) -> List[ReconciliationRecord]:
        with atomic_transaction(session, self.session_factory) as s:
            query = s.query(ReconciliationRecord)
            if status:
                query = query.filter(ReconciliationRecord.status == status)
            if asset_type:
                query = query.filter(ReconciliationRecord.asset_type == validate_asset_type(asset_type))
            return (
                query.order_by(ReconciliationRecord.created_at.desc(), ReconciliationRecord.id.desc())
                .limit(limit)
                .all()
            )

    def latest_by_asset(self, session: Optional[Session] = None) -> Dict[str, ReconciliationRecord]:
        latest: Dict[str, ReconciliationRecord] = {}
        for record in self.list_records(limit=500, session=session):
            latest.setdefault(record.asset_type, record)
        return latest


reconciliation_engine = ReconciliationEngine()
