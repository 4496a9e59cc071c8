"""
Fulfillment Allocator

Batch pass that walks allocatable orders oldest first and either promotes
each to READY_TO_SEND with a held inventory reservation or parks it with a
blocked_reason. Settings are read fresh at the start of every pass, each
order is evaluated in its own transaction, and only real changes are
written, so re-running on an unchanged world is a no-op.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Config
from models import AssetType, FulfillmentOrder, FulfillmentStatus, KycStatus
from services.actors import Actor, SYSTEM_ACTOR
from services.fulfillment_errors import InsufficientInventory, KycNotApproved, LimitExceeded, PriceUnavailable
from services.fulfillment_queue import (
    FulfillmentQueueService, FulfillmentStateValidator, fulfillment_queue,
)
from services.inventory_ledger import InventoryLedgerService, inventory_ledger
from services.kyc_provider import KycProvider, ProfileKycProvider
from services.price_oracle import PriceOracle, price_oracle as default_price_oracle
from services.system_settings import (
    DAILY_BTC_LIMIT, SettingsSnapshot, SystemSettingsService, system_settings_service,
)
from utils.atomic_transactions import atomic_transaction, get_asset_lock, locked_setting
from utils.datetime_helpers import utc_day_bounds
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

S = FulfillmentStatus

OUTCOME_ALLOCATED = "ALLOCATED"
OUTCOME_KYC_PENDING = "KYC_PENDING"
OUTCOME_PAUSED = "PAUSED"
OUTCOME_PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"
OUTCOME_LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
OUTCOME_INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
OUTCOME_SKIPPED = "SKIPPED"
OUTCOME_ERROR = "ERROR"


@dataclass
class AllocationResult:
    order_id: str
    previous_status: Optional[str]
    status: Optional[str]
    outcome: str
    detail: Optional[str] = None
    changed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "previous_status": self.previous_status,
            "status": self.status,
            "outcome": self.outcome,
            "detail": self.detail,
            "changed": self.changed,
        }


@dataclass
class AllocationSummary:
    processed: int = 0
    allocated: int = 0
    changed: int = 0
    errors: int = 0
    results: List[AllocationResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "allocated": self.allocated,
            "changed": self.changed,
            "errors": self.errors,
            "results": [r.to_dict() for r in self.results],
        }


def daily_committed_amount(
    session: Session, asset_type: str, exclude_order_id: Optional[str] = None
) -> Decimal:
    """Asset committed today (UTC): sent/completed today plus in-flight reservations"""
    day_start, day_end = utc_day_bounds()

    sent_query = session.query(func.sum(FulfillmentOrder.asset_amount)).filter(
        FulfillmentOrder.asset_type == asset_type,
        FulfillmentOrder.status.in_([S.SENT.value, S.COMPLETED.value]),
        FulfillmentOrder.completed_at >= day_start,
        FulfillmentOrder.completed_at < day_end,
    )
    in_flight_query = session.query(func.sum(FulfillmentOrder.asset_amount)).filter(
        FulfillmentOrder.asset_type == asset_type,
        FulfillmentOrder.reservation_token.isnot(None),
        FulfillmentOrder.status.in_([S.READY_TO_SEND.value, S.SENDING.value, S.HOLD.value]),
    )
    if exclude_order_id:
        sent_query = sent_query.filter(FulfillmentOrder.order_id != exclude_order_id)
        in_flight_query = in_flight_query.filter(FulfillmentOrder.order_id != exclude_order_id)

    sent = sent_query.scalar() or Decimal("0")
    in_flight = in_flight_query.scalar() or Decimal("0")
    return MonetaryDecimal.quantize_crypto(MonetaryDecimal.to_decimal(sent) + MonetaryDecimal.to_decimal(in_flight))


def require_kyc_approved(customer_id: str, kyc_status: str) -> None:
    if kyc_status != KycStatus.APPROVED.value:
        raise KycNotApproved(customer_id, kyc_status)


def check_payout_limits(
    session: Session, order_id: str, asset_type: str, amount: Decimal, settings: SettingsSnapshot
) -> None:
    """Raise LimitExceeded when the order breaks the per-transaction or daily BTC cap"""
    if asset_type != AssetType.BTC.value:
        return
    if amount > settings.max_tx_btc_limit:
        raise LimitExceeded("MAX_TX_BTC_LIMIT", settings.max_tx_btc_limit, amount)
    committed = daily_committed_amount(session, asset_type, exclude_order_id=order_id)
    if committed + amount > settings.daily_btc_limit:
        raise LimitExceeded("DAILY_BTC_LIMIT", settings.daily_btc_limit, committed + amount)


class FulfillmentAllocator:
    """Matches eligible orders against inventory under KYC, pause and limit gates"""

    def __init__(
        self,
        session_factory=None,
        ledger: Optional[InventoryLedgerService] = None,
        queue: Optional[FulfillmentQueueService] = None,
        kyc_provider: Optional[KycProvider] = None,
        price_oracle: Optional[PriceOracle] = None,
        settings_service: Optional[SystemSettingsService] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or inventory_ledger
        self.queue = queue or fulfillment_queue
        self.kyc_provider = kyc_provider or ProfileKycProvider(session_factory)
        self.price_oracle = price_oracle or default_price_oracle
        self.settings = settings_service or system_settings_service

    def _pending_order_ids(self, limit: int) -> List[str]:
        with atomic_transaction(session_factory=self.session_factory) as s:
            rows = (
                s.query(FulfillmentOrder.order_id)
                .filter(FulfillmentOrder.status.in_(FulfillmentStateValidator.ALLOCATABLE_STATES))
                .order_by(FulfillmentOrder.created_at.asc(), FulfillmentOrder.id.asc())
                .limit(limit)
                .all()
            )
        return [row.order_id for row in rows]

    async def run_allocation_pass(
        self, actor: Actor = SYSTEM_ACTOR, limit: Optional[int] = None
    ) -> AllocationSummary:
        """Evaluate every allocatable order once, oldest first"""
        settings = self.settings.load_snapshot()
        order_ids = self._pending_order_ids(limit or Config.ALLOCATOR_BATCH_SIZE)
        summary = AllocationSummary()

        for order_id in order_ids:
            summary.processed += 1
            try:
                result = await self.evaluate_order(order_id, actor=actor, settings=settings)
            except Exception as e:
                logger.error(f"❌ ALLOCATION_ERROR: order {order_id}: {e}", exc_info=True)
                result = AllocationResult(order_id, None, None, OUTCOME_ERROR, detail=str(e))
                summary.errors += 1
            summary.results.append(result)
            if result.changed:
                summary.changed += 1
            if result.outcome == OUTCOME_ALLOCATED:
                summary.allocated += 1

        logger.info(
            f"📊 ALLOCATION_PASS: processed={summary.processed} allocated={summary.allocated} "
            f"changed={summary.changed} errors={summary.errors}"
        )
        return summary

    async def evaluate_order(
        self,
        order_id: str,
        actor: Actor = SYSTEM_ACTOR,
        settings: Optional[SettingsSnapshot] = None,
        allowed_statuses: Optional[Set[str]] = None,
        action: str = "ORDER_ALLOCATION_EVALUATED",
        enforce_limits: bool = True,
        reason: Optional[str] = None,
    ) -> AllocationResult:
        """Run the allocation gates for one order.

        Used by the batch pass and by admin release/retry, which pass
        HOLD or FAILED in allowed_statuses. Orders leaving HOLD/FAILED that
        cannot be promoted are parked in WAITING_INVENTORY.
        """
        settings = settings or self.settings.load_snapshot()
        allowed = allowed_statuses or FulfillmentStateValidator.ALLOCATABLE_STATES

        snapshot = self.queue.get_order(order_id)
        if snapshot.status not in allowed:
            return AllocationResult(
                order_id, snapshot.status, snapshot.status, OUTCOME_SKIPPED,
                detail=f"status {snapshot.status} not eligible",
            )

        asset = snapshot.asset_type
        park_status = (
            snapshot.status
            if snapshot.status in FulfillmentStateValidator.ALLOCATABLE_STATES
            else S.WAITING_INVENTORY.value
        )

        # External lookups happen before any row lock is taken
        kyc_status = await self.kyc_provider.get_kyc_status(snapshot.customer_id)
        pause_reason = settings.pause_reason(asset)
        quote = None
        price_error = None
        if kyc_status == KycStatus.APPROVED.value and not pause_reason and snapshot.asset_amount is None:
            try:
                quote = await self.price_oracle.get_price(asset)
            except PriceUnavailable as e:
                price_error = str(e)

        # Limit check, reservation and commit run under the asset lock so a
        # concurrent evaluation re-reads the committed total after this one lands
        asset_lock = get_asset_lock(asset)
        lock_held = False
        try:
            with atomic_transaction(session_factory=self.session_factory) as s:
                order = self.queue.load_for_update(s, order_id)
                if order.status != snapshot.status:
                    return AllocationResult(
                        order_id, snapshot.status, order.status, OUTCOME_SKIPPED,
                        detail="order changed during evaluation",
                    )

                fields: Dict[str, Any] = {"kyc_status": kyc_status}

                try:
                    require_kyc_approved(order.customer_id, kyc_status)
                except KycNotApproved as e:
                    return self._apply(
                        s, order, S.KYC_PENDING.value, f"KYC not approved: {e.kyc_status}",
                        OUTCOME_KYC_PENDING, actor, action, reason, fields,
                    )

                if pause_reason:
                    return self._apply(s, order, park_status, pause_reason, OUTCOME_PAUSED, actor, action, reason, fields)

                if order.asset_amount is None:
                    if quote is None:
                        return self._apply(
                            s, order, park_status, f"Price unavailable: {price_error}",
                            OUTCOME_PRICE_UNAVAILABLE, actor, action, reason, fields,
                        )
                    fields["asset_amount"] = MonetaryDecimal.usd_to_asset(order.usd_value, quote.price)
                    fields["price_used"] = quote.price
                    fields["price_source"] = f"{quote.source}:stale" if quote.stale else quote.source
                amount = MonetaryDecimal.quantize_crypto(fields.get("asset_amount", order.asset_amount))

                asset_lock.acquire()
                lock_held = True
                if asset == AssetType.BTC.value:
                    # Other processes serialize on the same row
                    locked_setting(s, DAILY_BTC_LIMIT)

                if enforce_limits:
                    try:
                        check_payout_limits(s, order_id, asset, amount, settings)
                    except LimitExceeded as e:
                        return self._apply(
                            s, order, S.WAITING_INVENTORY.value, e.message,
                            OUTCOME_LIMIT_EXCEEDED, actor, action, reason, fields,
                        )

                try:
                    token = self.ledger.reserve(asset, amount, order_id=order_id, actor=actor, session=s)
                except InsufficientInventory:
                    return self._apply(
                        s, order, S.WAITING_INVENTORY.value,
                        f"Insufficient {asset} inventory for {amount}",
                        OUTCOME_INSUFFICIENT_INVENTORY, actor, action, reason, fields,
                    )

                fields["reservation_token"] = token
                return self._apply(s, order, S.READY_TO_SEND.value, None, OUTCOME_ALLOCATED, actor, action, reason, fields)
        finally:
            if lock_held:
                asset_lock.release()

    def _apply(
        self,
        session: Session,
        order: FulfillmentOrder,
        target_status: str,
        blocked_reason: Optional[str],
        outcome: str,
        actor: Actor,
        action: str,
        reason: Optional[str],
        fields: Dict[str, Any],
    ) -> AllocationResult:
        previous_status = order.status
        updates = {k: v for k, v in fields.items() if getattr(order, k) != v}
        if order.blocked_reason != blocked_reason:
            updates["blocked_reason"] = blocked_reason

        if previous_status == target_status and not updates:
            return AllocationResult(order.order_id, previous_status, target_status, outcome, blocked_reason)

        self.queue.transition(
            session, order, target_status, actor=actor, action=action, reason=reason,
            metadata={"outcome": outcome}, **updates,
        )
        if outcome == OUTCOME_ALLOCATED:
            logger.info(f"✅ ORDER_ALLOCATED: {order.order_id} {order.asset_amount} {order.asset_type}")
        elif blocked_reason:
            logger.info(f"⏸️ ORDER_BLOCKED: {order.order_id} -> {target_status}: {blocked_reason}")
        return AllocationResult(order.order_id, previous_status, target_status, outcome, blocked_reason, changed=True)


fulfillment_allocator = FulfillmentAllocator()
