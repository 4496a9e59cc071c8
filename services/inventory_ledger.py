"""
Inventory Ledger Service

Authoritative source of how much of each custodial asset is free to allocate.
Inventory is held as discrete lots; payouts claim it through reservation
tokens that are either released back to the lots or confirmed as spent.

Locking discipline: every mutation of lot availability takes the in-process
per-asset writer lock and then row-locks the affected lots with
SELECT ... FOR UPDATE. The writer lock covers only the ledger call; when the
caller passes its own session the row locks last until that session commits,
but the writer lock is already released by then. Callers that must serialize
a wider section (the allocator's limit check plus reserve) hold
get_asset_lock() themselves until after their commit.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    AssetType, InventoryLot, InventoryReservation, InventorySource, LotAllocation,
    ReservationStatus,
)
from services.actors import Actor, SYSTEM_ACTOR
from services.audit_logger import audit_logger
from services.fulfillment_errors import (
    InsufficientInventory, InventoryAdjustmentError, LotNotFound, ReservationNotFound,
    ReservationStateError,
)
from utils.atomic_transactions import atomic_transaction, get_asset_lock, locked_asset_lots
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def validate_asset_type(asset_type: str) -> str:
    asset = str(asset_type).upper()
    if asset not in {a.value for a in AssetType}:
        raise InventoryAdjustmentError(f"Unknown asset type: {asset_type}")
    return asset


class InventoryLedgerService:
    """Lots, reservations and balances per asset"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def get_eligible_balance(
        self, asset_type: str, session: Optional[Session] = None, at: Optional[datetime] = None
    ) -> Decimal:
        """Sum of available amounts across lots already eligible at `at`.

        Reserved amounts were deducted from lot availability when reserved,
        so they are excluded automatically.
        """
        asset = validate_asset_type(asset_type)
        cutoff = ensure_naive_datetime(at) or get_naive_utc_now()
        with atomic_transaction(session, self.session_factory) as s:
            total = (
                s.query(func.sum(InventoryLot.amount_available))
                .filter(InventoryLot.asset_type == asset, InventoryLot.eligible_at <= cutoff)
                .scalar()
            )
        return MonetaryDecimal.quantize_crypto(total or ZERO)

    def get_locked_balance(
        self, asset_type: str, session: Optional[Session] = None, at: Optional[datetime] = None
    ) -> Decimal:
        """Available inventory in lots that are not yet eligible"""
        asset = validate_asset_type(asset_type)
        cutoff = ensure_naive_datetime(at) or get_naive_utc_now()
        with atomic_transaction(session, self.session_factory) as s:
            total = (
                s.query(func.sum(InventoryLot.amount_available))
                .filter(InventoryLot.asset_type == asset, InventoryLot.eligible_at > cutoff)
                .scalar()
            )
        return MonetaryDecimal.quantize_crypto(total or ZERO)

    def get_reserved_balance(self, asset_type: str, session: Optional[Session] = None) -> Decimal:
        """Inventory held by reservations awaiting settlement"""
        asset = validate_asset_type(asset_type)
        with atomic_transaction(session, self.session_factory) as s:
            total = (
                s.query(func.sum(InventoryReservation.amount))
                .filter(
                    InventoryReservation.asset_type == asset,
                    InventoryReservation.status == ReservationStatus.HELD.value,
                )
                .scalar()
            )
        return MonetaryDecimal.quantize_crypto(total or ZERO)

    def get_ledger_balance(self, asset_type: str, session: Optional[Session] = None) -> Decimal:
        """Everything the ledger believes is still in custody for an asset"""
        with atomic_transaction(session, self.session_factory) as s:
            now = get_naive_utc_now()
            return MonetaryDecimal.quantize_crypto(
                self.get_eligible_balance(asset_type, s, at=now)
                + self.get_locked_balance(asset_type, s, at=now)
                + self.get_reserved_balance(asset_type, s)
            )

    def get_inventory_stats(self, asset_type: str, session: Optional[Session] = None) -> Dict[str, Any]:
        asset = validate_asset_type(asset_type)
        with atomic_transaction(session, self.session_factory) as s:
            now = get_naive_utc_now()
            eligible = self.get_eligible_balance(asset, s, at=now)
            locked = self.get_locked_balance(asset, s, at=now)
            reserved = self.get_reserved_balance(asset, s)
            total_received = (
                s.query(func.sum(InventoryLot.amount_total))
                .filter(InventoryLot.asset_type == asset)
                .scalar()
            )
            eligible_lots = (
                s.query(func.count(InventoryLot.id))
                .filter(
                    InventoryLot.asset_type == asset,
                    InventoryLot.eligible_at <= now,
                    InventoryLot.amount_available > 0,
                )
                .scalar()
            )
            locked_lots = (
                s.query(func.count(InventoryLot.id))
                .filter(
                    InventoryLot.asset_type == asset,
                    InventoryLot.eligible_at > now,
                    InventoryLot.amount_available > 0,
                )
                .scalar()
            )
        return {
            "asset_type": asset,
            "total_received": MonetaryDecimal.quantize_crypto(total_received or ZERO),
            "eligible": eligible,
            "locked": locked,
            "reserved": reserved,
            "ledger_balance": MonetaryDecimal.quantize_crypto(eligible + locked + reserved),
            "eligible_lots": eligible_lots or 0,
            "locked_lots": locked_lots or 0,
        }

    def is_low_inventory(
        self, asset_type: str, threshold: Decimal, session: Optional[Session] = None
    ) -> Tuple[bool, Decimal]:
        eligible = self.get_eligible_balance(asset_type, session)
        return eligible < threshold, eligible

    # ------------------------------------------------------------------
    # Lots
    # ------------------------------------------------------------------

    def add_lot(
        self,
        asset_type: str,
        amount: Any,
        actor: Actor = SYSTEM_ACTOR,
        source: str = InventorySource.MANUAL_TOPUP.value,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        received_at: Optional[datetime] = None,
        eligible_at: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> InventoryLot:
        """Record an explicit inventory top-up"""
        asset = validate_asset_type(asset_type)
        try:
            lot_amount = MonetaryDecimal.quantize_crypto(amount)
        except ValueError as e:
            raise InventoryAdjustmentError(str(e)) from e
        if lot_amount <= 0:
            raise InventoryAdjustmentError(f"Lot amount must be positive, got {lot_amount}")
        if source not in {s.value for s in InventorySource}:
            raise InventoryAdjustmentError(f"Unknown inventory source: {source}")

        received = ensure_naive_datetime(received_at) or get_naive_utc_now()
        eligible = ensure_naive_datetime(eligible_at) or received

        with get_asset_lock(asset):
            with atomic_transaction(session, self.session_factory) as s:
                lot = InventoryLot(
                    lot_id=f"LOT_{uuid.uuid4().hex[:16].upper()}",
                    asset_type=asset,
                    amount_total=lot_amount,
                    amount_available=lot_amount,
                    source=source,
                    reference_id=reference_id,
                    notes=notes,
                    received_at=received,
                    eligible_at=eligible,
                    created_by_admin_id=actor.actor_id if actor.is_admin else None,
                )
                s.add(lot)
                audit_logger.log_event(
                    s,
                    action="INVENTORY_LOT_ADDED",
                    actor=actor,
                    entity_type="inventory_lot",
                    entity_id=lot.lot_id,
                    previous_state=None,
                    new_state={"amount_total": lot_amount, "amount_available": lot_amount},
                    metadata={
                        "asset_type": asset,
                        "source": source,
                        "reference_id": reference_id,
                        "eligible_at": eligible,
                    },
                )
                s.flush()

        logger.info(f"📦 INVENTORY_LOT_ADDED: {lot.lot_id} {lot_amount} {asset} ({source}) by {actor.label}")
        return lot

    def adjust_lot(
        self,
        lot_id: str,
        delta: Any,
        actor: Actor,
        reason: str,
        session: Optional[Session] = None,
    ) -> InventoryLot:
        """Audited correction of a lot's available and total amounts.

        A positive delta tops the lot up; a negative delta writes inventory
        off. Reserved amounts are not touched.
        """
        if not reason or not reason.strip():
            raise InventoryAdjustmentError("Adjustment reason is required")
        try:
            change = MonetaryDecimal.quantize_crypto(delta)
        except ValueError as e:
            raise InventoryAdjustmentError(str(e)) from e
        if change == 0:
            raise InventoryAdjustmentError("Adjustment delta must be non-zero")

        asset = self._lot_asset(lot_id, session)
        with get_asset_lock(asset):
            with atomic_transaction(session, self.session_factory) as s:
                lot = (
                    s.query(InventoryLot)
                    .filter(InventoryLot.lot_id == lot_id)
                    .with_for_update()
                    .populate_existing()
                    .one()
                )
                before = {"amount_total": lot.amount_total, "amount_available": lot.amount_available}
                new_available = MonetaryDecimal.quantize_crypto(lot.amount_available + change)
                new_total = MonetaryDecimal.quantize_crypto(lot.amount_total + change)
                if new_available < 0:
                    raise InventoryAdjustmentError(
                        f"Adjustment {change} would drive lot {lot_id} available below zero"
                    )
                lot.amount_available = new_available
                lot.amount_total = new_total
                lot.updated_at = get_naive_utc_now()
                audit_logger.log_event(
                    s,
                    action="INVENTORY_LOT_ADJUSTED",
                    actor=actor,
                    entity_type="inventory_lot",
                    entity_id=lot_id,
                    previous_state=before,
                    new_state={"amount_total": new_total, "amount_available": new_available},
                    metadata={"delta": change, "reason": reason.strip()},
                )
                s.flush()

        logger.warning(f"📦 INVENTORY_LOT_ADJUSTED: {lot_id} delta={change} by {actor.label}: {reason}")
        return lot

    def _lot_asset(self, lot_id: str, session: Optional[Session]) -> str:
        with atomic_transaction(session, self.session_factory) as s:
            row = s.query(InventoryLot.asset_type).filter(InventoryLot.lot_id == lot_id).first()
            if row is None:
                raise LotNotFound(lot_id)
            return row.asset_type

    def list_lots(
        self,
        asset_type: Optional[str] = None,
        only_available: bool = False,
        limit: int = 100,
        session: Optional[Session] = None,
    ) -> List[InventoryLot]:
        with atomic_transaction(session, self.session_factory) as s:
            query = s.query(InventoryLot)
            if asset_type:
                query = query.filter(InventoryLot.asset_type == validate_asset_type(asset_type))
            if only_available:
                query = query.filter(InventoryLot.amount_available > 0)
            return query.order_by(InventoryLot.received_at.asc(), InventoryLot.id.asc()).limit(limit).all()

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve(
        self,
        asset_type: str,
        amount: Any,
        order_id: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
        session: Optional[Session] = None,
    ) -> str:
        """Claim inventory FIFO by received_at and return a reservation token.

        Raises InsufficientInventory without writing anything when the
        amount exceeds the eligible balance at call time.
        """
        asset = validate_asset_type(asset_type)
        requested = MonetaryDecimal.quantize_crypto(amount)
        if requested <= 0:
            raise InventoryAdjustmentError(f"Reservation amount must be positive, got {requested}")

        with get_asset_lock(asset):
            with atomic_transaction(session, self.session_factory) as s:
                now = get_naive_utc_now()
                lots = locked_asset_lots(s, asset, eligible_before=now)
                eligible = MonetaryDecimal.quantize_crypto(sum((lot.amount_available for lot in lots), ZERO))
                if requested > eligible:
                    raise InsufficientInventory(asset, requested, eligible)

                token = f"RSV_{uuid.uuid4().hex.upper()}"
                remaining = requested
                drawn = []
                for lot in lots:
                    if remaining <= 0:
                        break
                    take = min(lot.amount_available, remaining)
                    lot.amount_available = MonetaryDecimal.quantize_crypto(lot.amount_available - take)
                    lot.updated_at = now
                    s.add(LotAllocation(reservation_token=token, lot_id=lot.lot_id, amount=take))
                    drawn.append({"lot_id": lot.lot_id, "amount": take})
                    remaining -= take

                s.add(InventoryReservation(
                    reservation_token=token,
                    asset_type=asset,
                    amount=requested,
                    order_id=order_id,
                    status=ReservationStatus.HELD.value,
                ))
                audit_logger.log_event(
                    s,
                    action="INVENTORY_RESERVED",
                    actor=actor,
                    entity_type="inventory_reservation",
                    entity_id=token,
                    previous_state={"eligible_balance": eligible},
                    new_state={"eligible_balance": eligible - requested, "status": ReservationStatus.HELD.value},
                    metadata={"asset_type": asset, "amount": requested, "order_id": order_id, "lots": drawn},
                )
                s.flush()

        logger.info(f"🔒 INVENTORY_RESERVED: {token} {requested} {asset} for order {order_id} across {len(drawn)} lot(s)")
        return token

    def get_reservation(self, token: str, session: Optional[Session] = None) -> InventoryReservation:
        with atomic_transaction(session, self.session_factory) as s:
            reservation = (
                s.query(InventoryReservation)
                .filter(InventoryReservation.reservation_token == token)
                .first()
            )
            if reservation is None:
                raise ReservationNotFound(token)
            return reservation

    def _lock_held_reservation(self, s: Session, token: str, operation: str) -> InventoryReservation:
        reservation = (
            s.query(InventoryReservation)
            .filter(InventoryReservation.reservation_token == token)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if reservation is None:
            raise ReservationNotFound(token)
        if reservation.status != ReservationStatus.HELD.value:
            raise ReservationStateError(token, reservation.status, operation)
        return reservation

    def release(
        self,
        token: str,
        actor: Actor = SYSTEM_ACTOR,
        reason: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Decimal:
        """Return a held reservation's inventory to its lots; returns the amount"""
        asset = self.get_reservation(token, session).asset_type
        with get_asset_lock(asset):
            with atomic_transaction(session, self.session_factory) as s:
                reservation = self._lock_held_reservation(s, token, "release")
                allocations = (
                    s.query(LotAllocation)
                    .filter(LotAllocation.reservation_token == token, LotAllocation.is_reversed.is_(False))
                    .all()
                )
                lot_ids = [a.lot_id for a in allocations]
                lots = {
                    lot.lot_id: lot
                    for lot in s.query(InventoryLot)
                    .filter(InventoryLot.lot_id.in_(lot_ids))
                    .with_for_update()
                    .populate_existing()
                    .all()
                }
                now = get_naive_utc_now()
                for allocation in allocations:
                    lot = lots[allocation.lot_id]
                    restored = MonetaryDecimal.quantize_crypto(lot.amount_available + allocation.amount)
                    # A lot written down while reserved cannot exceed its total
                    lot.amount_available = min(restored, lot.amount_total)
                    lot.updated_at = now
                    allocation.is_reversed = True
                    allocation.reversed_at = now

                reservation.status = ReservationStatus.RELEASED.value
                reservation.released_at = now
                amount = reservation.amount
                audit_logger.log_event(
                    s,
                    action="INVENTORY_RELEASED",
                    actor=actor,
                    entity_type="inventory_reservation",
                    entity_id=token,
                    previous_state={"status": ReservationStatus.HELD.value},
                    new_state={"status": ReservationStatus.RELEASED.value},
                    metadata={"asset_type": asset, "amount": amount, "order_id": reservation.order_id, "reason": reason},
                )
                s.flush()

        logger.info(f"🔓 INVENTORY_RELEASED: {token} {amount} {asset} ({reason or 'no reason'})")
        return amount

    def confirm_spend(
        self,
        token: str,
        actor: Actor = SYSTEM_ACTOR,
        tx_hash: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Decimal:
        """Convert a held reservation into a permanent deduction; irreversible"""
        asset = self.get_reservation(token, session).asset_type
        with get_asset_lock(asset):
            with atomic_transaction(session, self.session_factory) as s:
                reservation = self._lock_held_reservation(s, token, "confirm")
                reservation.status = ReservationStatus.CONSUMED.value
                reservation.consumed_at = get_naive_utc_now()
                amount = reservation.amount
                audit_logger.log_event(
                    s,
                    action="INVENTORY_SPEND_CONFIRMED",
                    actor=actor,
                    entity_type="inventory_reservation",
                    entity_id=token,
                    previous_state={"status": ReservationStatus.HELD.value},
                    new_state={"status": ReservationStatus.CONSUMED.value},
                    metadata={"asset_type": asset, "amount": amount, "order_id": reservation.order_id, "tx_hash": tx_hash},
                )
                s.flush()

        logger.info(f"✅ INVENTORY_SPEND_CONFIRMED: {token} {amount} {asset} tx={tx_hash}")
        return amount


inventory_ledger = InventoryLedgerService()
