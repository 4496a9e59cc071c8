#!/usr/bin/env python3
"""
Fulfillment Order Queue with a strict state machine.

All status changes go through FulfillmentQueueService.transition, which
validates the move against FulfillmentStateValidator, stamps updated_at and
writes exactly one audit entry carrying the before/after values.
"""

import logging
import re
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    AssetType, AttemptStatus, FulfillmentAttempt, FulfillmentOrder, FulfillmentStatus,
    KycStatus, OrderType, ReservationStatus,
)
from services.actors import Actor, SYSTEM_ACTOR
from services.audit_logger import audit_logger
from services.fulfillment_errors import (
    InvalidTransition, OrderNotFound, OrderValidationError,
)
from services.inventory_ledger import InventoryLedgerService, inventory_ledger
from utils.atomic_transactions import atomic_transaction, locked_order
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

S = FulfillmentStatus

# Assets each order type may deliver
ORDER_TYPE_ASSETS: Dict[str, Set[str]] = {
    OrderType.BITCARD_REDEMPTION.value: {AssetType.BTC.value},
    OrderType.BUY_BTC.value: {AssetType.BTC.value},
    OrderType.SELL_BTC.value: {AssetType.USDC.value},
}

_ADDRESS_PATTERN = re.compile(r"^[A-Za-z0-9:]{14,128}$")


class FulfillmentStateValidator:
    """Validates fulfillment order transitions"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {S.SUBMITTED.value},
        S.SUBMITTED.value: {
            S.KYC_PENDING.value,
            S.WAITING_INVENTORY.value,
            S.READY_TO_SEND.value,  # Single allocation pass clearing every gate
            S.HOLD.value,
            S.CANCELLED.value,
        },
        S.KYC_PENDING.value: {
            S.WAITING_INVENTORY.value,
            S.READY_TO_SEND.value,
            S.HOLD.value,
        },
        S.WAITING_INVENTORY.value: {
            S.KYC_PENDING.value,
            S.READY_TO_SEND.value,
            S.HOLD.value,
            S.CANCELLED.value,
        },
        S.READY_TO_SEND.value: {
            S.SENDING.value,
            S.HOLD.value,
        },
        S.SENDING.value: {
            S.SENT.value,
            S.COMPLETED.value,
            S.FAILED.value,
            S.HOLD.value,
        },
        # Admin retry re-enters allocation with a fresh attempt
        S.FAILED.value: {
            S.READY_TO_SEND.value,
            S.KYC_PENDING.value,
            S.WAITING_INVENTORY.value,
            S.HOLD.value,
        },
        # SENT/COMPLETED/FAILED only when recording the outcome of an order held mid-send
        S.HOLD.value: {
            S.KYC_PENDING.value,
            S.WAITING_INVENTORY.value,
            S.READY_TO_SEND.value,
            S.SENT.value,
            S.COMPLETED.value,
            S.FAILED.value,
            S.CANCELLED.value,
        },
        S.SENT.value: set(),
        S.COMPLETED.value: set(),
        S.CANCELLED.value: set(),
    }

    TERMINAL_STATES = {S.SENT.value, S.COMPLETED.value, S.CANCELLED.value}
    ALLOCATABLE_STATES = {S.SUBMITTED.value, S.KYC_PENDING.value, S.WAITING_INVENTORY.value}
    IN_FLIGHT_STATES = {S.READY_TO_SEND.value, S.SENDING.value}

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return status in cls.TERMINAL_STATES


class FulfillmentQueueService:
    """Owns fulfillment order creation and every status transition"""

    def __init__(self, session_factory=None, ledger: Optional[InventoryLedgerService] = None):
        self.session_factory = session_factory
        self.ledger = ledger or inventory_ledger
        self.validator = FulfillmentStateValidator()

    def submit_order(
        self,
        customer_id: str,
        usd_value: Any,
        destination_address: str,
        order_type: str = OrderType.BITCARD_REDEMPTION.value,
        asset_type: Optional[str] = None,
        kyc_status: str = KycStatus.PENDING.value,
        merchant_id: Optional[str] = None,
        sales_rep_id: Optional[str] = None,
        bitcard_id: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
        session: Optional[Session] = None,
    ) -> FulfillmentOrder:
        """Validate and enqueue a payout request in SUBMITTED"""
        if not customer_id:
            raise OrderValidationError("customer_id is required")
        if order_type not in ORDER_TYPE_ASSETS:
            raise OrderValidationError(f"Unknown order type: {order_type}")

        allowed_assets = ORDER_TYPE_ASSETS[order_type]
        asset = (asset_type or next(iter(allowed_assets))).upper()
        if asset not in allowed_assets:
            raise OrderValidationError(f"{order_type} orders cannot deliver {asset}")

        try:
            usd = MonetaryDecimal.quantize_usd(usd_value)
        except ValueError as e:
            raise OrderValidationError(str(e)) from e
        if usd <= 0:
            raise OrderValidationError(f"usd_value must be positive, got {usd}")

        address = (destination_address or "").strip()
        if not _ADDRESS_PATTERN.match(address):
            raise OrderValidationError(f"Invalid destination address: {destination_address!r}")

        if kyc_status not in {k.value for k in KycStatus}:
            raise OrderValidationError(f"Unknown KYC status: {kyc_status}")

        with atomic_transaction(session, self.session_factory) as s:
            order = FulfillmentOrder(
                order_id=f"FO_{uuid.uuid4().hex[:16].upper()}",
                order_type=order_type,
                asset_type=asset,
                customer_id=str(customer_id),
                merchant_id=merchant_id,
                sales_rep_id=sales_rep_id,
                bitcard_id=bitcard_id,
                usd_value=usd,
                destination_address=address,
                status=S.SUBMITTED.value,
                kyc_status=kyc_status,
            )
            s.add(order)
            audit_logger.log_event(
                s,
                action="ORDER_SUBMITTED",
                actor=actor,
                entity_type="fulfillment_order",
                entity_id=order.order_id,
                previous_state=None,
                new_state={"status": S.SUBMITTED.value, "usd_value": usd, "asset_type": asset},
                metadata={"customer_id": customer_id, "order_type": order_type, "kyc_status": kyc_status},
            )
            s.flush()

        logger.info(f"📥 ORDER_SUBMITTED: {order.order_id} ${usd} {asset} for customer {customer_id}")
        return order

    def get_order(self, order_id: str, session: Optional[Session] = None) -> FulfillmentOrder:
        with atomic_transaction(session, self.session_factory) as s:
            order = s.query(FulfillmentOrder).filter(FulfillmentOrder.order_id == order_id).first()
            if order is None:
                raise OrderNotFound(order_id)
            return order

    def list_orders(
        self,
        status: Optional[str] = None,
        asset_type: Optional[str] = None,
        limit: int = 100,
        session: Optional[Session] = None,
    ) -> List[FulfillmentOrder]:
        with atomic_transaction(session, self.session_factory) as s:
            query = s.query(FulfillmentOrder)
            if status:
                query = query.filter(FulfillmentOrder.status == status)
            if asset_type:
                query = query.filter(FulfillmentOrder.asset_type == asset_type)
            return (
                query.order_by(FulfillmentOrder.created_at.asc(), FulfillmentOrder.id.asc())
                .limit(limit)
                .all()
            )

    def count_by_status(self, session: Optional[Session] = None) -> Dict[str, int]:
        with atomic_transaction(session, self.session_factory) as s:
            rows = (
                s.query(FulfillmentOrder.status, func.count(FulfillmentOrder.id))
                .group_by(FulfillmentOrder.status)
                .all()
            )
        return {status: count for status, count in rows}

    def load_for_update(self, session: Session, order_id: str) -> FulfillmentOrder:
        order = locked_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def transition(
        self,
        session: Session,
        order: FulfillmentOrder,
        new_status: str,
        actor: Actor = SYSTEM_ACTOR,
        action: str = "ORDER_STATUS_CHANGED",
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> FulfillmentOrder:
        """Apply a validated status change plus field updates, audited"""
        current = order.status
        if current != new_status and not self.validator.is_valid_transition(current, new_status):
            raise InvalidTransition(order.order_id, current, new_status)

        previous_state: Dict[str, Any] = {"status": current}
        new_state: Dict[str, Any] = {"status": new_status}
        for field, value in fields.items():
            if not hasattr(FulfillmentOrder, field):
                raise AttributeError(f"FulfillmentOrder has no field {field}")
            previous_state[field] = getattr(order, field)
            new_state[field] = value
            setattr(order, field, value)

        order.status = new_status
        order.updated_at = get_naive_utc_now()

        event_metadata = dict(metadata or {})
        if reason:
            event_metadata["reason"] = reason
        audit_logger.log_event(
            session,
            action=action,
            actor=actor,
            entity_type="fulfillment_order",
            entity_id=order.order_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=event_metadata,
        )
        session.flush()

        if current != new_status:
            logger.info(f"🔄 ORDER_TRANSITION: {order.order_id} {current} -> {new_status} by {actor.label}")
        return order

    def get_open_attempt(self, session: Session, order_id: str) -> Optional[FulfillmentAttempt]:
        return (
            session.query(FulfillmentAttempt)
            .filter(
                FulfillmentAttempt.order_id == order_id,
                FulfillmentAttempt.status == AttemptStatus.OPEN.value,
            )
            .order_by(FulfillmentAttempt.attempt_number.desc())
            .first()
        )

    def list_attempts(self, order_id: str, session: Optional[Session] = None) -> List[FulfillmentAttempt]:
        with atomic_transaction(session, self.session_factory) as s:
            return (
                s.query(FulfillmentAttempt)
                .filter(FulfillmentAttempt.order_id == order_id)
                .order_by(FulfillmentAttempt.attempt_number.asc())
                .all()
            )

    def release_order_reservation(
        self, session: Session, order: FulfillmentOrder, actor: Actor, reason: str
    ) -> Optional[Decimal]:
        """Release the order's held reservation, if any, and clear the token"""
        token = order.reservation_token
        if not token:
            return None
        reservation = self.ledger.get_reservation(token, session)
        released = None
        if reservation.status == ReservationStatus.HELD.value:
            released = self.ledger.release(token, actor=actor, reason=reason, session=session)
        order.reservation_token = None
        return released

    def cancel_order(
        self, order_id: str, actor: Actor, reason: str, session: Optional[Session] = None
    ) -> FulfillmentOrder:
        """Cancel a non-terminal order, releasing its reservation first"""
        with atomic_transaction(session, self.session_factory) as s:
            order = self.load_for_update(s, order_id)
            if not self.validator.is_valid_transition(order.status, S.CANCELLED.value):
                raise InvalidTransition(order_id, order.status, S.CANCELLED.value)
            if self.get_open_attempt(s, order_id) is not None:
                raise InvalidTransition(
                    order_id, order.status, S.CANCELLED.value,
                    detail="send outcome unknown; record the settlement first",
                )
            previous_token = order.reservation_token
            self.release_order_reservation(s, order, actor, f"Order cancelled: {reason}")
            self.transition(
                s, order, S.CANCELLED.value, actor=actor, action="ORDER_CANCELLED", reason=reason,
                metadata={"released_reservation": previous_token},
                blocked_reason=reason,
            )
        return order


fulfillment_queue = FulfillmentQueueService()
