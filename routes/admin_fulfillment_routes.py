"""
Admin Fulfillment Routes
FastAPI routes for the treasury operations console
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from database import managed_session
from models import InventorySource
from services.actors import Actor
from services.admin_control import admin_control, require_admin
from services.audit_logger import audit_logger, to_jsonable
from services.fulfillment_errors import (
    CustodyNotConfigured, Forbidden, FulfillmentError, InsufficientInventory, InventoryAdjustmentError,
    InvalidTransition, LotNotFound, OrderNotFound, OrderValidationError, PayoutsPaused,
    ReconciliationNotFound, ReconciliationStateError, ReservationNotFound, ReservationStateError,
    SettingValidationError, Unauthorized,
)
from services.fulfillment_queue import fulfillment_queue
from services.inventory_ledger import inventory_ledger
from services.reconciliation_engine import reconciliation_engine
from services.settlement_sender import settlement_sender

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/fulfillment", tags=["admin-fulfillment"])

ERROR_STATUS_CODES = (
    (Unauthorized, 401),
    (Forbidden, 403),
    ((OrderNotFound, LotNotFound, ReconciliationNotFound, ReservationNotFound), 404),
    ((InvalidTransition, ReservationStateError, ReconciliationStateError, PayoutsPaused, InsufficientInventory), 409),
    ((OrderValidationError, SettingValidationError, InventoryAdjustmentError), 422),
    (CustodyNotConfigured, 503),
)


def to_http_exception(error: FulfillmentError) -> HTTPException:
    """Map a fulfillment error onto its HTTP status"""
    for error_types, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_types):
            return HTTPException(status_code=status_code, detail=error.message)
    return HTTPException(status_code=400, detail=error.message)


async def get_admin_actor(x_admin_key: Optional[str] = Header(None)) -> Actor:
    """Resolve the calling admin from the X-Admin-Key header"""
    if not x_admin_key:
        raise HTTPException(status_code=401, detail="Missing X-Admin-Key header")
    actor = admin_control.resolve_actor(x_admin_key)
    if actor is None:
        logger.warning("🔐 ADMIN_AUTH_REJECTED: unknown or inactive admin key")
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return actor


class OrderSubmitRequest(BaseModel):
    customer_id: str
    usd_value: Decimal
    destination_address: str
    order_type: Optional[str] = None
    asset_type: Optional[str] = None
    kyc_status: Optional[str] = None
    merchant_id: Optional[str] = None
    sales_rep_id: Optional[str] = None
    bitcard_id: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class SettlementRequest(BaseModel):
    tx_hash: Optional[str] = None
    failed_reason: Optional[str] = None
    confirmed: bool = False


class SettingUpdateRequest(BaseModel):
    value: str


class PauseRequest(BaseModel):
    asset_type: Optional[str] = None


class LotCreateRequest(BaseModel):
    asset_type: str
    amount: Decimal
    source: str = InventorySource.MANUAL_TOPUP.value
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    received_at: Optional[datetime] = None
    eligible_at: Optional[datetime] = None


class LotAdjustRequest(BaseModel):
    delta: Decimal
    reason: str


class ReconciliationRequest(BaseModel):
    asset_type: str
    onchain_balance: Decimal
    notes: Optional[str] = None


class ResolveRequest(BaseModel):
    notes: str


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------

@router.get("/orders")
async def list_orders(
    status: Optional[str] = None,
    asset_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_admin_actor),
):
    orders = fulfillment_queue.list_orders(status=status, asset_type=asset_type, limit=limit)
    return {"orders": [o.to_dict() for o in orders], "count": len(orders)}


@router.post("/orders", status_code=201)
async def submit_order(body: OrderSubmitRequest, actor: Actor = Depends(get_admin_actor)):
    """Enqueue a payout request; it waits in SUBMITTED for the next allocation pass"""
    try:
        order = admin_control.submit_order(
            actor,
            customer_id=body.customer_id,
            usd_value=body.usd_value,
            destination_address=body.destination_address,
            order_type=body.order_type,
            asset_type=body.asset_type,
            kyc_status=body.kyc_status,
            merchant_id=body.merchant_id,
            sales_rep_id=body.sales_rep_id,
            bitcard_id=body.bitcard_id,
        )
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"order": order.to_dict()}


@router.get("/orders/stuck")
async def list_stuck_orders(actor: Actor = Depends(get_admin_actor)):
    """Orders whose last send attempt has no recorded outcome"""
    orders = settlement_sender.list_stuck_orders()
    return {"orders": [o.to_dict() for o in orders], "count": len(orders)}


@router.get("/orders/{order_id}")
async def get_order(order_id: str, actor: Actor = Depends(get_admin_actor)):
    try:
        order = fulfillment_queue.get_order(order_id)
        attempts = fulfillment_queue.list_attempts(order_id)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"order": order.to_dict(), "attempts": [a.to_dict() for a in attempts]}


@router.post("/orders/{order_id}/hold")
async def hold_order(order_id: str, body: ReasonRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        order = admin_control.hold_order(order_id, actor, body.reason or "")
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"order": order.to_dict()}


@router.post("/orders/{order_id}/release")
async def release_order(order_id: str, body: ReasonRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        result = await admin_control.release_order(order_id, actor, body.reason)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"result": result.to_dict()}


@router.post("/orders/{order_id}/retry")
async def retry_order(order_id: str, body: ReasonRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        result = await admin_control.retry_order(order_id, actor, body.reason)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"result": result.to_dict()}


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, body: ReasonRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        order = admin_control.cancel_order(order_id, actor, body.reason or "")
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"order": order.to_dict()}


@router.post("/orders/{order_id}/force-send")
async def force_send(order_id: str, body: ReasonRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        outcome = await admin_control.force_send(order_id, actor, body.reason)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"outcome": outcome.to_dict()}


@router.post("/orders/{order_id}/record-settlement")
async def record_settlement(order_id: str, body: SettlementRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        outcome = admin_control.record_settlement(
            order_id, actor, tx_hash=body.tx_hash, failed_reason=body.failed_reason, confirmed=body.confirmed
        )
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"outcome": outcome.to_dict()}


@router.post("/allocator/run")
async def run_allocator(actor: Actor = Depends(get_admin_actor)):
    try:
        summary = await admin_control.run_allocator_now(actor)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return summary.to_dict()


# ----------------------------------------------------------------------
# Settings and kill switches
# ----------------------------------------------------------------------

@router.get("/settings")
async def get_settings(actor: Actor = Depends(get_admin_actor)):
    try:
        require_admin(actor)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"settings": admin_control.describe_settings()}


@router.put("/settings/{key}")
async def update_setting(key: str, body: SettingUpdateRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        old_value, new_value = admin_control.set_setting(key, body.value, actor)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"key": key, "old_value": to_jsonable(old_value), "new_value": to_jsonable(new_value)}


@router.post("/pause")
async def pause_payouts(body: PauseRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        old_value, new_value = admin_control.pause_payouts(actor, body.asset_type)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"paused": new_value, "asset_type": body.asset_type, "was_paused": old_value}


@router.post("/resume")
async def resume_payouts(body: PauseRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        old_value, new_value = admin_control.resume_payouts(actor, body.asset_type)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"paused": new_value, "asset_type": body.asset_type, "was_paused": old_value}


# ----------------------------------------------------------------------
# Inventory
# ----------------------------------------------------------------------

@router.get("/inventory/{asset_type}")
async def inventory_stats(asset_type: str, actor: Actor = Depends(get_admin_actor)):
    try:
        stats = inventory_ledger.get_inventory_stats(asset_type)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return to_jsonable(stats)


@router.get("/inventory/{asset_type}/lots")
async def list_lots(
    asset_type: str,
    only_available: bool = False,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_admin_actor),
):
    try:
        lots = inventory_ledger.list_lots(asset_type, only_available=only_available, limit=limit)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"lots": [lot.to_dict() for lot in lots], "count": len(lots)}


@router.post("/inventory/lots", status_code=201)
async def add_lot(body: LotCreateRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        lot = admin_control.add_inventory_lot(
            actor, body.asset_type, body.amount,
            source=body.source,
            reference_id=body.reference_id,
            notes=body.notes,
            received_at=body.received_at,
            eligible_at=body.eligible_at,
        )
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"lot": lot.to_dict()}


@router.post("/inventory/lots/{lot_id}/adjust")
async def adjust_lot(lot_id: str, body: LotAdjustRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        lot = admin_control.adjust_inventory_lot(actor, lot_id, body.delta, body.reason)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"lot": lot.to_dict()}


# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------

@router.post("/reconciliations", status_code=201)
async def create_reconciliation(body: ReconciliationRequest, actor: Actor = Depends(get_admin_actor)):
    try:
        record = admin_control.record_reconciliation(actor, body.asset_type, body.onchain_balance, body.notes)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"reconciliation": record.to_dict()}


@router.get("/reconciliations")
async def list_reconciliations(
    status: Optional[str] = None,
    asset_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_admin_actor),
):
    try:
        records = reconciliation_engine.list_records(status=status, asset_type=asset_type, limit=limit)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"reconciliations": [r.to_dict() for r in records], "count": len(records)}


@router.post("/reconciliations/{reconciliation_id}/resolve")
async def resolve_reconciliation(
    reconciliation_id: str, body: ResolveRequest, actor: Actor = Depends(get_admin_actor)
):
    try:
        record = admin_control.resolve_discrepancy(actor, reconciliation_id, body.notes)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    return {"reconciliation": record.to_dict()}


# ----------------------------------------------------------------------
# Audit log
# ----------------------------------------------------------------------

@router.get("/audit")
async def list_audit_events(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(get_admin_actor),
):
    try:
        require_admin(actor)
    except FulfillmentError as e:
        raise to_http_exception(e) from e
    with managed_session() as session:
        events = audit_logger.list_events(
            session, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit
        )
        payload = [event.to_dict() for event in events]
    return {"events": payload, "count": len(payload)}


@router.get("/health")
async def fulfillment_health(actor: Actor = Depends(get_admin_actor)):
    """Pipeline snapshot: queue depth per status and unresolved send outcomes"""
    counts = fulfillment_queue.count_by_status()
    stuck = settlement_sender.list_stuck_orders()
    open_discrepancies = reconciliation_engine.list_records(status="DISCREPANCY", limit=100)
    return {
        "status": "attention" if stuck or open_discrepancies else "ok",
        "orders_by_status": counts,
        "awaiting_settlement": len(stuck),
        "open_discrepancies": len(open_discrepancies),
    }
