"""
Admin Control Surface

Role-checked operator actions over the fulfillment pipeline: order holds,
releases, retries and cancellations, forced sends, settlement recording,
kill switches, limits, inventory corrections and reconciliation. Every
mutation is delegated to the owning service, which writes the audit entry
with before/after values in the same transaction.
"""

import hashlib
import logging
import secrets
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from models import AdminRole, AdminUser, FulfillmentOrder, FulfillmentStatus, InventoryLot, ReconciliationRecord
from services.actors import Actor, SYSTEM_ACTOR
from services.audit_logger import audit_logger
from services.fulfillment_allocator import (
    OUTCOME_SKIPPED, AllocationResult, AllocationSummary, FulfillmentAllocator, fulfillment_allocator,
)
from services.fulfillment_errors import (
    Forbidden, InvalidTransition, OrderValidationError, SettingValidationError, Unauthorized,
)
from services.fulfillment_queue import FulfillmentQueueService, FulfillmentStateValidator, fulfillment_queue
from services.inventory_ledger import InventoryLedgerService, inventory_ledger, validate_asset_type
from services.reconciliation_engine import ReconciliationEngine, reconciliation_engine
from services.settlement_sender import SendOutcome, SettlementSender, settlement_sender
from services import system_settings as settings_keys
from services.system_settings import SystemSettingsService, system_settings_service
from utils.atomic_transactions import atomic_transaction

logger = logging.getLogger(__name__)

S = FulfillmentStatus

PAUSE_KEYS = {
    None: settings_keys.PAYOUTS_PAUSED,
    "BTC": settings_keys.BTC_PAYOUTS_PAUSED,
    "USDC": settings_keys.USDC_PAYOUTS_PAUSED,
    "COMPANY_USDC": settings_keys.USDC_PAYOUTS_PAUSED,
}

LIMIT_KEYS = {
    settings_keys.DAILY_BTC_LIMIT,
    settings_keys.MAX_TX_BTC_LIMIT,
    settings_keys.LOW_INVENTORY_THRESHOLD_BTC,
    settings_keys.RECONCILIATION_TOLERANCE_PCT,
}

FORCE_SEND_ALLOCATABLE = FulfillmentStateValidator.ALLOCATABLE_STATES | {S.FAILED.value}


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def require_admin(actor: Optional[Actor]) -> Actor:
    if actor is None:
        raise Unauthorized("Authentication required")
    if not actor.is_admin:
        raise Forbidden(f"{actor.label} is not an admin")
    return actor


def require_super_admin(actor: Optional[Actor]) -> Actor:
    require_admin(actor)
    if not actor.is_super_admin:
        raise Forbidden(f"{actor.label} is not a super admin")
    return actor


def require_authenticated(actor: Optional[Actor]) -> Actor:
    if actor is None:
        raise Unauthorized("Authentication required")
    return actor


class AdminControlService:
    """Operator actions, each gated by the caller's role"""

    def __init__(
        self,
        session_factory=None,
        queue: Optional[FulfillmentQueueService] = None,
        ledger: Optional[InventoryLedgerService] = None,
        allocator: Optional[FulfillmentAllocator] = None,
        sender: Optional[SettlementSender] = None,
        reconciliation: Optional[ReconciliationEngine] = None,
        settings_service: Optional[SystemSettingsService] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue or fulfillment_queue
        self.ledger = ledger or inventory_ledger
        self.allocator = allocator or fulfillment_allocator
        self.sender = sender or settlement_sender
        self.reconciliation = reconciliation or reconciliation_engine
        self.settings = settings_service or system_settings_service

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def submit_order(
        self,
        actor: Optional[Actor],
        customer_id: str,
        usd_value: Any,
        destination_address: str,
        order_type: Optional[str] = None,
        asset_type: Optional[str] = None,
        kyc_status: Optional[str] = None,
        merchant_id: Optional[str] = None,
        sales_rep_id: Optional[str] = None,
        bitcard_id: Optional[str] = None,
    ) -> FulfillmentOrder:
        """Enqueue a payout request on behalf of any console user; sales reps are credited by default"""
        require_authenticated(actor)
        if sales_rep_id is None and actor.role == AdminRole.SALES_REP.value:
            sales_rep_id = actor.actor_id

        kwargs: Dict[str, Any] = {}
        if order_type is not None:
            kwargs["order_type"] = order_type
        if kyc_status is not None:
            kwargs["kyc_status"] = kyc_status
        order = self.queue.submit_order(
            customer_id=customer_id,
            usd_value=usd_value,
            destination_address=destination_address,
            asset_type=asset_type,
            merchant_id=merchant_id,
            sales_rep_id=sales_rep_id,
            bitcard_id=bitcard_id,
            actor=actor,
            **kwargs,
        )
        logger.info(f"🧾 ORDER_INTAKE: {order.order_id} {order.usd_value} USD as {order.asset_type} by {actor.label}")
        return order

    def hold_order(self, order_id: str, actor: Optional[Actor], reason: str) -> FulfillmentOrder:
        """Freeze an order; a READY_TO_SEND reservation is released, a SENDING one is kept"""
        require_admin(actor)
        if not reason or not reason.strip():
            raise OrderValidationError("A hold reason is required")

        with atomic_transaction(session_factory=self.session_factory) as s:
            order = self.queue.load_for_update(s, order_id)
            if order.status == S.HOLD.value or not self.queue.validator.is_valid_transition(order.status, S.HOLD.value):
                raise InvalidTransition(order_id, order.status, S.HOLD.value)

            previous_status = order.status
            released_token = None
            if previous_status == S.READY_TO_SEND.value:
                released_token = order.reservation_token
                self.queue.release_order_reservation(s, order, actor, f"Order held: {reason}")
            self.queue.transition(
                s, order, S.HOLD.value, actor=actor, action="ORDER_HELD", reason=reason,
                metadata={"previous_status": previous_status, "released_reservation": released_token},
                blocked_reason=reason,
            )

        logger.warning(f"⏸️ ORDER_HELD: {order_id} from {previous_status} by {actor.label}: {reason}")
        return order

    async def release_order(
        self, order_id: str, actor: Optional[Actor], reason: Optional[str] = None
    ) -> AllocationResult:
        """Take an order off HOLD and run it back through the allocation gates"""
        require_admin(actor)

        with atomic_transaction(session_factory=self.session_factory) as s:
            order = self.queue.load_for_update(s, order_id)
            if order.status != S.HOLD.value:
                raise InvalidTransition(order_id, order.status, S.WAITING_INVENTORY.value, detail="order is not on hold")
            if self.queue.get_open_attempt(s, order_id) is not None:
                raise InvalidTransition(
                    order_id, order.status, S.WAITING_INVENTORY.value,
                    detail="send outcome unknown; record the settlement first",
                )
            if order.reservation_token:
                self.queue.release_order_reservation(s, order, actor, "Stale reservation released on hold release")
                s.flush()

        result = await self.allocator.evaluate_order(
            order_id, actor=actor, allowed_statuses={S.HOLD.value},
            action="ORDER_RELEASED", reason=reason,
        )
        if result.outcome == OUTCOME_SKIPPED:
            raise InvalidTransition(order_id, result.status, S.WAITING_INVENTORY.value, detail=result.detail)
        return result

    async def retry_order(
        self, order_id: str, actor: Optional[Actor], reason: Optional[str] = None
    ) -> AllocationResult:
        """Re-enter a FAILED order into allocation; the next send opens a fresh attempt"""
        require_admin(actor)
        result = await self.allocator.evaluate_order(
            order_id, actor=actor, allowed_statuses={S.FAILED.value},
            action="ORDER_RETRIED", reason=reason,
        )
        if result.outcome == OUTCOME_SKIPPED:
            raise InvalidTransition(order_id, result.status, S.READY_TO_SEND.value, detail=result.detail)
        return result

    def cancel_order(self, order_id: str, actor: Optional[Actor], reason: str) -> FulfillmentOrder:
        require_admin(actor)
        if not reason or not reason.strip():
            raise OrderValidationError("A cancellation reason is required")
        return self.queue.cancel_order(order_id, actor=actor, reason=reason)

    async def force_send(
        self, order_id: str, actor: Optional[Actor], reason: Optional[str] = None
    ) -> SendOutcome:
        """Send immediately, skipping AUTO_SEND_ENABLED and payout limits.

        KYC and the pause flags still apply. Orders not yet allocated are
        allocated first without limit checks.
        """
        require_super_admin(actor)

        order = self.queue.get_order(order_id)
        if order.status != S.READY_TO_SEND.value:
            if order.status not in FORCE_SEND_ALLOCATABLE:
                raise InvalidTransition(order_id, order.status, S.SENDING.value)
            result = await self.allocator.evaluate_order(
                order_id, actor=actor, allowed_statuses=FORCE_SEND_ALLOCATABLE,
                action="ORDER_FORCE_ALLOCATED", enforce_limits=False, reason=reason,
            )
            if result.status != S.READY_TO_SEND.value:
                raise InvalidTransition(order_id, result.status, S.SENDING.value, detail=result.detail)

        logger.warning(f"⚡ FORCE_SEND: {order_id} by {actor.label} ({reason or 'no reason'})")
        return await self.sender.send_order(order_id, actor=actor, forced=True)

    def record_settlement(
        self,
        order_id: str,
        actor: Optional[Actor],
        tx_hash: Optional[str] = None,
        failed_reason: Optional[str] = None,
        confirmed: bool = False,
    ) -> SendOutcome:
        require_super_admin(actor)
        return self.sender.record_settlement(
            order_id, actor, tx_hash=tx_hash, failed_reason=failed_reason, confirmed=confirmed
        )

    async def run_allocator_now(self, actor: Optional[Actor]) -> AllocationSummary:
        require_admin(actor)
        logger.info(f"▶️ ALLOCATOR_TRIGGERED: by {actor.label}")
        return await self.allocator.run_allocation_pass(actor=actor)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def set_setting(self, key: str, value: Any, actor: Optional[Actor]) -> Tuple[Any, Any]:
        require_admin(actor)
        return self.settings.set_setting(key, value, actor)

    def set_limit(self, key: str, value: Any, actor: Optional[Actor]) -> Tuple[Any, Any]:
        require_admin(actor)
        if key not in LIMIT_KEYS:
            raise SettingValidationError(f"{key} is not a limit setting")
        return self.settings.set_setting(key, value, actor)

    def _pause_key(self, asset_type: Optional[str]) -> str:
        asset = validate_asset_type(asset_type) if asset_type else None
        return PAUSE_KEYS[asset]

    def pause_payouts(self, actor: Optional[Actor], asset_type: Optional[str] = None) -> Tuple[Any, Any]:
        require_admin(actor)
        key = self._pause_key(asset_type)
        logger.critical(f"🛑 PAYOUTS_PAUSED: {key} set by {actor.label}")
        return self.settings.set_setting(key, True, actor)

    def resume_payouts(self, actor: Optional[Actor], asset_type: Optional[str] = None) -> Tuple[Any, Any]:
        require_admin(actor)
        key = self._pause_key(asset_type)
        logger.warning(f"▶️ PAYOUTS_RESUMED: {key} cleared by {actor.label}")
        return self.settings.set_setting(key, False, actor)

    # ------------------------------------------------------------------
    # Inventory and reconciliation
    # ------------------------------------------------------------------

    def add_inventory_lot(self, actor: Optional[Actor], asset_type: str, amount: Any, **kwargs: Any) -> InventoryLot:
        require_admin(actor)
        return self.ledger.add_lot(asset_type, amount, actor=actor, **kwargs)

    def adjust_inventory_lot(self, actor: Optional[Actor], lot_id: str, delta: Any, reason: str) -> InventoryLot:
        require_admin(actor)
        return self.ledger.adjust_lot(lot_id, delta, actor=actor, reason=reason)

    def record_reconciliation(
        self, actor: Optional[Actor], asset_type: str, onchain_balance: Any, notes: Optional[str] = None
    ) -> ReconciliationRecord:
        require_admin(actor)
        return self.reconciliation.record_reconciliation(asset_type, onchain_balance, actor=actor, notes=notes)

    def resolve_discrepancy(self, actor: Optional[Actor], reconciliation_id: str, notes: str) -> ReconciliationRecord:
        require_admin(actor)
        return self.reconciliation.resolve_discrepancy(reconciliation_id, notes, actor)

    # ------------------------------------------------------------------
    # Admin identities
    # ------------------------------------------------------------------

    def resolve_actor(self, api_key: Optional[str], session: Optional[Session] = None) -> Optional[Actor]:
        """Map an X-Admin-Key value to an Actor; None when missing or unknown"""
        if not api_key:
            return None
        with atomic_transaction(session, self.session_factory) as s:
            user = (
                s.query(AdminUser)
                .filter(AdminUser.api_key_hash == hash_api_key(api_key), AdminUser.is_active.is_(True))
                .first()
            )
            if user is None:
                return None
            return Actor.admin(user.admin_id, user.role)

    def create_admin_user(
        self,
        admin_id: str,
        role: str = AdminRole.ADMIN.value,
        api_key: Optional[str] = None,
        created_by: Actor = SYSTEM_ACTOR,
        session: Optional[Session] = None,
    ) -> Tuple[AdminUser, str]:
        """Register an admin identity; returns the row and the raw API key"""
        if role not in {r.value for r in AdminRole}:
            raise SettingValidationError(f"Unknown admin role: {role}")
        raw_key = api_key or secrets.token_urlsafe(32)
        with atomic_transaction(session, self.session_factory) as s:
            user = AdminUser(admin_id=admin_id, role=role, api_key_hash=hash_api_key(raw_key), is_active=True)
            s.add(user)
            audit_logger.log_event(
                s,
                action="ADMIN_USER_CREATED",
                actor=created_by,
                entity_type="admin_user",
                entity_id=admin_id,
                previous_state=None,
                new_state={"role": role, "is_active": True},
            )
            s.flush()
        logger.info(f"👤 ADMIN_USER_CREATED: {admin_id} ({role})")
        return user, raw_key

    def describe_settings(self) -> Dict[str, Dict[str, Any]]:
        return self.settings.list_settings()


admin_control = AdminControlService()
