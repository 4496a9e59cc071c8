"""
Settlement Sender

Drives READY_TO_SEND orders through the custody provider in two phases:
the order is first claimed (READY_TO_SEND -> SENDING with an OPEN attempt,
committed), then the provider is called and the outcome recorded.

- success: reservation confirmed as spent, tx hash stored, SENT/COMPLETED
- SettlementFailure: reservation released, FAILED with the provider reason
- unknown outcome: order stays SENDING with the reservation held until a
  super-admin records the settlement
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import Config
from models import AttemptStatus, FulfillmentAttempt, FulfillmentOrder, FulfillmentStatus, ReservationStatus
from services.actors import Actor, SYSTEM_ACTOR
from services.audit_logger import audit_logger
from services.custody_provider import CustodyProvider, SendResult, custody_client
from services.fulfillment_errors import (
    CustodyNotConfigured, InvalidTransition, OrderValidationError, PayoutsPaused, SettlementFailure,
    SettlementOutcomeUnknown,
)
from services.fulfillment_queue import FulfillmentQueueService, fulfillment_queue
from services.inventory_ledger import InventoryLedgerService, inventory_ledger
from services.system_settings import SettingsSnapshot, SystemSettingsService, system_settings_service
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

S = FulfillmentStatus

OUTCOME_SENT = "SENT"
OUTCOME_COMPLETED = "COMPLETED"
OUTCOME_FAILED = "FAILED"
OUTCOME_UNKNOWN = "UNKNOWN"


@dataclass
class SendOutcome:
    order_id: str
    outcome: str
    status: str
    tx_hash: Optional[str] = None
    failed_reason: Optional[str] = None
    attempt_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "outcome": self.outcome,
            "status": self.status,
            "tx_hash": self.tx_hash,
            "failed_reason": self.failed_reason,
            "attempt_number": self.attempt_number,
        }


class SettlementSender:
    """Sends allocated orders and records provider outcomes"""

    def __init__(
        self,
        session_factory=None,
        ledger: Optional[InventoryLedgerService] = None,
        queue: Optional[FulfillmentQueueService] = None,
        custody: Optional[CustodyProvider] = None,
        settings_service: Optional[SystemSettingsService] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or inventory_ledger
        self.queue = queue or fulfillment_queue
        self.custody = custody or custody_client
        self.settings = settings_service or system_settings_service

    async def process_ready_orders(self, actor: Actor = SYSTEM_ACTOR, limit: Optional[int] = None) -> Dict[str, Any]:
        """Send READY_TO_SEND orders oldest first when auto-send is on"""
        settings = self.settings.load_snapshot()
        if not settings.auto_send_enabled:
            logger.debug("AUTO_SEND_ENABLED is off - skipping settlement pass")
            return {"status": "skipped", "reason": "AUTO_SEND_ENABLED is off", "processed": 0}

        orders = self.queue.list_orders(status=S.READY_TO_SEND.value, limit=limit or Config.SENDER_BATCH_SIZE)
        results = {"status": "completed", "processed": 0, "sent": 0, "failed": 0, "unknown": 0, "skipped": 0, "errors": 0, "results": []}

        for order in orders:
            if settings.is_asset_paused(order.asset_type):
                results["skipped"] += 1
                continue
            results["processed"] += 1
            try:
                outcome = await self.send_order(order.order_id, actor=actor, settings=settings)
            except (InvalidTransition, PayoutsPaused) as e:
                logger.warning(f"⚠️ SEND_SKIPPED: {order.order_id}: {e}")
                results["skipped"] += 1
                continue
            except Exception as e:
                logger.error(f"❌ SEND_ERROR: {order.order_id}: {e}", exc_info=True)
                results["errors"] += 1
                continue

            results["results"].append(outcome.to_dict())
            if outcome.outcome in (OUTCOME_SENT, OUTCOME_COMPLETED):
                results["sent"] += 1
            elif outcome.outcome == OUTCOME_FAILED:
                results["failed"] += 1
            else:
                results["unknown"] += 1

        logger.info(
            f"📤 SETTLEMENT_PASS: processed={results['processed']} sent={results['sent']} "
            f"failed={results['failed']} unknown={results['unknown']}"
        )
        return results

    async def send_order(
        self,
        order_id: str,
        actor: Actor = SYSTEM_ACTOR,
        settings: Optional[SettingsSnapshot] = None,
        forced: bool = False,
    ) -> SendOutcome:
        """Claim a READY_TO_SEND order and execute the transfer"""
        settings = settings or self.settings.load_snapshot()

        with atomic_transaction(session_factory=self.session_factory) as s:
            order = self.queue.load_for_update(s, order_id)
            if order.status != S.READY_TO_SEND.value:
                raise InvalidTransition(order_id, order.status, S.SENDING.value)
            pause_reason = settings.pause_reason(order.asset_type)
            if pause_reason:
                raise PayoutsPaused(pause_reason)
            if not order.reservation_token or order.asset_amount is None:
                raise InvalidTransition(order_id, order.status, S.SENDING.value, detail="no inventory reservation")

            attempt_number = (order.attempt_count or 0) + 1
            s.add(FulfillmentAttempt(
                order_id=order_id,
                attempt_number=attempt_number,
                reservation_token=order.reservation_token,
                status=AttemptStatus.OPEN.value,
                asset_amount=order.asset_amount,
                initiated_by=actor.label,
            ))
            self.queue.transition(
                s, order, S.SENDING.value, actor=actor, action="ORDER_SEND_STARTED",
                metadata={"attempt_number": attempt_number, "forced": forced},
                attempt_count=attempt_number,
            )
            destination = order.destination_address
            amount = order.asset_amount
            asset = order.asset_type

        try:
            result = await self.custody.send_asset(
                destination, amount, asset, idempotency_key=f"{order_id}-{attempt_number}"
            )
        except (SettlementFailure, CustodyNotConfigured) as e:
            reason = e.reason if isinstance(e, SettlementFailure) else e.message
            return self.record_failure(order_id, attempt_number, reason, actor)
        except SettlementOutcomeUnknown as e:
            return self._record_unknown(order_id, attempt_number, str(e), actor)
        except Exception as e:
            logger.error(f"❌ SEND_UNEXPECTED_ERROR: {order_id} attempt {attempt_number}: {e}", exc_info=True)
            return self._record_unknown(order_id, attempt_number, f"Unexpected error: {e}", actor)

        if not result.settlement_reference:
            return self._record_unknown(order_id, attempt_number, "Provider returned no settlement reference", actor)
        return self.record_success(order_id, attempt_number, result, actor)

    def _load_attempt(self, session, order_id: str, attempt_number: int) -> FulfillmentAttempt:
        attempt = (
            session.query(FulfillmentAttempt)
            .filter(
                FulfillmentAttempt.order_id == order_id,
                FulfillmentAttempt.attempt_number == attempt_number,
            )
            .with_for_update()
            .populate_existing()
            .first()
        )
        if attempt is None or attempt.status != AttemptStatus.OPEN.value:
            raise InvalidTransition(
                order_id, "attempt", "closed", detail=f"attempt {attempt_number} is not open"
            )
        return attempt

    def record_success(
        self, order_id: str, attempt_number: int, result: SendResult, actor: Actor = SYSTEM_ACTOR
    ) -> SendOutcome:
        """Confirm the spend and mark the order SENT (or COMPLETED when confirmed)"""
        reference = result.settlement_reference
        if not reference:
            raise SettlementOutcomeUnknown(f"No settlement reference for {order_id}")

        with atomic_transaction(session_factory=self.session_factory) as s:
            order = self.queue.load_for_update(s, order_id)
            attempt = self._load_attempt(s, order_id, attempt_number)
            now = get_naive_utc_now()

            self.ledger.confirm_spend(attempt.reservation_token, actor=actor, tx_hash=reference, session=s)
            attempt.status = AttemptStatus.SUCCEEDED.value
            attempt.tx_hash = reference
            attempt.provider_transfer_id = result.provider_transfer_id
            attempt.finished_at = now

            final_status = S.COMPLETED.value if result.confirmed else S.SENT.value
            self.queue.transition(
                s, order, final_status, actor=actor, action="ORDER_SENT",
                metadata={
                    "attempt_number": attempt_number,
                    "provider_transfer_id": result.provider_transfer_id,
                    "provider_status": result.provider_status,
                    "confirmations": result.confirmations,
                },
                tx_hash=reference,
                completed_at=now,
                blocked_reason=None,
                failed_reason=None,
            )

        logger.info(f"✅ ORDER_SENT: {order_id} tx={reference} status={final_status}")
        return SendOutcome(order_id, final_status, final_status, tx_hash=reference, attempt_number=attempt_number)

    def record_failure(
        self, order_id: str, attempt_number: int, reason: str, actor: Actor = SYSTEM_ACTOR
    ) -> SendOutcome:
        """Release the reservation and mark the order FAILED with the provider reason"""
        with atomic_transaction(session_factory=self.session_factory) as s:
            order = self.queue.load_for_update(s, order_id)
            attempt = self._load_attempt(s, order_id, attempt_number)

            token = attempt.reservation_token
            if token and self.ledger.get_reservation(token, s).status == ReservationStatus.HELD.value:
                self.ledger.release(token, actor=actor, reason=f"Settlement failed: {reason}", session=s)
            attempt.status = AttemptStatus.FAILED.value
            attempt.failed_reason = reason
            attempt.finished_at = get_naive_utc_now()

            self.queue.transition(
                s, order, S.FAILED.value, actor=actor, action="ORDER_SEND_FAILED",
                metadata={"attempt_number": attempt_number},
                failed_reason=reason,
                reservation_token=None,
            )

        logger.error(f"❌ ORDER_SEND_FAILED: {order_id} attempt {attempt_number}: {reason}")
        return SendOutcome(order_id, OUTCOME_FAILED, S.FAILED.value, failed_reason=reason, attempt_number=attempt_number)

    def _record_unknown(self, order_id: str, attempt_number: int, detail: str, actor: Actor) -> SendOutcome:
        with atomic_transaction(session_factory=self.session_factory) as s:
            audit_logger.log_event(
                s,
                action="ORDER_SEND_OUTCOME_UNKNOWN",
                actor=actor,
                entity_type="fulfillment_order",
                entity_id=order_id,
                previous_state={"status": S.SENDING.value},
                new_state={"status": S.SENDING.value},
                metadata={"attempt_number": attempt_number, "detail": detail},
            )
        logger.critical(
            f"🚨 SEND_OUTCOME_UNKNOWN: {order_id} attempt {attempt_number} left SENDING with reservation held: {detail}"
        )
        return SendOutcome(order_id, OUTCOME_UNKNOWN, S.SENDING.value, failed_reason=detail, attempt_number=attempt_number)

    def record_settlement(
        self,
        order_id: str,
        actor: Actor,
        tx_hash: Optional[str] = None,
        failed_reason: Optional[str] = None,
        confirmed: bool = False,
    ) -> SendOutcome:
        """Resolve an open attempt whose provider outcome was unknown"""
        if bool(tx_hash) == bool(failed_reason):
            raise OrderValidationError("Provide exactly one of tx_hash or failed_reason")

        with atomic_transaction(session_factory=self.session_factory) as s:
            order = self.queue.get_order(order_id, s)
            attempt = self.queue.get_open_attempt(s, order_id)
            if attempt is None or order.status not in (S.SENDING.value, S.HOLD.value):
                raise InvalidTransition(
                    order_id, order.status, S.SENT.value if tx_hash else S.FAILED.value,
                    detail="no open send attempt to settle",
                )
            attempt_number = attempt.attempt_number

        if tx_hash:
            return self.record_success(
                order_id, attempt_number, SendResult(tx_hash=tx_hash, confirmed=confirmed), actor
            )
        return self.record_failure(order_id, attempt_number, failed_reason, actor)

    def list_stuck_orders(self) -> list:
        """Orders with an open attempt whose outcome is still unknown"""
        with atomic_transaction(session_factory=self.session_factory) as s:
            return (
                s.query(FulfillmentOrder)
                .join(FulfillmentAttempt, FulfillmentAttempt.order_id == FulfillmentOrder.order_id)
                .filter(FulfillmentAttempt.status == AttemptStatus.OPEN.value)
                .order_by(FulfillmentOrder.updated_at.asc())
                .all()
            )


settlement_sender = SettlementSender()
