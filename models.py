"""
BitCard Treasury Fulfillment - Database Schema
==============================================

Schema for the payout pipeline behind BitCard redemptions and the customer
wallet:
- Fulfillment orders and their send attempts
- Custodial inventory lots, reservations and per-lot allocations
- Treasury reconciliation records
- Runtime system settings (kill switches, limits)
- Append-only audit trail
- Customer KYC profiles and admin API identities
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    Index, CheckConstraint, JSON, event
)
from sqlalchemy.orm import DeclarativeBase

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# Column types shared by every money column
CryptoAmount = Numeric(28, 8)
UsdAmount = Numeric(18, 2)
RateAmount = Numeric(20, 8)
PercentAmount = Numeric(18, 8)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class AssetType(Enum):
    """Custodial asset buckets tracked by the inventory ledger"""
    BTC = "BTC"
    USDC = "USDC"                  # Customer USDC
    COMPANY_USDC = "COMPANY_USDC"  # Company treasury USDC


class OrderType(Enum):
    BITCARD_REDEMPTION = "BITCARD_REDEMPTION"
    BUY_BTC = "BUY_BTC"
    SELL_BTC = "SELL_BTC"


class FulfillmentStatus(Enum):
    """Fulfillment order lifecycle states"""
    SUBMITTED = "SUBMITTED"
    KYC_PENDING = "KYC_PENDING"
    WAITING_INVENTORY = "WAITING_INVENTORY"
    READY_TO_SEND = "READY_TO_SEND"
    SENDING = "SENDING"
    SENT = "SENT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    HOLD = "HOLD"
    CANCELLED = "CANCELLED"


class KycStatus(Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"


class ProfileKycStatus(Enum):
    """KYC status as stored on the customer profile"""
    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InventorySource(Enum):
    MANUAL_TOPUP = "manual_topup"
    USER_SELL = "user_sell"
    EXCHANGE_WITHDRAW = "exchange_withdraw"
    ADJUSTMENT = "adjustment"
    OTHER = "other"


class ReservationStatus(Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    CONSUMED = "CONSUMED"


class AttemptStatus(Enum):
    OPEN = "OPEN"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ReconciliationStatus(Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    DISCREPANCY = "DISCREPANCY"
    RESOLVED = "RESOLVED"


class ActorType(Enum):
    ADMIN = "admin"
    SYSTEM = "system"
    SALES_REP = "sales_rep"


class AdminRole(Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    SALES_REP = "sales_rep"


class SettingValueType(Enum):
    BOOLEAN = "boolean"
    DECIMAL = "decimal"
    STRING = "string"


# ============================================================================
# FULFILLMENT
# ============================================================================

class FulfillmentOrder(Base):
    """Customer payout request queued for crypto delivery"""
    __tablename__ = 'fulfillment_orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), unique=True, nullable=False, index=True)
    order_type = Column(String(32), nullable=False)
    asset_type = Column(String(16), nullable=False)

    # Plain references to entities owned by the web application
    customer_id = Column(String(64), nullable=False, index=True)
    merchant_id = Column(String(64), nullable=True)
    sales_rep_id = Column(String(64), nullable=True)
    bitcard_id = Column(String(64), nullable=True)

    # Amounts
    usd_value = Column(UsdAmount, nullable=False)
    asset_amount = Column(CryptoAmount, nullable=True)  # Fixed at allocation
    price_used = Column(RateAmount, nullable=True)
    price_source = Column(String(32), nullable=True)

    destination_address = Column(String(128), nullable=False)

    # Lifecycle
    status = Column(String(32), nullable=False, default=FulfillmentStatus.SUBMITTED.value, index=True)
    kyc_status = Column(String(16), nullable=False, default=KycStatus.PENDING.value)
    blocked_reason = Column(Text, nullable=True)
    failed_reason = Column(Text, nullable=True)

    # Settlement
    tx_hash = Column(String(128), nullable=True)
    reservation_token = Column(String(64), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint('usd_value > 0', name='ck_fulfillment_usd_positive'),
        Index('ix_fulfillment_status_created', 'status', 'created_at'),
        Index('ix_fulfillment_asset_completed', 'asset_type', 'completed_at'),
    )

    def to_dict(self):
        return {
            "order_id": self.order_id,
            "order_type": self.order_type,
            "asset_type": self.asset_type,
            "customer_id": self.customer_id,
            "merchant_id": self.merchant_id,
            "sales_rep_id": self.sales_rep_id,
            "bitcard_id": self.bitcard_id,
            "usd_value": str(self.usd_value) if self.usd_value is not None else None,
            "asset_amount": str(self.asset_amount) if self.asset_amount is not None else None,
            "price_used": str(self.price_used) if self.price_used is not None else None,
            "price_source": self.price_source,
            "destination_address": self.destination_address,
            "status": self.status,
            "kyc_status": self.kyc_status,
            "blocked_reason": self.blocked_reason,
            "failed_reason": self.failed_reason,
            "tx_hash": self.tx_hash,
            "reservation_token": self.reservation_token,
            "attempt_count": self.attempt_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class FulfillmentAttempt(Base):
    """One send attempt against the custody provider"""
    __tablename__ = 'fulfillment_attempts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    reservation_token = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=AttemptStatus.OPEN.value)
    asset_amount = Column(CryptoAmount, nullable=True)
    tx_hash = Column(String(128), nullable=True)
    provider_transfer_id = Column(String(128), nullable=True)
    failed_reason = Column(Text, nullable=True)
    initiated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_attempt_order_number', 'order_id', 'attempt_number', unique=True),
    )

    def to_dict(self):
        return {
            "attempt_number": self.attempt_number,
            "status": self.status,
            "asset_amount": str(self.asset_amount) if self.asset_amount is not None else None,
            "tx_hash": self.tx_hash,
            "provider_transfer_id": self.provider_transfer_id,
            "failed_reason": self.failed_reason,
            "initiated_by": self.initiated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# ============================================================================
# INVENTORY
# ============================================================================

class InventoryLot(Base):
    """Discrete batch of custodial inventory"""
    __tablename__ = 'inventory_lots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lot_id = Column(String(32), unique=True, nullable=False, index=True)
    asset_type = Column(String(16), nullable=False)
    amount_total = Column(CryptoAmount, nullable=False)
    amount_available = Column(CryptoAmount, nullable=False)
    source = Column(String(32), nullable=False, default=InventorySource.MANUAL_TOPUP.value)
    reference_id = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    received_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    eligible_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    created_by_admin_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint('amount_available >= 0', name='ck_lot_available_non_negative'),
        CheckConstraint('amount_available <= amount_total', name='ck_lot_available_within_total'),
        Index('ix_lot_asset_received', 'asset_type', 'received_at'),
    )

    def to_dict(self):
        return {
            "lot_id": self.lot_id,
            "asset_type": self.asset_type,
            "amount_total": str(self.amount_total),
            "amount_available": str(self.amount_available),
            "source": self.source,
            "reference_id": self.reference_id,
            "notes": self.notes,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "eligible_at": self.eligible_at.isoformat() if self.eligible_at else None,
            "created_by_admin_id": self.created_by_admin_id,
        }


class InventoryReservation(Base):
    """Exclusive claim on lot inventory pending settlement"""
    __tablename__ = 'inventory_reservations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_token = Column(String(64), unique=True, nullable=False, index=True)
    asset_type = Column(String(16), nullable=False)
    amount = Column(CryptoAmount, nullable=False)
    order_id = Column(String(32), nullable=True, index=True)
    status = Column(String(16), nullable=False, default=ReservationStatus.HELD.value)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    released_at = Column(DateTime, nullable=True)
    consumed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_reservation_amount_positive'),
        Index('ix_reservation_asset_status', 'asset_type', 'status'),
    )


class LotAllocation(Base):
    """Portion of a lot drawn by a reservation"""
    __tablename__ = 'lot_allocations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_token = Column(String(64), nullable=False, index=True)
    lot_id = Column(String(32), nullable=False, index=True)
    amount = Column(CryptoAmount, nullable=False)
    is_reversed = Column(Boolean, nullable=False, default=False)
    reversed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)


# ============================================================================
# RECONCILIATION
# ============================================================================

class ReconciliationRecord(Base):
    """Ledger vs on-chain balance comparison for one asset"""
    __tablename__ = 'reconciliation_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    reconciliation_id = Column(String(32), unique=True, nullable=False, index=True)
    asset_type = Column(String(16), nullable=False)
    onchain_balance = Column(CryptoAmount, nullable=False)
    database_balance = Column(CryptoAmount, nullable=False)
    discrepancy = Column(CryptoAmount, nullable=False)
    discrepancy_pct = Column(PercentAmount, nullable=False)
    tolerance_pct = Column(PercentAmount, nullable=False)
    status = Column(String(16), nullable=False, default=ReconciliationStatus.PENDING.value, index=True)
    notes = Column(Text, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    created_by_admin_id = Column(String(64), nullable=True)
    resolved_by_admin_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_reconciliation_asset_created', 'asset_type', 'created_at'),
    )

    def to_dict(self):
        return {
            "reconciliation_id": self.reconciliation_id,
            "asset_type": self.asset_type,
            "onchain_balance": str(self.onchain_balance),
            "database_balance": str(self.database_balance),
            "discrepancy": str(self.discrepancy),
            "discrepancy_pct": str(self.discrepancy_pct),
            "tolerance_pct": str(self.tolerance_pct),
            "status": self.status,
            "notes": self.notes,
            "resolution_notes": self.resolution_notes,
            "created_by_admin_id": self.created_by_admin_id,
            "resolved_by_admin_id": self.resolved_by_admin_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


# ============================================================================
# SETTINGS, AUDIT, IDENTITY
# ============================================================================

class SystemSetting(Base):
    """Runtime kill switches and limits"""
    __tablename__ = 'system_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    setting_key = Column(String(64), unique=True, nullable=False, index=True)
    setting_value = Column(Text, nullable=False)
    value_type = Column(String(16), nullable=False, default=SettingValueType.STRING.value)
    description = Column(Text, nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)


class AuditLog(Base):
    """Append-only audit trail for compliance"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(40), unique=True, nullable=False, index=True)
    actor_type = Column(String(16), nullable=False)
    actor_id = Column(String(64), nullable=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)
    previous_state = Column(JSON, nullable=True)
    new_state = Column(JSON, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        Index('ix_audit_entity', 'entity_type', 'entity_id'),
        Index('ix_audit_created', 'created_at'),
    )

    def to_dict(self):
        return {
            "event_id": self.event_id,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "metadata": self.event_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AuditLogImmutableError(Exception):
    """Raised when code tries to update or delete an audit row"""
    pass


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit log entry {target.event_id} is append-only")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit log entry {target.event_id} is append-only")


class CustomerProfile(Base):
    """Customer identity snapshot used for KYC gating"""
    __tablename__ = 'customer_profiles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(64), unique=True, nullable=False, index=True)
    kyc_status = Column(String(16), nullable=False, default=ProfileKycStatus.NOT_STARTED.value)
    btc_address = Column(String(128), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now)


class AdminUser(Base):
    """Admin console identity resolved from the X-Admin-Key header"""
    __tablename__ = 'admin_users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    admin_id = Column(String(64), unique=True, nullable=False, index=True)
    role = Column(String(16), nullable=False, default=AdminRole.ADMIN.value)
    api_key_hash = Column(String(64), unique=True, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
