"""
Fulfillment pipeline exception hierarchy.

Inventory shortage, pending KYC and limit breaches are raised by the
building blocks but recorded as queue states by the allocator; only
settlement failures surface to the admin console.
"""

from decimal import Decimal
from typing import Optional


class FulfillmentError(Exception):
    """Base exception for the fulfillment pipeline"""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__


class InsufficientInventory(FulfillmentError):
    """Reservation request exceeds the eligible balance"""

    def __init__(self, asset_type: str, requested: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient {asset_type} inventory: requested {requested}, eligible {available}"
        )
        self.asset_type = asset_type
        self.requested = requested
        self.available = available


class KycNotApproved(FulfillmentError):
    def __init__(self, customer_id: str, kyc_status: str):
        super().__init__(f"KYC not approved for customer {customer_id}: {kyc_status}")
        self.customer_id = customer_id
        self.kyc_status = kyc_status


class LimitExceeded(FulfillmentError):
    """Per-transaction or daily payout cap would be breached"""

    def __init__(self, limit_name: str, limit: Decimal, attempted: Decimal):
        super().__init__(f"{limit_name} exceeded: {attempted} > {limit}")
        self.limit_name = limit_name
        self.limit = limit
        self.attempted = attempted


class PayoutsPaused(FulfillmentError):
    pass


class PriceUnavailable(FulfillmentError):
    pass


class SettlementFailure(FulfillmentError):
    """Custody provider definitively rejected a transfer"""

    def __init__(self, reason: str, provider_code: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.provider_code = provider_code


class SettlementOutcomeUnknown(FulfillmentError):
    """Transfer was submitted but the provider outcome is unknown"""
    pass


class CustodyNotConfigured(FulfillmentError):
    pass


class CustodyProviderError(FulfillmentError):
    """Custody provider read failed (balances, status lookups)"""
    pass


class InvalidTransition(FulfillmentError):
    def __init__(self, order_id: str, current_status: str, new_status: str, detail: Optional[str] = None):
        message = f"Invalid transition for {order_id}: {current_status} -> {new_status}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.order_id = order_id
        self.current_status = current_status
        self.new_status = new_status


class OrderValidationError(FulfillmentError):
    pass


class OrderNotFound(FulfillmentError):
    def __init__(self, order_id: str):
        super().__init__(f"Fulfillment order {order_id} not found")
        self.order_id = order_id


class ReservationNotFound(FulfillmentError):
    def __init__(self, token: str):
        super().__init__(f"Reservation {token} not found")
        self.token = token


class ReservationStateError(FulfillmentError):
    """Reservation token was already released or consumed"""

    def __init__(self, token: str, status: str, operation: str):
        super().__init__(f"Cannot {operation} reservation {token}: already {status}")
        self.token = token
        self.status = status
        self.operation = operation


class LotNotFound(FulfillmentError):
    def __init__(self, lot_id: str):
        super().__init__(f"Inventory lot {lot_id} not found")
        self.lot_id = lot_id


class InventoryAdjustmentError(FulfillmentError):
    pass


class ReconciliationNotFound(FulfillmentError):
    def __init__(self, reconciliation_id: str):
        super().__init__(f"Reconciliation record {reconciliation_id} not found")
        self.reconciliation_id = reconciliation_id


class ReconciliationStateError(FulfillmentError):
    pass


class SettingValidationError(FulfillmentError):
    pass


class Unauthorized(FulfillmentError):
    """No authenticated actor"""
    pass


class Forbidden(FulfillmentError):
    """Actor lacks the role required for the operation"""
    pass
