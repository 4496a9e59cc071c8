"""
Shared fixtures for the fulfillment engine test suite.

Key Components:
1. A throwaway SQLite database, rebuilt for every test
2. Fake KYC, price and custody providers
3. Service instances wired to the fakes
4. Admin actors and an order factory
"""

import os
import tempfile

# Configure the environment before any application module reads Config
_TEST_DB_DIR = tempfile.mkdtemp(prefix="fulfillment_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'fulfillment_test.db')}"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["AUDIT_LOG_FILE"] = ""
os.environ.pop("CUSTODY_API_KEY", None)
os.environ.pop("FIREBLOCKS_API_KEY", None)

import logging
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from database import engine
from models import AssetType, Base, KycStatus, OrderType
from services.actors import Actor
from services.admin_control import AdminControlService
from services.custody_provider import CustodyProvider, SendResult
from services.fulfillment_allocator import FulfillmentAllocator
from services.fulfillment_errors import CustodyProviderError, PriceUnavailable
from services.fulfillment_queue import FulfillmentQueueService
from services.inventory_ledger import InventoryLedgerService
from services.kyc_provider import KycProvider
from services.price_oracle import PriceOracle, PriceQuote
from services.reconciliation_engine import ReconciliationEngine
from services.settlement_sender import SettlementSender
from services.system_settings import SystemSettingsService
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

BTC_ADDRESS = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"
USDC_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"
BTC_PRICE = Decimal("50000.00")


class FakeKycProvider(KycProvider):
    def __init__(self, default: str = KycStatus.APPROVED.value):
        self.default = default
        self.statuses: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []

    async def get_kyc_status(self, customer_id: str) -> str:
        self.calls.append(customer_id)
        if customer_id in self.errors:
            raise self.errors[customer_id]
        return self.statuses.get(customer_id, self.default)


class FakePriceOracle(PriceOracle):
    def __init__(self, btc_price: Decimal = BTC_PRICE):
        self.prices = {AssetType.BTC.value: btc_price}
        self.unavailable = False
        self.calls = 0

    async def get_price(self, asset_type: str) -> PriceQuote:
        self.calls += 1
        if asset_type in (AssetType.USDC.value, AssetType.COMPANY_USDC.value):
            return PriceQuote(asset_type, Decimal("1.00"), "peg", get_naive_utc_now())
        if self.unavailable:
            raise PriceUnavailable(f"All price sources failed for {asset_type}")
        return PriceQuote(asset_type, self.prices[asset_type], "fake", get_naive_utc_now())


class FakeCustodyProvider(CustodyProvider):
    def __init__(self):
        self.sent: List[Dict] = []
        self.result = SendResult(tx_hash="abc123", provider_transfer_id="fb-tx-1", provider_status="BROADCASTING")
        self.error: Optional[Exception] = None
        self.balances: Dict[str, Decimal] = {}

    async def send_asset(self, destination, amount, asset_type, idempotency_key=None) -> SendResult:
        self.sent.append({
            "destination": destination,
            "amount": amount,
            "asset_type": asset_type,
            "idempotency_key": idempotency_key,
        })
        if self.error is not None:
            raise self.error
        return self.result

    async def get_onchain_balance(self, asset_type: str) -> Decimal:
        if asset_type not in self.balances:
            raise CustodyProviderError(f"No balance for {asset_type}")
        return self.balances[asset_type]


@pytest.fixture(autouse=True)
def clean_database():
    """Fresh schema for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def kyc_provider():
    return FakeKycProvider()


@pytest.fixture
def price_feed():
    return FakePriceOracle()


@pytest.fixture
def custody():
    return FakeCustodyProvider()


@pytest.fixture
def settings_service():
    service = SystemSettingsService()
    service.seed_defaults()
    return service


@pytest.fixture
def ledger():
    return InventoryLedgerService()


@pytest.fixture
def queue(ledger):
    return FulfillmentQueueService(ledger=ledger)


@pytest.fixture
def allocator(ledger, queue, kyc_provider, price_feed, settings_service):
    return FulfillmentAllocator(
        ledger=ledger,
        queue=queue,
        kyc_provider=kyc_provider,
        price_oracle=price_feed,
        settings_service=settings_service,
    )


@pytest.fixture
def sender(ledger, queue, custody, settings_service):
    return SettlementSender(ledger=ledger, queue=queue, custody=custody, settings_service=settings_service)


@pytest.fixture
def reconciliation(ledger, custody, settings_service):
    return ReconciliationEngine(ledger=ledger, custody=custody, settings_service=settings_service)


@pytest.fixture
def admin_service(queue, ledger, allocator, sender, reconciliation, settings_service):
    return AdminControlService(
        queue=queue,
        ledger=ledger,
        allocator=allocator,
        sender=sender,
        reconciliation=reconciliation,
        settings_service=settings_service,
    )


@pytest.fixture
def admin_actor():
    return Actor.admin("admin-1", "admin")


@pytest.fixture
def super_admin():
    return Actor.admin("root-1", "super_admin")


@pytest.fixture
def sales_rep():
    return Actor.admin("rep-1", "sales_rep")


@pytest.fixture
def make_order(queue):
    """Factory submitting an order; BTC redemption by default"""
    def _make(usd_value="500.00", customer_id="cust-1", order_type=OrderType.BITCARD_REDEMPTION.value, **kwargs):
        if order_type == OrderType.SELL_BTC.value:
            kwargs.setdefault("destination_address", USDC_ADDRESS)
        kwargs.setdefault("destination_address", BTC_ADDRESS)
        return queue.submit_order(customer_id=customer_id, usd_value=usd_value, order_type=order_type, **kwargs)
    return _make


@pytest.fixture
def fund_btc(ledger):
    """Add an eligible BTC lot"""
    def _fund(amount="1.00000000", **kwargs):
        return ledger.add_lot(AssetType.BTC.value, amount, **kwargs)
    return _fund
