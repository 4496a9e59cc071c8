"""
Fulfillment Allocator Tests
KYC gating, kill switches, limits, FIFO fairness and idempotent passes
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from database import managed_session
from models import (
    AssetType, AuditLog, FulfillmentOrder, FulfillmentStatus, KycStatus, OrderType, ReservationStatus,
)
from services.actors import Actor
from services.fulfillment_allocator import (
    OUTCOME_ALLOCATED, OUTCOME_ERROR, OUTCOME_INSUFFICIENT_INVENTORY, OUTCOME_KYC_PENDING,
    OUTCOME_LIMIT_EXCEEDED, OUTCOME_PAUSED, OUTCOME_PRICE_UNAVAILABLE, daily_committed_amount,
)
from services.price_oracle import PriceQuote
from services import system_settings as keys
from utils.datetime_helpers import get_naive_utc_now

S = FulfillmentStatus
BTC = AssetType.BTC.value
ADMIN = Actor.admin("admin-1", "admin")
HISTORY_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


def _results_by_order(summary):
    return {r.order_id: r for r in summary.results}


def _insert_sent_order(asset_amount, status=S.SENT.value):
    """Historical payout completed today"""
    now = get_naive_utc_now()
    with managed_session() as session:
        session.add(FulfillmentOrder(
            order_id=f"FO_HIST_{asset_amount}",
            order_type=OrderType.BITCARD_REDEMPTION.value,
            asset_type=BTC,
            customer_id="cust-history",
            usd_value=Decimal("1.00"),
            asset_amount=Decimal(asset_amount),
            destination_address=HISTORY_ADDRESS,
            status=status,
            kyc_status=KycStatus.APPROVED.value,
            tx_hash="hist-tx",
            completed_at=now,
        ))


class TestAllocationGates:
    @pytest.mark.asyncio
    async def test_approved_order_is_allocated(self, allocator, queue, ledger, make_order, fund_btc):
        fund_btc("1")
        order = make_order(usd_value="500.00")

        summary = await allocator.run_allocation_pass()

        result = _results_by_order(summary)[order.order_id]
        assert result.outcome == OUTCOME_ALLOCATED
        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.READY_TO_SEND.value
        assert refreshed.asset_amount == Decimal("0.01000000")
        assert refreshed.price_used == Decimal("50000.00000000")
        assert refreshed.price_source == "fake"
        assert refreshed.blocked_reason is None
        assert ledger.get_reservation(refreshed.reservation_token).status == ReservationStatus.HELD.value
        assert ledger.get_eligible_balance(BTC) == Decimal("0.99000000")

    @pytest.mark.asyncio
    async def test_kyc_pending_blocks(self, allocator, queue, kyc_provider, make_order, fund_btc, price_feed):
        fund_btc("1")
        kyc_provider.statuses["cust-1"] = KycStatus.PENDING.value
        order = make_order()

        summary = await allocator.run_allocation_pass()

        assert _results_by_order(summary)[order.order_id].outcome == OUTCOME_KYC_PENDING
        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.KYC_PENDING.value
        assert "KYC" in refreshed.blocked_reason
        assert refreshed.reservation_token is None
        assert price_feed.calls == 0

    @pytest.mark.asyncio
    async def test_kyc_approval_later_promotes(self, allocator, queue, kyc_provider, make_order, fund_btc):
        fund_btc("1")
        kyc_provider.statuses["cust-1"] = KycStatus.PENDING.value
        order = make_order()
        await allocator.run_allocation_pass()

        kyc_provider.statuses["cust-1"] = KycStatus.APPROVED.value
        await allocator.run_allocation_pass()

        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.READY_TO_SEND.value
        assert refreshed.kyc_status == KycStatus.APPROVED.value

    @pytest.mark.asyncio
    async def test_global_pause_leaves_order_in_place(self, allocator, queue, settings_service, make_order, fund_btc):
        fund_btc("1")
        settings_service.set_setting(keys.PAYOUTS_PAUSED, True, ADMIN)
        order = make_order()

        summary = await allocator.run_allocation_pass()

        assert _results_by_order(summary)[order.order_id].outcome == OUTCOME_PAUSED
        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.SUBMITTED.value
        assert refreshed.reservation_token is None
        assert "PAYOUTS_PAUSED" in refreshed.blocked_reason

    @pytest.mark.asyncio
    async def test_btc_pause_does_not_block_usdc(self, allocator, queue, ledger, settings_service, make_order):
        ledger.add_lot(AssetType.USDC.value, "1000")
        settings_service.set_setting(keys.BTC_PAYOUTS_PAUSED, True, ADMIN)
        btc_order = make_order(customer_id="cust-btc")
        usdc_order = make_order(customer_id="cust-usdc", usd_value="250", order_type=OrderType.SELL_BTC.value)

        await allocator.run_allocation_pass()

        assert queue.get_order(btc_order.order_id).status == S.SUBMITTED.value
        usdc = queue.get_order(usdc_order.order_id)
        assert usdc.status == S.READY_TO_SEND.value
        assert usdc.asset_amount == Decimal("250.00000000")
        assert usdc.price_source == "peg"

    @pytest.mark.asyncio
    async def test_price_unavailable_leaves_order_unchanged(self, allocator, queue, price_feed, make_order, fund_btc):
        fund_btc("1")
        price_feed.unavailable = True
        order = make_order()

        summary = await allocator.run_allocation_pass()

        assert _results_by_order(summary)[order.order_id].outcome == OUTCOME_PRICE_UNAVAILABLE
        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.SUBMITTED.value
        assert refreshed.asset_amount is None

    @pytest.mark.asyncio
    async def test_insufficient_inventory_waits(self, allocator, queue, make_order, fund_btc):
        fund_btc("0.005")
        order = make_order(usd_value="500.00")

        summary = await allocator.run_allocation_pass()

        assert _results_by_order(summary)[order.order_id].outcome == OUTCOME_INSUFFICIENT_INVENTORY
        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.WAITING_INVENTORY.value
        assert refreshed.blocked_reason == "Insufficient BTC inventory for 0.01000000"
        assert refreshed.asset_amount == Decimal("0.01000000")

    @pytest.mark.asyncio
    async def test_price_is_fixed_once(self, allocator, queue, price_feed, make_order, fund_btc):
        order = make_order(usd_value="500.00")
        await allocator.run_allocation_pass()

        price_feed.prices[BTC] = Decimal("25000.00")
        fund_btc("1")
        await allocator.run_allocation_pass()

        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.READY_TO_SEND.value
        assert refreshed.asset_amount == Decimal("0.01000000")
        assert refreshed.price_used == Decimal("50000.00000000")

    @pytest.mark.asyncio
    async def test_stale_quote_is_marked_in_price_source(self, allocator, queue, price_feed, make_order, fund_btc):
        fund_btc("1")
        order = make_order(usd_value="500.00")
        stale = PriceQuote(BTC, Decimal("50000.00"), "coingecko", get_naive_utc_now(), cached=True, stale=True)

        with patch.object(price_feed, "get_price", AsyncMock(return_value=stale)):
            await allocator.run_allocation_pass()

        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.READY_TO_SEND.value
        assert refreshed.price_source == "coingecko:stale"


class TestPayoutLimits:
    @pytest.mark.asyncio
    async def test_max_transaction_limit(self, allocator, queue, make_order, fund_btc):
        fund_btc("5")
        order = make_order(usd_value="75000.00")

        summary = await allocator.run_allocation_pass()

        assert _results_by_order(summary)[order.order_id].outcome == OUTCOME_LIMIT_EXCEEDED
        refreshed = queue.get_order(order.order_id)
        assert refreshed.status == S.WAITING_INVENTORY.value
        assert "MAX_TX_BTC_LIMIT" in refreshed.blocked_reason

    @pytest.mark.asyncio
    async def test_daily_limit_enforcement(self, allocator, queue, make_order, fund_btc):
        fund_btc("2")
        _insert_sent_order("9.5")
        big = make_order(customer_id="cust-big", usd_value="50000.00")
        small = make_order(customer_id="cust-small", usd_value="15000.00")

        await allocator.run_allocation_pass()

        big_order = queue.get_order(big.order_id)
        small_order = queue.get_order(small.order_id)
        assert big_order.asset_amount == Decimal("1.00000000")
        assert big_order.status == S.WAITING_INVENTORY.value
        assert "DAILY_BTC_LIMIT" in big_order.blocked_reason
        assert small_order.asset_amount == Decimal("0.30000000")
        assert small_order.status == S.READY_TO_SEND.value

    @pytest.mark.asyncio
    async def test_in_flight_reservations_count_toward_daily_limit(self, allocator, queue, settings_service, make_order, fund_btc):
        fund_btc("3")
        settings_service.set_setting(keys.DAILY_BTC_LIMIT, "1.5", ADMIN)
        first = make_order(customer_id="cust-a", usd_value="40000.00")
        second = make_order(customer_id="cust-b", usd_value="40000.00")

        await allocator.run_allocation_pass()

        assert queue.get_order(first.order_id).status == S.READY_TO_SEND.value
        assert queue.get_order(second.order_id).status == S.WAITING_INVENTORY.value
        with managed_session() as session:
            assert daily_committed_amount(session, BTC) == Decimal("0.80000000")

    @pytest.mark.asyncio
    async def test_usdc_ignores_btc_limits(self, allocator, queue, ledger, settings_service, make_order):
        ledger.add_lot(AssetType.USDC.value, "100000")
        settings_service.set_setting(keys.MAX_TX_BTC_LIMIT, "0.001", ADMIN)
        order = make_order(usd_value="60000", order_type=OrderType.SELL_BTC.value)

        await allocator.run_allocation_pass()

        assert queue.get_order(order.order_id).status == S.READY_TO_SEND.value


class TestFairnessAndIdempotency:
    @pytest.mark.asyncio
    async def test_fifo_fairness(self, allocator, queue, make_order, fund_btc):
        fund_btc("0.015")
        older = make_order(customer_id="cust-old", usd_value="500.00")
        newer = make_order(customer_id="cust-new", usd_value="500.00")

        await allocator.run_allocation_pass()

        assert queue.get_order(older.order_id).status == S.READY_TO_SEND.value
        assert queue.get_order(newer.order_id).status == S.WAITING_INVENTORY.value

    @pytest.mark.asyncio
    async def test_rerun_on_unchanged_world_is_noop(self, allocator, queue, kyc_provider, make_order, fund_btc):
        fund_btc("0.015")
        _insert_sent_order("9.5")
        kyc_provider.statuses["cust-kyc"] = KycStatus.PENDING.value
        make_order(customer_id="cust-ready", usd_value="500.00")
        make_order(customer_id="cust-wait", usd_value="500.00")
        make_order(customer_id="cust-kyc", usd_value="500.00")
        make_order(customer_id="cust-limit", usd_value="30000.00")

        first = await allocator.run_allocation_pass()
        with managed_session() as session:
            audit_count = session.query(AuditLog).count()
        second = await allocator.run_allocation_pass()

        assert first.changed == 4
        assert second.changed == 0
        assert second.allocated == 0
        with managed_session() as session:
            assert session.query(AuditLog).count() == audit_count

    @pytest.mark.asyncio
    async def test_one_failing_order_does_not_stop_the_pass(self, allocator, queue, kyc_provider, make_order, fund_btc):
        fund_btc("1")
        kyc_provider.errors["cust-broken"] = RuntimeError("identity provider exploded")
        broken = make_order(customer_id="cust-broken")
        healthy = make_order(customer_id="cust-healthy")

        summary = await allocator.run_allocation_pass()

        results = _results_by_order(summary)
        assert results[broken.order_id].outcome == OUTCOME_ERROR
        assert summary.errors == 1
        assert results[healthy.order_id].outcome == OUTCOME_ALLOCATED
        assert queue.get_order(broken.order_id).status == S.SUBMITTED.value

    @pytest.mark.asyncio
    async def test_settings_are_read_fresh_each_pass(self, allocator, queue, settings_service, make_order, fund_btc):
        fund_btc("1")
        settings_service.set_setting(keys.PAYOUTS_PAUSED, True, ADMIN)
        order = make_order()
        await allocator.run_allocation_pass()
        assert queue.get_order(order.order_id).status == S.SUBMITTED.value

        settings_service.set_setting(keys.PAYOUTS_PAUSED, False, ADMIN)
        await allocator.run_allocation_pass()

        assert queue.get_order(order.order_id).status == S.READY_TO_SEND.value
