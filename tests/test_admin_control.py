"""
Admin Control Tests
Role checks, holds, releases, retries, forced sends and kill switches
"""

from decimal import Decimal

import pytest

from database import managed_session
from models import AdminRole, AssetType, AuditLog, FulfillmentStatus, KycStatus, ReservationStatus
from services import system_settings as keys
from services.admin_control import hash_api_key
from services.fulfillment_errors import (
    Forbidden, InvalidTransition, OrderValidationError, PayoutsPaused, SettingValidationError,
    SettlementOutcomeUnknown, Unauthorized,
)
from services.fulfillment_allocator import OUTCOME_ALLOCATED
from services.settlement_sender import OUTCOME_SENT

S = FulfillmentStatus
BTC = AssetType.BTC.value


@pytest.fixture
def allocated_order(allocator, make_order, fund_btc):
    async def _allocated(**kwargs):
        fund_btc("1")
        order = make_order(**kwargs)
        await allocator.run_allocation_pass()
        return order.order_id
    return _allocated


class TestRoleChecks:
    def test_missing_actor_is_unauthorized(self, admin_service, make_order):
        order = make_order()
        with pytest.raises(Unauthorized):
            admin_service.hold_order(order.order_id, None, reason="x")

    def test_sales_rep_cannot_mutate(self, admin_service, make_order, sales_rep):
        order = make_order()
        with pytest.raises(Forbidden):
            admin_service.hold_order(order.order_id, sales_rep, reason="x")
        with pytest.raises(Forbidden):
            admin_service.pause_payouts(sales_rep)

    @pytest.mark.asyncio
    async def test_force_send_requires_super_admin(self, admin_service, allocated_order, admin_actor):
        order_id = await allocated_order()
        with pytest.raises(Forbidden):
            await admin_service.force_send(order_id, admin_actor, reason="urgent")

    def test_record_settlement_requires_super_admin(self, admin_service, make_order, admin_actor):
        order = make_order()
        with pytest.raises(Forbidden):
            admin_service.record_settlement(order.order_id, admin_actor, tx_hash="abc")


class TestHoldAndRelease:
    @pytest.mark.asyncio
    async def test_hold_ready_order_releases_reservation(self, admin_service, queue, ledger, allocated_order, admin_actor):
        order_id = await allocated_order()
        token = queue.get_order(order_id).reservation_token

        held = admin_service.hold_order(order_id, admin_actor, reason="fraud review")

        assert held.status == S.HOLD.value
        assert held.blocked_reason == "fraud review"
        assert held.reservation_token is None
        assert ledger.get_reservation(token).status == ReservationStatus.RELEASED.value
        assert ledger.get_eligible_balance(BTC) == Decimal("1.00000000")
        with managed_session() as session:
            entry = (
                session.query(AuditLog)
                .filter(AuditLog.entity_id == order_id, AuditLog.action == "ORDER_HELD")
                .one()
            )
            assert entry.event_metadata["previous_status"] == S.READY_TO_SEND.value
            assert entry.event_metadata["released_reservation"] == token

    def test_hold_requires_reason(self, admin_service, make_order, admin_actor):
        order = make_order()
        with pytest.raises(OrderValidationError):
            admin_service.hold_order(order.order_id, admin_actor, reason="")

    def test_cannot_hold_twice(self, admin_service, make_order, admin_actor):
        order = make_order()
        admin_service.hold_order(order.order_id, admin_actor, reason="review")
        with pytest.raises(InvalidTransition):
            admin_service.hold_order(order.order_id, admin_actor, reason="again")

    @pytest.mark.asyncio
    async def test_release_reallocates(self, admin_service, queue, allocated_order, admin_actor):
        order_id = await allocated_order()
        admin_service.hold_order(order_id, admin_actor, reason="review")

        result = await admin_service.release_order(order_id, admin_actor, reason="cleared")

        assert result.outcome == OUTCOME_ALLOCATED
        order = queue.get_order(order_id)
        assert order.status == S.READY_TO_SEND.value
        assert order.reservation_token is not None
        assert order.blocked_reason is None

    @pytest.mark.asyncio
    async def test_release_without_inventory_parks_order(self, admin_service, queue, make_order, admin_actor):
        order = make_order()
        admin_service.hold_order(order.order_id, admin_actor, reason="review")

        await admin_service.release_order(order.order_id, admin_actor)

        assert queue.get_order(order.order_id).status == S.WAITING_INVENTORY.value

    @pytest.mark.asyncio
    async def test_release_requires_hold(self, admin_service, make_order, admin_actor):
        order = make_order()
        with pytest.raises(InvalidTransition):
            await admin_service.release_order(order.order_id, admin_actor)

    @pytest.mark.asyncio
    async def test_hold_mid_send_keeps_reservation(
        self, admin_service, queue, ledger, custody, allocated_order, admin_actor, super_admin, sender
    ):
        order_id = await allocated_order()
        token = queue.get_order(order_id).reservation_token
        custody.error = SettlementOutcomeUnknown("timeout")
        await sender.send_order(order_id)

        admin_service.hold_order(order_id, admin_actor, reason="investigating transfer")

        assert ledger.get_reservation(token).status == ReservationStatus.HELD.value
        with pytest.raises(InvalidTransition):
            await admin_service.release_order(order_id, admin_actor)
        with pytest.raises(InvalidTransition):
            admin_service.cancel_order(order_id, admin_actor, reason="give up")

        outcome = admin_service.record_settlement(order_id, super_admin, tx_hash="found-on-chain")

        assert outcome.outcome == OUTCOME_SENT
        assert queue.get_order(order_id).status == S.SENT.value
        assert ledger.get_reservation(token).status == ReservationStatus.CONSUMED.value


class TestRetryAndCancel:
    @pytest.mark.asyncio
    async def test_retry_failed_order(self, admin_service, queue, sender, custody, allocated_order, admin_actor):
        from services.fulfillment_errors import SettlementFailure

        order_id = await allocated_order()
        custody.error = SettlementFailure("rejected")
        await sender.send_order(order_id)

        result = await admin_service.retry_order(order_id, admin_actor, reason="provider fixed")

        assert result.outcome == OUTCOME_ALLOCATED
        assert queue.get_order(order_id).status == S.READY_TO_SEND.value

    @pytest.mark.asyncio
    async def test_retry_requires_failed_order(self, admin_service, make_order, admin_actor):
        order = make_order()
        with pytest.raises(InvalidTransition):
            await admin_service.retry_order(order.order_id, admin_actor)

    def test_cancel_requires_reason(self, admin_service, make_order, admin_actor):
        order = make_order()
        with pytest.raises(OrderValidationError):
            admin_service.cancel_order(order.order_id, admin_actor, reason=" ")

    def test_cancel_waiting_order(self, admin_service, make_order, admin_actor):
        order = make_order()
        cancelled = admin_service.cancel_order(order.order_id, admin_actor, reason="duplicate")
        assert cancelled.status == S.CANCELLED.value


class TestForceSend:
    @pytest.mark.asyncio
    async def test_force_send_bypasses_auto_send(self, admin_service, queue, custody, allocated_order, super_admin):
        order_id = await allocated_order()

        outcome = await admin_service.force_send(order_id, super_admin, reason="VIP customer")

        assert outcome.outcome == OUTCOME_SENT
        assert queue.get_order(order_id).status == S.SENT.value
        assert len(custody.sent) == 1

    @pytest.mark.asyncio
    async def test_force_send_bypasses_limits(self, admin_service, queue, make_order, fund_btc, super_admin):
        fund_btc("5")
        order = make_order(usd_value="75000.00")

        outcome = await admin_service.force_send(order.order_id, super_admin, reason="approved by treasury")

        assert outcome.outcome == OUTCOME_SENT
        assert queue.get_order(order.order_id).asset_amount == Decimal("1.50000000")

    @pytest.mark.asyncio
    async def test_force_send_respects_kyc(self, admin_service, queue, kyc_provider, make_order, fund_btc, super_admin):
        fund_btc("1")
        kyc_provider.statuses["cust-1"] = KycStatus.REJECTED.value
        order = make_order()

        with pytest.raises(InvalidTransition):
            await admin_service.force_send(order.order_id, super_admin, reason="override")
        assert queue.get_order(order.order_id).status == S.KYC_PENDING.value

    @pytest.mark.asyncio
    async def test_force_send_respects_pause(self, admin_service, settings_service, allocated_order, super_admin):
        order_id = await allocated_order()
        settings_service.set_setting(keys.PAYOUTS_PAUSED, True, super_admin)

        with pytest.raises(PayoutsPaused):
            await admin_service.force_send(order_id, super_admin, reason="override")

    @pytest.mark.asyncio
    async def test_force_send_rejects_terminal_order(self, admin_service, allocated_order, super_admin):
        order_id = await allocated_order()
        await admin_service.force_send(order_id, super_admin)

        with pytest.raises(InvalidTransition):
            await admin_service.force_send(order_id, super_admin)


class TestSettingsControls:
    def test_pause_and_resume_global(self, admin_service, settings_service, admin_actor):
        admin_service.pause_payouts(admin_actor)
        assert settings_service.load_snapshot().payouts_paused is True

        old, new = admin_service.resume_payouts(admin_actor)

        assert (old, new) == (True, False)
        assert settings_service.load_snapshot().payouts_paused is False

    def test_pause_single_asset(self, admin_service, settings_service, admin_actor):
        admin_service.pause_payouts(admin_actor, asset_type="usdc")
        snapshot = settings_service.load_snapshot()
        assert snapshot.usdc_payouts_paused is True
        assert snapshot.btc_payouts_paused is False
        assert snapshot.is_asset_paused(AssetType.COMPANY_USDC.value)

    def test_set_limit(self, admin_service, settings_service, admin_actor):
        old, new = admin_service.set_limit(keys.DAILY_BTC_LIMIT, "25", admin_actor)

        assert old == Decimal("10")
        assert new == Decimal("25")
        assert settings_service.load_snapshot().daily_btc_limit == Decimal("25")

    def test_set_limit_rejects_non_limit_key(self, admin_service, admin_actor):
        with pytest.raises(SettingValidationError):
            admin_service.set_limit(keys.AUTO_SEND_ENABLED, "true", admin_actor)

    def test_set_limit_rejects_negative(self, admin_service, admin_actor):
        with pytest.raises(SettingValidationError):
            admin_service.set_limit(keys.MAX_TX_BTC_LIMIT, "-1", admin_actor)

    def test_setting_change_is_audited(self, admin_service, admin_actor):
        admin_service.set_setting(keys.AUTO_SEND_ENABLED, "true", admin_actor)
        with managed_session() as session:
            entry = session.query(AuditLog).filter(AuditLog.action == "SETTING_UPDATED").one()
            assert entry.entity_id == keys.AUTO_SEND_ENABLED
            assert entry.previous_state == {"value": "false"}
            assert entry.new_state == {"value": "true"}
            assert entry.actor_id == "admin-1"


class TestAdminIdentities:
    def test_create_and_resolve(self, admin_service):
        user, raw_key = admin_service.create_admin_user("ops-1", AdminRole.SUPER_ADMIN.value)

        assert user.api_key_hash == hash_api_key(raw_key)
        actor = admin_service.resolve_actor(raw_key)
        assert actor.actor_id == "ops-1"
        assert actor.is_super_admin

    def test_unknown_key_resolves_to_none(self, admin_service):
        admin_service.create_admin_user("ops-1", api_key="known-key")
        assert admin_service.resolve_actor("other-key") is None
        assert admin_service.resolve_actor(None) is None

    def test_unknown_role_rejected(self, admin_service):
        with pytest.raises(SettingValidationError):
            admin_service.create_admin_user("ops-2", "owner")


class TestInventoryControls:
    def test_add_and_adjust_lot(self, admin_service, ledger, admin_actor):
        lot = admin_service.add_inventory_lot(admin_actor, BTC, "2", source="exchange_withdraw", reference_id="WD-881")
        admin_service.adjust_inventory_lot(admin_actor, lot.lot_id, "-0.5", reason="fee deduction")

        assert ledger.get_eligible_balance(BTC) == Decimal("1.50000000")

    def test_sales_rep_cannot_add_inventory(self, admin_service, sales_rep):
        with pytest.raises(Forbidden):
            admin_service.add_inventory_lot(sales_rep, BTC, "1")
