"""
Treasury Reconciliation Tests
"""

from decimal import Decimal

import pytest

from database import managed_session
from models import AssetType, AuditLog, ReconciliationStatus
from services import system_settings as keys
from services.fulfillment_errors import (
    Forbidden, ReconciliationNotFound, ReconciliationStateError,
)
from services.reconciliation_engine import classify_discrepancy

BTC = AssetType.BTC.value
USDC = AssetType.USDC.value


class TestClassification:
    def test_within_tolerance_matches(self):
        assert classify_discrepancy(Decimal("0.5"), Decimal("1")) == ReconciliationStatus.MATCHED.value
        assert classify_discrepancy(Decimal("0"), Decimal("0")) == ReconciliationStatus.MATCHED.value

    def test_beyond_tolerance_is_discrepancy(self):
        assert classify_discrepancy(Decimal("0.0001"), Decimal("0")) == ReconciliationStatus.DISCREPANCY.value


class TestRecordReconciliation:
    def test_tiny_shortfall_is_flagged(self, reconciliation, ledger):
        ledger.add_lot(BTC, "100")

        record = reconciliation.record_reconciliation(BTC, "99.9999")

        assert record.status == ReconciliationStatus.DISCREPANCY.value
        assert record.database_balance == Decimal("100.00000000")
        assert record.onchain_balance == Decimal("99.99990000")
        assert record.discrepancy == Decimal("-0.00010000")
        assert record.discrepancy_pct > 0

    def test_exact_match(self, reconciliation, ledger):
        ledger.add_lot(BTC, "2.5")

        record = reconciliation.record_reconciliation(BTC, "2.5")

        assert record.status == ReconciliationStatus.MATCHED.value
        assert record.discrepancy == Decimal("0")

    def test_ledger_balance_counts_reserved_inventory(self, reconciliation, ledger):
        ledger.add_lot(BTC, "1")
        ledger.reserve(BTC, "0.4")

        record = reconciliation.record_reconciliation(BTC, "1")

        assert record.status == ReconciliationStatus.MATCHED.value

    def test_tolerance_setting_is_honoured(self, reconciliation, ledger, settings_service, admin_actor):
        ledger.add_lot(BTC, "100")
        settings_service.set_setting(keys.RECONCILIATION_TOLERANCE_PCT, "0.01", admin_actor)

        record = reconciliation.record_reconciliation(BTC, "99.995")

        assert record.status == ReconciliationStatus.MATCHED.value
        assert record.tolerance_pct == Decimal("0.01")

    def test_negative_onchain_balance_rejected(self, reconciliation):
        with pytest.raises(ReconciliationStateError):
            reconciliation.record_reconciliation(BTC, "-1")

    def test_record_writes_audit_entry(self, reconciliation, ledger, admin_actor):
        ledger.add_lot(BTC, "1")
        record = reconciliation.record_reconciliation(BTC, "0.9", actor=admin_actor, notes="monthly close")

        assert record.created_by_admin_id == "admin-1"
        assert record.notes == "monthly close"
        with managed_session() as session:
            entry = session.query(AuditLog).filter(AuditLog.entity_id == record.reconciliation_id).one()
            assert entry.action == "RECONCILIATION_RECORDED"
            assert entry.new_state["status"] == ReconciliationStatus.DISCREPANCY.value

    def test_reconciliation_never_touches_ledger(self, reconciliation, ledger):
        ledger.add_lot(BTC, "1")
        reconciliation.record_reconciliation(BTC, "5")

        assert ledger.get_ledger_balance(BTC) == Decimal("1.00000000")
        assert ledger.get_eligible_balance(BTC) == Decimal("1.00000000")


class TestResolveDiscrepancy:
    def test_admin_resolves_with_notes(self, reconciliation, ledger, admin_actor):
        ledger.add_lot(BTC, "1")
        record = reconciliation.record_reconciliation(BTC, "0.5")

        resolved = reconciliation.resolve_discrepancy(record.reconciliation_id, "Pending deposit landed", admin_actor)

        assert resolved.status == ReconciliationStatus.RESOLVED.value
        assert resolved.resolved_by_admin_id == "admin-1"
        assert resolved.resolution_notes == "Pending deposit landed"
        assert resolved.resolved_at is not None

    def test_notes_required(self, reconciliation, ledger, admin_actor):
        ledger.add_lot(BTC, "1")
        record = reconciliation.record_reconciliation(BTC, "0.5")

        with pytest.raises(ReconciliationStateError):
            reconciliation.resolve_discrepancy(record.reconciliation_id, "   ", admin_actor)

    def test_matched_record_cannot_be_resolved(self, reconciliation, ledger, admin_actor):
        ledger.add_lot(BTC, "1")
        record = reconciliation.record_reconciliation(BTC, "1")

        with pytest.raises(ReconciliationStateError):
            reconciliation.resolve_discrepancy(record.reconciliation_id, "nothing to do", admin_actor)

    def test_resolved_record_is_final(self, reconciliation, ledger, admin_actor):
        ledger.add_lot(BTC, "1")
        record = reconciliation.record_reconciliation(BTC, "0.5")
        reconciliation.resolve_discrepancy(record.reconciliation_id, "explained", admin_actor)

        with pytest.raises(ReconciliationStateError):
            reconciliation.resolve_discrepancy(record.reconciliation_id, "again", admin_actor)

    def test_system_actor_cannot_resolve(self, reconciliation, ledger):
        from services.actors import SYSTEM_ACTOR

        ledger.add_lot(BTC, "1")
        record = reconciliation.record_reconciliation(BTC, "0.5")

        with pytest.raises(Forbidden):
            reconciliation.resolve_discrepancy(record.reconciliation_id, "auto", SYSTEM_ACTOR)

    def test_unknown_record(self, reconciliation, admin_actor):
        with pytest.raises(ReconciliationNotFound):
            reconciliation.resolve_discrepancy("REC_MISSING", "notes", admin_actor)


class TestCustodyReconciliation:
    @pytest.mark.asyncio
    async def test_reconcile_from_custody(self, reconciliation, ledger, custody):
        ledger.add_lot(BTC, "1")
        custody.balances[BTC] = Decimal("1")

        results = await reconciliation.reconcile_from_custody(assets=[BTC, USDC])

        assert results[BTC]["status"] == ReconciliationStatus.MATCHED.value
        assert results[USDC]["status"] == "error"
        assert len(reconciliation.list_records()) == 1

    @pytest.mark.asyncio
    async def test_latest_by_asset(self, reconciliation, ledger, custody):
        ledger.add_lot(BTC, "1")
        custody.balances[BTC] = Decimal("1")
        await reconciliation.reconcile_from_custody(assets=[BTC])
        custody.balances[BTC] = Decimal("0.5")
        await reconciliation.reconcile_from_custody(assets=[BTC])

        latest = reconciliation.latest_by_asset()

        assert latest[BTC].status == ReconciliationStatus.DISCREPANCY.value
        assert len(reconciliation.list_records(status=ReconciliationStatus.DISCREPANCY.value)) == 1
