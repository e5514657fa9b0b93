"""
Tests for Payout Adjustments

pending -> approved | rejected, approved -> applied into an unlocked month.
"""

from decimal import Decimal

import pytest

from conftest import build_dataset
from payout_engine import AdjustmentService, InMemoryStore, PayoutRunService, PayoutValidationError, RunStateError


@pytest.fixture
def services():
    store = InMemoryStore.from_dict(build_dataset())
    runs = PayoutRunService(store)
    run = runs.create_run("2025-01")
    runs.calculate_run(run.run_id)
    runs.transition_run_status(run.run_id, "approved")
    runs.transition_run_status(run.run_id, "finalized")
    return AdjustmentService(store), runs, store, run


def _create(service, run, amount="500", adjustment_type="correction"):
    return service.create_adjustment(run.run_id, "E1", adjustment_type, amount, "Deal value restated",
                                     requested_by="analyst")


class TestCreateAdjustment:

    def test_snapshot_of_original_amount(self, services):
        service, _, _, run = services
        adjustment = _create(service, run)

        assert adjustment.status == "pending"
        assert adjustment.original_amount_usd == Decimal("30000.00")
        assert adjustment.adjustment_amount_usd == Decimal("500.00")
        assert adjustment.exchange_rate_used == Decimal("1")
        assert adjustment.requested_by == "analyst"

    def test_negative_amount_allowed(self, services):
        service, _, _, run = services
        adjustment = _create(service, run, amount="-250.50", adjustment_type="manual_override")

        assert adjustment.adjustment_amount_usd == Decimal("-250.50")

    def test_requires_finalized_run(self):
        store = InMemoryStore.from_dict(build_dataset())
        run = PayoutRunService(store).create_run("2025-01")

        with pytest.raises(PayoutValidationError) as exc_info:
            _create(AdjustmentService(store), run)
        assert [i.code for i in exc_info.value.issues] == ["run_not_finalized"]

    def test_unknown_employee(self, services):
        service, _, _, run = services

        with pytest.raises(LookupError):
            service.create_adjustment(run.run_id, "E404", "correction", "500", "Fix")


class TestReviewAndApply:

    def test_approve_then_apply(self, services):
        service, _, store, run = services
        adjustment = _create(service, run)
        service.approve_adjustment(adjustment.adjustment_id, "manager")

        payout = service.apply_adjustment(adjustment.adjustment_id, "2025-02", "controller")

        assert payout.payout_type == "Adjustment - correction"
        assert payout.payout_run_id is None
        assert payout.month_year == "2025-02"
        assert payout.calculated_amount_usd == Decimal("500.00")
        assert payout.adjustment_id == adjustment.adjustment_id
        assert store.payouts_for_month("2025-02") == [payout]
        stored = store.get_adjustment(adjustment.adjustment_id)
        assert stored.status == "applied"
        assert stored.applied_to_month == "2025-02"
        assert stored.approved_by == "manager"

    def test_locked_month_untouched(self, services):
        service, _, store, run = services
        adjustment = _create(service, run)
        service.approve_adjustment(adjustment.adjustment_id)
        before = list(store.payouts_for_run(run.run_id))

        with pytest.raises(PayoutValidationError) as exc_info:
            service.apply_adjustment(adjustment.adjustment_id, "2025-01")

        assert exc_info.value.issues[0].code == "month_locked"
        assert store.payouts_for_run(run.run_id) == before
        assert store.get_adjustment(adjustment.adjustment_id).status == "approved"

    def test_rejected_cannot_be_applied(self, services):
        service, _, _, run = services
        adjustment = _create(service, run)
        service.reject_adjustment(adjustment.adjustment_id, "manager")

        with pytest.raises(PayoutValidationError) as exc_info:
            service.apply_adjustment(adjustment.adjustment_id, "2025-02")
        assert exc_info.value.issues[0].code == "adjustment_not_approved"

    def test_pending_cannot_be_applied(self, services):
        service, _, _, run = services
        adjustment = _create(service, run)

        with pytest.raises(PayoutValidationError):
            service.apply_adjustment(adjustment.adjustment_id, "2025-02")

    def test_review_only_once(self, services):
        service, _, _, run = services
        adjustment = _create(service, run)
        service.approve_adjustment(adjustment.adjustment_id)

        with pytest.raises(RunStateError):
            service.reject_adjustment(adjustment.adjustment_id)

    def test_applied_twice_rejected(self, services):
        service, _, _, run = services
        adjustment = _create(service, run)
        service.approve_adjustment(adjustment.adjustment_id)
        service.apply_adjustment(adjustment.adjustment_id, "2025-02")

        with pytest.raises(PayoutValidationError):
            service.apply_adjustment(adjustment.adjustment_id, "2025-03")


class TestDeleteAdjustment:

    def test_delete_pending(self, services):
        service, _, store, run = services
        adjustment = _create(service, run)

        service.delete_adjustment(adjustment.adjustment_id)

        with pytest.raises(LookupError):
            store.get_adjustment(adjustment.adjustment_id)

    def test_cannot_delete_reviewed(self, services):
        service, _, _, run = services
        adjustment = _create(service, run)
        service.approve_adjustment(adjustment.adjustment_id)

        with pytest.raises(RunStateError):
            service.delete_adjustment(adjustment.adjustment_id)


class TestAdjustmentExchangeRate:
    """E2 (INR, assignment rate 83) earned nothing in January; E3 (INR) has no plan or rate."""

    @pytest.fixture
    def services(self):
        data = build_dataset()
        data["employees"] += [
            {"employee_id": "E2", "full_name": "Priya Nair", "local_currency": "INR",
             "date_of_hire": "2025-01-01", "tvp_usd": 60000},
            {"employee_id": "E3", "full_name": "Ravi Shah", "local_currency": "INR",
             "date_of_hire": "2025-01-01", "tvp_usd": 0},
        ]
        data["assignments"].append({
            "assignment_id": "A2", "employee_id": "E2", "plan_id": "P-AE",
            "effective_start_date": "2025-01-01", "effective_end_date": "2025-12-31",
            "target_bonus_usd": 24000, "compensation_exchange_rate": 83,
        })
        data["performance_targets"].append({
            "employee_id": "E2", "metric_name": "New Software Booking ARR",
            "effective_year": 2025, "target_value_usd": 500000,
        })
        data["exchange_rates"] = [{"currency_code": "INR", "month_year": "2025-01", "rate": 84}]
        store = InMemoryStore.from_dict(data)
        runs = PayoutRunService(store)
        run = runs.create_run("2025-01")
        runs.calculate_run(run.run_id)
        runs.transition_run_status(run.run_id, "approved")
        runs.transition_run_status(run.run_id, "finalized")
        return AdjustmentService(store), store, run

    def test_assignment_rate_used_without_payout_rows(self, services):
        """$1,000 x 83 = INR 83,000."""
        service, store, run = services
        assert not [p for p in store.payouts_for_run(run.run_id) if p.employee_id == "E2"]

        adjustment = service.create_adjustment(run.run_id, "E2", "correction", "1000", "Missed deal credit")

        assert adjustment.exchange_rate_used == Decimal("83")
        assert adjustment.adjustment_amount_local == Decimal("83000")

    def test_missing_rate_rejected(self, services):
        service, _, run = services

        with pytest.raises(PayoutValidationError) as exc_info:
            service.create_adjustment(run.run_id, "E3", "correction", "1000", "Referral bonus")
        assert exc_info.value.issues[0].code == "missing_compensation_rate"
