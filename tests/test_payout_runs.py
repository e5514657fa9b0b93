"""
Tests for the Payout Run Lifecycle

Validation, calculation, idempotence, status transitions, failure isolation,
cancellation, clawback recovery and the year-end release.
"""

import threading
from decimal import Decimal

import pytest

from conftest import build_dataset
from payout_engine import EngineConfig, InMemoryStore, PayoutRunService, PayoutValidationError, RunStateError
from payout_engine.models import CLAWBACK_RECOVERING, RUN_APPROVED, RUN_DRAFT, RUN_FINALIZED, RUN_REVIEW

SECOND_EMPLOYEE = {
    "employees": {
        "employee_id": "E2",
        "full_name": "Sam Patel",
        "local_currency": "USD",
        "date_of_hire": "2024-06-01",
        "tvp_usd": 150000,
    },
    "assignments": {
        "assignment_id": "A2",
        "employee_id": "E2",
        "plan_id": "P-AE",
        "effective_start_date": "2025-01-01",
        "effective_end_date": "2025-12-31",
        "target_bonus_usd": 90000,
    },
    "performance_targets": {
        "employee_id": "E2",
        "metric_name": "New Software Booking ARR",
        "effective_year": 2025,
        "target_value_usd": 900000,
    },
}


def _make_service(data=None, config=None):
    store = InMemoryStore.from_dict(data or build_dataset())
    return PayoutRunService(store, config), store


def _with_second_employee(data):
    for key, row in SECOND_EMPLOYEE.items():
        data[key].append(dict(row))
    return data


def _finalize(service, run_id):
    service.transition_run_status(run_id, RUN_APPROVED, "approver")
    return service.transition_run_status(run_id, RUN_FINALIZED, "approver")


def _payouts_by_type(store, run_id, employee_id="E1"):
    return {p.payout_type: p for p in store.payouts_for_run(run_id) if p.employee_id == employee_id}


class TestValidation:

    def test_valid_month(self):
        service, _ = _make_service()
        report = service.validate_run_prerequisites("2025-01")

        assert report.is_valid
        assert report.paid_employee_ids == ["E1"]

    def test_missing_target_is_blocking(self, make_dataset):
        service, _ = _make_service(make_dataset(performance_targets=[]))
        report = service.validate_run_prerequisites("2025-01")

        assert not report.is_valid
        assert [e.code for e in report.errors] == ["missing_performance_target"]

    def test_all_errors_reported_at_once(self, dataset_dict):
        dataset_dict["employees"].append({
            "employee_id": "E2", "full_name": "Sam Patel", "local_currency": "EUR", "tvp_usd": 100000,
        })
        service, _ = _make_service(dataset_dict)
        report = service.validate_run_prerequisites("2025-01")

        codes = {e.code for e in report.errors}
        assert codes == {"missing_plan_assignment", "missing_performance_target", "missing_market_rate"}
        market = next(e for e in report.errors if e.code == "missing_market_rate")
        assert market.details == {"currency": "EUR", "employee_ids": ["E2"]}

    def test_overlapping_assignments_rejected(self, dataset_dict):
        dataset_dict["assignments"].append({
            "assignment_id": "A1b", "employee_id": "E1", "plan_id": "P-AE",
            "effective_start_date": "2025-06-01", "effective_end_date": "2025-12-31", "target_bonus_usd": 1,
        })
        service, _ = _make_service(dataset_dict)
        report = service.validate_run_prerequisites("2025-01")

        assert "overlapping_assignments" in {e.code for e in report.errors}

    def test_employee_without_incentive_is_skipped_with_warning(self, dataset_dict):
        dataset_dict["employees"].append({"employee_id": "E3", "full_name": "Jordan Lee", "tvp_usd": 0})
        service, _ = _make_service(dataset_dict)
        report = service.validate_run_prerequisites("2025-01")

        assert report.is_valid
        assert report.skipped_employee_ids == ["E3"]
        assert [w.code for w in report.warnings] == ["no_incentive_configuration"]

    def test_employee_hired_later_is_not_paid(self, dataset_dict):
        dataset_dict["employees"][0]["date_of_hire"] = "2025-03-01"
        service, _ = _make_service(dataset_dict)
        report = service.validate_run_prerequisites("2025-01")

        assert [e.code for e in report.errors] == ["no_employees"]

    def test_locked_month(self):
        service, _ = _make_service()
        run = service.create_run("2025-01")
        service.calculate_run(run.run_id)
        _finalize(service, run.run_id)

        report = service.validate_run_prerequisites("2025-01")

        assert "month_locked" in {e.code for e in report.errors}

    def test_calculate_blocked_by_validation(self, make_dataset):
        service, store = _make_service(make_dataset(performance_targets=[]))
        run = service.create_run("2025-01")

        with pytest.raises(PayoutValidationError) as exc_info:
            service.calculate_run(run.run_id)

        assert exc_info.value.issues[0].code == "missing_performance_target"
        assert store.get_run(run.run_id).run_status == RUN_DRAFT
        assert store.payouts_for_run(run.run_id) == []


class TestCreateAndDelete:

    def test_one_run_per_month(self):
        service, _ = _make_service()
        service.create_run("2025-01")

        with pytest.raises(RunStateError):
            service.create_run("2025-01")

    def test_month_is_normalized(self):
        service, _ = _make_service()
        run = service.create_run("2025-1")

        assert run.month_year == "2025-01"
        assert run.run_status == RUN_DRAFT

    def test_invalid_month_rejected(self):
        service, _ = _make_service()

        with pytest.raises(PayoutValidationError) as exc_info:
            service.create_run("January")
        assert exc_info.value.issues[0].code == "invalid_month"

    def test_delete_draft_clears_rows(self, dataset_dict):
        service, store = _make_service(dataset_dict)
        run = service.create_run("2025-01")
        service.calculate_run(run.run_id)
        store.get_run(run.run_id).run_status = RUN_DRAFT

        service.delete_run(run.run_id)

        assert store.payouts_for_run(run.run_id) == []
        assert store.run_for_month("2025-01") is None

    def test_delete_non_draft_rejected(self):
        service, _ = _make_service()
        run = service.create_run("2025-01")
        service.calculate_run(run.run_id)

        with pytest.raises(RunStateError):
            service.delete_run(run.run_id)


class TestCalculation:
    """January: $300,000 / $1,200,000 = 25% of a $120,000 bonus = $30,000."""

    @pytest.fixture
    def calculated(self):
        service, store = _make_service()
        run = service.create_run("2025-01")
        result = service.calculate_run(run.run_id, "analyst")
        return service, store, run, result

    def test_variable_pay_row(self, calculated):
        _, store, run, _ = calculated
        payout = _payouts_by_type(store, run.run_id)["Variable Pay"]

        assert payout.calculated_amount_usd == Decimal("30000.00")
        assert payout.booking_amount_usd == Decimal("21000.00")
        assert payout.collection_amount_usd == Decimal("7500.00")
        assert payout.year_end_amount_usd == Decimal("1500.00")
        assert payout.exchange_rate_type == "compensation"

    def test_metric_detail(self, calculated):
        _, store, run, _ = calculated
        detail = store.metric_details_for_run(run.run_id)[0]

        assert detail.achievement_pct == Decimal("25")
        assert detail.ytd_eligible_usd == Decimal("30000.00")
        assert detail.prior_paid_usd == Decimal("0")
        assert detail.this_month_usd == Decimal("30000.00")

    def test_deal_line(self, calculated):
        _, store, run, _ = calculated
        lines = store.deal_lines_for_run(run.run_id)

        assert len(lines) == 1
        assert lines[0].deal_id == "D1"
        assert lines[0].clawback_eligible_usd == Decimal("21000.00")

    def test_run_totals_and_status(self, calculated):
        _, store, run, result = calculated

        assert result.total_employees == 1
        assert result.total_payout_usd == Decimal("30000.00")
        assert result.total_variable_pay_usd == Decimal("30000.00")
        stored = store.get_run(run.run_id)
        assert stored.run_status == RUN_REVIEW
        assert stored.calculated_by == "analyst"
        assert stored.is_calculating is False

    def test_recalculation_is_idempotent(self, calculated):
        service, store, run, _ = calculated
        before = [(p.payout_id, p.calculated_amount_usd) for p in store.payouts_for_run(run.run_id)]

        service.calculate_run(run.run_id)

        after = [(p.payout_id, p.calculated_amount_usd) for p in store.payouts_for_run(run.run_id)]
        assert after == before
        assert len(store.metric_details_for_run(run.run_id)) == 1
        assert len(store.deal_lines_for_run(run.run_id)) == 1

    def test_worker_count_does_not_change_results(self):
        data = _with_second_employee(build_dataset())
        totals = []
        for workers in (1, 4):
            service, _ = _make_service(data, EngineConfig(max_workers=workers))
            run = service.create_run("2025-01")
            totals.append(service.calculate_run(run.run_id).total_payout_usd)

        assert totals[0] == totals[1]


class TestStatusTransitions:

    @pytest.fixture
    def service_and_run(self):
        service, store = _make_service()
        run = service.create_run("2025-01")
        service.calculate_run(run.run_id)
        return service, store, run

    def test_full_lifecycle(self, service_and_run):
        service, _, run = service_and_run
        finalized = _finalize(service, run.run_id)

        assert finalized.run_status == RUN_FINALIZED
        assert finalized.is_locked is True
        assert finalized.approved_by == "approver"
        assert finalized.finalized_at is not None

    def test_cannot_skip_a_step(self, service_and_run):
        service, _, run = service_and_run

        with pytest.raises(RunStateError):
            service.transition_run_status(run.run_id, RUN_FINALIZED)

    def test_cannot_go_backwards(self, service_and_run):
        service, _, run = service_and_run
        service.transition_run_status(run.run_id, RUN_APPROVED)

        with pytest.raises(RunStateError):
            service.transition_run_status(run.run_id, RUN_REVIEW)

    def test_unknown_status(self, service_and_run):
        service, _, run = service_and_run

        with pytest.raises(PayoutValidationError) as exc_info:
            service.transition_run_status(run.run_id, "paid")
        assert exc_info.value.issues[0].code == "invalid_status"

    def test_review_requires_calculation(self):
        service, _ = _make_service()
        run = service.create_run("2025-01")

        with pytest.raises(RunStateError, match="must be calculated"):
            service.transition_run_status(run.run_id, RUN_REVIEW)

    def test_finalized_run_cannot_be_recalculated(self, service_and_run):
        service, store, run = service_and_run
        _finalize(service, run.run_id)

        with pytest.raises(PayoutValidationError):
            service.calculate_run(run.run_id)
        assert len(store.payouts_for_run(run.run_id)) == 1

    def test_approved_run_cannot_be_recalculated(self, service_and_run):
        service, store, run = service_and_run
        service.transition_run_status(run.run_id, RUN_APPROVED)

        with pytest.raises(RunStateError):
            service.calculate_run(run.run_id)

    def test_concurrent_finalize_succeeds_once(self, service_and_run):
        service, _, run = service_and_run
        service.transition_run_status(run.run_id, RUN_APPROVED)
        outcomes = []

        def finalize():
            try:
                service.transition_run_status(run.run_id, RUN_FINALIZED)
                outcomes.append("ok")
            except RunStateError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=finalize) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 4


class TestFailureIsolation:

    def test_failed_employee_does_not_block_others(self, monkeypatch):
        service, store = _make_service(_with_second_employee(build_dataset()))
        run = service.create_run("2025-01")
        original = service.processor.process

        def flaky(ctx):
            if ctx.employee_id == "E2":
                raise RuntimeError("plan data corrupted")
            return original(ctx)

        monkeypatch.setattr(service.processor, "process", flaky)
        result = service.calculate_run(run.run_id)

        assert [f.employee_id for f in result.failures] == ["E2"]
        assert result.failures[0].code == "calculation_failed"
        assert result.is_complete is False
        assert "Variable Pay" in _payouts_by_type(store, run.run_id, "E1")
        assert store.get_run(run.run_id).run_status == RUN_DRAFT

    def test_cancelled_batch_writes_nothing(self):
        service, store = _make_service()
        run = service.create_run("2025-01")
        cancel = threading.Event()
        cancel.set()

        result = service.calculate_run(run.run_id, cancel_event=cancel)

        assert [f.code for f in result.failures] == ["cancelled"]
        assert store.payouts_for_run(run.run_id) == []
        assert store.get_run(run.run_id).is_calculating is False


class TestIncrementalMonths:
    """
    February adds a $150,000 deal: YTD $450,000 = 37.5% = $45,000 eligible,
    $30,000 already paid in January, so February pays $15,000.
    """

    @pytest.fixture
    def february(self, dataset_dict):
        dataset_dict["deals"].append({
            "deal_id": "D2", "month_year": "2025-02", "new_software_booking_arr_usd": 150000,
            "sales_rep_employee_id": "E1",
        })
        dataset_dict["deal_collections"].append({
            "deal_id": "D1", "is_collected": True, "collection_date": "2025-02-10",
        })
        service, store = _make_service(dataset_dict)
        january = service.create_run("2025-01")
        service.calculate_run(january.run_id)
        _finalize(service, january.run_id)
        run = service.create_run("2025-02")
        result = service.calculate_run(run.run_id)
        return service, store, run, result

    def test_pays_only_the_increment(self, february):
        _, store, run, _ = february
        payout = _payouts_by_type(store, run.run_id)["Variable Pay"]
        detail = store.metric_details_for_run(run.run_id)[0]

        assert detail.ytd_eligible_usd == Decimal("45000.00")
        assert detail.prior_paid_usd == Decimal("30000.00")
        assert payout.calculated_amount_usd == Decimal("15000.00")

    def test_increment_spread_over_ytd_deals(self, february):
        _, store, run, _ = february
        lines = {
            line.deal_id: line for line in store.deal_lines_for_run(run.run_id)
            if line.payout_type == "Variable Pay"
        }

        assert lines["D1"].booking_usd == Decimal("7000.00")
        assert lines["D2"].booking_usd == Decimal("3500.00")

    def test_collected_deal_releases_holdback(self, february):
        _, store, run, result = february
        release = _payouts_by_type(store, run.run_id)["Collection Release"]

        assert release.calculated_amount_usd == Decimal("7500.00")
        assert result.total_payout_usd == Decimal("22500.00")
        assert result.total_variable_pay_usd == Decimal("15000.00")

    def test_holdback_released_once(self, february):
        """March releases only D1's $2,500 share of February's collection holdback."""
        service, store, run, _ = february
        _finalize(service, run.run_id)
        march = service.create_run("2025-03")
        service.calculate_run(march.run_id)

        release = _payouts_by_type(store, march.run_id)["Collection Release"]
        assert release.calculated_amount_usd == Decimal("2500.00")


class TestClawbackRecovery:
    """
    D1 misses its Feb 15 milestone uncollected: the $21,000 booking paid in
    January is clawed back against February's $10,500 booking.
    """

    @pytest.fixture
    def february(self, dataset_dict):
        dataset_dict["deals"].append({
            "deal_id": "D2", "month_year": "2025-02", "new_software_booking_arr_usd": 150000,
            "sales_rep_employee_id": "E1",
        })
        dataset_dict["deal_collections"].append({
            "deal_id": "D1", "is_collected": False, "first_milestone_due_date": "2025-02-15",
        })
        service, store = _make_service(dataset_dict)
        january = service.create_run("2025-01")
        service.calculate_run(january.run_id)
        _finalize(service, january.run_id)
        run = service.create_run("2025-02")
        result = service.calculate_run(run.run_id)
        return service, store, run, result

    def test_deduction_row(self, february):
        _, store, run, result = february
        clawback = _payouts_by_type(store, run.run_id)["Clawback"]

        assert clawback.calculated_amount_usd == Decimal("-10500.00")
        assert result.total_clawbacks_usd == Decimal("10500.00")
        assert result.total_payout_usd == Decimal("4500.00")

    def test_ledger_entry(self, february):
        _, store, _, _ = february
        entry = store.clawback_entries_for("E1")[0]

        assert entry.deal_id == "D1"
        assert entry.original_amount_usd == Decimal("21000.00")
        assert entry.recovered_amount_usd == Decimal("10500.00")
        assert entry.status == CLAWBACK_RECOVERING

    def test_recalculation_does_not_double_recover(self, february):
        service, store, run, _ = february
        service.calculate_run(run.run_id)

        entries = store.clawback_entries_for("E1")
        assert len(entries) == 1
        assert entries[0].recovered_amount_usd == Decimal("10500.00")

    def test_exempt_plan_has_no_clawback(self, dataset_dict):
        dataset_dict["plans"][0]["is_clawback_exempt"] = True
        dataset_dict["deal_collections"].append({
            "deal_id": "D1", "is_collected": False, "first_milestone_due_date": "2025-02-15",
        })
        service, store = _make_service(dataset_dict)
        january = service.create_run("2025-01")
        service.calculate_run(january.run_id)
        _finalize(service, january.run_id)
        run = service.create_run("2025-02")
        service.calculate_run(run.run_id)

        assert store.clawback_entries_for("E1") == []
        assert "Clawback" not in _payouts_by_type(store, run.run_id)


class TestYearEndRelease:

    @pytest.fixture
    def finalized_january(self):
        service, store = _make_service()
        run = service.create_run("2025-01")
        service.calculate_run(run.run_id)
        _finalize(service, run.run_id)
        return service, store

    def test_releases_holdbacks(self, finalized_january):
        service, store = finalized_january
        summary = service.release_year_end(2025, "2025-12", "controller")

        assert summary["employees_released"] == 1
        assert summary["total_released_usd"] == Decimal("1500.00")
        rows = store.payouts_for_month("2025-12")
        assert [r.payout_type for r in rows] == ["Year-End Release"]
        assert rows[0].payout_run_id is None

    def test_released_only_once(self, finalized_january):
        service, _ = finalized_january
        service.release_year_end(2025, "2025-12")
        summary = service.release_year_end(2025, "2025-12")

        assert summary["employees_released"] == 0
        assert summary["total_released_usd"] == Decimal("0")

    def test_locked_target_month_rejected(self, finalized_january):
        service, _ = finalized_january

        with pytest.raises(PayoutValidationError) as exc_info:
            service.release_year_end(2025, "2025-01")
        assert exc_info.value.issues[0].code == "month_locked"
