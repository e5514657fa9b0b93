"""
Unit Tests for Tranche Splitting and Deal Attribution
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import build_dataset
from payout_engine import InMemoryStore, PayoutRunService
from payout_engine.calculators.attribution import DealAttributionEngine, allocate, latest_closing_arr
from payout_engine.calculators.tranche import TrancheSplitter
from payout_engine.models import ClosingARRActual, CompPlan, Deal, PayoutSplit, TrancheSplit


def _make_split(booking, collection, year_end):
    return PayoutSplit(Decimal(str(booking)), Decimal(str(collection)), Decimal(str(year_end)))


class TestTrancheSplitter:

    @pytest.fixture
    def splitter(self):
        return TrancheSplitter()

    def test_default_metric_split(self, splitter):
        """$60,000 at 70/25/5 = $42,000 / $15,000 / $3,000"""
        result = splitter.split(Decimal("60000"), _make_split(70, 25, 5))

        assert result.booking == Decimal("42000.00")
        assert result.collection == Decimal("15000.00")
        assert result.year_end == Decimal("3000.00")

    def test_year_end_absorbs_rounding(self, splitter):
        """$100.01 at 70/25/5: 70.01 + 25.00 + 5.00 reconciles to the cent."""
        result = splitter.split(Decimal("100.01"), _make_split(70, 25, 5))

        assert result.booking == Decimal("70.01")
        assert result.collection == Decimal("25.00")
        assert result.year_end == Decimal("5.00")
        assert result.booking + result.collection + result.year_end == result.gross

    def test_percentages_need_not_sum_to_100(self, splitter):
        result = splitter.split(Decimal("1000"), _make_split(50, 25, 0))

        assert result.booking == Decimal("500.00")
        assert result.collection == Decimal("250.00")
        assert result.year_end == Decimal("0.00")

    def test_negative_percentage_rejected(self, splitter):
        with pytest.raises(ValueError, match="cannot be negative"):
            splitter.split(Decimal("1000"), _make_split(110, -10, 0))

    def test_combine(self, splitter):
        total = splitter.combine([
            splitter.split(Decimal("100"), _make_split(70, 25, 5)),
            splitter.split(Decimal("200"), _make_split(70, 25, 5)),
        ])
        assert total.gross == Decimal("300.00")
        assert total.booking == Decimal("210.00")


class TestAllocate:

    def test_last_slot_takes_remainder(self):
        parts = allocate(Decimal("100.00"), [Decimal("1"), Decimal("1"), Decimal("1")])

        assert parts == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]

    def test_zero_weights_keep_amount_in_first_slot(self):
        assert allocate(Decimal("10.00"), [Decimal("0"), Decimal("0")]) == [Decimal("10.00"), Decimal("0")]


class TestDealAttribution:

    @pytest.fixture
    def engine(self):
        return DealAttributionEngine()

    @pytest.fixture
    def shared_deal(self):
        return Deal(
            deal_id="D1",
            month_year="2025-01",
            values={"new_software_booking_arr_usd": Decimal("300000")},
            participants={"sales_rep": "E1", "sales_head": "E2", "solution_manager": "E3"},
        )

    def test_every_participant_gets_full_credit(self, engine, shared_deal):
        for employee_id in ("E1", "E2", "E3"):
            actual = engine.achievement_actual("New Software Booking ARR", employee_id, [shared_deal], [],
                                               2025, "2025-01")
            assert actual == Decimal("300000")

    def test_non_participant_gets_nothing(self, engine, shared_deal):
        actual = engine.achievement_actual("New Software Booking ARR", "E9", [shared_deal], [], 2025, "2025-01")
        assert actual == Decimal("0")

    def test_split_reconciles_every_tranche(self, engine):
        amounts = TrancheSplit(gross=Decimal("100.00"), booking=Decimal("70.00"),
                               collection=Decimal("25.00"), year_end=Decimal("5.00"))
        shares = engine.split(amounts, {"D1": Decimal("100000"), "D2": Decimal("200000")})

        assert [s.deal_id for s in shares] == ["D1", "D2"]
        assert shares[0].split.booking == Decimal("23.33")
        assert shares[1].split.booking == Decimal("46.67")
        assert sum(s.split.booking for s in shares) == amounts.booking
        assert sum(s.split.collection for s in shares) == amounts.collection
        assert sum(s.split.year_end for s in shares) == amounts.year_end
        assert sum(s.amount_usd for s in shares) == amounts.gross

    def test_split_without_deals_is_unattributed(self, engine):
        amounts = TrancheSplit(gross=Decimal("50.00"), booking=Decimal("50.00"))
        shares = engine.split(amounts, {})

        assert len(shares) == 1
        assert shares[0].deal_id is None
        assert shares[0].amount_usd == Decimal("50.00")

    def test_clawback_eligible_is_booking_unless_exempt(self, engine):
        share = engine.split(TrancheSplit(gross=Decimal("100"), booking=Decimal("70"), collection=Decimal("30")),
                             {"D1": Decimal("1")})[0]
        plan = CompPlan(plan_id="P", name="P", effective_year=2025)
        exempt = CompPlan(plan_id="X", name="X", effective_year=2025, is_clawback_exempt=True)

        assert engine.clawback_eligible(share, plan) == Decimal("70")
        assert engine.clawback_eligible(share, exempt) == Decimal("0")


class TestClosingArr:
    """Closing ARR is a snapshot: only the latest month counts."""

    @pytest.fixture
    def snapshots(self):
        def snap(month, arr, end):
            return ClosingARRActual(month_year=month, customer_code="C", closing_arr=Decimal(str(arr)),
                                    end_date=date.fromisoformat(end), sales_rep_employee_id="E1")
        return [
            snap("2025-01", 100000, "2026-06-30"),
            snap("2025-02", 80000, "2026-06-30"),
            snap("2025-02", 50000, "2027-01-31"),
            snap("2025-02", 999999, "2025-06-30"),
        ]

    def test_latest_month_rows_are_summed(self, snapshots):
        assert latest_closing_arr(snapshots, "E1", 2025, "2025-03") == Decimal("130000")

    def test_period_limits_latest_month(self, snapshots):
        assert latest_closing_arr(snapshots, "E1", 2025, "2025-01") == Decimal("100000")

    def test_only_credited_employees(self, snapshots):
        assert latest_closing_arr(snapshots, "E2", 2025, "2025-03") == Decimal("0")

    def test_closing_arr_metric_reads_snapshots(self, snapshots):
        actual = DealAttributionEngine().achievement_actual("Closing ARR", "E1", [], snapshots, 2025, "2025-03")
        assert actual == Decimal("130000")


def _calculate_january(data):
    store = InMemoryStore.from_dict(data)
    runs = PayoutRunService(store)
    run = runs.create_run("2025-01")
    runs.calculate_run(run.run_id)
    return store, run


class TestLinearScenario:
    """
    Target $1,000,000, actual $1,200,000, allocation $50,000:
    120% -> $60,000 eligible -> $42,000 / $15,000 / $3,000
    """

    @pytest.fixture
    def calculated(self):
        data = build_dataset(
            deals=[{"deal_id": "D1", "month_year": "2025-01", "new_software_booking_arr_usd": 1200000,
                    "sales_rep_employee_id": "E1"}],
        )
        data["assignments"][0]["target_bonus_usd"] = 50000
        data["performance_targets"][0]["target_value_usd"] = 1000000
        return _calculate_january(data)

    def test_metric_detail(self, calculated):
        store, run = calculated
        detail = store.metric_details_for_run(run.run_id)[0]

        assert detail.achievement_pct == Decimal("120")
        assert detail.allocation_usd == Decimal("50000.00")
        assert detail.this_month_usd == Decimal("60000.00")

    def test_tranches(self, calculated):
        store, run = calculated
        payout = store.payouts_for_run(run.run_id)[0]

        assert payout.payout_type == "Variable Pay"
        assert payout.calculated_amount_usd == Decimal("60000.00")
        assert payout.booking_amount_usd == Decimal("42000.00")
        assert payout.collection_amount_usd == Decimal("15000.00")
        assert payout.year_end_amount_usd == Decimal("3000.00")


class TestSharedDealAttribution:
    """
    D1 ($300,000) names E1 as rep and E2 as head; D2 ($300,000) is E1's alone.
    Both have a $1,200,000 target and $120,000 target bonus.

    E1: $600,000 = 50% -> $60,000, split $30,000 (D1) / $30,000 (D2)
    E2: $300,000 = 25% -> $30,000, all on D1
    """

    @pytest.fixture
    def calculated(self):
        data = build_dataset(
            deals=[
                {"deal_id": "D1", "month_year": "2025-01", "new_software_booking_arr_usd": 300000,
                 "sales_rep_employee_id": "E1", "sales_head_employee_id": "E2"},
                {"deal_id": "D2", "month_year": "2025-01", "new_software_booking_arr_usd": 300000,
                 "sales_rep_employee_id": "E1"},
            ],
        )
        data["employees"].append({"employee_id": "E2", "full_name": "Jordan Lee", "local_currency": "USD",
                                  "date_of_hire": "2025-01-01", "tvp_usd": 200000})
        data["assignments"].append({**data["assignments"][0], "assignment_id": "A2", "employee_id": "E2"})
        data["performance_targets"].append({**data["performance_targets"][0], "employee_id": "E2"})
        return _calculate_january(data)

    def test_each_participant_credited_in_full(self, calculated):
        store, run = calculated
        actuals = {d.employee_id: d.actual_usd for d in store.metric_details_for_run(run.run_id)}

        assert actuals == {"E1": Decimal("600000"), "E2": Decimal("300000")}

    def test_deal_lines(self, calculated):
        store, run = calculated
        lines = {(line.employee_id, line.deal_id): line.amount_usd for line in store.deal_lines_for_run(run.run_id)}

        assert lines == {
            ("E1", "D1"): Decimal("30000.00"),
            ("E1", "D2"): Decimal("30000.00"),
            ("E2", "D1"): Decimal("30000.00"),
        }

    def test_lines_reconcile_to_own_payout(self, calculated):
        store, run = calculated
        lines = store.deal_lines_for_run(run.run_id)

        for payout in store.payouts_for_run(run.run_id):
            own = [line for line in lines if line.employee_id == payout.employee_id]
            assert sum(line.amount_usd for line in own) == payout.calculated_amount_usd
            assert sum(line.booking_usd for line in own) == payout.booking_amount_usd
            assert sum(line.collection_usd for line in own) == payout.collection_amount_usd
            assert sum(line.year_end_usd for line in own) == payout.year_end_amount_usd
