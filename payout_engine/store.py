"""
In-memory backing store.

Holds master data and the payout ledgers. Every mutation happens under one
re-entrant lock; writes for a single (run, employee) pair are additionally
serialized by a per-pair lock so clear-then-recompute stays atomic while other
employees are written concurrently.
"""

import copy
import itertools
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from .models import (
    RUN_APPROVED, RUN_DRAFT, RUN_FINALIZED, RUN_REVIEW, ClawbackEntry, DealPayoutLine, Employee,
    EmployeePayoutResult, FnFSettlement, MonthlyPayout, PayoutAdjustment, PayoutDataset, PayoutMetricDetail,
    PayoutRun,
)
from .validators import RunStateError

logger = logging.getLogger(__name__)

# Status -> (timestamp field, actor field) stamped on entry to that status
STATUS_STAMPS = {
    RUN_REVIEW: ("reviewed_at", "reviewed_by"),
    RUN_APPROVED: ("approved_at", "approved_by"),
    RUN_FINALIZED: ("finalized_at", "finalized_by"),
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStore:
    """Thread-safe store used by the services, the Flask app and the Lambda handler."""

    def __init__(self, dataset: PayoutDataset | None = None):
        self.dataset = dataset or PayoutDataset()
        self.runs: dict[str, PayoutRun] = {}
        self.payouts: list[MonthlyPayout] = []
        self.metric_details: list[PayoutMetricDetail] = []
        self.deal_lines: list[DealPayoutLine] = []
        self.clawbacks: dict[str, ClawbackEntry] = {}
        self.adjustments: dict[str, PayoutAdjustment] = {}
        self.settlements: dict[str, FnFSettlement] = {}
        self._lock = threading.RLock()
        self._pair_locks: dict[tuple[str, str], threading.Lock] = {}
        self._ids = itertools.count(1)

    @classmethod
    def from_dict(cls, data: dict) -> "InMemoryStore":
        return cls(PayoutDataset.from_dict(data))

    def next_id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}-{next(self._ids):06d}"

    # =========================================================================
    # MASTER DATA
    # =========================================================================

    def load_dataset(self, scope: Callable[[Employee], bool] | None = None) -> PayoutDataset:
        """
        Snapshot of master data for one calculation.

        scope restricts which employees the caller may see; None means all.
        """
        with self._lock:
            dataset = copy.copy(self.dataset)
            if scope is not None:
                dataset.employees = {k: e for k, e in self.dataset.employees.items() if scope(e)}
            else:
                dataset.employees = dict(self.dataset.employees)
            return dataset

    def get_employee(self, employee_id: str) -> Employee:
        with self._lock:
            employee = self.dataset.employees.get(employee_id)
        if employee is None:
            raise LookupError(f"Employee not found: {employee_id}")
        return employee

    # =========================================================================
    # PAYOUT RUNS
    # =========================================================================

    def create_run(self, month_year: str, notes: str | None = None) -> PayoutRun:
        with self._lock:
            existing = self.run_for_month(month_year)
            if existing is not None:
                raise RunStateError(f"A payout run already exists for {month_year}: {existing.run_id}")
            run = PayoutRun(run_id=self.next_id("run"), month_year=month_year, notes=notes)
            self.runs[run.run_id] = run
            return run

    def get_run(self, run_id: str) -> PayoutRun:
        with self._lock:
            run = self.runs.get(run_id)
        if run is None:
            raise LookupError(f"Payout run not found: {run_id}")
        return run

    def run_for_month(self, month_year: str) -> PayoutRun | None:
        with self._lock:
            for run in self.runs.values():
                if run.month_year == month_year:
                    return run
            return None

    def compare_and_set_status(self, run_id: str, expected: str, new_status: str, actor: str | None) -> PayoutRun:
        """Atomically move a run from expected to new_status, stamping who and when."""
        with self._lock:
            run = self.get_run(run_id)
            if run.is_calculating:
                raise RunStateError(f"Run {run_id} is being calculated")
            if run.run_status != expected:
                raise RunStateError(
                    f"Run {run_id} is {run.run_status}, expected {expected}"
                )
            run.run_status = new_status
            at_field, by_field = STATUS_STAMPS[new_status]
            setattr(run, at_field, utc_now())
            setattr(run, by_field, actor)
            if new_status == RUN_FINALIZED:
                run.is_locked = True
            return run

    def begin_calculation(self, run_id: str) -> PayoutRun:
        """Claim a run for calculation; only one calculation per run at a time."""
        with self._lock:
            run = self.get_run(run_id)
            if run.is_locked:
                raise RunStateError(f"Run {run_id} is locked")
            if run.run_status not in (RUN_DRAFT, RUN_REVIEW):
                raise RunStateError(f"Run {run_id} cannot be calculated in status {run.run_status}")
            if run.is_calculating:
                raise RunStateError(f"Run {run_id} is already being calculated")
            run.is_calculating = True
            return run

    def finish_calculation(self, run_id: str, totals: dict, actor: str | None, advance: bool) -> PayoutRun:
        with self._lock:
            run = self.get_run(run_id)
            for name, value in totals.items():
                setattr(run, name, value)
            run.calculated_at = utc_now()
            run.calculated_by = actor
            if advance and run.run_status == RUN_DRAFT:
                run.run_status = RUN_REVIEW
            run.is_calculating = False
            return run

    def abort_calculation(self, run_id: str) -> None:
        with self._lock:
            self.get_run(run_id).is_calculating = False

    def delete_run(self, run_id: str) -> None:
        with self._lock:
            run = self.get_run(run_id)
            if run.run_status != RUN_DRAFT or run.is_calculating:
                raise RunStateError(f"Only draft runs can be deleted; {run_id} is {run.run_status}")
            rows = [*self.payouts, *self.metric_details, *self.deal_lines, *self.clawbacks.values()]
            for employee_id in {row.employee_id for row in rows if row.payout_run_id == run_id}:
                self._clear_pair(run_id, employee_id)
            del self.runs[run_id]

    # =========================================================================
    # RUN RESULTS
    # =========================================================================

    def pair_lock(self, run_id: str, employee_id: str) -> threading.Lock:
        with self._lock:
            return self._pair_locks.setdefault((run_id, employee_id), threading.Lock())

    def replace_employee_results(self, run_id: str, result: EmployeePayoutResult) -> None:
        """Clear every row the run wrote for this employee, then write the new set."""
        with self.pair_lock(run_id, result.employee_id), self._lock:
            self._clear_pair(run_id, result.employee_id)
            self.payouts.extend(result.payouts)
            self.metric_details.extend(result.metric_details)
            self.deal_lines.extend(result.deal_lines)
            for entry in result.clawback_entries:
                self.clawbacks[entry.entry_id] = entry
            for entry_id, recovery in result.recoveries.items():
                entry = self.clawbacks[entry_id]
                entry.recoveries.append(recovery)
                entry.refresh_status()

    def clear_employee_results(self, run_id: str, employee_id: str) -> None:
        with self.pair_lock(run_id, employee_id), self._lock:
            self._clear_pair(run_id, employee_id)

    def _clear_pair(self, run_id: str, employee_id: str) -> None:
        def keep(row) -> bool:
            return not (row.payout_run_id == run_id and row.employee_id == employee_id)

        self.payouts = [p for p in self.payouts if keep(p)]
        self.metric_details = [d for d in self.metric_details if keep(d)]
        self.deal_lines = [line for line in self.deal_lines if keep(line)]
        for entry_id in [k for k, e in self.clawbacks.items() if not keep(e)]:
            del self.clawbacks[entry_id]
        for entry in self.clawbacks.values():
            if entry.employee_id != employee_id:
                continue
            before = len(entry.recoveries)
            entry.recoveries = [r for r in entry.recoveries if r.source_id != run_id]
            if len(entry.recoveries) != before:
                entry.refresh_status()

    def employees_with_results(self, run_id: str) -> set[str]:
        with self._lock:
            rows = [*self.payouts, *self.metric_details, *self.clawbacks.values()]
            return {row.employee_id for row in rows if row.payout_run_id == run_id}

    def payouts_for_run(self, run_id: str) -> list[MonthlyPayout]:
        with self._lock:
            return [p for p in self.payouts if p.payout_run_id == run_id]

    def payouts_for_month(self, month_year: str) -> list[MonthlyPayout]:
        """Run rows for the month plus run-less rows (releases, adjustments) dated to it."""
        with self._lock:
            run = self.run_for_month(month_year)
            run_id = run.run_id if run else None
            return [
                p for p in self.payouts
                if (run_id is not None and p.payout_run_id == run_id)
                or (p.payout_run_id is None and p.month_year == month_year)
            ]

    def metric_details_for_run(self, run_id: str) -> list[PayoutMetricDetail]:
        with self._lock:
            return [d for d in self.metric_details if d.payout_run_id == run_id]

    def deal_lines_for_run(self, run_id: str) -> list[DealPayoutLine]:
        with self._lock:
            return [line for line in self.deal_lines if line.payout_run_id == run_id]

    def _finalized_run_ids(self) -> set[str]:
        return {r.run_id for r in self.runs.values() if r.run_status == RUN_FINALIZED}

    def finalized_lines(self, employee_id: str, before_month: str | None = None) -> list[DealPayoutLine]:
        """Deal lines written by finalized runs, optionally only for earlier months."""
        with self._lock:
            finalized = self._finalized_run_ids()
            return [
                line for line in self.deal_lines
                if line.employee_id == employee_id
                and line.payout_run_id in finalized
                and line.source_line_id is None
                and (before_month is None or line.month_year < before_month)
            ]

    def finalized_metric_details(self, employee_id: str, fiscal_year: int,
                                 before_month: str) -> list[PayoutMetricDetail]:
        with self._lock:
            finalized = self._finalized_run_ids()
            return [
                d for d in self.metric_details
                if d.employee_id == employee_id
                and d.payout_run_id in finalized
                and d.month_year.startswith(f"{fiscal_year:04d}-")
                and d.month_year < before_month
            ]

    def finalized_payouts(self, employee_id: str, fiscal_year: int, before_month: str,
                          payout_type: str) -> list[MonthlyPayout]:
        with self._lock:
            finalized = self._finalized_run_ids()
            return [
                p for p in self.payouts
                if p.employee_id == employee_id
                and p.payout_run_id in finalized
                and p.payout_type == payout_type
                and p.month_year.startswith(f"{fiscal_year:04d}-")
                and p.month_year < before_month
            ]

    def released_line_ids(self, payout_types: tuple[str, ...], employee_id: str,
                          exclude_run_id: str | None = None) -> set[str]:
        """Source lines already released (or forfeited) outside exclude_run_id."""
        with self._lock:
            return {
                line.source_line_id for line in self.deal_lines
                if line.source_line_id is not None
                and line.employee_id == employee_id
                and line.payout_type in payout_types
                and (exclude_run_id is None or line.payout_run_id != exclude_run_id)
            }

    def add_runless_rows(self, payouts: list[MonthlyPayout], lines: list[DealPayoutLine]) -> None:
        with self._lock:
            self.payouts.extend(payouts)
            self.deal_lines.extend(lines)

    # =========================================================================
    # CLAWBACK LEDGER
    # =========================================================================

    def clawback_entries_for(self, employee_id: str, exclude_run_id: str | None = None) -> list[ClawbackEntry]:
        """Entries for an employee, leaving out those triggered by exclude_run_id."""
        with self._lock:
            return [
                copy.deepcopy(e) for e in self.clawbacks.values()
                if e.employee_id == employee_id and e.payout_run_id != exclude_run_id
            ]

    def update_clawback(self, entry: ClawbackEntry) -> None:
        with self._lock:
            if entry.entry_id not in self.clawbacks:
                raise LookupError(f"Clawback entry not found: {entry.entry_id}")
            self.clawbacks[entry.entry_id] = entry

    # =========================================================================
    # ADJUSTMENTS AND SETTLEMENTS
    # =========================================================================

    def save_adjustment(self, adjustment: PayoutAdjustment) -> None:
        with self._lock:
            self.adjustments[adjustment.adjustment_id] = adjustment

    def get_adjustment(self, adjustment_id: str) -> PayoutAdjustment:
        with self._lock:
            adjustment = self.adjustments.get(adjustment_id)
        if adjustment is None:
            raise LookupError(f"Adjustment not found: {adjustment_id}")
        return adjustment

    def delete_adjustment(self, adjustment_id: str) -> None:
        with self._lock:
            self.get_adjustment(adjustment_id)
            del self.adjustments[adjustment_id]

    def save_settlement(self, settlement: FnFSettlement) -> None:
        with self._lock:
            self.settlements[settlement.settlement_id] = settlement

    def settled_employees(self) -> dict[str, str]:
        """employee_id -> departure month for every employee with a settlement."""
        with self._lock:
            return {s.employee_id: s.departure_date.strftime("%Y-%m") for s in self.settlements.values()}

    def settlement_for_employee(self, employee_id: str) -> FnFSettlement | None:
        with self._lock:
            for settlement in self.settlements.values():
                if settlement.employee_id == employee_id:
                    return settlement
            return None

    def get_settlement(self, settlement_id: str) -> FnFSettlement:
        with self._lock:
            settlement = self.settlements.get(settlement_id)
        if settlement is None:
            raise LookupError(f"Settlement not found: {settlement_id}")
        return settlement

    @property
    def lock(self) -> threading.RLock:
        return self._lock
