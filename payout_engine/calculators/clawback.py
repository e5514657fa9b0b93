"""
Clawback Tracker

Records previously paid booking amounts as owed when a deal goes uncollected
past its due date, and recovers open balances from later booking payouts.
"""

from datetime import timedelta
from decimal import Decimal

from ..models import (
    CLAWBACK_ACTIVE, ClawbackEntry, ClawbackRecovery, CompPlan, Deal, DealCollection,
    DealPayoutLine, ZERO,
)
from .proration import add_months, month_end, month_of


class ClawbackTracker:
    """Detects clawback triggers and applies FIFO recovery."""

    def due_date(self, deal: Deal, collection: DealCollection | None, plan: CompPlan):
        """Milestone due date when known, else booking month end + plan clawback period."""
        if collection is not None and collection.first_milestone_due_date is not None:
            return collection.first_milestone_due_date
        return month_end(deal.month_year) + timedelta(days=plan.clawback_period_days)

    def trigger_month(self, deal: Deal, collection: DealCollection | None, plan: CompPlan) -> str:
        """Month in which the due date passes, never before the month after booking."""
        passed = month_of(self.due_date(deal, collection, plan) + timedelta(days=1))
        return max(passed, add_months(deal.month_year, 1))

    def is_triggered(self, deal: Deal, collection: DealCollection | None, plan: CompPlan,
                     month_year: str) -> bool:
        if plan.is_clawback_exempt:
            return False
        if collection is not None and collection.collected_by(month_end(month_year)):
            return False
        return self.trigger_month(deal, collection, plan) <= month_year

    def detect(self, employee_id: str, plan: CompPlan, paid_lines: list[DealPayoutLine],
               deals: dict[str, Deal], collections: dict[str, DealCollection],
               already_clawed: set[str], run_id: str, month_year: str) -> list[ClawbackEntry]:
        """
        One entry per newly triggered deal, for exactly the clawback-eligible
        booking amount previously paid on it. Exempt plans create nothing.
        """
        if plan.is_clawback_exempt:
            return []

        paid_by_deal: dict[str, Decimal] = {}
        for line in paid_lines:
            if line.deal_id is None or line.clawback_eligible_usd <= 0:
                continue
            paid_by_deal[line.deal_id] = paid_by_deal.get(line.deal_id, ZERO) + line.clawback_eligible_usd

        entries = []
        for deal_id, amount in sorted(paid_by_deal.items()):
            if deal_id in already_clawed or deal_id not in deals:
                continue
            if not self.is_triggered(deals[deal_id], collections.get(deal_id), plan, month_year):
                continue
            entries.append(ClawbackEntry(
                entry_id=f"{run_id}:{employee_id}:{deal_id}",
                employee_id=employee_id,
                deal_id=deal_id,
                payout_run_id=run_id,
                triggered_month=month_year,
                original_amount_usd=amount,
            ))
        return entries

    def recover(self, entries: list[ClawbackEntry], available: Decimal, source_id: str,
                month_year: str, include_active: bool = False) -> dict[str, ClawbackRecovery]:
        """
        Recover open balances oldest first, up to the available amount.

        Entries carried into a departure settlement are skipped unless
        include_active is set (the settlement netting them).
        Recoveries previously made by source_id are ignored so recalculation
        produces the same result.
        """
        recoveries = {}
        if available <= 0:
            return recoveries

        ordered = sorted(entries, key=lambda e: (e.triggered_month, e.entry_id))
        for entry in ordered:
            if entry.status == CLAWBACK_ACTIVE and not include_active:
                continue
            remaining = entry.remaining_excluding(source_id)
            if remaining <= 0:
                continue
            amount = min(remaining, available)
            recoveries[entry.entry_id] = ClawbackRecovery(source_id=source_id, month_year=month_year, amount_usd=amount)
            available -= amount
            if available <= 0:
                break
        return recoveries
