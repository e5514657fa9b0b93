"""
Holdback Release

Decides which held collection and year-end portions become payable.
"""

from datetime import timedelta

from ..models import DealCollection, DealPayoutLine
from .proration import add_months, month_end


class ReleaseCalculator:
    """Selects collection and year-end holdbacks to release."""

    def __init__(self, collection_grace_days: int = 90):
        self.collection_grace_days = collection_grace_days

    def collection_due(self, line: DealPayoutLine, collection: DealCollection | None,
                       month_year: str) -> bool:
        """
        A collection holdback is released from the month after booking, once
        the deal is collected or the grace period after booking month end ends.
        """
        if month_year < add_months(line.month_year, 1):
            return False
        cutoff = month_end(month_year)
        if collection is not None and collection.collected_by(cutoff):
            return True
        return month_end(line.month_year) + timedelta(days=self.collection_grace_days) <= cutoff

    def collection_releases(self, lines: list[DealPayoutLine], collections: dict[str, DealCollection],
                            released: set[str], clawed_deals: set[str],
                            month_year: str) -> list[DealPayoutLine]:
        """Unreleased lines with a collection amount that are due this month."""
        due = []
        for line in lines:
            if line.collection_usd <= 0 or line.line_id in released:
                continue
            if line.deal_id is not None and line.deal_id in clawed_deals:
                continue
            collection = collections.get(line.deal_id) if line.deal_id else None
            if self.collection_due(line, collection, month_year):
                due.append(line)
        return due

    @staticmethod
    def year_end_releases(lines: list[DealPayoutLine], released: set[str],
                          fiscal_year: int) -> list[DealPayoutLine]:
        return [
            line for line in lines
            if line.year_end_usd > 0
            and line.line_id not in released
            and int(line.month_year[:4]) == fiscal_year
        ]
