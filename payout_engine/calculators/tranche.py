"""
Tranche Splitter

Splits a gross amount into booking / collection / year-end portions.
"""

from decimal import Decimal

from ..models import PayoutSplit, TrancheSplit
from .rates import HUNDRED, percent_of, quantize_money


class TrancheSplitter:
    """Applies each split percentage independently to the gross amount."""

    def split(self, gross: Decimal, split: PayoutSplit) -> TrancheSplit:
        """
        Each percentage must be >= 0; the sum is not enforced.

        When the percentages sum to exactly 100 the year-end portion takes the
        rounding remainder, so the three portions add up to the gross to the cent.
        """
        for name, pct in (("booking", split.booking_pct),
                          ("collection", split.collection_pct),
                          ("year_end", split.year_end_pct)):
            if pct < 0:
                raise ValueError(f"{name} split percentage cannot be negative, got: {pct}")

        gross = quantize_money(gross)
        booking = quantize_money(percent_of(gross, split.booking_pct))
        collection = quantize_money(percent_of(gross, split.collection_pct))
        if split.booking_pct + split.collection_pct + split.year_end_pct == HUNDRED:
            year_end = gross - booking - collection
        else:
            year_end = quantize_money(percent_of(gross, split.year_end_pct))

        return TrancheSplit(gross=gross, booking=booking, collection=collection, year_end=year_end)

    @staticmethod
    def combine(parts: list[TrancheSplit]) -> TrancheSplit:
        total = TrancheSplit()
        for part in parts:
            total.gross += part.gross
            total.booking += part.booking
            total.collection += part.collection
            total.year_end += part.year_end
        return total
