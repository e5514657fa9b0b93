"""
Pro-ration Calculator

Scales target bonuses by the fraction of the fiscal year an assignment was
active, and blends multiple assignment segments held in one year.
"""

import calendar
from datetime import date
from decimal import Decimal

from ..models import Assignment, Employee, ProRationResult, ZERO


def month_start(month_year: str) -> date:
    year, month = (int(part) for part in month_year.split("-")[:2])
    return date(year, month, 1)


def month_end(month_year: str) -> date:
    start = month_start(month_year)
    return date(start.year, start.month, calendar.monthrange(start.year, start.month)[1])


def month_of(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def add_months(month_year: str, count: int) -> str:
    start = month_start(month_year)
    index = start.year * 12 + (start.month - 1) + count
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def fiscal_year_of(month_year: str) -> int:
    return int(month_year[:4])


def fiscal_year_bounds(year: int) -> tuple[date, date]:
    return date(year, 1, 1), date(year, 12, 31)


def overlap_days(start_a: date, end_a: date, start_b: date, end_b: date) -> int:
    """Inclusive day count shared by two date ranges, 0 when disjoint."""
    start = max(start_a, start_b)
    end = min(end_a, end_b)
    if end < start:
        return 0
    return (end - start).days + 1


def find_overlapping_segments(segments: list[Assignment]) -> list[tuple[Assignment, Assignment]]:
    """Pairs of assignment segments for one employee whose date ranges intersect."""
    ordered = sorted(segments, key=lambda a: a.effective_start_date)
    overlaps = []
    for i, first in enumerate(ordered):
        for second in ordered[i + 1:]:
            if second.effective_start_date > first.effective_end_date:
                break
            overlaps.append((first, second))
    return overlaps


class ProRationCalculator:
    """Computes blended, pro-rated target bonus for an employee's fiscal year."""

    def segment_factor(self, segment: Assignment, employee: Employee, fiscal_year: int,
                       as_of: date | None = None) -> Decimal:
        """
        Factor = days the segment overlaps both the fiscal year and the
        employee's tenure window, divided by the days in the fiscal year.

        as_of cuts the tenure window early (used by departure settlements).
        """
        year_start, year_end = fiscal_year_bounds(fiscal_year)
        tenure_start = employee.date_of_hire or year_start
        tenure_end = employee.departure_date or year_end
        if as_of is not None:
            tenure_end = min(tenure_end, as_of)

        start = max(segment.effective_start_date, year_start, tenure_start)
        end = min(segment.effective_end_date, year_end, tenure_end)
        active_days = overlap_days(start, end, year_start, year_end)
        days_in_year = (year_end - year_start).days + 1
        return Decimal(active_days) / Decimal(days_in_year)

    def calculate(self, segments: list[Assignment], employee: Employee, fiscal_year: int,
                  as_of: date | None = None) -> ProRationResult:
        """
        Blend every segment's target bonus by its factor.

        Raises ValueError on overlapping segments.
        """
        overlaps = find_overlapping_segments(segments)
        if overlaps:
            first, second = overlaps[0]
            raise ValueError(
                f"Overlapping assignments for {employee.employee_id}: "
                f"{first.assignment_id} and {second.assignment_id}"
            )

        effective = ZERO
        total_factor = ZERO
        annual = ZERO
        contributing = 0
        for segment in segments:
            factor = self.segment_factor(segment, employee, fiscal_year, as_of)
            if factor <= 0:
                continue
            effective += segment.target_bonus_usd * factor
            total_factor += factor
            annual = max(annual, segment.target_bonus_usd)
            contributing += 1

        return ProRationResult(
            annual_target_bonus_usd=annual,
            effective_target_bonus_usd=effective,
            pro_ration_factor=total_factor,
            is_blended=contributing > 1,
        )
