"""
Monetary helpers and FX resolution.

Two rates are carried on every ledger row:
- compensation rate: fixed when the employee was assigned, used for variable pay
- market rate: looked up per month, used for commissions
Rates are expressed as local currency units per 1 USD.
"""

from decimal import ROUND_HALF_UP, Decimal

from ..models import Assignment, Employee, ExchangeRate

ONE = Decimal('1')
HUNDRED = Decimal('100')


def quantize_money(value: Decimal) -> Decimal:
    """Round to 2 decimal places using ROUND_HALF_UP."""
    return value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def quantize_pct(value: Decimal) -> Decimal:
    """Round a percentage to 4 decimal places."""
    return value.quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, pct: Decimal) -> Decimal:
    return amount * pct / HUNDRED


class FxResolver:
    """Resolves compensation and market rates for one month."""

    def __init__(self, exchange_rates: list[ExchangeRate], base_currency: str = "USD"):
        self.base_currency = base_currency
        self._rates = {(r.currency_code, r.month_year): r.rate for r in exchange_rates}

    def market_rate(self, currency: str, month_year: str) -> Decimal | None:
        if currency == self.base_currency:
            return ONE
        return self._rates.get((currency, month_year))

    def compensation_rate(self, employee: Employee, assignment: Assignment | None = None) -> Decimal | None:
        """Assignment rate wins over the employee default; base currency is always 1."""
        if employee.local_currency == self.base_currency:
            return ONE
        if assignment is not None and assignment.compensation_exchange_rate:
            return assignment.compensation_exchange_rate
        return employee.compensation_exchange_rate or None
