from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """
    Normalizes any numeric input to a 2-place currency Decimal.
    Floats go through str() so 0.1 stays 0.10 instead of its binary expansion.
    """
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc


def monthly_payment(principal: Decimal, annual_rate_percent: Decimal, months: int) -> Decimal:
    """
    Level monthly payment for an amortizing loan.

    Standard annuity formula: P * r * (1 + r)^n / ((1 + r)^n - 1),
    where r is the monthly rate and n the number of months.
    A zero rate degrades to straight division P / n.
    """
    if months <= 0:
        raise ValueError("Loan term must be at least one month")
    principal = Decimal(principal)
    monthly_rate = Decimal(annual_rate_percent) / Decimal(100) / Decimal(12)
    if monthly_rate == 0:
        return to_money(principal / months)
    factor = (1 + monthly_rate) ** months
    return to_money(principal * monthly_rate * factor / (factor - 1))
