"""
FINANCIAL PRECISION - DECIMAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. PEN/USD conversion for rollups
5. Withholding (detraccion) split and valuation deduction formulas

Rounding happens at the calculation boundary only.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Union
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')

SUPPORTED_CURRENCIES = ("PEN", "USD")

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when financial precision validation fails"""
    pass


class NegativeValueError(FinancialPrecisionError):
    """Raised when a negative financial value is detected"""
    pass


class CurrencyConversionError(FinancialPrecisionError):
    """Raised when an amount cannot be converted between currencies"""
    pass


def to_decimal(value: Optional[Numeric]) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    Missing values (None) count as zero.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise FinancialPrecisionError(f"Invalid numeric string: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Optional[Numeric]) -> Decimal:
    """
    Round a value to 2 decimal places (half-up).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Optional[Numeric]) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    if to_decimal(value) < ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    if to_decimal(value) <= ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_divide(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == ZERO:
        return ZERO
    return to_decimal(numerator) / denom


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return safe_multiply(to_decimal(amount), safe_divide(to_decimal(percentage), HUNDRED))


def convert_currency(
    amount: Numeric,
    from_currency: str,
    to_currency: str,
    exchange_rate: Optional[Numeric]
) -> Decimal:
    """
    Convert an amount between PEN and USD.

    The rate is always expressed as PEN per 1 USD:
    - USD -> PEN multiplies by the rate
    - PEN -> USD multiplies by the inverse of the rate

    Full precision is kept; callers round at their own boundary.
    """
    value = to_decimal(amount)
    if from_currency == to_currency:
        return value

    for code in (from_currency, to_currency):
        if code not in SUPPORTED_CURRENCIES:
            raise CurrencyConversionError(f"Unsupported currency: {code}")

    rate = to_decimal(exchange_rate) if exchange_rate is not None else None
    if rate is None or rate <= ZERO:
        raise CurrencyConversionError(
            f"An exchange rate is required to convert {from_currency} -> {to_currency}"
        )

    if from_currency == "USD":
        return value * rate
    return value * (Decimal('1') / rate)


def split_withholding(gross_amount: Numeric, withholding_pct: Numeric) -> dict:
    """
    Split a gross payment into withholding and net parts.

    LOCKED FORMULAS:
    - withholding_amount = round2(gross * pct / 100)
    - net_amount = gross - withholding_amount

    The net part absorbs the rounding so both parts always add up to gross.
    """
    validate_positive(gross_amount, 'gross_amount')
    validate_positive(withholding_pct, 'withholding_pct')
    if to_decimal(withholding_pct) >= HUNDRED:
        raise FinancialPrecisionError(
            f"Withholding percentage must be below 100: {withholding_pct}"
        )

    gross = round_financial(gross_amount)
    withholding_amount = round_financial(calculate_percentage(gross, withholding_pct))
    net_amount = round_financial(safe_subtract(gross, withholding_amount))

    # Both parts are written as payment rows; neither may round to zero
    if withholding_amount == ZERO or net_amount == ZERO:
        raise FinancialPrecisionError(
            f"Withholding of {withholding_pct}% on {gross} leaves a zero-amount part "
            f"(withholding={withholding_amount}, net={net_amount})"
        )

    return {
        'gross_amount': gross,
        'withholding_amount': withholding_amount,
        'net_amount': net_amount
    }


def calculate_order_totals(
    subtotal: Numeric,
    discount_pct: Numeric,
    tax_pct: Numeric,
    paid: Numeric
) -> dict:
    """
    Calculate Purchase Order derived values with decimal precision.

    LOCKED FORMULAS:
    - discount_amount = subtotal * (discount_pct / 100)
    - tax_amount = (subtotal - discount_amount) * (tax_pct / 100)
    - total = subtotal - discount_amount + tax_amount
    - pending = max(0, total - paid)

    Returns rounded values ready for storage.
    """
    validate_non_negative(discount_pct, 'discount_pct')
    validate_non_negative(tax_pct, 'tax_pct')

    discount_amount = calculate_percentage(subtotal, discount_pct)
    taxable = safe_subtract(subtotal, discount_amount)
    tax_amount = calculate_percentage(taxable, tax_pct)
    total = safe_add(taxable, tax_amount)
    pending = max(ZERO, safe_subtract(round_financial(total), round_financial(paid)))

    return {
        'subtotal': to_float(subtotal),
        'discount_amount': to_float(discount_amount),
        'tax_amount': to_float(tax_amount),
        'total': to_float(total),
        'pending': to_float(pending)
    }


def calculate_valuation_values(
    gross_amount: Numeric,
    discount_pct: Numeric,
    advance_pct: Numeric,
    advance_balance: Numeric,
    tax_pct: Numeric,
    retention_pct: Numeric
) -> dict:
    """
    Calculate Valuation (client progress billing) derived values.

    LOCKED FORMULAS:
    - discount_amount = gross * (discount_pct / 100)
    - advance_amount = min(gross * (advance_pct / 100), advance_balance)
    - subtotal = gross - discount_amount - advance_amount
    - tax_amount = subtotal * (tax_pct / 100)
    - retention_amount = subtotal * (retention_pct / 100)
    - net_amount = subtotal + tax_amount - retention_amount

    The advance is amortized only while the project still holds an
    unamortized advance balance.
    """
    for value, name in (
        (discount_pct, 'discount_pct'),
        (advance_pct, 'advance_pct'),
        (tax_pct, 'tax_pct'),
        (retention_pct, 'retention_pct'),
    ):
        validate_non_negative(value, name)

    gross = to_decimal(gross_amount)
    discount_amount = calculate_percentage(gross, discount_pct)

    balance = max(ZERO, to_decimal(advance_balance))
    advance_amount = min(calculate_percentage(gross, advance_pct), balance)

    subtotal = gross - discount_amount - advance_amount
    tax_amount = calculate_percentage(subtotal, tax_pct)
    retention_amount = calculate_percentage(subtotal, retention_pct)
    net_amount = subtotal + tax_amount - retention_amount

    return {
        'gross_amount': to_float(gross),
        'discount_amount': to_float(discount_amount),
        'advance_amount': to_float(advance_amount),
        'subtotal': to_float(subtotal),
        'tax_amount': to_float(tax_amount),
        'retention_amount': to_float(retention_amount),
        'net_amount': to_float(net_amount)
    }
