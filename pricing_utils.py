"""
Pricing utilities for checkout and wallet crediting
Currency formatting, provider fee calculation and USD conversion
"""

import logging
from typing import Union, Optional
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

Amount = Union[float, int, str, Decimal]


def to_decimal(amount: Optional[Amount]) -> Optional[Decimal]:
    """Convert a numeric value to Decimal without float artifacts (None stays None)"""
    if amount is None or amount == '':
        return None
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")
    # NaN and Infinity parse but cannot be compared or stored
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(amount: Amount, currency: str = "USD", show_currency: bool = True) -> str:
    """
    Format monetary amount for display

    Args:
        amount: Amount to format
        currency: Currency code (default: USD)
        show_currency: Whether to show currency symbol

    Returns:
        str: Formatted money string
    """
    try:
        formatted = f"{quantize_money(to_decimal(amount)):.2f}"

        if show_currency:
            currency_symbols = {
                'USD': '$',
                'EUR': '€',
                'VES': 'Bs. ',
            }

            code = currency.upper()
            if code in currency_symbols:
                return f"{currency_symbols[code]}{formatted}"
            return f"{formatted} {code}"

        return formatted

    except (ValueError, TypeError) as e:
        logger.warning(f"Error formatting money: {e}")
        return str(amount)


def calculate_final_amount(base_amount: Amount, fee_percent: Amount) -> Decimal:
    """
    Add the payment provider fee to a checkout amount

    Args:
        base_amount: Amount before fee (USD)
        fee_percent: Fee percentage, e.g. 3 for 3%

    Returns:
        Decimal: base_amount * (1 + fee/100), rounded to cents

    Raises:
        ValueError: on non-positive amounts or a negative fee
    """
    base = to_decimal(base_amount)
    fee = to_decimal(fee_percent)
    if base is None or base <= 0:
        raise ValueError(f"Amount must be positive, got {base_amount!r}")
    if fee is None or fee < 0:
        raise ValueError(f"Fee must be non-negative, got {fee_percent!r}")

    final = quantize_money(base * (Decimal('1') + fee / Decimal('100')))
    # Rounding can never push the charged amount under the base
    return max(final, quantize_money(base))


def convert_to_usd(amount: Amount, currency: str, exchange_rate: Optional[Amount]) -> Decimal:
    """
    Convert a settlement amount to USD

    Args:
        amount: Amount in `currency`
        currency: Source currency code
        exchange_rate: Units of `currency` per USD (e.g. VES per USD)

    Returns:
        Decimal: USD amount rounded to cents
    """
    value = to_decimal(amount)
    if value is None:
        raise ValueError("Amount is required for conversion")

    if (currency or 'USD').upper() == 'USD':
        return quantize_money(value)

    rate = to_decimal(exchange_rate)
    if rate is None or rate <= 0:
        logger.warning(f"⚠️ No usable exchange rate for {currency} -> USD, using 1.0")
        rate = Decimal('1')

    return quantize_money(value / rate)
