"""
Pricing utilities for event registration orders
Order amount calculation in minor currency units and currency formatting
"""

import logging
from typing import Union, Optional, Tuple, Any, Dict
from decimal import Decimal, ROUND_HALF_UP

logger = logging.getLogger(__name__)

DEFAULT_GST_RATE = Decimal('0.18')

CURRENCY_INR = 'INR'
CURRENCY_USD = 'USD'


def to_decimal(amount: Union[float, int, str, Decimal, None]) -> Decimal:
    """
    Convert a numeric value to Decimal without float artefacts

    Args:
        amount: Amount as float, int, str or Decimal (None means zero)

    Returns:
        Decimal: Exact decimal representation
    """
    if amount is None:
        return Decimal('0')
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        return Decimal(str(amount))
    return Decimal(amount)


def to_minor_units(amount: Union[float, int, Decimal]) -> int:
    """Round a major-unit amount to the nearest minor unit (paise/cents)"""
    minor = (to_decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
    return int(minor)


def from_minor_units(amount: Optional[int]) -> Decimal:
    """Convert minor units back to a two-decimal major-unit amount"""
    if not amount:
        return Decimal('0.00')
    return (Decimal(int(amount)) / 100).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def order_currency(is_overseas: bool) -> str:
    """USD for overseas registrants, INR otherwise"""
    return CURRENCY_USD if is_overseas else CURRENCY_INR


def addon_price(selected_addon: Optional[Dict[str, Any]], is_overseas: bool) -> Decimal:
    """
    Pick the add-on price matching the registrant's currency

    Args:
        selected_addon: Add-on dict with 'price_inr' and 'price_usd' (or None)
        is_overseas: Overseas flag of the registration

    Returns:
        Decimal: Add-on price in major units, zero when no add-on is selected
    """
    if not selected_addon:
        return Decimal('0')
    key = 'price_usd' if is_overseas else 'price_inr'
    return to_decimal(selected_addon.get(key))


def calculate_order_amount(
    registration_fee: Union[float, int, str, Decimal],
    selected_addon: Optional[Dict[str, Any]] = None,
    is_overseas: bool = False,
    gst_rate: Decimal = DEFAULT_GST_RATE,
    staff_order_amount: Optional[int] = None
) -> Tuple[int, str]:
    """
    Calculate the payable order amount for a registration

    Domestic orders carry GST on the fee + add-on subtotal; overseas orders are
    untaxed. The result is rounded to the nearest minor unit. Staff test
    registrations are charged the fixed staff amount instead.

    Args:
        registration_fee: Registration fee in major units
        selected_addon: Optional add-on with domestic/overseas prices
        is_overseas: Overseas flag (selects USD and skips GST)
        gst_rate: Tax rate applied to domestic subtotals
        staff_order_amount: Fixed minor-unit amount for staff registrations

    Returns:
        Tuple[int, str]: (amount in minor units, currency code)
    """
    currency = order_currency(is_overseas)

    if staff_order_amount is not None:
        return int(staff_order_amount), currency

    subtotal = to_decimal(registration_fee) + addon_price(selected_addon, is_overseas)
    if subtotal < 0:
        raise ValueError(f"Order subtotal cannot be negative: {subtotal}")

    total = subtotal if is_overseas else subtotal * (Decimal('1') + to_decimal(gst_rate))
    return to_minor_units(total), currency


def format_money(amount: Union[float, int, Decimal], currency: str = CURRENCY_INR, show_currency: bool = True) -> str:
    """
    Format monetary amount for display

    Args:
        amount: Amount to format (major units)
        currency: Currency code (default: INR)
        show_currency: Whether to show currency symbol

    Returns:
        str: Formatted money string
    """
    rounded_amount = to_decimal(amount).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    formatted = f"{rounded_amount:.2f}"

    if not show_currency:
        return formatted

    currency_symbols = {
        'INR': '₹',
        'USD': '$'
    }
    symbol = currency_symbols.get(currency.upper())
    if symbol:
        return f"{symbol}{formatted}"
    return f"{formatted} {currency.upper()}"


def is_staff_email(email: Optional[str], staff_email_domain: Optional[str]) -> bool:
    """Staff test registrations are recognised by their email domain"""
    if not email or not staff_email_domain:
        return False
    return email.strip().lower().endswith(staff_email_domain.strip().lower())


def price_registration(
    email: str,
    registration_fee: Union[float, int, str, Decimal],
    selected_addon: Optional[Dict[str, Any]],
    is_overseas: bool,
    config: Any
) -> Tuple[int, str]:
    """
    Price a registration with the service's pricing rules

    Used both when the draft is created and when a captured payment is
    verified, so the two always derive the same amount from the same inputs.

    Args:
        email: Registrant email (staff domain selects the fixed staff amount)
        registration_fee: Registration fee in major units
        selected_addon: Optional add-on with domestic/overseas prices
        is_overseas: Overseas flag
        config: FulfillmentConfig with gst_rate, staff_email_domain and staff_order_amount

    Returns:
        Tuple[int, str]: (amount in minor units, currency code)
    """
    staff_amount = config.staff_order_amount if is_staff_email(email, config.staff_email_domain) else None
    return calculate_order_amount(
        registration_fee,
        selected_addon,
        is_overseas,
        gst_rate=config.gst_rate,
        staff_order_amount=staff_amount
    )
