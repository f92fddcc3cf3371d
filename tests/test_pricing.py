"""
Order Pricing Tests
Tests for minor-unit order amounts, GST, currency selection and staff pricing
"""

import pytest
from decimal import Decimal

from app_config import FulfillmentConfig
from pricing_utils import (
    calculate_order_amount, price_registration, to_minor_units, from_minor_units,
    format_money, is_staff_email, addon_price
)

BASIC_ADDON = {'id': 'basic', 'title': 'Basic Pack', 'price_inr': '750', 'price_usd': '15'}


class TestCalculateOrderAmount:
    """P0 Critical: the amount charged must be reproducible from the stored inputs"""

    def test_domestic_fee_with_addon_includes_gst(self):
        # (500 + 750) * 1.18 = 1475.00 -> 147500 paise
        amount, currency = calculate_order_amount(500, BASIC_ADDON, is_overseas=False)
        assert amount == 147500
        assert currency == 'INR'

    def test_domestic_fee_without_addon(self):
        amount, currency = calculate_order_amount(500)
        assert amount == 59000
        assert currency == 'INR'

    def test_overseas_order_is_untaxed_usd(self):
        amount, currency = calculate_order_amount(10, BASIC_ADDON, is_overseas=True)
        assert amount == 2500
        assert currency == 'USD'

    def test_staff_amount_overrides_pricing(self):
        amount, currency = calculate_order_amount(500, BASIC_ADDON, staff_order_amount=100)
        assert amount == 100
        assert currency == 'INR'

    def test_rounds_half_up_to_minor_unit(self):
        # 0.05 * 1.18 = 0.059 -> 5.9 paise -> 6
        amount, _ = calculate_order_amount(Decimal('0.05'))
        assert amount == 6

    def test_negative_subtotal_rejected(self):
        with pytest.raises(ValueError):
            calculate_order_amount(-1000)

    def test_float_fee_has_no_binary_artefacts(self):
        amount, _ = calculate_order_amount(0.1, is_overseas=True)
        assert amount == 10


class TestPriceRegistration:
    """Draft pricing and verification pricing share one code path"""

    def test_staff_email_gets_fixed_amount(self):
        config = FulfillmentConfig()
        amount, currency = price_registration('tester@Spacetopia.in', 500, BASIC_ADDON, False, config)
        assert amount == 100
        assert currency == 'INR'

    def test_regular_email_is_priced_normally(self):
        config = FulfillmentConfig()
        amount, _ = price_registration('parent@example.com', 500, BASIC_ADDON, False, config)
        assert amount == 147500

    def test_custom_gst_rate(self):
        config = FulfillmentConfig(gst_rate=Decimal('0'))
        amount, _ = price_registration('parent@example.com', 500, None, False, config)
        assert amount == 50000


class TestMoneyHelpers:

    def test_minor_unit_conversions(self):
        assert to_minor_units(Decimal('12.345')) == 1235
        assert from_minor_units(147500) == Decimal('1475.00')
        assert from_minor_units(None) == Decimal('0.00')

    def test_addon_price_picks_currency(self):
        assert addon_price(BASIC_ADDON, False) == Decimal('750')
        assert addon_price(BASIC_ADDON, True) == Decimal('15')
        assert addon_price(None, True) == Decimal('0')

    def test_format_money(self):
        assert format_money(Decimal('1475'), 'INR') == '₹1475.00'
        assert format_money(25, 'USD') == '$25.00'
        assert format_money(10, 'EUR') == '10.00 EUR'
        assert format_money(10, show_currency=False) == '10.00'

    def test_is_staff_email(self):
        assert is_staff_email('ops@spacetopia.in', '@spacetopia.in')
        assert not is_staff_email('ops@example.com', '@spacetopia.in')
        assert not is_staff_email(None, '@spacetopia.in')
        assert not is_staff_email('ops@spacetopia.in', None)
