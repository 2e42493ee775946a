"""
Test Fee Calculator
Platform fee, commission split and price change rounding
"""

from decimal import Decimal

import pytest

from utils.fee_calculator import FeeCalculator


class TestPlatformFee:
    """Test the fee added on top of the agreed amount"""

    def test_default_rate(self):
        breakdown = FeeCalculator.calculate_platform_fee(4500)
        assert (breakdown.amount, breakdown.platform_fee, breakdown.total_payable) == (4500, 225, 4725)
        assert breakdown.total_minor_units == 472500

    @pytest.mark.parametrize("amount,expected_fee", [(10, 1), (30, 2), (50, 3), (1, 0), (999, 50)])
    def test_rounds_half_up(self, amount, expected_fee):
        assert FeeCalculator.calculate_platform_fee(amount).platform_fee == expected_fee

    def test_custom_rate(self):
        assert FeeCalculator.calculate_platform_fee(1000, Decimal("0.10")).platform_fee == 100


class TestCommissionSplit:
    """Test the commission withheld from the payee"""

    def test_split_sums_to_gross(self):
        for gross in (1, 7, 4500, 12345):
            split = FeeCalculator.split_commission(gross)
            assert split.commission + split.net == gross

    def test_zero_rate(self):
        split = FeeCalculator.split_commission(4500, Decimal("0"))
        assert (split.commission, split.net) == (0, 4500)


class TestPriceChange:
    def test_percentage(self):
        assert FeeCalculator.price_change_percentage(5000, 4500) == 10.0
        assert FeeCalculator.price_change_percentage(3000, 4000) == 33.3
        assert FeeCalculator.price_change_percentage(0, 4000) == 0.0

    def test_percentage_is_unsigned(self):
        """Test a decrease reports the same magnitude an increase would"""
        assert FeeCalculator.price_change_percentage(4000, 3000) == 25.0
        assert FeeCalculator.price_change_percentage(4000, 5000) == 25.0
