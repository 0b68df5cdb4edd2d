"""Fee policy tests"""
from decimal import Decimal

import pytest

from casefund.core.errors import ValidationError
from casefund.services.fee_policy import FeeKind, calculate_fee, from_cents, to_cents


@pytest.mark.critical
class TestCalculateFee:
    """Fee split for every kind of money movement"""

    def test_case_donation_takes_ten_percent(self):
        breakdown = calculate_fee(Decimal("50.00"), FeeKind.CASE_DONATION)
        assert breakdown.platform_fee == Decimal("5.00")
        assert breakdown.net_amount == Decimal("45.00")

    def test_withdrawal_takes_two_percent(self):
        breakdown = calculate_fee(Decimal("20.00"), FeeKind.WITHDRAWAL)
        assert breakdown.platform_fee == Decimal("0.40")
        assert breakdown.net_amount == Decimal("19.60")

    @pytest.mark.parametrize("kind", [FeeKind.DEPOSIT, FeeKind.PLATFORM_DONATION])
    def test_zero_fee_kinds(self, kind):
        breakdown = calculate_fee(Decimal("12.34"), kind)
        assert breakdown.platform_fee == Decimal("0.00")
        assert breakdown.net_amount == Decimal("12.34")

    def test_fee_rounds_half_up_to_cents(self):
        # 10% of 10.05 is 1.005
        breakdown = calculate_fee(Decimal("10.05"), FeeKind.CASE_DONATION)
        assert breakdown.platform_fee == Decimal("1.01")
        assert breakdown.net_amount == Decimal("9.04")

    @pytest.mark.parametrize("amount", ["5.00", "7.77", "10.05", "33.33", "999.99", "1234.56"])
    @pytest.mark.parametrize("kind", list(FeeKind))
    def test_fee_plus_net_equals_amount(self, amount, kind):
        breakdown = calculate_fee(Decimal(amount), kind)
        assert breakdown.platform_fee + breakdown.net_amount == Decimal(amount)
        assert breakdown.platform_fee >= 0

    def test_is_deterministic(self):
        first = calculate_fee(Decimal("77.77"), FeeKind.CASE_DONATION)
        second = calculate_fee(Decimal("77.77"), FeeKind.CASE_DONATION)
        assert first == second

    def test_accepts_string_amounts(self):
        assert calculate_fee("50", FeeKind.CASE_DONATION).platform_fee == Decimal("5.00")

    @pytest.mark.parametrize("amount", ["0", "-5.00"])
    def test_rejects_non_positive_amounts(self, amount):
        with pytest.raises(ValidationError):
            calculate_fee(Decimal(amount), FeeKind.DEPOSIT)


class TestCents:
    def test_to_cents(self):
        assert to_cents(Decimal("19.60")) == 1960
        assert to_cents(Decimal("5")) == 500

    def test_from_cents(self):
        assert from_cents(4500) == Decimal("45.00")
        assert from_cents(1) == Decimal("0.01")
