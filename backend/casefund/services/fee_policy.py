"""Fee policy - platform fee and net amount for every kind of money movement"""
import enum
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from casefund.core.config import settings
from casefund.core.errors import ValidationError

CENT = Decimal("0.01")


class FeeKind(str, enum.Enum):
    DEPOSIT = "deposit"
    CASE_DONATION = "case_donation"
    PLATFORM_DONATION = "platform_donation"
    WITHDRAWAL = "withdrawal"


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal


def quantize(amount: Union[Decimal, str, int]) -> Decimal:
    """Round to whole cents, half-up"""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def fee_percent(kind: FeeKind) -> Decimal:
    if kind == FeeKind.CASE_DONATION:
        return settings.DONATION_FEE_PERCENT
    if kind == FeeKind.WITHDRAWAL:
        return settings.WITHDRAWAL_FEE_PERCENT
    return Decimal("0")


def calculate_fee(amount: Union[Decimal, str, int], kind: FeeKind) -> FeeBreakdown:
    """Split a gross amount into platform fee and net amount.

    Args:
        amount: Gross amount in EUR
        kind: What the money is for

    Returns:
        FeeBreakdown where platform_fee + net_amount == amount

    Raises:
        ValidationError: If amount is not positive
    """
    gross = quantize(amount)
    if gross <= 0:
        raise ValidationError("Amount must be positive")

    fee = quantize(gross * fee_percent(FeeKind(kind)) / Decimal("100"))
    return FeeBreakdown(amount=gross, platform_fee=fee, net_amount=gross - fee)


def to_cents(amount: Decimal) -> int:
    """EUR amount -> integer cents for the payment processor"""
    return int((quantize(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return quantize(Decimal(cents) / Decimal("100"))
