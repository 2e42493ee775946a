"""Fee and commission calculation for escrow payments"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    amount: int
    platform_fee: int
    total_payable: int

    @property
    def total_minor_units(self) -> int:
        return FeeCalculator.to_minor_units(self.total_payable)


@dataclass(frozen=True)
class CommissionSplit:
    gross: int
    commission: int
    net: int


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    WHOLE_UNIT = Decimal("1")

    @classmethod
    def round_half_up(cls, value: Decimal) -> int:
        return int(value.quantize(cls.WHOLE_UNIT, rounding=ROUND_HALF_UP))

    @classmethod
    def calculate_platform_fee(cls, amount: int, rate: Optional[Decimal] = None) -> FeeBreakdown:
        """
        Platform fee charged to the hiring party on top of the agreed amount.

        Example (5%): 4500 -> fee 225, total 4725
        """
        rate = Config.PLATFORM_FEE_RATE if rate is None else Decimal(str(rate))
        platform_fee = cls.round_half_up(Decimal(amount) * rate)
        breakdown = FeeBreakdown(amount=amount, platform_fee=platform_fee, total_payable=amount + platform_fee)
        logger.debug(f"💰 FEE_CALC: amount={amount} rate={rate} fee={platform_fee} total={breakdown.total_payable}")
        return breakdown

    @classmethod
    def split_commission(cls, gross_amount: int, rate: Optional[Decimal] = None) -> CommissionSplit:
        """Commission withheld from the payee; commission + net == gross"""
        rate = Config.PLATFORM_COMMISSION_RATE if rate is None else Decimal(str(rate))
        commission = cls.round_half_up(Decimal(gross_amount) * rate)
        return CommissionSplit(gross=gross_amount, commission=commission, net=gross_amount - commission)

    @staticmethod
    def to_minor_units(amount: int) -> int:
        return amount * Config.MINOR_UNITS_PER_MAJOR

    @staticmethod
    def price_change_percentage(previous: int, new: int) -> float:
        """Magnitude of the relative change, rounded to one decimal place"""
        if not previous:
            return 0.0
        change = (Decimal(abs(new - previous)) / Decimal(previous)) * Decimal("100")
        return float(change.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
