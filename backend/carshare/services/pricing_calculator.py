# backend/carshare/services/pricing_calculator.py
"""
Rental price computation.

Pure and deterministic: the same inputs always produce the same quote.
All amounts are whole currency units; fractional results are rounded half
up via ``Decimal`` so 0.5 never rounds towards even.
"""

from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional, Union

from ..core.config import settings
from ..core.enums import InsuranceTier
from ..core.exceptions import ValidationException
from ..models.vehicle import DepositPolicy

Number = Union[int, float, Decimal]


def round_half_up(value: Number) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def duration_days(start_date: date, end_date: date) -> int:
    """Billable days; same-day rentals count as one day."""
    return max(1, (end_date - start_date).days)


@dataclass(frozen=True)
class PriceQuote:
    duration_days: int
    daily_rate: int
    base_price: int
    insurance_tier: InsuranceTier
    insurance_fee: int
    service_fee: int
    total_amount: int
    deposit_amount: int

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["insurance_tier"] = self.insurance_tier.value
        return data


class PricingCalculator:
    """
    Quotes a rental from the vehicle's daily rate.

    base      = daily_rate * days
    insurance = per-day tier rate * days
    service   = round(base * service_fee_rate)
    total     = base + insurance + service
    deposit   = vehicle deposit if set, else round(base * deposit_rate)
    """

    def __init__(
        self,
        *,
        service_fee_rate: Optional[Number] = None,
        deposit_rate: Optional[Number] = None,
        insurance_daily_rates: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.service_fee_rate = Decimal(
            str(settings.service_fee_rate if service_fee_rate is None else service_fee_rate)
        )
        self.deposit_rate = Decimal(
            str(settings.deposit_rate if deposit_rate is None else deposit_rate)
        )
        rates = settings.insurance_daily_rates if insurance_daily_rates is None else insurance_daily_rates
        self.insurance_daily_rates: Dict[InsuranceTier, int] = {
            InsuranceTier(tier): int(rate) for tier, rate in rates.items()
        }

    def insurance_rate(self, tier: InsuranceTier) -> int:
        try:
            return self.insurance_daily_rates[InsuranceTier(tier)]
        except (KeyError, ValueError) as exc:
            raise ValidationException(
                f"Unknown insurance tier: {tier}", code="INVALID_INSURANCE_TIER"
            ) from exc

    def quote(
        self,
        daily_rate: int,
        start_date: date,
        end_date: date,
        insurance_tier: InsuranceTier = InsuranceTier.BASIC,
        deposit_policy: Optional[DepositPolicy] = None,
    ) -> PriceQuote:
        if end_date < start_date:
            raise ValidationException(
                "End date must not be before start date", code="INVALID_DATE_RANGE"
            )
        if daily_rate < 0:
            raise ValidationException("Daily rate must not be negative", code="INVALID_RATE")

        tier = InsuranceTier(insurance_tier)
        days = duration_days(start_date, end_date)
        base_price = daily_rate * days
        insurance_fee = self.insurance_rate(tier) * days
        service_fee = round_half_up(Decimal(base_price) * self.service_fee_rate)

        if deposit_policy is not None and deposit_policy.amount is not None:
            deposit_amount = deposit_policy.amount
        else:
            deposit_amount = round_half_up(Decimal(base_price) * self.deposit_rate)

        return PriceQuote(
            duration_days=days,
            daily_rate=daily_rate,
            base_price=base_price,
            insurance_tier=tier,
            insurance_fee=insurance_fee,
            service_fee=service_fee,
            total_amount=base_price + insurance_fee + service_fee,
            deposit_amount=deposit_amount,
        )
