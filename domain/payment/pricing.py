"""Membership price list resolution."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

from domain.common.exceptions import DomainValidationException
from .entity import AmountUnit, BillingCycle, PaymentProvider

PROVIDER_CURRENCY = {
    PaymentProvider.WECHAT: "CNY",
    PaymentProvider.ALIPAY: "CNY",
    PaymentProvider.STRIPE: "USD",
    PaymentProvider.PAYPAL: "USD",
}


@dataclass(frozen=True)
class PriceQuote:
    amount: Decimal
    currency: str
    amount_unit: AmountUnit
    billing_days: int
    billing_cycle: BillingCycle


class PricingTable:
    """Prices are configured in major units per currency and converted to the provider's unit."""

    def __init__(
        self,
        prices: Mapping[str, Mapping[str, Decimal]],
        days: Mapping[str, int] | None = None,
    ) -> None:
        self._prices = {
            cur.upper(): {BillingCycle(cycle): Decimal(str(amount)) for cycle, amount in table.items()}
            for cur, table in prices.items()
        }
        self._days = {BillingCycle(k): int(v) for k, v in (days or {}).items()}

    def quote(self, provider: PaymentProvider, cycle: BillingCycle | str) -> PriceQuote:
        cycle = BillingCycle(cycle)
        currency = PROVIDER_CURRENCY[provider]
        try:
            major = self._prices[currency][cycle]
        except KeyError:
            raise DomainValidationException(
                f"No price configured for {currency}/{cycle.value}", field="plan"
            )
        unit = provider.amount_unit
        amount = (major * 100).quantize(Decimal("1")) if unit is AmountUnit.MINOR else major
        return PriceQuote(
            amount=amount,
            currency=currency,
            amount_unit=unit,
            billing_days=self._days.get(cycle, cycle.default_days),
            billing_cycle=cycle,
        )
