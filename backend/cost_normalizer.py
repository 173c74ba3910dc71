from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Mapping, Union

from backend.billing_cycle import next_billing_date, normalize_cycle
from backend.exchange_rates import RateSnapshot

ZERO = Decimal("0")
ONE = Decimal("1")

SUPPORTED_PERIODS = ("monthly", "halfyear", "yearly")
DEFAULT_PERIOD = "monthly"

# (cycle, period) -> (multiplier, divisor)
CYCLE_CONVERSIONS: dict[tuple[str, str], tuple[int, int]] = {
    ("monthly", "monthly"): (1, 1),
    ("halfyear", "monthly"): (1, 6),
    ("yearly", "monthly"): (1, 12),
    ("monthly", "halfyear"): (6, 1),
    ("halfyear", "halfyear"): (1, 1),
    ("yearly", "halfyear"): (1, 2),
    ("monthly", "yearly"): (12, 1),
    ("halfyear", "yearly"): (2, 1),
    ("yearly", "yearly"): (1, 1),
}

Rates = Union[RateSnapshot, Mapping[str, Decimal]]


@dataclass(frozen=True)
class Subscription:
    price: Decimal
    currency: str
    cycle: str
    billing_date: date
    is_advance: bool = False
    self_ratio: int = 1
    advance_ratio: int = 1
    id: str | int | None = None
    name: str | None = None


@dataclass(frozen=True)
class NormalizedCost:
    subscription: Subscription
    self_amount: Decimal
    advance_amount: Decimal
    full_amount: Decimal
    next_billing_date: date


@dataclass(frozen=True)
class CostSummary:
    period: str
    items: List[NormalizedCost]
    total: Decimal
    advance_total: Decimal


class SortOrder(str, Enum):
    AMOUNT_ASC = "amount-asc"
    AMOUNT_DESC = "amount-desc"
    DATE_ASC = "date-asc"
    DATE_DESC = "date-desc"

    def next(self) -> "SortOrder":
        members = list(SortOrder)
        return members[(members.index(self) + 1) % len(members)]

    @property
    def key(self) -> str:
        return self.value.split("-")[0]

    @property
    def descending(self) -> bool:
        return self.value.endswith("-desc")


def parse_period(value: str | None) -> str:
    normalized = normalize_cycle(value)
    if normalized in SUPPORTED_PERIODS:
        return normalized
    return DEFAULT_PERIOD


def split_advance(
    price: Decimal | int | float | str,
    is_advance: bool,
    self_ratio: int | None = 1,
    advance_ratio: int | None = 1,
) -> tuple[Decimal, Decimal]:
    """Return ``(self_amount, advance_amount)``; the two always sum to ``price``."""
    amount = _coerce_amount(price)
    owner_share = _coerce_amount(self_ratio or 0)
    if owner_share <= ZERO:
        owner_share = ONE
    other_share = ZERO
    if is_advance:
        other_share = max(_coerce_amount(advance_ratio or 0), ZERO)
    self_amount = amount * owner_share / (owner_share + other_share)
    return self_amount, amount - self_amount


def convert_cycle(amount: Decimal, cycle: str | None, period: str | None) -> Decimal:
    ratio = CYCLE_CONVERSIONS.get((normalize_cycle(cycle), normalize_cycle(period)))
    if ratio is None:
        return amount
    multiplier, divisor = ratio
    return amount * multiplier / divisor


def convert_to_base(amount: Decimal, currency: str, rates: Rates) -> Decimal:
    if isinstance(rates, RateSnapshot):
        return amount * rates.rate(currency)
    factor = rates.get(currency.strip().upper())
    if factor is None:
        factor = ONE
    return amount * _coerce_amount(factor)


def normalize_subscription(
    subscription: Subscription,
    rates: Rates,
    period: str,
    now: date | datetime,
) -> NormalizedCost:
    self_amount, advance_amount = split_advance(
        subscription.price,
        subscription.is_advance,
        subscription.self_ratio,
        subscription.advance_ratio,
    )

    def to_base(amount: Decimal) -> Decimal:
        in_period = convert_cycle(amount, subscription.cycle, period)
        return convert_to_base(in_period, subscription.currency, rates)

    return NormalizedCost(
        subscription=subscription,
        self_amount=to_base(self_amount),
        advance_amount=to_base(advance_amount),
        full_amount=to_base(_coerce_amount(subscription.price)),
        next_billing_date=next_billing_date(
            subscription.billing_date, subscription.cycle, now
        ),
    )


def normalize(
    subscriptions: Iterable[Subscription],
    rates: Rates,
    period: str | None = DEFAULT_PERIOD,
    now: date | datetime | None = None,
) -> CostSummary:
    resolved_period = parse_period(period)
    reference = now or datetime.now()
    items = [
        normalize_subscription(subscription, rates, resolved_period, reference)
        for subscription in subscriptions
    ]
    return CostSummary(
        period=resolved_period,
        items=items,
        total=sum((item.self_amount for item in items), ZERO),
        advance_total=sum((item.advance_amount for item in items), ZERO),
    )


def sort_costs(items: Iterable[NormalizedCost], order: SortOrder | str) -> List[NormalizedCost]:
    """Order by converted full price or next billing date.

    Amount ordering uses the full price, not the owner's share that feeds
    ``CostSummary.total``.
    """
    resolved = SortOrder(order)
    if resolved.key == "amount":
        return sorted(items, key=lambda item: item.full_amount, reverse=resolved.descending)
    return sorted(items, key=lambda item: item.next_billing_date, reverse=resolved.descending)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
