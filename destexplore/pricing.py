from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Literal

PricingMode = Literal["per_night", "flat"]

STAY_PRICING_MODE: PricingMode = "flat" if os.getenv("STAY_PRICING_MODE", "").strip().lower() == "flat" else "per_night"

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PriceRule:
    """
    Date-ranged nightly price override for one room.

    Both bounds are inclusive. Overlapping rules are allowed; the most
    specific one (shortest span) wins, see `select_rule`.
    """

    start_date: date
    end_date: date
    price_per_night: Decimal
    min_stay: int = 1
    is_active: bool = True
    rule_id: str | None = None

    @property
    def span_days(self) -> int:
        return (self.end_date - self.start_date).days

    def covers(self, night: date) -> bool:
        return self.is_active and self.start_date <= night <= self.end_date


@dataclass(frozen=True)
class NightPrice:
    night: date
    price: Decimal
    rule_id: str | None


@dataclass(frozen=True)
class StayQuote:
    currency: str
    nights: int
    nightly: list[NightPrice] = field(default_factory=list)
    base_rate: Decimal = Decimal("0")
    taxes: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    total: Decimal = Decimal("0")

    @property
    def average_nightly(self) -> Decimal:
        if not self.nights:
            return Decimal("0")
        return _money(self.base_rate / self.nights)


def _money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def stay_nights(check_in: date, check_out: date) -> list[date]:
    """Nights of a stay: check-in day up to, not including, check-out day."""
    return [check_in + timedelta(days=i) for i in range((check_out - check_in).days)]


def select_rule(rules: Iterable[PriceRule], night: date) -> PriceRule | None:
    matches = [r for r in rules if r.covers(night)]
    if not matches:
        return None
    # Shortest span first; on equal spans prefer the later start, then the cheaper price,
    # so the result does not depend on the order rows came back from the database.
    return sorted(matches, key=lambda r: (r.span_days, -r.start_date.toordinal(), r.price_per_night))[0]


def resolve_nightly_price(base_price: Decimal, rules: Iterable[PriceRule], night: date) -> tuple[Decimal, PriceRule | None]:
    rule = select_rule(rules, night)
    if rule is None:
        return _money(base_price), None
    return _money(rule.price_per_night), rule


def required_min_stay(room_min_stay: int, rules: Iterable[PriceRule], check_in: date) -> int:
    """Minimum nights for a stay starting on `check_in`: the room's own floor or the check-in rule's, whichever is larger."""
    rule = select_rule(rules, check_in)
    rule_min = rule.min_stay if rule is not None else 1
    return max(1, int(room_min_stay or 1), int(rule_min or 1))


def quote_stay(
    base_price: Decimal,
    rules: Iterable[PriceRule],
    check_in: date,
    check_out: date,
    currency: str = "RON",
    mode: PricingMode | None = None,
    taxes: Decimal = Decimal("0"),
    fees: Decimal = Decimal("0"),
) -> StayQuote:
    if check_out <= check_in:
        raise ValueError("check_out must be after check_in")

    mode = mode or STAY_PRICING_MODE
    rules = list(rules)
    nights = stay_nights(check_in, check_out)

    nightly: list[NightPrice] = []
    if mode == "flat":
        # Single rate for the whole stay, taken from the check-in night.
        price, rule = resolve_nightly_price(base_price, rules, check_in)
        nightly = [NightPrice(night=n, price=price, rule_id=rule.rule_id if rule else None) for n in nights]
    else:
        for n in nights:
            price, rule = resolve_nightly_price(base_price, rules, n)
            nightly.append(NightPrice(night=n, price=price, rule_id=rule.rule_id if rule else None))

    base_rate = _money(sum((p.price for p in nightly), Decimal("0")))
    taxes = _money(taxes)
    fees = _money(fees)
    return StayQuote(
        currency=currency,
        nights=len(nights),
        nightly=nightly,
        base_rate=base_rate,
        taxes=taxes,
        fees=fees,
        total=_money(base_rate + taxes + fees),
    )


def rules_from_rows(rows) -> list[PriceRule]:
    return [
        PriceRule(
            start_date=r.start_date,
            end_date=r.end_date,
            price_per_night=Decimal(str(r.price_per_night)),
            min_stay=int(r.min_stay or 1),
            is_active=bool(r.is_active),
            rule_id=r.id,
        )
        for r in rows
    ]
