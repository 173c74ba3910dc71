import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from backend.cost_normalizer import (
    SUPPORTED_PERIODS,
    SortOrder,
    Subscription,
    convert_cycle,
    convert_to_base,
    normalize,
    parse_period,
    sort_costs,
    split_advance,
)
from backend.exchange_rates import RateSnapshot

NOW = date(2024, 3, 15)


class CycleConversionTests(unittest.TestCase):
    def test_conversion_table(self) -> None:
        amount = Decimal("1200")
        expected = {
            ("monthly", "monthly"): Decimal("1200"),
            ("halfyear", "monthly"): Decimal("200"),
            ("yearly", "monthly"): Decimal("100"),
            ("monthly", "halfyear"): Decimal("7200"),
            ("halfyear", "halfyear"): Decimal("1200"),
            ("yearly", "halfyear"): Decimal("600"),
            ("monthly", "yearly"): Decimal("14400"),
            ("halfyear", "yearly"): Decimal("2400"),
            ("yearly", "yearly"): Decimal("1200"),
        }
        for (cycle, period), value in expected.items():
            with self.subTest(cycle=cycle, period=period):
                self.assertEqual(convert_cycle(amount, cycle, period), value)

    def test_round_trip_between_cycles(self) -> None:
        amount = Decimal("99.99")
        for source in SUPPORTED_PERIODS:
            for target in SUPPORTED_PERIODS:
                with self.subTest(source=source, target=target):
                    there = convert_cycle(amount, source, target)
                    back = convert_cycle(there, target, source)
                    self.assertAlmostEqual(float(back), float(amount), places=9)

    def test_unknown_cycle_passes_through(self) -> None:
        self.assertEqual(convert_cycle(Decimal("42"), "weekly", "monthly"), Decimal("42"))

    def test_unknown_period_defaults_to_monthly(self) -> None:
        self.assertEqual(parse_period("quarterly"), "monthly")
        self.assertEqual(parse_period(None), "monthly")
        self.assertEqual(parse_period(" Yearly "), "yearly")


class AdvanceSplitTests(unittest.TestCase):
    def test_split_conserves_price(self) -> None:
        for self_ratio, advance_ratio in [(1, 1), (1, 2), (3, 7), (5, 1)]:
            with self.subTest(self_ratio=self_ratio, advance_ratio=advance_ratio):
                self_amount, advance_amount = split_advance(
                    Decimal("100"), True, self_ratio, advance_ratio
                )
                self.assertEqual(self_amount + advance_amount, Decimal("100"))

    def test_non_advance_ignores_advance_ratio(self) -> None:
        baseline = split_advance(Decimal("300"), False, 1, 1)
        for advance_ratio in (0, 2, 9):
            with self.subTest(advance_ratio=advance_ratio):
                self.assertEqual(split_advance(Decimal("300"), False, 1, advance_ratio), baseline)
        self.assertEqual(baseline, (Decimal("300"), Decimal("0")))

    def test_zero_self_ratio_is_treated_as_one(self) -> None:
        self_amount, advance_amount = split_advance(Decimal("90"), True, 0, 2)

        self.assertEqual(self_amount, Decimal("30"))
        self.assertEqual(advance_amount, Decimal("60"))


class CurrencyConversionTests(unittest.TestCase):
    def test_factor_applies_per_currency(self) -> None:
        snapshot = RateSnapshot(
            rates={"TWD": Decimal("1"), "USD": Decimal("32"), "JPY": Decimal("0.21")},
            fetched_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )

        self.assertEqual(convert_to_base(Decimal("1"), "USD", snapshot), Decimal("32"))
        self.assertEqual(convert_to_base(Decimal("1"), "JPY", snapshot), Decimal("0.21"))
        self.assertEqual(convert_to_base(Decimal("15"), "TWD", snapshot), Decimal("15"))

    def test_missing_currency_defaults_to_factor_one(self) -> None:
        self.assertEqual(convert_to_base(Decimal("7"), "EUR", {"TWD": Decimal("1")}), Decimal("7"))
        snapshot = RateSnapshot(rates={"TWD": Decimal("1")})
        self.assertEqual(convert_to_base(Decimal("7"), "eur", snapshot), Decimal("7"))


class NormalizeTests(unittest.TestCase):
    def test_yearly_twd_to_monthly(self) -> None:
        subscription = Subscription(
            price=Decimal("1200"),
            currency="TWD",
            cycle="yearly",
            billing_date=date(2024, 1, 1),
        )

        summary = normalize([subscription], {"TWD": Decimal("1")}, "monthly", now=NOW)

        self.assertEqual(summary.items[0].self_amount, Decimal("100"))
        self.assertEqual(summary.total, Decimal("100"))
        self.assertEqual(summary.advance_total, Decimal("0"))

    def test_advanced_usd_split_and_conversion(self) -> None:
        subscription = Subscription(
            price=Decimal("300"),
            currency="USD",
            cycle="monthly",
            billing_date=date(2024, 1, 10),
            is_advance=True,
            self_ratio=1,
            advance_ratio=2,
        )

        summary = normalize([subscription], {"USD": Decimal("32")}, "monthly", now=NOW)
        item = summary.items[0]

        self.assertEqual(item.self_amount, Decimal("3200"))
        self.assertEqual(item.advance_amount, Decimal("6400"))
        self.assertEqual(item.full_amount, Decimal("9600"))
        self.assertEqual(summary.total, Decimal("3200"))
        self.assertEqual(summary.advance_total, Decimal("6400"))

    def test_unrecognized_period_falls_back_to_monthly(self) -> None:
        subscription = Subscription(
            price=Decimal("600"),
            currency="TWD",
            cycle="halfyear",
            billing_date=date(2024, 1, 1),
        )

        summary = normalize([subscription], {"TWD": Decimal("1")}, "fortnightly", now=NOW)

        self.assertEqual(summary.period, "monthly")
        self.assertEqual(summary.total, Decimal("100"))

    def test_empty_list_totals_zero(self) -> None:
        summary = normalize([], {"TWD": Decimal("1")}, "yearly", now=NOW)

        self.assertEqual(summary.items, [])
        self.assertEqual(summary.total, Decimal("0"))

    def test_next_billing_date_is_attached(self) -> None:
        subscription = Subscription(
            price=Decimal("10"),
            currency="TWD",
            cycle="monthly",
            billing_date=date(2024, 1, 31),
        )

        summary = normalize([subscription], {"TWD": Decimal("1")}, "monthly", now=NOW)

        self.assertEqual(summary.items[0].next_billing_date, date(2024, 3, 31))


class SortTests(unittest.TestCase):
    def setUp(self) -> None:
        rates = {"TWD": Decimal("1"), "USD": Decimal("30")}
        self.shared = Subscription(
            id="shared",
            price=Decimal("20"),
            currency="USD",
            cycle="monthly",
            billing_date=date(2024, 1, 20),
            is_advance=True,
            self_ratio=1,
            advance_ratio=9,
        )
        self.solo = Subscription(
            id="solo",
            price=Decimal("150"),
            currency="TWD",
            cycle="monthly",
            billing_date=date(2024, 1, 5),
        )
        self.annual = Subscription(
            id="annual",
            price=Decimal("3600"),
            currency="TWD",
            cycle="yearly",
            billing_date=date(2023, 12, 1),
        )
        self.items = normalize(
            [self.shared, self.solo, self.annual], rates, "monthly", now=NOW
        ).items

    def _ids(self, order: SortOrder) -> list:
        return [item.subscription.id for item in sort_costs(self.items, order)]

    def test_amount_sort_uses_full_price(self) -> None:
        # shared: full 600 / self 60; solo: 150; annual: 300
        self.assertEqual(self._ids(SortOrder.AMOUNT_ASC), ["solo", "annual", "shared"])
        self.assertEqual(self._ids(SortOrder.AMOUNT_DESC), ["shared", "annual", "solo"])

    def test_date_sort_uses_next_billing_date(self) -> None:
        # shared: 2024-03-20, solo: 2024-04-05, annual: 2024-12-01
        self.assertEqual(self._ids(SortOrder.DATE_ASC), ["shared", "solo", "annual"])
        self.assertEqual(self._ids("date-desc"), ["annual", "solo", "shared"])

    def test_sort_order_cycle(self) -> None:
        order = SortOrder.AMOUNT_ASC
        seen = []
        for _ in range(5):
            seen.append(order)
            order = order.next()
        self.assertEqual(
            seen,
            [
                SortOrder.AMOUNT_ASC,
                SortOrder.AMOUNT_DESC,
                SortOrder.DATE_ASC,
                SortOrder.DATE_DESC,
                SortOrder.AMOUNT_ASC,
            ],
        )


if __name__ == "__main__":
    unittest.main()
