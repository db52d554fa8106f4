import unittest
from datetime import date
from decimal import Decimal

from fintrack.dashboard import (
    Transaction,
    category_breakdown,
    monthly_trend,
    period_range,
    shift_month_keep_day,
    summarize,
    weekly_trend,
)


class PeriodRangeTests(unittest.TestCase):
    def test_week_starts_on_monday(self) -> None:
        # 2024-05-16 is a Thursday.
        self.assertEqual(
            period_range("week", date(2024, 5, 16)),
            (date(2024, 5, 13), date(2024, 5, 16)),
        )

    def test_month_reaches_back_one_month(self) -> None:
        self.assertEqual(
            period_range("month", date(2024, 3, 31)),
            (date(2024, 2, 29), date(2024, 3, 31)),
        )

    def test_year_reaches_back_one_year(self) -> None:
        self.assertEqual(
            period_range("Year", date(2024, 7, 4)),
            (date(2023, 7, 4), date(2024, 7, 4)),
        )

    def test_unknown_range_raises(self) -> None:
        with self.assertRaises(ValueError):
            period_range("decade", date(2024, 1, 1))

    def test_shift_month_crosses_year_boundary(self) -> None:
        self.assertEqual(shift_month_keep_day(date(2024, 1, 15), -2), date(2023, 11, 15))


class AggregationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            Transaction(Decimal("1000"), "income", date(2024, 5, 1), "Salary"),
            Transaction(Decimal("400"), "expense", date(2024, 5, 2), "Rent"),
            Transaction(Decimal("100"), "expense", date(2024, 5, 3), "Dining"),
            Transaction(Decimal("100"), "expense", date(2024, 4, 20), "Rent"),
        ]

    def test_summarize_totals(self) -> None:
        summary = summarize(self.transactions, [Decimal("250"), Decimal("-50")])

        self.assertEqual(summary.income, Decimal("1000"))
        self.assertEqual(summary.expenses, Decimal("600"))
        self.assertEqual(summary.net, Decimal("400"))
        self.assertEqual(summary.total_balance, Decimal("200"))
        self.assertEqual(summary.transaction_count, 4)
        self.assertEqual(summary.average_transaction, Decimal("400"))

    def test_summarize_empty(self) -> None:
        summary = summarize([], [])

        self.assertEqual(summary.transaction_count, 0)
        self.assertEqual(summary.average_transaction, Decimal("0"))

    def test_category_breakdown_ranks_by_amount(self) -> None:
        shares = category_breakdown(self.transactions, "expense")

        self.assertEqual([share.name for share in shares], ["Rent", "Dining"])
        self.assertEqual(shares[0].amount, Decimal("500"))
        self.assertEqual(shares[0].percentage, Decimal("500") / Decimal("600") * 100)

    def test_category_breakdown_without_matches(self) -> None:
        self.assertEqual(category_breakdown(self.transactions[1:], "income"), [])

    def test_monthly_trend_zero_fills(self) -> None:
        buckets = monthly_trend(self.transactions, date(2024, 5, 20), months=3)

        self.assertEqual([bucket.label for bucket in buckets], ["2024-03", "2024-04", "2024-05"])
        self.assertEqual(buckets[0].expense, Decimal("0"))
        self.assertEqual(buckets[1].expense, Decimal("100"))
        self.assertEqual(buckets[2].income, Decimal("1000"))
        self.assertEqual(buckets[2].expense, Decimal("500"))

    def test_weekly_trend_buckets_by_weekday(self) -> None:
        # Week of Monday 2024-04-29.
        buckets = weekly_trend(self.transactions, date(2024, 5, 3))

        self.assertEqual(len(buckets), 7)
        self.assertEqual(buckets[2].label, "Wed")
        self.assertEqual(buckets[2].income, Decimal("1000"))
        self.assertEqual(buckets[4].expense, Decimal("100"))
        self.assertEqual(buckets[0].income + buckets[0].expense, Decimal("0"))


if __name__ == "__main__":
    unittest.main()
