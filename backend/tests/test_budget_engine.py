import unittest
from datetime import date, datetime
from decimal import Decimal

from backend.budget_engine import (
    STATUS_ON_TRACK,
    STATUS_OVER_BUDGET,
    STATUS_WARNING,
    Budget,
    BudgetCategory,
    BudgetNotFound,
    InvalidInput,
    Transaction,
    classify_spend,
    compute_budget_view,
    month_window,
    select_current_budget,
)


def expense(amount: str, category: str, when: datetime, txn_type: str = "EXPENSE") -> Transaction:
    return Transaction(
        amount=Decimal(amount),
        type=txn_type,
        date=when,
        category=category,
    )


class MonthWindowTests(unittest.TestCase):
    def test_window_spans_whole_calendar_month(self) -> None:
        start, end = month_window(date(2024, 2, 17))

        self.assertEqual(start, datetime(2024, 2, 1))
        self.assertEqual(end, datetime(2024, 2, 29, 23, 59, 59, 999999))

    def test_december_rolls_into_next_year(self) -> None:
        start, end = month_window(date(2023, 12, 5))

        self.assertEqual(start, datetime(2023, 12, 1))
        self.assertEqual(end, datetime(2023, 12, 31, 23, 59, 59, 999999))

    def test_rejects_non_date_anchor(self) -> None:
        with self.assertRaises(InvalidInput):
            month_window("2024-03")


class BudgetViewTests(unittest.TestCase):
    def setUp(self) -> None:
        self.budget = Budget(
            id=1,
            name="March",
            month=date(2024, 3, 1),
            total_limit=Decimal("2000"),
            categories=(
                BudgetCategory(category="Food", budgeted_amount=Decimal("800")),
                BudgetCategory(category="Transport", budgeted_amount=Decimal("200")),
            ),
        )

    def test_food_scenario_ignores_other_months_and_categories(self) -> None:
        transactions = [
            expense("420", "Food", datetime(2024, 3, 10, 12, 30)),
            expense("50", "Food", datetime(2024, 4, 2, 9, 0)),
            expense("100", "Transport", datetime(2024, 3, 11, 8, 0)),
        ]

        view = compute_budget_view(self.budget, transactions)
        food = view.categories[0]

        self.assertEqual(food.spent_amount, Decimal("420"))
        self.assertEqual(food.percentage, Decimal("52.5"))
        self.assertEqual(food.status, STATUS_ON_TRACK)
        self.assertEqual(food.remaining, Decimal("380"))
        self.assertEqual(food.over_by, Decimal("0"))
        self.assertEqual(view.categories[1].spent_amount, Decimal("100"))

    def test_warning_and_over_budget_statuses(self) -> None:
        category = BudgetCategory(category="Food", budgeted_amount=Decimal("800"))
        budget = Budget(month=date(2024, 3, 1), categories=(category,))

        warning = compute_budget_view(
            budget, [expense("650", "Food", datetime(2024, 3, 5))]
        ).categories[0]
        over = compute_budget_view(
            budget, [expense("820", "Food", datetime(2024, 3, 5))]
        ).categories[0]

        self.assertEqual(warning.percentage, Decimal("81.25"))
        self.assertEqual(warning.status, STATUS_WARNING)
        self.assertEqual(over.status, STATUS_OVER_BUDGET)
        self.assertEqual(over.over_by, Decimal("20"))
        self.assertEqual(over.remaining, Decimal("0"))

    def test_exactly_at_threshold_is_still_on_track(self) -> None:
        percentage, status = classify_spend(Decimal("640"), Decimal("800"), Decimal("0.8"))

        self.assertEqual(percentage, Decimal("80"))
        self.assertEqual(status, STATUS_ON_TRACK)

    def test_exactly_at_budget_is_warning_not_over(self) -> None:
        percentage, status = classify_spend(Decimal("800"), Decimal("800"), Decimal("0.8"))

        self.assertEqual(percentage, Decimal("100"))
        self.assertEqual(status, STATUS_WARNING)

    def test_zero_budget_leaves_percentage_undefined(self) -> None:
        budget = Budget(
            month=date(2024, 3, 1),
            categories=(BudgetCategory(category="Gifts", budgeted_amount=Decimal("0")),),
        )

        empty = compute_budget_view(budget, []).categories[0]
        spent = compute_budget_view(
            budget, [expense("15", "Gifts", datetime(2024, 3, 3))]
        ).categories[0]

        self.assertIsNone(empty.percentage)
        self.assertEqual(empty.status, STATUS_ON_TRACK)
        self.assertIsNone(spent.percentage)
        self.assertEqual(spent.status, STATUS_OVER_BUDGET)
        self.assertEqual(spent.over_by, Decimal("15"))

    def test_window_boundaries(self) -> None:
        transactions = [
            expense("1", "Food", datetime(2024, 3, 1, 0, 0, 0)),
            expense("2", "Food", datetime(2024, 3, 31, 23, 59, 59, 999000)),
            expense("4", "Food", datetime(2024, 4, 1, 0, 0, 0)),
            expense("8", "Food", datetime(2024, 2, 29, 23, 59, 59, 999999)),
        ]

        view = compute_budget_view(self.budget, transactions)

        self.assertEqual(view.categories[0].spent_amount, Decimal("3"))

    def test_plain_dates_count_as_midnight(self) -> None:
        transactions = [
            expense("5", "Food", date(2024, 3, 31)),
            expense("7", "Food", date(2024, 4, 1)),
        ]

        view = compute_budget_view(self.budget, transactions)

        self.assertEqual(view.categories[0].spent_amount, Decimal("5"))

    def test_category_match_is_exact(self) -> None:
        transactions = [
            expense("10", "food", datetime(2024, 3, 4)),
            expense("20", "Food ", datetime(2024, 3, 4)),
            expense("30", "Food", datetime(2024, 3, 4)),
        ]

        view = compute_budget_view(self.budget, transactions)

        self.assertEqual(view.categories[0].spent_amount, Decimal("30"))
        self.assertEqual(view.total_spent, Decimal("30"))

    def test_income_is_not_counted(self) -> None:
        transactions = [
            expense("500", "Food", datetime(2024, 3, 4), txn_type="INCOME"),
            expense("25", "Food", datetime(2024, 3, 4), txn_type="expense"),
        ]

        view = compute_budget_view(self.budget, transactions)

        self.assertEqual(view.categories[0].spent_amount, Decimal("25"))

    def test_totals_only_cover_declared_categories(self) -> None:
        transactions = [
            expense("300", "Food", datetime(2024, 3, 2)),
            expense("250", "Transport", datetime(2024, 3, 3)),
            expense("999", "Entertainment", datetime(2024, 3, 3)),
        ]

        view = compute_budget_view(self.budget, transactions)

        self.assertEqual(view.total_budgeted, Decimal("1000"))
        self.assertEqual(view.total_spent, Decimal("550"))
        self.assertEqual(view.total_spent, sum(c.spent_amount for c in view.categories))
        self.assertEqual(view.total_remaining, Decimal("450"))
        self.assertEqual(view.status, STATUS_OVER_BUDGET)

    def test_remaining_and_over_by_are_consistent(self) -> None:
        amounts = ["0", "100", "799.99", "800", "800.01", "1500"]
        for amount in amounts:
            with self.subTest(amount=amount):
                transactions = []
                if Decimal(amount) > 0:
                    transactions.append(expense(amount, "Food", datetime(2024, 3, 9)))
                food = compute_budget_view(self.budget, transactions).categories[0]
                budgeted = food.category.budgeted_amount
                self.assertEqual(
                    food.remaining + food.spent_amount == budgeted,
                    food.over_by == 0,
                )
                if food.over_by > 0:
                    self.assertEqual(food.remaining, Decimal("0"))

    def test_preserves_category_order(self) -> None:
        budget = Budget(
            month=date(2024, 3, 1),
            categories=tuple(
                BudgetCategory(category=label, budgeted_amount=Decimal("10"))
                for label in ("Zoo", "Apples", "Mid")
            ),
        )

        view = compute_budget_view(budget, [])

        self.assertEqual([c.category.category for c in view.categories], ["Zoo", "Apples", "Mid"])

    def test_computation_is_repeatable(self) -> None:
        transactions = [
            expense("120.50", "Food", datetime(2024, 3, 2)),
            expense("60", "Transport", datetime(2024, 3, 8)),
        ]

        self.assertEqual(
            compute_budget_view(self.budget, transactions),
            compute_budget_view(self.budget, transactions),
        )

    def test_rejects_threshold_outside_unit_range(self) -> None:
        budget = Budget(
            month=date(2024, 3, 1),
            categories=(
                BudgetCategory(
                    category="Food",
                    budgeted_amount=Decimal("100"),
                    alert_threshold=Decimal("1.5"),
                ),
            ),
        )

        with self.assertRaises(InvalidInput):
            compute_budget_view(budget, [])

    def test_rejects_negative_budget_and_duplicate_labels(self) -> None:
        negative = Budget(
            month=date(2024, 3, 1),
            categories=(BudgetCategory(category="Food", budgeted_amount=Decimal("-1")),),
        )
        duplicated = Budget(
            month=date(2024, 3, 1),
            categories=(
                BudgetCategory(category="Food", budgeted_amount=Decimal("1")),
                BudgetCategory(category="Food", budgeted_amount=Decimal("2")),
            ),
        )

        with self.assertRaises(InvalidInput):
            compute_budget_view(negative, [])
        with self.assertRaises(InvalidInput):
            compute_budget_view(duplicated, [])

    def test_rejects_non_positive_counted_transaction(self) -> None:
        with self.assertRaises(InvalidInput):
            compute_budget_view(self.budget, [expense("0", "Food", datetime(2024, 3, 2))])


class SelectCurrentBudgetTests(unittest.TestCase):
    def test_picks_budget_in_todays_month(self) -> None:
        budgets = [
            Budget(id=1, month=date(2024, 2, 1)),
            Budget(id=2, month=date(2024, 3, 1)),
            Budget(id=3, month=date(2024, 4, 1)),
        ]

        selected = select_current_budget(budgets, date(2024, 3, 20))

        self.assertEqual(selected.id, 2)

    def test_tie_break_prefers_latest_created_then_highest_id(self) -> None:
        budgets = [
            Budget(id=5, month=date(2024, 3, 1), created_at=datetime(2024, 2, 20)),
            Budget(id=4, month=date(2024, 3, 1), created_at=datetime(2024, 2, 25)),
            Budget(id=7, month=date(2024, 3, 1), created_at=datetime(2024, 2, 25)),
        ]

        selected = select_current_budget(budgets, date(2024, 3, 2))

        self.assertEqual(selected.id, 7)

    def test_raises_when_month_has_no_budget(self) -> None:
        with self.assertRaises(BudgetNotFound):
            select_current_budget([Budget(id=1, month=date(2024, 1, 1))], date(2024, 3, 1))


if __name__ == "__main__":
    unittest.main()
