from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_ALERT_THRESHOLD = Decimal("0.8")

EXPENSE = "EXPENSE"
INCOME = "INCOME"

STATUS_ON_TRACK = "on_track"
STATUS_WARNING = "warning"
STATUS_OVER_BUDGET = "over_budget"
STATUS_SEVERITY = {
    STATUS_ON_TRACK: 0,
    STATUS_WARNING: 1,
    STATUS_OVER_BUDGET: 2,
}


class InvalidInput(ValueError):
    """Raised when a budget, category or transaction is malformed."""


class BudgetNotFound(LookupError):
    """Raised when no budget exists for the requested month."""


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: datetime
    category: str
    description: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetCategory:
    category: str
    budgeted_amount: Decimal
    alert_threshold: Decimal = DEFAULT_ALERT_THRESHOLD
    id: Optional[int] = None


@dataclass(frozen=True)
class Budget:
    month: date
    categories: Tuple[BudgetCategory, ...] = ()
    name: str = ""
    total_limit: Decimal = ZERO
    rollover_enabled: bool = False
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CategoryView:
    category: BudgetCategory
    spent_amount: Decimal
    percentage: Optional[Decimal]
    remaining: Decimal
    over_by: Decimal
    status: str


@dataclass(frozen=True)
class BudgetView:
    budget: Budget
    period_start: datetime
    period_end: datetime
    categories: Tuple[CategoryView, ...]
    total_budgeted: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    status: str


def month_window(month: date) -> Tuple[datetime, datetime]:
    """Return the inclusive [first instant, last instant] of ``month``'s calendar month."""
    if not isinstance(month, date):
        raise InvalidInput("Month anchor must be a date.")
    start = datetime(month.year, month.month, 1)
    if month.month == 12:
        next_start = datetime(month.year + 1, 1, 1)
    else:
        next_start = datetime(month.year, month.month + 1, 1)
    return start, next_start - timedelta(microseconds=1)


def compute_budget_view(
    budget: Budget,
    transactions: Iterable[Transaction],
) -> BudgetView:
    """Annotate ``budget`` with the spend recorded in its month.

    Only EXPENSE transactions dated inside the budget month count, and a
    transaction counts toward a category only when its label matches exactly.
    Spend under labels the budget does not declare is left out of every total.
    """
    start, end = month_window(budget.month)
    _validate_categories(budget.categories)

    spent_by_category = {entry.category: ZERO for entry in budget.categories}
    for txn in transactions:
        if txn.type.strip().upper() != EXPENSE:
            continue
        if txn.category not in spent_by_category:
            continue
        if not start <= _as_datetime(txn.date) <= end:
            continue
        amount = _coerce_amount(txn.amount)
        if amount <= ZERO:
            raise InvalidInput(f"Transaction amount must be greater than zero (id={txn.id}).")
        spent_by_category[txn.category] += amount

    views = tuple(
        _annotate_category(entry, spent_by_category[entry.category])
        for entry in budget.categories
    )
    total_budgeted = sum((view.category.budgeted_amount for view in views), ZERO)
    total_spent = sum((view.spent_amount for view in views), ZERO)
    status = max(
        (view.status for view in views),
        key=STATUS_SEVERITY.__getitem__,
        default=STATUS_ON_TRACK,
    )
    logger.debug(
        "Computed budget view id=%s month=%s spent=%s of %s",
        budget.id,
        budget.month,
        total_spent,
        total_budgeted,
    )
    return BudgetView(
        budget=budget,
        period_start=start,
        period_end=end,
        categories=views,
        total_budgeted=total_budgeted,
        total_spent=total_spent,
        total_remaining=max(ZERO, total_budgeted - total_spent),
        status=status,
    )


def classify_spend(
    spent: Decimal,
    budgeted: Decimal,
    alert_threshold: Decimal = DEFAULT_ALERT_THRESHOLD,
) -> Tuple[Optional[Decimal], str]:
    """Return ``(percentage, status)`` for ``spent`` against ``budgeted``.

    The percentage is ``None`` for a zero budget; any spend is then over budget.
    """
    spent = _coerce_amount(spent)
    budgeted = _coerce_amount(budgeted)
    threshold = _coerce_amount(alert_threshold)
    if budgeted == ZERO:
        return None, STATUS_OVER_BUDGET if spent > ZERO else STATUS_ON_TRACK
    percentage = spent * HUNDRED / budgeted
    if percentage > HUNDRED:
        return percentage, STATUS_OVER_BUDGET
    if percentage > threshold * HUNDRED:
        return percentage, STATUS_WARNING
    return percentage, STATUS_ON_TRACK


def select_current_budget(budgets: Sequence[Budget], today: date) -> Budget:
    """Pick the budget anchored in ``today``'s month.

    Ties go to the latest month anchor, then the latest creation time, then
    the highest id.
    """
    start, end = month_window(today)
    candidates = [
        budget
        for budget in budgets
        if start <= _as_datetime(budget.month) <= end
    ]
    if not candidates:
        raise BudgetNotFound("No budget found for current month.")
    return max(
        candidates,
        key=lambda budget: (
            budget.month,
            budget.created_at or datetime.min,
            budget.id if budget.id is not None else -1,
        ),
    )


def _annotate_category(entry: BudgetCategory, spent: Decimal) -> CategoryView:
    budgeted = _coerce_amount(entry.budgeted_amount)
    percentage, status = classify_spend(spent, budgeted, entry.alert_threshold)
    return CategoryView(
        category=entry,
        spent_amount=spent,
        percentage=percentage,
        remaining=max(ZERO, budgeted - spent),
        over_by=max(ZERO, spent - budgeted),
        status=status,
    )


def _validate_categories(categories: Iterable[BudgetCategory]) -> None:
    seen = set()
    for entry in categories:
        if not entry.category or not entry.category.strip():
            raise InvalidInput("Budget category label required.")
        if entry.category in seen:
            raise InvalidInput(f"Duplicate budget category: {entry.category}")
        seen.add(entry.category)
        if _coerce_amount(entry.budgeted_amount) < ZERO:
            raise InvalidInput(f"Budgeted amount for {entry.category} cannot be negative.")
        threshold = _coerce_amount(entry.alert_threshold)
        if threshold < ZERO or threshold > Decimal("1"):
            raise InvalidInput(f"Alert threshold for {entry.category} must be between 0 and 1.")


def _as_datetime(value: date) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
