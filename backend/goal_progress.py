from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_CEILING, Decimal
from typing import Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class SavingsGoal:
    target_amount: Decimal
    current_amount: Decimal = ZERO
    target_date: Optional[date] = None
    is_completed: bool = False


@dataclass(frozen=True)
class GoalProgress:
    progress: Optional[Decimal]
    remaining: Decimal
    reached: bool
    days_left: Optional[int]
    overdue: bool
    monthly_savings_needed: Optional[Decimal]


def evaluate_goal(goal: SavingsGoal, today: date) -> GoalProgress:
    target = _coerce_amount(goal.target_amount)
    current = _coerce_amount(goal.current_amount)
    if target < ZERO:
        raise ValueError("target_amount cannot be negative.")
    if current < ZERO:
        raise ValueError("current_amount cannot be negative.")

    progress = current * HUNDRED / target if target > ZERO else None
    remaining = max(ZERO, target - current)
    reached = current >= target

    days_left = None
    if goal.target_date is not None:
        days_left = (goal.target_date - today).days
    overdue = (
        days_left is not None
        and days_left <= 0
        and not reached
        and not goal.is_completed
    )

    monthly_savings_needed = None
    if days_left is not None and days_left > 0 and remaining > ZERO:
        months_left = -(-days_left // DAYS_PER_MONTH)
        monthly_savings_needed = (remaining / months_left).to_integral_value(
            rounding=ROUND_CEILING
        )

    return GoalProgress(
        progress=progress,
        remaining=remaining,
        reached=reached,
        days_left=days_left,
        overdue=overdue,
        monthly_savings_needed=monthly_savings_needed,
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
