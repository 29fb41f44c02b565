import logging
import math
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from backend.budget_engine import (
    DEFAULT_ALERT_THRESHOLD,
    EXPENSE,
    INCOME,
    Budget,
    BudgetCategory,
    BudgetNotFound,
    BudgetView,
    InvalidInput,
    Transaction,
    compute_budget_view,
    month_window,
    select_current_budget,
)
from backend.goal_progress import SavingsGoal, evaluate_goal

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"


def configure_logging() -> None:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").strip().upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("backend").setLevel(level)
    logger.info("Finance tracker startup (log level %s)", logging.getLevelName(level))


@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(lifespan=lifespan)

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./finance_tracker.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_max_page_limit() -> int:
    raw = os.getenv("TRANSACTIONS_PAGE_LIMIT", "500")
    try:
        value = int(raw)
    except ValueError:
        return 500
    return value if value > 0 else 500


MAX_PAGE_LIMIT = get_max_page_limit()
DEFAULT_PAGE_LIMIT = min(50, MAX_PAGE_LIMIT)
RECENT_TRANSACTIONS_LIMIT = 5

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255)),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("description", String(500), nullable=False),
    Column("category", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("date", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("month", Date, nullable=False),
    Column("total_limit", Numeric(12, 2), nullable=False),
    Column("rollover_enabled", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("category", String(255), nullable=False),
    Column("budgeted_amount", Numeric(12, 2), nullable=False),
    Column("alert_threshold", Numeric(4, 3), nullable=False, default=DEFAULT_ALERT_THRESHOLD),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", String(1000)),
    Column("target_amount", Numeric(12, 2), nullable=False),
    Column("current_amount", Numeric(12, 2), nullable=False, default=Decimal("0")),
    Column("target_date", Date),
    Column("is_completed", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)


def init_db() -> None:
    metadata.create_all(engine)


class CredentialsPayload(BaseModel):
    email: str
    password: str
    name: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    created_at: datetime | None = None


class TransactionType:
    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


def reject_nulls(payload: BaseModel, names: tuple[str, ...]) -> None:
    for name in names:
        if name in payload.model_fields_set and getattr(payload, name) is None:
            raise ValueError(f"{name} cannot be null.")


MONEY_PLACES = 2
THRESHOLD_PLACES = 3


def validate_places(value: Decimal, places: int, field: str) -> Decimal:
    # Column scale; finer values would be rounded on storage.
    if not value.is_finite() or value.normalize().as_tuple().exponent < -places:
        raise ValueError(f"{field} must have at most {places} decimal places.")
    return value


def validate_label(value: str, field: str) -> str:
    # Labels are stored verbatim; budget matching is case-sensitive.
    if not value or not value.strip():
        raise ValueError(f"{field} required.")
    return value


class TransactionPayload(BaseModel):
    amount: Decimal
    description: str
    category: str
    type: str
    date: datetime | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.description = payload.description.strip()
        if not payload.description:
            raise ValueError("Description required.")
        payload.category = validate_label(payload.category, "Category")
        validate_places(payload.amount, MONEY_PLACES, "Amount")
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        if payload.date is not None:
            payload.date = normalize_timestamp(payload.date)
        return payload


class TransactionUpdatePayload(BaseModel):
    amount: Decimal | None = None
    description: str | None = None
    category: str | None = None
    type: str | None = None
    date: datetime | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionUpdatePayload") -> dict:
        reject_nulls(payload, ("amount", "description", "category", "type", "date"))
        if payload.type is not None:
            payload.type = TransactionType.validate(payload.type)
        if payload.description is not None:
            payload.description = payload.description.strip()
            if not payload.description:
                raise ValueError("Description required.")
        if payload.category is not None:
            payload.category = validate_label(payload.category, "Category")
        if payload.amount is not None:
            validate_places(payload.amount, MONEY_PLACES, "Amount")
            if payload.amount <= 0:
                raise ValueError("Amount must be greater than zero.")
        if payload.date is not None:
            payload.date = normalize_timestamp(payload.date)
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise ValueError("No fields to update.")
        return changes


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    description: str
    category: str
    type: str
    date: datetime
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    pagination: PaginationResponse


class BudgetCategoryPayload(BaseModel):
    category: str
    budgeted_amount: Decimal
    alert_threshold: Decimal = DEFAULT_ALERT_THRESHOLD


class BudgetPayload(BaseModel):
    name: str
    month: str
    total_limit: Decimal
    rollover_enabled: bool = False
    categories: list[BudgetCategoryPayload] = []

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Budget name required.")
        payload.month = month_start(parse_month_value(payload.month)).isoformat()
        validate_places(payload.total_limit, MONEY_PLACES, "Total limit")
        if payload.total_limit <= 0:
            raise ValueError("Total limit must be greater than zero.")
        seen: set[str] = set()
        for entry in payload.categories:
            entry.category = validate_label(entry.category, "Budget category")
            if entry.category in seen:
                raise ValueError(f"Duplicate budget category: {entry.category}")
            seen.add(entry.category)
            validate_places(entry.budgeted_amount, MONEY_PLACES, "Budgeted amount")
            if entry.budgeted_amount <= 0:
                raise ValueError("Budgeted amount must be greater than zero.")
            validate_places(entry.alert_threshold, THRESHOLD_PLACES, "Alert threshold")
            if entry.alert_threshold < 0 or entry.alert_threshold > 1:
                raise ValueError("Alert threshold must be between 0 and 1.")
        return payload


class BudgetCategoryResponse(BaseModel):
    id: int | None = None
    category: str
    budgeted_amount: Decimal
    alert_threshold: Decimal
    spent_amount: Decimal
    percentage: Decimal | None = None
    remaining: Decimal
    over_by: Decimal
    status: str


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    name: str
    month: date
    total_limit: Decimal
    rollover_enabled: bool
    period_start: datetime
    period_end: datetime
    categories: list[BudgetCategoryResponse]
    total_budgeted: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GoalPayload(BaseModel):
    title: str
    description: str | None = None
    target_amount: Decimal
    target_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalPayload") -> "GoalPayload":
        payload.title = payload.title.strip()
        if not payload.title:
            raise ValueError("Goal title required.")
        payload.description = payload.description.strip() if payload.description else None
        validate_places(payload.target_amount, MONEY_PLACES, "Target amount")
        if payload.target_amount <= 0:
            raise ValueError("Target amount must be greater than zero.")
        return payload


class GoalUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    target_amount: Decimal | None = None
    target_date: date | None = None
    current_amount: Decimal | None = None
    is_completed: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalUpdatePayload") -> dict:
        reject_nulls(payload, ("title", "target_amount", "current_amount", "is_completed"))
        if payload.title is not None:
            payload.title = payload.title.strip()
            if not payload.title:
                raise ValueError("Goal title required.")
        if payload.description is not None:
            payload.description = payload.description.strip() or None
        if payload.target_amount is not None:
            validate_places(payload.target_amount, MONEY_PLACES, "Target amount")
            if payload.target_amount <= 0:
                raise ValueError("Target amount must be greater than zero.")
        if payload.current_amount is not None:
            validate_places(payload.current_amount, MONEY_PLACES, "Current amount")
            if payload.current_amount < 0:
                raise ValueError("Current amount cannot be negative.")
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise ValueError("No fields to update.")
        return changes


class GoalResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: str | None = None
    target_amount: Decimal
    current_amount: Decimal
    target_date: date | None = None
    is_completed: bool
    progress: Decimal | None = None
    remaining: Decimal
    reached: bool
    days_left: int | None = None
    overdue: bool
    monthly_savings_needed: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DashboardSummaryResponse(BaseModel):
    month: str
    period_start: datetime
    period_end: datetime
    total_income: Decimal
    total_expenses: Decimal
    net_cashflow: Decimal
    transaction_count: int
    budget_id: int | None = None
    budget_status: str | None = None
    recent_transactions: list[TransactionResponse] = []


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_timestamp(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def month_start(value: date) -> date:
    return value.replace(day=1)


def parse_month_value(value: str) -> date:
    raw = value.strip()
    for fmt in ("%Y-%m", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    try:
        return normalize_timestamp(datetime.fromisoformat(raw.replace("Z", "+00:00"))).date()
    except ValueError as exc:
        raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        description=row["description"],
        category=row["category"],
        type=row["type"],
        date=row["date"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def fetch_expense_transactions(
    conn, user_id: int, start: datetime, end: datetime
) -> list[Transaction]:
    rows = conn.execute(
        select(transactions)
        .where(
            transactions.c.user_id == user_id,
            transactions.c.type == EXPENSE,
            transactions.c.date >= start,
            transactions.c.date <= end,
        )
        .order_by(transactions.c.date.asc(), transactions.c.id.asc())
    ).mappings().all()
    return [
        Transaction(
            amount=coerce_decimal(row["amount"]),
            type=row["type"],
            date=row["date"],
            category=row["category"],
            description=row["description"],
            id=row["id"],
        )
        for row in rows
    ]


def fetch_budget_categories(conn, budget_id: int) -> list:
    return conn.execute(
        select(budget_categories)
        .where(budget_categories.c.budget_id == budget_id)
        .order_by(budget_categories.c.position.asc(), budget_categories.c.id.asc())
    ).mappings().all()


def build_budget(budget_row, category_rows) -> Budget:
    return Budget(
        id=budget_row["id"],
        name=budget_row["name"],
        month=budget_row["month"],
        total_limit=coerce_decimal(budget_row["total_limit"]),
        rollover_enabled=bool(budget_row["rollover_enabled"]),
        created_at=budget_row["created_at"],
        categories=tuple(
            BudgetCategory(
                id=row["id"],
                category=row["category"],
                budgeted_amount=coerce_decimal(row["budgeted_amount"]),
                alert_threshold=coerce_decimal(row["alert_threshold"]),
            )
            for row in category_rows
        ),
    )


def fetch_budget_for_month(conn, user_id: int, month_anchor: date):
    start, end = month_window(month_anchor)
    rows = conn.execute(
        select(budgets).where(
            budgets.c.user_id == user_id,
            budgets.c.month >= start.date(),
            budgets.c.month <= end.date(),
        )
    ).mappings().all()
    selected = select_current_budget(
        [build_budget(row, ()) for row in rows],
        month_anchor,
    )
    return next(row for row in rows if row["id"] == selected.id)


def budget_view_response(budget_row, view: BudgetView) -> BudgetResponse:
    return BudgetResponse(
        id=budget_row["id"],
        user_id=budget_row["user_id"],
        name=budget_row["name"],
        month=budget_row["month"],
        total_limit=budget_row["total_limit"],
        rollover_enabled=bool(budget_row["rollover_enabled"]),
        period_start=view.period_start,
        period_end=view.period_end,
        categories=[
            BudgetCategoryResponse(
                id=entry.category.id,
                category=entry.category.category,
                budgeted_amount=entry.category.budgeted_amount,
                alert_threshold=entry.category.alert_threshold,
                spent_amount=entry.spent_amount,
                percentage=entry.percentage,
                remaining=entry.remaining,
                over_by=entry.over_by,
                status=entry.status,
            )
            for entry in view.categories
        ],
        total_budgeted=view.total_budgeted,
        total_spent=view.total_spent,
        total_remaining=view.total_remaining,
        status=view.status,
        created_at=budget_row["created_at"],
        updated_at=budget_row["updated_at"],
    )


def compute_stored_budget_view(conn, user_id: int, budget_row) -> BudgetView:
    budget = build_budget(budget_row, fetch_budget_categories(conn, budget_row["id"]))
    start, end = month_window(budget.month)
    expenses = fetch_expense_transactions(conn, user_id, start, end)
    return compute_budget_view(budget, expenses)


def load_budget_view(conn, user_id: int, budget_row) -> BudgetResponse:
    try:
        view = compute_stored_budget_view(conn, user_id, budget_row)
    except InvalidInput as exc:
        logger.warning("Budget %s cannot be evaluated: %s", budget_row["id"], exc)
        raise HTTPException(
            status_code=400,
            detail=f"Invalid budget {budget_row['id']}: {exc}",
        ) from exc
    return budget_view_response(budget_row, view)


def insert_budget_categories(conn, budget_id: int, entries: list[BudgetCategoryPayload]) -> None:
    if not entries:
        return
    conn.execute(
        insert(budget_categories),
        [
            {
                "budget_id": budget_id,
                "position": position,
                "category": entry.category,
                "budgeted_amount": entry.budgeted_amount,
                "alert_threshold": entry.alert_threshold,
            }
            for position, entry in enumerate(entries)
        ],
    )


def goal_response(row, today: date) -> GoalResponse:
    progress = evaluate_goal(
        SavingsGoal(
            target_amount=coerce_decimal(row["target_amount"]),
            current_amount=coerce_decimal(row["current_amount"]),
            target_date=row["target_date"],
            is_completed=bool(row["is_completed"]),
        ),
        today,
    )
    return GoalResponse(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        target_amount=row["target_amount"],
        current_amount=row["current_amount"],
        target_date=row["target_date"],
        is_completed=bool(row["is_completed"]),
        progress=progress.progress,
        remaining=progress.remaining,
        reached=progress.reached,
        days_left=progress.days_left,
        overdue=progress.overdue,
        monthly_savings_needed=progress.monthly_savings_needed,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def fetch_type_total(conn, user_id: int, start: datetime, end: datetime, txn_type: str) -> Decimal:
    total_expr = func.coalesce(func.sum(transactions.c.amount), 0)
    stmt = select(total_expr).where(
        transactions.c.user_id == user_id,
        transactions.c.type == txn_type,
        transactions.c.date >= start,
        transactions.c.date <= end,
    )
    return coerce_decimal(conn.execute(stmt).scalar_one())


def fetch_transaction_count(conn, user_id: int, start: datetime, end: datetime) -> int:
    stmt = select(func.count()).where(
        transactions.c.user_id == user_id,
        transactions.c.date >= start,
        transactions.c.date <= end,
    )
    return int(conn.execute(stmt).scalar_one() or 0)


def fetch_recent_transactions(
    conn, user_id: int, start: datetime, end: datetime, limit: int = RECENT_TRANSACTIONS_LIMIT
) -> list:
    return conn.execute(
        select(transactions)
        .where(
            transactions.c.user_id == user_id,
            transactions.c.date >= start,
            transactions.c.date <= end,
        )
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .limit(limit)
    ).mappings().all()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)
    name = payload.name.strip() if payload.name else None

    stmt = (
        insert(users)
        .values(email=email, name=name, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.name, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Created user %s", row["id"])
    return UserResponse(id=row["id"], email=row["email"], name=row["name"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        logger.warning("Rejected login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], name=row["name"], created_at=row["created_at"])


@app.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    category: str | None = None,
    txn_type: str | None = Query(None, alias="type"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionListResponse:
    user_id = get_user_id(x_user_id)
    conditions = [transactions.c.user_id == user_id]
    if category:
        conditions.append(transactions.c.category == category)
    if txn_type:
        try:
            conditions.append(transactions.c.type == TransactionType.validate(txn_type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    if start_date is not None:
        conditions.append(transactions.c.date >= normalize_timestamp(start_date))
    if end_date is not None:
        conditions.append(transactions.c.date <= normalize_timestamp(end_date))

    with engine.begin() as conn:
        total = conn.execute(select(func.count()).select_from(transactions).where(*conditions)).scalar_one()
        rows = conn.execute(
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).mappings().all()

    return TransactionListResponse(
        transactions=[transaction_response(row) for row in rows],
        pagination=PaginationResponse(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
        ),
    )


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(transactions)
        .values(
            user_id=user_id,
            amount=payload.amount,
            description=payload.description,
            category=payload.category,
            type=payload.type,
            date=payload.date or utc_now(),
        )
        .returning(*transactions.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    logger.info("Created %s transaction %s for user %s", row["type"], row["id"], user_id)
    return transaction_response(row)


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id,
                transactions.c.user_id == user_id,
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(row)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        changes = TransactionUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(transactions)
        .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
        .values(**changes)
        .returning(*transactions.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    logger.info("Updated transaction %s for user %s", transaction_id, user_id)
    return transaction_response(row)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = transactions.delete().where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Transaction not found.")
    logger.info("Deleted transaction %s for user %s", transaction_id, user_id)
    return {"status": "deleted"}


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(budgets)
            .where(budgets.c.user_id == user_id)
            .order_by(budgets.c.month.desc(), budgets.c.created_at.desc(), budgets.c.id.desc())
        ).mappings().all()
        return [load_budget_view(conn, user_id, row) for row in rows]


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(budgets)
            .values(
                user_id=user_id,
                name=payload.name,
                month=date.fromisoformat(payload.month),
                total_limit=payload.total_limit,
                rollover_enabled=payload.rollover_enabled,
            )
            .returning(*budgets.c)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=500, detail="Failed to create budget.")
        insert_budget_categories(conn, row["id"], payload.categories)
        response = load_budget_view(conn, user_id, row)

    logger.info(
        "Created budget %s for user %s (%s, %d categories)",
        row["id"],
        user_id,
        payload.month,
        len(payload.categories),
    )
    return response


@app.get("/budgets/current/month", response_model=BudgetResponse)
def get_current_month_budget(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        try:
            row = fetch_budget_for_month(conn, user_id, utc_now().date())
        except BudgetNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return load_budget_view(conn, user_id, row)


@app.get("/budgets/{budget_id}", response_model=BudgetResponse)
def get_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Budget not found.")
        return load_budget_view(conn, user_id, row)


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            update(budgets)
            .where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
            .values(
                name=payload.name,
                month=date.fromisoformat(payload.month),
                total_limit=payload.total_limit,
                rollover_enabled=payload.rollover_enabled,
            )
            .returning(*budgets.c)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Budget not found.")
        conn.execute(budget_categories.delete().where(budget_categories.c.budget_id == budget_id))
        insert_budget_categories(conn, budget_id, payload.categories)
        response = load_budget_view(conn, user_id, row)

    logger.info("Updated budget %s for user %s", budget_id, user_id)
    return response


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        owned = conn.execute(
            select(budgets.c.id).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        ).first()
        if not owned:
            raise HTTPException(status_code=404, detail="Budget not found.")
        conn.execute(budget_categories.delete().where(budget_categories.c.budget_id == budget_id))
        conn.execute(budgets.delete().where(budgets.c.id == budget_id))
    logger.info("Deleted budget %s for user %s", budget_id, user_id)
    return {"status": "deleted"}


@app.get("/goals", response_model=list[GoalResponse])
def list_goals(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[GoalResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(goals)
            .where(goals.c.user_id == user_id)
            .order_by(goals.c.created_at.desc(), goals.c.id.desc())
        ).mappings().all()
    today = utc_now().date()
    return [goal_response(row, today) for row in rows]


@app.post("/goals", response_model=GoalResponse)
def create_goal(
    payload: GoalPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = GoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(goals)
        .values(
            user_id=user_id,
            title=payload.title,
            description=payload.description,
            target_amount=payload.target_amount,
            target_date=payload.target_date,
        )
        .returning(*goals.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create goal.")
    logger.info("Created goal %s for user %s", row["id"], user_id)
    return goal_response(row, utc_now().date())


@app.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(
    goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(goals).where(goals.c.id == goal_id, goals.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Goal not found.")
    return goal_response(row, utc_now().date())


@app.put("/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: int,
    payload: GoalUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        changes = GoalUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(goals)
        .where(goals.c.id == goal_id, goals.c.user_id == user_id)
        .values(**changes)
        .returning(*goals.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Goal not found.")
    logger.info("Updated goal %s for user %s", goal_id, user_id)
    return goal_response(row, utc_now().date())


@app.delete("/goals/{goal_id}")
def delete_goal(goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = goals.delete().where(goals.c.id == goal_id, goals.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Goal not found.")
    logger.info("Deleted goal %s for user %s", goal_id, user_id)
    return {"status": "deleted"}


@app.get("/reports/dashboard", response_model=DashboardSummaryResponse)
def dashboard_summary(
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardSummaryResponse:
    user_id = get_user_id(x_user_id)
    month_date = utc_now().date()
    if month:
        try:
            month_date = parse_month_value(month)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    start, end = month_window(month_date)

    with engine.begin() as conn:
        total_income = fetch_type_total(conn, user_id, start, end, INCOME)
        total_expenses = fetch_type_total(conn, user_id, start, end, EXPENSE)
        transaction_count = fetch_transaction_count(conn, user_id, start, end)
        recent_rows = fetch_recent_transactions(conn, user_id, start, end)
        budget_id = None
        budget_status = None
        try:
            budget_row = fetch_budget_for_month(conn, user_id, month_date)
        except BudgetNotFound:
            budget_row = None
        if budget_row is not None:
            try:
                view = compute_stored_budget_view(conn, user_id, budget_row)
            except InvalidInput as exc:
                logger.warning("Budget %s cannot be evaluated: %s", budget_row["id"], exc)
            else:
                budget_id = budget_row["id"]
                budget_status = view.status

    return DashboardSummaryResponse(
        month=month_start(month_date).strftime("%Y-%m"),
        period_start=start,
        period_end=end,
        total_income=total_income,
        total_expenses=total_expenses,
        net_cashflow=total_income - total_expenses,
        transaction_count=transaction_count,
        budget_id=budget_id,
        budget_status=budget_status,
        recent_transactions=[transaction_response(row) for row in recent_rows],
    )
