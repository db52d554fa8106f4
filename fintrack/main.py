import logging
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import insert, select, update

from fintrack import accounts as account_store
from fintrack import categories as category_store
from fintrack import config, dashboard, ledger
from fintrack.db import atomic, create_db_engine, init_db, users
from fintrack.errors import Conflict, FinanceError, ValidationError
from fintrack.patches import AccountPatch, CategoryPatch, TransactionPatch

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="fintrack")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(config.DATABASE_URL)

PASSWORD_MAX_BYTES = 72
TREND_MONTHS = 6


@app.on_event("startup")
def startup() -> None:
    init_db(engine)


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


class CredentialsPayload(BaseModel):
    email: str
    password: str


class SignupPayload(CredentialsPayload):
    name: str | None = None


class ProfilePayload(BaseModel):
    name: str | None = None
    email: str | None = None
    current_password: str | None = None
    new_password: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    created_at: datetime | None = None


class AccountPayload(BaseModel):
    name: str
    type: str
    balance: Decimal = Decimal("0")


class AccountUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    balance: Decimal | None = None

    def to_patch(self) -> AccountPatch:
        return AccountPatch.from_mapping(self.model_dump(exclude_unset=True))


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    balance: Decimal
    initial_balance: Decimal
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str
    type: str
    icon: str | None = None


class CategoryUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    icon: str | None = None

    def to_patch(self) -> CategoryPatch:
        return CategoryPatch.from_mapping(self.model_dump(exclude_unset=True))


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    icon: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    amount: Decimal
    type: str
    account_id: int
    category_id: int
    date: date
    note: str | None = None


class TransactionUpdatePayload(BaseModel):
    """Partial update; omitted fields keep their stored values."""

    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal | None = None
    type: str | None = None
    account_id: int | None = None
    category_id: int | None = None
    on_date: date | None = Field(None, alias="date")
    note: str | None = None

    def to_patch(self) -> TransactionPatch:
        data = self.model_dump(exclude_unset=True)
        if "on_date" in data:
            data["date"] = data.pop("on_date")
        return TransactionPatch.from_mapping(data)


class AccountRef(BaseModel):
    id: int
    name: str


class CategoryRef(BaseModel):
    id: int
    name: str
    type: str


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    type: str
    note: str | None = None
    date: date
    account_id: int
    category_id: int
    created_at: datetime | None = None
    account: AccountRef
    category: CategoryRef


class PaginationResponse(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class TransactionPageResponse(BaseModel):
    transactions: list[TransactionResponse]
    pagination: PaginationResponse


class AccountTransactionResponse(BaseModel):
    id: int
    amount: Decimal
    type: str
    note: str | None = None
    date: date
    category_id: int


class AccountDetailResponse(AccountResponse):
    transactions: list[AccountTransactionResponse]


class CategoryShareResponse(BaseModel):
    name: str
    amount: Decimal
    percentage: Decimal


class TrendBucketResponse(BaseModel):
    label: str
    income: Decimal
    expense: Decimal


class DashboardResponse(BaseModel):
    range: str
    start_date: date
    end_date: date
    total_balance: Decimal
    income: Decimal
    expenses: Decimal
    net: Decimal
    transaction_count: int
    average_transaction: Decimal
    expense_breakdown: list[CategoryShareResponse]
    income_breakdown: list[CategoryShareResponse]
    trend: list[TrendBucketResponse]
    recent_transactions: list[TransactionResponse]


def hash_password(password: str) -> str:
    encoded = password.encode("utf-8")
    if len(encoded) > PASSWORD_MAX_BYTES:
        raise ValidationError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes.")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    encoded = password.encode("utf-8")
    # Such a password can never have been hashed.
    if len(encoded) > PASSWORD_MAX_BYTES:
        return False
    return bcrypt.checkpw(encoded, hashed_password.encode("utf-8"))


def normalize_email(value: str | None) -> str:
    email = (value or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("Valid email required.")
    return email


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.connect() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def _user_response(row) -> UserResponse:
    return UserResponse(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        created_at=row["created_at"],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse, status_code=201)
def signup(payload: SignupPayload) -> UserResponse:
    email = normalize_email(payload.email)
    if not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    name = payload.name.strip() if payload.name else None
    hashed_password = hash_password(payload.password)

    try:
        with atomic(engine) as conn:
            row = conn.execute(
                insert(users)
                .values(email=email, name=name, hashed_password=hashed_password)
                .returning(users.c.id, users.c.email, users.c.name, users.c.created_at)
            ).mappings().first()
            category_store.ensure_default_categories(conn, row["id"])
    except Conflict as exc:
        raise Conflict("Email already exists.") from exc
    logger.info("Registered user %s", row["id"])
    return _user_response(row)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = (payload.email or "").strip().lower()
    with engine.connect() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return _user_response(row)


@app.get("/users/me", response_model=UserResponse)
def get_me(x_user_id: str | None = Header(None, alias="x-user-id")) -> UserResponse:
    user_id = get_user_id(x_user_id)
    with engine.connect() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    return _user_response(row)


@app.put("/users/me", response_model=UserResponse)
def update_me(
    payload: ProfilePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserResponse:
    user_id = get_user_id(x_user_id)
    with atomic(engine) as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        values = {}
        if payload.new_password:
            if not payload.current_password:
                raise ValidationError("Current password is required.")
            if not verify_password(payload.current_password, row["hashed_password"]):
                raise ValidationError("Current password is incorrect.")
            values["hashed_password"] = hash_password(payload.new_password)
        if payload.name is not None:
            values["name"] = payload.name.strip() or None
        if payload.email is not None:
            email = normalize_email(payload.email)
            if email != row["email"]:
                taken = conn.execute(
                    select(users.c.id).where(users.c.email == email, users.c.id != user_id)
                ).first()
                if taken:
                    raise Conflict("Email is already in use.")
                values["email"] = email
        if values:
            conn.execute(update(users).where(users.c.id == user_id).values(**values))
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    return _user_response(row)


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    return [AccountResponse(**row) for row in account_store.list_accounts(engine, user_id)]


@app.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    row = account_store.create_account(
        engine, user_id, payload.name, payload.type, initial_balance=payload.balance
    )
    return AccountResponse(**row)


@app.get("/accounts/{account_id}", response_model=AccountDetailResponse)
def get_account(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountDetailResponse:
    user_id = get_user_id(x_user_id)
    return AccountDetailResponse(**account_store.get_account_detail(engine, account_id, user_id))


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int,
    payload: AccountUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    row = account_store.update_account(engine, account_id, user_id, payload.to_patch())
    return AccountResponse(**row)


@app.post("/accounts/{account_id}/recompute", response_model=AccountResponse)
def recompute_account(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    return AccountResponse(**account_store.recompute_balance(engine, account_id, user_id))


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    account_store.delete_account(engine, account_id, user_id)
    return {"status": "deleted"}


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    type: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    rows = category_store.list_categories(engine, user_id, type=type)
    return [CategoryResponse(**row) for row in rows]


@app.post("/categories", response_model=CategoryResponse, status_code=201)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    row = category_store.create_category(
        engine, user_id, payload.name, payload.type, icon=payload.icon
    )
    return CategoryResponse(**row)


@app.get("/categories/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    return CategoryResponse(**category_store.get_category(engine, category_id, user_id))


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    row = category_store.update_category(engine, category_id, user_id, payload.to_patch())
    return CategoryResponse(**row)


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    category_store.delete_category(engine, category_id, user_id)
    return {"status": "deleted"}


@app.get("/transactions", response_model=TransactionPageResponse)
def list_transactions(
    account_id: int | None = None,
    category_id: int | None = None,
    type: str | None = None,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    page: int = Query(1),
    limit: int = Query(config.DEFAULT_PAGE_LIMIT),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionPageResponse:
    user_id = get_user_id(x_user_id)
    filters = ledger.TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        type=type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return TransactionPageResponse(**ledger.list_transactions(engine, user_id, filters))


@app.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    row = ledger.create_transaction(
        engine,
        user_id,
        amount=payload.amount,
        type=payload.type,
        account_id=payload.account_id,
        category_id=payload.category_id,
        date=payload.date,
        note=payload.note,
    )
    return TransactionResponse(**row)


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    return TransactionResponse(**ledger.get_transaction(engine, transaction_id, user_id))


@app.patch("/transactions/{transaction_id}", response_model=TransactionResponse)
@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    row = ledger.update_transaction(engine, transaction_id, user_id, payload.to_patch())
    return TransactionResponse(**row)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    ledger.delete_transaction(engine, transaction_id, user_id)
    return {"status": "deleted"}


def _dashboard_entries(rows: list[dict]) -> list[dashboard.Transaction]:
    return [
        dashboard.Transaction(
            amount=row["amount"],
            type=row["type"],
            date=row["date"],
            category=row["category"]["name"],
        )
        for row in rows
    ]


@app.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    range_name: str = Query("month", alias="range"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    today = date.today()
    try:
        normalized_range = dashboard.normalize_range(range_name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    start_date, end_date = dashboard.period_range(normalized_range, today)

    rows = ledger.transactions_between(engine, user_id, start_date, end_date)
    balances = [row["balance"] for row in account_store.list_accounts(engine, user_id)]
    entries = _dashboard_entries(rows)

    summary = dashboard.summarize(entries, balances)
    if normalized_range == "week":
        trend = dashboard.weekly_trend(entries, today)
    else:
        trend_start = dashboard.shift_month_keep_day(today.replace(day=1), -(TREND_MONTHS - 1))
        trend_rows = ledger.transactions_between(engine, user_id, trend_start, today)
        trend = dashboard.monthly_trend(_dashboard_entries(trend_rows), today, months=TREND_MONTHS)

    return DashboardResponse(
        range=normalized_range,
        start_date=start_date,
        end_date=end_date,
        total_balance=summary.total_balance,
        income=summary.income,
        expenses=summary.expenses,
        net=summary.net,
        transaction_count=summary.transaction_count,
        average_transaction=summary.average_transaction,
        expense_breakdown=[
            CategoryShareResponse(name=share.name, amount=share.amount, percentage=share.percentage)
            for share in dashboard.category_breakdown(entries, "expense")
        ],
        income_breakdown=[
            CategoryShareResponse(name=share.name, amount=share.amount, percentage=share.percentage)
            for share in dashboard.category_breakdown(entries, "income")
        ],
        trend=[
            TrendBucketResponse(label=bucket.label, income=bucket.income, expense=bucket.expense)
            for bucket in trend
        ],
        recent_transactions=[
            TransactionResponse(**row) for row in rows[: account_store.RECENT_TRANSACTION_LIMIT]
        ],
    )
