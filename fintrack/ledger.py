"""
Transaction ledger.

Every write that touches a transaction also applies the matching balance
deltas to the affected accounts, inside the same database transaction. The
deltas are planned by ``fintrack.reconciliation`` and applied as SQL
increments (``balance = balance + :delta``), so concurrent postings against
one account serialize on its row instead of overwriting each other.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from fintrack import config
from fintrack.db import accounts, atomic, categories, transactions
from fintrack.errors import Conflict, NotFound, ValidationError
from fintrack.patches import TransactionPatch, is_set
from fintrack.reconciliation import (
    MAX_AMOUNT,
    ZERO,
    BalanceDelta,
    Posting,
    net_by_account,
    normalize_type,
    plan_create,
    plan_delete,
    plan_update,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
NOTE_MAX_LENGTH = 500


@dataclass(frozen=True)
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    page: int = 1
    limit: int = config.DEFAULT_PAGE_LIMIT


class _StaleRow(Exception):
    """The transaction row changed between reading and guarded write."""


def validate_amount(value) -> Decimal:
    if value is None:
        raise ValidationError("Valid amount is required.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError("Valid amount is required.") from exc
    if not amount.is_finite() or amount <= ZERO:
        raise ValidationError("Amount must be greater than zero.")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"Amount must be at most {MAX_AMOUNT}.")
    amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than zero.")
    return amount


def validate_type(value: Optional[str]) -> str:
    if value is None:
        raise ValidationError("Valid type is required (income or expense).")
    try:
        return normalize_type(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def clean_note(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    note = value.strip()
    if len(note) > NOTE_MAX_LENGTH:
        raise ValidationError(f"Note must be at most {NOTE_MAX_LENGTH} characters.")
    return note or None


def _owned_account(conn: Connection, account_id: int, user_id: int) -> dict:
    row = conn.execute(
        select(accounts.c.id, accounts.c.name).where(
            accounts.c.id == account_id, accounts.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise NotFound("Account not found.")
    return dict(row)


def _owned_category(conn: Connection, category_id: int, user_id: int) -> dict:
    row = conn.execute(
        select(categories.c.id, categories.c.name, categories.c.type).where(
            categories.c.id == category_id, categories.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise NotFound("Category not found.")
    return dict(row)


def _check_category_type(category: dict, txn_type: str) -> None:
    if category["type"] != txn_type:
        raise ValidationError(
            f"Category type ({category['type']}) does not match transaction type ({txn_type})."
        )


def _apply(conn: Connection, deltas: Iterable[BalanceDelta]) -> None:
    for delta in deltas:
        result = conn.execute(
            update(accounts)
            .where(accounts.c.id == delta.account_id)
            .values(balance=accounts.c.balance + delta.amount)
        )
        if result.rowcount != 1:
            raise Conflict("Account no longer exists.")
        logger.debug("Account %s balance %+f", delta.account_id, delta.amount)


def _detail_query():
    return select(
        transactions,
        accounts.c.name.label("account_name"),
        categories.c.name.label("category_name"),
        categories.c.type.label("category_type"),
    ).select_from(
        transactions.join(accounts, transactions.c.account_id == accounts.c.id).join(
            categories, transactions.c.category_id == categories.c.id
        )
    )


def _serialize(row) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "amount": row["amount"],
        "type": row["type"],
        "note": row["note"],
        "date": row["date"],
        "account_id": row["account_id"],
        "category_id": row["category_id"],
        "created_at": row["created_at"],
        "account": {"id": row["account_id"], "name": row["account_name"]},
        "category": {
            "id": row["category_id"],
            "name": row["category_name"],
            "type": row["category_type"],
        },
    }


def _load(conn: Connection, transaction_id: int, user_id: int) -> dict:
    row = conn.execute(
        _detail_query().where(
            transactions.c.id == transaction_id, transactions.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise NotFound("Transaction not found.")
    return _serialize(row)


def create_transaction(
    engine: Engine,
    user_id: int,
    amount: Decimal,
    type: str,
    account_id: int,
    category_id: int,
    date: date,
    note: Optional[str] = None,
) -> dict:
    amount = validate_amount(amount)
    txn_type = validate_type(type)
    if date is None:
        raise ValidationError("Date is required.")
    note = clean_note(note)

    with atomic(engine) as conn:
        _owned_account(conn, account_id, user_id)
        category = _owned_category(conn, category_id, user_id)
        _check_category_type(category, txn_type)

        transaction_id = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                account_id=account_id,
                category_id=category_id,
                amount=amount,
                type=txn_type,
                date=date,
                note=note,
            )
            .returning(transactions.c.id)
        ).scalar_one()
        _apply(conn, plan_create(Posting(amount, txn_type, account_id)))
        created = _load(conn, transaction_id, user_id)

    logger.info(
        "Created transaction %s (%s %s) on account %s",
        transaction_id,
        txn_type,
        amount,
        account_id,
    )
    return created


def get_transaction(engine: Engine, transaction_id: int, user_id: int) -> dict:
    with engine.connect() as conn:
        return _load(conn, transaction_id, user_id)


def _prepare_changes(patch: TransactionPatch) -> dict:
    changes = {}
    if is_set(patch.amount):
        changes["amount"] = validate_amount(patch.amount)
    if is_set(patch.type):
        changes["type"] = validate_type(patch.type)
    for field in ("account_id", "category_id", "date"):
        value = getattr(patch, field)
        if not is_set(value):
            continue
        if value is None:
            raise ValidationError(f"{field} cannot be cleared.")
        changes[field] = value
    if is_set(patch.note):
        changes["note"] = clean_note(patch.note)
    return changes


def _update_once(engine: Engine, transaction_id: int, user_id: int, changes: dict) -> dict:
    with atomic(engine) as conn:
        existing = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise NotFound("Transaction not found.")

        values = {key: value for key, value in changes.items() if value != existing[key]}
        if not values:
            return _load(conn, transaction_id, user_id)
        merged = {**existing, **values}

        if "account_id" in values:
            _owned_account(conn, merged["account_id"], user_id)
        if "category_id" in values or "type" in values:
            category = _owned_category(conn, merged["category_id"], user_id)
            _check_category_type(category, merged["type"])

        old = Posting(existing["amount"], existing["type"], existing["account_id"])
        new = Posting(merged["amount"], merged["type"], merged["account_id"])

        # Guard on the values the deltas and checks above were computed from.
        result = conn.execute(
            update(transactions)
            .where(
                transactions.c.id == transaction_id,
                transactions.c.user_id == user_id,
                transactions.c.amount == old.amount,
                transactions.c.type == old.type,
                transactions.c.account_id == old.account_id,
                transactions.c.category_id == existing["category_id"],
            )
            .values(**values)
        )
        if result.rowcount != 1:
            raise _StaleRow()

        deltas = plan_update(old, new)
        _apply(conn, deltas)
        updated = _load(conn, transaction_id, user_id)

    if deltas:
        logger.info(
            "Updated transaction %s with balance changes %s",
            transaction_id,
            {account: str(amount) for account, amount in net_by_account(deltas).items()},
        )
    else:
        logger.info("Updated transaction %s without balance changes", transaction_id)
    return updated


def update_transaction(
    engine: Engine,
    transaction_id: int,
    user_id: int,
    patch: TransactionPatch,
) -> dict:
    changes = _prepare_changes(patch)
    for attempt in range(1, config.MAX_RETRIES + 1):
        try:
            return _update_once(engine, transaction_id, user_id, changes)
        except _StaleRow:
            logger.info(
                "Transaction %s changed concurrently (attempt %s of %s)",
                transaction_id,
                attempt,
                config.MAX_RETRIES,
            )
    raise Conflict("Transaction was modified concurrently; please retry.")


def delete_transaction(engine: Engine, transaction_id: int, user_id: int) -> None:
    with atomic(engine) as conn:
        removed = conn.execute(
            delete(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .returning(transactions.c.amount, transactions.c.type, transactions.c.account_id)
        ).mappings().first()
        if not removed:
            raise NotFound("Transaction not found.")
        _apply(
            conn,
            plan_delete(Posting(removed["amount"], removed["type"], removed["account_id"])),
        )
    logger.info("Deleted transaction %s from account %s", transaction_id, removed["account_id"])


def _filter_conditions(user_id: int, filters: TransactionFilters) -> list:
    conditions = [transactions.c.user_id == user_id]
    if filters.account_id is not None:
        conditions.append(transactions.c.account_id == filters.account_id)
    if filters.category_id is not None:
        conditions.append(transactions.c.category_id == filters.category_id)
    if filters.type is not None:
        conditions.append(transactions.c.type == validate_type(filters.type))
    if filters.start_date is not None:
        conditions.append(transactions.c.date >= filters.start_date)
    if filters.end_date is not None:
        conditions.append(transactions.c.date <= filters.end_date)
    return conditions


def list_transactions(engine: Engine, user_id: int, filters: TransactionFilters) -> dict:
    if filters.page < 1:
        raise ValidationError("Page must be at least 1.")
    if not 1 <= filters.limit <= config.PAGE_LIMIT_MAX:
        raise ValidationError(f"Limit must be between 1 and {config.PAGE_LIMIT_MAX}.")
    if filters.start_date and filters.end_date and filters.start_date > filters.end_date:
        raise ValidationError("Start date must be on or before end date.")

    conditions = _filter_conditions(user_id, filters)
    with engine.connect() as conn:
        total = conn.execute(
            select(func.count()).select_from(transactions).where(*conditions)
        ).scalar_one()
        rows = conn.execute(
            _detail_query()
            .where(*conditions)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        ).mappings().all()

    return {
        "transactions": [_serialize(row) for row in rows],
        "pagination": {
            "total": total,
            "page": filters.page,
            "limit": filters.limit,
            "total_pages": math.ceil(total / filters.limit),
        },
    }


def transactions_between(
    engine: Engine, user_id: int, start_date: date, end_date: date
) -> List[dict]:
    """Every transaction of a user dated within [start_date, end_date]."""
    filters = TransactionFilters(start_date=start_date, end_date=end_date)
    with engine.connect() as conn:
        rows = conn.execute(
            _detail_query()
            .where(*_filter_conditions(user_id, filters))
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [_serialize(row) for row in rows]
