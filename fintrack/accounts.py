from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import case, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from fintrack.db import accounts, atomic, transactions
from fintrack.errors import Conflict, NotFound, ValidationError
from fintrack.patches import AccountPatch, is_set
from fintrack.reconciliation import MAX_AMOUNT, ZERO

logger = logging.getLogger(__name__)

RECENT_TRANSACTION_LIMIT = 10


class AccountType:
    values = {"bank", "credit-card", "wallet", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower().replace("_", "-").replace(" ", "-")
        if normalized not in cls.values:
            raise ValidationError("Account type must be one of: bank, credit-card, wallet, other.")
        return normalized


def _clean_name(value: Optional[str]) -> str:
    name = (value or "").strip()
    if not name:
        raise ValidationError("Account name required.")
    return name


def _coerce_balance(value) -> Decimal:
    if value is None:
        raise ValidationError("Balance cannot be cleared.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError("Balance must be a number.") from exc
    if not amount.is_finite():
        raise ValidationError("Balance must be a number.")
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"Balance must be between -{MAX_AMOUNT} and {MAX_AMOUNT}.")
    return amount


def _ledger_sum(account_id: int):
    signed_amount = case(
        (transactions.c.type == "income", transactions.c.amount),
        else_=-transactions.c.amount,
    )
    return select(func.coalesce(func.sum(signed_amount), 0)).where(
        transactions.c.account_id == account_id
    )


def ledger_total(conn: Connection, account_id: int) -> Decimal:
    """Sum of signed contributions of every transaction on an account."""
    total = conn.execute(_ledger_sum(account_id)).scalar_one()
    return total if isinstance(total, Decimal) else Decimal(str(total))


def _fetch(conn: Connection, account_id: int, user_id: int, for_update: bool = False) -> dict:
    stmt = select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().first()
    if not row:
        raise NotFound("Account not found.")
    return dict(row)


def create_account(
    engine: Engine,
    user_id: int,
    name: str,
    type: str,
    initial_balance: Decimal = ZERO,
) -> dict:
    name = _clean_name(name)
    account_type = AccountType.validate(type)
    opening = _coerce_balance(initial_balance)
    with atomic(engine) as conn:
        row = conn.execute(
            insert(accounts)
            .values(
                user_id=user_id,
                name=name,
                type=account_type,
                balance=opening,
                initial_balance=opening,
            )
            .returning(*accounts.c)
        ).mappings().first()
    logger.info("Created account %s for user %s", row["id"], user_id)
    return dict(row)


def get_account(engine: Engine, account_id: int, user_id: int) -> dict:
    with engine.connect() as conn:
        return _fetch(conn, account_id, user_id)


def get_account_detail(engine: Engine, account_id: int, user_id: int) -> dict:
    """Account plus its most recent transactions."""
    with engine.connect() as conn:
        account = _fetch(conn, account_id, user_id)
        recent = conn.execute(
            select(transactions)
            .where(transactions.c.account_id == account_id, transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .limit(RECENT_TRANSACTION_LIMIT)
        ).mappings().all()
    account["transactions"] = [dict(row) for row in recent]
    return account


def list_accounts(engine: Engine, user_id: int) -> List[dict]:
    with engine.connect() as conn:
        rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id)
            .order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
        ).mappings().all()
    return [dict(row) for row in rows]


def update_account(engine: Engine, account_id: int, user_id: int, patch: AccountPatch) -> dict:
    """Apply an edit to name, type or balance.

    A balance edit re-bases the opening balance by the same difference, in the
    same statement that sets the balance, so postings committed since the
    account was read are kept in the ledger total.
    """
    values = {}
    if is_set(patch.name):
        values["name"] = _clean_name(patch.name)
    if is_set(patch.type):
        if patch.type is None:
            raise ValidationError("Account type cannot be cleared.")
        values["type"] = AccountType.validate(patch.type)
    new_balance = _coerce_balance(patch.balance) if is_set(patch.balance) else None

    with atomic(engine) as conn:
        _fetch(conn, account_id, user_id)
        if new_balance is not None:
            values["initial_balance"] = accounts.c.initial_balance + (
                new_balance - accounts.c.balance
            )
            values["balance"] = new_balance
        if values:
            conn.execute(
                update(accounts)
                .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
                .values(**values)
            )
        row = _fetch(conn, account_id, user_id)
    if new_balance is not None:
        logger.info(
            "Account %s balance set to %s; opening balance re-based to %s",
            account_id,
            new_balance,
            row["initial_balance"],
        )
    return row


def recompute_balance(engine: Engine, account_id: int, user_id: int) -> dict:
    """Rebuild the stored balance from the opening balance and the ledger."""
    with atomic(engine) as conn:
        account = _fetch(conn, account_id, user_id, for_update=True)
        conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(balance=accounts.c.initial_balance + _ledger_sum(account_id).scalar_subquery())
        )
        row = _fetch(conn, account_id, user_id)
    if row["balance"] != account["balance"]:
        logger.warning(
            "Account %s balance drifted: stored %s, ledger %s",
            account_id,
            account["balance"],
            row["balance"],
        )
    return row


def delete_account(engine: Engine, account_id: int, user_id: int) -> None:
    with atomic(engine) as conn:
        _fetch(conn, account_id, user_id)
        transaction_count = conn.execute(
            select(func.count()).select_from(transactions).where(
                transactions.c.account_id == account_id
            )
        ).scalar_one()
        if transaction_count:
            raise Conflict("Cannot delete account with existing transactions.")
        conn.execute(
            delete(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        )
    logger.info("Deleted account %s for user %s", account_id, user_id)
