from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List

ZERO = Decimal("0")
# Largest magnitude a Numeric(14, 2) money column holds.
MAX_AMOUNT = Decimal("999999999999.99")

INCOME = "income"
EXPENSE = "expense"
TRANSACTION_TYPES = (INCOME, EXPENSE)


@dataclass(frozen=True)
class Posting:
    """The part of a transaction that affects an account balance."""

    amount: Decimal
    type: str
    account_id: int


@dataclass(frozen=True)
class BalanceDelta:
    account_id: int
    amount: Decimal


def normalize_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError("Type must be either 'income' or 'expense'.")
    return normalized


def contribution(txn_type: str, amount: Decimal) -> Decimal:
    """Signed amount a transaction adds to its account balance."""
    value = _coerce_amount(amount)
    txn_type = normalize_type(txn_type)
    if txn_type == INCOME:
        return value
    return -value


def plan_create(posting: Posting) -> List[BalanceDelta]:
    return [BalanceDelta(posting.account_id, contribution(posting.type, posting.amount))]


def plan_delete(posting: Posting) -> List[BalanceDelta]:
    return [BalanceDelta(posting.account_id, -contribution(posting.type, posting.amount))]


def plan_update(old: Posting, new: Posting) -> List[BalanceDelta]:
    """Deltas that move a posting from its old state to its new state.

    Nothing is planned when amount, type and account are all unchanged.
    Otherwise the old contribution is reverted from the old account and the
    new one applied to the new account, even when both are the same account.
    """
    if _same_posting(old, new):
        return []
    return plan_delete(old) + plan_create(new)


def net_by_account(deltas: Iterable[BalanceDelta]) -> Dict[int, Decimal]:
    totals: Dict[int, Decimal] = {}
    for delta in deltas:
        totals[delta.account_id] = totals.get(delta.account_id, ZERO) + delta.amount
    return totals


def expected_balance(initial_balance: Decimal, postings: Iterable[Posting]) -> Decimal:
    total = _coerce_amount(initial_balance)
    for posting in postings:
        total += contribution(posting.type, posting.amount)
    return total


def _same_posting(old: Posting, new: Posting) -> bool:
    return (
        _coerce_amount(old.amount) == _coerce_amount(new.amount)
        and normalize_type(old.type) == normalize_type(new.type)
        and old.account_id == new.account_id
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
