from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from fintrack.db import atomic, categories, transactions
from fintrack.errors import Conflict, NotFound, ValidationError
from fintrack.patches import CategoryPatch, is_set
from fintrack.reconciliation import EXPENSE, INCOME, normalize_type

logger = logging.getLogger(__name__)

DEFAULT_ICON = "FiTag"

DEFAULT_CATEGORIES = [
    ("Salary", INCOME),
    ("Freelance", INCOME),
    ("Other Income", INCOME),
    ("Groceries", EXPENSE),
    ("Rent", EXPENSE),
    ("Dining", EXPENSE),
    ("Utilities", EXPENSE),
    ("Transport", EXPENSE),
    ("Other", EXPENSE),
]


def validate_type(value: Optional[str]) -> str:
    if value is None:
        raise ValidationError("Type must be either 'income' or 'expense'.")
    try:
        return normalize_type(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _clean_name(value: Optional[str]) -> str:
    name = (value or "").strip()
    if not name:
        raise ValidationError("Category name required.")
    return name


def _clean_icon(value: Optional[str]) -> str:
    icon = (value or "").strip()
    return icon or DEFAULT_ICON


def _fetch(conn: Connection, category_id: int, user_id: int) -> dict:
    row = conn.execute(
        select(categories).where(categories.c.id == category_id, categories.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise NotFound("Category not found.")
    return dict(row)


def _name_taken(
    conn: Connection,
    user_id: int,
    name: str,
    category_type: str,
    exclude_id: Optional[int] = None,
) -> bool:
    stmt = select(categories.c.id).where(
        categories.c.user_id == user_id,
        categories.c.name == name,
        categories.c.type == category_type,
    )
    if exclude_id is not None:
        stmt = stmt.where(categories.c.id != exclude_id)
    return conn.execute(stmt.limit(1)).first() is not None


def _usage_count(conn: Connection, category_id: int) -> int:
    return conn.execute(
        select(func.count()).select_from(transactions).where(
            transactions.c.category_id == category_id
        )
    ).scalar_one()


def ensure_default_categories(conn: Connection, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [
            {"user_id": user_id, "name": name, "type": category_type, "icon": DEFAULT_ICON}
            for name, category_type in DEFAULT_CATEGORIES
        ],
    )


def create_category(
    engine: Engine,
    user_id: int,
    name: str,
    type: str,
    icon: Optional[str] = None,
) -> dict:
    name = _clean_name(name)
    category_type = validate_type(type)
    with atomic(engine) as conn:
        if _name_taken(conn, user_id, name, category_type):
            raise Conflict("Category with this name already exists for this type.")
        row = conn.execute(
            insert(categories)
            .values(user_id=user_id, name=name, type=category_type, icon=_clean_icon(icon))
            .returning(*categories.c)
        ).mappings().first()
    return dict(row)


def get_category(engine: Engine, category_id: int, user_id: int) -> dict:
    with engine.connect() as conn:
        return _fetch(conn, category_id, user_id)


def list_categories(engine: Engine, user_id: int, type: Optional[str] = None) -> List[dict]:
    stmt = select(categories).where(categories.c.user_id == user_id)
    if type is not None:
        stmt = stmt.where(categories.c.type == validate_type(type))
    stmt = stmt.order_by(categories.c.type.asc(), categories.c.name.asc(), categories.c.id.asc())
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [dict(row) for row in rows]


def update_category(engine: Engine, category_id: int, user_id: int, patch: CategoryPatch) -> dict:
    values = {}
    if is_set(patch.name):
        values["name"] = _clean_name(patch.name)
    if is_set(patch.type):
        values["type"] = validate_type(patch.type)
    if is_set(patch.icon):
        values["icon"] = _clean_icon(patch.icon)

    with atomic(engine) as conn:
        existing = _fetch(conn, category_id, user_id)
        name = values.get("name", existing["name"])
        category_type = values.get("type", existing["type"])
        if (name, category_type) != (existing["name"], existing["type"]):
            if _name_taken(conn, user_id, name, category_type, exclude_id=category_id):
                raise Conflict("Category with this name already exists for this type.")
        if category_type != existing["type"] and _usage_count(conn, category_id):
            # Existing transactions would no longer match their category's type.
            raise Conflict("Cannot change the type of a category with existing transactions.")
        if values:
            conn.execute(
                update(categories)
                .where(categories.c.id == category_id, categories.c.user_id == user_id)
                .values(**values)
            )
        row = _fetch(conn, category_id, user_id)
    return row


def delete_category(engine: Engine, category_id: int, user_id: int) -> None:
    with atomic(engine) as conn:
        _fetch(conn, category_id, user_id)
        usage = _usage_count(conn, category_id)
        if usage:
            raise Conflict(f"Cannot delete category with {usage} existing transactions.")
        conn.execute(
            delete(categories).where(categories.c.id == category_id, categories.c.user_id == user_id)
        )
    logger.info("Deleted category %s for user %s", category_id, user_id)
