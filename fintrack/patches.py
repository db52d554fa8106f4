"""Typed partial updates.

Every field defaults to ``UNSET``, meaning "keep the stored value". Any other
value, ``None`` included, is an explicit change. Only fields that may be
cleared accept ``None``; the stores reject it everywhere else.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional, Union


class _Unset:
    _instance = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def is_set(value: Any) -> bool:
    return value is not UNSET


class _Patch:
    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]):
        """Build a patch from only the keys present in ``data``."""
        names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in names})


@dataclass(frozen=True)
class AccountPatch(_Patch):
    name: Union[str, _Unset] = UNSET
    type: Union[str, _Unset] = UNSET
    balance: Union[Decimal, _Unset] = UNSET


@dataclass(frozen=True)
class CategoryPatch(_Patch):
    name: Union[str, _Unset] = UNSET
    type: Union[str, _Unset] = UNSET
    icon: Union[str, _Unset] = UNSET


@dataclass(frozen=True)
class TransactionPatch(_Patch):
    amount: Union[Decimal, _Unset] = UNSET
    type: Union[str, _Unset] = UNSET
    account_id: Union[int, _Unset] = UNSET
    category_id: Union[int, _Unset] = UNSET
    date: Union[date, _Unset] = UNSET
    note: Union[Optional[str], _Unset] = UNSET
