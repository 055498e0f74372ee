"""Storage of wallets in the wallet table."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from .models import RecordConflictError, WalletModel
from .pagination import Pagination, PaginationInfo, offset_and_limit, pagination_info

_COLUMNS = ("id", "member_id", "amount", "currency", "created_at", "updated_at", "deleted_at")
_SELECT = "SELECT " + ", ".join(f"wallet.{c}" for c in _COLUMNS) + " FROM wallet"


@dataclass
class WalletQuery:
    """Conditions for selecting wallets; empty lists do not filter.

    Only the id and member_id conditions are applied when selecting.
    """

    id: list[int] = field(default_factory=list)
    member_id: list[int] = field(default_factory=list)
    currency: str | None = None
    amount: Decimal | None = None


@dataclass(frozen=True)
class WalletUpdate:
    """New values for a wallet."""

    amount: Decimal


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ", timespec="microseconds")


def _decode_time(text: str | None) -> datetime | None:
    if text is None:
        return None
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)


def _from_row(row: tuple) -> WalletModel:
    id_, member_id, amount, currency, created_at, updated_at, deleted_at = row
    return WalletModel(
        id=id_,
        member_id=member_id,
        amount=Decimal(amount),
        currency=currency,
        created_at=_decode_time(created_at),
        updated_at=_decode_time(updated_at),
        deleted_at=_decode_time(deleted_at),
    )


def _marks(values: list) -> str:
    return ", ".join("?" * len(values))


def _where(query: WalletQuery) -> tuple[str, list]:
    clauses = ["wallet.deleted_at IS NULL"]
    params: list = []
    if query.id:
        clauses.append(f"wallet.id IN ({_marks(query.id)})")
        params.extend(query.id)
    if query.member_id:
        clauses.append(f"wallet.member_id IN ({_marks(query.member_id)})")
        params.extend(query.member_id)
    return " AND ".join(clauses), params


@contextmanager
def _savepoint(conn: sqlite3.Connection, name: str) -> Iterator[None]:
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except BaseException:
        conn.execute(f"ROLLBACK TO {name}")
        conn.execute(f"RELEASE {name}")
        raise
    conn.execute(f"RELEASE {name}")


def create(conn: sqlite3.Connection, model: WalletModel) -> int:
    """Insert a wallet, filling in its id and timestamps; return the rows written."""
    now = _now()
    model.created_at = model.created_at or now
    model.updated_at = model.updated_at or now
    cursor = conn.execute(
        "INSERT INTO wallet (id, member_id, amount, currency, created_at, updated_at, deleted_at)"
        " VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            model.id or None,
            model.member_id,
            str(model.amount),
            model.currency,
            _encode_time(model.created_at),
            _encode_time(model.updated_at),
            _encode_time(model.deleted_at),
        ),
    )
    model.id = cursor.lastrowid
    return 1


def create_many(conn: sqlite3.Connection, models: Iterable[WalletModel]) -> int:
    """Insert all wallets or none of them; return how many were written."""
    models = list(models)
    with _savepoint(conn, "wallet_create_many"):
        for model in models:
            create(conn, model)
    return len(models)


def get(conn: sqlite3.Connection, query: WalletQuery) -> WalletModel | None:
    """Return the first matching wallet, or None."""
    where, params = _where(query)
    row = conn.execute(f"{_SELECT} WHERE {where} ORDER BY wallet.id LIMIT 1", params).fetchone()
    return None if row is None else _from_row(row)


def get_all(conn: sqlite3.Connection, query: WalletQuery) -> list[WalletModel]:
    """Return every matching wallet."""
    where, params = _where(query)
    rows = conn.execute(f"{_SELECT} WHERE {where} ORDER BY wallet.id", params)
    return [_from_row(row) for row in rows]


def get_page(
    conn: sqlite3.Connection, query: WalletQuery, pagination: Pagination | None
) -> tuple[list[WalletModel], PaginationInfo]:
    """Return one page of matching wallets with a summary of the whole result."""
    pagination = pagination or Pagination()
    where, params = _where(query)
    (total,) = conn.execute(f"SELECT COUNT(*) FROM wallet WHERE {where}", params).fetchone()
    offset, limit = offset_and_limit(pagination)
    rows = conn.execute(
        f"{_SELECT} WHERE {where} ORDER BY wallet.id LIMIT ? OFFSET ?",
        [*params, limit if limit > 0 else -1, offset],
    )
    return [_from_row(row) for row in rows], pagination_info(pagination, total, offset)


def modify(conn: sqlite3.Connection, model: WalletModel, update: WalletUpdate) -> None:
    """Set a wallet's amount, provided it still holds the amount the model was read with."""
    cursor = conn.execute(
        "UPDATE wallet SET amount = ?, updated_at = ?"
        " WHERE wallet.id = ? AND wallet.amount = ? AND wallet.deleted_at IS NULL",
        (str(update.amount), _encode_time(_now()), model.id, str(model.amount)),
    )
    if cursor.rowcount == 0:
        raise RecordConflictError(f"wallet {model.id} changed since it was read")


def delete(conn: sqlite3.Connection, query: WalletQuery) -> None:
    """Mark matching wallets deleted; a query without conditions is refused."""
    if not (query.id or query.member_id):
        raise ValueError("refusing to delete wallets without a condition")
    where, params = _where(query)
    conn.execute(
        f"UPDATE wallet SET deleted_at = ? WHERE {where}",
        [_encode_time(_now()), *params],
    )