"""Storage of transaction records in the transaction_record table."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Union

from .models import (
    RecordConflictError,
    TransactionAction,
    TransactionRecordModel,
    TransactionStatus,
)
from .pagination import Pagination, PaginationInfo, offset_and_limit, pagination_info

_TABLE = "transaction_record"
_COLUMNS = tuple(f.name for f in fields(TransactionRecordModel))
_SELECT = "SELECT " + ", ".join(f"{_TABLE}.{c}" for c in _COLUMNS) + f" FROM {_TABLE}"


class OrderColumn(IntEnum):
    """Columns that records can be sorted by."""

    NONE = 0
    MEMBER_ID = 1
    COMMITTER_ID = 2
    CURRENCY = 3
    CREATED_AT = 4


class OrderDirection(IntEnum):
    """Sort direction; NONE leaves it to the database."""

    NONE = 0
    ASC = 1
    DESC = -1


_ORDER_COLUMNS = {
    OrderColumn.MEMBER_ID: "member_id",
    OrderColumn.COMMITTER_ID: "committer_id",
    OrderColumn.CURRENCY: "currency",
    OrderColumn.CREATED_AT: "created_at",
}
_ORDER_DIRECTIONS = {OrderDirection.ASC: " ASC", OrderDirection.DESC: " DESC"}


@dataclass(frozen=True)
class Order:
    """One sort key."""

    column: OrderColumn
    direction: OrderDirection = OrderDirection.NONE


@dataclass
class TransactionQuery:
    """Conditions for selecting records; None and empty lists do not filter."""

    id: int | None = None
    member_id: int | None = None
    committer_id: int | None = None
    rollbacker_id: int | None = None
    currency: list[str] = field(default_factory=list)
    action: list[TransactionAction] = field(default_factory=list)
    status: list[TransactionStatus] = field(default_factory=list)
    created_from: datetime | None = None
    created_to: datetime | None = None
    order_by: list[Order] = field(default_factory=list)


class _Unset(Enum):
    UNSET = "unset"


UNSET = _Unset.UNSET


@dataclass(frozen=True)
class TransactionUpdate:
    """Columns to change; UNSET leaves a column alone, None writes NULL."""

    before_amount: Union[Decimal, None, _Unset] = UNSET
    after_amount: Union[Decimal, None, _Unset] = UNSET
    status: Union[TransactionStatus, _Unset] = UNSET
    remark: Union[str, None, _Unset] = UNSET
    rollback_before_amount: Union[Decimal, None, _Unset] = UNSET
    rollback_after_amount: Union[Decimal, None, _Unset] = UNSET
    rollbacker_id: Union[int, None, _Unset] = UNSET


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


def _encode(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return _encode_time(value)
    if isinstance(value, IntEnum):
        return int(value)
    return value


def _decode_decimal(text: str | None) -> Decimal | None:
    return None if text is None else Decimal(text)


def _from_row(row: tuple) -> TransactionRecordModel:
    values = dict(zip(_COLUMNS, row))
    return TransactionRecordModel(
        id=values["id"],
        member_id=values["member_id"],
        wallet_id=values["wallet_id"],
        action=TransactionAction(values["action"]),
        amount=Decimal(values["amount"]),
        before_amount=_decode_decimal(values["before_amount"]),
        after_amount=_decode_decimal(values["after_amount"]),
        currency=values["currency"],
        committer_id=values["committer_id"],
        status=TransactionStatus(values["status"]),
        remark=values["remark"],
        created_at=_decode_time(values["created_at"]),
        updated_at=_decode_time(values["updated_at"]),
        rollback_before_amount=_decode_decimal(values["rollback_before_amount"]),
        rollback_after_amount=_decode_decimal(values["rollback_after_amount"]),
        rollbacker_id=values["rollbacker_id"],
    )


def _marks(values: list) -> str:
    return ", ".join("?" * len(values))


def _where(query: TransactionQuery) -> tuple[str, list]:
    clauses = ["1 = 1"]
    params: list = []
    for column in ("id", "member_id", "committer_id", "rollbacker_id"):
        value = getattr(query, column)
        if value is not None:
            clauses.append(f"{_TABLE}.{column} = ?")
            params.append(value)
    for column in ("currency", "status", "action"):
        values = getattr(query, column)
        if values:
            clauses.append(f"{_TABLE}.{column} IN ({_marks(values)})")
            params.extend(_encode(v) for v in values)
    if query.created_from is not None and query.created_to is not None:
        clauses.append(f"{_TABLE}.created_at BETWEEN ? AND ?")
        params.extend([_encode_time(query.created_from), _encode_time(query.created_to)])
    return " AND ".join(clauses), params


def _order_clause(orders: list[Order]) -> str:
    terms = []
    for order in orders:
        column = _ORDER_COLUMNS.get(order.column)
        if column is None:
            continue
        terms.append(column + _ORDER_DIRECTIONS.get(order.direction, ""))
    terms.append(f"{_TABLE}.id")
    return " ORDER BY " + ", ".join(terms)


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


def create(conn: sqlite3.Connection, model: TransactionRecordModel) -> int:
    """Insert a record, filling in its id and timestamps; return the rows written."""
    now = _now()
    model.created_at = model.created_at or now
    model.updated_at = model.updated_at or now
    values = [_encode(getattr(model, c)) for c in _COLUMNS]
    values[0] = model.id or None
    cursor = conn.execute(
        f"INSERT INTO {_TABLE} ({', '.join(_COLUMNS)}) VALUES ({_marks(values)})",
        values,
    )
    model.id = cursor.lastrowid
    return 1


def create_many(conn: sqlite3.Connection, models: Iterable[TransactionRecordModel]) -> int:
    """Insert all records or none of them; return how many were written."""
    models = list(models)
    with _savepoint(conn, "transaction_record_create_many"):
        for model in models:
            create(conn, model)
    return len(models)


def get(conn: sqlite3.Connection, query: TransactionQuery) -> TransactionRecordModel | None:
    """Return the first matching record, or None."""
    where, params = _where(query)
    row = conn.execute(
        f"{_SELECT} WHERE {where}{_order_clause(query.order_by)} LIMIT 1", params
    ).fetchone()
    return None if row is None else _from_row(row)


def get_all(conn: sqlite3.Connection, query: TransactionQuery) -> list[TransactionRecordModel]:
    """Return every matching record in the requested order."""
    where, params = _where(query)
    rows = conn.execute(f"{_SELECT} WHERE {where}{_order_clause(query.order_by)}", params)
    return [_from_row(row) for row in rows]


def get_page(
    conn: sqlite3.Connection, query: TransactionQuery, pagination: Pagination | None
) -> tuple[list[TransactionRecordModel], PaginationInfo]:
    """Return one page of matching records with a summary of the whole result."""
    pagination = pagination or Pagination()
    where, params = _where(query)
    (total,) = conn.execute(f"SELECT COUNT(*) FROM {_TABLE} WHERE {where}", params).fetchone()
    offset, limit = offset_and_limit(pagination)
    rows = conn.execute(
        f"{_SELECT} WHERE {where}{_order_clause(query.order_by)} LIMIT ? OFFSET ?",
        [*params, limit if limit > 0 else -1, offset],
    )
    return [_from_row(row) for row in rows], pagination_info(pagination, total, offset)


def modify(
    conn: sqlite3.Connection, model: TransactionRecordModel, update: TransactionUpdate
) -> None:
    """Apply an update, provided the record still has the status the model was read with."""
    attrs = {
        f.name: _encode(getattr(update, f.name))
        for f in fields(update)
        if getattr(update, f.name) is not UNSET
    }
    if not attrs:
        return
    attrs["updated_at"] = _encode_time(_now())
    assignments = ", ".join(f"{column} = ?" for column in attrs)
    cursor = conn.execute(
        f"UPDATE {_TABLE} SET {assignments} WHERE {_TABLE}.id = ? AND {_TABLE}.status = ?",
        [*attrs.values(), model.id, int(model.status)],
    )
    if cursor.rowcount == 0:
        raise RecordConflictError(f"transaction record {model.id} changed since it was read")