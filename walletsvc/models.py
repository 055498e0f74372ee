"""Wallet and transaction-record rows and the tables that hold them."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import IntEnum


class TransactionAction(IntEnum):
    """What a transaction does to a wallet."""

    NONE = 0
    DEPOSIT = 1
    WITHDRAW = 2
    BONUS = 3
    INTEREST = 4
    OPEN = 5
    CLOSE = 6
    MANUALLY = 7


class TransactionStatus(IntEnum):
    """Life-cycle state of a transaction record."""

    NONE = 0
    PENDING = 1
    SUCCESS = 2
    FAILED = 3
    ROLLBACK = 4


class RecordConflictError(Exception):
    """An update matched no row: the row changed or vanished since it was read."""


@dataclass
class WalletModel:
    """One row of the wallet table."""

    id: int = 0
    member_id: int = 0
    amount: Decimal = Decimal(0)
    currency: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass
class TransactionRecordModel:
    """One row of the transaction_record table."""

    id: int = 0
    member_id: int = 0
    wallet_id: int = 0
    action: TransactionAction = TransactionAction.NONE
    amount: Decimal = Decimal(0)
    before_amount: Decimal | None = None
    after_amount: Decimal | None = None
    currency: str = ""
    committer_id: int = 0
    status: TransactionStatus = TransactionStatus.NONE
    remark: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    rollback_before_amount: Decimal | None = None
    rollback_after_amount: Decimal | None = None
    rollbacker_id: int | None = None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS wallet (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    member_id INTEGER NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    created_at TEXT,
    updated_at TEXT,
    deleted_at TEXT
);
CREATE TABLE IF NOT EXISTS transaction_record (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    member_id INTEGER NOT NULL,
    wallet_id INTEGER NOT NULL,
    action INTEGER NOT NULL,
    amount TEXT NOT NULL,
    before_amount TEXT,
    after_amount TEXT,
    currency TEXT NOT NULL,
    committer_id INTEGER NOT NULL,
    status INTEGER NOT NULL,
    remark TEXT,
    created_at TEXT,
    updated_at TEXT,
    rollback_before_amount TEXT,
    rollback_after_amount TEXT,
    rollbacker_id INTEGER
);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """Create the wallet and transaction_record tables if they are missing."""
    conn.executescript(_SCHEMA)