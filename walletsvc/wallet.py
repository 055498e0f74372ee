"""Wallet operations: creating wallets, moving money and keeping a record of it."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from . import transaction_record_dao as record_dao
from . import wallet_dao
from .models import (
    RecordConflictError,
    TransactionAction,
    TransactionRecordModel,
    TransactionStatus,
    WalletModel,
)
from .pagination import Pagination, PaginationInfo
from .transaction_record_dao import Order, TransactionQuery, TransactionUpdate
from .wallet_dao import WalletQuery, WalletUpdate

log = logging.getLogger(__name__)

_MAX_ATTEMPTS = 11


class WalletError(Exception):
    """Base class of the errors a wallet operation reports."""


class InsufficientBalanceError(WalletError):
    """The transaction would leave the wallet below zero."""


class NoSuchWalletError(WalletError):
    """The wallet does not exist."""


class NoSuchTransactionRecordError(WalletError):
    """The transaction record does not exist."""


class TransactionNotSuccessError(WalletError):
    """Only a successful transaction can be rolled back."""


class UpdateWalletInterruptedError(WalletError):
    """The wallet kept changing underneath the update and the retries ran out."""


@dataclass(frozen=True)
class WalletInfo:
    """A wallet as reported to callers."""

    id: int
    member_id: int
    amount: str
    currency: str
    created_at: int
    updated_at: int


@dataclass(frozen=True)
class TransactionRequest:
    """A change of a wallet's balance by a signed amount.

    When before_amount is given, the change is applied only if the wallet
    holds exactly that amount.
    """

    wallet_id: int
    action: TransactionAction
    amount: str
    currency: str
    committer_id: int
    remark: str | None = None
    before_amount: str | None = None


@dataclass(frozen=True)
class TransactionResult:
    """The outcome of a successful transaction."""

    id: int
    before_amount: str
    after_amount: str
    currency: str
    status: TransactionStatus
    created_at: int
    updated_at: int


@dataclass(frozen=True)
class RollbackTransactionRequest:
    """Undo a successful transaction."""

    id: int
    rollbacker_id: int
    remark: str | None = None


@dataclass(frozen=True)
class TransactionRecordInfo:
    """A transaction record as reported to callers."""

    id: int
    member_id: int
    wallet_id: int
    action: TransactionAction
    amount: str
    currency: str
    committer_id: int
    status: TransactionStatus
    created_at: int
    updated_at: int
    remark: str | None = None
    before_amount: str | None = None
    after_amount: str | None = None
    rollback_before_amount: str | None = None
    rollback_after_amount: str | None = None
    rollbacker_id: int | None = None


@dataclass(frozen=True)
class GetTransactionRecordsRequest:
    """Filters, ordering and paging for listing transaction records."""

    member_id: int | None = None
    committer_id: int | None = None
    rollbacker_id: int | None = None
    currency: list[str] = field(default_factory=list)
    action: list[TransactionAction] = field(default_factory=list)
    status: list[TransactionStatus] = field(default_factory=list)
    created_from: int | None = None
    created_to: int | None = None
    order: list[Order] = field(default_factory=list)
    pagination: Pagination | None = None


@dataclass(frozen=True)
class TransactionRecordPage:
    """One page of transaction records."""

    records: list[TransactionRecordInfo]
    pagination: PaginationInfo


def _format(value: Decimal) -> str:
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def _canonical(value: Decimal) -> Decimal:
    return Decimal(_format(value))


def _format_optional(value: Decimal | None) -> str | None:
    return None if value is None else _format(value)


def _parse_amount(text: str) -> Decimal:
    try:
        value = Decimal(text)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"cannot read amount {text!r} as a decimal") from exc
    if not value.is_finite():
        raise ValueError(f"amount must be finite, got {text!r}")
    return _canonical(value)


def _unix(value: datetime | None) -> int:
    return 0 if value is None else int(value.timestamp())


def _wallet_info(model: WalletModel) -> WalletInfo:
    return WalletInfo(
        id=model.id,
        member_id=model.member_id,
        amount=_format(model.amount),
        currency=model.currency,
        created_at=_unix(model.created_at),
        updated_at=_unix(model.updated_at),
    )


def _record_info(model: TransactionRecordModel) -> TransactionRecordInfo:
    return TransactionRecordInfo(
        id=model.id,
        member_id=model.member_id,
        wallet_id=model.wallet_id,
        action=model.action,
        amount=_format(model.amount),
        currency=model.currency,
        committer_id=model.committer_id,
        status=model.status,
        created_at=_unix(model.created_at),
        updated_at=_unix(model.updated_at),
        remark=model.remark,
        before_amount=_format_optional(model.before_amount),
        after_amount=_format_optional(model.after_amount),
        rollback_before_amount=_format_optional(model.rollback_before_amount),
        rollback_after_amount=_format_optional(model.rollback_after_amount),
        rollbacker_id=model.rollbacker_id,
    )


@contextmanager
def _atomic(conn: sqlite3.Connection) -> Iterator[None]:
    conn.execute("SAVEPOINT wallet_service")
    try:
        yield
    except BaseException:
        conn.execute("ROLLBACK TO wallet_service")
        conn.execute("RELEASE wallet_service")
        raise
    conn.execute("RELEASE wallet_service")


class WalletService:
    """Wallet operations over the connection that ``connect`` returns."""

    def __init__(self, connect: Callable[[], sqlite3.Connection]) -> None:
        self._connect = connect

    def create_wallet(self, member_id: int, currency: str) -> int:
        """Open an empty wallet and return its id."""
        conn = self._connect()
        model = WalletModel(member_id=member_id, currency=currency, amount=Decimal(0))
        try:
            wallet_dao.create(conn, model)
        except sqlite3.Error:
            log.error("failed to create wallet for member %d", member_id)
            raise
        conn.commit()
        return model.id

    def get_wallets(
        self,
        wallet_id: int | None = None,
        member_id: int | None = None,
        currency: str | None = None,
    ) -> list[WalletInfo]:
        """Return one wallet by id, or the wallets of a member, or all wallets.

        The currency is passed on with a member query but does not narrow it.
        """
        if wallet_id is not None and member_id is not None:
            raise ValueError("give a wallet id or a member id, not both")
        query = WalletQuery()
        if wallet_id is not None:
            query.id = [wallet_id]
        elif member_id is not None:
            query.member_id = [member_id]
            query.currency = currency
        return [_wallet_info(m) for m in wallet_dao.get_all(self._connect(), query)]

    def delete_wallet(self, wallet_id: int) -> None:
        """Delete a wallet."""
        conn = self._connect()
        try:
            wallet_dao.delete(conn, WalletQuery(id=[wallet_id]))
        except sqlite3.Error:
            log.error("failed to delete wallet %d", wallet_id)
            raise
        conn.commit()

    def transaction(self, request: TransactionRequest) -> TransactionResult:
        """Apply a signed amount to a wallet and record it.

        The record is written as pending first; it ends as successful, or as
        failed when the transaction is refused.
        """
        conn = self._connect()
        amount = _parse_amount(request.amount)
        expected = None if request.before_amount is None else _parse_amount(request.before_amount)

        wallet = wallet_dao.get(conn, WalletQuery(id=[request.wallet_id]))
        if wallet is None:
            raise NoSuchWalletError(f"no wallet {request.wallet_id}")

        record = TransactionRecordModel(
            member_id=wallet.member_id,
            wallet_id=request.wallet_id,
            action=TransactionAction(request.action),
            amount=amount,
            currency=request.currency,
            committer_id=request.committer_id,
            status=TransactionStatus.PENDING,
            remark=request.remark,
        )
        record_dao.create(conn, record)
        conn.commit()

        try:
            with _atomic(conn):
                if expected is not None:
                    before, after = self._apply_expected(conn, wallet, amount, expected)
                else:
                    before, after = self._apply_with_retry(
                        conn, request.wallet_id, amount, allow_negative=False
                    )
                record_dao.modify(
                    conn,
                    record,
                    TransactionUpdate(
                        before_amount=before,
                        after_amount=after,
                        status=TransactionStatus.SUCCESS,
                    ),
                )
        except Exception:
            self._mark_failed(conn, record)
            raise
        conn.commit()

        stored = record_dao.get(conn, TransactionQuery(id=record.id))
        if stored is None:
            raise NoSuchTransactionRecordError(f"transaction record {record.id} vanished")
        return TransactionResult(
            id=stored.id,
            before_amount=_format(before),
            after_amount=_format(after),
            currency=request.currency,
            status=TransactionStatus.SUCCESS,
            created_at=_unix(stored.created_at),
            updated_at=_unix(stored.updated_at),
        )

    def rollback_transaction(self, request: RollbackTransactionRequest) -> None:
        """Take a successful transaction's amount back out of its wallet."""
        conn = self._connect()
        record = record_dao.get(conn, TransactionQuery(id=request.id))
        if record is None:
            raise NoSuchTransactionRecordError(f"no transaction record {request.id}")
        if record.status != TransactionStatus.SUCCESS:
            raise TransactionNotSuccessError(
                f"transaction {request.id} is {record.status.name}, not SUCCESS"
            )

        with _atomic(conn):
            before, after = self._apply_with_retry(
                conn, record.wallet_id, -record.amount, allow_negative=True
            )
            update = TransactionUpdate(
                rollback_before_amount=before,
                rollback_after_amount=after,
                status=TransactionStatus.ROLLBACK,
                rollbacker_id=request.rollbacker_id,
                **({} if request.remark is None else {"remark": request.remark}),
            )
            record_dao.modify(conn, record, update)
        conn.commit()

    def get_transaction_record(self, record_id: int) -> TransactionRecordInfo | None:
        """Return one transaction record, or None if there is none."""
        model = record_dao.get(self._connect(), TransactionQuery(id=record_id))
        return None if model is None else _record_info(model)

    def get_transaction_records(
        self, request: GetTransactionRecordsRequest
    ) -> TransactionRecordPage:
        """Return a page of transaction records matching the request."""
        query = TransactionQuery(
            member_id=request.member_id,
            committer_id=request.committer_id,
            rollbacker_id=request.rollbacker_id,
            currency=list(request.currency),
            action=[TransactionAction(a) for a in request.action],
            status=[TransactionStatus(s) for s in request.status],
            order_by=list(request.order),
        )
        if request.created_from is not None:
            query.created_from = datetime.fromtimestamp(request.created_from, timezone.utc)
        if request.created_to is not None:
            query.created_to = datetime.fromtimestamp(request.created_to, timezone.utc)
        models, info = record_dao.get_page(self._connect(), query, request.pagination)
        return TransactionRecordPage(records=[_record_info(m) for m in models], pagination=info)

    @staticmethod
    def _apply_expected(
        conn: sqlite3.Connection, wallet: WalletModel, amount: Decimal, expected: Decimal
    ) -> tuple[Decimal, Decimal]:
        after = _canonical(expected + amount)
        if after < 0:
            raise InsufficientBalanceError(f"wallet {wallet.id} would hold {_format(after)}")
        wallet.amount = expected
        wallet_dao.modify(conn, wallet, WalletUpdate(amount=after))
        return expected, after

    @staticmethod
    def _apply_with_retry(
        conn: sqlite3.Connection, wallet_id: int, amount: Decimal, *, allow_negative: bool
    ) -> tuple[Decimal, Decimal]:
        for _ in range(_MAX_ATTEMPTS):
            wallet = wallet_dao.get(conn, WalletQuery(id=[wallet_id]))
            if wallet is None:
                raise NoSuchWalletError(f"no wallet {wallet_id}")
            before = _canonical(wallet.amount)
            after = _canonical(before + amount)
            if not allow_negative and after < 0:
                raise InsufficientBalanceError(f"wallet {wallet_id} would hold {_format(after)}")
            try:
                wallet_dao.modify(conn, wallet, WalletUpdate(amount=after))
            except RecordConflictError:
                log.debug("wallet %d changed while updating, retrying", wallet_id)
                continue
            return before, after
        raise UpdateWalletInterruptedError(f"wallet {wallet_id} kept changing during the update")

    @staticmethod
    def _mark_failed(conn: sqlite3.Connection, record: TransactionRecordModel) -> None:
        try:
            record_dao.modify(conn, record, TransactionUpdate(status=TransactionStatus.FAILED))
            conn.commit()
        except (RecordConflictError, sqlite3.Error) as exc:
            log.error("failed to mark transaction record %d failed: %s", record.id, exc)