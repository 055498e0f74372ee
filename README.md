# walletsvc

A wallet service for a paper-trading platform. It keeps wallets (one balance
per member and currency) in SQLite, records every movement of money as a
transaction record, and can roll a successful transaction back.

Balance updates use optimistic concurrency: a wallet row is changed only when
its amount still matches what was read. A conflicting update is tried again,
up to eleven attempts in all, before `UpdateWalletInterruptedError` is raised.

## Installing

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Running the server

```
walletsvc
walletsvc --database /path/to/wallet.db
```

The command (`walletsvc.server:main`) starts:

- a gRPC server with the service `wallet.WalletService`. Its methods are
  `CreateWallet`, `GetWallets`, `DeleteWallet`, `Transaction`,
  `RollbackTransaction`, `GetTransactionRecord` and `GetTransactionRecords`.
  Requests and responses are JSON objects sent as raw bytes; errors are
  reported as gRPC status codes (`NOT_FOUND` for a missing wallet or record,
  `FAILED_PRECONDITION` for an insufficient balance or a rollback of an
  unsuccessful transaction, `ABORTED` when retries run out,
  `INVALID_ARGUMENT` for malformed requests).
- an HTTP server answering `GET /alive` and `GET /ready` with `200 ok` or
  `503 unavailable`.
- an empty `CronScheduler`.

It runs until interrupted. Configuration comes from the environment
(see `ServerConfig.from_env`):

| Variable                      | Meaning                          | Default     |
|-------------------------------|----------------------------------|-------------|
| `GRPC_SERVER_LISTEN_ADDRESS`  | host the gRPC server binds to    | `0.0.0.0`   |
| `GRPC_SERVER_LISTEN_PORT`     | port of the gRPC server          | `50051`     |
| `SERVER_LISTEN_ADDRESS`       | host the HTTP server binds to    | `0.0.0.0`   |
| `SERVER_LISTEN_PORT`          | port of the HTTP server          | `8080`      |
| `DATABASE_PATH`               | SQLite database file             | `wallet.db` |
| `MEMBER_GRPC_HOST`            | host of the member service       |             |
| `MEMBER_GRPC_PORT`            | port of the member service       |             |

`--database` overrides `DATABASE_PATH`. The schema is created on first use.

## Using the service from Python

`WalletService` takes a callable that returns a `sqlite3` connection. The
tables are created with `walletsvc.models.create_schema`.

```python
import sqlite3

from walletsvc.models import TransactionAction, create_schema
from walletsvc.wallet import TransactionRequest, WalletService

conn = sqlite3.connect("wallet.db")
create_schema(conn)

service = WalletService(lambda: conn)
wallet_id = service.create_wallet(member_id=1, currency="USD")

result = service.transaction(
    TransactionRequest(
        wallet_id=wallet_id,
        action=TransactionAction.DEPOSIT,
        amount="100.50",
        currency="USD",
        committer_id=1,
    )
)
print(result.before_amount, result.after_amount)  # 0 100.5
```

- `get_wallets(wallet_id=..., member_id=..., currency=...)` returns a list of
  `WalletInfo`: one wallet by id, the wallets of a member, or all wallets.
  Giving both an id and a member id raises `ValueError`. The currency does not
  narrow a member query.
- `delete_wallet(wallet_id)` marks a wallet deleted; deleted wallets are no
  longer found.
- `transaction(request)` first writes the record as `PENDING`, then applies the
  signed amount and marks it `SUCCESS`; if the transaction is refused the
  record is marked `FAILED` and the error is raised. When
  `before_amount` is set, the change applies only if the wallet holds exactly
  that amount. Amounts are decimal strings.
- `rollback_transaction(RollbackTransactionRequest(...))` takes a successful
  transaction's amount back out of its wallet and marks the record `ROLLBACK`,
  storing the balances before and after and the rollbacker id.
- `get_transaction_record(record_id)` returns a `TransactionRecordInfo` or
  `None`.
- `get_transaction_records(GetTransactionRecordsRequest(...))` filters by
  member, committer, rollbacker, currencies, actions, statuses and a creation
  time range (Unix seconds), sorts by `Order` keys (`OrderColumn`,
  `OrderDirection` from `walletsvc.transaction_record_dao`) and pages with
  `walletsvc.pagination.Pagination`. It returns a `TransactionRecordPage`
  with the records and a `PaginationInfo`.

The storage layer is available directly in `walletsvc.wallet_dao` and
`walletsvc.transaction_record_dao` (`create`, `create_many`, `get`,
`get_all`, `get_page`, `modify`, plus `delete` for wallets). A `modify` that
matches no row raises `walletsvc.models.RecordConflictError`.

### Errors

Service errors derive from `WalletError`:

- `InsufficientBalanceError` — the balance would drop below zero
- `NoSuchWalletError` — the wallet does not exist
- `NoSuchTransactionRecordError` — the record to roll back does not exist
- `TransactionNotSuccessError` — only successful transactions can be rolled back
- `UpdateWalletInterruptedError` — concurrent updates kept the wallet from being changed

An amount that is not a finite decimal raises `ValueError`.

### Transaction states and actions

`TransactionStatus` is one of `NONE`, `PENDING`, `SUCCESS`, `FAILED` or
`ROLLBACK`. `TransactionAction` is one of `NONE`, `DEPOSIT`, `WITHDRAW`,
`BONUS`, `INTEREST`, `OPEN`, `CLOSE` or `MANUALLY`.

## Other services

`walletsvc.service.grpc_dial` opens an insecure channel that sends the current
request id and account (set with `request_context`) as metadata on every call.
`ServiceRegistry` dials the member service from `MEMBER_GRPC_HOST` and
`MEMBER_GRPC_PORT`, and wraps it in `walletsvc.member.MemberService` when it is
given a `member_client_factory` that turns the channel into a `MemberClient`.

## Scheduled jobs

`walletsvc.cronjob.CronScheduler` runs jobs at fixed intervals on background
threads. `run_job` runs a job once under a lock taken in a store such as
`MemoryLockStore`, skipping it (returning `False`) when another run holds the
lock, and sets the event passed to the job when `max_duration` runs out.

## What this package does not do

- It has no member-service client of its own: the server dials the member
  service but builds no `MemberService`, since no `MemberClient` is provided.
- The server's scheduler starts with no jobs.
- The gRPC interface speaks JSON, not protocol-buffer messages.
- Storage is SQLite only.