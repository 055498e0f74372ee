"""The wallet service process: a gRPC server, a health server and the scheduler."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sqlite3
import threading
from collections.abc import Callable, Mapping
from concurrent import futures
from dataclasses import asdict, dataclass, replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import grpc

from .cronjob import cron
from .models import create_schema
from .pagination import Pagination
from .service import ServiceRegistry
from .transaction_record_dao import Order, OrderColumn, OrderDirection
from .wallet import (
    GetTransactionRecordsRequest,
    InsufficientBalanceError,
    NoSuchTransactionRecordError,
    NoSuchWalletError,
    RollbackTransactionRequest,
    TransactionNotSuccessError,
    TransactionRequest,
    UpdateWalletInterruptedError,
    WalletError,
    WalletService,
)

log = logging.getLogger(__name__)

SERVICE_NAME = "wallet.WalletService"

_ERROR_CODES: tuple[tuple[type[BaseException], grpc.StatusCode], ...] = (
    (NoSuchWalletError, grpc.StatusCode.NOT_FOUND),
    (NoSuchTransactionRecordError, grpc.StatusCode.NOT_FOUND),
    (InsufficientBalanceError, grpc.StatusCode.FAILED_PRECONDITION),
    (TransactionNotSuccessError, grpc.StatusCode.FAILED_PRECONDITION),
    (UpdateWalletInterruptedError, grpc.StatusCode.ABORTED),
    (WalletError, grpc.StatusCode.UNKNOWN),
    (ValueError, grpc.StatusCode.INVALID_ARGUMENT),
    (TypeError, grpc.StatusCode.INVALID_ARGUMENT),
    (KeyError, grpc.StatusCode.INVALID_ARGUMENT),
)


@dataclass(frozen=True)
class ServerConfig:
    """Where the servers listen and where the wallets are stored."""

    grpc_address: str = "0.0.0.0"
    grpc_port: str = "50051"
    http_address: str = "0.0.0.0"
    http_port: str = "8080"
    database: str = "wallet.db"

    @property
    def grpc_target(self) -> str:
        return f"{self.grpc_address}:{self.grpc_port}"

    @property
    def http_target(self) -> str:
        return f"{self.http_address}:{self.http_port}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        """Read the configuration from environment variables, with defaults."""
        env = os.environ if environ is None else environ
        return cls(
            grpc_address=env.get("GRPC_SERVER_LISTEN_ADDRESS", cls.grpc_address),
            grpc_port=env.get("GRPC_SERVER_LISTEN_PORT", cls.grpc_port),
            http_address=env.get("SERVER_LISTEN_ADDRESS", cls.http_address),
            http_port=env.get("SERVER_LISTEN_PORT", cls.http_port),
            database=env.get("DATABASE_PATH", cls.database),
        )


def _create_wallet(service: WalletService, data: dict) -> dict:
    return {"wallet_id": service.create_wallet(int(data["member_id"]), str(data["currency"]))}


def _get_wallets(service: WalletService, data: dict) -> dict:
    wallets = service.get_wallets(
        wallet_id=data.get("id"), member_id=data.get("member_id"), currency=data.get("currency")
    )
    return {"wallets": [asdict(w) for w in wallets]}


def _delete_wallet(service: WalletService, data: dict) -> dict:
    service.delete_wallet(int(data["id"]))
    return {}


def _transaction(service: WalletService, data: dict) -> dict:
    return asdict(service.transaction(TransactionRequest(**data)))


def _rollback_transaction(service: WalletService, data: dict) -> dict:
    service.rollback_transaction(RollbackTransactionRequest(**data))
    return {}


def _get_transaction_record(service: WalletService, data: dict) -> dict:
    record = service.get_transaction_record(int(data["id"]))
    return {"record": None if record is None else asdict(record)}


_COLUMNS = {c.value for c in OrderColumn}
_DIRECTIONS = {d.value for d in OrderDirection}


def _order(item: Mapping[str, Any]) -> Order | None:
    column = item.get("order_by", 0)
    if column not in _COLUMNS or column == OrderColumn.NONE:
        return None
    direction = item.get("order_direction", 0)
    if direction not in _DIRECTIONS:
        direction = OrderDirection.NONE
    return Order(OrderColumn(column), OrderDirection(direction))


def _get_transaction_records(service: WalletService, data: dict) -> dict:
    data = dict(data)
    orders = [o for o in map(_order, data.pop("order", [])) if o is not None]
    page_request = data.pop("pagination", None)
    pagination = None if page_request is None else Pagination(**page_request)
    page = service.get_transaction_records(
        GetTransactionRecordsRequest(**data, order=orders, pagination=pagination)
    )
    return {
        "records": [asdict(r) for r in page.records],
        "pagination_info": asdict(page.pagination),
    }


_HANDLERS: dict[str, Callable[[WalletService, dict], dict]] = {
    "CreateWallet": _create_wallet,
    "GetWallets": _get_wallets,
    "DeleteWallet": _delete_wallet,
    "Transaction": _transaction,
    "RollbackTransaction": _rollback_transaction,
    "GetTransactionRecord": _get_transaction_record,
    "GetTransactionRecords": _get_transaction_records,
}


def _status_for(exc: BaseException) -> grpc.StatusCode:
    for error_type, code in _ERROR_CODES:
        if isinstance(exc, error_type):
            return code
    return grpc.StatusCode.INTERNAL


def _method_handler(
    service: WalletService, handler: Callable[[WalletService, dict], dict]
) -> grpc.RpcMethodHandler:
    def behaviour(request: bytes, context: grpc.ServicerContext) -> bytes:
        try:
            data = json.loads(request or b"{}")
            if not isinstance(data, dict):
                raise ValueError("request body must be a JSON object")
            return json.dumps(handler(service, data)).encode()
        except Exception as exc:
            code = _status_for(exc)
            if code is grpc.StatusCode.INTERNAL:
                log.exception("[PANIC] %s", exc)
            context.abort(code, str(exc))
            raise

    return grpc.unary_unary_rpc_method_handler(behaviour)


def build_grpc_server(service: WalletService) -> grpc.Server:
    """A gRPC server exposing the wallet operations with JSON bodies; no port is bound."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=10))
    handlers = {name: _method_handler(service, h) for name, h in _HANDLERS.items()}
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
    )
    return server


class _HealthServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int]) -> None:
        super().__init__(address, _HealthHandler)
        self.alive = False
        self.ready = False


class _HealthHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        flags = {"/alive": self.server.alive, "/ready": self.server.ready}
        if self.path not in flags:
            self.send_error(404)
            return
        ok = flags[self.path]
        body = b"ok" if ok else b"unavailable"
        self.send_response(200 if ok else 503)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        log.debug(fmt, *args)


def build_http_server(address: str) -> _HealthServer:
    """An HTTP server answering /alive and /ready from its alive and ready flags."""
    host, _, port = address.rpartition(":")
    if not port.isdigit():
        raise ValueError(f"address must end in a port number, got {address!r}")
    return _HealthServer((host, int(port)))


class _ThreadConnections:
    """One database connection per thread, created on first use."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._local = threading.local()
        self._lock = threading.Lock()
        self._opened: list[sqlite3.Connection] = []

    def __call__(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._path, check_same_thread=False)
            create_schema(conn)
            conn.commit()
            self._local.conn = conn
            with self._lock:
                self._opened.append(conn)
        return conn

    def close(self) -> None:
        with self._lock:
            for conn in self._opened:
                conn.close()
            self._opened.clear()


def main(argv: list[str] | None = None) -> int:
    """Run the wallet service until interrupted."""
    parser = argparse.ArgumentParser(prog="walletsvc", description="Run the wallet service.")
    parser.add_argument("--database", help="path of the wallet database file")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    config = ServerConfig.from_env()
    if args.database:
        config = replace(config, database=args.database)

    http_server = build_http_server(config.http_target)
    http_server.alive = True

    registry = ServiceRegistry()
    registry.initialize(os.environ)

    connections = _ThreadConnections(config.database)
    grpc_server = build_grpc_server(WalletService(connections))
    grpc_server.add_insecure_port(config.grpc_target)

    scheduler = cron()
    try:
        grpc_server.start()
        log.info("grpc serving on %s", config.grpc_target)
        http_server.ready = True
        log.info("Initialization complete, listening on %s...", config.http_target)
        http_server.serve_forever()
    except KeyboardInterrupt:
        log.info("shutting down")
    finally:
        http_server.ready = False
        scheduler.stop()
        grpc_server.stop(grace=None)
        registry.finalize()
        connections.close()
        http_server.server_close()
    return 0