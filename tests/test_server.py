import json
import sqlite3
import threading
import urllib.error
import urllib.request

import grpc
import pytest

from walletsvc.models import TransactionStatus, create_schema
from walletsvc.server import (
    SERVICE_NAME,
    ServerConfig,
    build_grpc_server,
    build_http_server,
)
from walletsvc.wallet import WalletService


@pytest.fixture
def channel():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    create_schema(conn)
    server = build_grpc_server(WalletService(lambda: conn))
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    client = grpc.insecure_channel(f"127.0.0.1:{port}")
    yield client
    client.close()
    server.stop(None)
    conn.close()


def call(channel, method, payload):
    raw = channel.unary_unary(f"/{SERVICE_NAME}/{method}")(json.dumps(payload).encode(), timeout=5)
    return json.loads(raw)


def test_config_from_env():
    config = ServerConfig.from_env(
        {
            "GRPC_SERVER_LISTEN_ADDRESS": "127.0.0.1",
            "GRPC_SERVER_LISTEN_PORT": "9001",
            "SERVER_LISTEN_ADDRESS": "localhost",
            "SERVER_LISTEN_PORT": "9002",
        }
    )
    assert config.grpc_target == "127.0.0.1:9001"
    assert config.http_target == "localhost:9002"


def test_config_defaults_when_env_is_empty():
    assert ServerConfig.from_env({}) == ServerConfig()


def test_create_and_get_wallet(channel):
    wallet_id = call(channel, "CreateWallet", {"member_id": 7, "currency": "USD"})["wallet_id"]
    wallets = call(channel, "GetWallets", {"id": wallet_id})["wallets"]
    assert len(wallets) == 1
    assert wallets[0]["id"] == wallet_id
    assert wallets[0]["member_id"] == 7
    assert wallets[0]["currency"] == "USD"
    assert wallets[0]["amount"] == "0"


def test_transaction_and_records(channel):
    wallet_id = call(channel, "CreateWallet", {"member_id": 3, "currency": "USD"})["wallet_id"]
    result = call(
        channel,
        "Transaction",
        {"wallet_id": wallet_id, "action": 1, "amount": "100", "currency": "USD", "committer_id": 9},
    )
    assert result["before_amount"] == "0"
    assert result["after_amount"] == "100"
    assert result["status"] == int(TransactionStatus.SUCCESS)

    record = call(channel, "GetTransactionRecord", {"id": result["id"]})["record"]
    assert record["wallet_id"] == wallet_id
    assert record["amount"] == "100"

    page = call(channel, "GetTransactionRecords", {"member_id": 3, "order": [{"order_by": 4}]})
    assert [r["id"] for r in page["records"]] == [result["id"]]
    assert page["pagination_info"]["total"] == 1


def test_rollback_restores_balance(channel):
    wallet_id = call(channel, "CreateWallet", {"member_id": 4, "currency": "USD"})["wallet_id"]
    result = call(
        channel,
        "Transaction",
        {"wallet_id": wallet_id, "action": 1, "amount": "25", "currency": "USD", "committer_id": 1},
    )
    assert call(channel, "RollbackTransaction", {"id": result["id"], "rollbacker_id": 2}) == {}
    wallets = call(channel, "GetWallets", {"id": wallet_id})["wallets"]
    assert wallets[0]["amount"] == "0"
    record = call(channel, "GetTransactionRecord", {"id": result["id"]})["record"]
    assert record["status"] == int(TransactionStatus.ROLLBACK)
    assert record["rollbacker_id"] == 2


def test_missing_record_is_null(channel):
    assert call(channel, "GetTransactionRecord", {"id": 999}) == {"record": None}


def test_insufficient_balance_is_failed_precondition(channel):
    wallet_id = call(channel, "CreateWallet", {"member_id": 5, "currency": "USD"})["wallet_id"]
    with pytest.raises(grpc.RpcError) as info:
        call(
            channel,
            "Transaction",
            {"wallet_id": wallet_id, "action": 2, "amount": "-1", "currency": "USD", "committer_id": 1},
        )
    assert info.value.code() == grpc.StatusCode.FAILED_PRECONDITION


def test_unknown_wallet_is_not_found(channel):
    with pytest.raises(grpc.RpcError) as info:
        call(
            channel,
            "Transaction",
            {"wallet_id": 404, "action": 1, "amount": "1", "currency": "USD", "committer_id": 1},
        )
    assert info.value.code() == grpc.StatusCode.NOT_FOUND


def test_bad_body_is_invalid_argument(channel):
    with pytest.raises(grpc.RpcError) as info:
        channel.unary_unary(f"/{SERVICE_NAME}/CreateWallet")(b"not json", timeout=5)
    assert info.value.code() == grpc.StatusCode.INVALID_ARGUMENT


def test_build_http_server_rejects_address_without_port():
    with pytest.raises(ValueError):
        build_http_server("localhost")


def test_health_endpoints_follow_flags():
    server = build_http_server("127.0.0.1:0")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    base = f"http://127.0.0.1:{server.server_address[1]}"
    try:
        with pytest.raises(urllib.error.HTTPError) as info:
            urllib.request.urlopen(f"{base}/alive", timeout=5)
        assert info.value.code == 503

        server.alive = True
        with urllib.request.urlopen(f"{base}/alive", timeout=5) as response:
            assert response.status == 200

        with pytest.raises(urllib.error.HTTPError) as info:
            urllib.request.urlopen(f"{base}/ready", timeout=5)
        assert info.value.code == 503

        with pytest.raises(urllib.error.HTTPError) as info:
            urllib.request.urlopen(f"{base}/elsewhere", timeout=5)
        assert info.value.code == 404
    finally:
        server.shutdown()
        server.server_close()