import json
from concurrent import futures
from unittest.mock import Mock

import grpc
import pytest

from walletsvc.service import (
    ACCOUNT_KEY,
    REQUEST_ID_KEY,
    ServiceRegistry,
    grpc_dial,
    outgoing_metadata,
    request_context,
)


def _echo(request, context):
    metadata = {
        key: value
        for key, value in context.invocation_metadata()
        if key in (REQUEST_ID_KEY, ACCOUNT_KEY)
    }
    return json.dumps(metadata).encode()


def _fail(request, context):
    context.abort(grpc.StatusCode.NOT_FOUND, "missing")


@pytest.fixture
def echo_port():
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
    handler = grpc.method_handlers_generic_handler(
        "test.Echo",
        {
            "Meta": grpc.unary_unary_rpc_method_handler(_echo),
            "Fail": grpc.unary_unary_rpc_method_handler(_fail),
        },
    )
    server.add_generic_rpc_handlers((handler,))
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    yield port
    server.stop(None)


def test_outgoing_metadata_pairs():
    assert outgoing_metadata("r1", "acc") == ((REQUEST_ID_KEY, "r1"), (ACCOUNT_KEY, "acc"))


def test_dialled_channel_sends_request_context(echo_port):
    channel = grpc_dial(f"127.0.0.1:{echo_port}")
    try:
        call = channel.unary_unary("/test.Echo/Meta")
        with request_context(request_id="req-1", account="alice"):
            seen = json.loads(call(b"", timeout=5))
    finally:
        channel.close()
    assert seen == {REQUEST_ID_KEY: "req-1", ACCOUNT_KEY: "alice"}


def test_metadata_is_empty_outside_request_context(echo_port):
    channel = grpc_dial(f"127.0.0.1:{echo_port}")
    try:
        with request_context(request_id="inner", account="bob"):
            pass
        seen = json.loads(channel.unary_unary("/test.Echo/Meta")(b"", timeout=5))
    finally:
        channel.close()
    assert seen.get(REQUEST_ID_KEY, "") == ""
    assert seen.get(ACCOUNT_KEY, "") == ""


def test_errors_pass_through_interceptor(echo_port):
    channel = grpc_dial(f"127.0.0.1:{echo_port}")
    try:
        with pytest.raises(grpc.RpcError) as info:
            channel.unary_unary("/test.Echo/Fail")(b"", timeout=5)
    finally:
        channel.close()
    assert info.value.code() == grpc.StatusCode.NOT_FOUND


def test_registry_builds_member_service_from_factory():
    client = Mock()
    client.get_member.return_value = "member-7"
    channels = []

    def factory(channel):
        channels.append(channel)
        return client

    registry = ServiceRegistry(member_client_factory=factory)
    registry.initialize({"MEMBER_GRPC_HOST": "127.0.0.1", "MEMBER_GRPC_PORT": "1"})
    try:
        assert registry.address == "127.0.0.1:1"
        assert len(channels) == 1
        assert registry.member.get_member("who") == "member-7"
    finally:
        registry.finalize()
    assert registry.member is None


def test_registry_without_factory_has_no_member_service():
    registry = ServiceRegistry()
    registry.initialize({"MEMBER_GRPC_HOST": "localhost", "MEMBER_GRPC_PORT": "2"})
    assert registry.address == "localhost:2"
    assert registry.member is None
    registry.finalize()
    registry.finalize()
    assert registry.member is None