"""Outgoing connections to other services and the metadata sent with each call."""

from __future__ import annotations

import collections
import contextvars
import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field

import grpc

from .member import MemberClient, MemberService

log = logging.getLogger(__name__)

REQUEST_ID_KEY = "request_id"
ACCOUNT_KEY = "account"
MAX_MESSAGE_BYTES = 20 * 1024 * 1024

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
_account: contextvars.ContextVar[str] = contextvars.ContextVar("account", default="")


@contextmanager
def request_context(request_id: str = "", account: str = "") -> Iterator[None]:
    """Make a request id and account the ones sent with outgoing calls."""
    request_token = _request_id.set(request_id)
    account_token = _account.set(account)
    try:
        yield
    finally:
        _account.reset(account_token)
        _request_id.reset(request_token)


def outgoing_metadata(request_id: str, account: str) -> tuple[tuple[str, str], ...]:
    """The metadata attached to an outgoing call."""
    return ((REQUEST_ID_KEY, request_id), (ACCOUNT_KEY, account))


class _CallDetails(
    collections.namedtuple(
        "_CallDetails",
        ("method", "timeout", "metadata", "credentials", "wait_for_ready", "compression"),
    ),
    grpc.ClientCallDetails,
):
    pass


class _MetadataInterceptor(grpc.UnaryUnaryClientInterceptor):
    def intercept_unary_unary(self, continuation, client_call_details, request):
        details = _CallDetails(
            client_call_details.method,
            client_call_details.timeout,
            outgoing_metadata(_request_id.get(), _account.get()),
            client_call_details.credentials,
            getattr(client_call_details, "wait_for_ready", None),
            getattr(client_call_details, "compression", None),
        )
        outcome = continuation(details, request)
        error = outcome.exception()
        if error is not None:
            log.warning("call to %s failed: %s", client_call_details.method, error)
        return outcome


def grpc_dial(address: str) -> grpc.Channel:
    """Open an insecure channel that sends the request metadata with every call."""
    channel = grpc.insecure_channel(
        address,
        options=[
            ("grpc.max_receive_message_length", MAX_MESSAGE_BYTES),
            ("grpc.max_send_message_length", MAX_MESSAGE_BYTES),
        ],
    )
    return grpc.intercept_channel(channel, _MetadataInterceptor())


@dataclass
class ServiceRegistry:
    """The services this one calls, connected on initialize and closed on finalize.

    The member service is built only when a factory that turns a channel
    into a member client is given.
    """

    member_client_factory: Callable[[grpc.Channel], MemberClient] | None = None
    member: MemberService | None = field(default=None, init=False)
    address: str | None = field(default=None, init=False)
    _channel: grpc.Channel | None = field(default=None, init=False, repr=False)

    def initialize(self, config: Mapping[str, str]) -> None:
        """Connect to the member service named by MEMBER_GRPC_HOST and MEMBER_GRPC_PORT."""
        host = config.get("MEMBER_GRPC_HOST", "")
        port = config.get("MEMBER_GRPC_PORT", "")
        self.address = f"{host}:{port}"
        log.info("dialling member grpc server at %s", self.address)
        self._channel = grpc_dial(self.address)
        if self.member_client_factory is not None:
            self.member = MemberService(self.member_client_factory(self._channel))

    def finalize(self) -> None:
        """Close the connections; calling it twice is harmless."""
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        self.member = None