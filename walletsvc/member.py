"""Access to the member service through whatever client talks to it."""

from __future__ import annotations

from typing import Any, Protocol


class MemberClient(Protocol):
    """The calls the member service answers."""

    def create_member(self, request: Any) -> Any: ...

    def get_member(self, request: Any) -> Any: ...

    def get_members(self, request: Any) -> Any: ...

    def modify_member(self, request: Any) -> Any: ...

    def reset_password(self, request: Any) -> Any: ...

    def delete_member(self, request: Any) -> Any: ...


class MemberService:
    """Member operations, each passed on to the underlying client."""

    def __init__(self, client: MemberClient) -> None:
        self._client = client

    def create_member(self, request: Any) -> Any:
        """Create a member."""
        return self._client.create_member(request)

    def get_member(self, request: Any) -> Any:
        """Fetch one member."""
        return self._client.get_member(request)

    def get_members(self, request: Any) -> Any:
        """Fetch several members."""
        return self._client.get_members(request)

    def modify_member(self, request: Any) -> Any:
        """Change a member's details."""
        return self._client.modify_member(request)

    def reset_password(self, request: Any) -> Any:
        """Reset a member's password."""
        return self._client.reset_password(request)

    def delete_member(self, request: Any) -> Any:
        """Delete a member."""
        return self._client.delete_member(request)