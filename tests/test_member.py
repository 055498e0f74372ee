from unittest.mock import Mock

import pytest

from walletsvc.member import MemberService

METHODS = [
    "create_member",
    "get_member",
    "get_members",
    "modify_member",
    "reset_password",
    "delete_member",
]


@pytest.mark.parametrize("name", METHODS)
def test_call_is_forwarded_to_client(name):
    client = Mock()
    getattr(client, name).return_value = {"reply": name}
    service = MemberService(client)

    result = getattr(service, name)({"request": name})

    assert result == {"reply": name}
    getattr(client, name).assert_called_once_with({"request": name})


@pytest.mark.parametrize("name", METHODS)
def test_client_errors_propagate(name):
    client = Mock()
    error = ConnectionError("member service down")
    getattr(client, name).side_effect = error
    service = MemberService(client)

    with pytest.raises(ConnectionError) as excinfo:
        getattr(service, name)({})

    assert excinfo.value is error
    assert str(excinfo.value) == "member service down"
    getattr(client, name).assert_called_once_with({})


def test_only_the_named_call_reaches_client():
    client = Mock()
    service = MemberService(client)

    service.get_member("who")

    assert client.get_member.call_count == 1
    assert client.delete_member.call_count == 0