import asyncio
import time
from unittest.mock import MagicMock

from ldap3.core.exceptions import LDAPSocketOpenError

from databoard.auth.ldap_client import DirectoryClient
from databoard.settings import LdapSettings


def test_disabled_directory_short_circuits():
    client = DirectoryClient(LdapSettings(enabled=False))
    client._authenticate_sync = MagicMock()

    assert asyncio.run(client.authenticate("alice", "pw")) is False
    assert asyncio.run(client.lookup("alice")) is None
    client._authenticate_sync.assert_not_called()


def test_connection_errors_are_not_fatal():
    client = DirectoryClient(LdapSettings(enabled=True))
    client._authenticate_sync = MagicMock(side_effect=LDAPSocketOpenError("unreachable"))
    client._test_sync = MagicMock(side_effect=LDAPSocketOpenError("unreachable"))

    assert asyncio.run(client.authenticate("alice", "pw")) is False
    assert asyncio.run(client.test_connection()) is False


def test_slow_directory_times_out():
    client = DirectoryClient(LdapSettings(enabled=True), timeout=0.05)
    client._lookup_sync = lambda username: time.sleep(0.5)

    assert asyncio.run(client.lookup("alice")) is None


def test_empty_password_never_binds():
    client = DirectoryClient(LdapSettings(enabled=True))
    client._lookup_sync = MagicMock()
    assert client._authenticate_sync("alice", "") is False
    client._lookup_sync.assert_not_called()


def test_search_escapes_username():
    client = DirectoryClient(LdapSettings(enabled=True, baseDN="dc=corp", searchFilter="(uid={username})"))
    entry = MagicMock()
    entry.entry_dn = "uid=a*b,dc=corp"
    entry.entry_attributes_as_dict = {"mail": ["a@corp.com"], "cn": ["A B"]}
    conn = MagicMock()
    conn.entries = [entry]

    user = client._search(conn, "a*b")

    conn.search.assert_called_once()
    base, search_filter = conn.search.call_args.args[:2]
    assert base == "dc=corp"
    assert search_filter == "(uid=a\\2ab)"
    assert user.dn == "uid=a*b,dc=corp"
    assert user.email == "a@corp.com"
    assert user.display_name == "A B"


def test_login_check_ignores_enabled_flag():
    client = DirectoryClient(LdapSettings(enabled=False))
    client._authenticate_sync = MagicMock(return_value=True)

    assert asyncio.run(client.test_login("alice", "pw")) is True
    client._authenticate_sync.assert_called_once_with("alice", "pw")

    client._authenticate_sync = MagicMock(side_effect=LDAPSocketOpenError("unreachable"))
    assert asyncio.run(client.test_login("alice", "pw")) is False
