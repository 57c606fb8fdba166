"""Tests for connection validation, default switching and deletion."""

import pytest

from adsync.models import AdAccount, Connection, ConnectionAccountAccess, ConnectionStatusEnum, Token
from adsync.services import connection_service, token_service
from adsync.services.connection_service import ConnectionInUseError, ConnectionValidationError
from adsync.services.meta_graph_client import MetaAuthError

GRANTED = [
    {"permission": "ads_read", "status": "granted"},
    {"permission": "business_management", "status": "granted"},
    {"permission": "email", "status": "declined"},
]


class _FakeMetaUser:
    """Graph client answering /me, /me/permissions and /me/adaccounts."""

    def __init__(self, user_id="u-100", permissions=None, accounts=None, me_error=None):
        self.user_id = user_id
        self.permissions = GRANTED if permissions is None else permissions
        self.accounts = accounts if accounts is not None else [
            {"id": "act_111", "name": "Shop EU", "account_status": 1, "currency": "EUR", "timezone_name": "Europe/Amsterdam"},
            {"id": "act_222", "name": "Shop US", "account_status": 2, "currency": "USD", "timezone_name": "America/New_York"},
        ]
        self.me_error = me_error

    def get(self, path, params=None):
        if self.me_error is not None:
            raise self.me_error
        return {"id": self.user_id, "name": "Jane Marketer"}

    def fetch_all(self, path, params=None, max_pages=None):
        if path == "me/permissions":
            return self.permissions
        if path == "me/adaccounts":
            return self.accounts
        raise AssertionError(path)


def _validate(db, vault, workspace, client, **kwargs):
    return connection_service.validate_connection(db, vault, workspace.id, "EAAB-user", client=client, **kwargs)


def test_validate_creates_connection_accounts_and_access(db, vault, workspace):
    result = _validate(db, vault, workspace, _FakeMetaUser())

    connection = result.connection
    assert connection.status == ConnectionStatusEnum.connected
    assert connection.is_default is True
    assert connection.name == "Jane Marketer"
    assert connection.granted_scopes == ["ads_read", "business_management"]
    assert token_service.get_access_token(connection, vault) == "EAAB-user"

    accounts = {a.external_id: a for a in db.query(AdAccount).all()}
    assert set(accounts) == {"111", "222"}
    assert accounts["111"].timezone == "Europe/Amsterdam"
    assert accounts["111"].account_status == "ACTIVE"
    assert accounts["222"].account_status == "DISABLED"
    assert all(a.primary_connection_id == connection.id for a in accounts.values())
    assert db.query(ConnectionAccountAccess).count() == 2


def test_missing_scope_rejected(db, vault, workspace):
    client = _FakeMetaUser(permissions=[{"permission": "ads_read", "status": "granted"}])

    with pytest.raises(ConnectionValidationError, match="business_management"):
        _validate(db, vault, workspace, client)
    assert db.query(Connection).count() == 0


def test_identity_failure_rejected(db, vault, workspace):
    client = _FakeMetaUser(me_error=MetaAuthError("Invalid OAuth access token", code=190))

    with pytest.raises(ConnectionValidationError):
        _validate(db, vault, workspace, client)


def test_second_connection_does_not_steal_primary_binding(db, vault, workspace):
    """WHAT: A second user validates and sees the same account
    WHY: The primary pointer stays on the first connection unless rebind is requested
    """
    first = _validate(db, vault, workspace, _FakeMetaUser(user_id="u-1")).connection
    second = _validate(db, vault, workspace, _FakeMetaUser(user_id="u-2")).connection

    account = db.query(AdAccount).filter_by(external_id="111").one()
    assert account.primary_connection_id == first.id
    assert second.is_default is False
    assert db.query(ConnectionAccountAccess).filter_by(ad_account_id=account.id).count() == 2

    _validate(db, vault, workspace, _FakeMetaUser(user_id="u-2"), rebind=True)
    db.refresh(account)
    assert account.primary_connection_id == second.id


def test_revalidation_reuses_connection(db, vault, workspace):
    first = _validate(db, vault, workspace, _FakeMetaUser()).connection
    again = _validate(db, vault, workspace, _FakeMetaUser()).connection

    assert again.id == first.id
    assert db.query(Connection).count() == 1
    assert db.query(Token).count() == 1


def test_set_default_switches_single_default(db, vault, workspace):
    first = _validate(db, vault, workspace, _FakeMetaUser(user_id="u-1")).connection
    second = _validate(db, vault, workspace, _FakeMetaUser(user_id="u-2")).connection

    connection_service.set_default_connection(db, second)

    db.refresh(first)
    assert first.is_default is False
    assert second.is_default is True
    assert db.query(Connection).filter(Connection.is_default.is_(True)).count() == 1


def test_delete_refuses_bound_connection(db, vault, workspace):
    connection = _validate(db, vault, workspace, _FakeMetaUser()).connection

    with pytest.raises(ConnectionInUseError):
        connection_service.delete_connection(db, connection)


def test_delete_unbound_connection_removes_token(db, vault, workspace):
    _validate(db, vault, workspace, _FakeMetaUser(user_id="u-1"))
    spare = _validate(db, vault, workspace, _FakeMetaUser(user_id="u-2", accounts=[])).connection

    connection_service.delete_connection(db, spare)

    assert db.query(Connection).count() == 1
    assert db.query(Token).count() == 1


def test_auth_failures_flip_status_at_threshold(db, connection, monkeypatch):
    from adsync.deps import get_settings

    monkeypatch.setattr(get_settings(), "META_AUTH_FAILURE_THRESHOLD", 2)

    assert connection_service.record_auth_failure(db, connection, "expired") is False
    assert connection.status == ConnectionStatusEnum.connected
    assert connection_service.record_auth_failure(db, connection, "expired") is True
    assert connection.status == ConnectionStatusEnum.error

    connection_service.reset_auth_failures(db, connection)
    assert connection.auth_failure_count == 0
    assert connection.last_error is None


def test_client_for_account_requires_connected_primary(db, connection, account, vault):
    connection.status = ConnectionStatusEnum.error
    db.commit()

    with pytest.raises(ConnectionValidationError):
        connection_service.client_for_account(account, vault)


def test_get_account_accepts_act_prefix(db, workspace, account):
    assert connection_service.get_account(db, workspace.id, "act_1234567890").id == account.id
    assert connection_service.get_account(db, workspace.id, "1234567890").id == account.id
    assert connection_service.get_account(db, workspace.id, "act_0") is None
