"""Tests for token exchange, storage and refresh."""

from datetime import datetime, timedelta

import pytest

from adsync.models import ConnectionStatusEnum, Token
from adsync.security import TokenVault
from adsync.services import token_service
from adsync.services.meta_graph_client import MetaAuthError, MetaValidationError
from adsync.services.token_service import (
    DEFAULT_LONG_LIVED_TTL_SECONDS,
    MissingTokenError,
    TokenExchangeError,
)

NOW = datetime(2025, 6, 1, 12, 0, 0)


class _FakeOAuthClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post_form(self, path, data, *, authenticate=False):
        self.posts.append((path, data))
        if self.error is not None:
            raise self.error
        return self.response


def test_long_lived_exchange_success():
    client = _FakeOAuthClient(response={"access_token": "LONG", "expires_in": 5184000})

    exchange = token_service.exchange_short_lived_for_long_lived(
        "SHORT", client=client, app_id="app", app_secret="secret", now=NOW,
    )

    assert exchange.access_token == "LONG"
    assert exchange.reduced_validity is False
    assert exchange.expires_at == NOW + timedelta(seconds=5184000)
    path, data = client.posts[0]
    assert path == "oauth/access_token"
    assert data["grant_type"] == "fb_exchange_token"
    assert data["fb_exchange_token"] == "SHORT"


def test_long_lived_exchange_defaults_ttl_when_missing():
    client = _FakeOAuthClient(response={"access_token": "LONG"})

    exchange = token_service.exchange_short_lived_for_long_lived(
        "SHORT", client=client, app_id="app", app_secret="secret", now=NOW,
    )

    assert exchange.expires_at == NOW + timedelta(seconds=DEFAULT_LONG_LIVED_TTL_SECONDS)


def test_long_lived_exchange_failure_keeps_short_token_with_reduced_validity():
    """WHAT: Meta refuses the exchange
    WHY: The short-lived token is still usable, flagged so callers know
    """
    client = _FakeOAuthClient(error=MetaValidationError("Invalid OAuth access token", code=100))

    exchange = token_service.exchange_short_lived_for_long_lived(
        "SHORT", client=client, app_id="app", app_secret="secret", short_lived_expires_in=1800, now=NOW,
    )

    assert exchange.access_token == "SHORT"
    assert exchange.reduced_validity is True
    assert exchange.expires_at == NOW + timedelta(seconds=1800)
    assert "Invalid OAuth access token" in exchange.error


def test_code_exchange_raises_on_rejection():
    client = _FakeOAuthClient(error=MetaValidationError("Invalid verification code format", code=100))

    with pytest.raises(TokenExchangeError):
        token_service.exchange_code_for_token("bad", "https://app.example.com/cb", client=client, app_id="a", app_secret="s")


def test_code_exchange_returns_short_lived_token():
    client = _FakeOAuthClient(response={"access_token": "SHORT", "expires_in": 3600})

    exchange = token_service.exchange_code_for_token(
        "code", "https://app.example.com/cb", client=client, app_id="a", app_secret="s", now=NOW,
    )

    assert exchange.access_token == "SHORT"
    assert exchange.expires_at == NOW + timedelta(hours=1)
    assert client.posts[0][1]["redirect_uri"] == "https://app.example.com/cb"


def test_store_and_reveal_connection_token(db, vault, workspace, connection):
    token = token_service.store_connection_token(
        db, connection, vault, access_token="EAAB-new", expires_at=NOW, scopes=["ads_read"],
    )
    db.commit()

    assert token.token_encrypted is True
    assert token.access_token_enc != "EAAB-new"
    assert token.scope == "ads_read"
    assert token_service.get_access_token(connection, vault) == "EAAB-new"
    # Existing token row is reused
    assert db.query(Token).count() == 1


def test_get_access_token_without_token_raises(connection, vault):
    connection.token = None

    with pytest.raises(MissingTokenError):
        token_service.get_access_token(connection, vault)


def test_plaintext_token_only_with_opt_in(db, workspace, connection):
    keyless = TokenVault(None)

    token = token_service.store_connection_token(
        db, connection, keyless, access_token="EAAB-plain", allow_plaintext=True,
    )

    assert token.token_encrypted is False
    assert token_service.get_access_token(connection, keyless) == "EAAB-plain"


def test_refresh_success_stores_new_token(db, vault, connection):
    connection.auth_failure_count = 2
    db.commit()
    client = _FakeOAuthClient(response={"access_token": "EAAB-refreshed", "expires_in": 5184000})

    result = token_service.refresh_connection_token(db, connection, vault, client=client, app_id="a", app_secret="s")

    assert result.success is True
    assert result.expires_at is not None
    assert token_service.get_access_token(connection, vault) == "EAAB-refreshed"
    assert connection.auth_failure_count == 0
    assert connection.status == ConnectionStatusEnum.connected


def test_refresh_with_invalid_token_requires_reconnect(db, vault, connection):
    client = _FakeOAuthClient(error=MetaAuthError("Error validating access token", code=190, subcode=460))

    result = token_service.refresh_connection_token(db, connection, vault, client=client, app_id="a", app_secret="s")

    assert result.success is False
    assert result.requires_reconnect is True
    db.refresh(connection)
    assert connection.status == ConnectionStatusEnum.error
    assert "reconnect required" in connection.last_error
