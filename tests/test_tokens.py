import json
from datetime import timedelta
from unittest.mock import Mock

import pytest
import requests

from spotube.core.errors import (
    AuthError, ProviderTimeout, TransientProviderError, Unauthorized, UnknownProviderError,
)
from spotube.core.models import SETTINGS
from spotube.core.tokens import TOKEN_URLS, TokenStore

ENV = {"SPOTIFY_CLIENT_ID": "env-id", "SPOTIFY_CLIENT_SECRET": "env-secret",
       "GOOGLE_CLIENT_ID": "g-id", "GOOGLE_CLIENT_SECRET": "g-secret"}


def token_response(status=200, **body):
    response = Mock(status_code=status, text=str(body))
    response.json.return_value = body
    return response


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def tokens(store, session, clock):
    return TokenStore(store, session=session, env=ENV, clock=clock)


class TestAccessToken:
    def test_fresh_token_returned_without_refresh(self, tokens, session, clock):
        tokens.save("spotify", "access", "refresh", expiry=clock.now + timedelta(hours=1))

        assert tokens.access_token("spotify") == "access"
        session.post.assert_not_called()

    def test_refreshes_within_buffer(self, tokens, session, clock):
        tokens.save("spotify", "old", "refresh", expiry=clock.now + timedelta(seconds=20))
        session.post.return_value = token_response(access_token="new", expires_in=3600)

        assert tokens.access_token("spotify") == "new"

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args[0] == TOKEN_URLS["spotify"]
        assert kwargs["data"] == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh",
            "client_id": "env-id",
            "client_secret": "env-secret",
        }
        saved = tokens.get("spotify")
        assert saved.refresh_token == "refresh"
        assert saved.expiry == clock.now + timedelta(seconds=3600)

    def test_rotated_refresh_token_is_stored(self, tokens, session, clock):
        tokens.save("spotify", "", "refresh")
        session.post.return_value = token_response(access_token="new", refresh_token="rotated",
                                                   expires_in=3599, scope="a b")
        tokens.access_token("spotify")

        saved = tokens.get("spotify")
        assert saved.refresh_token == "rotated"
        assert saved.scopes == ["a", "b"]

    def test_force_refresh(self, tokens, session, clock):
        tokens.save("spotify", "access", "refresh", expiry=clock.now + timedelta(hours=1))
        session.post.return_value = token_response(access_token="forced", expires_in=3600)

        assert tokens.access_token("spotify", force_refresh=True) == "forced"

    def test_missing_token(self, tokens):
        with pytest.raises(Unauthorized):
            tokens.access_token("spotify")

    def test_missing_refresh_token(self, tokens, clock):
        tokens.save("spotify", "access", expiry=clock.now - timedelta(minutes=1))
        with pytest.raises(Unauthorized):
            tokens.access_token("spotify")

    def test_rejected_refresh(self, tokens, session):
        tokens.save("spotify", "", "revoked")
        session.post.return_value = token_response(400, error="invalid_grant")

        with pytest.raises(Unauthorized):
            tokens.access_token("spotify")

    def test_server_error(self, tokens, session):
        tokens.save("spotify", "", "refresh")
        session.post.return_value = token_response(503)

        with pytest.raises(UnknownProviderError):
            tokens.access_token("spotify")

    def test_timeout(self, tokens, session):
        tokens.save("spotify", "", "refresh")
        session.post.side_effect = requests.Timeout("slow")

        with pytest.raises(ProviderTimeout):
            tokens.access_token("spotify")


def google_response(status=200, **body):
    return Mock(status_code=status, headers={}, content=json.dumps(body).encode())


class TestGoogleRefresh:
    def test_refreshes_through_google_credentials(self, tokens, session):
        tokens.save("google", "", "g-refresh")
        session.request.return_value = google_response(access_token="g-new", expires_in=3599)

        assert tokens.access_token("google") == "g-new"

        call = session.request.call_args
        assert "POST" in call.args or call.kwargs.get("method") == "POST"
        assert TOKEN_URLS["google"] in call.args or call.kwargs.get("url") == TOKEN_URLS["google"]
        body = call.kwargs["data"]
        body = body.decode() if isinstance(body, bytes) else body
        assert "grant_type=refresh_token" in body
        assert "client_id=g-id" in body
        session.post.assert_not_called()

        saved = tokens.get("google")
        assert saved.access_token == "g-new"
        assert saved.refresh_token == "g-refresh"
        assert saved.expiry is not None and saved.expiry.tzinfo is not None

    def test_rotated_google_refresh_token_is_stored(self, tokens, session):
        tokens.save("google", "", "g-refresh")
        session.request.return_value = google_response(access_token="g-new", refresh_token="g-rotated",
                                                       expires_in=3599)
        tokens.access_token("google")

        assert tokens.get("google").refresh_token == "g-rotated"

    def test_rejected_google_refresh(self, tokens, session):
        tokens.save("google", "", "revoked")
        session.request.return_value = google_response(400, error="invalid_grant",
                                                       error_description="Token has been revoked.")

        with pytest.raises(Unauthorized):
            tokens.access_token("google")

    def test_google_network_failure_is_transient(self, tokens, session):
        tokens.save("google", "", "g-refresh")
        session.request.side_effect = requests.ConnectionError("down")

        with pytest.raises(TransientProviderError):
            tokens.access_token("google")


class TestCredentials:
    def test_settings_record_wins(self, tokens, store):
        store.insert(SETTINGS, {"spotify_client_id": "db-id", "spotify_client_secret": "db-secret"},
                     record_id=SETTINGS)
        assert tokens.credentials("spotify") == ("db-id", "db-secret")

    def test_environment_fallback(self, tokens):
        assert tokens.credentials("google") == ("g-id", "g-secret")

    def test_missing(self, store, session):
        with pytest.raises(AuthError):
            TokenStore(store, session=session, env={}).credentials("spotify")


class TestSeed:
    def test_seed_only_when_missing(self, tokens):
        assert tokens.seed("google", "first")
        assert not tokens.seed("google", "second")
        assert not tokens.seed("spotify", "")
        assert tokens.get("google").refresh_token == "first"

    def test_save_keeps_refresh_token(self, tokens):
        tokens.save("google", "a", "refresh")
        tokens.save("google", "b")
        assert tokens.get("google").refresh_token == "refresh"
        assert tokens.get("google").access_token == "b"
