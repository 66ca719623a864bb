"""End-to-end tests for the broker routes: login, callback, token, logout, status."""
import time
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import pytest
import redis

from auth_broker.pkce import code_challenge_for
from auth_broker.token_store import CredentialRecord, CredentialStore
from conftest import FakeResponse

TOKEN_BODY = {"access_token": "AT", "refresh_token": "RT", "expires_in": 3600, "token_type": "Bearer"}
SPOTIFY_ME = {"id": "u1", "display_name": "Bob", "email": "b@x.com"}


def _login_state(client, provider="spotify", redirect_uri="http://app/cb"):
    r = client.get(f"/auth/{provider}/login", params={"redirect_uri": redirect_uri}, follow_redirects=False)
    assert r.status_code == 307
    return parse_qs(urlsplit(r.headers["location"]).query)["state"][0]


def _callback(client, state, code="abc", token_body=TOKEN_BODY, me=SPOTIFY_ME, provider="spotify", headers=None):
    params = {"state": state}
    if code is not None:
        params["code"] = code
    with patch("auth_broker.provider_client.httpx.post", return_value=FakeResponse(body=token_body)) as post, patch(
        "auth_broker.provider_client.httpx.get", return_value=FakeResponse(body=me)
    ):
        r = client.get(f"/auth/{provider}/callback", params=params, headers=headers, follow_redirects=False)
    return r, post


def _session_id(response):
    set_cookie = response.headers["set-cookie"]
    name, _, rest = set_cookie.partition("=")
    assert name == "session_id"
    return rest.split(";", 1)[0]


def _cookie(session_id):
    return {"Cookie": f"session_id={session_id}"}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "auth_broker"


# --- login ---


def test_login_redirects_to_provider(client, fake_redis):
    r = client.get("/auth/spotify/login", params={"redirect_uri": "http://app/cb"}, follow_redirects=False)
    assert r.status_code == 307
    location = r.headers["location"]
    assert "accounts.spotify.com/authorize" in location
    params = parse_qs(urlsplit(location).query)
    assert "code_challenge" in params
    assert params["code_challenge_method"] == ["S256"]
    assert params["access_type"] == ["offline"]
    assert params["client_id"] == ["spotify-client"]
    token, sep, redirect_uri = params["state"][0].partition("|")
    assert sep == "|"
    assert redirect_uri == "http://app/cb"
    assert fake_redis.exists(f"pkce:{token}") == 1
    assert fake_redis.exists(f"state:{token}") == 1
    assert 0 < fake_redis.ttl(f"pkce:{token}") <= 300


def test_login_unknown_provider(client):
    r = client.get("/auth/myspace/login", params={"redirect_uri": "http://app/cb"}, follow_redirects=False)
    assert r.status_code == 404
    assert "Unsupported provider" in r.text


def test_login_invalid_redirect_uri(client):
    r = client.get("/auth/spotify/login", params={"redirect_uri": "http://evil.com/cb"}, follow_redirects=False)
    assert r.status_code == 400
    assert "Invalid redirect URI" in r.text


def test_login_missing_redirect_uri(client):
    r = client.get("/auth/spotify/login", follow_redirects=False)
    assert r.status_code == 400
    assert "Missing required parameter" in r.text


def test_login_storage_failure(client, broker):
    with patch.object(broker.pkce_store, "store", side_effect=redis.ConnectionError("down")):
        r = client.get("/auth/spotify/login", params={"redirect_uri": "http://app/cb"}, follow_redirects=False)
    assert r.status_code == 500
    assert "Server error while storing PKCE data" in r.text


# --- callback ---


def test_callback_success_sets_cookie_and_stores_token(client, fake_redis):
    state = _login_state(client)
    r, post = _callback(client, state)
    assert r.status_code == 307
    assert r.headers["location"] == "http://app/cb"
    set_cookie = r.headers["set-cookie"]
    assert "HttpOnly" in set_cookie
    assert "Secure" in set_cookie
    assert "samesite=lax" in set_cookie.lower()
    assert "Path=/" in set_cookie
    assert post.call_args.kwargs["data"]["code"] == "abc"
    assert post.call_args.kwargs["data"]["code_verifier"]

    session_id = _session_id(r)
    t = client.get("/auth/spotify/token", params={"user_id": "u1"}, headers=_cookie(session_id))
    assert t.status_code == 200
    body = t.json()
    assert body["access_token"] == "AT"
    assert body["refresh_token"] == "RT"
    assert body["expires_in"] > time.time()
    token = state.split("|", 1)[0]
    assert fake_redis.exists(f"pkce:{token}") == 0
    assert fake_redis.exists(f"state:{token}") == 0


def test_callback_verifier_matches_login_challenge(client):
    r = client.get("/auth/spotify/login", params={"redirect_uri": "http://app/cb"}, follow_redirects=False)
    params = parse_qs(urlsplit(r.headers["location"]).query)
    _, post = _callback(client, params["state"][0])
    verifier = post.call_args.kwargs["data"]["code_verifier"]
    assert code_challenge_for(verifier) == params["code_challenge"][0]


def test_callback_replay_is_rejected(client):
    state = _login_state(client)
    first, _ = _callback(client, state)
    assert first.status_code == 307
    second, post = _callback(client, state)
    assert second.status_code == 400
    assert "Invalid or expired state token" in second.text
    post.assert_not_called()


def test_callback_unknown_provider(client):
    r, _ = _callback(client, "mock-state|http://localhost:3000/callback", provider="invalid-provider")
    assert r.status_code == 400
    assert "Unsupported provider" in r.text


@pytest.mark.parametrize("state", ["invalid-state-format", ""])
def test_callback_malformed_state(client, state):
    r, _ = _callback(client, state)
    assert r.status_code == 400
    assert "Invalid state parameter" in r.text


def test_callback_missing_state(client):
    r = client.get("/auth/spotify/callback", params={"code": "abc"}, follow_redirects=False)
    assert r.status_code == 400
    assert "Invalid state parameter" in r.text


def test_callback_invalid_redirect_uri(client):
    r, _ = _callback(client, "mock-state|http://malicious.com/callback")
    assert r.status_code == 400
    assert "Invalid redirect URI" in r.text


def test_callback_unknown_state_token(client):
    r, post = _callback(client, "invalid-state|http://localhost:3000/callback")
    assert r.status_code == 400
    assert "Invalid or expired state token" in r.text
    post.assert_not_called()


def test_callback_missing_code_checked_after_state(client):
    # No code and an unknown state: the state error wins
    r, _ = _callback(client, "invalid-state|http://app/cb", code=None)
    assert "Invalid or expired state token" in r.text

    state = _login_state(client)
    r, post = _callback(client, state, code=None)
    assert r.status_code == 400
    assert "Authorization code not provided" in r.text
    post.assert_not_called()
    # The verifier is gone; the login has to start over
    retry, _ = _callback(client, state)
    assert "Invalid or expired state token" in retry.text


def test_callback_redirect_uri_must_match_login(client):
    state = _login_state(client, redirect_uri="http://app/cb")
    token = state.split("|", 1)[0]
    r, post = _callback(client, f"{token}|http://localhost/elsewhere")
    assert r.status_code == 400
    assert "Invalid or expired state token" in r.text
    post.assert_not_called()


def test_callback_provider_error(client):
    state = _login_state(client)
    r = client.get(
        "/auth/spotify/callback",
        params={"state": state, "error": "access_denied", "error_description": "User denied"},
        follow_redirects=False,
    )
    assert r.status_code == 400
    assert "User denied" in r.text


def test_callback_exchange_failure(client):
    state = _login_state(client)
    with patch(
        "auth_broker.provider_client.httpx.post",
        return_value=FakeResponse(status_code=400, body={"error": "invalid_grant", "error_description": "Invalid authorization code"}),
    ), patch("auth_broker.provider_client.httpx.get") as get:
        r = client.get("/auth/spotify/callback", params={"state": state, "code": "bad"}, follow_redirects=False)
    assert r.status_code == 500
    assert "Failed to exchange token: Invalid authorization code" in r.text
    get.assert_not_called()


def test_callback_user_info_failure(client, fake_redis):
    state = _login_state(client)
    r, _ = _callback(client, state, me={"id": "u1", "display_name": "Bob"})
    assert r.status_code == 500
    assert "Failed to fetch user information" in r.text
    assert "set-cookie" not in r.headers
    assert list(fake_redis.scan_iter(match="session:*")) == []


def test_callback_storage_failure(client, broker):
    state = _login_state(client)
    with patch.object(broker.credentials, "put", side_effect=redis.ConnectionError("down")):
        r, _ = _callback(client, state)
    assert r.status_code == 500
    assert "Failed to store token" in r.text


def test_callback_state_cleanup_failure_is_swallowed(client, broker):
    state = _login_state(client)
    with patch.object(broker.state_store, "consume", side_effect=redis.ConnectionError("down")):
        r, _ = _callback(client, state)
    assert r.status_code == 307


def test_callback_tidal_normalizes_nested_user_info(client):
    state = _login_state(client, provider="tidal")
    me = {"data": {"id": "777", "attributes": {"username": "alice", "email": "alice@example.com"}}}
    r, _ = _callback(client, state, provider="tidal", me=me)
    assert r.status_code == 307
    status = client.get("/auth/status", headers=_cookie(_session_id(r))).json()
    assert status == [
        {"provider": "tidal", "user_id": "777", "display_name": "alice", "email": "alice@example.com", "logged_in": True}
    ]


def test_each_login_starts_a_new_session_by_default(client):
    first, _ = _callback(client, _login_state(client))
    second, _ = _callback(client, _login_state(client), headers=_cookie(_session_id(first)))
    assert _session_id(first) != _session_id(second)


def test_session_reuse_attaches_second_account(client, broker):
    broker.reuse_sessions = True
    first, _ = _callback(client, _login_state(client))
    session_id = _session_id(first)
    me_b = {"id": "u2", "display_name": "Carol", "email": "c@x.com"}
    second, _ = _callback(client, _login_state(client), me=me_b, headers=_cookie(session_id))
    assert _session_id(second) == session_id
    accounts = client.get("/auth/status", headers=_cookie(session_id)).json()
    assert [a["user_id"] for a in accounts] == ["u1", "u2"]


def test_session_reuse_ignores_unknown_session(client, broker):
    broker.reuse_sessions = True
    r, _ = _callback(client, _login_state(client), headers=_cookie("attacker-chosen"))
    assert _session_id(r) != "attacker-chosen"


# --- token ---


def _store_record(fake_redis, session_id="sess-1", account_id="u1", expires_in=3600, retention_seconds=0):
    record = CredentialRecord(
        access_token="old-at",
        refresh_token="old-rt",
        expiry=time.time() + expires_in,
        account_id=account_id,
        display_name="Bob",
        email="b@x.com",
    )
    CredentialStore(fake_redis, retention_seconds=retention_seconds).put(session_id, "spotify", record)
    return record


def test_token_returns_stored_credential(client, fake_redis):
    record = _store_record(fake_redis)
    with patch("auth_broker.provider_client.httpx.post") as post:
        r = client.get("/auth/spotify/token", params={"user_id": "u1"}, headers=_cookie("sess-1"))
    assert r.status_code == 200
    assert r.json() == {"access_token": "old-at", "refresh_token": "old-rt", "expires_in": int(record.expiry)}
    post.assert_not_called()


def test_token_expired_is_refreshed_once(client, fake_redis):
    _store_record(fake_redis, expires_in=-60, retention_seconds=3600)
    refreshed = {"access_token": "new-at", "refresh_token": "new-rt", "expires_in": 3600}
    with patch("auth_broker.provider_client.httpx.post", return_value=FakeResponse(body=refreshed)) as post:
        r = client.get("/auth/spotify/token", params={"user_id": "u1"}, headers=_cookie("sess-1"))
        again = client.get("/auth/spotify/token", params={"user_id": "u1"}, headers=_cookie("sess-1"))
    assert r.status_code == 200
    assert r.json()["access_token"] == "new-at"
    assert again.json()["access_token"] == "new-at"
    assert post.call_count == 1
    assert post.call_args.kwargs["data"]["grant_type"] == "refresh_token"
    assert post.call_args.kwargs["data"]["refresh_token"] == "old-rt"


def test_token_refresh_failure(client, fake_redis):
    _store_record(fake_redis, expires_in=-60, retention_seconds=3600)
    with patch(
        "auth_broker.provider_client.httpx.post",
        return_value=FakeResponse(status_code=400, body={"error": "invalid_grant", "error_description": "Refresh token revoked"}),
    ):
        r = client.get("/auth/spotify/token", params={"user_id": "u1"}, headers=_cookie("sess-1"))
    assert r.status_code == 500
    assert "Failed to refresh token: Refresh token revoked" in r.text


def test_token_not_found(client):
    r = client.get("/auth/spotify/token", params={"user_id": "nobody"}, headers=_cookie("sess-1"))
    assert r.status_code == 404
    assert "Token not found" in r.text


def test_token_missing_session(client):
    r = client.get("/auth/spotify/token", params={"user_id": "u1"})
    assert r.status_code == 400
    assert "Session ID is required" in r.text


def test_token_missing_user_id(client):
    r = client.get("/auth/spotify/token", headers=_cookie("sess-1"))
    assert r.status_code == 400
    assert "User ID is required" in r.text


def test_token_unknown_provider(client):
    r = client.get("/auth/myspace/token", params={"user_id": "u1"}, headers=_cookie("sess-1"))
    assert r.status_code == 400
    assert "Unsupported provider" in r.text


# --- logout ---


def test_logout_single_account(client, fake_redis):
    _store_record(fake_redis, account_id="userA")
    _store_record(fake_redis, account_id="userB")
    r = client.post("/auth/spotify/logout", params={"user_id": "userA"}, headers=_cookie("sess-1"))
    assert r.status_code == 200
    assert r.json() == {"message": "Successfully logged out user userA from provider spotify"}
    assert client.get("/auth/spotify/token", params={"user_id": "userA"}, headers=_cookie("sess-1")).status_code == 404
    assert client.get("/auth/spotify/token", params={"user_id": "userB"}, headers=_cookie("sess-1")).status_code == 200


def test_logout_all_accounts_of_provider(client, fake_redis):
    _store_record(fake_redis, account_id="userA")
    _store_record(fake_redis, account_id="userB")
    r = client.post("/auth/spotify/logout", headers=_cookie("sess-1"))
    assert r.status_code == 200
    assert r.json() == {"message": "Successfully logged out all users from provider spotify"}
    assert client.get("/auth/status", headers=_cookie("sess-1")).json() == []


def test_logout_nothing_to_delete(client):
    r = client.post("/auth/tidal/logout", params={"user_id": "ghost"}, headers=_cookie("sess-1"))
    assert r.status_code == 200


def test_logout_missing_session(client):
    r = client.post("/auth/spotify/logout")
    assert r.status_code == 400
    assert "Session ID is required" in r.text


def test_logout_unknown_provider(client):
    r = client.post("/auth/myspace/logout", headers=_cookie("sess-1"))
    assert r.status_code == 400
    assert "Unsupported provider" in r.text


def test_logout_storage_failure(client, broker):
    with patch.object(broker.credentials, "delete_all", side_effect=redis.ConnectionError("down")):
        r = client.post("/auth/spotify/logout", headers=_cookie("sess-1"))
    assert r.status_code == 500
    assert "Failed to log out all users" in r.text


# --- status ---


def test_status_requires_session(client):
    r = client.get("/auth/status")
    assert r.status_code == 401
    assert "Session ID is required" in r.text


def test_status_empty_session(client):
    r = client.get("/auth/status", headers=_cookie("sess-empty"))
    assert r.status_code == 200
    assert r.json() == []


def test_status_lists_all_attached_accounts(client, fake_redis):
    _store_record(fake_redis, account_id="userA")
    _store_record(fake_redis, account_id="userB")
    _store_record(fake_redis, session_id="sess-other", account_id="userZ")
    r = client.get("/auth/status", headers=_cookie("sess-1"))
    assert r.status_code == 200
    assert r.json() == [
        {"provider": "spotify", "user_id": "userA", "display_name": "Bob", "email": "b@x.com", "logged_in": True},
        {"provider": "spotify", "user_id": "userB", "display_name": "Bob", "email": "b@x.com", "logged_in": True},
    ]
