import dataclasses
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

import oauth
from accounts import CONNECTED_ACCOUNTS_TABLE, ConnectedAccountStore
from oauth import (
    OAuthError,
    TokenExchanger,
    UnauthorizedError,
    authenticate_user,
    build_authorize_url,
    issue_state,
    verify_state,
)

VALID_CODE = "AQD" + "x" * 40


class GraphStub:
    """Roteia chamadas de request_json para respostas fixas."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, method, url, *, params=None, data=None, timeout=None):
        params = params or {}
        data = data or {}
        self.calls.append((method, url, params, data))
        for matcher, response in self.routes:
            if matcher(method, url, params, data):
                return response
        raise AssertionError(f"unexpected call {method} {url} {params}")


def facebook_routes(pages, *, page_lookups=None, code_response=None):
    page_lookups = page_lookups or {}
    routes = [
        (
            lambda m, u, p, d: u.endswith("/oauth/access_token") and "code" in p,
            code_response or (200, {"access_token": "short-user-token"}),
        ),
        (
            lambda m, u, p, d: u.endswith("/oauth/access_token") and p.get("grant_type") == "fb_exchange_token",
            (200, {"access_token": "long-user-token", "expires_in": 5000}),
        ),
        (lambda m, u, p, d: u.endswith("/me/accounts"), (200, {"data": pages})),
    ]
    for page_id, response in page_lookups.items():
        routes.append((lambda m, u, p, d, page_id=page_id: u.endswith(f"/{page_id}"), response))
    routes.append((
        lambda m, u, p, d: u.endswith("/1784") and "followers_count" in p.get("fields", ""),
        (200, {"id": "1784", "username": "loja", "name": "Loja", "profile_picture_url": "https://pic"}),
    ))
    return routes


@pytest.fixture()
def store(fake_supabase):
    return ConnectedAccountStore(fake_supabase)


def _stored(fake_supabase):
    return fake_supabase.rows(CONNECTED_ACCOUNTS_TABLE)


def test_facebook_flow_stores_page_token(monkeypatch, settings, store, fake_supabase):
    pages = [
        {"id": "p1", "name": "Página Um", "access_token": "page-token-1"},
        {"id": "p2", "name": "Página Dois", "access_token": "page-token-2",
         "instagram_business_account": {"id": "1784"}},
    ]
    stub = GraphStub(facebook_routes(pages, page_lookups={"p1": (200, {"id": "p1"})}))
    monkeypatch.setattr(oauth, "request_json", stub)

    before = datetime.now(timezone.utc)
    result = TokenExchanger(settings, store).connect_facebook("user-123", VALID_CODE)

    assert result == {
        "success": True,
        "provider": "facebook",
        "instagram_user_id": "1784",
        "username": "loja",
        "name": "Loja",
        "profile_picture_url": "https://pic",
        "page_name": "Página Dois",
    }
    rows = _stored(fake_supabase)
    assert len(rows) == 1
    assert rows[0]["provider"] == "facebook"
    assert rows[0]["provider_account_id"] == "1784"
    assert rows[0]["access_token"] == "page-token-2"
    expires_at = datetime.fromisoformat(rows[0]["token_expires_at"])
    assert before + timedelta(seconds=4990) <= expires_at <= datetime.now(timezone.utc) + timedelta(seconds=5000)


def test_facebook_flow_resolves_link_through_page_lookup(monkeypatch, settings, store, fake_supabase):
    pages = [{"id": "p1", "name": "Página Um", "access_token": "page-token-1"}]
    lookups = {"p1": (200, {"instagram_business_account": {"id": "1784"}})}
    monkeypatch.setattr(oauth, "request_json", GraphStub(facebook_routes(pages, page_lookups=lookups)))

    result = TokenExchanger(settings, store).connect_facebook("user-123", VALID_CODE)

    assert result["instagram_user_id"] == "1784"
    assert _stored(fake_supabase)[0]["access_token"] == "page-token-1"


def test_facebook_flow_without_pages(monkeypatch, settings, store, fake_supabase):
    monkeypatch.setattr(oauth, "request_json", GraphStub(facebook_routes([])))

    with pytest.raises(OAuthError, match="No Facebook Pages found"):
        TokenExchanger(settings, store).connect_facebook("user-123", VALID_CODE)
    assert _stored(fake_supabase) == []


def test_facebook_flow_without_linked_account(monkeypatch, settings, store):
    pages = [{"id": "p1", "name": "Página Um"}, {"id": "p2", "name": "Página Dois"}]
    lookups = {"p1": (200, {"id": "p1"}), "p2": (400, {"error": {"message": "nope"}})}
    monkeypatch.setattr(oauth, "request_json", GraphStub(facebook_routes(pages, page_lookups=lookups)))

    with pytest.raises(OAuthError) as excinfo:
        TokenExchanger(settings, store).connect_facebook("user-123", VALID_CODE)

    assert "No Instagram Business Account found" in str(excinfo.value)
    assert "Página Um, Página Dois" in str(excinfo.value)


def test_facebook_code_exchange_error_surfaces_provider_message(monkeypatch, settings, store):
    routes = facebook_routes([], code_response=(400, {"error": {"message": "Invalid verification code format."}}))
    monkeypatch.setattr(oauth, "request_json", GraphStub(routes))

    with pytest.raises(OAuthError, match="Facebook token error: Invalid verification code format."):
        TokenExchanger(settings, store).connect_facebook("user-123", VALID_CODE)


@pytest.mark.parametrize("code", [None, "", "short", "x" * 1001, 12345678901])
def test_invalid_codes_are_rejected_before_any_call(monkeypatch, settings, store, code):
    stub = GraphStub([])
    monkeypatch.setattr(oauth, "request_json", stub)

    with pytest.raises(OAuthError, match="Invalid authorization code format"):
        TokenExchanger(settings, store).connect_facebook("user-123", code)
    with pytest.raises(OAuthError, match="Invalid authorization code format"):
        TokenExchanger(settings, store).connect_instagram("user-123", code)
    assert stub.calls == []


def test_missing_facebook_credentials(monkeypatch, settings, store):
    settings = dataclasses.replace(settings, oauth=dataclasses.replace(settings.oauth, facebook_app_secret=None))
    monkeypatch.setattr(oauth, "request_json", GraphStub([]))

    with pytest.raises(OAuthError, match="Facebook app credentials not configured"):
        TokenExchanger(settings, store).connect_facebook("user-123", VALID_CODE)


def instagram_routes(token_response=None, upgrade_response=None):
    return [
        (
            lambda m, u, p, d: m == "POST" and u == oauth.INSTAGRAM_TOKEN_URL,
            token_response or (200, {"access_token": "ig-short", "user_id": 1784}),
        ),
        (
            lambda m, u, p, d: u.endswith("graph.instagram.com/access_token"),
            upgrade_response or (200, {"access_token": "ig-long", "expires_in": 5183944}),
        ),
        (
            lambda m, u, p, d: u.endswith("/1784"),
            (200, {"id": "1784", "username": "loja", "name": "Loja"}),
        ),
    ]


def test_instagram_flow_stores_long_lived_token(monkeypatch, settings, store, fake_supabase):
    stub = GraphStub(instagram_routes())
    monkeypatch.setattr(oauth, "request_json", stub)

    result = TokenExchanger(settings, store).connect_instagram("user-123", VALID_CODE)

    assert result["success"] is True
    assert result["provider"] == "instagram"
    assert result["instagram_user_id"] == "1784"
    assert result["username"] == "loja"
    rows = _stored(fake_supabase)
    assert rows[0]["provider"] == "instagram"
    assert rows[0]["access_token"] == "ig-long"
    method, _, _, form = stub.calls[0]
    assert method == "POST"
    assert form["grant_type"] == "authorization_code"
    assert form["client_id"] == "ig-app"


def test_instagram_flow_accepts_wrapped_token_response(monkeypatch, settings, store, fake_supabase):
    wrapped = (200, {"data": [{"access_token": "ig-short", "user_id": "1784", "permissions": "x"}]})
    monkeypatch.setattr(oauth, "request_json", GraphStub(instagram_routes(token_response=wrapped, upgrade_response=(200, {}))))

    TokenExchanger(settings, store).connect_instagram("user-123", VALID_CODE)

    assert _stored(fake_supabase)[0]["access_token"] == "ig-short"


def test_instagram_upgrade_http_failure_keeps_short_lived_token(monkeypatch, settings, store, fake_supabase):
    failed_upgrade = (500, {"raw": "oops"})
    monkeypatch.setattr(oauth, "request_json", GraphStub(instagram_routes(upgrade_response=failed_upgrade)))

    result = TokenExchanger(settings, store).connect_instagram("user-123", VALID_CODE)

    assert result["success"] is True
    row = _stored(fake_supabase)[0]
    assert row["access_token"] == "ig-short"
    assert row["provider_account_id"] == "1784"


def test_instagram_upgrade_error_body_is_fatal(monkeypatch, settings, store, fake_supabase):
    upgrade_error = (400, {"error": {"message": "Session has expired", "type": "OAuthException"}})
    monkeypatch.setattr(oauth, "request_json", GraphStub(instagram_routes(upgrade_response=upgrade_error)))

    with pytest.raises(OAuthError, match="Session has expired"):
        TokenExchanger(settings, store).connect_instagram("user-123", VALID_CODE)

    assert _stored(fake_supabase) == []


def test_instagram_error_message_is_fatal(monkeypatch, settings, store):
    error = (400, {"error_type": "OAuthException", "code": 400, "error_message": "Invalid authorization code"})
    monkeypatch.setattr(oauth, "request_json", GraphStub(instagram_routes(token_response=error)))

    with pytest.raises(OAuthError, match="Invalid authorization code"):
        TokenExchanger(settings, store).connect_instagram("user-123", VALID_CODE)


def test_instagram_endpoint_with_facebook_provider_stores_user_token(monkeypatch, settings, store, fake_supabase):
    pages = [{"id": "p2", "name": "Página Dois", "access_token": "page-token-2",
              "instagram_business_account": {"id": "1784"}}]
    monkeypatch.setattr(oauth, "request_json", GraphStub(facebook_routes(pages)))

    result = TokenExchanger(settings, store).connect_instagram("user-123", VALID_CODE, provider="facebook")

    assert result["provider"] == "facebook"
    assert _stored(fake_supabase)[0]["access_token"] == "long-user-token"


def test_unsupported_provider(settings, store):
    with pytest.raises(OAuthError, match="Unsupported provider"):
        TokenExchanger(settings, store).connect_instagram("user-123", VALID_CODE, provider="tiktok")


def test_state_round_trip(settings):
    state = issue_state(settings, "instagram", "/dashboard")
    assert verify_state(settings, state) == {"provider": "instagram", "redirect_to": "/dashboard"}


def test_tampered_state_is_rejected(settings):
    state = issue_state(settings, "facebook")
    with pytest.raises(UnauthorizedError, match="Invalid OAuth state"):
        verify_state(settings, state + "tampered")


def test_expired_state_is_rejected(settings):
    state = issue_state(settings, "facebook")
    expired = dataclasses.replace(settings, oauth=dataclasses.replace(settings.oauth, state_ttl_seconds=-1))
    with pytest.raises(UnauthorizedError, match="OAuth state expired"):
        verify_state(expired, state)


def test_build_authorize_url(settings):
    facebook = build_authorize_url(settings, "facebook", "st")
    instagram = build_authorize_url(settings, "instagram", "st")

    assert facebook.startswith("https://www.facebook.com/v24.0/dialog/oauth?")
    assert "client_id=fb-app" in facebook
    assert "instagram_manage_insights" in facebook
    assert instagram.startswith(oauth.INSTAGRAM_AUTHORIZE_URL)
    assert "client_id=ig-app" in instagram
    with pytest.raises(OAuthError):
        build_authorize_url(settings, "tiktok", "st")


def test_authenticate_user(fake_auth_client):
    assert authenticate_user(fake_auth_client, "Bearer valid-jwt") == "user-123"
    with pytest.raises(UnauthorizedError, match="Missing authorization header"):
        authenticate_user(fake_auth_client, None)
    with pytest.raises(UnauthorizedError, match="Unauthorized"):
        authenticate_user(fake_auth_client, "Bearer forged")
    with pytest.raises(UnauthorizedError):
        authenticate_user(SimpleNamespace(auth=None), "Bearer valid-jwt")
