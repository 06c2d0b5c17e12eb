from datetime import date
from types import SimpleNamespace

import pytest
import requests

import meta
from meta import (
    MetaAPIError,
    clamp_int,
    insights_to_numbers,
    latest_value,
    media_engagement,
    period_for_timeframe,
    story_completion_rate,
    timeframe_range,
    to_metric_values,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, 25),
        ("10", 10),
        (" 12 ", 12),
        (100, 50),
        (0, 1),
        (-3, 1),
        (7.9, 7),
        ("abc", 25),
        (True, 25),
        (float("nan"), 25),
        (float("inf"), 25),
        ([], 25),
    ],
)
def test_clamp_int(value, expected):
    assert clamp_int(value, 25, 1, 50) == expected


def test_timeframe_range_uses_thirty_days_for_monthly_windows():
    today = date(2024, 3, 31)
    assert timeframe_range("this_month", today) == ("2024-03-01", "2024-03-31")
    assert timeframe_range("last_30_days", today) == ("2024-03-01", "2024-03-31")


def test_timeframe_range_defaults_to_seven_days():
    today = date(2024, 3, 31)
    assert timeframe_range("this_week", today) == ("2024-03-24", "2024-03-31")
    assert timeframe_range("last_7_days", today) == ("2024-03-24", "2024-03-31")
    assert timeframe_range("yesterday", today) == ("2024-03-24", "2024-03-31")


def test_period_for_timeframe():
    assert period_for_timeframe("this_month") == "this_month"
    assert period_for_timeframe("last_30_days") == "this_month"
    assert period_for_timeframe("last_7_days") == "this_week"
    assert period_for_timeframe(None) == "this_week"


def test_to_metric_values_normalizes_every_shape():
    payload = {
        "data": [
            {"name": "reach", "period": "day", "values": [{"value": 5, "end_time": "t1"}, {"value": "7"}]},
            {"name": "accounts_engaged", "period": "day", "total_value": {"value": 42}},
            {"name": "follower_demographics", "value": {"BR": 10, "US": 2}},
            {"period": "day", "values": [{"value": 1}]},
            {"name": "", "value": 3},
            "garbage",
            {"name": "views"},
        ]
    }

    metrics = to_metric_values(payload)

    assert [metric.name for metric in metrics] == ["reach", "accounts_engaged", "follower_demographics", "views"]
    assert [metric.kind for metric in metrics] == ["series", "scalar", "breakdown", "empty"]
    assert metrics[0].to_dict() == {
        "name": "reach",
        "period": "day",
        "values": [{"value": 5, "end_time": "t1"}, {"value": 7}],
    }
    assert metrics[1].to_dict() == {"name": "accounts_engaged", "period": "day", "value": 42}
    assert metrics[3].to_dict() == {"name": "views"}


def test_to_metric_values_tolerates_missing_data():
    assert to_metric_values(None) == []
    assert to_metric_values({"data": "nope"}) == []


def test_latest_value_prefers_scalar_then_last_point():
    scalar, series, breakdown = to_metric_values({
        "data": [
            {"name": "a", "value": 3},
            {"name": "b", "values": [{"value": 1}, {"value": 9}]},
            {"name": "c", "value": {"x": 1}},
        ]
    })
    assert latest_value(scalar) == 3
    assert latest_value(series) == 9
    assert latest_value(breakdown) is None
    assert latest_value(None) is None


def test_insights_to_numbers_skips_missing_values():
    payload = {
        "data": [
            {"name": "reach", "values": [{"value": 120}]},
            {"name": "saved", "values": [{"value": None}]},
            {"name": "shares", "total_value": {"value": 4}},
        ]
    }
    assert insights_to_numbers(payload) == {"reach": 120, "shares": 4}


def test_media_engagement_sums_likes_comments_saved_shares():
    item = {"like_count": 10, "comments_count": 3}
    assert media_engagement(item, {"saved": 4, "shares": 1}) == 18
    assert media_engagement(item) == 13
    assert media_engagement({}) == 0


@pytest.mark.parametrize(
    "insights, expected",
    [
        ({"impressions": 100, "exits": 20}, 80),
        ({"impressions": 8, "exits": 1}, 88),
        ({"impressions": 50, "exits": 0}, 0),
        ({"impressions": 0, "exits": 5}, 0),
        ({"impressions": 100}, 0),
        ({}, 0),
    ],
)
def test_story_completion_rate(insights, expected):
    assert story_completion_rate(insights) == expected


def test_gget_builds_url_with_token_and_proof(monkeypatch):
    calls = []

    def fake_request_json(method, url, **kwargs):
        calls.append((method, url, kwargs))
        return 200, {"id": "1"}

    monkeypatch.setattr(meta, "request_json", fake_request_json)

    result = meta.gget("/123", {"fields": "id"}, token="tok", version="v24.0", timeout=5, app_secret="shh")

    assert result == {"id": "1"}
    method, url, kwargs = calls[0]
    assert method == "GET"
    assert url.startswith("https://graph.facebook.com/v24.0/123?")
    assert "access_token=tok" in url
    assert f"appsecret_proof={meta.appsecret_proof('tok', 'shh')}" in url
    assert "fields=id" in url
    assert kwargs["timeout"] == 5


def test_gget_raises_meta_api_error_on_non_2xx(monkeypatch):
    error = {"message": "Invalid OAuth access token.", "type": "OAuthException", "code": 190}
    monkeypatch.setattr(meta, "request_json", lambda *args, **kwargs: (400, {"error": error}))

    with pytest.raises(MetaAPIError) as excinfo:
        meta.gget("/123", token="tok")

    assert excinfo.value.status == 400
    assert excinfo.value.code == 190
    assert str(excinfo.value).startswith("Graph API 400: ")
    assert "Invalid OAuth access token." in str(excinfo.value)


def test_gget_requires_token():
    with pytest.raises(RuntimeError):
        meta.gget("/123", token=None)


def test_request_json_maps_timeout(monkeypatch):
    def fake_request(*args, **kwargs):
        raise requests.exceptions.Timeout("slow")

    monkeypatch.setattr(meta.requests, "request", fake_request)

    with pytest.raises(MetaAPIError) as excinfo:
        meta.request_json("GET", "https://graph.facebook.com/v24.0/me", timeout=3)
    assert excinfo.value.status == 504


def test_request_json_keeps_non_json_bodies(monkeypatch):
    response = SimpleNamespace(status_code=502, text="Bad gateway")
    monkeypatch.setattr(meta.requests, "request", lambda *args, **kwargs: response)

    assert meta.request_json("GET", "https://graph.facebook.com/v24.0/me") == (502, {"raw": "Bad gateway"})


def test_request_json_errors_do_not_expose_credentials(monkeypatch):
    url = "https://graph.facebook.com/v24.0/oauth/access_token"

    def fake_request(method, request_url, params=None, **kwargs):
        raise requests.exceptions.ConnectionError(
            f"Max retries exceeded with url: {request_url}?access_token=SECRET_TOKEN_123"
            f"&client_secret={params['client_secret']}"
        )

    monkeypatch.setattr(meta.requests, "request", fake_request)

    with pytest.raises(MetaAPIError) as excinfo:
        meta.request_json("GET", url, params={"client_secret": "APP_SECRET_456"})

    assert excinfo.value.status == 500
    assert str(excinfo.value) == "Request failed: ConnectionError"
    assert "SECRET_TOKEN_123" not in str(excinfo.value)
    assert "APP_SECRET_456" not in str(excinfo.value)


def test_dashboard_messages_do_not_expose_access_token(monkeypatch):
    from config import DashboardConfig
    from dashboard import DashboardRequest, build_dashboard

    def fake_request(method, url, **kwargs):
        if "/media" in url or "/stories" in url or "/insights" in url:
            raise requests.exceptions.ConnectionError(f"Max retries exceeded with url: {url}")
        return SimpleNamespace(status_code=200, text='{"id": "1784"}')

    monkeypatch.setattr(meta.requests, "request", fake_request)
    config = DashboardConfig(access_token="SECRET_TOKEN_123", business_id="1784")

    payload = build_dashboard(config, DashboardRequest(business_id="1784"))

    assert payload["messages"]
    assert not any("SECRET_TOKEN_123" in message for message in payload["messages"])
