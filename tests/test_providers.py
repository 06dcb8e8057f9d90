from datetime import date, datetime

import pytest
import pytz
import requests

import providers
from errors import ExternalProviderError
from models import DataSource, HistorySource, User

START = date(2024, 1, 1)
END = date(2024, 1, 3)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


@pytest.fixture
def http(monkeypatch):
    """Routes requests.request by URL fragment and records every call"""
    routes = {}
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append({"method": method, "url": url, **kwargs})
        for fragment, response in routes.items():
            if fragment in url:
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404)

    monkeypatch.setattr(providers.requests, "request", fake_request)
    return routes, calls


def test_kg_to_lbs():
    assert providers.kg_to_lbs(100) == 220.46
    assert providers.kg_to_lbs("80") == 176.37
    assert providers.kg_to_lbs("abc") is None
    assert providers.kg_to_lbs(0) is None


def test_fitbit_steps_and_weights(http):
    routes, calls = http
    routes["/activities/steps/"] = FakeResponse(payload={"activities-steps": [
        {"dateTime": "2024-01-01", "value": "12000"},
        {"dateTime": "2024-01-02", "value": "0"},
        {"dateTime": "2024-01-03", "value": "8000"},
    ]})
    routes["/body/log/weight/"] = FakeResponse(payload={"weight": [
        {"date": "2024-01-01", "weight": 200.5},
        {"date": "2024-01-03", "weight": 90, "unit": "kg"},
    ]})

    provider = providers.FitbitProvider("token", "ABC123")
    history = provider.fetch_daily_history(START, END)

    assert [(h.day, h.steps, h.weight) for h in history] == [
        (date(2024, 1, 1), 12000, 200.5),
        (date(2024, 1, 2), 0, None),
        (date(2024, 1, 3), 8000, 198.42),
    ]
    assert provider.source_tag == HistorySource.device_sync
    assert "/ABC123/activities/steps/date/2024-01-01/2024-01-03.json" in calls[0]["url"]
    assert calls[0]["headers"]["Authorization"] == "Bearer token"
    assert calls[0]["headers"]["Accept-Language"] == "en_US"
    assert calls[0]["timeout"] == providers.PROVIDER_TIMEOUT_SECONDS


def test_fitbit_missing_weight_series_is_not_an_error(http):
    routes, _ = http
    routes["/activities/steps/"] = FakeResponse(payload={"activities-steps": [
        {"dateTime": "2024-01-01", "value": "500"},
    ]})

    history = providers.FitbitProvider("token").fetch_daily_history(START, END)
    assert history[0].weight is None


@pytest.mark.parametrize("status,auth_expired,rate_limited", [
    (401, True, False),
    (403, True, False),
    (429, False, True),
    (500, False, False),
])
def test_fitbit_http_errors_are_explicit(http, status, auth_expired, rate_limited):
    routes, _ = http
    routes["/activities/steps/"] = FakeResponse(status, text="nope")

    with pytest.raises(ExternalProviderError) as exc_info:
        providers.FitbitProvider("token").fetch_daily_history(START, END)

    assert exc_info.value.http_status == status
    assert exc_info.value.auth_expired is auth_expired
    assert exc_info.value.rate_limited is rate_limited


def test_timeouts_and_connection_errors(http):
    routes, _ = http
    routes["/activities/steps/"] = requests.exceptions.Timeout()
    with pytest.raises(ExternalProviderError):
        providers.FitbitProvider("token").fetch_daily_history(START, END)

    routes["dataset:aggregate"] = requests.exceptions.ConnectionError("down")
    with pytest.raises(ExternalProviderError):
        providers.GoogleFitProvider("token").fetch_daily_history(START, END)


def test_missing_token_fails_before_calling(http):
    _, calls = http
    with pytest.raises(ExternalProviderError) as exc_info:
        providers.GoogleFitProvider(None).fetch_daily_history(START, END)
    assert exc_info.value.auth_expired
    assert calls == []


def millis(day, tz="America/New_York"):
    local = pytz.timezone(tz).localize(datetime(day.year, day.month, day.day))
    return str(int(local.timestamp() * 1000))


def test_google_fit_daily_buckets(http):
    routes, calls = http
    routes["dataset:aggregate"] = FakeResponse(payload={"bucket": [
        {"startTimeMillis": millis(date(2024, 1, 1)), "dataset": [
            {"dataSourceId": "derived:com.google.step_count.delta:merged",
             "point": [{"value": [{"intVal": 11000}]}]},
        ]},
        {"startTimeMillis": millis(date(2024, 1, 2)), "dataset": [
            {"dataSourceId": "derived:com.google.step_count.delta:merged", "point": []},
        ]},
        {"dataset": []},
    ]})

    provider = providers.GoogleFitProvider("token")
    history = provider.fetch_daily_history(START, END, "America/New_York")

    assert [(h.day, h.steps, h.weight) for h in history] == [
        (date(2024, 1, 1), 11000, None),
        (date(2024, 1, 2), 0, None),
    ]
    assert provider.source_tag == HistorySource.aggregate_sync

    body = calls[0]["json"]
    assert calls[0]["method"] == "POST"
    assert body["bucketByTime"]["period"]["timeZoneId"] == "America/New_York"
    assert body["startTimeMillis"] == int(millis(START))
    assert body["endTimeMillis"] == int(millis(date(2024, 1, 4)))


def test_fitbit_non_json_body_is_a_provider_error(http):
    routes, _ = http
    routes["/activities/steps/"] = FakeResponse(payload=ValueError("Expecting value"), text="<html>")

    with pytest.raises(ExternalProviderError) as exc:
        providers.FitbitProvider("token").fetch_daily_history(START, END)
    assert "Respuesta malformada" in exc.value.detail
    assert not exc.value.auth_expired


@pytest.mark.parametrize("steps_payload, weight_payload", [
    ({"activities-steps": [{"value": "100"}]}, {}),
    ({"activities-steps": [{"dateTime": "ayer", "value": "100"}]}, {}),
    ({"activities-steps": []}, {"weight": [{"date": "2024-01-01", "weight": "pesado"}]}),
    (["not", "a", "dict"], {}),
])
def test_fitbit_unexpected_shapes_are_provider_errors(http, steps_payload, weight_payload):
    routes, _ = http
    routes["/activities/steps/"] = FakeResponse(payload=steps_payload)
    routes["/body/log/weight/"] = FakeResponse(payload=weight_payload)

    with pytest.raises(ExternalProviderError):
        providers.FitbitProvider("token").fetch_daily_history(START, END)


def test_google_fit_bad_bucket_is_a_provider_error(http):
    routes, _ = http
    routes["dataset:aggregate"] = FakeResponse(payload={"bucket": [{"startTimeMillis": "mañana"}]})

    with pytest.raises(ExternalProviderError) as exc:
        providers.GoogleFitProvider("token").fetch_daily_history(START, END, "UTC")
    assert exc.value.provider == "google-fit"


def test_get_provider():
    assert isinstance(providers.get_provider(User(data_source=DataSource.fitbit.value)),
                      providers.FitbitProvider)
    assert isinstance(providers.get_provider(User(data_source=DataSource.google_fit.value)),
                      providers.GoogleFitProvider)
    assert providers.get_provider(User(data_source=DataSource.manual.value)) is None
