import io
import json
from decimal import Decimal
from urllib.error import URLError

import pytest

import provider
from config import Settings
from errors import UpstreamUnavailable
from provider import PlaidRecurringClient, parse_outflow_streams


PAYLOAD = {
    "inflow_streams": [],
    "outflow_streams": [
        {
            "stream_id": "s1",
            "description": "NETFLIX.COM",
            "merchant_name": "Netflix",
            "frequency": "MONTHLY",
            "average_amount": {"amount": 15.99, "iso_currency_code": "USD"},
            "is_active": True,
            "predicted_next_date": "2026-11-01",
            "personal_finance_category": {"primary": "ENTERTAINMENT"},
        },
        {
            "stream_id": "s2",
            "description": "Gym",
            "frequency": "ANNUALLY",
            "average_amount": {"amount": -120, "iso_currency_code": None},
            "is_active": False,
        },
    ],
}


def make_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        timezone="UTC",
        db_timeout_secs=1,
        provider_base_url="https://provider.test",
        provider_client_id="client",
        provider_secret="secret",
        provider_timeout_secs=2,
        sync_interval_hours=24,
        scheduler_enabled=False,
        reconcile_lock_timeout_secs=1,
    )


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def test_parse_outflow_streams() -> None:
    payload = json.loads(json.dumps(PAYLOAD), parse_float=Decimal)

    streams = parse_outflow_streams(payload)

    assert [s.stream_id for s in streams] == ["s1", "s2"]
    assert streams[0].average_amount.amount == Decimal("15.99")
    assert streams[0].average_amount.currency_code == "USD"
    assert streams[0].category == "Entertainment"
    assert streams[0].predicted_next_date.isoformat() == "2026-11-01"
    assert streams[1].average_amount.currency_code is None
    assert streams[1].category is None
    assert streams[1].is_active is False


def test_parse_rejects_unexpected_payload() -> None:
    with pytest.raises(UpstreamUnavailable):
        parse_outflow_streams({"error_code": "ITEM_LOGIN_REQUIRED"})


def test_client_posts_credentials_and_token(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return FakeResponse(json.dumps(PAYLOAD).encode("utf-8"))

    monkeypatch.setattr(provider, "urlopen", fake_urlopen)

    streams = PlaidRecurringClient(make_settings()).fetch_recurring_streams("tok")

    assert captured["url"] == "https://provider.test/transactions/recurring/get"
    assert captured["body"] == {
        "client_id": "client",
        "secret": "secret",
        "access_token": "tok",
    }
    assert captured["timeout"] == 2
    assert len(streams) == 2
    assert streams[0].average_amount.amount == Decimal("15.99")


def test_client_wraps_network_errors(monkeypatch) -> None:
    def failing_urlopen(req, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr(provider, "urlopen", failing_urlopen)

    with pytest.raises(UpstreamUnavailable):
        PlaidRecurringClient(make_settings()).fetch_recurring_streams("tok")


def test_client_wraps_socket_errors(monkeypatch) -> None:
    def reset_urlopen(req, timeout):
        raise ConnectionResetError("connection reset by peer")

    monkeypatch.setattr(provider, "urlopen", reset_urlopen)

    with pytest.raises(UpstreamUnavailable):
        PlaidRecurringClient(make_settings()).remove_item("tok")
