import io
import json
import urllib.error
import urllib.parse

import pytest

from app.ordersync.modules.salesdrive_sync import client as client_mod
from app.ordersync.modules.salesdrive_sync.client import SalesDriveClient, SalesDriveError, SalesDriveRateLimited


def _resp(payload):
    return io.BytesIO(json.dumps(payload).encode("utf-8"))


def _http_error(url, code, body=b""):
    return urllib.error.HTTPError(url, code, "error", {}, io.BytesIO(body))


@pytest.fixture()
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(client_mod.time, "sleep", calls.append)
    return calls


def _client(**kw):
    return SalesDriveClient(api_url="https://shop.salesdrive.me", api_key="key-123", form_key="form-1", **kw)


def test_base_url_accepts_pasted_list_endpoint():
    assert _client().base_url == "https://shop.salesdrive.me"
    c = SalesDriveClient(api_url="https://shop.salesdrive.me/api/order/list/", api_key="k")
    assert c.base_url == "https://shop.salesdrive.me"


def test_fetch_orders_paginates(monkeypatch, sleeps):
    seen = []

    def fake_urlopen(req, timeout=None):
        seen.append(req)
        qs = urllib.parse.parse_qs(urllib.parse.urlsplit(req.full_url).query)
        page = int(qs["page"][0])
        data = [{"id": 1}, {"id": 2}] if page == 1 else [{"id": 3}]
        return _resp({"status": "success", "data": data, "totals": {"count": 3}})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    orders = _client(page_size=2).fetch_orders_since("2025-08-01", "2025-08-02")

    assert [o["id"] for o in orders] == [1, 2, 3]
    assert len(seen) == 2
    first = seen[0]
    assert first.get_header("Form-api-key") == "key-123"
    qs = urllib.parse.parse_qs(urllib.parse.urlsplit(first.full_url).query)
    assert qs["filter[orderTime][from]"] == ["2025-08-01 00:00:00"]
    assert qs["filter[orderTime][to]"] == ["2025-08-02 23:59:59"]
    assert first.full_url.startswith("https://shop.salesdrive.me/api/order/list/?")


def test_error_status_raises(monkeypatch, sleeps):
    monkeypatch.setattr(
        "urllib.request.urlopen",
        lambda req, timeout=None: _resp({"status": "error", "message": "bad key"}),
    )
    with pytest.raises(SalesDriveError, match="bad key"):
        _client().fetch_orders_since("2025-08-01")


def test_rate_limit_is_retried_with_backoff(monkeypatch, sleeps):
    attempts = []

    def fake_urlopen(req, timeout=None):
        attempts.append(1)
        if len(attempts) < 3:
            raise _http_error(req.full_url, 429)
        return _resp({"status": "success", "data": [{"id": 9}], "totals": {"count": 1}})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    orders = _client().fetch_orders_since("2025-08-01", "2025-08-01")
    assert orders == [{"id": 9}]
    assert sleeps == [1, 2]


def test_rate_limit_gives_up(monkeypatch, sleeps):
    def fake_urlopen(req, timeout=None):
        raise _http_error(req.full_url, 429)

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    with pytest.raises(SalesDriveRateLimited):
        _client().fetch_orders_since("2025-08-01", "2025-08-01")
    assert sleeps == [1, 2, 4, 8]


def test_http_error_is_not_retried(monkeypatch, sleeps):
    calls = []

    def fake_urlopen(req, timeout=None):
        calls.append(1)
        raise _http_error(req.full_url, 500, b"boom")

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    with pytest.raises(SalesDriveError, match="HTTP 500"):
        _client().fetch_orders_since("2025-08-01", "2025-08-01")
    assert len(calls) == 1


def test_missing_credentials():
    with pytest.raises(SalesDriveError):
        SalesDriveClient(api_url="", api_key="").request_json("/api/order/list/")


def test_update_status(monkeypatch, sleeps):
    seen = []

    def fake_urlopen(req, timeout=None):
        seen.append(req)
        return _resp({"success": True})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    assert _client().update_status("A-77", "4") is True

    req = seen[0]
    assert req.full_url == "https://shop.salesdrive.me/api/order/update/"
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer key-123"
    assert json.loads(req.data) == {"form": "form-1", "externalId": "A-77", "data": {"statusId": "4"}}


def test_update_status_failure_returns_false(monkeypatch, sleeps):
    def fake_urlopen(req, timeout=None):
        raise _http_error(req.full_url, 400, b"nope")

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    assert _client().update_status("A-77", "4") is False


def test_update_status_requires_form_key():
    with pytest.raises(SalesDriveError):
        SalesDriveClient(api_url="https://x", api_key="k").update_status("A-77", "4")
