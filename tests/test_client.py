import json

import httpx
import pytest

from shelly_prom_exporter.client import (
    DecodeError,
    FetchTimeoutError,
    ShellyClient,
    TelemetrySample,
    TransportError,
    UnexpectedStatusError,
    status_url,
)


SWITCH_STATUS = {
    "id": 0,
    "source": "init",
    "output": True,
    "apower": 12.5,
    "voltage": 230.1,
    "current": 0.054,
    "aenergy": {"total": 1234.5, "by_minute": [0.0, 0.0, 0.0], "minute_ts": 1700000000},
    "temperature": {"tC": 32.0, "tF": 89.6},
}


def _client_for(handler) -> ShellyClient:
    return ShellyClient(transport=httpx.MockTransport(handler))


def test_status_url_strips_trailing_slash() -> None:
    assert status_url("http://h1/") == "http://h1/rpc/Switch.GetStatus"


def test_fetch_requests_switch_status_and_maps_fields() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=SWITCH_STATUS)

    with _client_for(handler) as client:
        sample = client.fetch("http://h1")

    assert sample == TelemetrySample(power=12.5, voltage=230.1, current=0.054, temperature_celsius=32.0)
    assert len(seen) == 1
    assert seen[0].method == "GET"
    assert seen[0].url.host == "h1"
    assert seen[0].url.path == "/rpc/Switch.GetStatus"
    assert seen[0].url.params["id"] == "0"


def test_fetch_accepts_integer_readings() -> None:
    payload = {"apower": 0, "voltage": 229, "current": 0, "temperature": {"tC": 40}}

    with _client_for(lambda request: httpx.Response(200, json=payload)) as client:
        sample = client.fetch("http://h1")

    assert sample.power == 0.0
    assert sample.voltage == 229.0
    assert isinstance(sample.voltage, float)
    assert sample.temperature_celsius == 40.0


def test_fetch_raises_timeout_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with _client_for(handler) as client:
        with pytest.raises(FetchTimeoutError) as excinfo:
            client.fetch("http://h1", timeout_seconds=0.5)

    assert "timed out after 0.5s" in str(excinfo.value)
    assert excinfo.value.url == "http://h1/rpc/Switch.GetStatus"


def test_fetch_raises_transport_error_on_connection_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    with _client_for(handler) as client:
        with pytest.raises(TransportError, match="Connection refused"):
            client.fetch("http://h1")


def test_timeout_is_not_reported_as_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    with _client_for(handler) as client:
        with pytest.raises(FetchTimeoutError):
            client.fetch("http://h1")


@pytest.mark.parametrize("status_code", [401, 404, 500, 503])
def test_fetch_raises_unexpected_status(status_code: int) -> None:
    with _client_for(lambda request: httpx.Response(status_code, text="nope")) as client:
        with pytest.raises(UnexpectedStatusError) as excinfo:
            client.fetch("http://h1")

    assert excinfo.value.status_code == status_code
    assert str(status_code) in str(excinfo.value)


def test_fetch_raises_decode_error_on_invalid_json() -> None:
    with _client_for(lambda request: httpx.Response(200, text="<html>oops</html>")) as client:
        with pytest.raises(DecodeError, match="failed to decode response"):
            client.fetch("http://h1")


@pytest.mark.parametrize(
    "payload, message",
    [
        ([1, 2, 3], "expected a JSON object"),
        ({"apower": 1.0, "voltage": 230.0, "current": 0.1}, "'temperature'"),
        ({"apower": 1.0, "voltage": 230.0, "current": 0.1, "temperature": {"tF": 90.0}}, "'tC'"),
        ({"apower": "high", "voltage": 230.0, "current": 0.1, "temperature": {"tC": 30.0}}, "'apower'"),
        ({"apower": 1.0, "voltage": None, "current": 0.1, "temperature": {"tC": 30.0}}, "'voltage'"),
        ({"apower": 1.0, "voltage": 230.0, "current": True, "temperature": {"tC": 30.0}}, "'current'"),
        ({"apower": 10**400, "voltage": 230.0, "current": 0.1, "temperature": {"tC": 30.0}}, "'apower' out of range"),
    ],
)
def test_fetch_raises_decode_error_on_incomplete_payload(payload: object, message: str) -> None:
    body = json.dumps(payload)

    with _client_for(lambda request: httpx.Response(200, text=body)) as client:
        with pytest.raises(DecodeError, match=message):
            client.fetch("http://h1")


def test_close_closes_underlying_http_client() -> None:
    client = _client_for(lambda request: httpx.Response(200, json=SWITCH_STATUS))
    client.close()
    assert client._http.is_closed


def test_fetch_raises_decode_error_on_bad_content_encoding() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip at all")

    with _client_for(handler) as client:
        with pytest.raises(DecodeError, match="failed to decode response"):
            client.fetch("http://h1")


def test_fetch_raises_transport_error_on_other_request_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.TooManyRedirects("Exceeded maximum allowed redirects.", request=request)

    with _client_for(handler) as client:
        with pytest.raises(TransportError, match="Exceeded maximum allowed redirects"):
            client.fetch("http://h1")
