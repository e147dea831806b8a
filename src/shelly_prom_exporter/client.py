from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx


LOGGER = logging.getLogger("shelly_prom_exporter.client")
DEFAULT_TIMEOUT_SECONDS = 5.0
STATUS_PATH = "/rpc/Switch.GetStatus"


@dataclass(frozen=True)
class TelemetrySample:
    power: float
    voltage: float
    current: float
    temperature_celsius: float


class FetchError(Exception):
    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FetchError):
    pass


class TransportError(FetchError):
    pass


class UnexpectedStatusError(FetchError):
    def __init__(self, status_code: int, *, url: str) -> None:
        super().__init__(f"got unexpected status code {status_code} from {url}", url=url)
        self.status_code = status_code


class DecodeError(FetchError):
    pass


def status_url(address: str) -> str:
    return f"{address.rstrip('/')}{STATUS_PATH}"


def _require_float(payload: dict[str, Any], key: str, *, url: str) -> float:
    value = payload.get(key)
    # bool is an int subclass but never a valid reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"field {key!r} missing or not numeric in response from {url}", url=url)
    try:
        return float(value)
    except OverflowError as error:
        raise DecodeError(f"field {key!r} out of range in response from {url}", url=url) from error


def parse_status_payload(payload: Any, *, url: str) -> TelemetrySample:
    if not isinstance(payload, dict):
        raise DecodeError(f"expected a JSON object from {url}, got {type(payload).__name__}", url=url)
    temperature = payload.get("temperature")
    if not isinstance(temperature, dict):
        raise DecodeError(f"field 'temperature' missing or not an object in response from {url}", url=url)
    return TelemetrySample(
        power=_require_float(payload, "apower", url=url),
        voltage=_require_float(payload, "voltage", url=url),
        current=_require_float(payload, "current", url=url),
        temperature_celsius=_require_float(temperature, "tC", url=url),
    )


class ShellyClient:
    """Fetches switch status from Shelly Gen2 devices over their RPC HTTP API.

    One pooled ``httpx.Client`` is shared by every fetch, so a single instance
    can be used from several worker threads at once.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._http = httpx.Client(timeout=timeout_seconds, transport=transport)

    def __enter__(self) -> ShellyClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def fetch(self, address: str, timeout_seconds: float | None = None) -> TelemetrySample:
        url = status_url(address)
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        try:
            response = self._http.get(url, params={"id": 0}, timeout=timeout)
        except httpx.TimeoutException as error:
            raise FetchTimeoutError(
                f"request to {url} timed out after {timeout:.1f}s", url=url
            ) from error
        except httpx.DecodingError as error:
            raise DecodeError(f"failed to decode response from {address}: {error}", url=url) from error
        except (httpx.RequestError, httpx.InvalidURL) as error:
            raise TransportError(f"failed to fetch data from {address}: {error}", url=url) from error

        if not response.is_success:
            raise UnexpectedStatusError(response.status_code, url=url)

        try:
            payload = response.json()
        except ValueError as error:
            raise DecodeError(f"failed to decode response from {address}: {error}", url=url) from error
        LOGGER.debug("status payload from %s: %s", url, payload)
        return parse_status_payload(payload, url=url)
