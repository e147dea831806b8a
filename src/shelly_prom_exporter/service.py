from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from shelly_prom_exporter.client import FetchError, ShellyClient, TelemetrySample

if TYPE_CHECKING:
    from shelly_prom_exporter.exporter import MetricsRegistry


LOGGER = logging.getLogger("shelly_prom_exporter.poll")
DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_MAX_WORKERS = 8


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class DeviceConfig:
    name: str
    address: str


@dataclass(frozen=True)
class PollResult:
    device: DeviceConfig
    success: bool
    poll_duration_seconds: float
    observed_at: float | None = None
    sample: TelemetrySample | None = None
    error: str | None = None


def _normalize_address(raw: str) -> str:
    address = raw.strip().rstrip("/")
    if "://" not in address:
        address = f"http://{address}"
    return address


def _parse_device_entry(index: int, entry: Any) -> DeviceConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"device #{index} must be a mapping with 'name' and 'address'")
    name = entry.get("name")
    address = entry.get("address")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"device #{index} has no 'name'")
    if not isinstance(address, str) or not address.strip():
        raise ConfigError(f"device {name!r} has no 'address'")
    return DeviceConfig(name=name.strip(), address=_normalize_address(address))


def parse_devices(data: Any) -> list[DeviceConfig]:
    if isinstance(data, dict):
        data = data.get("devices")
    if not isinstance(data, list):
        raise ConfigError("config must be a list of devices or a mapping with a 'devices' list")

    devices = [_parse_device_entry(index, entry) for index, entry in enumerate(data)]
    seen: set[str] = set()
    for device in devices:
        if device.name in seen:
            LOGGER.warning("device name %r configured more than once; later readings overwrite earlier ones", device.name)
        seen.add(device.name)
    return devices


def load_devices(path: str | Path) -> list[DeviceConfig]:
    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigError(f"failed to read config file {config_path}: {error}") from error
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as error:
        raise ConfigError(f"failed to parse config file {config_path}: {error}") from error
    return parse_devices(data)


class FailureTracker:
    """Remembers the last error per device to keep repeated failures quiet."""

    def __init__(self) -> None:
        self._last_errors: dict[str, str] = {}

    def record(self, result: PollResult) -> None:
        name = result.device.name
        if result.success:
            previous = self._last_errors.pop(name, None)
            if previous is not None:
                LOGGER.info("device %s recovered after failure: %s", name, previous)
            return

        error = result.error or "unknown error"
        if self._last_errors.get(name) == error:
            LOGGER.debug("failed to fetch data for %s (%s): %s", name, result.device.address, error)
        else:
            LOGGER.warning("failed to fetch data for %s (%s): %s", name, result.device.address, error)
        self._last_errors[name] = error


def _poll_device(
    device: DeviceConfig,
    client: ShellyClient,
    registry: MetricsRegistry,
    timeout_seconds: float | None,
) -> PollResult:
    monotonic_start = time.monotonic()
    try:
        sample = client.fetch(device.address, timeout_seconds)
    except FetchError as error:
        return PollResult(
            device=device,
            success=False,
            poll_duration_seconds=time.monotonic() - monotonic_start,
            error=f"{type(error).__name__}: {error}",
        )

    registry.update(device.name, sample)
    return PollResult(
        device=device,
        success=True,
        poll_duration_seconds=time.monotonic() - monotonic_start,
        observed_at=time.time(),
        sample=sample,
    )


def poll_once(
    devices: Sequence[DeviceConfig],
    client: ShellyClient,
    registry: MetricsRegistry,
    *,
    timeout_seconds: float | None = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    tracker: FailureTracker | None = None,
) -> list[PollResult]:
    if not devices:
        return []
    if tracker is None:
        tracker = FailureTracker()

    results: list[PollResult] = []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(devices)))) as executor:
        futures = [
            executor.submit(_poll_device, device, client, registry, timeout_seconds)
            for device in devices
        ]
        for device, future in zip(devices, futures):
            try:
                result = future.result()
            except Exception as error:
                LOGGER.exception("unexpected error while polling %s", device.name)
                result = PollResult(
                    device=device,
                    success=False,
                    poll_duration_seconds=0.0,
                    error=f"{type(error).__name__}: {error}",
                )
            if result.success:
                LOGGER.info("successfully fetched data for %s (%s)", device.name, device.address)
            tracker.record(result)
            results.append(result)
    return results


class SchedulerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class PollScheduler:
    def __init__(
        self,
        run_cycle: Callable[[], object],
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.run_cycle = run_cycle
        self.interval_seconds = interval_seconds
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.state = SchedulerState.IDLE

    def stop(self) -> None:
        self.stop_event.set()

    def run(self) -> None:
        self.state = SchedulerState.RUNNING
        try:
            next_poll_at = time.monotonic()
            while not self.stop_event.is_set():
                try:
                    self.run_cycle()
                except Exception:
                    LOGGER.exception("poll cycle failed")
                next_poll_at = max(next_poll_at + self.interval_seconds, time.monotonic())
                # returns True as soon as a stop is requested
                if self.stop_event.wait(max(0.0, next_poll_at - time.monotonic())):
                    break
        finally:
            self.state = SchedulerState.STOPPED
