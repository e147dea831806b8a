from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence

from prometheus_client import CollectorRegistry, Gauge
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from shelly_prom_exporter.client import TelemetrySample
from shelly_prom_exporter.service import PollResult


_SAMPLE_GAUGES: tuple[tuple[str, str, str], ...] = (
    ("shelly_power_watts", "Current power consumption in watts", "power"),
    ("shelly_voltage_volts", "Current voltage in volts", "voltage"),
    ("shelly_current_amperes", "Current in amperes", "current"),
    ("shelly_temperature_celsius", "Temperature in degrees Celsius", "temperature_celsius"),
)


class MetricsRegistry(Collector):
    """Latest telemetry sample per device name.

    Samples are immutable and swapped in whole under one lock, so a scrape
    never renders a device with fields from two different fetches.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: dict[str, TelemetrySample] = {}

    def update(self, name: str, sample: TelemetrySample) -> None:
        with self._lock:
            self._samples[name] = sample

    def snapshot(self) -> dict[str, TelemetrySample]:
        with self._lock:
            return dict(self._samples)

    def collect(self) -> Iterator[GaugeMetricFamily]:
        samples = self.snapshot()
        for metric_name, documentation, field_name in _SAMPLE_GAUGES:
            family = GaugeMetricFamily(metric_name, documentation, labels=["name"])
            for name, sample in samples.items():
                family.add_metric([name], getattr(sample, field_name))
            yield family

    def describe(self) -> Iterator[GaugeMetricFamily]:
        for metric_name, documentation, _ in _SAMPLE_GAUGES:
            yield GaugeMetricFamily(metric_name, documentation, labels=["name"])


class ShellyMetricsPublisher:
    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        samples: MetricsRegistry | None = None,
    ) -> None:
        if registry is None:
            registry = CollectorRegistry()
        if samples is None:
            samples = MetricsRegistry()
        self.registry = registry
        self.samples = samples
        self.registry.register(self.samples)

        self.poll_success = Gauge(
            "shelly_poll_success",
            "Latest poll status per device (1=success, 0=failure)",
            ["name"],
            registry=self.registry,
        )
        self.poll_duration_seconds = Gauge(
            "shelly_poll_duration_seconds",
            "Duration of the last status fetch per device in seconds",
            ["name"],
            registry=self.registry,
        )
        self.poll_timestamp_seconds = Gauge(
            "shelly_poll_timestamp_seconds",
            "Unix timestamp of the last successful status fetch per device",
            ["name"],
            registry=self.registry,
        )

    def apply_poll_results(self, results: Sequence[PollResult]) -> None:
        for result in results:
            name = result.device.name
            self.poll_success.labels(name=name).set(1.0 if result.success else 0.0)
            self.poll_duration_seconds.labels(name=name).set(result.poll_duration_seconds)
            if result.success and result.observed_at is not None:
                self.poll_timestamp_seconds.labels(name=name).set(result.observed_at)
