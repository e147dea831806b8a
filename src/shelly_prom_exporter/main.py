from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from types import FrameType

from shelly_prom_exporter.client import DEFAULT_TIMEOUT_SECONDS, ShellyClient
from shelly_prom_exporter.exporter import ShellyMetricsPublisher
from shelly_prom_exporter.server import ExposureError, ExposureServer
from shelly_prom_exporter.service import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    ConfigError,
    DeviceConfig,
    FailureTracker,
    PollResult,
    PollScheduler,
    load_devices,
    poll_once,
)


LOGGER = logging.getLogger("shelly_prom_exporter")


@dataclass(frozen=True)
class AppConfig:
    config_path: Path
    poll_interval_seconds: float
    timeout_seconds: float
    max_workers: int
    listen_address: str
    listen_port: int
    run_once: bool
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prometheus exporter for Shelly power meters")
    parser.add_argument(
        "--config",
        default=os.getenv("SHELLY_CONFIG", "config.yaml"),
        help="path to the YAML device list (name/address pairs)",
    )
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=_float_env("SHELLY_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS),
        help="interval between poll cycles",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=_float_env("SHELLY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
        help="timeout for each device status request",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=_int_env("SHELLY_MAX_WORKERS", DEFAULT_MAX_WORKERS),
        help="devices fetched in parallel per cycle (1 polls sequentially)",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("SHELLY_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("SHELLY_LISTEN_PORT", 9090),
        help="http bind port for /metrics endpoint",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single poll cycle and exit",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("SHELLY_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(argv: list[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if args.poll_interval_seconds <= 0:
        parser.error("--poll-interval-seconds must be positive")
    if args.timeout_seconds <= 0:
        parser.error("--timeout-seconds must be positive")
    if args.max_workers < 1:
        parser.error("--max-workers must be at least 1")
    return AppConfig(
        config_path=Path(args.config),
        poll_interval_seconds=args.poll_interval_seconds,
        timeout_seconds=args.timeout_seconds,
        max_workers=args.max_workers,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        run_once=bool(args.once),
        log_level=args.log_level.upper(),
    )


def _run_poll_cycle(
    *,
    config: AppConfig,
    devices: list[DeviceConfig],
    client: ShellyClient,
    metrics: ShellyMetricsPublisher,
    tracker: FailureTracker,
) -> list[PollResult]:
    results = poll_once(
        devices,
        client,
        metrics.samples,
        timeout_seconds=config.timeout_seconds,
        max_workers=config.max_workers,
        tracker=tracker,
    )
    metrics.apply_poll_results(results)
    succeeded = sum(1 for result in results if result.success)
    LOGGER.info("poll cycle finished: %d/%d devices updated", succeeded, len(results))
    return results


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _request_stop(signum: int, _frame: FrameType | None) -> None:
        LOGGER.info("received %s, shutting down", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)


def run(config: AppConfig, stop_event: threading.Event | None = None) -> int:
    if stop_event is None:
        stop_event = threading.Event()

    try:
        devices = load_devices(config.config_path)
    except ConfigError as error:
        LOGGER.error("%s", error)
        return 1
    LOGGER.info("loaded %d devices from %s", len(devices), config.config_path)

    metrics = ShellyMetricsPublisher()
    server = ExposureServer(
        metrics.registry,
        address=config.listen_address,
        port=config.listen_port,
        stop_event=stop_event,
    )
    try:
        server.start()
    except ExposureError as error:
        LOGGER.error("%s", error)
        return 1

    tracker = FailureTracker()
    try:
        with ShellyClient(timeout_seconds=config.timeout_seconds) as client:

            def run_cycle() -> list[PollResult]:
                return _run_poll_cycle(
                    config=config,
                    devices=devices,
                    client=client,
                    metrics=metrics,
                    tracker=tracker,
                )

            if config.run_once:
                run_cycle()
            else:
                LOGGER.info("polling every %.1fs", config.poll_interval_seconds)
                PollScheduler(
                    run_cycle,
                    interval_seconds=config.poll_interval_seconds,
                    stop_event=stop_event,
                ).run()
    finally:
        server.stop()

    if server.failed:
        return 1
    LOGGER.info("shutdown complete")
    return 0


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    raise SystemExit(run(config, stop_event))


if __name__ == "__main__":
    main()
