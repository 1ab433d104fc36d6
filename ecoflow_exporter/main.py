# ecoflow_exporter/main.py

import os
import sys

from prometheus_client import CollectorRegistry, generate_latest

from .cli import build_parser
from .config import Config, DEFAULT_CONFIG_FILE, parse_duration
from .logging import ConsoleLog

from .services.ecoflow_api_client import EcoflowAPIClient
from .services.exporter_collector import ExporterCollector
from .services.http_server import MetricsServer


def _resolve(flag_value, env_name: str, fallback):
    """Command line flag first, then the environment, then the fallback."""
    if flag_value:
        return flag_value
    env_value = os.environ.get(env_name, "")
    if env_value:
        return env_value
    return fallback


def build_registry(app_cfg, check_timeout: float, log, session=None):
    client = EcoflowAPIClient(app_cfg.api, log, session=session)
    exporter = ExporterCollector.for_devices(app_cfg.devices, client, check_timeout, log)
    registry = CollectorRegistry()
    registry.register(exporter)
    return registry, exporter, client


def run_check(registry, exporter, log) -> int:
    output = generate_latest(registry).decode("utf-8")
    sys.stdout.write(output)

    failing = [c for c in exporter.collectors if c.last_error]
    for collector in failing:
        log.error(
            "[check] %s (%s): %s",
            collector.device.label,
            collector.device.serial_number,
            collector.last_error,
        )
    return 1 if failing else 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log = ConsoleLog(level="DEBUG" if args.debug else "INFO", quiet=args.quiet).setup()

    config_file = _resolve(args.config_file, "CONFIG_FILE", DEFAULT_CONFIG_FILE)
    try:
        app_cfg = Config.load(config_file, log)
        listen = _resolve(args.listen, "LISTEN", app_cfg.exporter.listen)
        metrics_path = _resolve(args.metrics_path, "METRICS_PATH", app_cfg.exporter.metrics_path)
        raw_timeout = _resolve(args.check_timeout, "CHECK_TIMEOUT", None)
        check_timeout = parse_duration(raw_timeout) if raw_timeout else app_cfg.exporter.check_timeout
        if check_timeout <= 0:
            raise ValueError(f"check timeout must be positive, got {raw_timeout!r}")
    except (OSError, ValueError) as exc:
        log.error("Couldn't load config: %s", exc)
        return 1

    console_logger = ConsoleLog(
        level="DEBUG" if args.debug else app_cfg.logging.console_level,
        quiet=args.quiet or app_cfg.logging.console_quiet,
        debug_modules=app_cfg.logging.debug_modules,
    )
    log = console_logger.setup()

    if not app_cfg.devices:
        log.warning("No devices configured in %s", config_file)
    for device in app_cfg.devices:
        log.info("Monitoring %s (%s)", device.label, device.serial_number)

    registry, exporter, client = build_registry(app_cfg, check_timeout, log)

    try:
        if args.command == "check":
            return run_check(registry, exporter, log)
        elif args.command == "serve":
            try:
                server = MetricsServer(registry, listen, metrics_path, log)
                server.start()
            except (OSError, ValueError) as exc:
                log.error("Couldn't start metrics server on %s: %s", listen, exc)
                return 1
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                log.info("Shutting down")
            return 0
        else:
            raise ValueError(f"Unsupported command: {args.command}")
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
