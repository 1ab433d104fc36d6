# ecoflow_exporter/cli.py
import argparse

from .config import DEFAULT_CONFIG_FILE, DEFAULT_LISTEN, DEFAULT_METRICS_PATH


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ecoflow-exporter",
        description="Prometheus exporter for EcoFlow power stations"
    )

    parser.add_argument(
        "--config-file",
        default=None,
        help=f"Config file. Env CONFIG_FILE also can be used (default: {DEFAULT_CONFIG_FILE})"
    )

    parser.add_argument(
        "--listen",
        default=None,
        help=f"Listen address. Env LISTEN also can be used (default: {DEFAULT_LISTEN})"
    )

    parser.add_argument(
        "--metrics-path",
        default=None,
        help=f"Metrics path. Env METRICS_PATH also can be used (default: {DEFAULT_METRICS_PATH})"
    )

    parser.add_argument(
        "--check-timeout",
        "--check_timeout",
        dest="check_timeout",
        default=None,
        help="Upstream request timeout, e.g. 5s or 500ms. Env CHECK_TIMEOUT also can be used"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging"
    )

    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress stdout logging"
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Serve metrics over HTTP (default)")

    # One-shot collection
    sub.add_parser(
        "check",
        help="Run one collection cycle and print the metrics",
    )

    parser.set_defaults(command="serve")
    return parser
