# ecoflow_exporter/config.py
from dataclasses import dataclass, field
from pathlib import Path
import configparser
import re


DEFAULT_CONFIG_FILE = "/etc/prometheus/prometheus-ecoflow-exporter.conf"
DEFAULT_LISTEN = "0.0.0.0:9136"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_CHECK_TIMEOUT = 5.0

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(raw: str) -> float:
    """
    Parse a duration into seconds.

    Accepts Go-style strings ("500ms", "5s", "1m30s") as well as a bare
    number of seconds ("2.5").
    """
    text = str(raw).strip()
    if not text:
        raise ValueError("Empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    total = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"Invalid duration: {raw!r}")
    return sign * total


@dataclass
class DeviceConfig:
    serial_number: str
    app_key: str = ""
    secret_key: str = ""
    label: str = ""

    def apply_defaults(self) -> None:
        if not self.label:
            self.label = self.serial_number


@dataclass
class ExporterConfig:
    listen: str = DEFAULT_LISTEN
    metrics_path: str = DEFAULT_METRICS_PATH
    check_timeout: float = DEFAULT_CHECK_TIMEOUT


@dataclass
class APIConfig:
    base_url: str = "https://api.ecoflow.com"
    user_agent: str = "prometheus-ecoflow-exporter"


@dataclass
class LoggingConfig:
    console_level: str = "INFO"
    console_quiet: bool = False
    debug_modules: list[str] = field(default_factory=list)


@dataclass
class AppConfig:
    exporter: ExporterConfig
    api: APIConfig
    logging: LoggingConfig
    devices: list[DeviceConfig]


def dedupe_devices(devices, log=None) -> list[DeviceConfig]:
    """
    Keep the first device seen for every serial number, in input order.

    Defaults are applied to the retained entries only. A device without a
    serial number is keyed on the empty string like any other value.
    """
    seen: dict[str, DeviceConfig] = {}
    for device in devices:
        key = device.serial_number or ""
        if key in seen:
            if log is not None:
                log.debug("Ignoring duplicate device entry for serial %r", key)
            continue
        device.apply_defaults()
        seen[key] = device
    return list(seen.values())


class Config:
    def __init__(self, path: str):
        self.path = Path(path)
        self.parser = configparser.ConfigParser(inline_comment_prefixes=("#", ";"))
        read = self.parser.read(self.path)
        if not read:
            raise FileNotFoundError(f"Config file not found: {self.path}")

    @classmethod
    def load(cls, path: str, log=None) -> AppConfig:
        cfg = cls(path)

        p = cfg.parser

        def _as_bool(value: str) -> bool:
            return value.strip().lower() == "true"

        # --- Exporter ---
        if "exporter" not in p:
            raise ValueError("[exporter] section missing from config")

        exporter_sec = p["exporter"]
        exporter_kwargs = {}
        if "listen" in exporter_sec:
            exporter_kwargs["listen"] = exporter_sec["listen"].strip()
        if "metrics_path" in exporter_sec:
            exporter_kwargs["metrics_path"] = exporter_sec["metrics_path"].strip()
        if "check_timeout" in exporter_sec:
            timeout = parse_duration(exporter_sec["check_timeout"])
            if timeout <= 0:
                raise ValueError(f"check_timeout must be positive, got {exporter_sec['check_timeout']!r}")
            exporter_kwargs["check_timeout"] = timeout
        exporter = ExporterConfig(**exporter_kwargs)

        # --- Devices ---
        devices: list[DeviceConfig] = []
        dev_names = exporter_sec.get("devices", "")
        for name in [x.strip() for x in dev_names.split(",") if x.strip()]:
            sec = f"device:{name}"
            if sec not in p:
                raise ValueError(f"Missing section [{sec}] for device '{name}'")
            dev_sec = p[sec]
            devices.append(
                DeviceConfig(
                    serial_number=dev_sec.get("serial_number", "").strip(),
                    app_key=dev_sec.get("app_key", "").strip(),
                    secret_key=dev_sec.get("secret_key", "").strip(),
                    label=(dev_sec.get("description") or dev_sec.get("label") or "").strip(),
                )
            )

        # --- API ---
        api_kwargs = {}
        if "api" in p:
            api_sec = p["api"]
            if "base_url" in api_sec:
                api_kwargs["base_url"] = api_sec["base_url"].strip()
            if "user_agent" in api_sec:
                api_kwargs["user_agent"] = api_sec["user_agent"].strip()
        api_cfg = APIConfig(**api_kwargs)

        # --- Logging ---
        logging_kwargs = {}
        if "logging" in p:
            logging_sec = p["logging"]
            if "console_level" in logging_sec:
                logging_kwargs["console_level"] = logging_sec["console_level"]
            if "console_quiet" in logging_sec:
                logging_kwargs["console_quiet"] = _as_bool(logging_sec["console_quiet"])
            if "debug_modules" in logging_sec:
                raw = logging_sec["debug_modules"]
                logging_kwargs["debug_modules"] = [x.strip() for x in raw.split(",") if x.strip()]
        logging_cfg = LoggingConfig(**logging_kwargs)

        return AppConfig(
            exporter=exporter,
            api=api_cfg,
            logging=logging_cfg,
            devices=dedupe_devices(devices, log),
        )
