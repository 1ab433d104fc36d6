# ecoflow_exporter/services/device_collector.py

from __future__ import annotations

import threading
from typing import List

from prometheus_client import Gauge
from prometheus_client.metrics_core import Metric

from ecoflow_exporter.config import DeviceConfig
from ecoflow_exporter.services.ecoflow_api_client import TelemetryError


NAMESPACE = "ecoflow"
CONST_LABELS = ("description", "sn")


def _device_gauge(name: str, documentation: str, device: DeviceConfig):
    gauge = Gauge(
        name,
        documentation,
        labelnames=CONST_LABELS,
        namespace=NAMESPACE,
        registry=None,
    )
    return gauge, gauge.labels(description=device.label, sn=device.serial_number)


class DeviceCollector:
    """
    Owns the five gauges of one device and refreshes them on every scrape.

    collect() holds the device lock for fetch, update and publish, so
    overlapping scrapes of the same device run one after the other and a
    reader never sees values from two different cycles. On a failed fetch
    or a non-success code only the check_error gauge changes; the telemetry
    gauges keep their last good values.
    """

    def __init__(self, device: DeviceConfig, client, check_timeout: float, log):
        if check_timeout is None or check_timeout <= 0:
            raise ValueError(f"check_timeout must be positive, got {check_timeout!r}")
        self.device = device
        self.client = client
        self.check_timeout = check_timeout
        self.log = log
        self._lock = threading.Lock()
        self.last_error: str | None = None

        self._check_error_gauge, self.check_error = _device_gauge("check_error", "check error", device)
        self._soc_gauge, self.soc = _device_gauge("soc", "State of charge", device)
        self._remain_time_gauge, self.remain_time = _device_gauge("remain_time", "Remain time", device)
        self._watts_out_gauge, self.watts_out_sum = _device_gauge("watts_out_sum", "Current watts output", device)
        self._watts_in_gauge, self.watts_in_sum = _device_gauge("watts_in_sum", "Current watts input", device)

        self._gauges = (
            self._check_error_gauge,
            self._soc_gauge,
            self._remain_time_gauge,
            self._watts_out_gauge,
            self._watts_in_gauge,
        )

    # ------------------------------------------------------------------
    def describe(self) -> List[Metric]:
        families: List[Metric] = []
        for gauge in self._gauges:
            families.extend(gauge.describe())
        return families

    # ------------------------------------------------------------------
    def _refresh(self) -> None:
        serial = self.device.serial_number
        try:
            reading = self.client.fetch(self.device, self.check_timeout)
        except TelemetryError as exc:
            self.log.warning("%s (%s): fetch failed: %s", self.device.label, serial, exc)
            self.last_error = str(exc)
            self.check_error.set(1)
            return
        except Exception:
            self.log.exception("%s (%s): unexpected error during fetch", self.device.label, serial)
            self.last_error = "unexpected error"
            self.check_error.set(1)
            return

        if not reading.ok:
            self.log.warning(
                "%s (%s): API returned code %r: %s",
                self.device.label,
                serial,
                reading.code,
                reading.message,
            )
            self.last_error = f"code {reading.code}: {reading.message}"
            self.check_error.set(1)
            return

        self.last_error = None
        self.check_error.set(0)
        self.soc.set(reading.soc)
        self.remain_time.set(reading.remain_time)
        self.watts_out_sum.set(reading.watts_out_sum)
        self.watts_in_sum.set(reading.watts_in_sum)
        self.log.debug(
            "%s (%s): soc=%s remain_time=%s out=%s in=%s",
            self.device.label,
            serial,
            reading.soc,
            reading.remain_time,
            reading.watts_out_sum,
            reading.watts_in_sum,
        )

    def collect(self) -> List[Metric]:
        with self._lock:
            self._refresh()
            families: List[Metric] = []
            for gauge in self._gauges:
                families.extend(gauge.collect())
            return families
