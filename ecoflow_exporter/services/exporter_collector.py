# ecoflow_exporter/services/exporter_collector.py

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Sequence

from prometheus_client.metrics_core import Metric

from ecoflow_exporter.config import DeviceConfig
from ecoflow_exporter.services.device_collector import DeviceCollector


def _merge(per_device: Iterable[List[Metric]]) -> List[Metric]:
    """Fold per-device families into one family per metric name."""
    merged: Dict[str, Metric] = {}
    for families in per_device:
        for family in families:
            target = merged.get(family.name)
            if target is None:
                target = Metric(family.name, family.documentation, family.type, family.unit)
                merged[family.name] = target
            target.samples.extend(family.samples)
    return list(merged.values())


class ExporterCollector:
    """
    Registry-facing collector for all configured devices.

    Every device gets its own DeviceCollector; a scrape collects them in
    parallel and merges the samples so each metric name is exposed once
    with one series per device.
    """

    def __init__(self, collectors: Sequence[DeviceCollector], log):
        self.collectors = list(collectors)
        self.log = log

    @classmethod
    def for_devices(cls, devices: Iterable[DeviceConfig], client, check_timeout: float, log) -> "ExporterCollector":
        collectors = [DeviceCollector(device, client, check_timeout, log) for device in devices]
        return cls(collectors, log)

    # ------------------------------------------------------------------
    def describe(self) -> List[Metric]:
        return _merge(c.describe() for c in self.collectors)

    def collect(self) -> List[Metric]:
        if not self.collectors:
            return []
        if len(self.collectors) == 1:
            return _merge([self.collectors[0].collect()])

        with ThreadPoolExecutor(
            max_workers=len(self.collectors),
            thread_name_prefix="ecoflow-collect",
        ) as pool:
            results = list(pool.map(lambda c: c.collect(), self.collectors))
        return _merge(results)
