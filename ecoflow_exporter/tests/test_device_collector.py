# ecoflow_exporter/tests/test_device_collector.py

import logging
import threading

import pytest

from ecoflow_exporter.config import DeviceConfig
from ecoflow_exporter.services.device_collector import DeviceCollector
from ecoflow_exporter.services.ecoflow_api_client import TelemetryError
from ecoflow_exporter.tests.fake_api import FakeClient, reading


LOG = logging.getLogger("device-collector-test")

METRIC_NAMES = [
    "ecoflow_check_error",
    "ecoflow_soc",
    "ecoflow_remain_time",
    "ecoflow_watts_out_sum",
    "ecoflow_watts_in_sum",
]


def _device(serial="SN1", label="Office"):
    return DeviceConfig(serial_number=serial, app_key="AK", secret_key="SK", label=label)


def _values(families):
    values = {}
    for family in families:
        assert len(family.samples) == 1
        values[family.name] = family.samples[0].value
    return values


def test_describe_reports_identity_without_fetching():
    client = FakeClient({"SN1": []})
    collector = DeviceCollector(_device(), client, 2.0, LOG)

    families = collector.describe()

    assert [f.name for f in families] == METRIC_NAMES
    assert all(f.type == "gauge" for f in families)
    assert all(f.samples == [] for f in families)
    assert client.calls == []


def test_samples_carry_device_labels():
    client = FakeClient({"SN1": [reading(soc=1)]})
    collector = DeviceCollector(_device(label="Camper"), client, 2.0, LOG)

    families = collector.collect()

    for family in families:
        assert family.samples[0].labels == {"description": "Camper", "sn": "SN1"}


def test_success_cycle_sets_all_gauges():
    client = FakeClient({"SN1": [reading(soc=55, remain_time=120, watts_out_sum=30, watts_in_sum=0)]})
    collector = DeviceCollector(_device(), client, 2.0, LOG)

    values = _values(collector.collect())

    assert values == {
        "ecoflow_check_error": 0.0,
        "ecoflow_soc": 55.0,
        "ecoflow_remain_time": 120.0,
        "ecoflow_watts_out_sum": 30.0,
        "ecoflow_watts_in_sum": 0.0,
    }
    assert client.calls == [("SN1", 2.0)]
    assert collector.last_error is None


def test_transport_failure_keeps_last_known_good():
    client = FakeClient(
        {
            "SN1": [
                reading(soc=55, remain_time=120, watts_out_sum=30, watts_in_sum=4),
                TelemetryError("timed out"),
            ]
        }
    )
    collector = DeviceCollector(_device(), client, 2.0, LOG)

    collector.collect()
    values = _values(collector.collect())

    assert values["ecoflow_check_error"] == 1.0
    assert values["ecoflow_soc"] == 55.0
    assert values["ecoflow_remain_time"] == 120.0
    assert values["ecoflow_watts_out_sum"] == 30.0
    assert values["ecoflow_watts_in_sum"] == 4.0
    assert "timed out" in collector.last_error


def test_non_zero_code_is_failure_and_leaves_telemetry_untouched():
    client = FakeClient(
        {
            "SN1": [
                reading(soc=70, remain_time=300, watts_out_sum=12, watts_in_sum=90),
                reading(code="1", message="bad sign", soc=10),
            ]
        }
    )
    collector = DeviceCollector(_device(), client, 2.0, LOG)

    before = _values(collector.collect())
    after = _values(collector.collect())

    assert after["ecoflow_check_error"] == 1.0
    for name in METRIC_NAMES[1:]:
        assert after[name] == before[name]


def test_first_cycle_failure_reports_zero_telemetry():
    client = FakeClient({"SN1": [reading(code="8521", soc=99)]})
    collector = DeviceCollector(_device(), client, 2.0, LOG)

    values = _values(collector.collect())

    assert values["ecoflow_check_error"] == 1.0
    assert values["ecoflow_soc"] == 0.0


def test_error_flag_clears_on_recovery():
    client = FakeClient(
        {"SN1": [TelemetryError("boom"), reading(soc=42)]}
    )
    collector = DeviceCollector(_device(), client, 2.0, LOG)

    assert _values(collector.collect())["ecoflow_check_error"] == 1.0
    values = _values(collector.collect())
    assert values["ecoflow_check_error"] == 0.0
    assert values["ecoflow_soc"] == 42.0


def test_unexpected_exception_is_contained():
    client = FakeClient({"SN1": [RuntimeError("bug")]})
    collector = DeviceCollector(_device(), client, 2.0, LOG)

    values = _values(collector.collect())

    assert values["ecoflow_check_error"] == 1.0


@pytest.mark.parametrize("timeout", [0, -2.0])
def test_non_positive_timeout_rejected(timeout):
    with pytest.raises(ValueError):
        DeviceCollector(_device(), FakeClient({}), timeout, LOG)


class BlockingClient:
    """Blocks fetches for one serial until released; tracks concurrency."""

    def __init__(self, blocked_serial):
        self.blocked_serial = blocked_serial
        self.release = threading.Event()
        self.entered = threading.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self.counter = 0
        self._lock = threading.Lock()

    def fetch(self, device, timeout):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.counter += 1
            value = self.counter
        try:
            if device.serial_number == self.blocked_serial:
                self.entered.set()
                self.release.wait(timeout=5)
            return reading(
                soc=value,
                remain_time=value,
                watts_out_sum=value,
                watts_in_sum=value,
            )
        finally:
            with self._lock:
                self.in_flight -= 1


def test_slow_device_does_not_block_other_devices():
    client = BlockingClient("SLOW")
    slow = DeviceCollector(_device("SLOW"), client, 5.0, LOG)
    fast = DeviceCollector(_device("FAST"), client, 5.0, LOG)

    worker = threading.Thread(target=slow.collect)
    worker.start()
    try:
        assert client.entered.wait(timeout=5)
        values = _values(fast.collect())
        assert values["ecoflow_check_error"] == 0.0
        assert worker.is_alive()
        # describe never waits for the lock held by the in-flight cycle
        assert [f.name for f in slow.describe()] == METRIC_NAMES
    finally:
        client.release.set()
        worker.join(timeout=5)
    assert not worker.is_alive()


def test_same_device_cycles_serialize_and_never_tear():
    client = BlockingClient("NONE")
    collector = DeviceCollector(_device("SN1"), client, 5.0, LOG)
    results = []
    results_lock = threading.Lock()

    def scrape():
        for _ in range(25):
            values = _values(collector.collect())
            with results_lock:
                results.append(values)

    threads = [threading.Thread(target=scrape) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert client.max_in_flight == 1
    assert len(results) == 100
    for values in results:
        telemetry = {values[name] for name in METRIC_NAMES[1:]}
        assert len(telemetry) == 1
