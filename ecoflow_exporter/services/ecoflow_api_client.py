from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, Optional

import requests

from ecoflow_exporter.config import APIConfig, DeviceConfig
from ecoflow_exporter.models.telemetry import TelemetryReading


QUOTA_PATH = "/iot-service/open/api/device/queryDeviceQuota"


class TelemetryError(Exception):
    """Any failure to obtain a decodable telemetry envelope from the API."""


def _lookup(mapping: Dict[str, Any], key: str) -> Any:
    """Exact key first, then a case-insensitive match."""
    if key in mapping:
        return mapping[key]
    folded = key.casefold()
    for name, value in mapping.items():
        if isinstance(name, str) and name.casefold() == folded:
            return value
    return None


def _as_text(value: Any, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TelemetryError(f"field {field!r} is not a string: {value!r}")
    return value


def _as_number(value: Any, field: str) -> float:
    # Absent and null quota values read as zero.
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TelemetryError(f"field {field!r} is not a number: {value!r}")
    return float(value)


def decode_envelope(payload: Any) -> TelemetryReading:
    """Translate a decoded JSON document into a TelemetryReading."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise TelemetryError(f"unexpected payload type {type(payload).__name__}")

    data = _lookup(payload, "data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise TelemetryError(f"unexpected data type {type(data).__name__}")

    return TelemetryReading(
        code=_as_text(_lookup(payload, "code"), "code"),
        message=_as_text(_lookup(payload, "message"), "message"),
        soc=_as_number(_lookup(data, "soc"), "soc"),
        remain_time=_as_number(_lookup(data, "remainTime"), "remainTime"),
        watts_out_sum=_as_number(_lookup(data, "wattsOutSum"), "wattsOutSum"),
        watts_in_sum=_as_number(_lookup(data, "wattsInSum"), "wattsInSum"),
    )


class EcoflowAPIClient:
    """EcoFlow open API wrapper: one bounded GET per device, no retries."""

    CHUNK_SIZE = 1024
    MAX_WORKERS = 32

    def __init__(self, cfg: APIConfig, log, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.log = log
        self.session = session or requests.Session()
        self.base_url = cfg.base_url.rstrip("/")
        self._executor = ThreadPoolExecutor(
            max_workers=self.MAX_WORKERS,
            thread_name_prefix="ecoflow-fetch",
        )

    # ------------------------------------------------------------------
    def build_url(self) -> str:
        return f"{self.base_url}{QUOTA_PATH}"

    def build_headers(self, device: DeviceConfig) -> Dict[str, str]:
        return {
            "User-Agent": self.cfg.user_agent,
            "Content-Type": "application/json",
            "appKey": device.app_key,
            "secretKey": device.secret_key,
        }

    # ------------------------------------------------------------------
    def _read_body(self, resp, abandoned: threading.Event) -> bytes:
        chunks = []
        for chunk in resp.iter_content(chunk_size=self.CHUNK_SIZE):
            if abandoned.is_set():
                raise TelemetryError("caller stopped waiting for response body")
            if chunk:
                chunks.append(chunk)
        return b"".join(chunks)

    def _request(self, device: DeviceConfig, timeout: float, abandoned: threading.Event) -> bytes:
        url = self.build_url()
        self.log.debug("Fetching quota for %s from %s", device.serial_number, url)
        try:
            resp = self.session.get(
                url,
                params={"sn": device.serial_number},
                headers=self.build_headers(device),
                timeout=timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            raise TelemetryError(f"request failed: {exc}") from exc

        try:
            if not 200 <= resp.status_code < 300:
                raise TelemetryError(f"HTTP {resp.status_code}")
            try:
                return self._read_body(resp, abandoned)
            except requests.RequestException as exc:
                raise TelemetryError(f"reading response failed: {exc}") from exc
        finally:
            resp.close()

    def fetch(self, device: DeviceConfig, timeout: float) -> TelemetryReading:
        """
        Fetch the current quota for one device.

        The whole exchange (connect, headers and body) runs on a worker and
        the caller waits at most `timeout` seconds for it. The returned
        reading carries the upstream code unchanged; interpreting it is up to
        the caller. Every transport, HTTP or decoding problem is raised as
        TelemetryError.
        """
        if timeout is None or timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout!r}")

        abandoned = threading.Event()
        future = self._executor.submit(self._request, device, timeout, abandoned)
        try:
            body = future.result(timeout=timeout)
        except FutureTimeout:
            # The worker notices between chunks and closes the response itself.
            abandoned.set()
            future.cancel()
            raise TelemetryError(f"timed out after {timeout}s") from None

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise TelemetryError(f"non-JSON payload: {exc}") from exc

        return decode_envelope(payload)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.session.close()
