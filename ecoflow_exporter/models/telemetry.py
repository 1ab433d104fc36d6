# ecoflow_exporter/models/telemetry.py
from dataclasses import dataclass


SUCCESS_CODE = "0"


@dataclass
class TelemetryReading:
    code: str             # upstream result code, "0" on success
    message: str
    soc: float            # state of charge, percent
    remain_time: float    # minutes, as reported upstream
    watts_out_sum: float
    watts_in_sum: float

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS_CODE
