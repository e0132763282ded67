"""
Raw accelerator counter sources.

On Windows the `GPU Engine`, `GPU Adapter Memory` and `NPU Engine` performance
counter families are read with PowerShell `Get-Counter`; other platforms get an
empty source. `NvidiaSmi` is the optional vendor tool.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import time
from pathlib import Path

from engine.base import AdapterMemorySample, CounterSample, CounterSource, VendorMemory
from engine.runner import CommandRunner

logger = logging.getLogger(__name__)

COUNTER_TIMEOUT = 5.0
VENDOR_TIMEOUT = 2.0

COUNTER_PATHS = (
    r"\GPU Engine(*)\Utilization Percentage",
    r"\GPU Adapter Memory(*)\Dedicated Usage",
    r"\GPU Adapter Memory(*)\Dedicated Limit",
    r"\GPU Adapter Memory(*)\Shared Usage",
    r"\GPU Adapter Memory(*)\Shared Limit",
    r"\NPU Engine(*)\Utilization Percentage",
)

_MEMORY_FIELDS = {
    "dedicated usage": "dedicated_usage",
    "dedicated limit": "dedicated_limit",
    "shared usage": "shared_usage",
    "shared limit": "shared_limit",
}

NVIDIA_SMI_QUERY = "--query-gpu=index,name,memory.used,memory.total"
NVIDIA_SMI_FORMAT = "--format=csv,noheader,nounits"


def _number(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number < 0:
        return 0.0
    return number


def _counter_script() -> str:
    paths = ",".join("'" + path + "'" for path in COUNTER_PATHS)
    return (
        "$ErrorActionPreference='SilentlyContinue'; "
        f"$s = Get-Counter -Counter @({paths}) -ErrorAction SilentlyContinue; "
        "if ($s) { $s.CounterSamples | Select-Object Path,InstanceName,CookedValue | ConvertTo-Json -Compress }"
    )


def parse_counter_json(text: str | None) -> CounterSample:
    """Fold `Get-Counter` JSON into one CounterSample; bad input yields empty."""
    if not text or not text.strip():
        return CounterSample()
    try:
        rows = json.loads(text)
    except ValueError:
        logger.debug("unreadable counter output: %s", text[:200])
        return CounterSample()
    if isinstance(rows, dict):
        rows = [rows]
    if not isinstance(rows, list):
        return CounterSample()

    gpu: dict[str, float] = {}
    npu: dict[str, float] = {}
    memory: dict[str, dict[str, float]] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        path = str(row.get("Path") or "").lower()
        instance = str(row.get("InstanceName") or "")
        value = _number(row.get("CookedValue"))
        if not instance:
            continue
        if "\\gpu engine(" in path:
            gpu[instance] = gpu.get(instance, 0.0) + value
        elif "\\npu engine(" in path:
            npu[instance] = npu.get(instance, 0.0) + value
        elif "\\gpu adapter memory(" in path:
            counter = path.rsplit("\\", 1)[-1]
            field = _MEMORY_FIELDS.get(counter)
            if field:
                memory.setdefault(instance, {})[field] = value

    adapters = [AdapterMemorySample(instance=name, **fields) for name, fields in memory.items()]
    return CounterSample(gpu_engines=gpu, adapter_memory=adapters, npu_engines=npu)


class NullCounterSource:
    def read(self) -> CounterSample:
        return CounterSample()


class WindowsCounterSource:
    def __init__(self, runner: CommandRunner | None = None, timeout: float = COUNTER_TIMEOUT):
        self.runner = runner or CommandRunner(executable="powershell", log_level=logging.DEBUG)
        self.timeout = timeout
        self._script = _counter_script()

    def read(self) -> CounterSample:
        result = self.runner.run(
            ["-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", self._script],
            timeout=self.timeout,
        )
        if result.exit_code != 0 and not result.stdout.strip():
            return CounterSample()
        return parse_counter_json(result.stdout)


def parse_nvidia_smi(text: str | None) -> list[VendorMemory]:
    """Rows of `index, name, used, total` (name optional), values in MB."""
    readings: list[VendorMemory] = []
    for line in (text or "").splitlines():
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 3:
            continue
        if len(parts) == 3:
            index_text, name, used_text, total_text = parts[0], "", parts[1], parts[2]
        else:
            index_text, name, used_text, total_text = parts[0], ",".join(parts[1:-2]), parts[-2], parts[-1]
        try:
            readings.append(VendorMemory(int(index_text), float(used_text), float(total_text), name))
        except ValueError:
            continue
    return readings


def find_nvidia_smi() -> str | None:
    found = shutil.which("nvidia-smi")
    if found:
        return found
    if os.name == "nt":
        system_root = os.environ.get("SystemRoot", r"C:\Windows")
        for candidate in (
            Path(system_root) / "System32" / "nvidia-smi.exe",
            Path(r"C:\Program Files\NVIDIA Corporation\NVSMI\nvidia-smi.exe"),
        ):
            if candidate.exists():
                return str(candidate)
    return None


class NvidiaSmi:
    """
    Memory per NVIDIA device, at most one query every `poll_seconds`; between
    queries the previous readings are returned.
    """

    def __init__(self, executable: str | None = None, poll_seconds: float = 2.0, runner: CommandRunner | None = None):
        self.executable = executable or find_nvidia_smi()
        self.poll_seconds = poll_seconds
        self.runner = runner or (CommandRunner(executable=self.executable, log_level=logging.DEBUG) if self.executable else None)
        self._last_query = float("-inf")
        self._readings: list[VendorMemory] = []

    @property
    def available(self) -> bool:
        return self.runner is not None

    def query(self) -> list[VendorMemory]:
        if self.runner is None:
            return []
        now = time.monotonic()
        if now - self._last_query < self.poll_seconds:
            return list(self._readings)
        self._last_query = now
        result = self.runner.run([NVIDIA_SMI_QUERY, NVIDIA_SMI_FORMAT], timeout=VENDOR_TIMEOUT)
        if result.exit_code != 0:
            logger.debug("nvidia-smi exit %s", result.exit_code)
            return list(self._readings)
        readings = parse_nvidia_smi(result.stdout)
        if readings:
            self._readings = readings
        return list(self._readings)


def default_counter_source() -> CounterSource:
    return WindowsCounterSource() if os.name == "nt" else NullCounterSource()
