from __future__ import annotations

import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

import psutil

from engine.adapters import build_key_index, default_enumerator, extract_adapter_key
from engine.base import (
    AcceleratorKind,
    AdapterEnumerator,
    AdapterMemorySample,
    CounterSample,
    CounterSource,
    EnumeratedAdapter,
    VendorMemory,
    VendorTool,
)
from engine.channel import LatestValueChannel
from engine.counters import default_counter_source

logger = logging.getLogger(__name__)

MB = 1024 * 1024
SHARED_LIMIT_CEILING = 64 * 1024 ** 3
VENDOR_TOLERANCE_MB = 512.0
ESTIMATE_MIN_UTIL = 5.0
ESTIMATE_FACTOR = 0.4
FLOOR_FRACTION = 0.1
FLOOR_CAP_MB = 500.0

_NVIDIA_MARKERS = ("rtx", "gtx", "nvidia")


@dataclass(frozen=True)
class AcceleratorReading:
    name: str
    kind: AcceleratorKind
    utilization_percent: float = 0.0
    mem_used_mb: float = 0.0
    mem_total_mb: float = 0.0
    adapter_index: int | None = None
    adapter_key: str | None = None


@dataclass(frozen=True)
class SystemMetrics:
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    accelerators: tuple[AcceleratorReading, ...] = ()
    gpu_name: str = ""
    gpu_percent: float = 0.0
    gpu_mem_used_mb: float = 0.0
    gpu_mem_total_mb: float = 0.0
    timestamp: float = field(default_factory=time.time)


def shorten_adapter_name(full: str) -> str:
    name = " ".join((full or "").split())
    lowered = name.lower()

    for marker in ("rtx", "gtx"):
        pos = lowered.find(marker)
        if pos >= 0:
            tail = _remove_words(name[pos:], ("NVIDIA", "GeForce"))
            return tail or name

    if "intel" in lowered:
        for token in ("Arc", "Iris Xe", "Iris", "UHD"):
            if token.lower() in lowered:
                return f"Intel {token}"
        return "Intel GPU"

    pos = lowered.find("amd")
    if pos >= 0:
        tail = _remove_words(name[pos:], ("AMD", "Radeon"))
        return tail or "AMD GPU"

    parts = name.split()
    if len(parts) >= 2:
        return " ".join(parts[-2:])
    return name


def _remove_words(text: str, words: Sequence[str]) -> str:
    kept = [part for part in text.split() if not any(part.lower() == word.lower() for word in words)]
    return " ".join(kept).strip()


def _is_nvidia(*names: str) -> bool:
    return any(marker in (name or "").lower() for name in names for marker in _NVIDIA_MARKERS)


def _safe(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number < 0:
        return 0.0
    return number


def _engine_utilization(engines: dict[str, float]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for instance, value in engines.items():
        key = extract_adapter_key(instance)
        if key is None:
            continue
        totals[key] = totals.get(key, 0.0) + _safe(value)
    return {key: min(100.0, total) for key, total in totals.items()}


def _display_name(adapter: EnumeratedAdapter | None, index: int | None) -> str:
    base = shorten_adapter_name(adapter.description) if adapter is not None and adapter.description else ""
    if not base:
        return f"GPU{index}" if index is not None else "GPU"
    if index is not None and not base.lower().startswith(f"gpu{index}"):
        return f"GPU{index} {base}"
    return base


@dataclass
class _Draft:
    name: str
    utilization: float
    used_mb: float
    total_mb: float
    index: int | None
    key: str | None
    description: str = ""


def _memory_draft(
    mem: AdapterMemorySample,
    utilization: dict[str, float],
    key_index: dict[str, EnumeratedAdapter],
    adapters: Sequence[EnumeratedAdapter],
    assigned: set[int],
) -> _Draft:
    key = extract_adapter_key(mem.instance)
    adapter = key_index.get(key) if key else None

    dedicated_limit = _safe(mem.dedicated_limit)
    shared_limit = _safe(mem.shared_limit)
    shared_ok = 0 < shared_limit <= SHARED_LIMIT_CEILING

    if adapter is None:
        size_guess = dedicated_limit or (shared_limit if shared_ok else 0.0)
        if size_guess > 0:
            candidates = [a for a in adapters if a.index not in assigned and a.dedicated_bytes > 0]
            if candidates:
                adapter = min(candidates, key=lambda a: abs(a.dedicated_bytes - size_guess))
    if adapter is not None:
        assigned.add(adapter.index)

    if dedicated_limit > 0:
        used, limit = _safe(mem.dedicated_usage), dedicated_limit
    elif shared_ok:
        used, limit = _safe(mem.shared_usage), shared_limit
    else:
        used, limit = 0.0, 0.0
    if limit == 0 and adapter is not None and adapter.dedicated_bytes > 0:
        limit = float(adapter.dedicated_bytes)
    if limit > 0 and used > limit:
        used = limit

    index = adapter.index if adapter is not None else None
    return _Draft(
        name=_display_name(adapter, index),
        utilization=utilization.get(key, 0.0) if key else 0.0,
        used_mb=used / MB,
        total_mb=limit / MB,
        index=index,
        key=key,
        description=adapter.description if adapter is not None else "",
    )


def _apply_vendor(drafts: list[_Draft], vendor: Sequence[VendorMemory]) -> None:
    unused = list(vendor)
    for draft in drafts:
        if not unused or not _is_nvidia(draft.name, draft.description):
            continue
        def delta(reading: VendorMemory) -> float:
            return abs(draft.total_mb - reading.total_mb) if draft.total_mb > 0 else float("inf")
        best = min(unused, key=delta)
        if delta(best) < VENDOR_TOLERANCE_MB or draft.total_mb == 0:
            draft.total_mb = best.total_mb
            draft.used_mb = best.used_mb
            unused.remove(best)


def _estimate_memory(draft: _Draft) -> None:
    if draft.used_mb == 0 and draft.utilization > ESTIMATE_MIN_UTIL and draft.total_mb > 0:
        draft.used_mb = draft.total_mb * (draft.utilization / 100.0) * ESTIMATE_FACTOR
    if draft.total_mb > 0 and draft.used_mb == 0 and draft.utilization > 0:
        draft.used_mb = min(draft.total_mb * FLOOR_FRACTION, FLOOR_CAP_MB)


def sort_key(reading: AcceleratorReading):
    kind = 0 if reading.kind == AcceleratorKind.GPU else 1
    index = reading.adapter_index if reading.adapter_index is not None else sys.maxsize
    return kind, index, reading.name.lower()


def aggregate_accelerators(
    sample: CounterSample,
    adapters: Sequence[EnumeratedAdapter] = (),
    vendor: Sequence[VendorMemory] = (),
) -> list[AcceleratorReading]:
    """
    One reading per hardware adapter for a single tick.

    Engine utilization and memory are joined only through the adapter key of
    the same counter instance, so a missing counter zeroes that side of that
    adapter and never borrows from another one.
    """
    utilization = _engine_utilization(sample.gpu_engines)
    key_index = build_key_index(list(adapters))
    assigned: set[int] = set()

    drafts = [
        _memory_draft(mem, utilization, key_index, adapters, assigned)
        for mem in sample.adapter_memory
    ]
    covered = {draft.key for draft in drafts if draft.key}

    if not drafts:
        for position, (key, util) in enumerate(utilization.items()):
            adapter = key_index.get(key)
            index = adapter.index if adapter is not None else None
            name = _display_name(adapter, index) if adapter is not None else f"GPU{position}"
            drafts.append(_Draft(name, util, 0.0, 0.0, index, key, adapter.description if adapter else ""))
    else:
        # engines on adapters that expose no memory instance this tick
        for key, util in utilization.items():
            adapter = key_index.get(key)
            if key in covered or adapter is None or adapter.index in assigned:
                continue
            assigned.add(adapter.index)
            drafts.append(_Draft(_display_name(adapter, adapter.index), util, 0.0,
                                 adapter.dedicated_bytes / MB, adapter.index, key, adapter.description))

    if not drafts and vendor:
        for reading in vendor:
            label = shorten_adapter_name(reading.name) if reading.name else "NVIDIA GPU"
            drafts.append(_Draft(f"GPU{reading.index} {label}", 0.0, reading.used_mb, reading.total_mb,
                                 reading.index, None, reading.name))
    else:
        _apply_vendor(drafts, vendor)

    readings: list[AcceleratorReading] = []
    for draft in drafts:
        _estimate_memory(draft)
        readings.append(
            AcceleratorReading(
                name=draft.name,
                kind=AcceleratorKind.GPU,
                utilization_percent=min(100.0, draft.utilization),
                mem_used_mb=draft.used_mb,
                mem_total_mb=draft.total_mb,
                adapter_index=draft.index,
                adapter_key=draft.key,
            )
        )

    for position, (instance, value) in enumerate(sample.npu_engines.items()):
        readings.append(
            AcceleratorReading(
                name=f"NPU{position}",
                kind=AcceleratorKind.NPU,
                utilization_percent=min(100.0, _safe(value)),
                adapter_key=extract_adapter_key(instance),
            )
        )

    readings.sort(key=sort_key)
    return readings


def build_metrics(
    cpu_percent: float,
    memory_percent: float,
    disk_percent: float,
    accelerators: Sequence[AcceleratorReading],
) -> SystemMetrics:
    first_gpu = next((acc for acc in accelerators if acc.kind == AcceleratorKind.GPU), None)
    return SystemMetrics(
        cpu_percent=cpu_percent,
        memory_percent=memory_percent,
        disk_percent=disk_percent,
        accelerators=tuple(accelerators),
        gpu_name=first_gpu.name if first_gpu else "",
        gpu_percent=first_gpu.utilization_percent if first_gpu else 0.0,
        gpu_mem_used_mb=first_gpu.mem_used_mb if first_gpu else 0.0,
        gpu_mem_total_mb=first_gpu.mem_total_mb if first_gpu else 0.0,
    )


class DiskBusyMeter:
    """Disk utilization as the busy-time delta between two reads."""

    def __init__(self) -> None:
        self._last: tuple[float, float] | None = None

    def read(self) -> float:
        counters = psutil.disk_io_counters()
        if counters is None:
            return 0.0
        busy = getattr(counters, "busy_time", None)
        if busy is None:
            busy = getattr(counters, "read_time", 0) + getattr(counters, "write_time", 0)
        now = time.monotonic()
        previous, self._last = self._last, (now, float(busy))
        if previous is None:
            return 0.0
        elapsed_ms = (now - previous[0]) * 1000.0
        if elapsed_ms <= 0:
            return 0.0
        return max(0.0, min(100.0, (busy - previous[1]) / elapsed_ms * 100.0))


class SystemMonitor:
    """
    Publishes one SystemMetrics per tick on `channel`.

    Runs on its own daemon thread and takes no locks shared with lifecycle or
    chat work. Adapters are enumerated once on start.
    """

    def __init__(
        self,
        counters: CounterSource | None = None,
        enumerator: AdapterEnumerator | None = None,
        vendor: VendorTool | None = None,
        interval: float = 1.0,
        channel: LatestValueChannel[SystemMetrics] | None = None,
    ):
        self.counters = counters if counters is not None else default_counter_source()
        self.enumerator = enumerator if enumerator is not None else default_enumerator()
        self.vendor = vendor
        self.interval = interval
        self.channel: LatestValueChannel[SystemMetrics] = channel or LatestValueChannel()
        self.adapters: list[EnumeratedAdapter] = []
        self._disk = DiskBusyMeter()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def subscribe(self, callback: Callable[[SystemMetrics], None]) -> Callable[[], None]:
        return self.channel.subscribe(callback)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self.adapters = self._read(self.enumerator.enumerate_adapters, [], "adapter enumeration")
        self._read(lambda: psutil.cpu_percent(interval=None), 0.0, "cpu")
        self._read(self._disk.read, 0.0, "disk")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="SystemMonitor", daemon=True)
        self._thread.start()
        logger.info("telemetry started (%d adapters, %.1fs tick)", len(self.adapters), self.interval)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)

    def _loop(self) -> None:
        # fixed-period ticks; a slow sample shortens the following wait
        deadline = time.monotonic()
        while not self._stop.is_set():
            self.channel.publish(self.sample())
            deadline += self.interval
            now = time.monotonic()
            if deadline < now:
                deadline = now
            if self._stop.wait(deadline - now):
                break

    def sample(self) -> SystemMetrics:
        cpu = self._read(lambda: psutil.cpu_percent(interval=None), 0.0, "cpu")
        memory = self._read(lambda: psutil.virtual_memory().percent, 0.0, "memory")
        disk = self._read(self._disk.read, 0.0, "disk")
        counters = self._read(self.counters.read, CounterSample(), "counters")
        vendor = self._read(self.vendor.query, [], "vendor tool") if self.vendor is not None else []
        accelerators = self._read(
            lambda: aggregate_accelerators(counters, self.adapters, vendor), [], "accelerator aggregation"
        )
        return build_metrics(_safe(cpu), _safe(memory), _safe(disk), accelerators)

    @staticmethod
    def _read(fn, default, label: str):
        try:
            return fn()
        except Exception as exc:
            logger.debug("%s read failed: %s", label, exc)
            return default
