from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, Sequence, runtime_checkable

from core.state import LifecycleState


@dataclass
class ServiceEndpoint:
    url: str | None = None
    is_running: bool = False


@dataclass(frozen=True)
class LoadedModel:
    alias: str
    model_id: str | None = None


@dataclass(frozen=True)
class DownloadProgress:
    label: str
    percent: int | None = None


@dataclass(frozen=True)
class ActivationResult:
    ok: bool
    state: LifecycleState
    message: str
    alias: str = ""
    runtime_id: str | None = None

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class ModelCatalog:
    available: list[str] = field(default_factory=list)
    loaded: list[str] = field(default_factory=list)
    selected: str | None = None
    service_url: str | None = None


class AcceleratorKind(Enum):
    GPU = "GPU"
    NPU = "NPU"


@dataclass(frozen=True)
class EnumeratedAdapter:
    index: int
    description: str
    adapter_key: str
    dedicated_bytes: int = 0


@dataclass(frozen=True)
class AdapterMemorySample:
    """One `GPU Adapter Memory` counter instance, values in bytes."""

    instance: str
    dedicated_usage: float = 0.0
    dedicated_limit: float = 0.0
    shared_usage: float = 0.0
    shared_limit: float = 0.0


@dataclass(frozen=True)
class CounterSample:
    """Raw counter readings for one tick; each map is instance name -> value."""

    gpu_engines: dict[str, float] = field(default_factory=dict)
    adapter_memory: list[AdapterMemorySample] = field(default_factory=list)
    npu_engines: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class VendorMemory:
    index: int
    used_mb: float
    total_mb: float
    name: str = ""


@runtime_checkable
class AdapterEnumerator(Protocol):
    """
    Capability that lists hardware adapters with stable indices.

    Implementations may use any native binding; callers only rely on the
    returned EnumeratedAdapter entries. Must return [] rather than raise.
    """

    def enumerate_adapters(self) -> list[EnumeratedAdapter]:
        ...


@runtime_checkable
class CounterSource(Protocol):
    """OS counter families read once per telemetry tick."""

    def read(self) -> CounterSample:
        ...


@runtime_checkable
class VendorTool(Protocol):
    """Optional vendor utility reporting precise per-device memory."""

    def query(self) -> Sequence[VendorMemory]:
        ...
