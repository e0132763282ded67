"""
Adapter enumeration and adapter-key normalisation.

Performance counter instance names carry the adapter LUID as
`luid_0x<high>_0x<low>`. Enumeration registers both orderings of each LUID so a
counter instance hashes to the same adapter whichever half it prints first.
"""
from __future__ import annotations

import ctypes
import logging
import os
import re

from engine.base import AdapterEnumerator, EnumeratedAdapter

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"luid_0x([0-9a-f]+)_0x([0-9a-f]+)")

DXGI_ERROR_NOT_FOUND = 0x887A0002
DXGI_ADAPTER_FLAG_SOFTWARE = 0x2

# vtable slots
_RELEASE = 2
_ENUM_ADAPTERS1 = 12
_GET_DESC1 = 10

IID_IDXGIFactory1 = "{770aae78-f26f-4dba-a829-253c83d1b387}"


def format_key(first: int, second: int) -> str:
    return f"luid_0x{first & 0xFFFFFFFF:08x}_0x{second & 0xFFFFFFFF:08x}"


def extract_adapter_key(instance: str | None) -> str | None:
    """Normalised `luid_0x........_0x........` key from a counter instance name."""
    if not instance:
        return None
    match = _KEY_RE.search(instance.lower())
    if not match:
        return None
    high, low = match.group(1), match.group(2)
    return f"luid_0x{high.zfill(8)}_0x{low.zfill(8)}"


def adapter_keys(high: int, low: int) -> tuple[str, str]:
    return format_key(high, low), format_key(low, high)


def build_key_index(adapters: list[EnumeratedAdapter]) -> dict[str, EnumeratedAdapter]:
    """Map every registered key ordering to its adapter; first adapter wins."""
    index: dict[str, EnumeratedAdapter] = {}
    for adapter in adapters:
        key = extract_adapter_key(adapter.adapter_key)
        if key is None:
            continue
        high, low = key[7:15], key[18:26]
        for candidate in (key, f"luid_0x{low}_0x{high}"):
            index.setdefault(candidate, adapter)
    return index


class NullAdapterEnumerator:
    def enumerate_adapters(self) -> list[EnumeratedAdapter]:
        return []


class _GUID(ctypes.Structure):
    _fields_ = [
        ("Data1", ctypes.c_uint32),
        ("Data2", ctypes.c_uint16),
        ("Data3", ctypes.c_uint16),
        ("Data4", ctypes.c_ubyte * 8),
    ]

    @classmethod
    def parse(cls, text: str) -> "_GUID":
        hexes = text.strip("{}").replace("-", "")
        data4 = (ctypes.c_ubyte * 8)(*bytes.fromhex(hexes[16:]))
        return cls(int(hexes[0:8], 16), int(hexes[8:12], 16), int(hexes[12:16], 16), data4)


class _LUID(ctypes.Structure):
    _fields_ = [("LowPart", ctypes.c_uint32), ("HighPart", ctypes.c_int32)]


class _DXGI_ADAPTER_DESC1(ctypes.Structure):
    _fields_ = [
        ("Description", ctypes.c_wchar * 128),
        ("VendorId", ctypes.c_uint32),
        ("DeviceId", ctypes.c_uint32),
        ("SubSysId", ctypes.c_uint32),
        ("Revision", ctypes.c_uint32),
        ("DedicatedVideoMemory", ctypes.c_size_t),
        ("DedicatedSystemMemory", ctypes.c_size_t),
        ("SharedSystemMemory", ctypes.c_size_t),
        ("AdapterLuid", _LUID),
        ("Flags", ctypes.c_uint32),
    ]


def _method(ptr: ctypes.c_void_p, slot: int, restype, *argtypes):
    vtable = ctypes.cast(ptr, ctypes.POINTER(ctypes.POINTER(ctypes.c_void_p))).contents
    prototype = ctypes.WINFUNCTYPE(restype, ctypes.c_void_p, *argtypes)
    return prototype(vtable[slot])


def _release(ptr: ctypes.c_void_p) -> None:
    if ptr:
        _method(ptr, _RELEASE, ctypes.c_ulong)(ptr)


class DxgiAdapterEnumerator:
    """
    IDXGIFactory1::EnumAdapters1 through ctypes (Windows only).

    Index is the DXGI enumeration order, which is what Task Manager numbers
    GPUs by. Software adapters are skipped.
    """

    def enumerate_adapters(self) -> list[EnumeratedAdapter]:
        if os.name != "nt":
            return []
        try:
            return self._enumerate()
        except (OSError, AttributeError, ValueError) as exc:
            logger.warning("DXGI adapter enumeration failed: %s", exc)
            return []

    def _enumerate(self) -> list[EnumeratedAdapter]:
        dxgi = ctypes.WinDLL("dxgi")
        create = dxgi.CreateDXGIFactory1
        create.restype = ctypes.c_long
        create.argtypes = [ctypes.POINTER(_GUID), ctypes.POINTER(ctypes.c_void_p)]

        factory = ctypes.c_void_p()
        iid = _GUID.parse(IID_IDXGIFactory1)
        if create(ctypes.byref(iid), ctypes.byref(factory)) != 0 or not factory:
            return []

        adapters: list[EnumeratedAdapter] = []
        try:
            enum_adapters = _method(factory, _ENUM_ADAPTERS1, ctypes.c_long, ctypes.c_uint, ctypes.POINTER(ctypes.c_void_p))
            index = 0
            while True:
                adapter = ctypes.c_void_p()
                hr = enum_adapters(factory, index, ctypes.byref(adapter))
                if hr != 0 or not adapter:
                    if (hr & 0xFFFFFFFF) != DXGI_ERROR_NOT_FOUND:
                        logger.debug("EnumAdapters1(%d) hr=0x%08x", index, hr & 0xFFFFFFFF)
                    break
                try:
                    desc = _DXGI_ADAPTER_DESC1()
                    get_desc = _method(adapter, _GET_DESC1, ctypes.c_long, ctypes.POINTER(_DXGI_ADAPTER_DESC1))
                    if get_desc(adapter, ctypes.byref(desc)) == 0 and not desc.Flags & DXGI_ADAPTER_FLAG_SOFTWARE:
                        luid = desc.AdapterLuid
                        adapters.append(
                            EnumeratedAdapter(
                                index=index,
                                description=desc.Description.strip(),
                                adapter_key=format_key(luid.HighPart, luid.LowPart),
                                dedicated_bytes=int(desc.DedicatedVideoMemory),
                            )
                        )
                finally:
                    _release(adapter)
                index += 1
        finally:
            _release(factory)

        for adapter in adapters:
            logger.info("adapter %d: %s (%s, %d MB)", adapter.index, adapter.description,
                        adapter.adapter_key, adapter.dedicated_bytes // (1024 * 1024))
        return adapters


def default_enumerator() -> AdapterEnumerator:
    return DxgiAdapterEnumerator() if os.name == "nt" else NullAdapterEnumerator()
