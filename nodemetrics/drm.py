"""GPU statistics of AMD cards from /sys/class/drm."""

from __future__ import annotations

import os
import re
import stat
from dataclasses import dataclass
from typing import Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, read_uint, register_collector

SUBSYSTEM = "drm"

_CARD_NAME = re.compile(r"^card[0-9]+$")

_UINT_FILES = {
    "gpu_busy_percent": "gpu_busy_percent",
    "mem_info_gtt_total": "memory_gtt_size",
    "mem_info_gtt_used": "memory_gtt_used",
    "mem_info_vis_vram_total": "memory_visible_vram_size",
    "mem_info_vis_vram_used": "memory_visible_vram_used",
    "mem_info_vram_total": "memory_vram_size",
    "mem_info_vram_used": "memory_vram_used",
}
_STRING_FILES = {
    "mem_info_vram_vendor": "memory_vram_vendor",
    "power_dpm_force_performance_level": "power_dpm_force_performance_level",
    "unique_id": "unique_id",
}


@dataclass(frozen=True)
class AMDGPUStats:
    """Statistics of one amdgpu card; absent values are zero or empty."""

    name: str
    gpu_busy_percent: int = 0
    memory_gtt_size: int = 0
    memory_gtt_used: int = 0
    memory_visible_vram_size: int = 0
    memory_visible_vram_used: int = 0
    memory_vram_size: int = 0
    memory_vram_used: int = 0
    memory_vram_vendor: str = ""
    power_dpm_force_performance_level: str = ""
    unique_id: str = ""


def _read_card(name: str, device: str) -> AMDGPUStats | None:
    try:
        with open(os.path.join(device, "uevent"), encoding="utf-8") as stream:
            uevent = stream.read()
    except OSError:
        return None
    if "DRIVER=amdgpu" not in uevent:
        return None
    values: dict[str, object] = {}
    for filename, attr in _UINT_FILES.items():
        try:
            values[attr] = read_uint(os.path.join(device, filename))
        except (OSError, ValueError):
            continue
    for filename, attr in _STRING_FILES.items():
        try:
            with open(os.path.join(device, filename), encoding="utf-8") as stream:
                values[attr] = stream.read().strip()
        except OSError:
            continue
    return AMDGPUStats(name=name, **values)


def read_amdgpu_stats(sys_path: str) -> list[AMDGPUStats]:
    """Statistics of every card under class/drm driven by amdgpu."""
    root = os.path.join(sys_path, "class", "drm")
    try:
        names = sorted(n for n in os.listdir(root) if _CARD_NAME.match(n))
    except FileNotFoundError:
        return []
    result: list[AMDGPUStats] = []
    for name in names:
        stats = _read_card(name, os.path.join(root, name, "device"))
        if stats is not None:
            result.append(stats)
    return result


def _desc(name: str, help_text: str, labels: tuple[str, ...] = ("card",)) -> Desc:
    return Desc(build_fq_name(NAMESPACE, SUBSYSTEM, name), help_text, labels)


class DrmCollector(Collector):
    """Exposes /sys/class/drm/card?/device statistics."""

    def __init__(self, settings: Settings) -> None:
        info = os.stat(settings.sys_path)
        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"mount point {settings.sys_path!r} is not a directory")
        self._settings = settings
        self._card_info = _desc(
            "card_info",
            "Card information",
            ("card", "memory_vendor", "power_performance_level", "unique_id", "vendor"),
        )
        self._values = (
            ("gpu_busy_percent",
             _desc("gpu_busy_percent", "How busy the GPU is as a percentage.")),
            ("memory_gtt_size",
             _desc("memory_gtt_size_bytes",
                   "The size of the graphics translation table (GTT) block in bytes.")),
            ("memory_gtt_used",
             _desc("memory_gtt_used_bytes",
                   "The used amount of the graphics translation table (GTT) block in bytes.")),
            ("memory_vram_size",
             _desc("memory_vram_size_bytes", "The size of VRAM in bytes.")),
            ("memory_vram_used",
             _desc("memory_vram_used_bytes", "The used amount of VRAM in bytes.")),
            ("memory_visible_vram_size",
             _desc("memory_vis_vram_size_bytes", "The size of visible VRAM in bytes.")),
            ("memory_visible_vram_used",
             _desc("memory_vis_vram_used_bytes", "The used amount of visible VRAM in bytes.")),
        )

    def update(self) -> Iterator[Metric]:
        vendor = "amd"
        for s in read_amdgpu_stats(self._settings.sys_path):
            yield Metric(
                self._card_info,
                ValueType.GAUGE,
                1.0,
                (s.name, s.memory_vram_vendor, s.power_dpm_force_performance_level,
                 s.unique_id, vendor),
            )
            for attr, desc in self._values:
                yield Metric(desc, ValueType.GAUGE, float(getattr(s, attr)), (s.name,))


register_collector("drm", False, DrmCollector)