"""Btrfs filesystem statistics from sysfs."""

from __future__ import annotations

import glob
import math
import os
import stat
from dataclasses import dataclass, field
from typing import Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, read_uint, register_collector

SUBSYSTEM = "btrfs"

# Device sizes in sysfs are given in 512-byte sectors.
SECTOR_SIZE = 512

_ALLOCATION_FILES = {
    "bytes_may_use": "may_use_bytes",
    "bytes_pinned": "pinned_bytes",
    "bytes_readonly": "read_only_bytes",
    "bytes_reserved": "reserved_bytes",
    "bytes_used": "used_bytes",
    "disk_used": "disk_used_bytes",
    "disk_total": "disk_total_bytes",
    "flags": "flags",
    "total_bytes": "total_bytes",
    "total_bytes_pinned": "total_pinned_bytes",
}


@dataclass(frozen=True)
class LayoutUsage:
    """Space used by one data layout (raid0, raid1, ...) of a block group type."""

    used_bytes: int
    total_bytes: int
    ratio: float


@dataclass(frozen=True)
class AllocationStats:
    """Allocation statistics of one block group type (data, metadata or system)."""

    may_use_bytes: int = 0
    pinned_bytes: int = 0
    read_only_bytes: int = 0
    reserved_bytes: int = 0
    used_bytes: int = 0
    disk_used_bytes: int = 0
    disk_total_bytes: int = 0
    flags: int = 0
    total_bytes: int = 0
    total_pinned_bytes: int = 0
    layouts: dict[str, LayoutUsage] = field(default_factory=dict)


@dataclass(frozen=True)
class BtrfsStats:
    """Statistics of one Btrfs filesystem."""

    uuid: str
    label: str
    global_rsv_size: int
    devices: dict[str, int]
    data: AllocationStats
    metadata: AllocationStats
    system: AllocationStats


@dataclass(frozen=True)
class BtrfsMetric:
    """A single Btrfs value together with its name, help and extra labels."""

    name: str
    desc: str
    value: float
    extra_label: tuple[str, ...] = ()
    extra_label_value: tuple[str, ...] = ()


def _divide(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return math.nan if numerator == 0 else math.copysign(math.inf, numerator)
    return numerator / denominator


def _calc_ratio(layout: str, device_count: int) -> float:
    if layout in ("single", "raid0"):
        return 1.0
    if layout in ("dup", "raid1", "raid10"):
        return 2.0
    if layout == "raid5":
        return _divide(float(device_count), float(device_count) - 1)
    if layout == "raid6":
        return _divide(float(device_count), float(device_count) - 2)
    return 0.0


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8") as stream:
        return stream.read().strip()


def _read_layouts(directory: str, device_count: int) -> dict[str, LayoutUsage]:
    with os.scandir(directory) as entries:
        names = sorted(entry.name for entry in entries if entry.is_dir())
    return {
        name: LayoutUsage(
            used_bytes=read_uint(os.path.join(directory, name, "used_bytes")),
            total_bytes=read_uint(os.path.join(directory, name, "total_bytes")),
            ratio=_calc_ratio(name, device_count),
        )
        for name in names
    }


def _read_allocation(directory: str, device_count: int) -> AllocationStats:
    values = {
        attr: read_uint(os.path.join(directory, filename))
        for filename, attr in _ALLOCATION_FILES.items()
    }
    return AllocationStats(**values, layouts=_read_layouts(directory, device_count))


def _read_devices(directory: str) -> dict[str, int]:
    names = sorted(os.listdir(directory))
    return {
        name: SECTOR_SIZE * read_uint(os.path.join(directory, name, "size")) for name in names
    }


def _read_filesystem(path: str) -> BtrfsStats:
    devices = _read_devices(os.path.join(path, "devices"))
    allocation = os.path.join(path, "allocation")
    count = len(devices)
    return BtrfsStats(
        uuid=os.path.basename(path),
        label=_read_text(os.path.join(path, "label")),
        global_rsv_size=read_uint(os.path.join(allocation, "global_rsv_size")),
        devices=devices,
        data=_read_allocation(os.path.join(allocation, "data"), count),
        metadata=_read_allocation(os.path.join(allocation, "metadata"), count),
        system=_read_allocation(os.path.join(allocation, "system"), count),
    )


def read_btrfs_stats(sys_path: str) -> list[BtrfsStats]:
    """Statistics of every Btrfs filesystem under fs/btrfs."""
    pattern = os.path.join(sys_path, "fs", "btrfs", "*-*")
    return [_read_filesystem(path) for path in sorted(glob.glob(pattern))]


def _layout_metrics(block_group: str, layout: str, usage: LayoutUsage) -> list[BtrfsMetric]:
    labels = ("block_group_type", "mode")
    values = (block_group, layout)
    return [
        BtrfsMetric("used_bytes", "Amount of used space by a layout/data type",
                    float(usage.used_bytes), labels, values),
        BtrfsMetric("size_bytes", "Amount of space allocated for a layout/data type",
                    float(usage.total_bytes), labels, values),
        BtrfsMetric("allocation_ratio", "Data allocation ratio for a layout/data type",
                    usage.ratio, labels, values),
    ]


def _allocation_metrics(block_group: str, stats: AllocationStats) -> list[BtrfsMetric]:
    metrics = [
        BtrfsMetric(
            "reserved_bytes",
            "Amount of space reserved for a data type",
            float(stats.reserved_bytes),
            ("block_group_type",),
            (block_group,),
        )
    ]
    for layout, usage in stats.layouts.items():
        metrics += _layout_metrics(block_group, layout, usage)
    return metrics


class BtrfsCollector(Collector):
    """Exposes Btrfs statistics."""

    def __init__(self, settings: Settings) -> None:
        info = os.stat(settings.sys_path)
        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"mount point {settings.sys_path!r} is not a directory")
        self._settings = settings

    def update(self) -> Iterator[Metric]:
        try:
            stats = read_btrfs_stats(self._settings.sys_path)
        except (OSError, ValueError) as err:
            raise RuntimeError(f"failed to retrieve Btrfs stats: {err}") from err
        for s in stats:
            for m in self.get_metrics(s):
                desc = Desc(
                    build_fq_name(NAMESPACE, SUBSYSTEM, m.name),
                    m.desc,
                    ("uuid", *m.extra_label),
                )
                yield Metric(desc, ValueType.GAUGE, m.value, (s.uuid, *m.extra_label_value))

    def get_metrics(self, stats: BtrfsStats) -> list[BtrfsMetric]:
        """The metrics of one filesystem, in a fixed order."""
        metrics = [
            BtrfsMetric("info", "Filesystem information", 1.0, ("label",), (stats.label,)),
            BtrfsMetric("global_rsv_size_bytes", "Size of global reserve.",
                        float(stats.global_rsv_size)),
        ]
        for name, size in stats.devices.items():
            metrics.append(
                BtrfsMetric(
                    "device_size_bytes",
                    "Size of a device that is part of the filesystem.",
                    float(size),
                    ("device",),
                    (name,),
                )
            )
        metrics += _allocation_metrics("data", stats.data)
        metrics += _allocation_metrics("metadata", stats.metadata)
        metrics += _allocation_metrics("system", stats.system)
        return metrics


register_collector("btrfs", True, BtrfsCollector)