"""Kernel entropy pool statistics."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from typing import Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, read_uint, register_collector

_FILES = {
    "entropy_avail": "entropy_available",
    "poolsize": "pool_size",
    "urandom_min_reseed_secs": "urandom_min_reseed_seconds",
    "write_wakeup_threshold": "write_wakeup_threshold",
    "read_wakeup_threshold": "read_wakeup_threshold",
}


@dataclass(frozen=True)
class KernelRandom:
    """Values from /proc/sys/kernel/random; None where the file is absent."""

    entropy_available: int | None = None
    pool_size: int | None = None
    urandom_min_reseed_seconds: int | None = None
    write_wakeup_threshold: int | None = None
    read_wakeup_threshold: int | None = None


def read_kernel_random(proc_path: str) -> KernelRandom:
    base = os.path.join(proc_path, "sys", "kernel", "random")
    values = {}
    for filename, field_name in _FILES.items():
        try:
            values[field_name] = read_uint(os.path.join(base, filename))
        except FileNotFoundError:
            continue
    return KernelRandom(**values)


class EntropyCollector(Collector):
    """Exposes available entropy and the entropy pool size."""

    def __init__(self, settings: Settings) -> None:
        info = os.stat(settings.proc_path)
        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"mount point {settings.proc_path!r} is not a directory")
        self._settings = settings
        self._available = Desc(
            build_fq_name(NAMESPACE, "", "entropy_available_bits"),
            "Bits of available entropy.",
        )
        self._pool_size = Desc(
            build_fq_name(NAMESPACE, "", "entropy_pool_size_bits"),
            "Bits of entropy pool.",
        )

    def update(self) -> Iterator[Metric]:
        stats = read_kernel_random(self._settings.proc_path)
        if stats.entropy_available is None:
            raise ValueError("couldn't get entropy_avail")
        yield Metric(self._available, ValueType.GAUGE, stats.entropy_available)
        if stats.pool_size is None:
            raise ValueError("couldn't get entropy poolsize")
        yield Metric(self._pool_size, ValueType.GAUGE, stats.pool_size)


register_collector("entropy", True, EntropyCollector)