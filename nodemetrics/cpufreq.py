"""CPU frequency statistics from sysfs."""

from __future__ import annotations

import glob
import os
import stat
from dataclasses import dataclass
from typing import Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, read_uint, register_collector

CPU_SUBSYSTEM = "cpu"

_UINT_FILES = {
    "cpuinfo_cur_freq": "cpuinfo_current_frequency",
    "cpuinfo_max_freq": "cpuinfo_maximum_frequency",
    "cpuinfo_min_freq": "cpuinfo_minimum_frequency",
    "cpuinfo_transition_latency": "cpuinfo_transition_latency",
    "scaling_cur_freq": "scaling_current_frequency",
    "scaling_max_freq": "scaling_maximum_frequency",
    "scaling_min_freq": "scaling_minimum_frequency",
}
_STRING_FILES = {
    "scaling_available_governors": "available_governors",
    "scaling_driver": "driver",
    "scaling_governor": "governor",
}


@dataclass(frozen=True)
class CpufreqStats:
    """cpufreq values of one CPU in kHz; None where the file is absent or unreadable."""

    name: str
    cpuinfo_current_frequency: int | None = None
    cpuinfo_minimum_frequency: int | None = None
    cpuinfo_maximum_frequency: int | None = None
    cpuinfo_transition_latency: int | None = None
    scaling_current_frequency: int | None = None
    scaling_minimum_frequency: int | None = None
    scaling_maximum_frequency: int | None = None
    available_governors: str = ""
    driver: str = ""
    governor: str = ""


def _read_cpufreq_dir(name: str, path: str) -> CpufreqStats:
    values: dict[str, object] = {}
    for filename, field_name in _UINT_FILES.items():
        try:
            values[field_name] = read_uint(os.path.join(path, filename))
        except (FileNotFoundError, PermissionError):
            continue
    for filename, field_name in _STRING_FILES.items():
        try:
            with open(os.path.join(path, filename), encoding="utf-8") as stream:
                values[field_name] = stream.read().strip()
        except (FileNotFoundError, PermissionError):
            continue
    return CpufreqStats(name=name, **values)


def read_system_cpufreq(sys_path: str) -> list[CpufreqStats]:
    """cpufreq statistics for every CPU under devices/system/cpu that has a cpufreq directory."""
    pattern = os.path.join(sys_path, "devices", "system", "cpu", "cpu[0-9]*")
    result: list[CpufreqStats] = []
    for cpu in sorted(glob.glob(pattern)):
        cpufreq_path = os.path.join(cpu, "cpufreq")
        if not os.path.exists(cpufreq_path):
            continue
        name = os.path.basename(cpu).removeprefix("cpu")
        result.append(_read_cpufreq_dir(name, cpufreq_path))
    return result


def _desc(name: str, help_text: str) -> Desc:
    return Desc(build_fq_name(NAMESPACE, CPU_SUBSYSTEM, name), help_text, ("cpu",))


class CpuFreqCollector(Collector):
    """Exposes CPU frequencies in hertz."""

    def __init__(self, settings: Settings) -> None:
        info = os.stat(settings.sys_path)
        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"mount point {settings.sys_path!r} is not a directory")
        self._settings = settings
        self._descs = (
            ("cpuinfo_current_frequency",
             _desc("frequency_hertz", "Current cpu thread frequency in hertz.")),
            ("cpuinfo_minimum_frequency",
             _desc("frequency_min_hertz", "Minimum cpu thread frequency in hertz.")),
            ("cpuinfo_maximum_frequency",
             _desc("frequency_max_hertz", "Maximum cpu thread frequency in hertz.")),
            ("scaling_current_frequency",
             _desc("scaling_frequency_hertz", "Current scaled CPU thread frequency in hertz.")),
            ("scaling_minimum_frequency",
             _desc("scaling_frequency_min_hertz", "Minimum scaled CPU thread frequency in hertz.")),
            ("scaling_maximum_frequency",
             _desc("scaling_frequency_max_hertz", "Maximum scaled CPU thread frequency in hertz.")),
        )

    def update(self) -> Iterator[Metric]:
        # sysfs cpufreq values are in kHz; export hertz.
        for stats in read_system_cpufreq(self._settings.sys_path):
            for field_name, desc in self._descs:
                value = getattr(stats, field_name)
                if value is not None:
                    yield Metric(desc, ValueType.GAUGE, float(value) * 1000.0, (stats.name,))


register_collector("cpufreq", True, CpuFreqCollector)