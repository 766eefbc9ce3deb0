"""CPU time, CPU information and thermal throttle statistics."""

from __future__ import annotations

import dataclasses
import glob
import logging
import os
import re
import stat
import threading
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, read_uint, register_collector

_log = logging.getLogger(__name__)

CPU_SUBSYSTEM = "cpu"

NODE_CPU_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "seconds_total"),
    "Seconds the CPUs spent in each mode.",
    ("cpu", "mode"),
)

# Ticks per second of the values in /proc/stat.
USER_HZ = 100.0

# Idle jump back limit in seconds.
JUMP_BACK_SECONDS = 3.0

_JUMP_BACK_MESSAGE = (
    f"CPU Idle counter jumped backwards more than {JUMP_BACK_SECONDS:f} seconds, "
    "possible hotplug event, resetting CPU stats"
)


@dataclass
class CPUStat:
    """Seconds one CPU spent in each mode."""

    user: float = 0.0
    nice: float = 0.0
    system: float = 0.0
    idle: float = 0.0
    iowait: float = 0.0
    irq: float = 0.0
    softirq: float = 0.0
    steal: float = 0.0
    guest: float = 0.0
    guest_nice: float = 0.0


_STAT_FIELDS = tuple(f.name for f in dataclasses.fields(CPUStat))


def parse_cpu_stats(stream: Iterable[str]) -> list[CPUStat]:
    """Per-CPU statistics from the lines of /proc/stat, indexed by CPU number."""
    stats: list[CPUStat] = []
    for line in stream:
        parts = line.split()
        if len(parts) < 2 or not parts[0].startswith("cpu"):
            continue
        try:
            values = [float(value) / USER_HZ for value in parts[1 : 1 + len(_STAT_FIELDS)]]
        except ValueError as err:
            raise ValueError(f"couldn't parse {line.strip()!r} (cpu): {err}") from err
        cpu_stat = CPUStat(*values)
        name = parts[0]
        if name == "cpu":
            continue  # the total over all CPUs
        suffix = name[3:]
        if not (suffix.isascii() and suffix.isdigit()):
            raise ValueError(f"couldn't parse {line.strip()!r} (cpu/cpuid)")
        cpu_id = int(suffix)
        if len(stats) <= cpu_id:
            stats.extend(CPUStat() for _ in range(cpu_id + 1 - len(stats)))
        stats[cpu_id] = cpu_stat
    return stats


@dataclass
class CPUInfo:
    """One processor entry of /proc/cpuinfo."""

    processor: int = 0
    vendor_id: str = ""
    cpu_family: str = ""
    model: str = ""
    model_name: str = ""
    stepping: str = ""
    microcode: str = ""
    cpu_mhz: float = 0.0
    cache_size: str = ""
    physical_id: str = ""
    siblings: int = 0
    core_id: str = ""
    cpu_cores: int = 0
    apic_id: str = ""
    initial_apic_id: str = ""
    fpu: str = ""
    fpu_exception: str = ""
    cpuid_level: int = 0
    wp: str = ""
    flags: list[str] = field(default_factory=list)
    bugs: list[str] = field(default_factory=list)
    bogomips: float = 0.0
    cl_flush_size: str = ""
    cache_alignment: str = ""
    address_sizes: str = ""
    power_management: str = ""


_INFO_STRINGS = {
    "vendor": "vendor_id",
    "vendor_id": "vendor_id",
    "cpu family": "cpu_family",
    "model": "model",
    "model name": "model_name",
    "stepping": "stepping",
    "microcode": "microcode",
    "cache size": "cache_size",
    "physical id": "physical_id",
    "core id": "core_id",
    "apicid": "apic_id",
    "initial apicid": "initial_apic_id",
    "fpu": "fpu",
    "fpu_exception": "fpu_exception",
    "wp": "wp",
    "clflush size": "cl_flush_size",
    "cache_alignment": "cache_alignment",
    "address sizes": "address_sizes",
    "power management": "power_management",
}
_INFO_INTS = {"siblings": "siblings", "cpu cores": "cpu_cores", "cpuid level": "cpuid_level"}
_INFO_FLOATS = {"cpu MHz": "cpu_mhz", "bogomips": "bogomips"}
_INFO_LISTS = {"flags": "flags", "bugs": "bugs"}


def _parse_uint(text: str, key: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"invalid value {text!r} for {key!r} in cpuinfo")
    return int(text)


def parse_cpu_info(stream: Iterable[str]) -> list[CPUInfo]:
    """Processor entries from the lines of /proc/cpuinfo."""
    lines = iter(stream)
    first = next((line for line in lines if line.strip()), "")
    if not first.startswith("processor") or ":" not in first:
        raise ValueError(f"invalid cpuinfo file: {first.strip()!r}")

    infos: list[CPUInfo] = []
    for line in (first, *lines):
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip()
        value = value.strip()
        if key == "processor":
            infos.append(CPUInfo(processor=_parse_uint(value, key)))
            continue
        if not infos:
            continue
        current = infos[-1]
        if key in _INFO_STRINGS:
            setattr(current, _INFO_STRINGS[key], value)
        elif key in _INFO_INTS:
            setattr(current, _INFO_INTS[key], _parse_uint(value, key))
        elif key in _INFO_FLOATS:
            try:
                setattr(current, _INFO_FLOATS[key], float(value))
            except ValueError as err:
                raise ValueError(f"invalid value {value!r} for {key!r} in cpuinfo") from err
        elif key in _INFO_LISTS:
            setattr(current, _INFO_LISTS[key], value.split())
    return infos


def _compile(pattern: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as err:
        raise ValueError(
            "fail to compile --collector.cpu.info.flags-include and "
            "--collector.cpu.info.bugs-include, the values of them must be "
            f"regular expressions: {err}"
        ) from err


def _read_uint_or_none(path: str) -> int | None:
    try:
        return read_uint(path)
    except (OSError, ValueError):
        return None


class CpuCollector(Collector):
    """Exposes CPU time from /proc/stat, /proc/cpuinfo and thermal throttles from sysfs."""

    def __init__(self, settings: Settings) -> None:
        info = os.stat(settings.proc_path)
        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"mount point {settings.proc_path!r} is not a directory")
        self._settings = settings
        self._stats: list[CPUStat] = []
        self._lock = threading.Lock()

        self._info_desc = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "info"),
            "CPU information from /proc/cpuinfo.",
            ("package", "core", "cpu", "vendor", "family", "model", "model_name",
             "microcode", "stepping", "cachesize"),
        )
        self._flags_desc = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "flag_info"),
            "The `flags` field of CPU information from /proc/cpuinfo taken from the first core.",
            ("flag",),
        )
        self._bugs_desc = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "bug_info"),
            "The `bugs` field of CPU information from /proc/cpuinfo taken from the first core.",
            ("bug",),
        )
        self._guest_desc = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "guest_seconds_total"),
            "Seconds the CPUs spent in guests (VMs) for each mode.",
            ("cpu", "mode"),
        )
        self._core_throttle_desc = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "core_throttles_total"),
            "Number of times this CPU core has been throttled.",
            ("package", "core"),
        )
        self._package_throttle_desc = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "package_throttles_total"),
            "Number of times this CPU package has been throttled.",
            ("package",),
        )

        self._info_enabled = settings.cpu_info
        if (settings.cpu_flags_include or settings.cpu_bugs_include) and not self._info_enabled:
            self._info_enabled = True
            _log.info(
                "--collector.cpu.info has been set to `true` because you set the following "
                "flags, like --collector.cpu.info.flags-include and "
                "--collector.cpu.info.bugs-include"
            )
        self._flags_include = _compile(settings.cpu_flags_include)
        self._bugs_include = _compile(settings.cpu_bugs_include)

    @property
    def cpu_stats(self) -> list[CPUStat]:
        """A copy of the cached per-CPU statistics."""
        with self._lock:
            return [dataclasses.replace(s) for s in self._stats]

    def update(self) -> Iterator[Metric]:
        if self._info_enabled:
            yield from self._update_info()
        yield from self._update_stat()
        yield from self._update_thermal_throttle()

    def _update_info(self) -> Iterator[Metric]:
        with open(self._settings.proc_file("cpuinfo"), encoding="utf-8") as stream:
            infos = parse_cpu_info(stream)
        for cpu in infos:
            yield Metric(
                self._info_desc,
                ValueType.GAUGE,
                1,
                (cpu.physical_id, cpu.core_id, str(cpu.processor), cpu.vendor_id,
                 cpu.cpu_family, cpu.model, cpu.model_name, cpu.microcode,
                 cpu.stepping, cpu.cache_size),
            )
        if infos:
            first = infos[0]
            yield from self._field_info(first.flags, self._flags_include, self._flags_desc)
            yield from self._field_info(first.bugs, self._bugs_include, self._bugs_desc)

    @staticmethod
    def _field_info(
        values: Iterable[str], pattern: re.Pattern[str] | None, desc: Desc
    ) -> Iterator[Metric]:
        if pattern is None:
            return
        for value in values:
            if pattern.search(value):
                yield Metric(desc, ValueType.GAUGE, 1, (value,))

    def _update_thermal_throttle(self) -> Iterator[Metric]:
        cpus = sorted(glob.glob(self._settings.sys_file("devices", "system", "cpu", "cpu[0-9]*")))
        package_throttles: dict[int, int] = {}
        core_throttles: dict[int, dict[int, int]] = {}

        for cpu in cpus:
            package_id = _read_uint_or_none(os.path.join(cpu, "topology", "physical_package_id"))
            if package_id is None:
                _log.debug("CPU is missing physical_package_id: %s", cpu)
                continue
            core_id = _read_uint_or_none(os.path.join(cpu, "topology", "core_id"))
            if core_id is None:
                _log.debug("CPU is missing core_id: %s", cpu)
                continue

            # Core throttles come first: some systems report them without package throttles.
            cores = core_throttles.setdefault(package_id, {})
            if core_id not in cores:
                count = _read_uint_or_none(
                    os.path.join(cpu, "thermal_throttle", "core_throttle_count")
                )
                if count is None:
                    _log.debug("CPU is missing core_throttle_count: %s", cpu)
                else:
                    cores[core_id] = count

            if package_id not in package_throttles:
                count = _read_uint_or_none(
                    os.path.join(cpu, "thermal_throttle", "package_throttle_count")
                )
                if count is None:
                    _log.debug("CPU is missing package_throttle_count: %s", cpu)
                else:
                    package_throttles[package_id] = count

        for package_id, count in sorted(package_throttles.items()):
            yield Metric(self._package_throttle_desc, ValueType.COUNTER, count, (str(package_id),))
        for package_id, cores in sorted(core_throttles.items()):
            for core_id, count in sorted(cores.items()):
                yield Metric(
                    self._core_throttle_desc,
                    ValueType.COUNTER,
                    count,
                    (str(package_id), str(core_id)),
                )

    def _update_stat(self) -> Iterator[Metric]:
        with open(self._settings.proc_file("stat"), encoding="utf-8") as stream:
            new_stats = parse_cpu_stats(stream)
        self.update_cpu_stats(new_stats)

        metrics: list[Metric] = []
        with self._lock:
            for cpu_id, cpu_stat in enumerate(self._stats):
                cpu_num = str(cpu_id)
                for mode, value in (
                    ("user", cpu_stat.user),
                    ("nice", cpu_stat.nice),
                    ("system", cpu_stat.system),
                    ("idle", cpu_stat.idle),
                    ("iowait", cpu_stat.iowait),
                    ("irq", cpu_stat.irq),
                    ("softirq", cpu_stat.softirq),
                    ("steal", cpu_stat.steal),
                ):
                    metrics.append(
                        Metric(NODE_CPU_SECONDS_DESC, ValueType.COUNTER, value, (cpu_num, mode))
                    )
                if self._settings.cpu_guest:
                    # Guest time is also accounted for in user and nice.
                    metrics.append(
                        Metric(self._guest_desc, ValueType.COUNTER, cpu_stat.guest,
                               (cpu_num, "user"))
                    )
                    metrics.append(
                        Metric(self._guest_desc, ValueType.COUNTER, cpu_stat.guest_nice,
                               (cpu_num, "nice"))
                    )
        yield from metrics

    def update_cpu_stats(self, new_stats: list[CPUStat]) -> None:
        """Merge fresh statistics into the cache, keeping counters monotonic."""
        with self._lock:
            if len(self._stats) != len(new_stats):
                self._stats = [CPUStat() for _ in new_stats]

            for cpu_id, (cached, fresh) in enumerate(zip(self._stats, new_stats)):
                if cached.idle - fresh.idle >= JUMP_BACK_SECONDS:
                    _log.debug("%s cpu=%d old_value=%f new_value=%f",
                               _JUMP_BACK_MESSAGE, cpu_id, cached.idle, fresh.idle)
                    cached = CPUStat()
                    self._stats[cpu_id] = cached

                for name in _STAT_FIELDS:
                    old = getattr(cached, name)
                    new = getattr(fresh, name)
                    if new >= old:
                        setattr(cached, name, new)
                    else:
                        _log.debug("CPU %s counter jumped backwards cpu=%d old_value=%f "
                                   "new_value=%f", name, cpu_id, old, new)


register_collector("cpu", True, CpuCollector)