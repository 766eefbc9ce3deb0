"""Block device I/O statistics from /proc/diskstats."""

from __future__ import annotations

import logging
import os
import re
import stat
from dataclasses import dataclass
from typing import Iterable, Iterator

from nodemetrics.metrics import (
    NAMESPACE,
    Desc,
    Metric,
    TypedDesc,
    ValueType,
    build_fq_name,
)
from nodemetrics.registry import Collector, Settings, read_uint, register_collector

_log = logging.getLogger(__name__)

DISK_SUBSYSTEM = "disk"
DISK_LABEL_NAMES = ("device",)

SECONDS_PER_TICK = 1.0 / 1000.0
DEFAULT_SECTOR_SIZE = 512.0

READS_COMPLETED_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "reads_completed_total"),
    "The total number of reads completed successfully.",
    DISK_LABEL_NAMES,
)
READ_BYTES_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "read_bytes_total"),
    "The total number of bytes read successfully.",
    DISK_LABEL_NAMES,
)
WRITES_COMPLETED_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "writes_completed_total"),
    "The total number of writes completed successfully.",
    DISK_LABEL_NAMES,
)
WRITTEN_BYTES_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "written_bytes_total"),
    "The total number of bytes written successfully.",
    DISK_LABEL_NAMES,
)
IO_TIME_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "io_time_seconds_total"),
    "Total seconds spent doing I/Os.",
    DISK_LABEL_NAMES,
)
READ_TIME_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "read_time_seconds_total"),
    "The total number of seconds spent by all reads.",
    DISK_LABEL_NAMES,
)
WRITE_TIME_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "write_time_seconds_total"),
    "This is the total number of seconds spent by all writes.",
    DISK_LABEL_NAMES,
)

# Fields after major, minor and device name, in /proc/diskstats order.
_STAT_FIELDS = (
    "read_ios",
    "read_merges",
    "read_sectors",
    "read_ticks",
    "write_ios",
    "write_merges",
    "write_sectors",
    "write_ticks",
    "ios_in_progress",
    "ios_total_ticks",
    "weighted_io_ticks",
    "discard_ios",
    "discard_merges",
    "discard_sectors",
    "discard_ticks",
    "flush_requests_completed",
    "time_spent_flushing",
)
_MIN_FIELDS = 3 + 11
_MAX_FIELDS = 3 + len(_STAT_FIELDS)


@dataclass(frozen=True)
class DiskStats:
    """One line of /proc/diskstats; io_stats_count is the number of fields present."""

    major_number: int
    minor_number: int
    device_name: str
    io_stats_count: int
    read_ios: int = 0
    read_merges: int = 0
    read_sectors: int = 0
    read_ticks: int = 0
    write_ios: int = 0
    write_merges: int = 0
    write_sectors: int = 0
    write_ticks: int = 0
    ios_in_progress: int = 0
    ios_total_ticks: int = 0
    weighted_io_ticks: int = 0
    discard_ios: int = 0
    discard_merges: int = 0
    discard_sectors: int = 0
    discard_ticks: int = 0
    flush_requests_completed: int = 0
    time_spent_flushing: int = 0


def _parse_uint(text: str, line: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"invalid number {text!r} in diskstats line {line.strip()!r}")
    return int(text)


def parse_diskstats(stream: Iterable[str]) -> list[DiskStats]:
    """Parse the lines of /proc/diskstats."""
    result: list[DiskStats] = []
    for line in stream:
        fields = line.split()
        if not fields:
            continue
        if len(fields) < _MIN_FIELDS:
            raise ValueError(f"too few fields in diskstats line {line.strip()!r}")
        fields = fields[:_MAX_FIELDS]
        values = [_parse_uint(text, line) for text in fields[3:]]
        result.append(
            DiskStats(
                _parse_uint(fields[0], line),
                _parse_uint(fields[1], line),
                fields[2],
                len(fields),
                **dict(zip(_STAT_FIELDS, values)),
            )
        )
    return result


def read_logical_block_size(sys_path: str, device: str) -> int:
    """Read /sys/block/<device>/queue/logical_block_size."""
    return read_uint(os.path.join(sys_path, "block", device, "queue", "logical_block_size"))


def _require_dir(path: str) -> None:
    info = os.stat(path)
    if not stat.S_ISDIR(info.st_mode):
        raise NotADirectoryError(f"mount point {path!r} is not a directory")


def _counter(name: str, help_text: str) -> TypedDesc:
    return TypedDesc(
        Desc(build_fq_name(NAMESPACE, DISK_SUBSYSTEM, name), help_text, DISK_LABEL_NAMES),
        ValueType.COUNTER,
    )


class DiskstatsCollector(Collector):
    """Exposes disk device statistics."""

    def __init__(self, settings: Settings) -> None:
        _require_dir(settings.proc_path)
        _require_dir(settings.sys_path)
        try:
            self._ignored = re.compile(settings.diskstats_ignored_devices)
        except re.error as err:
            raise ValueError(
                f"invalid ignored devices pattern {settings.diskstats_ignored_devices!r}: {err}"
            ) from err
        self._settings = settings
        self._info = TypedDesc(
            Desc(
                build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "info"),
                "Info of /sys/block/<block_device>.",
                ("device", "major", "minor"),
            ),
            ValueType.GAUGE,
        )
        self._descs = (
            TypedDesc(READS_COMPLETED_DESC, ValueType.COUNTER),
            _counter("reads_merged_total", "The total number of reads merged."),
            TypedDesc(READ_BYTES_DESC, ValueType.COUNTER),
            TypedDesc(READ_TIME_SECONDS_DESC, ValueType.COUNTER),
            TypedDesc(WRITES_COMPLETED_DESC, ValueType.COUNTER),
            _counter("writes_merged_total", "The number of writes merged."),
            TypedDesc(WRITTEN_BYTES_DESC, ValueType.COUNTER),
            TypedDesc(WRITE_TIME_SECONDS_DESC, ValueType.COUNTER),
            TypedDesc(
                Desc(
                    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "io_now"),
                    "The number of I/Os currently in progress.",
                    DISK_LABEL_NAMES,
                ),
                ValueType.GAUGE,
            ),
            TypedDesc(IO_TIME_SECONDS_DESC, ValueType.COUNTER),
            _counter(
                "io_time_weighted_seconds_total", "The weighted # of seconds spent doing I/Os."
            ),
            _counter(
                "discards_completed_total", "The total number of discards completed successfully."
            ),
            _counter("discards_merged_total", "The total number of discards merged."),
            _counter(
                "discarded_sectors_total", "The total number of sectors discarded successfully."
            ),
            _counter(
                "discard_time_seconds_total",
                "This is the total number of seconds spent by all discards.",
            ),
            _counter(
                "flush_requests_total",
                "The total number of flush requests completed successfully",
            ),
            _counter(
                "flush_requests_time_seconds_total",
                "This is the total number of seconds spent by all flush requests.",
            ),
        )

    def _sector_size(self, device: str) -> float:
        try:
            return float(read_logical_block_size(self._settings.sys_path, device))
        except (OSError, ValueError) as err:
            _log.debug("error getting queue stats for device %s: %s", device, err)
            return DEFAULT_SECTOR_SIZE

    def update(self) -> Iterator[Metric]:
        with open(self._settings.proc_file("diskstats"), encoding="utf-8") as stream:
            disk_stats = parse_diskstats(stream)

        for stats in disk_stats:
            dev = stats.device_name
            if self._ignored.search(dev):
                _log.debug("ignoring device %s (pattern %s)", dev, self._ignored.pattern)
                continue

            sector_size = self._sector_size(dev)
            yield self._info.metric(1.0, dev, str(stats.major_number), str(stats.minor_number))

            values = (
                float(stats.read_ios),
                float(stats.read_merges),
                float(stats.read_sectors) * sector_size,
                float(stats.read_ticks) * SECONDS_PER_TICK,
                float(stats.write_ios),
                float(stats.write_merges),
                float(stats.write_sectors) * sector_size,
                float(stats.write_ticks) * SECONDS_PER_TICK,
                float(stats.ios_in_progress),
                float(stats.ios_total_ticks) * SECONDS_PER_TICK,
                float(stats.weighted_io_ticks) * SECONDS_PER_TICK,
                float(stats.discard_ios),
                float(stats.discard_merges),
                float(stats.discard_sectors),
                float(stats.discard_ticks) * SECONDS_PER_TICK,
                float(stats.flush_requests_completed),
                float(stats.time_spent_flushing) * SECONDS_PER_TICK,
            )
            stat_count = stats.io_stats_count - 3
            for desc, value in list(zip(self._descs, values))[:stat_count]:
                yield desc.metric(value, dev)


register_collector("diskstats", True, DiskstatsCollector)