"""Netfilter connection tracking statistics."""

from __future__ import annotations

import dataclasses
import logging
import os
import stat
from dataclasses import dataclass
from typing import Iterable, Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import (
    Collector,
    NoDataError,
    Settings,
    read_uint,
    register_collector,
)

_log = logging.getLogger(__name__)

_UINT64_MASK = (1 << 64) - 1
_FIELD_COUNT = 17

# Column of each statistic in a line of /proc/net/stat/nf_conntrack.
_COLUMNS = {
    "found": 2,
    "invalid": 4,
    "ignore": 5,
    "insert": 8,
    "insert_failed": 9,
    "drop": 10,
    "early_drop": 11,
    "search_restart": 16,
}


@dataclass(frozen=True)
class ConntrackStatistics:
    """Connection tracking counters, for one CPU or summed over all of them."""

    found: int = 0
    invalid: int = 0
    ignore: int = 0
    insert: int = 0
    insert_failed: int = 0
    drop: int = 0
    early_drop: int = 0
    search_restart: int = 0

    def __add__(self, other: ConntrackStatistics) -> ConntrackStatistics:
        return ConntrackStatistics(
            **{
                f.name: (getattr(self, f.name) + getattr(other, f.name)) & _UINT64_MASK
                for f in dataclasses.fields(self)
            }
        )


def _parse_hex(text: str) -> int:
    try:
        value = int(text, 16)
    except ValueError as err:
        raise ValueError(f"couldn't parse {text!r} as a hexadecimal counter") from err
    if value < 0 or value > _UINT64_MASK or text.startswith(("+", "-")):
        raise ValueError(f"counter {text!r} is out of range")
    return value


def parse_conntrack_stat(stream: Iterable[str]) -> list[ConntrackStatistics]:
    """Per-CPU counters from the lines of /proc/net/stat/nf_conntrack; the header is skipped."""
    lines = iter(stream)
    next(lines, None)
    result: list[ConntrackStatistics] = []
    for line in lines:
        fields = line.split()
        if len(fields) != _FIELD_COUNT:
            raise ValueError("invalid conntrackstat entry, missing fields")
        _parse_hex(fields[0])
        result.append(
            ConntrackStatistics(
                **{name: _parse_hex(fields[column]) for name, column in _COLUMNS.items()}
            )
        )
    return result


def read_conntrack_statistics(proc_path: str) -> ConntrackStatistics:
    """Counters of /proc/net/stat/nf_conntrack summed over all CPUs."""
    info = os.stat(proc_path)
    if not stat.S_ISDIR(info.st_mode):
        raise NotADirectoryError(f"mount point {proc_path!r} is not a directory")
    path = os.path.join(proc_path, "net", "stat", "nf_conntrack")
    with open(path, encoding="ascii") as stream:
        per_cpu = parse_conntrack_stat(stream)
    return sum(per_cpu, ConntrackStatistics())


def _desc(name: str, help_text: str) -> Desc:
    return Desc(build_fq_name(NAMESPACE, "", name), help_text)


class ConntrackCollector(Collector):
    """Exposes connection tracking table size and statistics."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._current = _desc(
            "nf_conntrack_entries",
            "Number of currently allocated flow entries for connection tracking.",
        )
        self._limit = _desc(
            "nf_conntrack_entries_limit", "Maximum size of connection tracking table."
        )
        self._stat_descs = (
            ("found", _desc("nf_conntrack_stat_found",
                            "Number of searched entries which were successful.")),
            ("invalid", _desc("nf_conntrack_stat_invalid",
                              "Number of packets seen which can not be tracked.")),
            ("ignore", _desc("nf_conntrack_stat_ignore",
                             "Number of packets seen which are already connected to a "
                             "conntrack entry.")),
            ("insert", _desc("nf_conntrack_stat_insert",
                             "Number of entries inserted into the list.")),
            ("insert_failed", _desc("nf_conntrack_stat_insert_failed",
                                    "Number of entries for which list insertion was attempted "
                                    "but failed.")),
            ("drop", _desc("nf_conntrack_stat_drop",
                           "Number of packets dropped due to conntrack failure.")),
            ("early_drop", _desc("nf_conntrack_stat_early_drop",
                                 "Number of dropped conntrack entries to make room for new "
                                 "ones, if maximum table size was reached.")),
            ("search_restart", _desc("nf_conntrack_stat_search_restart",
                                     "Number of conntrack table lookups which had to be "
                                     "restarted due to hashtable resizes.")),
        )

    @staticmethod
    def _handle(err: Exception) -> Exception:
        if isinstance(err, FileNotFoundError):
            _log.debug("conntrack probably not loaded")
            return NoDataError()
        return RuntimeError(f"failed to retrieve conntrack stats: {err}")

    def _read(self, *parts: str) -> int:
        try:
            return read_uint(self._settings.proc_file(*parts))
        except (OSError, ValueError) as err:
            raise self._handle(err) from err

    def update(self) -> Iterator[Metric]:
        netfilter = ("sys", "net", "netfilter")
        value = self._read(*netfilter, "nf_conntrack_count")
        yield Metric(self._current, ValueType.GAUGE, value)

        value = self._read(*netfilter, "nf_conntrack_max")
        yield Metric(self._limit, ValueType.GAUGE, value)

        try:
            stats = read_conntrack_statistics(self._settings.proc_path)
        except (OSError, ValueError) as err:
            raise self._handle(err) from err

        for name, desc in self._stat_descs:
            yield Metric(desc, ValueType.GAUGE, getattr(stats, name))


register_collector("conntrack", True, ConntrackCollector)