"""Free memory block counts per order from /proc/buddyinfo."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from typing import Iterable, Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, register_collector

_log = logging.getLogger(__name__)

BUDDYINFO_SUBSYSTEM = "buddyinfo"


@dataclass(frozen=True)
class BuddyInfo:
    """Free block counts of one memory zone, indexed by block order."""

    node: str
    zone: str
    sizes: tuple[float, ...]


def parse_buddyinfo(stream: Iterable[str]) -> list[BuddyInfo]:
    """Parse the lines of /proc/buddyinfo."""
    result: list[BuddyInfo] = []
    bucket_count: int | None = None
    for line in stream:
        parts = line.split()
        if len(parts) < 4:
            raise ValueError("invalid number of fields when parsing buddyinfo")
        node = parts[1].rstrip(",")
        zone = parts[3].rstrip(",")
        buckets = parts[4:]
        if bucket_count is None:
            bucket_count = len(buckets)
        elif bucket_count != len(buckets):
            raise ValueError(
                "mismatch in number of buddyinfo buckets, previous count "
                f"{bucket_count}, new count {len(buckets)}"
            )
        try:
            sizes = tuple(float(value) for value in buckets)
        except ValueError as err:
            raise ValueError(f"invalid value in buddyinfo: {err}") from err
        result.append(BuddyInfo(node, zone, sizes))
    return result


class BuddyinfoCollector(Collector):
    """Exposes the count of free blocks by size."""

    def __init__(self, settings: Settings) -> None:
        info = os.stat(settings.proc_path)
        if not stat.S_ISDIR(info.st_mode):
            raise NotADirectoryError(f"mount point {settings.proc_path!r} is not a directory")
        self._settings = settings
        self._desc = Desc(
            build_fq_name(NAMESPACE, BUDDYINFO_SUBSYSTEM, "blocks"),
            "Count of free blocks according to size.",
            ("node", "zone", "size"),
        )

    def update(self) -> Iterator[Metric]:
        try:
            with open(self._settings.proc_file("buddyinfo"), encoding="utf-8") as stream:
                entries = parse_buddyinfo(stream)
        except (OSError, ValueError) as err:
            raise RuntimeError(f"couldn't get buddyinfo: {err}") from err
        _log.debug("set node_buddy: %s", entries)
        for entry in entries:
            for size, value in enumerate(entry.sizes):
                yield Metric(
                    self._desc, ValueType.GAUGE, value, (entry.node, entry.zone, str(size))
                )


register_collector("buddyinfo", False, BuddyinfoCollector)