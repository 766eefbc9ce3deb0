"""ARP table entry counts per device."""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Iterator

from nodemetrics.metrics import NAMESPACE, Desc, Metric, ValueType, build_fq_name
from nodemetrics.registry import Collector, Settings, register_collector


def parse_arp_entries(stream: Iterable[str]) -> dict[str, int]:
    """Count ARP entries per device from the lines of /proc/net/arp."""
    entries: Counter[str] = Counter()
    for line in stream:
        columns = line.split()
        if len(columns) < 6:
            raise ValueError("unexpected ARP table format")
        if columns[0] != "IP":
            entries[columns[-1]] += 1
    return dict(entries)


class ArpCollector(Collector):
    """Exposes ARP entries by device."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._entries = Desc(
            build_fq_name(NAMESPACE, "arp", "entries"),
            "ARP entries by device",
            ("device",),
        )

    def update(self) -> Iterator[Metric]:
        with open(self._settings.proc_file("net", "arp"), encoding="utf-8") as stream:
            entries = parse_arp_entries(stream)
        for device, count in entries.items():
            yield Metric(self._entries, ValueType.GAUGE, count, (device,))


register_collector("arp", True, ArpCollector)