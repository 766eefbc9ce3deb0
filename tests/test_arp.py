import io

import pytest

from nodemetrics.arp import ArpCollector, parse_arp_entries
from nodemetrics.metrics import ValueType
from nodemetrics.registry import Settings

ARP_TABLE = (
    "IP address       HW type     Flags       HW address            Mask     Device\n"
    "192.0.2.10       0x1         0x2         00:00:5e:00:53:01     *        eth0\n"
    "192.0.2.11       0x1         0x2         00:00:5e:00:53:02     *        eth0\n"
    "198.51.100.7     0x1         0x2         00:00:5e:00:53:03     *        wlan0\n"
)


def test_parse_counts_per_device():
    assert parse_arp_entries(io.StringIO(ARP_TABLE)) == {"eth0": 2, "wlan0": 1}


def test_parse_header_only():
    header = ARP_TABLE.splitlines(keepends=True)[0]
    assert parse_arp_entries(io.StringIO(header)) == {}


def test_parse_rejects_short_line():
    with pytest.raises(ValueError, match="unexpected ARP table format"):
        parse_arp_entries(io.StringIO("192.0.2.10 0x1 0x2\n"))


def test_collector_reads_proc(tmp_path):
    (tmp_path / "net").mkdir()
    (tmp_path / "net" / "arp").write_text(ARP_TABLE)
    collector = ArpCollector(Settings(proc_path=str(tmp_path)))
    metrics = list(collector.update())
    assert {m.labels["device"]: m.value for m in metrics} == {"eth0": 2.0, "wlan0": 1.0}
    assert all(m.name == "node_arp_entries" for m in metrics)
    assert all(m.value_type is ValueType.GAUGE for m in metrics)


def test_collector_missing_file(tmp_path):
    collector = ArpCollector(Settings(proc_path=str(tmp_path)))
    with pytest.raises(FileNotFoundError):
        list(collector.update())