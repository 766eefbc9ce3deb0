import os

import pytest

from nodemetrics.diskstats import (
    DiskstatsCollector,
    parse_diskstats,
    read_logical_block_size,
)
from nodemetrics.metrics import format_text
from nodemetrics.registry import Settings

DISKSTATS = """\
   8      16 sdb 1000 10 2000 500 3000 30 4000 1500 2 6000 7000 40 0 1925173784 11130
   8      32 sdc 100 1 200 50 300 3 400 150 0 600 700 4 0 8 20 1555 1944
   8       1 sda1 10 0 20 1 2 0 4 1 0 2 3
   7       0 loop0 5 0 10 0 0 0 0 0 0 0 0
"""

SDB_EXPECTED = {
    "node_disk_reads_completed_total": 1000,
    "node_disk_reads_merged_total": 10,
    "node_disk_read_bytes_total": 1024000,
    "node_disk_read_time_seconds_total": 0.5,
    "node_disk_writes_completed_total": 3000,
    "node_disk_writes_merged_total": 30,
    "node_disk_written_bytes_total": 2048000,
    "node_disk_write_time_seconds_total": 1.5,
    "node_disk_io_now": 2,
    "node_disk_io_time_seconds_total": 6.0,
    "node_disk_io_time_weighted_seconds_total": 7.0,
    "node_disk_discards_completed_total": 40,
    "node_disk_discards_merged_total": 0,
    "node_disk_discarded_sectors_total": 1925173784,
    "node_disk_discard_time_seconds_total": 11.13,
    "node_disk_info": 1,
}


def _make_tree(tmp_path, diskstats=DISKSTATS, block_sizes=None):
    proc = tmp_path / "proc"
    sys_dir = tmp_path / "sys"
    proc.mkdir()
    sys_dir.mkdir()
    (proc / "diskstats").write_text(diskstats)
    for device, size in (block_sizes or {}).items():
        queue = sys_dir / "block" / device / "queue"
        queue.mkdir(parents=True)
        (queue / "logical_block_size").write_text(f"{size}\n")
    return Settings(proc_path=str(proc), sys_path=str(sys_dir))


def _by_device(metrics, device):
    return {m.name: m.value for m in metrics if m.labels["device"] == device}


def test_sdb_values(tmp_path):
    settings = _make_tree(tmp_path, block_sizes={"sdc": 512})
    values = _by_device(list(DiskstatsCollector(settings).update()), "sdb")
    assert values.keys() == SDB_EXPECTED.keys()
    for name, expected in SDB_EXPECTED.items():
        assert values[name] == pytest.approx(expected), name


def test_sdc_flush_values(tmp_path):
    settings = _make_tree(tmp_path, block_sizes={"sdc": 512})
    values = _by_device(list(DiskstatsCollector(settings).update()), "sdc")
    assert values["node_disk_flush_requests_total"] == 1555
    assert values["node_disk_flush_requests_time_seconds_total"] == pytest.approx(1.944)
    assert values["node_disk_read_bytes_total"] == 200 * 512


def test_exposition_text(tmp_path):
    settings = _make_tree(tmp_path, block_sizes={"sdc": 512})
    text = format_text(DiskstatsCollector(settings).update())
    lines = text.splitlines()
    assert 'node_disk_discarded_sectors_total{device="sdb"} 1.925173784e+09' in lines
    assert 'node_disk_discard_time_seconds_total{device="sdb"} 11.13' in lines
    assert 'node_disk_info{device="sdb",major="8",minor="16"} 1' in lines
    assert 'node_disk_info{device="sdc",major="8",minor="32"} 1' in lines
    assert "# TYPE node_disk_io_now gauge" in lines
    assert "# TYPE node_disk_reads_completed_total counter" in lines
    helps = [line.split()[2] for line in lines if line.startswith("# HELP")]
    assert len(helps) == 18
    assert helps == sorted(helps)


def test_ignored_devices_are_skipped(tmp_path):
    settings = _make_tree(tmp_path)
    devices = {m.labels["device"] for m in DiskstatsCollector(settings).update()}
    assert devices == {"sdb", "sdc"}


def test_short_record_emits_only_present_fields(tmp_path):
    settings = _make_tree(
        tmp_path, diskstats="8 0 sda 1 2 3 4 5 6 7 8 9 10 11\n"
    )
    metrics = [
        m for m in DiskstatsCollector(settings).update() if m.name != "node_disk_info"
    ]
    names = {m.name for m in metrics}
    assert len(metrics) == 11
    assert "node_disk_discards_completed_total" not in names
    assert "node_disk_io_time_weighted_seconds_total" in names


def test_logical_block_size_scales_bytes(tmp_path):
    settings = _make_tree(
        tmp_path,
        diskstats="8 0 sda 1 0 10 0 1 0 20 0 0 0 0\n",
        block_sizes={"sda": 4096},
    )
    by_name = {m.name: m.value for m in DiskstatsCollector(settings).update()}
    assert by_name["node_disk_read_bytes_total"] == 10 * 4096
    assert by_name["node_disk_written_bytes_total"] == 20 * 4096


def test_custom_ignore_pattern(tmp_path):
    settings = _make_tree(tmp_path)
    settings.diskstats_ignored_devices = "^sdb$"
    devices = {m.labels["device"] for m in DiskstatsCollector(settings).update()}
    assert devices == {"sdc", "sda1", "loop0"}


def test_invalid_ignore_pattern(tmp_path):
    settings = _make_tree(tmp_path)
    settings.diskstats_ignored_devices = "("
    with pytest.raises(ValueError):
        DiskstatsCollector(settings)


def test_missing_diskstats_file(tmp_path):
    settings = _make_tree(tmp_path)
    os.remove(os.path.join(settings.proc_path, "diskstats"))
    with pytest.raises(OSError):
        list(DiskstatsCollector(settings).update())


def test_missing_proc_path(tmp_path):
    with pytest.raises(OSError):
        DiskstatsCollector(Settings(proc_path=str(tmp_path / "nope"), sys_path=str(tmp_path)))


def test_parse_diskstats_fields():
    stats = parse_diskstats(DISKSTATS.splitlines())
    assert [s.device_name for s in stats] == ["sdb", "sdc", "sda1", "loop0"]
    sdc = stats[1]
    assert sdc.io_stats_count == 20
    assert sdc.read_ios == 100
    assert sdc.time_spent_flushing == 1944
    assert stats[0].io_stats_count == 18
    assert stats[0].flush_requests_completed == 0


def test_parse_diskstats_too_short():
    with pytest.raises(ValueError):
        parse_diskstats(["8 0 sda 1 2 3"])


def test_parse_diskstats_bad_number():
    with pytest.raises(ValueError):
        parse_diskstats(["8 0 sda 1 2 x 4 5 6 7 8 9 10 11"])


def test_read_logical_block_size(tmp_path):
    settings = _make_tree(tmp_path, block_sizes={"vda": 4096})
    assert read_logical_block_size(settings.sys_path, "vda") == 4096
    with pytest.raises(FileNotFoundError):
        read_logical_block_size(settings.sys_path, "vdb")