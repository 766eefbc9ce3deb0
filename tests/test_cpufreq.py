import pytest

from nodemetrics.cpufreq import CpuFreqCollector, read_system_cpufreq
from nodemetrics.registry import Settings


def _cpu(sys_dir, name, files):
    cpu = sys_dir / "devices" / "system" / "cpu" / name
    cpu.mkdir(parents=True)
    if files is not None:
        freq = cpu / "cpufreq"
        freq.mkdir()
        for filename, content in files.items():
            (freq / filename).write_text(f"{content}\n")
    return cpu


@pytest.fixture
def sys_dir(tmp_path):
    root = tmp_path / "sys"
    root.mkdir()
    _cpu(root, "cpu0", {
        "cpuinfo_cur_freq": 1800000,
        "cpuinfo_max_freq": 2400000,
        "cpuinfo_min_freq": 800000,
        "scaling_cur_freq": 1799000,
        "scaling_max_freq": 2400000,
        "scaling_min_freq": 800000,
        "scaling_governor": "powersave",
        "scaling_driver": "intel_pstate",
    })
    _cpu(root, "cpu1", {"scaling_cur_freq": 1200000})
    _cpu(root, "cpu2", None)
    (root / "devices" / "system" / "cpu" / "cpufreq").mkdir()
    return root


def test_read_system_cpufreq(sys_dir):
    stats = read_system_cpufreq(str(sys_dir))
    assert [s.name for s in stats] == ["0", "1"]
    first = stats[0]
    assert first.cpuinfo_current_frequency == 1800000
    assert first.scaling_minimum_frequency == 800000
    assert first.governor == "powersave"
    assert first.driver == "intel_pstate"
    second = stats[1]
    assert second.scaling_current_frequency == 1200000
    assert second.cpuinfo_current_frequency is None


def test_collector_exports_hertz(sys_dir):
    metrics = list(CpuFreqCollector(Settings(sys_path=str(sys_dir))).update())
    values = {(m.name, m.labels["cpu"]): m.value for m in metrics}
    assert values[("node_cpu_frequency_hertz", "0")] == 1800000 * 1000
    assert values[("node_cpu_frequency_max_hertz", "0")] == 2400000 * 1000
    assert values[("node_cpu_scaling_frequency_hertz", "1")] == 1200000 * 1000
    assert ("node_cpu_frequency_hertz", "1") not in values
    assert len(values) == 7


def test_collector_skips_cpus_without_cpufreq(sys_dir):
    metrics = list(CpuFreqCollector(Settings(sys_path=str(sys_dir))).update())
    assert {m.labels["cpu"] for m in metrics} == {"0", "1"}


def test_invalid_value_raises(tmp_path):
    root = tmp_path / "sys"
    root.mkdir()
    _cpu(root, "cpu0", {"scaling_cur_freq": "fast"})
    with pytest.raises(ValueError):
        read_system_cpufreq(str(root))


def test_no_cpus_gives_empty(tmp_path):
    assert read_system_cpufreq(str(tmp_path)) == []


def test_missing_sys_path(tmp_path):
    with pytest.raises(OSError):
        CpuFreqCollector(Settings(sys_path=str(tmp_path / "missing")))