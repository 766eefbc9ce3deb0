import pytest

from nodemetrics.drm import AMDGPUStats, DrmCollector, read_amdgpu_stats
from nodemetrics.registry import Settings

AMD_FILES = {
    "uevent": "DRIVER=amdgpu\nPCI_CLASS=30000\n",
    "gpu_busy_percent": "4\n",
    "mem_info_gtt_total": "8573157376\n",
    "mem_info_gtt_used": "144560128\n",
    "mem_info_vis_vram_total": "8573157376\n",
    "mem_info_vis_vram_used": "1490137088\n",
    "mem_info_vram_total": "8573157376\n",
    "mem_info_vram_used": "1490137088\n",
    "mem_info_vram_vendor": "samsung\n",
    "power_dpm_force_performance_level": "manual\n",
    "unique_id": "0123456789abcdef\n",
}


def _make_card(root, name, files):
    device = root / "class" / "drm" / name / "device"
    device.mkdir(parents=True)
    for filename, content in files.items():
        (device / filename).write_text(content)


@pytest.fixture
def sys_root(tmp_path):
    _make_card(tmp_path, "card0", AMD_FILES)
    _make_card(tmp_path, "card1", {"uevent": "DRIVER=i915\n"})
    _make_card(tmp_path, "card0-DP-1", AMD_FILES)
    return tmp_path


def test_read_amdgpu_stats(sys_root):
    stats = read_amdgpu_stats(str(sys_root))
    assert stats == [
        AMDGPUStats(
            name="card0",
            gpu_busy_percent=4,
            memory_gtt_size=8573157376,
            memory_gtt_used=144560128,
            memory_visible_vram_size=8573157376,
            memory_visible_vram_used=1490137088,
            memory_vram_size=8573157376,
            memory_vram_used=1490137088,
            memory_vram_vendor="samsung",
            power_dpm_force_performance_level="manual",
            unique_id="0123456789abcdef",
        )
    ]


def test_missing_files_default_to_zero(tmp_path):
    _make_card(tmp_path, "card2", {"uevent": "DRIVER=amdgpu\n", "gpu_busy_percent": "7\n"})
    (stats,) = read_amdgpu_stats(str(tmp_path))
    assert stats.gpu_busy_percent == 7
    assert stats.memory_vram_size == 0
    assert stats.unique_id == ""


def test_no_drm_class_gives_nothing(tmp_path):
    assert read_amdgpu_stats(str(tmp_path)) == []


def test_collector_update(sys_root):
    collector = DrmCollector(Settings(proc_path=str(sys_root), sys_path=str(sys_root)))
    metrics = list(collector.update())
    assert len(metrics) == 8
    info = metrics[0]
    assert info.name == "node_drm_card_info"
    assert info.labels == {
        "card": "card0",
        "memory_vendor": "samsung",
        "power_performance_level": "manual",
        "unique_id": "0123456789abcdef",
        "vendor": "amd",
    }
    by_name = {m.name: m for m in metrics[1:]}
    assert by_name["node_drm_gpu_busy_percent"].value == 4.0
    assert by_name["node_drm_memory_vram_used_bytes"].value == 1490137088.0
    assert by_name["node_drm_memory_gtt_used_bytes"].value == 144560128.0
    assert all(m.label_values == ("card0",) for m in metrics[1:])


def test_collector_requires_directory(tmp_path):
    not_dir = tmp_path / "file"
    not_dir.write_text("x")
    with pytest.raises(NotADirectoryError):
        DrmCollector(Settings(sys_path=str(not_dir)))


def test_collector_missing_sys_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        DrmCollector(Settings(sys_path=str(tmp_path / "absent")))