import pytest

from nodemetrics.entropy import EntropyCollector, read_kernel_random
from nodemetrics.registry import Settings


@pytest.fixture
def proc_root(tmp_path):
    random = tmp_path / "sys" / "kernel" / "random"
    random.mkdir(parents=True)
    (random / "entropy_avail").write_text("3943\n")
    (random / "poolsize").write_text("4096\n")
    return tmp_path


def test_read_kernel_random(proc_root):
    stats = read_kernel_random(str(proc_root))
    assert stats.entropy_available == 3943
    assert stats.pool_size == 4096
    assert stats.read_wakeup_threshold is None
    assert stats.urandom_min_reseed_seconds is None


def test_read_kernel_random_rejects_garbage(proc_root):
    (proc_root / "sys" / "kernel" / "random" / "poolsize").write_text("lots\n")
    with pytest.raises(ValueError):
        read_kernel_random(str(proc_root))


def test_collector_metrics(proc_root):
    metrics = list(EntropyCollector(Settings(proc_path=str(proc_root))).update())
    assert [(m.name, m.value) for m in metrics] == [
        ("node_entropy_available_bits", 3943.0),
        ("node_entropy_pool_size_bits", 4096.0),
    ]


def test_collector_missing_entropy_avail(proc_root):
    (proc_root / "sys" / "kernel" / "random" / "entropy_avail").unlink()
    collector = EntropyCollector(Settings(proc_path=str(proc_root)))
    with pytest.raises(ValueError, match="entropy_avail"):
        list(collector.update())


def test_collector_missing_poolsize(proc_root):
    (proc_root / "sys" / "kernel" / "random" / "poolsize").unlink()
    collector = EntropyCollector(Settings(proc_path=str(proc_root)))
    updates = collector.update()
    assert next(updates).value == 3943.0
    with pytest.raises(ValueError, match="poolsize"):
        next(updates)


def test_collector_requires_proc_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        EntropyCollector(Settings(proc_path=str(tmp_path / "missing")))