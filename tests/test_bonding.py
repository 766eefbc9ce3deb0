import pytest

from nodemetrics.bonding import BondingCollector, read_bonding_stats
from nodemetrics.registry import NoDataError, Settings


def _slave(net, master, prefix, slave, state):
    path = net / master / f"{prefix}_{slave}" / "bonding_slave"
    path.mkdir(parents=True)
    (path / "mii_status").write_text(state + "\n")


@pytest.fixture
def sys_root(tmp_path):
    net = tmp_path / "class" / "net"
    net.mkdir(parents=True)
    (net / "bonding_masters").write_text("bond0 dmz int\n")
    for master, slaves in (("bond0", ""), ("dmz", "eth0 eth4"), ("int", "eth5 eth1")):
        (net / master / "bonding").mkdir(parents=True)
        (net / master / "bonding" / "slaves").write_text(slaves + "\n")
    _slave(net, "dmz", "lower", "eth0", "up")
    _slave(net, "dmz", "slave", "eth4", "up")
    _slave(net, "int", "lower", "eth5", "up")
    _slave(net, "int", "slave", "eth1", "down")
    return tmp_path


def test_bonding(sys_root):
    stats = read_bonding_stats(str(sys_root / "class" / "net"))
    assert stats["bond0"] == (0, 0)
    assert stats["int"] == (2, 1)
    assert stats["dmz"] == (2, 2)


def test_missing_mii_status(sys_root):
    net = sys_root / "class" / "net"
    (net / "int" / "bonding" / "slaves").write_text("eth5 eth9\n")
    with pytest.raises(FileNotFoundError):
        read_bonding_stats(str(net))


def test_collector_metrics(sys_root):
    collector = BondingCollector(Settings(sys_path=str(sys_root)))
    metrics = list(collector.update())
    slaves = {m.labels["master"]: m.value for m in metrics if m.name == "node_bonding_slaves"}
    active = {m.labels["master"]: m.value for m in metrics if m.name == "node_bonding_active"}
    assert slaves == {"bond0": 0.0, "dmz": 2.0, "int": 2.0}
    assert active == {"bond0": 0.0, "dmz": 2.0, "int": 1.0}


def test_collector_without_bonding(tmp_path):
    collector = BondingCollector(Settings(sys_path=str(tmp_path)))
    with pytest.raises(NoDataError):
        list(collector.update())