import pytest

from nodemetrics.edac import EdacCollector
from nodemetrics.metrics import ValueType
from nodemetrics.registry import Settings


def _make_controller(root, index, counts, csrows=None):
    mc = root / "devices" / "system" / "edac" / "mc" / f"mc{index}"
    mc.mkdir(parents=True)
    for name, value in counts.items():
        (mc / name).write_text(f"{value}\n")
    for row, (ce, ue) in (csrows or {}).items():
        csrow = mc / f"csrow{row}"
        csrow.mkdir()
        (csrow / "ce_count").write_text(f"{ce}\n")
        (csrow / "ue_count").write_text(f"{ue}\n")
    return mc


FULL_COUNTS = {"ce_count": 1, "ce_noinfo_count": 2, "ue_count": 5, "ue_noinfo_count": 6}


def _collector(root):
    return EdacCollector(Settings(proc_path=str(root), sys_path=str(root)))


def test_controller_and_csrow_metrics(tmp_path):
    _make_controller(tmp_path, 0, FULL_COUNTS, {0: (3, 4)})
    metrics = list(_collector(tmp_path).update())
    assert [(m.name, m.label_values, m.value) for m in metrics] == [
        ("node_edac_correctable_errors_total", ("0",), 1.0),
        ("node_edac_csrow_correctable_errors_total", ("0", "unknown"), 2.0),
        ("node_edac_uncorrectable_errors_total", ("0",), 5.0),
        ("node_edac_csrow_uncorrectable_errors_total", ("0", "unknown"), 6.0),
        ("node_edac_csrow_correctable_errors_total", ("0", "0"), 3.0),
        ("node_edac_csrow_uncorrectable_errors_total", ("0", "0"), 4.0),
    ]
    assert all(m.value_type is ValueType.COUNTER for m in metrics)


def test_multiple_controllers_are_ordered(tmp_path):
    _make_controller(tmp_path, 1, FULL_COUNTS)
    _make_controller(tmp_path, 0, FULL_COUNTS)
    metrics = list(_collector(tmp_path).update())
    controllers = [m.label_values[0] for m in metrics]
    assert controllers == ["0"] * 4 + ["1"] * 4


def test_no_controllers(tmp_path):
    assert list(_collector(tmp_path).update()) == []


def test_missing_count_raises(tmp_path):
    counts = dict(FULL_COUNTS)
    del counts["ue_count"]
    _make_controller(tmp_path, 0, counts)
    with pytest.raises(RuntimeError, match="ue_count for controller 0"):
        list(_collector(tmp_path).update())


def test_invalid_csrow_count_raises(tmp_path):
    mc = _make_controller(tmp_path, 0, FULL_COUNTS, {2: (1, 1)})
    (mc / "csrow2" / "ce_count").write_text("bad\n")
    with pytest.raises(RuntimeError, match="controller/csrow 0/2"):
        list(_collector(tmp_path).update())