import pytest

from vgpushare.feedback import (
    CgroupDriver,
    check_blocking,
    check_priority,
    detect_cgroup_driver,
    observe,
    task_file_path,
)
from vgpushare.pathmonitor import PodUsage
from vgpushare.sharedregion import MAX_DEVICES, UUID_LEN, SharedRegion, map_cache_file


def _uuids(*names):
    raw = [name.encode().ljust(UUID_LEN, b"\x00") for name in names]
    return raw + [bytes(UUID_LEN)] * (MAX_DEVICES - len(raw))


def _usage(name, uuid="GPU-a", **fields):
    return PodUsage(idstr=name, sr=SharedRegion(uuids=_uuids(uuid), **fields))


@pytest.mark.parametrize(
    "content, expected",
    [
        ("cgroupDriver: systemd\n", CgroupDriver.SYSTEMD),
        ("cgroupDriver: cgroupfs\n", CgroupDriver.CGROUPFS),
        ("kind: KubeletConfiguration\n", CgroupDriver.UNKNOWN),
        ("cgroupDriver: other\n", CgroupDriver.UNKNOWN),
    ],
)
def test_detect_cgroup_driver(tmp_path, content, expected):
    cfg = tmp_path / "config.yaml"
    cfg.write_text(content)
    assert detect_cgroup_driver(str(cfg)) is expected


def test_detect_cgroup_driver_missing_file(tmp_path):
    assert detect_cgroup_driver(str(tmp_path / "none.yaml")) is CgroupDriver.UNKNOWN


def test_task_file_path_cgroupfs():
    path = task_file_path(CgroupDriver.CGROUPFS, "Burstable", "ab-cd", "docker://xyz")
    assert path == "/sysinfo/fs/cgroup/memory/kubepods/burstable/podab-cd/xyz/tasks"


def test_task_file_path_systemd_replaces_dashes():
    path = task_file_path(CgroupDriver.SYSTEMD, "BestEffort", "ab-cd", "docker://xyz")
    assert "podab_cd.slice" in path
    assert path.endswith("docker-xyz.scope/tasks")
    assert "kubepods-besteffort.slice" in path


def test_task_file_path_unknown_driver():
    with pytest.raises(ValueError):
        task_file_path(CgroupDriver.UNKNOWN, "guaranteed", "u", "c")


def test_check_blocking():
    usage = _usage("x", priority=1)
    assert check_blocking({"GPU-a": [1, 0]}, 1, usage) is True
    assert check_blocking({"GPU-a": [0, 3]}, 1, usage) is False
    assert check_blocking({"GPU-b": [5, 5]}, 1, usage) is False
    assert check_blocking({"GPU-a": [1, 0]}, 0, usage) is False


def test_check_priority():
    usage = _usage("x")
    assert check_priority({"GPU-a": [2, 0]}, 0, usage) is True
    assert check_priority({"GPU-a": [1, 0]}, 0, usage) is False
    assert check_priority({"GPU-a": [1, 0]}, 1, usage) is True
    assert check_priority({}, 0, usage) is False


def test_observe_two_priorities_on_one_device():
    high = _usage("high", priority=0, recent_kernel=2)
    low = _usage("low", priority=1, recent_kernel=2)
    counts = observe({"high": high, "low": low})
    assert counts == {"GPU-a": [1, 1]}
    assert low.sr.recent_kernel == -1
    assert low.sr.utilization_switch == 1
    assert high.sr.recent_kernel == 1
    assert high.sr.utilization_switch == 0


def test_observe_idle_task_is_unblocked():
    usage = _usage("x", recent_kernel=-1, utilization_switch=1)
    assert observe({"x": usage}) == {}
    assert usage.sr.recent_kernel == 0
    assert usage.sr.utilization_switch == 0


def test_observe_decrements_recent_kernel():
    usage = _usage("x", recent_kernel=1)
    observe({"x": usage})
    assert usage.sr.recent_kernel == 0


def test_observe_skips_missing_region():
    assert observe({"x": PodUsage(idstr="x", sr=None)}) == {}


def test_observe_writes_to_mapping(tmp_path):
    path = tmp_path / "a.cache"
    path.write_bytes(SharedRegion(uuids=_uuids("GPU-a"), recent_kernel=-1).to_bytes())
    region = map_cache_file(str(path))
    try:
        observe({"x": PodUsage(idstr="x", sr=region)})
        assert region.recent_kernel == 0
    finally:
        region.close()
    with map_cache_file(str(path)) as again:
        assert again.snapshot().recent_kernel == 0