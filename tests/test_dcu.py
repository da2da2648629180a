import os

import pytest

from vgpushare.corealloc import alloc_core_usage, init_core_usage
from vgpushare.dcu import (
    BUS_COMMAND,
    DEVICE_INFO_COMMAND,
    MAX_PIPES,
    MAX_VDEVS,
    MEMINFO_COMMAND,
    PRODUCT_COMMAND,
    VDEV_CONFIG_NAME,
    ContainerDevice,
    DcuPlugin,
    DeviceSpec,
    FakeDevice,
    get_index_from_uuid,
    parse_bus,
    parse_device_info,
    parse_meminfo,
    parse_product,
)

MIB = 1024 * 1024

MEMINFO = (
    "============ DCU Memory Usage ============\n"
    f"DCU[0] \t\t: vram Total Memory (B): {8 * MIB}\n"
    "DCU[0] \t\t: vram Total Used Memory (B): 100\n"
    f"DCU[1] \t\t: vram Total Memory (B): {4 * MIB}\n"
    "DCU[1] \t\t: vram Total Used Memory (B): 0\n"
)
PRODUCT = (
    "DCU[0] \t\t: Card series:\t\tZ100\n"
    "DCU[0] \t\t: Card vendor:\t\tExample\n"
    "DCU[1] \t\t: Card series:\t\tK100\n"
    "DCU[1] \t\t: Card vendor:\t\tExample\n"
)
BUS = "DCU[0] \t\t: PCI Bus: 0000:19:00.0\nDCU[1] \t\t: PCI Bus: 0000:1a:00.0\n"
DEVICE_INFO = (
    "Device list:\n"
    "\tActual Device: 0\n"
    "\tCompute units: 60\n"
    "\tActual Device: 1\n"
    "\tCompute units: 64\n"
)
OUTPUTS = {
    MEMINFO_COMMAND: MEMINFO,
    PRODUCT_COMMAND: PRODUCT,
    BUS_COMMAND: BUS,
    DEVICE_INFO_COMMAND: DEVICE_INFO,
}


@pytest.fixture
def plugin(tmp_path):
    p = DcuPlugin(vdev_root=str(tmp_path), hygon_path="/opt/driver")
    p.load(lambda argv: OUTPUTS[tuple(argv)])
    return p


def test_parse_meminfo_converts_to_mib():
    assert parse_meminfo(MEMINFO) == {0: 8, 1: 4}


def test_parse_meminfo_rejects_malformed_line():
    with pytest.raises(ValueError):
        parse_meminfo("DCU[0] : something else\n")


def test_parse_product_prefixes_series():
    assert parse_product(PRODUCT) == {0: "DCU-Z100", 1: "DCU-K100"}


def test_parse_bus():
    assert parse_bus(BUS) == {0: "0000:19:00.0", 1: "0000:1a:00.0"}


def test_parse_device_info():
    assert parse_device_info(DEVICE_INFO) == {0: 60, 1: 64}


def test_get_index_from_uuid():
    assert get_index_from_uuid("DCU-7") == 7
    assert get_index_from_uuid("DCU-x") == 0


def test_load_fills_tables(plugin):
    assert plugin.totalmem[:3] == [8, 4, 0]
    assert plugin.cardtype[:2] == ["DCU-Z100", "DCU-K100"]
    assert plugin.pcibusid[0] == "0000:19:00.0"
    assert plugin.totalcores[:2] == [60, 64]
    assert plugin.coremask[0] == "000000000000000"
    assert plugin.coremask[1] == init_core_usage(64)


def test_load_calls_commands_in_order(tmp_path):
    calls = []

    def runner(argv):
        calls.append(tuple(argv))
        return OUTPUTS[tuple(argv)]

    p = DcuPlugin(vdev_root=str(tmp_path))
    p.load(runner)
    assert calls == [MEMINFO_COMMAND, PRODUCT_COMMAND, BUS_COMMAND, DEVICE_INFO_COMMAND]
    assert p.totalmem[:2] == [8, 4]
    assert p.pcibusid[1] == "0000:1a:00.0"
    assert p.totalcores[:2] == [60, 64]


def test_api_devices(plugin):
    devices = plugin.api_devices()
    assert [d.id for d in devices] == ["DCU-0", "DCU-1"]
    first = devices[0]
    assert (first.index, first.count, first.devcore, first.devmem) == (0, 30, 100, 8)
    assert first.type == "DCU-Z100"
    assert first.health is True


def test_generate_fake_devs(plugin):
    devices = plugin.api_devices()
    fakes = plugin.generate_fake_devs(devices)
    assert len(fakes) == sum(d.count for d in devices)
    assert fakes[0] == FakeDevice(id="DCU-0-fake-0", health="Healthy")
    assert len({f.id for f in fakes}) == len(fakes)


def test_allocate_vidx_until_exhausted():
    p = DcuPlugin()
    got = [p.allocate_vidx() for _ in range(MAX_VDEVS)]
    assert got == list(range(MAX_VDEVS))
    with pytest.raises(RuntimeError):
        p.allocate_vidx()


def test_allocate_pipe_id_per_device():
    p = DcuPlugin()
    assert [p.allocate_pipe_id(2) for _ in range(MAX_PIPES)] == list(range(MAX_PIPES))
    assert p.allocate_pipe_id(3) == 0
    with pytest.raises(RuntimeError):
        p.allocate_pipe_id(2)


def test_create_vdev_file_contents(plugin):
    dev = ContainerDevice(uuid="DCU-0", usedmem=1024, usedcores=50)
    dirname = plugin.create_vdev_file("pod-uid", "main", [dev])
    mask = alloc_core_usage("000000000000000", 50 * 60 // 100)
    assert os.path.basename(dirname) == f"pod-uid_main_0_0_0_{mask}"
    with open(os.path.join(dirname, VDEV_CONFIG_NAME), encoding="utf-8") as fh:
        lines = fh.read().splitlines()
    assert lines[0] == "PciBusId: 0000:19:00.0"
    assert lines[1] == f"cu_mask: 0x{mask}"
    assert lines[2] == "cu_count: 60"
    assert lines[3] == "mem: 1024 MiB"
    assert lines[-1] == "enable: 1"
    assert plugin.vidx[0] is True
    assert plugin.pipeid[0][0] is True


def test_create_vdev_file_multiple_devices_without_share(plugin):
    devs = [ContainerDevice(uuid="DCU-0"), ContainerDevice(uuid="DCU-1")]
    assert plugin.create_vdev_file("pod", "ctr", devs) is None


def test_create_vdev_file_multiple_devices_with_share(plugin):
    devs = [ContainerDevice(uuid="DCU-0", usedmem=10), ContainerDevice(uuid="DCU-1")]
    with pytest.raises(ValueError):
        plugin.create_vdev_file("pod", "ctr", devs)


def test_refresh_round_trip(plugin, tmp_path):
    dev = ContainerDevice(uuid="DCU-0", usedmem=1024, usedcores=50)
    dirname = plugin.create_vdev_file("live-pod", "main", [dev])
    mask = os.path.basename(dirname).split("_")[5]
    plugin.vidx[0] = False
    plugin.refresh_container_devices(["live-pod"])
    assert plugin.coremask[0] == mask
    assert plugin.vidx[0] is True
    assert plugin.pipeid[0][0] is True
    assert os.path.isdir(dirname)


def test_refresh_removes_stale_directories(plugin, tmp_path):
    stale = tmp_path / "gone-pod_main_1_3_5_0000"
    stale.mkdir()
    plugin.vidx[5] = True
    plugin.pipeid[1][3] = True
    plugin.refresh_container_devices(["other-pod"])
    assert not stale.exists()
    assert plugin.vidx[5] is False
    assert plugin.pipeid[1][3] is False


def test_refresh_missing_root_raises(tmp_path):
    p = DcuPlugin(vdev_root=str(tmp_path / "absent"))
    with pytest.raises(OSError):
        p.refresh_container_devices([])


def test_device_specs(plugin):
    specs = plugin.device_specs([ContainerDevice(uuid="DCU-0")])
    assert specs[0] == DeviceSpec("/dev/kfd", "/dev/kfd", "rwm")
    assert specs[1] == DeviceSpec("/dev/mkfd", "/dev/mkfd", "rwm")
    assert specs[2] == DeviceSpec("/dev/dri/card0", "/dev/dri/card0", "rw")
    assert specs[3] == DeviceSpec("/dev/dri/renderD128", "/dev/dri/renderD128", "rw")


def test_device_specs_two_per_device(plugin):
    devs = [ContainerDevice(uuid="DCU-0"), ContainerDevice(uuid="DCU-1")]
    specs = plugin.device_specs(devs)
    assert len(specs) == 2 + 2 * len(devs)
    assert all(s.host_path == s.container_path for s in specs)