"""Device plugin state for Hygon DCUs shared between containers."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from vgpushare.api import DeviceInfo
from vgpushare.corealloc import add_core_usage, alloc_core_usage, init_core_usage

log = logging.getLogger(__name__)

MAX_DEVICES = 16
MAX_VDEVS = 200
MAX_PIPES = 20
VDEV_ROOT = "/usr/local/vgpu/dcu"
VDEV_CONFIG_NAME = "vdev0.conf"
FAKE_DEVICES_PER_CARD = 30
DEVICE_CORES = 100
HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"

MEMINFO_COMMAND = ("hy-smi", "--showmeminfo", "vram")
PRODUCT_COMMAND = ("hy-smi", "--showproduct")
BUS_COMMAND = ("hy-smi", "--showbus")
DEVICE_INFO_COMMAND = ("hdmcli", "--show-device-info")

Runner = Callable[[Sequence[str]], str]

_MEM_TOTAL_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*vram Total Memory \(B\):\s*(\d+)")
_MEM_USED_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*vram Total Used Memory \(B\):\s*(\d+)")
_PRODUCT_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*Card series:\s*(\S+)")
_BUS_RE = re.compile(r"DCU\[(\d+)\]\s*:\s*PCI Bus:\s*(\S+)")
_ACTUAL_DEVICE_RE = re.compile(r"\s*Actual Device:\s*(\d+)")
_COMPUTE_UNITS_RE = re.compile(r"\s*Compute units:\s*(\d+)")
_DCU_ID_RE = re.compile(r"DCU-([+-]?\d+)")


@dataclass
class ContainerDevice:
    """A device the scheduler assigned to a container."""

    uuid: str
    type: str = ""
    usedmem: int = 0
    usedcores: int = 0


@dataclass(frozen=True)
class FakeDevice:
    """One schedulable share of a physical device, as listed to the kubelet."""

    id: str
    health: str = HEALTHY


@dataclass(frozen=True)
class DeviceSpec:
    """A device node to expose inside a container."""

    host_path: str
    container_path: str
    permissions: str


def _dcu_lines(output: str) -> Iterable[str]:
    return (line.strip() for line in output.splitlines() if "DCU[" in line)


def _match(regex: re.Pattern[str], line: str) -> re.Match[str]:
    found = regex.match(line)
    if found is None:
        raise ValueError(f"unexpected line: {line!r}")
    return found


def parse_meminfo(output: str) -> dict[int, int]:
    """Return the total memory in MiB of each device from ``hy-smi --showmeminfo``.

    Lines alternate between total and used memory.
    """
    totals: dict[int, int] = {}
    for position, line in enumerate(_dcu_lines(output)):
        if position % 2 == 0:
            found = _match(_MEM_TOTAL_RE, line)
            totals[int(found.group(1))] = int(found.group(2)) // 1024 // 1024
        else:
            _match(_MEM_USED_RE, line)
    return totals


def parse_product(output: str) -> dict[int, str]:
    """Return the card type of each device from ``hy-smi --showproduct``."""
    types: dict[int, str] = {}
    for position, line in enumerate(_dcu_lines(output)):
        if position % 2 == 0:
            found = _match(_PRODUCT_RE, line)
            types[int(found.group(1))] = f"DCU-{found.group(2)}"
    return types


def parse_bus(output: str) -> dict[int, str]:
    """Return the PCI bus id of each device from ``hy-smi --showbus``."""
    buses: dict[int, str] = {}
    for line in _dcu_lines(output):
        found = _match(_BUS_RE, line)
        buses[int(found.group(1))] = found.group(2)
    return buses


def parse_device_info(output: str) -> dict[int, int]:
    """Return the compute unit count of each device from ``hdmcli --show-device-info``."""
    cores: dict[int, int] = {}
    idx = 0
    for line in output.splitlines():
        if "Actual Device:" in line:
            idx = int(_match(_ACTUAL_DEVICE_RE, line).group(1))
        elif "Compute units:" in line:
            cores[idx] = int(_match(_COMPUTE_UNITS_RE, line).group(1))
    return cores


def _atoi(text: str) -> int:
    try:
        return int(text, 10)
    except ValueError:
        return 0


def get_index_from_uuid(uid: str) -> int:
    """Return the device index of a ``DCU-<n>`` id, or 0 if it has none."""
    return _atoi(uid[4:])


def _dcu_number(uid: str) -> int:
    found = _DCU_ID_RE.match(uid)
    return int(found.group(1)) if found else 0


def _run_command(argv: Sequence[str]) -> str:
    return subprocess.run(
        list(argv),
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    ).stdout


def _check_index(idx: int) -> int:
    if not 0 <= idx < MAX_DEVICES:
        raise ValueError(f"device index {idx} out of range")
    return idx


@dataclass
class DcuPlugin:
    """Per-node bookkeeping of DCUs, compute-unit masks and virtual devices."""

    vdev_root: str = VDEV_ROOT
    hygon_path: str = field(default_factory=lambda: os.environ.get("HYGONPATH", ""))
    pcibusid: list[str] = field(default_factory=lambda: [""] * MAX_DEVICES)
    totalcores: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    totalmem: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    cardtype: list[str] = field(default_factory=lambda: [""] * MAX_DEVICES)
    coremask: list[str] = field(default_factory=lambda: [""] * MAX_DEVICES)
    vidx: list[bool] = field(default_factory=lambda: [False] * MAX_VDEVS)
    pipeid: list[list[bool]] = field(
        default_factory=lambda: [[False] * MAX_PIPES for _ in range(MAX_DEVICES)]
    )

    def load(self, runner: Runner | None = None) -> None:
        """Query the vendor tools and fill in the device tables.

        ``runner`` takes an argument vector and returns the command's output;
        by default the commands are run as subprocesses.
        """
        run = _run_command if runner is None else runner
        for idx, mem in parse_meminfo(run(MEMINFO_COMMAND)).items():
            self.totalmem[_check_index(idx)] = mem
        for idx, cardtype in parse_product(run(PRODUCT_COMMAND)).items():
            self.cardtype[_check_index(idx)] = cardtype
        for idx, bus in parse_bus(run(BUS_COMMAND)).items():
            self.pcibusid[_check_index(idx)] = bus
        log.info("collecting pcibus=%s", self.pcibusid)
        for idx, cores in parse_device_info(run(DEVICE_INFO_COMMAND)).items():
            self.totalcores[_check_index(idx)] = cores
        log.info("collecting pcibus=%s cores=%s", self.pcibusid, self.totalcores)
        self.coremask = [init_core_usage(cores) for cores in self.totalcores]

    def api_devices(self) -> list[DeviceInfo]:
        """Describe every device that reports memory."""
        return [
            DeviceInfo(
                index=idx,
                id=f"DCU-{idx}",
                count=FAKE_DEVICES_PER_CARD,
                devmem=mem,
                devcore=DEVICE_CORES,
                type=self.cardtype[idx],
                numa=0,
                health=True,
            )
            for idx, mem in enumerate(self.totalmem)
            if mem > 0
        ]

    def generate_fake_devs(self, devices: Iterable[DeviceInfo]) -> list[FakeDevice]:
        """List one schedulable share per unit of each device's count."""
        return [
            FakeDevice(id=f"{dev.id}-fake-{i}", health=HEALTHY)
            for dev in devices
            for i in range(dev.count)
        ]

    def allocate_vidx(self) -> int:
        """Reserve the first free virtual device index."""
        for idx, taken in enumerate(self.vidx):
            if not taken:
                self.vidx[idx] = True
                return idx
        raise RuntimeError(f"vidx out of bound (>{MAX_VDEVS})")

    def allocate_pipe_id(self, devidx: int) -> int:
        """Reserve the first free pipe of device ``devidx``."""
        pipes = self.pipeid[devidx]
        for idx, taken in enumerate(pipes):
            if not taken:
                pipes[idx] = True
                return idx
        raise RuntimeError(f"pipidx out of bound:{devidx}")

    def refresh_container_devices(self, pod_uids: Iterable[str]) -> None:
        """Rebuild masks and reservations from the vdev directories on disk.

        Directories of pods not in ``pod_uids`` are released and removed.
        """
        names = sorted(os.listdir(self.vdev_root))
        uids = list(pod_uids)
        self.coremask = [init_core_usage(cores) for cores in self.totalcores]
        for name in names:
            parts = name.split("_")
            if len(parts) < 6:
                log.warning("ignoring malformed vdev directory %s", name)
                continue
            didx, pid, vdidx = (_atoi(part) for part in parts[2:5])
            if any(uid in name for uid in uids):
                self.coremask[didx] = add_core_usage(self.coremask[didx], parts[5])
                self.vidx[vdidx] = True
                self.pipeid[didx][pid] = True
            else:
                self.vidx[vdidx] = False
                self.pipeid[didx][pid] = False
                shutil.rmtree(os.path.join(self.vdev_root, name), ignore_errors=True)
            log.debug("vdev directory %s", name)
        log.debug("coremask=%s", self.coremask)

    def create_vdev_file(
        self, pod_uid: str, container_name: str, devices: Sequence[ContainerDevice]
    ) -> str | None:
        """Write the vdev configuration of a container and return its directory.

        Returns None when the container uses several whole devices, which
        need no vdev; raises ValueError if such devices ask for a share.
        """
        if len(devices) > 1:
            if any(dev.usedcores > 0 or dev.usedmem > 0 for dev in devices):
                log.error("vdev only support one device per container")
                raise ValueError("vdev only support one device per container")
            return None
        text = ""
        devidx = pipeid = vdevidx = 0
        coremsk = ""
        for dev in devices:
            if not dev.uuid:
                continue
            idx = get_index_from_uuid(dev.uuid)
            reqcores = (dev.usedcores * self.totalcores[idx]) // 100
            coremsk = alloc_core_usage(self.coremask[idx], reqcores)
            devidx = idx
            vdevidx = self.allocate_vidx()
            pipeid = self.allocate_pipe_id(idx)
            text = (
                f"PciBusId: {self.pcibusid[idx]}\n"
                f"cu_mask: 0x{coremsk}\n"
                f"cu_count: {self.totalcores[idx]}\n"
                f"mem: {dev.usedmem} MiB\n"
                "device_id: 0\n"
                f"vdev_id: {vdevidx}\n"
                f"pipe_id: {pipeid}\n"
                "enable: 1\n"
            )
        dirname = os.path.join(
            self.vdev_root,
            f"{pod_uid}_{container_name}_{devidx}_{pipeid}_{vdevidx}_{coremsk}",
        )
        os.makedirs(dirname, 0o777, exist_ok=True)
        os.chmod(dirname, 0o777)
        with open(os.path.join(dirname, VDEV_CONFIG_NAME), "w", encoding="utf-8") as fh:
            fh.write(text)
        return dirname

    def device_specs(self, devices: Iterable[ContainerDevice]) -> list[DeviceSpec]:
        """Device nodes a container needs for the given devices."""
        specs = [
            DeviceSpec("/dev/kfd", "/dev/kfd", "rwm"),
            DeviceSpec("/dev/mkfd", "/dev/mkfd", "rwm"),
        ]
        for dev in devices:
            log.info("Allocating device ID: %s", dev.uuid)
            number = _dcu_number(dev.uuid)
            card = f"/dev/dri/card{number}"
            render = f"/dev/dri/renderD{number + 128}"
            specs.append(DeviceSpec(card, card, "rw"))
            specs.append(DeviceSpec(render, render, "rw"))
        return specs