"""Priority feedback: turn the utilization switch of shared regions on and off."""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping, MutableMapping

from vgpushare.pathmonitor import PodUsage

log = logging.getLogger(__name__)

KUBELET_CONFIG = "/hostvar/lib/kubelet/config.yaml"


class CgroupDriver(enum.IntEnum):
    """The cgroup driver the kubelet is configured with."""

    UNKNOWN = 0
    CGROUPFS = 1
    SYSTEMD = 2


def detect_cgroup_driver(config_path: str = KUBELET_CONFIG) -> CgroupDriver:
    """Read the kubelet configuration and tell which cgroup driver it uses."""
    try:
        with open(config_path, encoding="utf-8", errors="replace") as fh:
            content = fh.read()
    except OSError:
        return CgroupDriver.UNKNOWN
    if "cgroupDriver:" not in content:
        return CgroupDriver.UNKNOWN
    if "systemd" in content:
        return CgroupDriver.SYSTEMD
    if "cgroupfs" in content:
        return CgroupDriver.CGROUPFS
    return CgroupDriver.UNKNOWN


def task_file_path(
    driver: CgroupDriver, qos: str, pod_uid: str, container_id: str
) -> str:
    """Return the cgroup tasks file that lists a container's host pids."""
    qos = qos.lower()
    ctr = container_id.removeprefix("docker://")
    if driver == CgroupDriver.CGROUPFS:
        return f"/sysinfo/fs/cgroup/memory/kubepods/{qos}/pod{pod_uid}/{ctr}/tasks"
    if driver == CgroupDriver.SYSTEMD:
        cgroup_uid = pod_uid.replace("-", "_")
        return (
            "/sysinfo/fs/cgroup/systemd/kubepods.slice/"
            f"kubepods-{qos}.slice/kubepods-{qos}-pod{cgroup_uid}.slice/"
            f"docker-{ctr}.scope/tasks"
        )
    raise ValueError("can not identify cgroup driver")


def check_blocking(
    util_switch_on: Mapping[str, list[int]], priority: int, usage: PodUsage
) -> bool:
    """Tell whether a task of higher priority is running on the usage's device."""
    for uuid in usage.sr.device_uuids():
        counts = util_switch_on.get(uuid)
        if counts is not None:
            return any(count > 0 for count in counts[:priority])
    return False


def check_priority(
    util_switch_on: Mapping[str, list[int]], priority: int, usage: PodUsage
) -> bool:
    """Tell whether a higher priority task, or another task of the same
    priority, is running on one of the usage's devices."""
    for uuid in usage.sr.device_uuids():
        counts = util_switch_on.get(uuid)
        if counts is None:
            continue
        if any(count > 0 for count in counts[:priority]):
            return True
        if counts[priority] > 1:
            return True
    return False


def observe(usages: MutableMapping[str, PodUsage]) -> dict[str, list[int]]:
    """Update the blocking and utilization flags of every shared region.

    Returns the number of recently active tasks per device and priority.
    """
    util_switch_on: dict[str, list[int]] = {}
    for usage in usages.values():
        sr = usage.sr
        if sr is None or sr.recent_kernel <= 0:
            continue
        sr.recent_kernel -= 1
        if sr.recent_kernel > 0:
            for uuid in sr.device_uuids():
                util_switch_on.setdefault(uuid, [0, 0])[sr.priority] += 1

    for key, usage in usages.items():
        sr = usage.sr
        if sr is None:
            continue
        priority = sr.priority
        if check_blocking(util_switch_on, priority, usage):
            if sr.recent_kernel >= 0:
                log.info("util_switch_on=%s", util_switch_on)
                log.info("Setting blocking on for %s", key)
                sr.recent_kernel = -1
        elif sr.recent_kernel < 0:
            log.info("util_switch_on=%s", util_switch_on)
            log.info("Setting blocking off for %s", key)
            sr.recent_kernel = 0
        if check_priority(util_switch_on, priority, usage):
            if sr.utilization_switch != 1:
                log.info("util_switch_on=%s", util_switch_on)
                log.info("Setting utilization switch on for %s", key)
                sr.utilization_switch = 1
        elif sr.utilization_switch != 0:
            log.info("util_switch_on=%s", util_switch_on)
            log.info("Setting utilization switch off for %s", key)
            sr.utilization_switch = 0
    return util_switch_on