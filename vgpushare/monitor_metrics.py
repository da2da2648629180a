"""Per-container metrics gathered from the shared regions."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from vgpushare.pathmonitor import Pod, PodUsage
from vgpushare.sharedregion import DeviceMemory, MappedRegion, SharedRegion

log = logging.getLogger(__name__)

ZONE = "vGPU"

USAGE_METRIC = "vGPU_device_memory_usage_in_bytes"
LIMIT_METRIC = "vGPU_device_memory_limit_in_bytes"
DESC_METRIC = "Device_memory_desc_of_container"

_HELP = {
    "HostGPUMemoryUsage": "GPU device memory usage",
    "HostCoreUtilization": "GPU core utilization",
    USAGE_METRIC: "vGPU device usage",
    LIMIT_METRIC: "vGPU device limit",
    DESC_METRIC: "Container device meory description",
}


@dataclass
class Sample:
    """One metric sample."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    kind: str = "gauge"


def parse_id_str(idstr: str) -> tuple[str, str]:
    """Split a container directory name into pod UID and container name."""
    parts = idstr.split("_")
    if len(parts) < 2:
        raise ValueError("parse error")
    return parts[0], parts[1]


def _region(sr) -> SharedRegion:
    return sr.snapshot() if isinstance(sr, MappedRegion) else sr


def _sum_usage(region: SharedRegion, vidx: int) -> DeviceMemory:
    used = [proc.used[vidx] for proc in region.procs]
    return DeviceMemory(
        context_size=sum(m.context_size for m in used),
        module_size=sum(m.module_size for m in used),
        buffer_size=sum(m.buffer_size for m in used),
        offset=sum(m.offset for m in used),
        total=sum(m.total for m in used),
    )


def total_usage(usage: PodUsage, vidx: int) -> DeviceMemory:
    """Sum the memory held on virtual device ``vidx`` over all process slots."""
    return _sum_usage(_region(usage.sr), vidx)


def _uuid_label(raw: bytes) -> str:
    return raw[:40].split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def container_samples(
    usages: Mapping[str, PodUsage], pods: Iterable[Pod]
) -> list[Sample]:
    """Build the memory samples of every container that has a shared region."""
    samples: list[Sample] = []
    regions = {
        key: (parse_id_str(usage.idstr), _region(usage.sr))
        for key, usage in usages.items()
        if usage.sr is not None
    }
    for pod in pods:
        for (pod_uid, ctr_name), region in regions.values():
            if pod.uid != pod_uid:
                continue
            for ctr in pod.containers:
                if ctr != ctr_name:
                    continue
                for i in range(region.num):
                    value = _sum_usage(region, i)
                    base = {
                        "podnamespace": pod.namespace,
                        "podname": pod.name,
                        "ctrname": ctr_name,
                        "vdeviceid": str(i),
                        "deviceuuid": _uuid_label(region.uuids[i]),
                        "zone": ZONE,
                    }
                    samples.append(Sample(USAGE_METRIC, dict(base), float(value.total)))
                    samples.append(Sample(LIMIT_METRIC, dict(base), float(region.limit[i])))
                    samples.append(
                        Sample(
                            DESC_METRIC,
                            {
                                **base,
                                "context": str(value.context_size),
                                "module": str(value.module_size),
                                "data": str(value.buffer_size),
                                "offset": str(value.offset),
                            },
                            float(value.total),
                            kind="counter",
                        )
                    )
    return samples


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(float(value))


def render_samples(samples: Iterable[Sample]) -> str:
    """Render samples in the Prometheus text exposition format."""
    grouped: dict[str, list[Sample]] = {}
    for sample in samples:
        grouped.setdefault(sample.name, []).append(sample)
    lines: list[str] = []
    for name, group in grouped.items():
        lines.append(f"# HELP {name} {_HELP.get(name, name)}")
        lines.append(f"# TYPE {name} {group[0].kind}")
        for sample in group:
            labels = ",".join(
                f'{key}="{_escape(val)}"' for key, val in sorted(sample.labels.items())
            )
            prefix = f"{name}{{{labels}}}" if labels else name
            lines.append(f"{prefix} {_format_value(sample.value)}")
    return "".join(line + "\n" for line in lines)