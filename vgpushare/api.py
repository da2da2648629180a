"""Device descriptions exchanged between device plugins and the scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

TASK_PRIORITY = "CUDA_TASK_PRIORITY"
CORE_LIMIT_SWITCH = "GPU_CORE_UTILIZATION_POLICY"


@dataclass
class DeviceInfo:
    """A physical device as reported by a node's device plugin."""

    index: int = 0
    id: str = ""
    count: int = 0
    devmem: int = 0
    devcore: int = 0
    type: str = ""
    numa: int = 0
    health: bool = False

    def as_dict(self) -> dict[str, Any]:
        """Return the device using the field names of the wire encoding."""
        return {
            "Index": self.index,
            "Id": self.id,
            "Count": self.count,
            "Devmem": self.devmem,
            "Devcore": self.devcore,
            "Type": self.type,
            "Numa": self.numa,
            "Health": self.health,
        }