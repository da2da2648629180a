"""Layout of the per-container shared memory region written by the CUDA hook."""

from __future__ import annotations

import mmap
import os
import struct
from dataclasses import dataclass, field

MAGIC = 19920718
MAX_DEVICES = 16
MAX_PROCS = 1024
UUID_LEN = 96

_DEVICE_MEMORY_FIELDS = 5
_HEADER = struct.Struct("<iiI32s4xQ")
_UUIDS_OFFSET = _HEADER.size
_UUIDS_SIZE = MAX_DEVICES * UUID_LEN
_ARRAY = struct.Struct(f"<{MAX_DEVICES}Q")
_LIMIT_OFFSET = _UUIDS_OFFSET + _UUIDS_SIZE
_SM_LIMIT_OFFSET = _LIMIT_OFFSET + _ARRAY.size
_PROCS_OFFSET = _SM_LIMIT_OFFSET + _ARRAY.size
_PROC = struct.Struct(
    f"<ii{MAX_DEVICES * _DEVICE_MEMORY_FIELDS}Q{MAX_DEVICES}Qi4x"
)
_TAIL_OFFSET = _PROCS_OFFSET + MAX_PROCS * _PROC.size
_TAIL = struct.Struct("<4i")
_INT32 = struct.Struct("<i")

_PROCNUM_OFFSET = _TAIL_OFFSET
_UTILIZATION_SWITCH_OFFSET = _TAIL_OFFSET + 4
_RECENT_KERNEL_OFFSET = _TAIL_OFFSET + 8
_PRIORITY_OFFSET = _TAIL_OFFSET + 12

SHARED_REGION_SIZE = (_TAIL_OFFSET + _TAIL.size + 7) // 8 * 8


@dataclass(frozen=True)
class DeviceMemory:
    """Memory a process holds on one device, by kind."""

    context_size: int = 0
    module_size: int = 0
    buffer_size: int = 0
    offset: int = 0
    total: int = 0


def _empty_used() -> list[DeviceMemory]:
    return [DeviceMemory() for _ in range(MAX_DEVICES)]


@dataclass
class ProcSlot:
    """One process slot of the shared region."""

    pid: int = 0
    hostpid: int = 0
    used: list[DeviceMemory] = field(default_factory=_empty_used)
    monitorused: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    status: int = 0

    @classmethod
    def _unpack(cls, values: tuple) -> ProcSlot:
        pid, hostpid = values[0], values[1]
        flat_end = 2 + MAX_DEVICES * _DEVICE_MEMORY_FIELDS
        flat = values[2:flat_end]
        used = [
            DeviceMemory(*flat[start : start + _DEVICE_MEMORY_FIELDS])
            for start in range(0, len(flat), _DEVICE_MEMORY_FIELDS)
        ]
        monitorused = list(values[flat_end : flat_end + MAX_DEVICES])
        return cls(pid, hostpid, used, monitorused, values[-1])

    def _pack(self) -> bytes:
        flat = [
            value
            for mem in self.used
            for value in (
                mem.context_size,
                mem.module_size,
                mem.buffer_size,
                mem.offset,
                mem.total,
            )
        ]
        return _PROC.pack(self.pid, self.hostpid, *flat, *self.monitorused, self.status)


def _uuid_string(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


@dataclass
class SharedRegion:
    """A decoded copy of the shared region."""

    initialized_flag: int = 0
    sm_init_flag: int = 0
    owner_pid: int = 0
    sem: bytes = bytes(32)
    num: int = 0
    uuids: list[bytes] = field(
        default_factory=lambda: [bytes(UUID_LEN) for _ in range(MAX_DEVICES)]
    )
    limit: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    sm_limit: list[int] = field(default_factory=lambda: [0] * MAX_DEVICES)
    procs: list[ProcSlot] = field(
        default_factory=lambda: [ProcSlot() for _ in range(MAX_PROCS)]
    )
    procnum: int = 0
    utilization_switch: int = 0
    recent_kernel: int = 0
    priority: int = 0

    def device_used_memory(self, idx: int) -> int:
        """Total memory used on device ``idx`` by all process slots."""
        if not 0 <= idx < MAX_DEVICES:
            raise ValueError("out of device idx")
        return sum(proc.used[idx].total for proc in self.procs)

    def device_uuids(self) -> list[str]:
        """UUIDs of the devices whose slot is filled in."""
        return [_uuid_string(raw) for raw in self.uuids if raw[:1] not in (b"", b"\x00")]

    def to_bytes(self) -> bytes:
        """Encode the region in its shared memory layout."""
        out = bytearray(SHARED_REGION_SIZE)
        _HEADER.pack_into(
            out, 0, self.initialized_flag, self.sm_init_flag, self.owner_pid, self.sem, self.num
        )
        uuids = b"".join(raw[:UUID_LEN].ljust(UUID_LEN, b"\x00") for raw in self.uuids)
        out[_UUIDS_OFFSET : _UUIDS_OFFSET + _UUIDS_SIZE] = uuids
        _ARRAY.pack_into(out, _LIMIT_OFFSET, *self.limit)
        _ARRAY.pack_into(out, _SM_LIMIT_OFFSET, *self.sm_limit)
        out[_PROCS_OFFSET:_TAIL_OFFSET] = b"".join(proc._pack() for proc in self.procs)
        _TAIL.pack_into(
            out,
            _TAIL_OFFSET,
            self.procnum,
            self.utilization_switch,
            self.recent_kernel,
            self.priority,
        )
        return bytes(out)


def parse_shared_region(data) -> SharedRegion:
    """Decode a shared region from a buffer of at least SHARED_REGION_SIZE bytes."""
    if len(data) < SHARED_REGION_SIZE:
        raise ValueError(
            f"shared region needs {SHARED_REGION_SIZE} bytes, got {len(data)}"
        )
    initialized_flag, sm_init_flag, owner_pid, sem, num = _HEADER.unpack_from(data, 0)
    raw_uuids = bytes(data[_UUIDS_OFFSET : _UUIDS_OFFSET + _UUIDS_SIZE])
    uuids = [raw_uuids[start : start + UUID_LEN] for start in range(0, _UUIDS_SIZE, UUID_LEN)]
    procs = [
        ProcSlot._unpack(_PROC.unpack_from(data, offset))
        for offset in range(_PROCS_OFFSET, _TAIL_OFFSET, _PROC.size)
    ]
    procnum, utilization_switch, recent_kernel, priority = _TAIL.unpack_from(
        data, _TAIL_OFFSET
    )
    return SharedRegion(
        initialized_flag=initialized_flag,
        sm_init_flag=sm_init_flag,
        owner_pid=owner_pid,
        sem=sem,
        num=num,
        uuids=uuids,
        limit=list(_ARRAY.unpack_from(data, _LIMIT_OFFSET)),
        sm_limit=list(_ARRAY.unpack_from(data, _SM_LIMIT_OFFSET)),
        procs=procs,
        procnum=procnum,
        utilization_switch=utilization_switch,
        recent_kernel=recent_kernel,
        priority=priority,
    )


class MappedRegion:
    """A live shared region mapped from a cache file.

    The scheduling fields are read from and written to the mapping directly,
    so the hooked processes see changes at once.
    """

    def __init__(self, mapping: mmap.mmap, path: str) -> None:
        self._mm = mapping
        self.path = path

    def __enter__(self) -> MappedRegion:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Unmap the region."""
        if not self._mm.closed:
            self._mm.close()

    def snapshot(self) -> SharedRegion:
        """Decode the current contents of the mapping."""
        return parse_shared_region(self._mm)

    def _read_int(self, offset: int) -> int:
        return _INT32.unpack_from(self._mm, offset)[0]

    def _write_int(self, offset: int, value: int) -> None:
        _INT32.pack_into(self._mm, offset, value)

    @property
    def num(self) -> int:
        return _HEADER.unpack_from(self._mm, 0)[4]

    @property
    def procnum(self) -> int:
        return self._read_int(_PROCNUM_OFFSET)

    @property
    def utilization_switch(self) -> int:
        return self._read_int(_UTILIZATION_SWITCH_OFFSET)

    @utilization_switch.setter
    def utilization_switch(self, value: int) -> None:
        self._write_int(_UTILIZATION_SWITCH_OFFSET, value)

    @property
    def recent_kernel(self) -> int:
        return self._read_int(_RECENT_KERNEL_OFFSET)

    @recent_kernel.setter
    def recent_kernel(self, value: int) -> None:
        self._write_int(_RECENT_KERNEL_OFFSET, value)

    @property
    def priority(self) -> int:
        return self._read_int(_PRIORITY_OFFSET)

    def device_uuids(self) -> list[str]:
        """UUIDs of the devices whose slot is filled in."""
        raw = self._mm[_UUIDS_OFFSET : _UUIDS_OFFSET + _UUIDS_SIZE]
        slots = (raw[start : start + UUID_LEN] for start in range(0, _UUIDS_SIZE, UUID_LEN))
        return [_uuid_string(slot) for slot in slots if slot[0] != 0]


def map_cache_file(path: str) -> MappedRegion:
    """Map the shared region stored in the cache file at ``path``."""
    with open(path, "r+b") as fh:
        size = os.fstat(fh.fileno()).st_size
        if size < SHARED_REGION_SIZE:
            raise ValueError(
                f"{path}: cache file holds {size} bytes, need {SHARED_REGION_SIZE}"
            )
        mapping = mmap.mmap(fh.fileno(), SHARED_REGION_SIZE, access=mmap.ACCESS_WRITE)
    return MappedRegion(mapping, path)