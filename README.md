# vgpushare

`vgpushare` holds the node-side logic for sharing GPUs and Hygon DCUs between
containers: reading the shared memory regions in which containers report their
device usage, switching throttling flags in those regions by priority, turning
usage into Prometheus-format metrics, and handing out compute units, pipes and
virtual device numbers on a DCU.

It needs nothing beyond the Python standard library and supports Python 3.10
and later.

## Modules

| Module | Contents |
| --- | --- |
| `vgpushare.api` | `DeviceInfo`, one device a node reports; `as_dict()` gives it with the wire field names (`Index`, `Id`, `Count`, ...). Also the constants `TASK_PRIORITY` and `CORE_LIMIT_SWITCH`. |
| `vgpushare.validation` | `validate_env_vars(environ)` returns the known variables that are set and raises `MissingEnvironmentError` if `HOOK_PATH` is missing. |
| `vgpushare.corealloc` | Compute-unit masks as hex strings: `init_core_usage`, `add_core_usage`, `byte_alloc`, `alloc_core_usage`. |
| `vgpushare.sharedregion` | The shared region layout: `parse_shared_region`, `map_cache_file`, and `SharedRegion`, `ProcSlot`, `DeviceMemory`, `MappedRegion`. |
| `vgpushare.pathmonitor` | `Pod`, `PodUsage`, `container_path_from_env`, `check_files`, `is_valid_pod`, `monitor_path`. |
| `vgpushare.feedback` | `CgroupDriver`, `detect_cgroup_driver`, `task_file_path`, `check_blocking`, `check_priority`, `observe`. |
| `vgpushare.monitor_metrics` | `Sample`, `parse_id_str`, `total_usage`, `container_samples`, `render_samples`. |
| `vgpushare.amdgpu` | sysfs, debugfs and kfd topology readers: `family_id_to_string`, `get_amd_gpus`, `is_amd_gpu`, `parse_topology_properties`, `parse_debugfs_firmware_info`, `count_gpu_dev_from_topology`, `simple_health_check`. |
| `vgpushare.dcu` | `DcuPlugin` and the parsers of the vendor tool output (`parse_meminfo`, `parse_product`, `parse_bus`, `parse_device_info`), plus `get_index_from_uuid`, `ContainerDevice`, `FakeDevice`, `DeviceSpec`. |

## Compute-unit masks

A DCU's compute units are tracked as a hex string, one digit per four units.
`add_core_usage` ORs two masks digit by digit; `alloc_core_usage` takes the
requested number of free units, walking the digits from the left and, within a
digit, from the high bit down:

```python
from vgpushare.corealloc import init_core_usage, add_core_usage, alloc_core_usage

free = init_core_usage(60)
assert free == "000000000000000"

used = add_core_usage(free, "abcde000ad00012")
used = add_core_usage(used, "50200fff4000000")
assert used == "fbedefffed00012"

assert alloc_core_usage("50200fff4000000", 16) == "afdfe0000000000"
```

## Reading a container's shared region

`map_cache_file` maps a cache file (it raises `ValueError` if the file is
smaller than the region). The returned `MappedRegion` reads and writes the
scheduling fields (`utilization_switch`, `recent_kernel`) in place, and
`snapshot()` decodes the whole region into a `SharedRegion`:

```python
from vgpushare.sharedregion import map_cache_file

with map_cache_file("/usr/local/vgpu/containers/<pod-uid>_<container>/vgpu.cache") as region:
    shared = region.snapshot()
    for idx in range(shared.num):
        print(idx, shared.device_used_memory(idx))
```

## Monitoring containers

`monitor_path` scans the container directories below `$HOOK_PATH/containers`:
directories of live pods get their cache file mapped into the given dict, and
directories of pods not in the list are removed once older than 300 seconds.
`observe` then updates the blocking and utilization flags of every region, and
`container_samples` with `render_samples` produce metrics text:

```python
from vgpushare.feedback import observe
from vgpushare.monitor_metrics import container_samples, render_samples
from vgpushare.pathmonitor import Pod, container_path_from_env, monitor_path

pods = [Pod(uid="0f0e0d0c", name="trainer", namespace="default", containers=["main"])]
podmap = {}
monitor_path(container_path_from_env(), podmap, pods)
observe(podmap)
print(render_samples(container_samples(podmap, pods)))
```

## DCU plugin state

`DcuPlugin.load()` runs `hy-smi --showmeminfo vram`, `hy-smi --showproduct`,
`hy-smi --showbus` and `hdmcli --show-device-info` and fills in memory, card
type, PCI bus and compute units per device; pass a `runner` callable to supply
the output yourself. `create_vdev_file` allocates a compute-unit mask, virtual
device index and pipe for a container and writes its `vdev0.conf`;
`refresh_container_devices` rebuilds that state from the directories on disk;
`device_specs` lists the device nodes a container needs.

## What it does not do

The package does not talk to the cluster API, to NVML or to the kubelet. The
list of pods is passed in by the caller, and there is no metrics HTTP server,
no gRPC service, no device plugin server and no command-line entry point:
`render_samples` returns text for whatever server you put in front of it.

## Tests

The test suite uses pytest, listed in the `test` extra:

```
pip install -e .[test]
pytest
```