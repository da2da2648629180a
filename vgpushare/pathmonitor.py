"""Discovery of the per-container shared regions under the hook directory."""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

from vgpushare.sharedregion import MappedRegion, map_cache_file

log = logging.getLogger(__name__)

STALE_AFTER_SECONDS = 300.0

_lock = threading.Lock()


@dataclass
class Pod:
    """The parts of a cluster pod the monitor looks at."""

    uid: str
    name: str = ""
    namespace: str = ""
    containers: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class PodUsage:
    """A container directory and the shared region found in it."""

    idstr: str
    sr: Any = None


def container_path_from_env(environ: Mapping[str, str] | None = None) -> str | None:
    """Return the containers directory below HOOK_PATH, or None if it is unset."""
    env = os.environ if environ is None else environ
    hook_path = env.get("HOOK_PATH")
    if hook_path is None:
        return None
    return os.path.join(hook_path, "containers")


def check_files(fpath: str) -> MappedRegion | None:
    """Map the cache file of one container directory.

    Returns None when the directory holds no usable cache file.
    Raises ValueError when it holds more files than expected.
    """
    log.info("Checking path %s", fpath)
    names = sorted(os.listdir(fpath))
    if len(names) > 2:
        raise ValueError("cache num not matched")
    for name in names:
        if "libvgpu.so" in name or ".cache" not in name:
            continue
        cachefile = f"{fpath}/{name}"
        try:
            region = map_cache_file(cachefile)
        except (OSError, ValueError) as exc:
            log.error("mapping %s failed: %s", cachefile, exc)
            continue
        log.info(
            "mapped %s with utilization_switch=%d, recent_kernel=%d, priority=%d",
            cachefile,
            region.utilization_switch,
            region.recent_kernel,
            region.priority,
        )
        return region
    return None


def is_valid_pod(name: str, pods: Iterable[Pod]) -> bool:
    """Tell whether ``name`` contains the UID of one of ``pods``."""
    return any(pod.uid in name for pod in pods)


def _release(usage: PodUsage | None) -> None:
    if usage is not None and isinstance(usage.sr, MappedRegion):
        usage.sr.close()


def monitor_path(
    container_path: str,
    podmap: MutableMapping[str, PodUsage],
    pods: Iterable[Pod],
    now: float | None = None,
) -> None:
    """Bring ``podmap`` in line with the container directories on disk.

    Directories of pods that no longer exist are removed once they are older
    than STALE_AFTER_SECONDS; new directories of live pods are mapped.
    """
    current = time.time() if now is None else now
    pods = list(pods)
    with _lock:
        for name in sorted(os.listdir(container_path)):
            dirname = f"{container_path}/{name}"
            try:
                info = os.stat(dirname)
            except OSError as exc:
                log.error("stat %s failed: %s", dirname, exc)
                continue
            if not is_valid_pod(name, pods):
                if info.st_mtime + STALE_AFTER_SECONDS < current:
                    log.info("Removing dirname %s in monitor_path", dirname)
                    _release(podmap.pop(dirname, None))
                    if os.path.isdir(dirname):
                        shutil.rmtree(dirname)
                    else:
                        os.remove(dirname)
                continue
            if dirname in podmap:
                continue
            log.info("Adding ctr dirname %s in monitor_path", dirname)
            region = check_files(dirname)
            if region is None:
                # the container has not used the GPU yet
                continue
            podmap[dirname] = PodUsage(idstr=name, sr=region)