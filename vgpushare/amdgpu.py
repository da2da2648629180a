"""Discovery and inspection of DCU devices through sysfs, debugfs and kfd topology."""

from __future__ import annotations

import glob
import logging
import os
import re

log = logging.getLogger(__name__)

AMDGPU_FAMILY_SI = 110
AMDGPU_FAMILY_CI = 120
AMDGPU_FAMILY_KV = 125
AMDGPU_FAMILY_VI = 130
AMDGPU_FAMILY_CZ = 135
AMDGPU_FAMILY_AI = 141
AMDGPU_FAMILY_RV = 142
AMDGPU_FAMILY_NV = 143

FAMILY_NAMES: dict[int, str] = {
    AMDGPU_FAMILY_SI: "SI",
    AMDGPU_FAMILY_CI: "CI",
    AMDGPU_FAMILY_KV: "KV",
    AMDGPU_FAMILY_VI: "VI",
    AMDGPU_FAMILY_CZ: "CZ",
    AMDGPU_FAMILY_AI: "AI",
    AMDGPU_FAMILY_RV: "RV",
    AMDGPU_FAMILY_NV: "NV",
}

DCU_VENDOR_ID = "0x1d94"
DEFAULT_SYSFS_ROOT = "/sys"
DEFAULT_TOPOLOGY_ROOT = "/sys/class/kfd/kfd"
KFD_DEVICE = "/dev/kfd"

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

_FW_VERSION_RE = re.compile(
    r"(\w+) feature version: (\d+), firmware version: (0x[0-9a-fA-F]+)", re.ASCII
)
_TOPO_SIMD_RE = re.compile(r"simd_count\s(\d+)", re.ASCII)


def family_id_to_string(family_id: int) -> str:
    """Return the short name of an AMDGPU family id."""
    try:
        return FAMILY_NAMES[family_id]
    except KeyError:
        raise ValueError(f"Unknown Family ID: {family_id}") from None


def _atoi(text: str) -> int:
    try:
        return int(text, 10) if text.lstrip("+-").isdigit() else int("x")
    except ValueError:
        return 0


def get_amd_gpus(sysfs_root: str = DEFAULT_SYSFS_ROOT) -> dict[str, dict[str, int]]:
    """Map each DCU's PCI address to the minor numbers of its DRM nodes."""
    driver_dir = os.path.join(sysfs_root, "module", "hydcu", "drivers")
    if not os.path.exists(driver_dir):
        log.warning("DCU driver unavailable: %s does not exist", driver_dir)
        return {}
    pattern = os.path.join(
        glob.escape(os.path.join(driver_dir, "pci:hydcu")),
        "[0-9a-fA-F]" * 4 + ":*",
    )
    devices: dict[str, dict[str, int]] = {}
    for path in sorted(glob.glob(pattern)):
        log.info("%s", path)
        nodes: dict[str, int] = {}
        devices[os.path.basename(path)] = nodes
        for dev_path in sorted(glob.glob(os.path.join(glob.escape(path), "drm", "*"))):
            name = os.path.basename(dev_path)
            if name[:4] == "card":
                nodes["card"] = _atoi(name[4:])
            elif name[:7] == "renderD":
                nodes["renderD"] = _atoi(name[7:])
    return devices


def is_amd_gpu(card_name: str, sysfs_root: str = DEFAULT_SYSFS_ROOT) -> bool:
    """Tell whether a DRM card belongs to a DCU, judged by its vendor id."""
    vendor_path = os.path.join(sysfs_root, "class", "drm", card_name, "device", "vendor")
    try:
        with open(vendor_path, encoding="utf-8", errors="replace") as fh:
            vendor = fh.read().strip()
    except OSError as exc:
        log.error("Error opening %s: %s", vendor_path, exc)
        return False
    return vendor == DCU_VENDOR_ID


def _parse_int_auto(text: str) -> int:
    """Parse an integer whose base follows from its prefix (0x, 0o, 0b, leading 0)."""
    sign = 1
    body = text
    if body[:1] in "+-" and body:
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    lowered = body.lower()
    if lowered.startswith("0x"):
        base, digits = 16, body[2:]
    elif lowered.startswith("0o"):
        base, digits = 8, body[2:]
    elif lowered.startswith("0b"):
        base, digits = 2, body[2:]
    elif len(body) > 1 and body.startswith("0"):
        base, digits = 8, body[1:]
    else:
        base, digits = 10, body
    if not digits or not digits.isalnum():
        raise ValueError(f"invalid integer: {text!r}")
    return sign * int(digits, base)


def _clamp_int32(value: int) -> int:
    return max(_INT32_MIN, min(_INT32_MAX, value))


def parse_topology_properties(path: str, pattern: str | re.Pattern[str]) -> int:
    """Return the first value captured by ``pattern`` in a kfd topology file.

    Raises OSError if the file cannot be read and LookupError if no line matches.
    """
    regex = re.compile(pattern, re.ASCII) if isinstance(pattern, str) else pattern
    with open(path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            match = regex.search(line.rstrip("\r\n"))
            if match is not None:
                return _parse_int_auto(match.group(1))
    raise LookupError("Topology property not found.  Regex: " + regex.pattern)


def parse_debugfs_firmware_info(path: str) -> tuple[dict[str, int], dict[str, int]]:
    """Read feature and firmware versions from an amdgpu_firmware_info file."""
    feat: dict[str, int] = {}
    fw: dict[str, int] = {}
    log.info("Parsing %s", path)
    try:
        with open(path, encoding="utf-8", errors="replace") as fh:
            for line in fh:
                match = _FW_VERSION_RE.search(line)
                if match is None:
                    continue
                name = match.group(1)
                feat[name] = _clamp_int32(_parse_int_auto(match.group(2))) & 0xFFFFFFFF
                fw[name] = _clamp_int32(_parse_int_auto(match.group(3))) & 0xFFFFFFFF
    except OSError:
        log.error("Fail to open %s", path)
    return feat, fw


def count_gpu_dev_from_topology(topo_root: str = DEFAULT_TOPOLOGY_ROOT) -> int:
    """Count topology nodes that have SIMD units, i.e. GPU nodes."""
    pattern = os.path.join(glob.escape(topo_root), "topology", "nodes", "*", "properties")
    count = 0
    for node_file in sorted(glob.glob(pattern)):
        log.info("Parsing %s", node_file)
        try:
            with open(node_file, encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    match = _TOPO_SIMD_RE.search(line)
                    if match is not None and int(match.group(1)) > 0:
                        count += 1
                        break
        except OSError:
            continue
    return count


def simple_health_check(path: str = KFD_DEVICE) -> bool:
    """Tell whether the kfd device can be opened."""
    try:
        with open(path, "rb"):
            return True
    except OSError:
        log.error("Error opening %s", path)
        return False