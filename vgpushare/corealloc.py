"""Compute-unit masks for sharing a DCU between containers.

A mask is a string of hex digits; each set bit marks a compute unit in use.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

log = logging.getLogger(__name__)

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _nibble(ch: str) -> int:
    return int(ch, 16) if ch in _HEX_DIGITS else 0


def _digits(mask: str) -> Iterator[str]:
    for ch in mask:
        if ch == "\x00":
            return
        yield ch


def init_core_usage(req: int) -> str:
    """Return an empty mask covering ``req`` compute units."""
    return "0" * max(0, int(req / 4))


def add_core_usage(tot: str, c: str) -> str:
    """Merge mask ``c`` into mask ``tot`` and return the union."""
    digits = list(_digits(tot))
    if len(c) < len(digits):
        raise ValueError("core mask shorter than the total mask")
    res = "".join(f"{_nibble(a) | _nibble(b):x}" for a, b in zip(digits, c))
    log.debug("tot=%s c=%s res=%s", tot, c, res)
    return res


def byte_alloc(b: int, req: int) -> tuple[int, int]:
    """Take up to ``req`` free bits of nibble ``b``, high bit first.

    Returns the bits taken and how many are still wanted.
    """
    if req == 0:
        return 0, 0
    remains = req
    res = 0
    for bit in format(b, "04b"):
        res *= 2
        if bit == "0" and remains > 0:
            remains -= 1
            res += 1
    return res, remains


def alloc_core_usage(tot: str, req: int) -> str:
    """Return a mask of ``req`` compute units that are free in ``tot``."""
    parts = []
    remains = req
    for ch in _digits(tot):
        alloc, remains = byte_alloc(_nibble(ch), remains)
        parts.append(f"{alloc:x}")
    return "".join(parts)