"""Port-set helpers: default MAP-E port ranges and "do not NAT" exclusions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from .exceptions import PortNotInRange

# 4-bit PSID, 4 excluded "a" bits and 16-port blocks.
BLOCK_COUNT = 15
BLOCK_SHIFT = 12
PSID_SHIFT = 4
BLOCK_WIDTH = 0x10


@dataclass(frozen=True)
class PortRange:
    """Inclusive ``start``-``end`` range of external ports."""

    start: int
    end: int

    def __contains__(self, port: int) -> bool:
        return self.start <= port <= self.end

    def __len__(self) -> int:
        return max(self.end - self.start + 1, 0)

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"

    def as_tuple(self) -> Tuple[int, int]:
        return self.start, self.end

    @property
    def empty(self) -> bool:
        return self.start > self.end


def default_port_ranges(psid: int) -> Tuple[PortRange, ...]:
    """Return the 15 port blocks owned by ``psid``.

    Block 0 (ports below 0x1000) is never assignable.
    """

    ranges = []
    for block in range(1, BLOCK_COUNT + 1):
        start = (block << BLOCK_SHIFT) + (psid << PSID_SHIFT)
        ranges.append(PortRange(start, start + BLOCK_WIDTH - 1))
    return tuple(ranges)


def _carve(port_range: PortRange, port: int) -> List[PortRange]:
    start, end = port_range.start, port_range.end
    if port == start:
        return [PortRange(start + 1, end)]
    if port == end:
        return [PortRange(start, end - 1)]
    if start < port < end:
        return [PortRange(start, port - 1), PortRange(port + 1, end)]
    return [port_range]


def exclude_port(
    ranges: Sequence[PortRange], port: int
) -> Tuple[Tuple[PortRange, ...], bool]:
    """Remove ``port`` from whichever range holds it.

    Returns the new sequence and whether anything changed.  Ranges that become
    empty are dropped; a split range keeps its two halves adjacent.
    """

    result: List[PortRange] = []
    changed = False
    for port_range in ranges:
        carved = _carve(port_range, port)
        if carved != [port_range]:
            changed = True
        result.extend(r for r in carved if not r.empty)
    return tuple(result), changed


def exclude_ports(
    ranges: Sequence[PortRange], ports: Iterable[int]
) -> Tuple[PortRange, ...]:
    """Apply :func:`exclude_port` for each port in order.

    Raises :class:`PortNotInRange` for the first port that is not covered by
    the ranges left by the preceding exclusions.
    """

    current = tuple(ranges)
    for port in ports:
        current, changed = exclude_port(current, port)
        if not changed:
            raise PortNotInRange(port)
    return current
