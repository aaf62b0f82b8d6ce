"""Prefix Resolver: IPv4 prefix and Border Relay lookups."""

from __future__ import annotations

import logging
from ipaddress import IPv6Address
from typing import Mapping, Optional, Sequence, Tuple

from .exceptions import UnknownPrefix, UnrecognizedPrefix
from .tables import BORDER_RELAYS, IPV4_PREFIXES, BorderRelayRange

LOG = logging.getLogger(__name__)


def prefix31(segment0: int, segment1: int) -> int:
    """Concatenate two segments and clear the least-significant bit."""

    return (segment0 << 16) | (segment1 & 0xFFFE)


def resolve_ipv4_prefix(
    segment0: int,
    segment1: int,
    table: Optional[Mapping[Tuple[int, int], Tuple[int, int]]] = None,
) -> Tuple[int, int]:
    """Return the two leading IPv4 octets provisioned for the segments."""

    table = IPV4_PREFIXES if table is None else table
    try:
        return table[(segment0, segment1)]
    except KeyError:
        raise UnknownPrefix(segment0, segment1) from None


def find_border_relay(
    segment0: int,
    segment1: int,
    ranges: Optional[Sequence[BorderRelayRange]] = None,
) -> BorderRelayRange:
    ranges = BORDER_RELAYS if ranges is None else ranges
    value = prefix31(segment0, segment1)
    entry = next((r for r in ranges if value in r), None)
    if entry is None:
        raise UnrecognizedPrefix(value)
    return entry


def resolve_border_relay(
    segment0: int,
    segment1: int,
    ranges: Optional[Sequence[BorderRelayRange]] = None,
) -> IPv6Address:
    """Return the BR address serving the /31-aligned prefix."""

    entry = find_border_relay(segment0, segment1, ranges)
    LOG.debug(
        "Prefix %x:%x served by %s border relay %s",
        segment0,
        segment1,
        entry.provider,
        entry.address,
    )
    return entry.address
