"""Static MAP-E provisioning data for the supported providers.

The two tables are maintained in lockstep: the IPv4 prefix table is keyed by
exact ``(segment0, segment1)`` pairs while the Border Relay table groups
several of those pairs into /31-aligned ranges that share one BR.  When a
provider adds a block, both tables have to be extended together.
"""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv6Address
from typing import Dict, Sequence, Tuple


@dataclass(frozen=True)
class BorderRelayRange:
    """Half-open range of /31-aligned prefix values served by one BR.

    Attributes
    ----------
    first:
        Lowest prefix value (inclusive) of the range.
    last:
        Upper bound (exclusive).  Each range spans 4 aligned values, i.e. a
        /30 worth of IPv6 prefixes.
    address:
        The Border Relay the tunnel has to be built towards.
    provider:
        Short label of the provider operating the BR, used in log messages.
    """

    first: int
    last: int
    address: IPv6Address
    provider: str

    def __contains__(self, prefix31: int) -> bool:
        return self.first <= prefix31 < self.last


OCN_BR_A = IPv6Address("2001:260:700:1::1:275")
OCN_BR_B = IPv6Address("2001:260:700:1::1:276")
V6PLUS_BR = IPv6Address("2404:9200:225:100::64")

IPV4_PREFIXES: Dict[Tuple[int, int], Tuple[int, int]] = {
    (0x2404, 0x7A80): (133, 200),
    (0x2404, 0x7A84): (133, 206),
    (0x240B, 0x0010): (106, 72),
    (0x240B, 0x0011): (106, 73),
    (0x240B, 0x0012): (14, 8),
    (0x240B, 0x0250): (14, 10),
    (0x240B, 0x0251): (14, 11),
    (0x240B, 0x0252): (14, 12),
    (0x240B, 0x0253): (14, 13),
}

BORDER_RELAYS: Sequence[BorderRelayRange] = (
    BorderRelayRange(0x24047A80, 0x24047A84, OCN_BR_A, "ocn"),
    BorderRelayRange(0x24047A84, 0x24047A88, OCN_BR_B, "ocn"),
    BorderRelayRange(0x240B0010, 0x240B0014, V6PLUS_BR, "v6plus"),
    BorderRelayRange(0x240B0250, 0x240B0254, V6PLUS_BR, "v6plus"),
)
