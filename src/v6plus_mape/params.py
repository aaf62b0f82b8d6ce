"""MAP-E parameter derivation.

Turns a customer IPv6 address into the full set of values needed to bring up
an IPv4-over-IPv6 tunnel: the shared IPv4 address, the PSID, the CE and BR
IPv6 endpoints and the external port ranges the PSID owns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address
from typing import Iterable, Tuple, Union

from .exceptions import PortNotInRange
from .ports import PortRange, default_port_ranges, exclude_port, exclude_ports
from .resolver import resolve_border_relay, resolve_ipv4_prefix

LOG = logging.getLogger(__name__)

AddressLike = Union[IPv6Address, str, bytes]


@dataclass
class MapEParameters:
    """Derived MAP-E parameters for one customer address.

    Everything except ``port_ranges`` is fixed once derived.  Exclusions
    replace ``port_ranges`` with a new tuple rather than editing it in place.

    Attributes
    ----------
    source_address:
        The customer IPv6 address the parameters were derived from.
    ipv4_address:
        Shared public IPv4 address of the tunnel.
    border_relay_address:
        IPv6 endpoint the tunnel is built towards.
    edge_address:
        CE IPv6 address to bind on the WAN interface.
    psid:
        8-bit Port Set Identifier.
    port_ranges:
        Ordered inclusive external port ranges usable for NAT.
    """

    source_address: IPv6Address
    ipv4_address: IPv4Address
    border_relay_address: IPv6Address
    edge_address: IPv6Address
    psid: int
    port_ranges: Tuple[PortRange, ...]

    def exclude_port(self, port: int) -> None:
        """Carve ``port`` out of the port ranges.

        The ranges are left untouched when ``port`` is not covered.
        """

        _check_port(port)
        ranges, changed = exclude_port(self.port_ranges, port)
        if not changed:
            raise PortNotInRange(port)
        self.port_ranges = ranges
        LOG.debug("Excluded port %d, %d ranges left", port, len(ranges))

    def exclude_ports(self, ports: Iterable[int]) -> None:
        """Exclude several ports; either all of them or none are applied."""

        ports = list(ports)
        for port in ports:
            _check_port(port)
        self.port_ranges = exclude_ports(self.port_ranges, ports)
        if ports:
            LOG.debug(
                "Excluded ports %s, %d ranges left", ports, len(self.port_ranges)
            )

    def port_count(self) -> int:
        return sum(len(r) for r in self.port_ranges)


def _check_port(port: int) -> None:
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port {port} is outside 0-65535")


def _as_ipv6(address: AddressLike) -> IPv6Address:
    if isinstance(address, IPv6Address):
        return address
    return IPv6Address(address)


def psid_of(address: AddressLike) -> int:
    """The PSID is octet 6 of the customer address."""

    return _as_ipv6(address).packed[6]


def edge_address_for(
    address: AddressLike, ipv4_address: IPv4Address, psid: int
) -> IPv6Address:
    """Build the CE address the provider's BR expects.

    The interface identifier repeats IPv4 octets 2 and 3; this matches the
    BR's convention and must not be normalised.
    """

    segments = _segments(_as_ipv6(address))
    v4 = ipv4_address.packed
    packed = [
        segments[0],
        segments[1],
        (v4[2] << 8) | v4[3],
        psid << 8,
        v4[0],
        (v4[1] << 8) | v4[2],
        v4[3] << 8,
        psid << 8,
    ]
    return IPv6Address(b"".join(s.to_bytes(2, "big") for s in packed))


def _segments(address: IPv6Address) -> Tuple[int, ...]:
    packed = address.packed
    return tuple(
        int.from_bytes(packed[i:i + 2], "big") for i in range(0, 16, 2)
    )


def derive(address: AddressLike) -> MapEParameters:
    """Derive the complete :class:`MapEParameters` for ``address``.

    Raises :class:`~v6plus_mape.exceptions.UnknownPrefix` or
    :class:`~v6plus_mape.exceptions.UnrecognizedPrefix` when the address does
    not belong to a provisioned provider block.
    """

    source = _as_ipv6(address)
    segments = _segments(source)

    prefix = resolve_ipv4_prefix(segments[0], segments[1])
    border_relay = resolve_border_relay(segments[0], segments[1])

    octets = source.packed
    psid = octets[6]
    ipv4_address = IPv4Address(bytes([prefix[0], prefix[1], octets[4], octets[5]]))

    params = MapEParameters(
        source_address=source,
        ipv4_address=ipv4_address,
        border_relay_address=border_relay,
        edge_address=edge_address_for(source, ipv4_address, psid),
        psid=psid,
        port_ranges=default_port_ranges(psid),
    )
    LOG.debug(
        "Derived MAP-E parameters for %s: ipv4=%s psid=%d ce=%s br=%s",
        source,
        ipv4_address,
        psid,
        params.edge_address,
        border_relay,
    )
    return params
