"""MAP-E (RFC 7597) parameter derivation for v6plus-style IPv4 over IPv6.

Given the IPv6 address a customer router received from its provider, this
package works out everything needed to bring up the IPv4-over-IPv6 tunnel:

* the shared public IPv4 address and the PSID selecting this customer's
  share of its ports;
* the CE (Customer Edge) IPv6 address to bind locally and the BR (Border
  Relay) address to tunnel towards; and
* the external port ranges usable for NAT, minus any ports the caller wants
  to keep free for static forwards.

The package is pure Python and performs no I/O so it can be used from the
command line tool and from tests without root privileges.  Provider data
lives in :mod:`v6plus_mape.tables`.
"""

from .exceptions import MapEError, PortNotInRange, UnknownPrefix, UnrecognizedPrefix  # noqa: F401
from .params import MapEParameters, derive  # noqa: F401
from .ports import PortRange  # noqa: F401

__all__ = [
    "MapEError",
    "MapEParameters",
    "PortNotInRange",
    "PortRange",
    "UnknownPrefix",
    "UnrecognizedPrefix",
    "derive",
]
