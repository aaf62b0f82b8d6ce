"""Errors raised while deriving MAP-E parameters."""

from __future__ import annotations


class MapEError(ValueError):
    """Base class for input-validation failures of the derivation core."""


class UnknownPrefix(MapEError):
    """No IPv4 prefix is provisioned for the leading two IPv6 segments."""

    def __init__(self, segment0: int, segment1: int) -> None:
        self.segment0 = segment0
        self.segment1 = segment1
        super().__init__(f"unknown prefix: {segment0:x}:{segment1:x}")


class UnrecognizedPrefix(MapEError):
    """No Border Relay range covers the /31-aligned prefix value."""

    def __init__(self, prefix31: int) -> None:
        self.prefix31 = prefix31
        super().__init__(f"unrecognized prefix: {prefix31:#010x}")


class PortNotInRange(MapEError):
    """An exclusion was requested for a port outside every port range."""

    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(f"port {port} is not in any allowed port range")
