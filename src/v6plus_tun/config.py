"""YAML configuration loader for the v6plus tunnel tool."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import yaml

SUPPORTED_PROTOCOLS = ("tcp", "udp", "icmp")


@dataclass(frozen=True)
class PortForward:
    """Static forward of one external port to a LAN host."""

    port: int
    protocol: str
    destination: str


@dataclass
class MapEConfig:
    address: Optional[ipaddress.IPv6Address] = None
    exclude_ports: Sequence[int] = field(default_factory=list)


@dataclass
class TunnelConfig:
    name: str = "mape0"
    wan_interface: str = "eth0"
    mtu: int = 1460
    encap_limit: Optional[int] = None


@dataclass
class NatConfig:
    chain: str = "MAPE-SNAT"
    forward_chain: str = "MAPE-DNAT"
    protocols: Sequence[str] = SUPPORTED_PROTOCOLS
    forwards: Sequence[PortForward] = field(default_factory=list)

    def reserved_ports(self) -> List[int]:
        return list(dict.fromkeys(f.port for f in self.forwards))


@dataclass
class AgentConfig:
    mape: MapEConfig = field(default_factory=MapEConfig)
    tunnel: TunnelConfig = field(default_factory=TunnelConfig)
    nat: NatConfig = field(default_factory=NatConfig)

    def excluded_ports(self) -> List[int]:
        """Ports kept out of SNAT: explicit exclusions, then forwarded ports."""

        return list(
            dict.fromkeys([*self.mape.exclude_ports, *self.nat.reserved_ports()])
        )


def _parse_port(value) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid port {value!r}")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid port {value!r}") from None
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port {port} is outside 0-65535")
    return port


def _parse_protocol(value) -> str:
    protocol = str(value).lower()
    if protocol not in SUPPORTED_PROTOCOLS:
        raise ValueError(f"Unsupported protocol '{value}'")
    return protocol


def _parse_mape(section: dict) -> MapEConfig:
    address = section.get("address")
    exclude = section.get("exclude_ports", [])
    if not isinstance(exclude, list):
        raise ValueError("'exclude_ports' must be a list")
    return MapEConfig(
        address=ipaddress.IPv6Address(str(address)) if address else None,
        exclude_ports=[_parse_port(p) for p in exclude],
    )


def _parse_tunnel(section: dict) -> TunnelConfig:
    encap_limit = section.get("encap_limit")
    if encap_limit is not None and str(encap_limit).lower() == "none":
        encap_limit = None
    return TunnelConfig(
        name=str(section.get("name", "mape0")),
        wan_interface=str(section.get("wan_interface", "eth0")),
        mtu=int(section.get("mtu", 1460)),
        encap_limit=int(encap_limit) if encap_limit is not None else None,
    )


def _parse_forward(entry: dict) -> PortForward:
    if not isinstance(entry, dict):
        raise ValueError("port forward entry must be a mapping")
    if "destination" not in entry:
        raise ValueError("port forward entry missing 'destination'")
    return PortForward(
        port=_parse_port(entry.get("port")),
        protocol=_parse_protocol(entry.get("protocol", "tcp")),
        destination=str(entry["destination"]),
    )


def _parse_nat(section: dict) -> NatConfig:
    protocols_raw: Iterable[str] | None = section.get("protocols")
    protocols: Sequence[str] = (
        tuple(_parse_protocol(p) for p in protocols_raw)
        if protocols_raw
        else SUPPORTED_PROTOCOLS
    )

    forwards_section = section.get("forwards", [])
    if not isinstance(forwards_section, list):
        raise ValueError("'forwards' section must be a list")

    return NatConfig(
        chain=str(section.get("chain", "MAPE-SNAT")),
        forward_chain=str(section.get("forward_chain", "MAPE-DNAT")),
        protocols=protocols,
        forwards=[_parse_forward(entry) for entry in forwards_section],
    )


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def load_config(path: Path) -> AgentConfig:
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise ValueError(f"cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return AgentConfig()
    if not isinstance(data, dict):
        raise ValueError("Configuration must be a mapping")

    return AgentConfig(
        mape=_parse_mape(_section(data, "mape")),
        tunnel=_parse_tunnel(_section(data, "tunnel")),
        nat=_parse_nat(_section(data, "nat")),
    )
