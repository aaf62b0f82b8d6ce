"""Canonical renderings of :class:`~v6plus_mape.params.MapEParameters`."""

from __future__ import annotations

from typing import Any, Dict

from .params import MapEParameters


def render_ranges(params: MapEParameters) -> str:
    return ", ".join(str(r) for r in params.port_ranges)


def render_text(params: MapEParameters) -> str:
    """Return the labelled one-line-per-field summary."""

    lines = [
        f"IPv4 Addr (CE IPv4 Address): {params.ipv4_address}",
        f"CE IPv6 Addr: {params.edge_address}",
        f"Port Ranges: {render_ranges(params)}",
        f"PSID: {params.psid}",
        f"Border Relay Address (BR Address): {params.border_relay_address}",
    ]
    return "\n".join(lines) + "\n"


def as_dict(params: MapEParameters) -> Dict[str, Any]:
    """Return a JSON-serialisable mapping in rendering order."""

    return {
        "ipv4_address": str(params.ipv4_address),
        "edge_address": str(params.edge_address),
        "port_ranges": [list(r.as_tuple()) for r in params.port_ranges],
        "psid": params.psid,
        "border_relay_address": str(params.border_relay_address),
        "source_address": str(params.source_address),
    }
