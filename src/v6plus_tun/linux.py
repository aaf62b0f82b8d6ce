"""Bring up a MAP-E tunnel on Linux from derived parameters.

Netlink state (CE address, ``ip6tnl`` link, IPv4 address and default route)
is programmed through :mod:`pyroute2`; NAT rules are installed by calling
``iptables`` since the port-range SNAT targets have no netlink equivalent.
Every step checks for existing state first so the configurator can be re-run
after an address change.
"""

from __future__ import annotations

import logging
import socket
import subprocess
from typing import List, Sequence

import pyroute2

from v6plus_mape.params import MapEParameters

from .config import NatConfig, TunnelConfig

LOG = logging.getLogger(__name__)

# From include/uapi/linux/ip6_tunnel.h
IP6_TNL_F_IGN_ENCAP_LIMIT = 0x1


def plan_snat_rules(params: MapEParameters, nat: NatConfig) -> List[List[str]]:
    """Return ``iptables -t nat`` argument vectors for the SNAT chain.

    New connections are spread over the port ranges with the ``statistic``
    match: rule ``i`` of ``n`` takes every ``n - i``-th packet it sees, so
    each range receives an equal share and the last rule catches the rest.
    """

    rules: List[List[str]] = []
    total = len(params.port_ranges)
    for protocol in nat.protocols:
        for index, port_range in enumerate(params.port_ranges):
            rule = ["-A", nat.chain, "-p", protocol]
            every = total - index
            if every > 1:
                rule += [
                    "-m", "statistic",
                    "--mode", "nth",
                    "--every", str(every),
                    "--packet", "0",
                ]
            rule += [
                "-j", "SNAT",
                "--to-source", f"{params.ipv4_address}:{port_range}",
            ]
            rules.append(rule)
    return rules


def plan_forward_rules(params: MapEParameters, nat: NatConfig) -> List[List[str]]:
    """Return ``iptables -t nat`` argument vectors for static forwards."""

    return [
        [
            "-A", nat.forward_chain,
            "-d", str(params.ipv4_address),
            "-p", forward.protocol,
            "--dport", str(forward.port),
            "-j", "DNAT",
            "--to-destination", forward.destination,
        ]
        for forward in nat.forwards
    ]


class CommandError(RuntimeError):
    """A system command or netlink request failed."""


class LinuxConfigurator:
    """Apply :class:`MapEParameters` to the local network stack.

    Parameters
    ----------
    tunnel:
        Tunnel naming and link settings.
    nat:
        NAT chain names, protocols and static forwards.
    dry_run:
        Log what would be done without touching the system.
    iptables:
        Name or path of the ``iptables`` binary.
    """

    def __init__(
        self,
        tunnel: TunnelConfig,
        nat: NatConfig,
        *,
        dry_run: bool = False,
        iptables: str = "iptables",
    ) -> None:
        self._tunnel = tunnel
        self._nat = nat
        self._dry_run = dry_run
        self._iptables = iptables

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def apply(self, params: MapEParameters) -> None:
        LOG.info(
            "Configuring MAP-E tunnel %s: ipv4=%s ce=%s br=%s",
            self._tunnel.name,
            params.ipv4_address,
            params.edge_address,
            params.border_relay_address,
        )
        if self._dry_run:
            self._log_netlink_plan(params)
        else:
            self._apply_netlink(params)
        self.install_nat_rules(params)

    def teardown(self) -> None:
        LOG.info("Removing MAP-E tunnel %s", self._tunnel.name)
        if self._dry_run:
            LOG.info("[dry-run] would delete link %s", self._tunnel.name)
        else:
            try:
                with pyroute2.IPRoute() as ipr:
                    links = ipr.link_lookup(ifname=self._tunnel.name)
                    if links:
                        ipr.link("del", index=links[0])
                    else:
                        LOG.debug("Link %s not present", self._tunnel.name)
            except pyroute2.NetlinkError as exc:
                LOG.error("Netlink request failed: %s", exc)
                raise CommandError(f"netlink request failed: {exc}") from exc

        self._unhook_chain("POSTROUTING", ["-o", self._tunnel.name], self._nat.chain)
        self._unhook_chain(
            "PREROUTING", ["-i", self._tunnel.name], self._nat.forward_chain
        )

    # ------------------------------------------------------------------
    # Netlink
    # ------------------------------------------------------------------
    def _apply_netlink(self, params: MapEParameters) -> None:
        try:
            with pyroute2.IPRoute() as ipr:
                wan_index = self._lookup(ipr, self._tunnel.wan_interface)
                self._ensure_edge_address(ipr, wan_index, params)
                tunnel_index = self._ensure_tunnel(ipr, wan_index, params)
                self._ensure_ipv4(ipr, tunnel_index, params)
        except pyroute2.NetlinkError as exc:
            LOG.error("Netlink request failed: %s", exc)
            raise CommandError(f"netlink request failed: {exc}") from exc

    def _lookup(self, ipr, ifname: str) -> int:
        links = ipr.link_lookup(ifname=ifname)
        if not links:
            raise CommandError(f"interface '{ifname}' does not exist")
        return links[0]

    def _ensure_edge_address(self, ipr, wan_index: int, params: MapEParameters) -> None:
        edge = str(params.edge_address)
        present = [
            msg.get_attr("IFA_ADDRESS")
            for msg in ipr.get_addr(index=wan_index, family=socket.AF_INET6)
        ]
        if edge in present:
            LOG.info(
                "CE address %s already on %s", edge, self._tunnel.wan_interface
            )
            return

        LOG.info("Adding CE address %s to %s", edge, self._tunnel.wan_interface)
        ipr.addr(
            "add",
            index=wan_index,
            address=edge,
            prefixlen=128,
            family=socket.AF_INET6,
        )

    def _ensure_tunnel(self, ipr, wan_index: int, params: MapEParameters) -> int:
        links = ipr.link_lookup(ifname=self._tunnel.name)
        if links:
            # An existing link may still point at a stale CE address.
            LOG.info("Recreating tunnel %s", self._tunnel.name)
            ipr.link("del", index=links[0])
        else:
            LOG.info("Creating tunnel %s", self._tunnel.name)

        options = {
            "ip6tnl_link": wan_index,
            "ip6tnl_local": str(params.edge_address),
            "ip6tnl_remote": str(params.border_relay_address),
            "ip6tnl_proto": socket.IPPROTO_IPIP,
        }
        if self._tunnel.encap_limit is None:
            options["ip6tnl_flags"] = IP6_TNL_F_IGN_ENCAP_LIMIT
        else:
            options["ip6tnl_encap_limit"] = self._tunnel.encap_limit
        ipr.link("add", ifname=self._tunnel.name, kind="ip6tnl", **options)

        index = self._lookup(ipr, self._tunnel.name)
        ipr.link("set", index=index, mtu=self._tunnel.mtu, state="up")
        return index

    def _ensure_ipv4(self, ipr, tunnel_index: int, params: MapEParameters) -> None:
        LOG.info("Assigning %s/32 to %s", params.ipv4_address, self._tunnel.name)
        ipr.addr(
            "replace",
            index=tunnel_index,
            address=str(params.ipv4_address),
            prefixlen=32,
            family=socket.AF_INET,
        )
        LOG.info("Routing IPv4 default via %s", self._tunnel.name)
        ipr.route(
            "replace",
            family=socket.AF_INET,
            dst="0.0.0.0/0",
            oif=tunnel_index,
        )

    def _log_netlink_plan(self, params: MapEParameters) -> None:
        LOG.info(
            "[dry-run] would add %s/128 to %s",
            params.edge_address,
            self._tunnel.wan_interface,
        )
        LOG.info(
            "[dry-run] would create ip6tnl %s local %s remote %s mtu %d",
            self._tunnel.name,
            params.edge_address,
            params.border_relay_address,
            self._tunnel.mtu,
        )
        LOG.info(
            "[dry-run] would assign %s/32 and default route to %s",
            params.ipv4_address,
            self._tunnel.name,
        )

    # ------------------------------------------------------------------
    # iptables
    # ------------------------------------------------------------------
    def install_nat_rules(self, params: MapEParameters) -> None:
        self._ensure_chain(self._nat.chain)
        self._hook_chain("POSTROUTING", ["-o", self._tunnel.name], self._nat.chain)
        for rule in plan_snat_rules(params, self._nat):
            self._iptables_checked(rule)
        LOG.info(
            "Installed %d SNAT rules over %d port ranges",
            len(params.port_ranges) * len(self._nat.protocols),
            len(params.port_ranges),
        )

        if not self._nat.forwards:
            return
        self._ensure_chain(self._nat.forward_chain)
        self._hook_chain(
            "PREROUTING", ["-i", self._tunnel.name], self._nat.forward_chain
        )
        for rule in plan_forward_rules(params, self._nat):
            self._iptables_checked(rule)
        LOG.info("Installed %d port forwards", len(self._nat.forwards))

    def _ensure_chain(self, chain: str) -> None:
        create = self._iptables_run(["-N", chain])
        if create.returncode != 0 and "exists" not in create.stderr:
            LOG.error("Failed to create chain %s: %s", chain, create.stderr.strip())
            create.check_returncode()
        self._iptables_checked(["-F", chain])

    def _hook_chain(self, builtin: str, match: Sequence[str], chain: str) -> None:
        jump = [builtin, *match, "-j", chain]
        if self._iptables_run(["-C", *jump]).returncode == 0 and not self._dry_run:
            LOG.debug("Chain %s already hooked into %s", chain, builtin)
            return
        self._iptables_checked(["-A", *jump])

    def _unhook_chain(self, builtin: str, match: Sequence[str], chain: str) -> None:
        self._iptables_run(["-D", builtin, *match, "-j", chain])
        self._iptables_run(["-F", chain])
        self._iptables_run(["-X", chain])

    def _iptables_checked(self, args: Sequence[str]) -> None:
        result = self._iptables_run(args)
        if result.returncode != 0:
            LOG.error(
                "iptables %s failed: %s", " ".join(args), result.stderr.strip()
            )
            result.check_returncode()

    def _iptables_run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return run([self._iptables, "-t", "nat", *args], dry_run=self._dry_run)


def run(
    cmd: List[str], dry_run: bool = False
) -> subprocess.CompletedProcess[str]:
    if dry_run:
        LOG.info("[dry-run] %s", " ".join(cmd))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
    LOG.debug("Executing: %s", " ".join(cmd))
    return subprocess.run(cmd, check=False, text=True, capture_output=True)

