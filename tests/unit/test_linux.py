import subprocess

import pytest

from v6plus_mape.params import derive
from v6plus_tun import linux
from v6plus_tun.config import NatConfig, PortForward, TunnelConfig
from v6plus_tun.linux import LinuxConfigurator, plan_forward_rules, plan_snat_rules


class FakeIPRoute:
    """Records netlink requests against a tiny in-memory link table."""

    def __init__(self):
        self.links = {"eth0": 2}
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def link_lookup(self, ifname):
        return [self.links[ifname]] if ifname in self.links else []

    def get_addr(self, index, family):
        return []

    def addr(self, command, **kwargs):
        self.calls.append(("addr", command, kwargs))

    def route(self, command, **kwargs):
        self.calls.append(("route", command, kwargs))

    def link(self, command, **kwargs):
        self.calls.append(("link", command, kwargs))
        if command == "add":
            self.links[kwargs["ifname"]] = 7
        elif command == "del":
            self.links = {k: v for k, v in self.links.items() if v != kwargs["index"]}


class RecordingRunner:
    def __init__(self):
        self.commands = []

    def __call__(self, cmd, check=False, text=True, capture_output=True):
        self.commands.append(cmd)
        returncode = 1 if "-C" in cmd else 0
        return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr="")


@pytest.fixture
def params():
    return derive("2404:7a80:102:500::1")


def test_plan_snat_rules_spreads_over_ranges(params):
    rules = plan_snat_rules(params, NatConfig(protocols=("tcp",)))

    assert len(rules) == 15
    assert rules[0] == [
        "-A", "MAPE-SNAT", "-p", "tcp",
        "-m", "statistic", "--mode", "nth", "--every", "15", "--packet", "0",
        "-j", "SNAT", "--to-source", "133.200.1.2:4176-4191",
    ]
    assert "--every" in rules[13] and rules[13][rules[13].index("--every") + 1] == "2"
    assert rules[-1] == [
        "-A", "MAPE-SNAT", "-p", "tcp",
        "-j", "SNAT", "--to-source", "133.200.1.2:61520-61535",
    ]


def test_plan_snat_rules_follow_exclusions(params):
    params.exclude_port(4184)

    rules = plan_snat_rules(params, NatConfig())

    assert len(rules) == 16 * 3
    assert rules[0][-1] == "133.200.1.2:4176-4183"
    assert rules[1][-1] == "133.200.1.2:4185-4191"
    assert {rule[3] for rule in rules} == {"tcp", "udp", "icmp"}


def test_plan_forward_rules(params):
    nat = NatConfig(forwards=[PortForward(4184, "tcp", "192.168.1.10:22")])

    assert plan_forward_rules(params, nat) == [
        [
            "-A", "MAPE-DNAT",
            "-d", "133.200.1.2",
            "-p", "tcp",
            "--dport", "4184",
            "-j", "DNAT",
            "--to-destination", "192.168.1.10:22",
        ]
    ]


def test_apply_programs_netlink_and_iptables(monkeypatch, params):
    ipr = FakeIPRoute()
    runner = RecordingRunner()
    monkeypatch.setattr(linux.pyroute2, "IPRoute", lambda: ipr)
    monkeypatch.setattr(linux.subprocess, "run", runner)

    nat = NatConfig(
        protocols=("tcp",),
        forwards=[PortForward(4184, "tcp", "192.168.1.10:22")],
    )
    LinuxConfigurator(TunnelConfig(), nat).apply(params)

    assert ("addr", "add", {
        "index": 2,
        "address": "2404:7a80:102:500:85:c801:200:500",
        "prefixlen": 128,
        "family": linux.socket.AF_INET6,
    }) in ipr.calls
    added = [c for c in ipr.calls if c[:2] == ("link", "add")]
    assert len(added) == 1
    options = added[0][2]
    assert options["kind"] == "ip6tnl"
    assert options["ip6tnl_remote"] == "2001:260:700:1::1:275"
    assert options["ip6tnl_flags"] == linux.IP6_TNL_F_IGN_ENCAP_LIMIT
    assert ("link", "set", {"index": 7, "mtu": 1460, "state": "up"}) in ipr.calls
    assert any(c[0] == "route" and c[2]["oif"] == 7 for c in ipr.calls)

    commands = [" ".join(cmd) for cmd in runner.commands]
    assert "iptables -t nat -N MAPE-SNAT" in commands
    assert "iptables -t nat -A POSTROUTING -o mape0 -j MAPE-SNAT" in commands
    assert "iptables -t nat -A PREROUTING -i mape0 -j MAPE-DNAT" in commands
    assert sum(1 for c in commands if "-j SNAT" in c) == 15
    assert sum(1 for c in commands if "-j DNAT" in c) == 1


def test_apply_recreates_existing_tunnel(monkeypatch, params):
    ipr = FakeIPRoute()
    ipr.links["mape0"] = 5
    monkeypatch.setattr(linux.pyroute2, "IPRoute", lambda: ipr)
    monkeypatch.setattr(linux.subprocess, "run", RecordingRunner())

    LinuxConfigurator(TunnelConfig(encap_limit=4), NatConfig()).apply(params)

    assert ("link", "del", {"index": 5}) in ipr.calls
    added = [c for c in ipr.calls if c[:2] == ("link", "add")]
    assert added[0][2]["ip6tnl_encap_limit"] == 4


def test_missing_wan_interface(monkeypatch, params):
    ipr = FakeIPRoute()
    monkeypatch.setattr(linux.pyroute2, "IPRoute", lambda: ipr)

    with pytest.raises(linux.CommandError):
        LinuxConfigurator(TunnelConfig(wan_interface="wan9"), NatConfig()).apply(params)


def test_failed_iptables_command_raises(monkeypatch, params):
    def failing(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 2, stdout="", stderr="boom")

    monkeypatch.setattr(linux.pyroute2, "IPRoute", FakeIPRoute)
    monkeypatch.setattr(linux.subprocess, "run", failing)

    with pytest.raises(subprocess.CalledProcessError):
        LinuxConfigurator(TunnelConfig(), NatConfig()).apply(params)


def test_dry_run_touches_nothing(monkeypatch, params):
    def forbidden(*args, **kwargs):
        raise AssertionError("dry run must not touch the system")

    monkeypatch.setattr(linux.pyroute2, "IPRoute", forbidden)
    monkeypatch.setattr(linux.subprocess, "run", forbidden)

    configurator = LinuxConfigurator(TunnelConfig(), NatConfig(), dry_run=True)
    configurator.apply(params)
    configurator.teardown()


def test_teardown_removes_link_and_chains(monkeypatch):
    ipr = FakeIPRoute()
    ipr.links["mape0"] = 5
    runner = RecordingRunner()
    monkeypatch.setattr(linux.pyroute2, "IPRoute", lambda: ipr)
    monkeypatch.setattr(linux.subprocess, "run", runner)

    LinuxConfigurator(TunnelConfig(), NatConfig()).teardown()

    assert ("link", "del", {"index": 5}) in ipr.calls
    commands = [" ".join(cmd) for cmd in runner.commands]
    assert "iptables -t nat -D POSTROUTING -o mape0 -j MAPE-SNAT" in commands
    assert "iptables -t nat -X MAPE-SNAT" in commands
    assert "iptables -t nat -X MAPE-DNAT" in commands


def test_teardown_netlink_failure_raises_command_error(monkeypatch):
    class DeniedIPRoute(FakeIPRoute):
        def link(self, command, **kwargs):
            raise linux.pyroute2.NetlinkError(1, "Operation not permitted")

    ipr = DeniedIPRoute()
    ipr.links["mape0"] = 5
    monkeypatch.setattr(linux.pyroute2, "IPRoute", lambda: ipr)
    monkeypatch.setattr(linux.subprocess, "run", RecordingRunner())

    with pytest.raises(linux.CommandError):
        LinuxConfigurator(TunnelConfig(), NatConfig()).teardown()
