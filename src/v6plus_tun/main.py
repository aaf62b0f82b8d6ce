"""Command line entry point for v6plus-tun."""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import subprocess
import sys
from pathlib import Path

from v6plus_mape import derive
from v6plus_mape.render import as_dict, render_text

from .config import AgentConfig, load_config
from .linux import CommandError, LinuxConfigurator

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("/etc/v6plus-tun/config.yaml")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="v6plus-tun",
        description="Derive MAP-E parameters and configure the tunnel",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    calculate = subparsers.add_parser(
        "calculate", help="Print the MAP-E parameters for an IPv6 address"
    )
    calculate.add_argument("addr", type=ipaddress.IPv6Address)
    calculate.add_argument(
        "--exclude-port",
        dest="exclude_ports",
        type=int,
        action="append",
        default=[],
        metavar="PORT",
        help="Remove PORT from the NAT port ranges (repeatable)",
    )
    calculate.add_argument(
        "--json",
        action="store_true",
        help="Print the parameters as JSON",
    )

    setup = subparsers.add_parser(
        "setup-linux", help="Create the tunnel, routes and NAT rules"
    )
    setup.add_argument("addr", type=ipaddress.IPv6Address, nargs="?")
    setup.add_argument(
        "--exclude-port",
        dest="exclude_ports",
        type=int,
        action="append",
        default=[],
        metavar="PORT",
        help="Additional port to keep out of SNAT (repeatable)",
    )

    teardown = subparsers.add_parser(
        "teardown-linux", help="Remove the tunnel and NAT rules"
    )

    for sub in (setup, teardown):
        sub.add_argument(
            "--config",
            type=Path,
            default=None,
            help=f"Path to the configuration file (default: {DEFAULT_CONFIG})",
        )
        sub.add_argument(
            "--dry-run",
            action="store_true",
            help="Log the changes without applying them",
        )

    return parser


def _load(path: Path | None) -> AgentConfig:
    if path is None:
        if not DEFAULT_CONFIG.exists():
            LOG.debug("%s not found, using defaults", DEFAULT_CONFIG)
            return AgentConfig()
        path = DEFAULT_CONFIG
    return load_config(path)


def _calculate(args: argparse.Namespace) -> int:
    params = derive(args.addr)
    params.exclude_ports(args.exclude_ports)
    if args.json:
        print(json.dumps(as_dict(params), indent=2))
    else:
        print(render_text(params))
    return 0


def _setup_linux(args: argparse.Namespace) -> int:
    config = _load(args.config)
    address = args.addr or config.mape.address
    if address is None:
        raise ValueError("no IPv6 address given and 'mape.address' is not set")

    params = derive(address)
    excluded = list(dict.fromkeys([*config.excluded_ports(), *args.exclude_ports]))
    params.exclude_ports(excluded)
    if excluded:
        LOG.info("Keeping ports %s out of SNAT", ", ".join(map(str, excluded)))

    configurator = LinuxConfigurator(
        config.tunnel, config.nat, dry_run=args.dry_run
    )
    configurator.apply(params)
    LOG.info("MAP-E tunnel %s is up", config.tunnel.name)
    return 0


def _teardown_linux(args: argparse.Namespace) -> int:
    config = _load(args.config)
    LinuxConfigurator(config.tunnel, config.nat, dry_run=args.dry_run).teardown()
    return 0


COMMANDS = {
    "calculate": _calculate,
    "setup-linux": _setup_linux,
    "teardown-linux": _teardown_linux,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        return COMMANDS[args.command](args)
    except ValueError as exc:
        LOG.error("%s", exc)
    except (CommandError, subprocess.CalledProcessError) as exc:
        LOG.error("failed to configure the system: %s", exc)
    return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
