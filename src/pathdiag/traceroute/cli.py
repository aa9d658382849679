"""
Traceroute CLI commands.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace

import click
import dns.exception
import dns.resolver
from netaddr import AddrFormatError, IPAddress
from rich.console import Console
from rich.table import Table

from pathdiag.config import get_config
from pathdiag.traceroute.core import STRATEGIES, traceroute
from pathdiag.traceroute.models import (
    Hop,
    TraceCancelled,
    TraceError,
    TraceResult,
    TraceStatus,
)

console = Console()


def resolve_host(host: str, family: int = 4) -> str | None:
    """Resolve host to a single address of the family.

    IP literals are returned unchanged. Returns None when the name has
    no record of the requested type.
    """
    try:
        return str(IPAddress(host))
    except (AddrFormatError, ValueError):
        pass

    record_type = "AAAA" if family == 6 else "A"
    try:
        answers = dns.resolver.resolve(host, record_type)
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers,
            dns.exception.Timeout):
        return None
    return answers[0].address


def format_hop(hop: Hop) -> str:
    """One output line for a hop, with rich markup."""
    addrs = ", ".join(str(ip) for ip in hop.addresses()) or "*"
    rtts = "  ".join(
        "[dim]*[/dim]" if rtt is None else f"{rtt:.1f} ms" for rtt in hop.rtts()
    )
    style = "green" if hop.terminal else "white"
    return f"[cyan]{hop.sequence:>3}[/cyan]  [{style}]{addrs:<40}[/{style}] {rtts}"


def hops_table(result: TraceResult, title: str) -> Table:
    """Summary table of a finished trace."""
    table = Table(title=title, box=None)
    table.add_column("Hop", style="cyan", width=4)
    table.add_column("IP", style="white", width=40)
    table.add_column("RTT", style="white", width=30)

    for hop in result.hops:
        if hop.is_timeout:
            table.add_row(str(hop.sequence), "*", "[dim]Request timed out[/dim]")
            continue
        rtt_str = "  ".join("*" if rtt is None else f"{rtt:.1f}ms" for rtt in hop.rtts())
        ips = ", ".join(str(ip) for ip in hop.addresses())
        table.add_row(str(hop.sequence), ips or "-", rtt_str)
    return table


def _status_line(result: TraceResult) -> str:
    if result.status == TraceStatus.REACHED:
        return f"[green]Reached {result.destination} in {len(result.hops)} hops[/green]"
    if result.status == TraceStatus.PARTIAL:
        return f"[yellow]Partial result: traceroute utility failed after {len(result.hops)} hops[/yellow]"
    return f"[yellow]No reply from {result.destination} within {len(result.hops)} hops[/yellow]"


@click.command()
@click.argument("host")
@click.option("-m", "--max-hops", type=int, default=None, help="Maximum number of hops (default: 20)")
@click.option("-w", "--timeout", type=float, default=None, help="Timeout per probe in seconds (default: 5)")
@click.option("-s", "--size", type=int, default=None, help="Probe payload size in bytes (default: 52)")
@click.option("-q", "--probes", type=int, default=None, help="Probes per hop (default: 3)")
@click.option("-6", "--ipv6", "ipv6", is_flag=True, help="Trace over IPv6")
@click.option("--both", is_flag=True, help="Trace IPv4 and IPv6 concurrently")
@click.option(
    "--strategy",
    type=click.Choice(STRATEGIES),
    default="auto",
    show_default=True,
    help="Raw sockets, the platform traceroute utility, or pick automatically",
)
@click.option("--json", "as_json", is_flag=True, help="Output results as JSON")
def trace(
    host: str,
    max_hops: int | None,
    timeout: float | None,
    size: int | None,
    probes: int | None,
    ipv6: bool,
    both: bool,
    strategy: str,
    as_json: bool,
):
    """Trace the route packets take to reach a host.

    \b
    Examples:
        pathdiag trace 45.90.28.0
        pathdiag trace 2a07:a8c0::
        pathdiag trace dns.nextdns.io -m 30 -w 2
        pathdiag trace dns.nextdns.io --both --json

    Note: raw ICMP sockets require root/administrator privileges; without
    them the platform traceroute utility is used.
    """
    overrides = {
        "max_hops": max_hops,
        "per_probe_timeout": timeout,
        "probe_payload_size": size,
        "probes_per_hop": probes,
    }
    try:
        config = replace(get_config(), **{k: v for k, v in overrides.items() if v is not None})
    except ValueError as e:
        raise click.BadParameter(str(e))

    try:
        # Address literals are traced over their own family
        targets = [str(IPAddress(host))]
    except (AddrFormatError, ValueError):
        targets = []
        for family in ([4, 6] if both else [6 if ipv6 else 4]):
            address = resolve_host(host, family)
            if address is None:
                console.print(f"[yellow]No IPv{family} address for {host}[/yellow]")
                continue
            targets.append(address)

    if not targets:
        raise SystemExit(1)

    live = not as_json and len(targets) == 1
    cancel = threading.Event()

    def on_hop(hop: Hop) -> None:
        if live:
            console.print(format_hop(hop))

    if live:
        console.print(
            f"[cyan]Traceroute to {host} ({targets[0]}), "
            f"{config.max_hops} hops max[/cyan]"
        )

    executor = ThreadPoolExecutor(max_workers=len(targets))
    futures = {
        executor.submit(traceroute, target, config, on_hop, cancel, strategy): target
        for target in targets
    }
    try:
        wait(futures)
    except KeyboardInterrupt:
        cancel.set()
        wait(futures)
        console.print("\n[yellow]--- traceroute interrupted ---[/yellow]")
        raise SystemExit(130)
    finally:
        executor.shutdown(wait=True)

    results = []
    failed = False
    for future, target in futures.items():
        try:
            results.append(future.result())
        except TraceCancelled:
            failed = True
        except TraceError as e:
            console.print(f"[red]Error ({target}):[/red] {e}")
            failed = True

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results], indent=2))
    elif live:
        for result in results:
            console.print(_status_line(result))
    else:
        for result in results:
            console.print(hops_table(result, f"Traceroute: {host} ({result.destination})"))
            console.print(_status_line(result))

    if failed:
        raise SystemExit(1)
