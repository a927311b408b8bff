from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click

from ipsecdiag.config_loader import DiagnosticsSettings, default_config_path, resolve_settings
from ipsecdiag.logging_setup import correlation_context, setup_logging
from ipsecdiag.progress import ProgressEvent, progress_emitter_context
from ipsecdiag.services.coordinator import SessionResult, SessionSetupError, SynchronizedCaptureCoordinator
from ipsecdiag.services.drop_capture import DROP_DATA, RetisDropCapture, drop_analysis_commands
from ipsecdiag.services.gateway import ClusterGateway
from ipsecdiag.services.job_specs import render_manual_commands
from ipsecdiag.services.retrieval import read_timing_file
from ipsecdiag.services.session import session_timestamp
from ipsecdiag.services.verifier import CaptureVerifier, render_report
from ipsecdiag.services.xfrm_dump import XfrmStateDumper
from ipsecdiag.utils import MissingBinaryError, ensure_binaries, human_size

LOGGER = logging.getLogger(__name__)

RULE = "━" * 66
EXIT_INTERRUPTED = 130


class ClickProgressPrinter:
    """Prints coordinator progress; countdown ticks overwrite one terminal line."""

    def __init__(self) -> None:
        self._in_tick = False

    def __call__(self, event: ProgressEvent) -> None:
        if event.is_tick:
            click.echo("\r  " + event.message, nl=False)
            self._in_tick = True
            return
        if self._in_tick:
            click.echo("")
            self._in_tick = False
        click.secho("  " + event.message, fg="yellow" if event.is_warning else None)


def _load_settings(config: Optional[Path], overrides: Dict[str, Any]) -> DiagnosticsSettings:
    config_path = config or default_config_path()
    try:
        return resolve_settings(config_path, overrides=overrides)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _gateway(settings: DiagnosticsSettings) -> ClusterGateway:
    try:
        ensure_binaries([settings.cluster_cli])
    except MissingBinaryError as exc:
        raise click.ClickException(str(exc)) from exc
    return ClusterGateway(cli=settings.cluster_cli, namespace=settings.debug_namespace)


def _banner(title: str) -> None:
    click.echo(RULE)
    click.echo(title)
    click.echo(RULE)
    click.echo("")


def _print_summary(result: SessionResult, settings: DiagnosticsSettings) -> None:
    session = result.session
    output_dir = session.output_dir
    click.echo("")
    _banner("Results Summary")
    click.echo(f"Output directory: {output_dir}")
    click.echo(f"Status: {result.status} (stop reason: {result.stop_reason or '-'})")
    click.echo("")
    for path in sorted(output_dir.iterdir()) if output_dir.is_dir() else []:
        if path.is_file():
            click.echo(f"  {human_size(path.stat().st_size):>8}  {path.name}")
    click.echo("")

    timing_lines = []
    for label, name in (("Node1", "node1-timing.txt"), ("Node2", "node2-timing.txt"), ("Retis", "retis-timing.txt")):
        start = read_timing_file(output_dir / name).get("START")
        if start:
            timing_lines.append(f"  {label}: START: {start}")
    if timing_lines:
        click.echo("Capture Timing:")
        for line in timing_lines:
            click.echo(line)
        click.echo("")

    d = output_dir
    _banner("Analysis Commands")
    lines = [
        "# Compare XFRM state/policy (start vs end):",
        f"diff {d}/xfrm-*-start.txt {d}/xfrm-*-end.txt",
        "",
        "# Analyze pcap files (ESP packets):",
        f"tcpdump -r {d}/node1-esp.pcap -nn",
        f"tcpdump -r {d}/node2-esp.pcap -nn",
        "",
        "# Check ESP packet details (SPI, sequence numbers):",
        f"tshark -r {d}/node1-esp.pcap -Y 'esp' -T fields -e frame.time -e ip.src -e ip.dst -e esp.spi -e esp.sequence",
        f"tshark -r {d}/node2-esp.pcap -Y 'esp' -T fields -e frame.time -e ip.src -e ip.dst -e esp.spi -e esp.sequence",
        "",
        "# Verify capture alignment and correlate packets:",
        f"verify-capture-timestamps {d}",
    ]
    if not session.skip_retis:
        lines.extend(
            [
                "",
                "# Analyze ICV failures with Retis:",
                f"podman run --rm -v {d}:/data:ro {settings.retis_image} sort /data/retis_icv.data",
                f"podman run --rm -v {d}:/data:ro {settings.retis_image} print /data/retis_icv.data",
                f"cat {d}/retis-output.log",
            ]
        )
    for line in lines:
        click.echo(line)


@click.group()
def main() -> None:
    """IPsec ICV failure diagnostics."""
    setup_logging()
    LOGGER.info("CLI bootstrap completed", extra={"category": "CONFIG"})


@main.command()
@click.option("--config", type=click.Path(path_type=Path, dir_okay=False), default=None, help="KEY=VALUE or YAML config file.")
@click.option("--node1", default=None, help="First node - sender.")
@click.option("--node2", default=None, help="Second node - receiver.")
@click.option("--interface", default=None, help="Network interface (default: br-ex).")
@click.option("--duration", type=int, default=None, help="Capture duration in seconds (default: 30).")
@click.option("--packet-count", type=int, default=None, help="tcpdump packet ceiling (default: 1000).")
@click.option("--no-packet-limit", is_flag=True, default=False, help="Capture for the full duration without -c.")
@click.option("--output", type=click.Path(path_type=Path, file_okay=False), default=None, help="Local output directory.")
@click.option("--filter", "capture_filter", default=None, help="tcpdump filter; {NODE1_IP}/{NODE2_IP} are substituted.")
@click.option("--skip-retis", is_flag=True, default=False, help="Skip the Retis capture.")
@click.option("--retis-node", default=None, help="Node where Retis runs (dropping side, default: node2).")
@click.option("--monitor-icv", is_flag=True, default=False, help="Monitor for ICV failures and auto-stop.")
@click.option("--icv-threshold", type=int, default=None, help="Number of ICV failures before stopping (default: 3).")
@click.option("--icv-mode", type=click.Choice(["cumulative", "session"]), default=None, help="Compare the raw kernel-log count or the increase during this run.")
@click.pass_context
def run(
    ctx: click.Context,
    config: Optional[Path],
    node1: Optional[str],
    node2: Optional[str],
    interface: Optional[str],
    duration: Optional[int],
    packet_count: Optional[int],
    no_packet_limit: bool,
    output: Optional[Path],
    capture_filter: Optional[str],
    skip_retis: bool,
    retis_node: Optional[str],
    monitor_icv: bool,
    icv_threshold: Optional[int],
    icv_mode: Optional[str],
) -> None:
    """Run synchronized XFRM dump + tcpdump + Retis diagnostics."""
    overrides: Dict[str, Any] = {
        "node1": node1,
        "node2": node2,
        "interface": interface,
        "duration": duration,
        "packet_count": packet_count,
        "no_packet_limit": True if no_packet_limit else None,
        "output": output,
        "capture_filter": capture_filter,
        "skip_retis": True if skip_retis else None,
        "retis_node": retis_node,
        "monitor_icv": True if monitor_icv else None,
        "icv_threshold": icv_threshold,
        "icv_mode": icv_mode,
    }
    settings = _load_settings(config, overrides)
    gateway = _gateway(settings)
    coordinator = SynchronizedCaptureCoordinator(settings, gateway)

    try:
        session = coordinator.prepare_session()
    except SessionSetupError as exc:
        LOGGER.error("Session setup failed error=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc

    _banner("IPsec ICV Failure Diagnostics")
    click.echo(f"  Cluster: {gateway.server()}")
    click.echo(f"  Node 1 (sender): {session.node1} ({session.node1_ip})")
    click.echo(f"  Node 2 (receiver): {session.node2} ({session.node2_ip})")
    click.echo(f"  Retis node (dropping side): {'skipped' if session.skip_retis else session.retis_node}")
    click.echo(f"  Interface: {session.interface}")
    click.echo(f"  Duration: {session.duration}s")
    click.echo(f"  Packet limit: {session.packet_count if session.packet_count is not None else 'none'}")
    click.echo(f"  Monitor ICV: {settings.monitor_icv} (threshold: {settings.icv_threshold}, mode: {settings.icv_mode})")
    click.echo(f"  tcpdump filter: {session.capture_filter or '-'}")
    click.echo(f"  Retis filter: {session.retis_filter}")
    click.echo(f"  Output: {session.output_dir}")
    click.echo("")

    try:
        with progress_emitter_context(ClickProgressPrinter()):
            result = coordinator.run(session)
    except KeyboardInterrupt:
        click.secho("\nInterrupted; remote captures stopped and cleaned up.", fg="yellow", err=True)
        click.echo(f"Partial results: {session.output_dir}", err=True)
        ctx.exit(EXIT_INTERRUPTED)

    _print_summary(result, settings)


@main.command()
@click.argument("output_dir", type=click.Path(path_type=Path))
@click.option("--retis-image", envvar="RETIS_IMAGE", default="quay.io/retis/retis", show_default=True)
@click.option("--probe", "default_probe", envvar="RETIS_PROBE", default="xfrm_audit_state_icvfail/stack", show_default=True, help="Probe assumed when retis-timing.txt has no PROBE line.")
@click.pass_context
def verify(ctx: click.Context, output_dir: Path, retis_image: str, default_probe: str) -> None:
    """Verify timestamp alignment and correlate packets in a diag-* directory."""
    output_dir = output_dir.expanduser()
    if not output_dir.is_dir():
        click.secho(f"Error: Directory not found: {output_dir}", fg="red", err=True)
        ctx.exit(1)
    report = CaptureVerifier(output_dir, retis_image=retis_image, default_probe=default_probe).verify()
    click.echo(render_report(report))
    ctx.exit(report.exit_code)


@main.command()
@click.option("--config", type=click.Path(path_type=Path, dir_okay=False), default=None, help="KEY=VALUE or YAML config file.")
@click.option("--node", envvar="NODE_NAME", default=None, help="Node to capture on (default: node1).")
@click.option("--duration", type=int, default=None, help="Capture duration in seconds (default: 30).")
@click.option("--output", type=click.Path(path_type=Path, file_okay=False), default=None, help="Local output directory.")
@click.option("--filter", "flow_filter", envvar="RETIS_FILTER", default="", help="Retis filter expression (default: all drops).")
@click.pass_context
def retis(
    ctx: click.Context,
    config: Optional[Path],
    node: Optional[str],
    duration: Optional[int],
    output: Optional[Path],
    flow_filter: str,
) -> None:
    """Capture every dropped packet on one node with Retis."""
    settings = _load_settings(config, {"duration": duration, "output": output})
    gateway = _gateway(settings)
    capture = RetisDropCapture(settings, gateway)
    try:
        session = capture.prepare_session(node or settings.node1, flow_filter)
    except SessionSetupError as exc:
        LOGGER.error("Session setup failed error=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc

    _banner("Retis Dropped Packet Capture")
    click.echo(f"  Cluster: {gateway.server()}")
    click.echo(f"  Node: {session.retis_node}")
    click.echo(f"  Duration: {session.duration}s")
    click.echo(f"  Filter: {session.retis_filter or 'all drops'}")
    click.echo(f"  Remote dir: {session.remote_dir}")
    click.echo(f"  Local output: {session.output_dir}")
    click.echo("")

    try:
        with progress_emitter_context(ClickProgressPrinter()):
            result = capture.run(session)
    except KeyboardInterrupt:
        click.secho("\nInterrupted; remote capture stopped and cleaned up.", fg="yellow", err=True)
        click.echo(f"Partial results: {session.output_dir}", err=True)
        ctx.exit(EXIT_INTERRUPTED)

    click.echo("")
    if not result.successful:
        detail = result.error or (result.data.status.replace("_", " ") if result.data else "not retrieved")
        raise click.ClickException(f"No retis data from {session.retis_node}: {detail}. See {session.output_dir}")
    click.echo(f"✓ {DROP_DATA} ({human_size(result.data.size)})")
    click.echo("")
    _banner("Analysis Commands")
    for line in drop_analysis_commands(session.output_dir, settings.retis_image):
        click.echo(line)


@main.command("xfrm-dump")
@click.option("--config", type=click.Path(path_type=Path, dir_okay=False), default=None, help="KEY=VALUE or YAML config file.")
@click.option("--node", "nodes", multiple=True, help="Node to dump; repeatable (default: node1 and node2).")
@click.option("--output", type=click.Path(path_type=Path, file_okay=False), default=None, help="Local output directory.")
def xfrm_dump(config: Optional[Path], nodes: Tuple[str, ...], output: Optional[Path]) -> None:
    """Dump XFRM state and policy tables from cluster nodes."""
    settings = _load_settings(config, {"output": output})
    gateway = _gateway(settings)
    if not gateway.check_connectivity():
        raise click.ClickException("Not connected to the cluster; log in first (oc login https://api.<cluster>:6443)")

    targets = list(dict.fromkeys(nodes or (settings.node1, settings.node2)))
    timestamp = session_timestamp()
    output_dir = settings.output / f"xfrm-dump-{timestamp}"
    dumper = XfrmStateDumper(gateway)
    with progress_emitter_context(ClickProgressPrinter()), correlation_context(timestamp):
        written = {node: dumper.dump_to_files(node, output_dir, timestamp) for node in targets}

    click.echo("")
    click.echo(f"Dump complete. Files saved to: {output_dir}")
    for node, paths in written.items():
        for path in paths:
            click.echo(f"  {human_size(path.stat().st_size):>8}  {path.relative_to(output_dir)}")
    failed = [node for node, paths in written.items() if not paths]
    if failed:
        raise click.ClickException(f"XFRM dump failed on: {', '.join(failed)}")


@main.command()
@click.option("--config", type=click.Path(path_type=Path, dir_okay=False), default=None)
@click.option("--node1", default=None)
@click.option("--node2", default=None)
@click.option("--interface", default=None)
def commands(config: Optional[Path], node1: Optional[str], node2: Optional[str], interface: Optional[str]) -> None:
    """Print the commands for running the captures by hand in two terminals."""
    settings = _load_settings(config, {"node1": node1, "node2": node2, "interface": interface})
    gateway = _gateway(settings)
    node1_ip = gateway.node_internal_ip(settings.node1)
    node2_ip = gateway.node_internal_ip(settings.node2)
    if not node1_ip or not node2_ip:
        raise click.ClickException("Could not get node IPs. Check node names (oc get nodes -o wide).")
    click.echo(
        render_manual_commands(
            settings.node1,
            node1_ip,
            settings.node2,
            node2_ip,
            settings.interface,
            remote_dir=f"{settings.remote_base}/ipsec-capture-{session_timestamp()}",
            cli=settings.cluster_cli,
            namespace=settings.debug_namespace,
        )
    )


def _standalone(command: click.Command) -> None:
    """Run a command with the exit codes the shell tooling used: 1 for any usage or setup error."""
    setup_logging()
    try:
        rv = command.main(standalone_mode=False)
    except click.ClickException as exc:
        exc.show()
        sys.exit(1)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    sys.exit(rv if isinstance(rv, int) else 0)


def group_main() -> None:
    _standalone(main)


def diagnostics_main() -> None:
    _standalone(run)


def verify_main() -> None:
    _standalone(verify)


if __name__ == "__main__":
    main()
