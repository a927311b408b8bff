from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ipsecdiag.config_loader import DEFAULT_RETIS_COLLECTORS, ICV_PROBE
from ipsecdiag.services.retis_tools import probe_base

ICV_COUNT_MARKER = "__IPSECDIAG_ICV_COUNT__"
ICV_LOG_PATTERNS = ("SA-icv-failure", "xfrm_audit_state_icvfail")
TOOLBOX_HOST_PREFIX = "/host"

STATE_DUMP_SCRIPT = """echo '=== XFRM State ==='
ip xfrm state show 2>/dev/null || echo 'No XFRM state'
echo ''
echo '=== XFRM Policy ==='
ip xfrm policy show 2>/dev/null || echo 'No XFRM policy'
echo ''
echo '=== XFRM State Count ==='
ip xfrm state count 2>/dev/null || echo '0'
echo ''
echo '=== XFRM Policy Count ==='
ip xfrm policy count 2>/dev/null || echo '0'
"""
# Section title -> local file stem, in dump order.
STATE_DUMP_SECTIONS = {
    "XFRM State": "xfrm_state",
    "XFRM Policy": "xfrm_policy",
    "XFRM State Count": "xfrm_state_count",
    "XFRM Policy Count": "xfrm_policy_count",
}


@dataclass(frozen=True)
class TcpdumpJobSpec:
    label: str
    interface: str
    capture_filter: str
    output_path: str
    duration: int
    packet_count: Optional[int] = None
    extra_args: str = ""

    def tool_command(self) -> str:
        parts: List[str] = ["tcpdump", "-nn", "-s0"]
        parts.extend(shlex.quote(arg) for arg in shlex.split(self.extra_args))
        if self.packet_count is not None:
            parts.extend(["-c", str(int(self.packet_count))])
        parts.extend(["-i", shlex.quote(self.interface)])
        # tcpdump runs inside toolbox, which sees the host filesystem under /host.
        parts.extend(["-w", shlex.quote(TOOLBOX_HOST_PREFIX + self.output_path)])
        if self.capture_filter.strip():
            parts.append(shlex.quote(self.capture_filter.strip()))
        return " ".join(parts)


@dataclass(frozen=True)
class RetisJobSpec:
    image: str
    output_dir: str
    duration: int
    flow_filter: str = ""
    probe: str = ICV_PROBE
    collectors: str = DEFAULT_RETIS_COLLECTORS
    output_name: str = "retis_icv.data"
    # An empty profile or probe leaves retis on its built-in drop tracing.
    profile: str = "ifdump"

    @property
    def is_icv_probe(self) -> bool:
        return bool(self.probe) and probe_base(self.probe) == probe_base(ICV_PROBE)

    def tool_command(self) -> str:
        parts: List[str] = [
            "podman",
            "run",
            "--rm",
            "--privileged",
            "--pid=host",
            "--network=host",
            "-v",
            "/sys:/sys:ro",
            "-v",
            "/proc:/proc:ro",
            "-v",
            shlex.quote(f"{self.output_dir}:/output:rw"),
            shlex.quote(self.image),
        ]
        if self.profile:
            parts.extend(["-p", shlex.quote(self.profile)])
        parts.extend(["collect", "-c", shlex.quote(self.collectors), "--skb-sections", "all"])
        if self.probe:
            parts.extend(["-p", shlex.quote(self.probe)])
        parts.extend(["--allow-system-changes", "-o", shlex.quote(f"/output/{self.output_name}")])
        if self.flow_filter.strip():
            parts.extend(["-f", shlex.quote(self.flow_filter.strip())])
        return " ".join(parts)


def _timing_line(tag: str) -> str:
    return f'echo "{tag}: $(date -Iseconds)"'


def render_packet_capture_scripts(
    spec: TcpdumpJobSpec,
    remote_dir: str,
    timing_path: str,
    inner_path: str,
) -> Tuple[str, str]:
    """
    Render the node-side job script and the toolbox script it runs.

    The job script records remote-clock START/END lines around the capture and
    appends a directory listing to the timing file for later inspection.
    """
    directory = shlex.quote(remote_dir)
    timing = shlex.quote(timing_path)
    job_script = "\n".join(
        [
            "#!/bin/bash",
            f"mkdir -p {directory}",
            f"{_timing_line('START')} > {timing}",
            f"toolbox {shlex.quote(TOOLBOX_HOST_PREFIX + inner_path)} 2>&1 || true",
            f"{_timing_line('END')} >> {timing}",
            f"ls -la {directory}/ >> {timing} 2>&1",
            "",
        ]
    )
    inner_script = "\n".join(
        [
            "#!/bin/bash",
            f"timeout {int(spec.duration)} {spec.tool_command()}",
            "",
        ]
    )
    return job_script, inner_script


def render_trace_capture_script(spec: RetisJobSpec, remote_dir: str, timing_path: str, log_path: str) -> str:
    directory = shlex.quote(remote_dir)
    timing = shlex.quote(timing_path)
    lines = [
        "#!/bin/bash",
        f"mkdir -p {directory}",
        f"chmod 755 {directory}",
        f"{_timing_line('START')} > {timing}",
    ]
    if spec.probe:
        lines.append(f"echo {shlex.quote('PROBE: ' + spec.probe)} >> {timing}")
    lines.extend(
        [
            f"timeout {int(spec.duration)} {spec.tool_command()} 2>&1 | tee {shlex.quote(log_path)} || true",
            f"{_timing_line('END')} >> {timing}",
            "",
        ]
    )
    return "\n".join(lines)


def render_state_dump_script() -> str:
    return STATE_DUMP_SCRIPT


def split_state_dump(text: str) -> Dict[str, str]:
    """Split combined dump output into its ``=== Title ===`` sections, keyed by file stem."""
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped.startswith("=== ") and stripped.endswith(" ==="):
            current = STATE_DUMP_SECTIONS.get(stripped[4:-4])
            if current is not None:
                sections.setdefault(current, [])
            continue
        if current is not None:
            sections[current].append(line)
    return {stem: "\n".join(lines).strip() + "\n" for stem, lines in sections.items()}


def render_icv_count_script() -> str:
    patterns = " ".join(f"-e {shlex.quote(p)}" for p in ICV_LOG_PATTERNS)
    return f"echo {ICV_COUNT_MARKER} $(dmesg 2>/dev/null | grep -c {patterns})"


def parse_icv_count(output: str) -> Optional[int]:
    for line in (output or "").splitlines():
        fields = line.strip().split()
        if len(fields) == 2 and fields[0] == ICV_COUNT_MARKER and fields[1].isdigit():
            return int(fields[1])
    return None


def render_manual_commands(
    node1: str,
    node1_ip: str,
    node2: str,
    node2_ip: str,
    interface: str,
    remote_dir: str,
    local_dir: str = "/tmp/ipsec-captures",
    cli: str = "oc",
    namespace: str = "default",
) -> str:
    """Per-terminal commands for running the same captures by hand."""
    capture_filter = f"host {node1_ip} and host {node2_ip} and esp"
    rule = "=" * 80
    out: List[str] = [
        rule,
        "IPsec Capture Commands".center(80).rstrip(),
        rule,
        "",
        f"Node 1: {node1} ({node1_ip})",
        f"Node 2: {node2} ({node2_ip})",
        f"Interface: {interface}",
        f"Output: {remote_dir}",
        "",
        rule,
        "STEP 1: Open TWO separate terminal windows and run one block per terminal",
        rule,
    ]
    for index, (node, label) in enumerate(((node1, "node1"), (node2, "node2")), start=1):
        spec = TcpdumpJobSpec(
            label=label,
            interface=interface,
            capture_filter=capture_filter,
            output_path=f"{remote_dir}/{label}-esp.pcap",
            duration=0,
        )
        out.extend(
            [
                "",
                f"--- TERMINAL {index} ({node}) ---",
                f"{cli} debug -t node/{node} --to-namespace={namespace}",
                "# Wait for shell, then run:",
                "chroot /host",
                f"mkdir -p {shlex.quote(remote_dir)}",
                "toolbox",
                spec.tool_command(),
            ]
        )
    out.extend(
        [
            "",
            rule,
            "STEP 2: Generate traffic, then press Ctrl+C in both terminals to stop",
            rule,
            "",
            rule,
            "STEP 3: Retrieve the capture files",
            rule,
            "",
            f"mkdir -p {shlex.quote(local_dir)}",
        ]
    )
    for node, label in ((node1, "node1"), (node2, "node2")):
        remote = shlex.quote(f"{remote_dir}/{label}-esp.pcap")
        out.append(
            f"{cli} debug node/{node} --to-namespace={namespace} -- chroot /host base64 {remote}"
            f" | grep -v -e '^Starting pod' -e '^Removing debug' -e '^To use host'"
            f" | base64 -d > {shlex.quote(local_dir + '/' + label + '-esp.pcap')}"
        )
    out.extend(["", f"ls -lh {shlex.quote(local_dir)}/", "", rule])
    return "\n".join(out)
