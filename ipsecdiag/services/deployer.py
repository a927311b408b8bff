from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import Dict, List

from ipsecdiag.config_loader import ICV_PROBE, DiagnosticsSettings
from ipsecdiag.services.job_specs import (
    RetisJobSpec,
    TcpdumpJobSpec,
    render_packet_capture_scripts,
    render_trace_capture_script,
)
from ipsecdiag.services.session import CaptureSession
from ipsecdiag.services.transfer import TransferCodec

LOGGER = logging.getLogger(__name__)

RETIS_LABEL = "retis"
RETIS_DATA = "retis_icv.data"
RETIS_TIMING = "retis-timing.txt"
RETIS_LOG = "retis-output.log"


def pcap_name(label: str) -> str:
    return f"{label}-esp.pcap"


def timing_name(label: str) -> str:
    return f"{label}-timing.txt"


@dataclass
class DeployedJob:
    label: str
    node: str
    launch_command: str
    scripts: List[str]
    outputs: Dict[str, str] = field(default_factory=dict)


class CaptureJobDeployer:
    """Renders capture scripts for a session and places them in the node's remote directory."""

    def __init__(self, codec: TransferCodec, session: CaptureSession, settings: DiagnosticsSettings) -> None:
        self.codec = codec
        self.session = session
        self.settings = settings

    def tcpdump_spec(self, label: str) -> TcpdumpJobSpec:
        return TcpdumpJobSpec(
            label=label,
            interface=self.session.interface,
            capture_filter=self.session.capture_filter,
            output_path=self.session.remote_path(pcap_name(label)),
            duration=self.session.duration,
            packet_count=self.session.packet_count,
            extra_args=self.settings.tcpdump_extra,
        )

    def retis_spec(self) -> RetisJobSpec:
        return RetisJobSpec(
            image=self.settings.retis_image,
            output_dir=self.session.remote_dir,
            duration=self.session.duration,
            flow_filter=self.session.retis_filter,
            probe=self.settings.retis_probe,
            collectors=self.settings.retis_collectors,
            output_name=RETIS_DATA,
        )

    def deploy_packet_capture(self, label: str, node: str) -> DeployedJob:
        spec = self.tcpdump_spec(label)
        job_path = self.session.remote_path(f"{label}-capture.sh")
        inner_path = self.session.remote_path(f"{label}-tcpdump.sh")
        timing_path = self.session.remote_path(timing_name(label))
        job_script, inner_script = render_packet_capture_scripts(
            spec,
            remote_dir=self.session.remote_dir,
            timing_path=timing_path,
            inner_path=inner_path,
        )
        self.codec.deploy(node, inner_script, inner_path)
        self.codec.deploy(node, job_script, job_path)
        LOGGER.info(
            "Packet capture deployed label=%s node=%s command=%s",
            label,
            node,
            spec.tool_command(),
            extra={"category": "CAPTURE"},
        )
        return DeployedJob(
            label=label,
            node=node,
            launch_command=f"bash {shlex.quote(job_path)}",
            scripts=[job_path, inner_path],
            outputs={
                pcap_name(label): spec.output_path,
                timing_name(label): timing_path,
            },
        )

    def deploy_trace_capture(self, node: str) -> DeployedJob:
        spec = self.retis_spec()
        if not spec.is_icv_probe:
            LOGGER.warning(
                "Retis probe=%s is not the ICV failure probe=%s; drops caused by ICV failures will not be isolated",
                spec.probe,
                ICV_PROBE,
                extra={"category": "RETIS"},
            )
        job_path = self.session.remote_path("retis-capture.sh")
        timing_path = self.session.remote_path(RETIS_TIMING)
        log_path = self.session.remote_path(RETIS_LOG)
        script = render_trace_capture_script(
            spec,
            remote_dir=self.session.remote_dir,
            timing_path=timing_path,
            log_path=log_path,
        )
        self.codec.deploy(node, script, job_path)
        LOGGER.info("Trace capture deployed node=%s probe=%s", node, spec.probe, extra={"category": "RETIS"})
        return DeployedJob(
            label=RETIS_LABEL,
            node=node,
            launch_command=f"bash {shlex.quote(job_path)}",
            scripts=[job_path],
            outputs={
                RETIS_DATA: self.session.remote_path(RETIS_DATA),
                RETIS_TIMING: timing_path,
                RETIS_LOG: log_path,
            },
        )
