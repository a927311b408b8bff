from __future__ import annotations

import datetime as dt
import logging
import posixpath
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ipsecdiag.config_loader import DiagnosticsSettings
from ipsecdiag.logging_setup import category_context, correlation_context
from ipsecdiag.progress import PHASE_CAPTURE, PHASE_RETRIEVAL, emit_progress, emit_tick, emit_warning
from ipsecdiag.services.coordinator import POLL_INTERVAL_SECONDS, SessionSetupError
from ipsecdiag.services.deployer import RETIS_LABEL, RETIS_LOG, RETIS_TIMING
from ipsecdiag.services.gateway import ClusterGateway, RemoteProcess
from ipsecdiag.services.job_specs import RetisJobSpec, render_trace_capture_script
from ipsecdiag.services.retrieval import ArtifactRequest, CapturedArtifact, RetrievalManager
from ipsecdiag.services.session import CaptureSession, session_timestamp
from ipsecdiag.services.transfer import TransferCodec, TransferError
from ipsecdiag.utils import ensure_dir

LOGGER = logging.getLogger(__name__)

DROP_DATA = "retis_drops.data"
# The remote job carries its own timeout; the local wait allows for container start-up on top.
WAIT_MARGIN_SECONDS = 30


@dataclass
class DropCaptureResult:
    session: CaptureSession
    stop_reason: Optional[str] = None
    error: Optional[str] = None
    artifacts: List[CapturedArtifact] = field(default_factory=list)
    cleaned_nodes: Dict[str, bool] = field(default_factory=dict)

    @property
    def data(self) -> Optional[CapturedArtifact]:
        for artifact in self.artifacts:
            if artifact.name == DROP_DATA:
                return artifact
        return None

    @property
    def successful(self) -> bool:
        return self.data is not None and self.data.present


class RetisDropCapture:
    """
    Single-node retis capture of every dropped packet (no ICV probe, no ifdump profile).

    Deploys one trace job, waits for it, then pulls the trace data back and removes
    the remote directory. Retrieval and cleanup run on every exit path.
    """

    def __init__(
        self,
        settings: DiagnosticsSettings,
        gateway: ClusterGateway,
        codec: Optional[TransferCodec] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.codec = codec or TransferCodec(gateway)
        self.retrieval = RetrievalManager(self.codec)
        self._sleep = sleep

    def prepare_session(self, node: str, flow_filter: str = "", now: Optional[dt.datetime] = None) -> CaptureSession:
        if not self.gateway.check_connectivity():
            raise SessionSetupError("Not connected to the cluster; log in first (oc login https://api.<cluster>:6443)")
        timestamp = session_timestamp(now)
        return CaptureSession(
            timestamp=timestamp,
            node1=node,
            node2=node,
            retis_node=node,
            node1_ip="",
            node2_ip="",
            retis_node_ip="",
            interface=self.settings.interface,
            duration=self.settings.duration,
            packet_count=None,
            capture_filter="",
            retis_filter=flow_filter.strip(),
            output_dir=self.settings.output / f"retis-capture-{timestamp}",
            remote_dir=posixpath.join(self.settings.remote_base, f"retis-capture-{timestamp}"),
        )

    def job_spec(self, session: CaptureSession) -> RetisJobSpec:
        return RetisJobSpec(
            image=self.settings.retis_image,
            output_dir=session.remote_dir,
            duration=session.duration,
            flow_filter=session.retis_filter,
            probe="",
            collectors=self.settings.retis_collectors,
            output_name=DROP_DATA,
            profile="",
        )

    def artifact_requests(self, session: CaptureSession) -> List[ArtifactRequest]:
        return [
            ArtifactRequest(name, session.retis_node, session.remote_path(name))
            for name in (DROP_DATA, RETIS_TIMING, RETIS_LOG)
        ]

    def run(self, session: CaptureSession) -> DropCaptureResult:
        result = DropCaptureResult(session=session)
        ensure_dir(session.output_dir)
        process: Optional[RemoteProcess] = None
        with correlation_context(session.timestamp), category_context("RETIS"):
            try:
                process = self._launch(session, result)
                if process is not None:
                    result.stop_reason = self._wait(session, process)
            except KeyboardInterrupt:
                result.stop_reason = "interrupted"
                emit_warning("Interrupted - stopping capture and cleaning up", phase=PHASE_CAPTURE)
                raise
            finally:
                if process is not None:
                    self._stop(process)
                emit_progress("Retrieving capture files...", phase=PHASE_RETRIEVAL)
                try:
                    result.artifacts = self.retrieval.retrieve(session, self.artifact_requests(session))
                finally:
                    result.cleaned_nodes = self.retrieval.cleanup(session)
                LOGGER.info(
                    "Drop capture finished ts=%s node=%s stop_reason=%s data=%s cleaned=%s",
                    session.timestamp,
                    session.retis_node,
                    result.stop_reason,
                    result.successful,
                    result.cleaned_nodes,
                    extra={"category": "RETIS"},
                )
        return result

    def _launch(self, session: CaptureSession, result: DropCaptureResult) -> Optional[RemoteProcess]:
        node = session.retis_node
        job_path = session.remote_path("retis-capture.sh")
        script = render_trace_capture_script(
            self.job_spec(session),
            remote_dir=session.remote_dir,
            timing_path=session.remote_path(RETIS_TIMING),
            log_path=session.remote_path(RETIS_LOG),
        )
        try:
            self.codec.deploy(node, script, job_path)
        except TransferError as exc:
            result.stop_reason = "deploy_failed"
            result.error = str(exc)
            emit_warning(f"Could not deploy retis job on {node}: {exc}", phase=PHASE_CAPTURE)
            return None
        emit_progress(f"Running Retis on {node} (this may take a moment to start the container)", phase=PHASE_CAPTURE)
        try:
            return self.gateway.spawn(
                node,
                f"bash {shlex.quote(job_path)}",
                session.local_path(f"{RETIS_LABEL}-gateway.log"),
                label=RETIS_LABEL,
            )
        except OSError as exc:
            LOGGER.error("Spawn failed node=%s error=%s", node, exc, extra={"category": "ERRORS"})
            result.stop_reason = "spawn_failed"
            result.error = str(exc)
            return None

    def _wait(self, session: CaptureSession, process: RemoteProcess) -> str:
        for remaining in range(session.duration + WAIT_MARGIN_SECONDS, 0, -1):
            if process.done():
                emit_progress("Capture finished.", phase=PHASE_CAPTURE)
                return "finished"
            emit_tick(f"Time remaining: {max(remaining - WAIT_MARGIN_SECONDS, 0):3d} seconds")
            self._sleep(POLL_INTERVAL_SECONDS)
        return "timeout"

    def _stop(self, process: RemoteProcess) -> None:
        returncode = process.stop(grace_seconds=self.settings.kill_grace_seconds)
        LOGGER.info("Retis job stopped rc=%s", returncode, extra={"category": "RETIS"})


def drop_analysis_commands(output_dir: Path, image: str) -> List[str]:
    data = f"/data/{DROP_DATA}"
    return [
        f"podman run --rm -v {output_dir}:/data:ro {image} sort {data}",
        f"podman run --rm -v {output_dir}:/data:ro {image} print {data}",
    ]
