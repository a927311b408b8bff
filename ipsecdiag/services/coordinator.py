from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ipsecdiag.config_loader import DiagnosticsSettings
from ipsecdiag.logging_setup import category_context, correlation_context
from ipsecdiag.progress import PHASE_CAPTURE, PHASE_RETRIEVAL, PHASE_XFRM, emit_progress, emit_tick, emit_warning
from ipsecdiag.services.deployer import RETIS_LABEL, RETIS_TIMING, CaptureJobDeployer, DeployedJob, timing_name
from ipsecdiag.services.gateway import ClusterGateway, RemoteProcess
from ipsecdiag.services.job_specs import parse_icv_count, render_icv_count_script
from ipsecdiag.services.retrieval import REQUIRED_ARTIFACTS, CapturedArtifact, RetrievalManager, read_timing_file
from ipsecdiag.services.session import CaptureSession
from ipsecdiag.services.transfer import TransferCodec, TransferError
from ipsecdiag.services.xfrm_dump import XfrmStateDumper
from ipsecdiag.utils import ensure_dir

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1
SYNC_TIME_FILE = "sync-time.txt"


class SessionSetupError(RuntimeError):
    pass


class CapturePhase(str, Enum):
    IDLE = "idle"
    DUMPING_BEFORE = "dumping_before"
    CAPTURING = "capturing"
    DUMPING_AFTER = "dumping_after"
    CLEANING = "cleaning"
    DONE = "done"
    ABORTED = "aborted"


class JobKind(str, Enum):
    STATE_DUMP_BEFORE = "state_dump_before"
    STATE_DUMP_AFTER = "state_dump_after"
    PACKET_CAPTURE = "packet_capture"
    TRACE_CAPTURE = "trace_capture"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    KILLED = "killed"
    FAILED = "failed"


@dataclass
class CaptureJob:
    kind: JobKind
    node: str
    label: str
    remote_outputs: List[str] = field(default_factory=list)
    deployed: Optional[DeployedJob] = None
    process: Optional[RemoteProcess] = None
    state: JobState = JobState.PENDING
    signaled: bool = False
    error: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None

    def done(self) -> bool:
        return self.process is None or self.process.done()


@dataclass
class SessionResult:
    session: CaptureSession
    phases: List[CapturePhase] = field(default_factory=list)
    stop_reason: Optional[str] = None
    icv_count: Optional[int] = None
    icv_baseline: Optional[int] = None
    jobs: List[CaptureJob] = field(default_factory=list)
    artifacts: List[CapturedArtifact] = field(default_factory=list)
    cleaned_nodes: Dict[str, bool] = field(default_factory=dict)
    status: str = "degraded"

    @property
    def phase(self) -> CapturePhase:
        return self.phases[-1] if self.phases else CapturePhase.IDLE


class SynchronizedCaptureCoordinator:
    """
    Drives one diagnostics session across the sender, receiver and retis nodes.

    Phases run strictly in order: state dump (start), the concurrent capture
    window, state dump (end), then retrieval and remote cleanup. Cleanup runs
    on every exit path, including an interrupt during the capture window.
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
        self.dumper = XfrmStateDumper(gateway)
        self._sleep = sleep

    def prepare_session(self, now: Optional[dt.datetime] = None) -> CaptureSession:
        with category_context("CLUSTER"):
            if not self.gateway.check_connectivity():
                raise SessionSetupError("Not connected to the cluster; log in first (oc login https://api.<cluster>:6443)")

            node1_ip = self.gateway.node_internal_ip(self.settings.node1)
            node2_ip = self.gateway.node_internal_ip(self.settings.node2)
            if not node1_ip or not node2_ip:
                raise SessionSetupError("Could not get node IPs")

            retis_node = self.settings.effective_retis_node
            retis_ip: Optional[str] = {self.settings.node1: node1_ip, self.settings.node2: node2_ip}.get(retis_node)
            if retis_ip is None and not self.settings.skip_retis:
                retis_ip = self.gateway.node_internal_ip(retis_node)
                if not retis_ip:
                    raise SessionSetupError(f"Could not get IP for retis node {retis_node}")

        session = CaptureSession.from_settings(self.settings, node1_ip, node2_ip, retis_ip or "", now=now)
        LOGGER.info(
            "Session prepared ts=%s node1=%s/%s node2=%s/%s retis=%s remote_dir=%s output=%s",
            session.timestamp,
            session.node1,
            node1_ip,
            session.node2,
            node2_ip,
            "skipped" if session.skip_retis else f"{session.retis_node}/{retis_ip}",
            session.remote_dir,
            session.output_dir,
            extra={"category": "CLUSTER"},
        )
        return session

    def _transition(self, result: SessionResult, phase: CapturePhase) -> None:
        LOGGER.info("Phase transition %s -> %s", result.phase.value, phase.value, extra={"category": "CAPTURE"})
        result.phases.append(phase)

    def run(self, session: CaptureSession) -> SessionResult:
        result = SessionResult(session=session, phases=[CapturePhase.IDLE])
        ensure_dir(session.output_dir)
        interrupted = False
        with correlation_context(session.timestamp):
            try:
                self._transition(result, CapturePhase.DUMPING_BEFORE)
                self._dump_state(session, "start")

                self._transition(result, CapturePhase.CAPTURING)
                self._capture(session, result)

                self._transition(result, CapturePhase.DUMPING_AFTER)
                self._dump_state(session, "end")
            except KeyboardInterrupt:
                interrupted = True
                result.stop_reason = "interrupted"
                self._transition(result, CapturePhase.ABORTED)
                emit_warning("Interrupted - stopping captures and cleaning up", phase=PHASE_CAPTURE)
                raise
            finally:
                if not interrupted:
                    self._transition(result, CapturePhase.CLEANING)
                self._retrieve_and_clean(session, result)
                self._finalize(result, interrupted)
        return result

    def _dump_state(self, session: CaptureSession, suffix: str) -> None:
        with category_context("XFRM"):
            for node in session.state_dump_nodes:
                text = self.dumper.dump(node, suffix)
                if text is None:
                    continue
                target = session.local_path(f"xfrm-{session.short_name(node)}-{suffix}.txt")
                target.write_text(text + "\n", encoding="utf-8")
                LOGGER.info("XFRM dump saved node=%s path=%s", node, target, extra={"category": "XFRM"})
                emit_progress(f"Saved: {target.name}", phase=PHASE_XFRM)

    def _plan_jobs(self, session: CaptureSession) -> List[CaptureJob]:
        jobs = [
            CaptureJob(JobKind.PACKET_CAPTURE, session.node1, "node1"),
            CaptureJob(JobKind.PACKET_CAPTURE, session.node2, "node2"),
        ]
        if not session.skip_retis:
            jobs.append(CaptureJob(JobKind.TRACE_CAPTURE, session.retis_node, RETIS_LABEL))
        return jobs

    def _deploy(self, deployer: CaptureJobDeployer, job: CaptureJob) -> None:
        try:
            if job.kind == JobKind.TRACE_CAPTURE:
                job.deployed = deployer.deploy_trace_capture(job.node)
            else:
                job.deployed = deployer.deploy_packet_capture(job.label, job.node)
        except TransferError as exc:
            job.state = JobState.FAILED
            job.error = str(exc)
            emit_warning(f"Could not deploy {job.label} job on {job.node}: {exc}", phase=PHASE_CAPTURE)
            return
        job.remote_outputs = list(job.deployed.outputs.values())

    def _capture(self, session: CaptureSession, result: SessionResult) -> None:
        deployer = CaptureJobDeployer(self.codec, session, self.settings)
        jobs = self._plan_jobs(session)
        result.jobs = jobs

        if self.settings.monitor_icv and self.settings.icv_mode == "session":
            result.icv_baseline = self._sample_icv(session) or 0
            LOGGER.info("ICV baseline node=%s count=%s", session.retis_node, result.icv_baseline, extra={"category": "RETIS"})

        if not session.skip_retis and not deployer.retis_spec().is_icv_probe:
            emit_warning(f"WARNING: retis probe {self.settings.retis_probe} is not the ICV failure probe", phase=PHASE_CAPTURE)

        for job in jobs:
            self._deploy(deployer, job)

        sync_time = dt.datetime.now().astimezone().isoformat(timespec="seconds")
        session.local_path(SYNC_TIME_FILE).write_text(sync_time + "\n", encoding="utf-8")
        emit_progress(f"Capture start time: {sync_time}", phase=PHASE_CAPTURE)

        # Every spawned job must be signalled before remote cleanup, whichever step is interrupted.
        try:
            self._launch(session, jobs, sync_time)
            result.stop_reason = self._poll(session, jobs, result)
            self._stop_jobs(jobs, settle=result.stop_reason == "duration")
        except KeyboardInterrupt:
            self._stop_jobs(jobs, settle=False)
            raise

    def _launch(self, session: CaptureSession, jobs: List[CaptureJob], sync_time: str) -> None:
        # Launch back-to-back; nothing else may block between spawns.
        for job in jobs:
            if job.state != JobState.PENDING or job.deployed is None:
                continue
            try:
                job.process = self.gateway.spawn(
                    job.node,
                    job.deployed.launch_command,
                    session.local_path(f"{job.label}-gateway.log"),
                    label=job.label,
                )
            except OSError as exc:
                LOGGER.error("Spawn failed label=%s node=%s error=%s", job.label, job.node, exc, extra={"category": "ERRORS"})
                job.state = JobState.FAILED
                job.error = str(exc)
                continue
            job.state = JobState.RUNNING

        LOGGER.info(
            "Capture jobs launched sync_time=%s jobs=%s",
            sync_time,
            {job.label: job.state.value for job in jobs},
            extra={"category": "CAPTURE"},
        )

    def _sample_icv(self, session: CaptureSession) -> Optional[int]:
        gateway_result = self.gateway.run(session.retis_node, render_icv_count_script(), timeout=120)
        count = parse_icv_count(gateway_result.output)
        if count is None:
            LOGGER.warning(
                "ICV count unavailable node=%s rc=%s",
                session.retis_node,
                gateway_result.returncode,
                extra={"category": "RETIS"},
            )
        return count

    def _poll(self, session: CaptureSession, jobs: List[CaptureJob], result: SessionResult) -> str:
        running_jobs = [job for job in jobs if job.process is not None]
        interval = self.settings.icv_sample_interval
        for remaining in range(session.duration, 0, -1):
            running = sum(1 for job in running_jobs if not job.done())
            if running == 0:
                emit_progress("All captures completed", phase=PHASE_CAPTURE)
                return "all_finished"

            if self.settings.monitor_icv and remaining % interval == 0:
                raw = self._sample_icv(session)
                if raw is not None:
                    baseline = result.icv_baseline or 0
                    result.icv_count = max(0, raw - baseline) if self.settings.icv_mode == "session" else raw
                    if result.icv_count >= self.settings.icv_threshold:
                        LOGGER.warning(
                            "ICV threshold reached count=%s threshold=%s mode=%s",
                            result.icv_count,
                            self.settings.icv_threshold,
                            self.settings.icv_mode,
                            extra={"category": "RETIS"},
                        )
                        emit_warning(
                            f"ICV failure threshold reached ({result.icv_count} failures) - stopping captures",
                            phase=PHASE_CAPTURE,
                        )
                        return "icv_threshold"

            status = f"Time remaining: {remaining:3d} seconds | Running: {running}"
            if self.settings.monitor_icv:
                status += f" | ICV failures: {result.icv_count or 0}"
            emit_tick(status)
            self._sleep(POLL_INTERVAL_SECONDS)
        return "duration"

    def _stop_jobs(self, jobs: List[CaptureJob], settle: bool) -> None:
        active = [job for job in jobs if job.process is not None]
        if settle:
            # Remote jobs carry their own timeout; give them a chance to write END lines.
            waited = 0.0
            while waited < self.settings.settle_seconds and not all(job.done() for job in active):
                self._sleep(POLL_INTERVAL_SECONDS)
                waited += POLL_INTERVAL_SECONDS

        alive = [job for job in active if not job.done()]
        for job in alive:
            job.signaled = True
            job.process.terminate()
        deadline = time.monotonic() + max(0.1, self.settings.kill_grace_seconds)
        for job in alive:
            job.process.wait(timeout=max(0.0, deadline - time.monotonic()))
        for job in alive:
            if not job.done():
                job.process.kill()
                job.process.wait(timeout=5.0)

        for job in active:
            if job.signaled:
                job.state = JobState.KILLED
            elif job.process.returncode == 0:
                job.state = JobState.FINISHED
            else:
                job.state = JobState.FAILED
                job.error = f"exit code {job.process.returncode}"
            LOGGER.info(
                "Job stopped label=%s node=%s state=%s rc=%s",
                job.label,
                job.node,
                job.state.value,
                job.process.returncode,
                extra={"category": "CAPTURE"},
            )
        emit_progress("All capture processes finished.", phase=PHASE_CAPTURE)

    def _retrieve_and_clean(self, session: CaptureSession, result: SessionResult) -> None:
        emit_progress("Retrieving capture files...", phase=PHASE_RETRIEVAL)
        try:
            result.artifacts, result.cleaned_nodes = self.retrieval.retrieve_and_cleanup(session)
        except Exception:
            # retrieve_and_cleanup already cleaned in its own finally block.
            LOGGER.exception("Retrieval failed session=%s", session.timestamp, extra={"category": "ERRORS"})
        for job in result.jobs:
            timing_file = RETIS_TIMING if job.label == RETIS_LABEL else timing_name(job.label)
            timing = read_timing_file(session.local_path(timing_file))
            job.started_at = timing.get("START")
            job.ended_at = timing.get("END")

    def _finalize(self, result: SessionResult, interrupted: bool) -> None:
        present = {artifact.name for artifact in result.artifacts if artifact.present}
        if interrupted:
            result.status = "aborted"
        else:
            result.status = "successful" if all(name in present for name in REQUIRED_ARTIFACTS) else "degraded"
            self._transition(result, CapturePhase.DONE)
        LOGGER.info(
            "Session finished ts=%s status=%s stop_reason=%s icv=%s cleaned=%s",
            result.session.timestamp,
            result.status,
            result.stop_reason,
            result.icv_count,
            result.cleaned_nodes,
            extra={"category": "CAPTURE"},
        )
