import datetime as dt

import pytest

from ipsecdiag.progress import progress_emitter_context
from ipsecdiag.services.coordinator import (
    CapturePhase,
    JobState,
    SessionSetupError,
    SynchronizedCaptureCoordinator,
)

from conftest import PCAP_HEADER, FakeGateway, FakeProcess

NOW = dt.datetime(2024, 12, 5, 14, 30, 22)


class RecordingSleep:
    def __init__(self, interrupt_after=None):
        self.calls = 0
        self.interrupt_after = interrupt_after

    def __call__(self, seconds):
        self.calls += 1
        if self.interrupt_after is not None and self.calls >= self.interrupt_after:
            raise KeyboardInterrupt


def _coordinator(settings, gateway, sleep=None):
    return SynchronizedCaptureCoordinator(settings, gateway, sleep=sleep or RecordingSleep())


def _publish_required(gateway: FakeGateway, session) -> None:
    for name in ("node1-esp.pcap", "node2-esp.pcap"):
        gateway.remote_files[session.remote_path(name)] = PCAP_HEADER
    for name in ("node1-timing.txt", "node2-timing.txt"):
        gateway.remote_files[session.remote_path(name)] = (
            b"START: 2024-12-05T14:30:25+00:00\nEND: 2024-12-05T14:30:55+00:00\n"
        )


def _spawned_labels(gateway: FakeGateway):
    return [process.label for _, _, process in gateway.spawned]


def test_prepare_session_resolves_ips_and_paths(settings, fake_gateway) -> None:
    session = _coordinator(settings, fake_gateway).prepare_session(now=NOW)

    assert session.timestamp == "20241205-143022"
    assert (session.node1_ip, session.node2_ip, session.retis_node_ip) == ("10.0.0.1", "10.0.0.2", "10.0.0.2")
    assert session.remote_dir == f"{settings.remote_base}/ipsec-diag-20241205-143022"
    assert session.output_dir == settings.output / "diag-20241205-143022"
    assert session.capture_filter == "host 10.0.0.1 and host 10.0.0.2 and esp"
    assert session.retis_filter == "src host 10.0.0.1 and dst host 10.0.0.2"


def test_prepare_session_requires_cluster_login(settings) -> None:
    with pytest.raises(SessionSetupError, match="Not connected"):
        _coordinator(settings, FakeGateway(connected=False)).prepare_session()


def test_prepare_session_requires_node_ips(settings) -> None:
    gateway = FakeGateway(ips={"worker1.example.com": "10.0.0.1"})
    with pytest.raises(SessionSetupError, match="Could not get node IPs"):
        _coordinator(settings, gateway).prepare_session()


def test_prepare_session_resolves_separate_retis_node(settings) -> None:
    gateway = FakeGateway(
        ips={"worker1.example.com": "10.0.0.1", "worker2.example.com": "10.0.0.2", "worker3.example.com": "10.0.0.3"}
    )
    session = _coordinator(settings.model_copy(update={"retis_node": "worker3.example.com"}), gateway).prepare_session()
    assert session.retis_node_ip == "10.0.0.3"
    assert session.touched_nodes == ["worker1.example.com", "worker2.example.com", "worker3.example.com"]

    with pytest.raises(SessionSetupError, match="retis node"):
        _coordinator(settings.model_copy(update={"retis_node": "worker9.example.com"}), gateway).prepare_session()


def test_duration_expiry_runs_every_phase_in_order(settings, fake_gateway) -> None:
    coordinator = _coordinator(settings, fake_gateway)
    session = coordinator.prepare_session(now=NOW)
    _publish_required(fake_gateway, session)
    events = []

    with progress_emitter_context(events.append):
        result = coordinator.run(session)

    assert result.phases == [
        CapturePhase.IDLE,
        CapturePhase.DUMPING_BEFORE,
        CapturePhase.CAPTURING,
        CapturePhase.DUMPING_AFTER,
        CapturePhase.CLEANING,
        CapturePhase.DONE,
    ]
    assert result.stop_reason == "duration"
    assert result.status == "successful"
    assert _spawned_labels(fake_gateway) == ["node1", "node2", "retis"]
    assert [job.state for job in result.jobs] == [JobState.KILLED] * 3
    assert all(process.signals == ["TERM"] for _, _, process in fake_gateway.spawned)
    assert fake_gateway.cleanup_calls() == [session.node1, session.node2]
    assert result.jobs[0].started_at == "2024-12-05T14:30:25+00:00"
    assert session.local_path("sync-time.txt").is_file()
    ticks = [event.message for event in events if event.is_tick]
    assert ticks[0] == "Time remaining:   5 seconds | Running: 3"
    assert len(ticks) == 5


def test_capture_jobs_launch_before_any_polling(settings, fake_gateway) -> None:
    order = []

    class TracingGateway(FakeGateway):
        def spawn(self, node, script, log_path, label=""):
            order.append(("spawn", label))
            return super().spawn(node, script, log_path, label=label)

    gateway = TracingGateway()

    def sleep(seconds):
        order.append(("sleep", seconds))

    coordinator = SynchronizedCaptureCoordinator(settings, gateway, sleep=sleep)
    coordinator.run(coordinator.prepare_session(now=NOW))

    assert order[:3] == [("spawn", "node1"), ("spawn", "node2"), ("spawn", "retis")]
    scripts = [script for _, script, _ in gateway.spawned]
    assert scripts[0].startswith("bash ") and scripts[0].endswith("/node1-capture.sh")


def test_all_jobs_finishing_early_ends_window(settings, fake_gateway) -> None:
    fake_gateway.process_factory = lambda label: FakeProcess(label, finish_after=2)
    sleep = RecordingSleep()
    coordinator = _coordinator(settings.model_copy(update={"duration": 30}), fake_gateway, sleep)

    result = coordinator.run(coordinator.prepare_session(now=NOW))

    assert result.stop_reason == "all_finished"
    assert sleep.calls == 1
    assert [job.state for job in result.jobs] == [JobState.FINISHED] * 3
    assert all(process.signals == [] for _, _, process in fake_gateway.spawned)
    assert result.status == "degraded"


def test_interrupt_stops_jobs_and_still_cleans_up(settings, fake_gateway) -> None:
    fake_gateway.process_factory = lambda label: FakeProcess(label, ignore_term=label == "retis")
    coordinator = _coordinator(settings, fake_gateway, RecordingSleep(interrupt_after=2))
    session = coordinator.prepare_session(now=NOW)
    _publish_required(fake_gateway, session)

    with pytest.raises(KeyboardInterrupt):
        coordinator.run(session)

    signals = {process.label: process.signals for _, _, process in fake_gateway.spawned}
    assert signals == {"node1": ["TERM"], "node2": ["TERM"], "retis": ["TERM", "KILL"]}
    assert fake_gateway.cleanup_calls() == [session.node1, session.node2]
    # Partial results are still pulled back before the remote directory goes.
    assert session.local_path("node1-esp.pcap").read_bytes() == PCAP_HEADER
    assert not session.local_path("xfrm-worker1-end.txt").exists()
    assert session.local_path("xfrm-worker1-start.txt").exists()


def test_interrupt_during_settle_wait_still_signals_jobs(settings, fake_gateway) -> None:
    settings = settings.model_copy(update={"duration": 2, "settle_seconds": 5})
    # Two countdown ticks, then the first settle sleep is interrupted.
    coordinator = _coordinator(settings, fake_gateway, RecordingSleep(interrupt_after=3))
    session = coordinator.prepare_session(now=NOW)

    with pytest.raises(KeyboardInterrupt):
        coordinator.run(session)

    signals = {process.label: process.signals for _, _, process in fake_gateway.spawned}
    assert signals == {"node1": ["TERM"], "node2": ["TERM"], "retis": ["TERM"]}
    assert fake_gateway.cleanup_calls() == [session.node1, session.node2]


def test_interrupt_between_spawns_stops_launched_jobs(settings) -> None:
    class InterruptingGateway(FakeGateway):
        def spawn(self, node, script, log_path, label=""):
            if label == "node2":
                raise KeyboardInterrupt
            return super().spawn(node, script, log_path, label=label)

    gateway = InterruptingGateway()
    coordinator = _coordinator(settings, gateway)
    session = coordinator.prepare_session(now=NOW)

    with pytest.raises(KeyboardInterrupt):
        coordinator.run(session)

    assert [(process.label, process.signals) for _, _, process in gateway.spawned] == [("node1", ["TERM"])]
    assert gateway.cleanup_calls() == [session.node1, session.node2]


def test_icv_threshold_stops_capture_cumulative(settings, fake_gateway) -> None:
    fake_gateway.icv_counts = [0, 5]
    settings = settings.model_copy(update={"monitor_icv": True, "icv_threshold": 3, "icv_sample_interval": 1})
    coordinator = _coordinator(settings, fake_gateway)

    result = coordinator.run(coordinator.prepare_session(now=NOW))

    assert result.stop_reason == "icv_threshold"
    assert result.icv_count == 5
    assert result.icv_baseline is None
    assert all(process.signals == ["TERM"] for _, _, process in fake_gateway.spawned)
    assert result.phases[-1] == CapturePhase.DONE


def test_icv_session_mode_subtracts_baseline(settings, fake_gateway) -> None:
    fake_gateway.icv_counts = [10, 11, 14]
    settings = settings.model_copy(
        update={"monitor_icv": True, "icv_threshold": 3, "icv_sample_interval": 1, "icv_mode": "session"}
    )
    coordinator = _coordinator(settings, fake_gateway)

    result = coordinator.run(coordinator.prepare_session(now=NOW))

    assert result.icv_baseline == 10
    assert result.icv_count == 4
    assert result.stop_reason == "icv_threshold"


def test_icv_below_threshold_runs_full_duration(settings, fake_gateway) -> None:
    fake_gateway.icv_counts = [1, 1, 2, 2, 2]
    settings = settings.model_copy(update={"monitor_icv": True, "icv_threshold": 3, "icv_sample_interval": 1})
    coordinator = _coordinator(settings, fake_gateway)

    result = coordinator.run(coordinator.prepare_session(now=NOW))

    assert result.stop_reason == "duration"
    assert result.icv_count == 2


def test_deploy_failure_skips_only_that_job(settings, fake_gateway) -> None:
    coordinator = _coordinator(settings, fake_gateway)
    session = coordinator.prepare_session(now=NOW)
    fake_gateway.fail_deploy_paths.append(session.remote_path("node2-tcpdump.sh"))

    result = coordinator.run(session)

    states = {job.label: job.state for job in result.jobs}
    assert states == {"node1": JobState.KILLED, "node2": JobState.FAILED, "retis": JobState.KILLED}
    assert _spawned_labels(fake_gateway) == ["node1", "retis"]
    assert result.status == "degraded"
    assert fake_gateway.cleanup_calls() == [session.node1, session.node2]


def test_state_dumps_are_saved_without_banner(settings, fake_gateway) -> None:
    fake_gateway.fail_dump_nodes.append("worker2.example.com")
    coordinator = _coordinator(settings, fake_gateway)
    session = coordinator.prepare_session(now=NOW)

    coordinator.run(session)

    start = session.local_path("xfrm-worker1-start.txt").read_text(encoding="utf-8")
    assert start.startswith("=== XFRM State ===")
    assert "Starting pod" not in start and "Removing debug" not in start
    assert session.local_path("xfrm-worker1-end.txt").exists()
    assert not session.local_path("xfrm-worker2-start.txt").exists()


def test_same_node_is_dumped_once(settings, fake_gateway) -> None:
    settings = settings.model_copy(update={"node2": "worker1.example.com", "retis_node": "worker1.example.com"})
    coordinator = _coordinator(settings, fake_gateway)
    session = coordinator.prepare_session(now=NOW)

    coordinator.run(session)

    dumps = [node for node, script in fake_gateway.calls if "=== XFRM State ===" in script]
    assert dumps == ["worker1.example.com", "worker1.example.com"]
    assert fake_gateway.cleanup_calls() == ["worker1.example.com"]
