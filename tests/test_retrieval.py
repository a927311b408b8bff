from pathlib import Path

import pytest

from ipsecdiag.progress import progress_emitter_context
from ipsecdiag.services.retrieval import RetrievalManager, read_timing_file
from ipsecdiag.services.session import CaptureSession
from ipsecdiag.services.transfer import FAILED, FOUND, INVALID, MISSING, TransferCodec

from conftest import PCAP_HEADER, FakeGateway


def test_missing_artifacts_do_not_stop_retrieval(fake_gateway: FakeGateway, session: CaptureSession) -> None:
    fake_gateway.remote_files[session.remote_path("node1-esp.pcap")] = PCAP_HEADER
    fake_gateway.remote_files[session.remote_path("node2-timing.txt")] = b"START: 2024-12-05T14:30:22+00:00\n"
    events = []

    with progress_emitter_context(events.append):
        artifacts = RetrievalManager(TransferCodec(fake_gateway)).retrieve(session)

    by_name = {artifact.name: artifact for artifact in artifacts}
    assert list(by_name) == [
        "node1-esp.pcap",
        "node1-timing.txt",
        "node2-esp.pcap",
        "node2-timing.txt",
        "retis_icv.data",
        "retis-timing.txt",
        "retis-output.log",
    ]
    assert by_name["node1-esp.pcap"].present
    assert by_name["node2-timing.txt"].present
    assert by_name["node2-esp.pcap"].status == MISSING
    assert not session.local_path("node2-esp.pcap").exists()
    assert session.local_path("node1-esp.pcap").read_bytes() == PCAP_HEADER
    assert by_name["retis_icv.data"].node == session.retis_node
    assert any(event.is_warning and "node2-esp.pcap" in event.message for event in events)


def test_invalid_pcap_is_not_written(fake_gateway: FakeGateway, session: CaptureSession) -> None:
    fake_gateway.remote_files[session.remote_path("node1-esp.pcap")] = b"tcpdump: br-ex: No such device exists\n"

    artifacts = RetrievalManager(TransferCodec(fake_gateway)).retrieve(session)

    assert artifacts[0].status == INVALID
    assert not artifacts[0].present
    assert not session.local_path("node1-esp.pcap").exists()


def test_fetch_exception_is_recorded_and_retrieval_continues(session: CaptureSession) -> None:
    class FlakyCodec(TransferCodec):
        def fetch(self, node, remote_path, magic=None):
            if remote_path.endswith("node1-esp.pcap"):
                raise RuntimeError("connection reset")
            return super().fetch(node, remote_path, magic=magic)

    gateway = FakeGateway()
    gateway.remote_files[session.remote_path("node2-esp.pcap")] = PCAP_HEADER

    artifacts = RetrievalManager(FlakyCodec(gateway)).retrieve(session)

    statuses = {artifact.name: artifact.status for artifact in artifacts}
    assert statuses["node1-esp.pcap"] == FAILED
    assert statuses["node2-esp.pcap"] == FOUND
    assert len(artifacts) == 7


def test_skip_retis_fetches_only_packet_artifacts(settings, fake_gateway: FakeGateway) -> None:
    session = CaptureSession.from_settings(settings.model_copy(update={"skip_retis": True}), "10.0.0.1", "10.0.0.2", "")

    artifacts = RetrievalManager(TransferCodec(fake_gateway)).retrieve(session)

    assert [artifact.name for artifact in artifacts] == [
        "node1-esp.pcap",
        "node1-timing.txt",
        "node2-esp.pcap",
        "node2-timing.txt",
    ]


def test_cleanup_runs_once_per_touched_node(fake_gateway: FakeGateway, session: CaptureSession) -> None:
    cleaned = RetrievalManager(TransferCodec(fake_gateway)).cleanup(session)

    assert cleaned == {session.node1: True, session.node2: True}
    assert fake_gateway.cleanup_calls() == [session.node1, session.node2]
    assert all(session.remote_dir in script for _, script in fake_gateway.calls)


def test_cleanup_happens_even_when_retrieval_raises(fake_gateway: FakeGateway, session: CaptureSession) -> None:
    class BrokenManager(RetrievalManager):
        def retrieve(self, session, requests=None):
            raise OSError("disk full")

    manager = BrokenManager(TransferCodec(fake_gateway))
    with pytest.raises(OSError):
        manager.retrieve_and_cleanup(session)

    assert fake_gateway.cleanup_calls() == [session.node1, session.node2]


def test_read_timing_file(tmp_path: Path) -> None:
    path = tmp_path / "retis-timing.txt"
    path.write_text(
        "START: 2024-12-05T14:30:22+00:00\n"
        "PROBE: xfrm_audit_state_icvfail/stack\n"
        "END: 2024-12-05T14:30:52+00:00\n"
        "total 12\n",
        encoding="utf-8",
    )

    assert read_timing_file(path) == {
        "START": "2024-12-05T14:30:22+00:00",
        "PROBE": "xfrm_audit_state_icvfail/stack",
        "END": "2024-12-05T14:30:52+00:00",
    }
    assert read_timing_file(tmp_path / "missing.txt") == {}
