import datetime as dt
import shlex

import pytest

from ipsecdiag.services.coordinator import SessionSetupError
from ipsecdiag.services.drop_capture import DROP_DATA, WAIT_MARGIN_SECONDS, RetisDropCapture

from conftest import FakeGateway, FakeProcess

NOW = dt.datetime(2024, 12, 5, 14, 30, 22)
NODE = "worker1.example.com"
TRACE = b"\x00retis-drop-events" * 8


def _interrupting_sleep(after):
    calls = []

    def sleep(seconds):
        calls.append(seconds)
        if len(calls) >= after:
            raise KeyboardInterrupt

    return sleep


def test_session_layout(settings, fake_gateway) -> None:
    session = RetisDropCapture(settings, fake_gateway).prepare_session(NODE, " tcp port 443 ", now=NOW)

    assert session.remote_dir == f"{settings.remote_base}/retis-capture-20241205-143022"
    assert session.output_dir == settings.output / "retis-capture-20241205-143022"
    assert session.retis_filter == "tcp port 443"
    assert session.touched_nodes == [NODE]


def test_prepare_session_requires_cluster_login(settings) -> None:
    with pytest.raises(SessionSetupError, match="Not connected"):
        RetisDropCapture(settings, FakeGateway(connected=False)).prepare_session(NODE)


def test_job_traces_all_drops_without_icv_probe(settings, fake_gateway) -> None:
    capture = RetisDropCapture(settings, fake_gateway)
    session = capture.prepare_session(NODE, now=NOW)

    argv = shlex.split(capture.job_spec(session).tool_command())

    assert argv[argv.index("quay.io/retis/retis") + 1] == "collect"
    assert "-p" not in argv
    assert "-f" not in argv
    assert argv[-2:] == ["-o", f"/output/{DROP_DATA}"]


def test_finished_capture_is_retrieved_and_cleaned(settings, fake_gateway) -> None:
    fake_gateway.process_factory = lambda label: FakeProcess(label, finish_after=3)
    capture = RetisDropCapture(settings, fake_gateway, sleep=lambda seconds: None)
    session = capture.prepare_session(NODE, now=NOW)
    fake_gateway.remote_files[session.remote_path(DROP_DATA)] = TRACE

    result = capture.run(session)

    assert result.stop_reason == "finished"
    assert result.successful
    assert session.local_path(DROP_DATA).read_bytes() == TRACE
    assert [artifact.name for artifact in result.artifacts] == [DROP_DATA, "retis-timing.txt", "retis-output.log"]
    assert [(node, script) for node, script, _ in fake_gateway.spawned] == [
        (NODE, f"bash {session.remote_path('retis-capture.sh')}")
    ]
    assert fake_gateway.spawned[0][2].signals == []
    assert fake_gateway.cleanup_calls() == [NODE]
    assert result.cleaned_nodes == {NODE: True}


def test_wait_gives_up_after_duration_plus_margin(settings, fake_gateway) -> None:
    sleeps = []
    capture = RetisDropCapture(settings.model_copy(update={"duration": 2}), fake_gateway, sleep=sleeps.append)

    result = capture.run(capture.prepare_session(NODE, now=NOW))

    assert result.stop_reason == "timeout"
    assert len(sleeps) == 2 + WAIT_MARGIN_SECONDS
    assert fake_gateway.spawned[0][2].signals == ["TERM"]
    assert not result.successful


def test_interrupt_stops_job_and_still_cleans_up(settings, fake_gateway) -> None:
    fake_gateway.process_factory = lambda label: FakeProcess(label, ignore_term=True)
    capture = RetisDropCapture(settings, fake_gateway, sleep=_interrupting_sleep(2))
    session = capture.prepare_session(NODE, now=NOW)
    fake_gateway.remote_files[session.remote_path(DROP_DATA)] = TRACE

    with pytest.raises(KeyboardInterrupt):
        capture.run(session)

    assert fake_gateway.spawned[0][2].signals == ["TERM", "KILL"]
    assert session.local_path(DROP_DATA).read_bytes() == TRACE
    assert fake_gateway.cleanup_calls() == [NODE]


def test_deploy_failure_skips_launch_but_cleans_up(settings, fake_gateway) -> None:
    capture = RetisDropCapture(settings, fake_gateway)
    session = capture.prepare_session(NODE, now=NOW)
    fake_gateway.fail_deploy_paths.append(session.remote_path("retis-capture.sh"))

    result = capture.run(session)

    assert result.stop_reason == "deploy_failed"
    assert "Failed to deploy" in result.error
    assert fake_gateway.spawned == []
    assert fake_gateway.cleanup_calls() == [NODE]
