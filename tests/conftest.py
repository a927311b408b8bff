from __future__ import annotations

import base64
import shlex
import struct
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest
from scapy.layers.inet import IP
from scapy.packet import Raw
from scapy.utils import PcapWriter

from ipsecdiag.config_loader import DiagnosticsSettings
from ipsecdiag.services.gateway import ClusterGateway, GatewayResult
from ipsecdiag.services.job_specs import ICV_COUNT_MARKER
from ipsecdiag.services.session import CaptureSession
from ipsecdiag.services.transfer import DEPLOYED, NOT_FOUND, PAYLOAD_BEGIN, PAYLOAD_END

BANNER_HEAD = "Starting pod/worker-debug-abcde ...\nTo use host binaries, run `chroot /host`\n"
BANNER_TAIL = "\nRemoving debug pod ...\n"
PCAP_HEADER = bytes.fromhex("d4c3b2a1020004000000000000000000ffff000065000000")


def write_esp_pcap(
    path: Path,
    seqs: Iterable[int],
    start: float = 1733427022.0,
    spi: int = 0xC0FFEE01,
    src: str = "10.0.0.1",
    dst: str = "10.0.0.2",
) -> Path:
    writer = PcapWriter(str(path), append=False, sync=True)
    for index, seq in enumerate(seqs):
        packet = IP(src=src, dst=dst, proto=50) / Raw(load=struct.pack("!II", spi, seq) + b"\x00" * 24)
        packet.time = start + index * 0.01
        writer.write(packet)
    writer.close()
    return path


class FakeProcess:
    def __init__(self, label: str, finish_after: Optional[int] = None, ignore_term: bool = False) -> None:
        self.label = label
        self.returncode: Optional[int] = None
        self.finish_after = finish_after
        self.ignore_term = ignore_term
        self.signals: List[str] = []
        self._polls = 0

    def poll(self) -> Optional[int]:
        if self.returncode is None and self.finish_after is not None:
            self._polls += 1
            if self._polls >= self.finish_after:
                self.returncode = 0
        return self.returncode

    def done(self) -> bool:
        return self.poll() is not None

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.ignore_term and self.returncode is None:
            self.returncode = -15

    def kill(self) -> None:
        self.signals.append("KILL")
        if self.returncode is None:
            self.returncode = -9

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        return self.returncode

    def stop(self, grace_seconds: float = 2.0) -> Optional[int]:
        if self.done():
            return self.returncode
        self.terminate()
        if self.returncode is None:
            self.kill()
        return self.returncode


class FakeGateway(ClusterGateway):
    """Answers remote scripts from in-memory state and records every call."""

    def __init__(self, ips: Optional[Dict[str, str]] = None, connected: bool = True) -> None:
        super().__init__(cli="oc")
        self.connected = connected
        self.ips = ips if ips is not None else {
            "worker1.example.com": "10.0.0.1",
            "worker2.example.com": "10.0.0.2",
        }
        self.remote_files: Dict[str, bytes] = {}
        self.calls: List[Tuple[str, str]] = []
        self.spawned: List[Tuple[str, str, FakeProcess]] = []
        self.icv_counts: List[int] = []
        self.fail_deploy_paths: List[str] = []
        self.fail_dump_nodes: List[str] = []
        self.process_factory: Callable[[str], FakeProcess] = lambda label: FakeProcess(label)

    def check_connectivity(self) -> bool:
        return self.connected

    def server(self) -> str:
        return "https://api.test:6443"

    def node_internal_ip(self, node: str) -> Optional[str]:
        return self.ips.get(node)

    def run(self, node: str, script: str, timeout: Optional[float] = None) -> GatewayResult:
        self.calls.append((node, script))
        if DEPLOYED in script:
            if any(shlex.quote(path) in script for path in self.fail_deploy_paths):
                return GatewayResult(1, BANNER_HEAD + "base64: invalid input" + BANNER_TAIL)
            return GatewayResult(0, BANNER_HEAD + DEPLOYED + BANNER_TAIL)
        if PAYLOAD_BEGIN in script:
            for path, data in self.remote_files.items():
                if f"[ -f {shlex.quote(path)} ]" in script:
                    body = base64.encodebytes(data).decode("ascii")
                    return GatewayResult(0, BANNER_HEAD + f"{PAYLOAD_BEGIN}\n{body}{PAYLOAD_END}" + BANNER_TAIL)
            return GatewayResult(0, BANNER_HEAD + NOT_FOUND + BANNER_TAIL)
        if ICV_COUNT_MARKER in script:
            count = self.icv_counts.pop(0) if self.icv_counts else 0
            return GatewayResult(0, BANNER_HEAD + f"{ICV_COUNT_MARKER} {count}" + BANNER_TAIL)
        if "=== XFRM State ===" in script:
            if node in self.fail_dump_nodes:
                return GatewayResult(1, BANNER_HEAD + "error: unable to create debug pod" + BANNER_TAIL)
            return GatewayResult(
                0,
                BANNER_HEAD + f"=== XFRM State ===\nsrc 10.0.0.1 dst 10.0.0.2 ({node})\n=== XFRM State Count ===\n2" + BANNER_TAIL,
            )
        return GatewayResult(0, BANNER_HEAD + BANNER_TAIL)

    def spawn(self, node: str, script: str, log_path: Path, label: str = "") -> FakeProcess:  # type: ignore[override]
        process = self.process_factory(label)
        self.spawned.append((node, script, process))
        return process

    def cleanup_calls(self) -> List[str]:
        return [node for node, script in self.calls if script.startswith("rm -rf")]


class LocalShellGateway(ClusterGateway):
    """Runs the generated scripts with the local bash; every node shares this host's filesystem."""

    def debug_argv(self, node: str, script: str) -> List[str]:
        return ["bash", "-c", script]

    def check_connectivity(self) -> bool:
        return True

    def node_internal_ip(self, node: str) -> Optional[str]:
        return "127.0.0.1"


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def local_gateway() -> LocalShellGateway:
    return LocalShellGateway(command_timeout=30)


@pytest.fixture
def settings(tmp_path: Path) -> DiagnosticsSettings:
    return DiagnosticsSettings(
        node1="worker1.example.com",
        node2="worker2.example.com",
        duration=5,
        output=tmp_path / "captures",
        remote_base=str(tmp_path / "remote"),
        settle_seconds=0,
        kill_grace_seconds=0.1,
    )


@pytest.fixture
def session(settings: DiagnosticsSettings) -> CaptureSession:
    return CaptureSession.from_settings(settings, "10.0.0.1", "10.0.0.2", "10.0.0.2")
