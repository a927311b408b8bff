from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ipsecdiag.progress import PHASE_RETRIEVAL, emit_progress, emit_warning
from ipsecdiag.services.deployer import RETIS_DATA, RETIS_LOG, RETIS_TIMING, pcap_name, timing_name
from ipsecdiag.services.session import CaptureSession
from ipsecdiag.services.transfer import FAILED, FOUND, PCAP_MAGICS, TransferCodec
from ipsecdiag.utils import ensure_dir, human_size

LOGGER = logging.getLogger(__name__)

REQUIRED_ARTIFACTS = (
    pcap_name("node1"),
    pcap_name("node2"),
    timing_name("node1"),
    timing_name("node2"),
)


@dataclass(frozen=True)
class ArtifactRequest:
    name: str
    node: str
    remote_path: str
    magic: Optional[Tuple[bytes, ...]] = None


@dataclass
class CapturedArtifact:
    name: str
    node: str
    remote_path: str
    local_path: Path
    status: str
    size: int = 0

    @property
    def present(self) -> bool:
        return self.status == FOUND and self.size > 0


class RetrievalManager:
    def __init__(self, codec: TransferCodec) -> None:
        self.codec = codec

    def expected_artifacts(self, session: CaptureSession) -> List[ArtifactRequest]:
        requests = [
            ArtifactRequest(pcap_name("node1"), session.node1, session.remote_path(pcap_name("node1")), PCAP_MAGICS),
            ArtifactRequest(timing_name("node1"), session.node1, session.remote_path(timing_name("node1"))),
            ArtifactRequest(pcap_name("node2"), session.node2, session.remote_path(pcap_name("node2")), PCAP_MAGICS),
            ArtifactRequest(timing_name("node2"), session.node2, session.remote_path(timing_name("node2"))),
        ]
        if not session.skip_retis:
            for name in (RETIS_DATA, RETIS_TIMING, RETIS_LOG):
                requests.append(ArtifactRequest(name, session.retis_node, session.remote_path(name)))
        return requests

    def retrieve(self, session: CaptureSession, requests: Optional[List[ArtifactRequest]] = None) -> List[CapturedArtifact]:
        """Fetch every requested artifact; an absent or broken one never stops the rest."""
        ensure_dir(session.output_dir)
        artifacts: List[CapturedArtifact] = []
        for request in requests if requests is not None else self.expected_artifacts(session):
            local_path = session.local_path(request.name)
            try:
                result = self.codec.fetch(request.node, request.remote_path, magic=request.magic)
            except Exception as exc:
                LOGGER.exception("Fetch raised name=%s node=%s", request.name, request.node, extra={"category": "ERRORS"})
                artifacts.append(CapturedArtifact(request.name, request.node, request.remote_path, local_path, FAILED))
                emit_warning(f"✗ {request.name}: {exc}", phase=PHASE_RETRIEVAL)
                continue

            size = 0
            if result.data and result.status == FOUND:
                local_path.write_bytes(result.data)
                size = len(result.data)
            artifact = CapturedArtifact(request.name, request.node, request.remote_path, local_path, result.status, size)
            artifacts.append(artifact)
            if artifact.present:
                emit_progress(f"✓ {request.name}: {human_size(size)}", phase=PHASE_RETRIEVAL)
            else:
                emit_warning(f"✗ {request.name}: {result.status.replace('_', ' ')}", phase=PHASE_RETRIEVAL)
            LOGGER.info(
                "Artifact retrieved name=%s node=%s status=%s size=%s local=%s",
                request.name,
                request.node,
                result.status,
                size,
                local_path,
                extra={"category": "FILES"},
            )
        return artifacts

    def cleanup(self, session: CaptureSession) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        for node in session.touched_nodes:
            try:
                results[node] = self.codec.remove(node, [session.remote_dir])
            except Exception:
                LOGGER.warning("Cleanup raised node=%s dir=%s", node, session.remote_dir, exc_info=True, extra={"category": "ERRORS"})
                results[node] = False
            LOGGER.info("Cleanup node=%s dir=%s ok=%s", node, session.remote_dir, results[node], extra={"category": "CLUSTER"})
        return results

    def retrieve_and_cleanup(
        self, session: CaptureSession
    ) -> Tuple[List[CapturedArtifact], Dict[str, bool]]:
        artifacts: List[CapturedArtifact] = []
        try:
            artifacts = self.retrieve(session)
        finally:
            cleaned = self.cleanup(session)
        return artifacts, cleaned


def read_timing_file(path: Path) -> Dict[str, str]:
    """Return the first value of each ``TAG: value`` line (START, PROBE, END) in a timing file."""
    values: Dict[str, str] = {}
    if not path.is_file():
        return values
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        for tag in ("START", "PROBE", "END"):
            prefix = f"{tag}:"
            if line.startswith(prefix) and tag not in values:
                values[tag] = line[len(prefix) :].strip()
    return values
