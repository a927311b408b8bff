from __future__ import annotations

import datetime as dt
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ipsecdiag.config_loader import DiagnosticsSettings

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def session_timestamp(now: Optional[dt.datetime] = None) -> str:
    return (now or dt.datetime.now()).strftime(TIMESTAMP_FORMAT)


def resolve_capture_filter(template: str, node1_ip: str, node2_ip: str) -> str:
    return template.replace("{NODE1_IP}", node1_ip).replace("{NODE2_IP}", node2_ip).strip()


def retis_flow_filter(node1_ip: str, node2_ip: str) -> str:
    return f"src host {node1_ip} and dst host {node2_ip}"


def short_node_name(node: str) -> str:
    return node.split(".", 1)[0]


@dataclass(frozen=True)
class CaptureSession:
    timestamp: str
    node1: str
    node2: str
    retis_node: str
    node1_ip: str
    node2_ip: str
    retis_node_ip: str
    interface: str
    duration: int
    packet_count: Optional[int]
    capture_filter: str
    retis_filter: str
    output_dir: Path
    remote_dir: str
    skip_retis: bool = False

    def __post_init__(self) -> None:
        if self.duration <= 0:
            raise ValueError("duration must be greater than zero")
        if self.packet_count is not None and self.packet_count <= 0:
            raise ValueError("packet_count must be greater than zero")
        if not self.timestamp or self.timestamp not in self.remote_dir:
            raise ValueError("remote_dir must be derived from the session timestamp")

    @property
    def touched_nodes(self) -> List[str]:
        nodes = [self.node1, self.node2]
        if not self.skip_retis:
            nodes.append(self.retis_node)
        ordered: List[str] = []
        for node in nodes:
            if node not in ordered:
                ordered.append(node)
        return ordered

    @property
    def state_dump_nodes(self) -> List[str]:
        return [self.node1] if self.node1 == self.node2 else [self.node1, self.node2]

    def short_name(self, node: str) -> str:
        return short_node_name(node)

    def remote_path(self, name: str) -> str:
        return posixpath.join(self.remote_dir, name)

    def local_path(self, name: str) -> Path:
        return self.output_dir / name

    @classmethod
    def from_settings(
        cls,
        settings: DiagnosticsSettings,
        node1_ip: str,
        node2_ip: str,
        retis_node_ip: str,
        now: Optional[dt.datetime] = None,
    ) -> "CaptureSession":
        timestamp = session_timestamp(now)
        return cls(
            timestamp=timestamp,
            node1=settings.node1,
            node2=settings.node2,
            retis_node=settings.effective_retis_node,
            node1_ip=node1_ip,
            node2_ip=node2_ip,
            retis_node_ip=retis_node_ip,
            interface=settings.interface,
            duration=settings.duration,
            packet_count=settings.packet_count,
            capture_filter=resolve_capture_filter(settings.capture_filter, node1_ip, node2_ip),
            retis_filter=retis_flow_filter(node1_ip, node2_ip),
            output_dir=settings.output / f"diag-{timestamp}",
            remote_dir=posixpath.join(settings.remote_base, f"ipsec-diag-{timestamp}"),
            skip_retis=settings.skip_retis,
        )
