from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set, Tuple

from scapy.layers.inet import IP, UDP
from scapy.layers.inet6 import IPv6
from scapy.utils import PcapReader

LOGGER = logging.getLogger(__name__)

ESP_PROTO = 50
NAT_T_PORT = 4500
SAMPLE_LIMIT = 5
SPI_LIMIT = 5


@dataclass(frozen=True)
class EspRecord:
    relative_time: float
    src: str
    dst: str
    spi: int
    seq: int

    @property
    def spi_hex(self) -> str:
        return format_spi(self.spi)


@dataclass
class PcapSummary:
    path: Path
    packet_count: int = 0
    first_epoch: Optional[float] = None
    last_epoch: Optional[float] = None
    esp_count: int = 0
    spis: List[str] = field(default_factory=list)
    samples: List[EspRecord] = field(default_factory=list)
    esp_pairs: Set[Tuple[int, int]] = field(default_factory=set)

    @property
    def has_packets(self) -> bool:
        return self.packet_count > 0


def format_spi(spi: int) -> str:
    return "0x%08x" % spi


def _pkt_time(pkt: object) -> float:
    t = getattr(pkt, "time", None)
    try:
        return float(t) if t is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def esp_header(pkt: object) -> Optional[Tuple[str, str, int, int]]:
    """Return (src, dst, spi, seq) for ESP over IPv4/IPv6, including NAT-T (UDP 4500)."""
    ip = None
    proto = None
    if pkt.haslayer(IP):
        ip = pkt.getlayer(IP)
        proto = ip.proto
    elif pkt.haslayer(IPv6):
        ip = pkt.getlayer(IPv6)
        proto = ip.nh
    if ip is None:
        return None

    if proto == ESP_PROTO:
        payload = bytes(ip.payload)
    elif pkt.haslayer(UDP) and NAT_T_PORT in (pkt[UDP].sport, pkt[UDP].dport):
        payload = bytes(pkt[UDP].payload)
        # Zero SPI marks IKE-over-4500 (non-ESP marker) and keepalives.
        if len(payload) < 8 or payload[:4] == b"\x00\x00\x00\x00":
            return None
    else:
        return None

    if len(payload) < 8:
        return None
    spi, seq = struct.unpack("!II", payload[:8])
    return str(ip.src), str(ip.dst), spi, seq


def summarize_pcap(path: Path) -> Optional[PcapSummary]:
    """
    Read a capture once and collect what the verifier needs.

    Returns None when the file is absent, zero bytes or unreadable; a readable
    capture with no packets yields a summary without timestamps.
    """
    if not path.is_file() or path.stat().st_size == 0:
        LOGGER.info("Pcap has no data path=%s", path, extra={"category": "VERIFY"})
        return None

    summary = PcapSummary(path=path)
    spis_seen: Set[int] = set()
    try:
        with PcapReader(str(path)) as reader:
            for pkt in reader:
                ts = _pkt_time(pkt)
                if summary.first_epoch is None:
                    summary.first_epoch = ts
                summary.last_epoch = ts
                summary.packet_count += 1

                header = esp_header(pkt)
                if header is None:
                    continue
                src, dst, spi, seq = header
                summary.esp_count += 1
                summary.esp_pairs.add((spi, seq))
                spis_seen.add(spi)
                if len(summary.samples) < SAMPLE_LIMIT:
                    summary.samples.append(EspRecord(ts - (summary.first_epoch or ts), src, dst, spi, seq))
    except Exception as exc:
        LOGGER.warning("Unreadable pcap path=%s error=%s", path, exc, extra={"category": "VERIFY"})
        return None

    summary.spis = [format_spi(spi) for spi in sorted(spis_seen)[:SPI_LIMIT]]
    LOGGER.info(
        "Pcap summarized path=%s packets=%s esp=%s first=%s last=%s",
        path,
        summary.packet_count,
        summary.esp_count,
        summary.first_epoch,
        summary.last_epoch,
        extra={"category": "VERIFY"},
    )
    return summary


def count_packets(path: Path) -> int:
    summary = summarize_pcap(path)
    return summary.packet_count if summary else 0
