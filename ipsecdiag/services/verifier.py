from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ipsecdiag.config_loader import ICV_PROBE
from ipsecdiag.logging_setup import get_logger
from ipsecdiag.services.pcap_tools import PcapSummary, summarize_pcap
from ipsecdiag.services.retis_tools import EXTRACTED_PCAP, TRACE_DATA, RetisExtractor, is_test_probe, probe_base
from ipsecdiag.services.retrieval import read_timing_file
from ipsecdiag.utils import human_size

LOGGER = get_logger(__name__, "VERIFY")

REQUIRED_FILES = ("node1-esp.pcap", "node2-esp.pcap", "node1-timing.txt", "node2-timing.txt")
OPTIONAL_FILES = ("retis_icv.data", "retis-timing.txt", "sync-time.txt")

FILES_PRESENT = "files-present"
TIMING_AVAILABLE = "timing-available"
START_ALIGNMENT = "capture-start-alignment"
PACKET_COUNT_MATCH = "packet-count-match"
RETIS_DATA_AVAILABLE = "retis-data-available"
CHECK_NAMES = (FILES_PRESENT, TIMING_AVAILABLE, START_ALIGNMENT, PACKET_COUNT_MATCH, RETIS_DATA_AVAILABLE)
CHECK_TITLES = {
    FILES_PRESENT: "Capture Files Present",
    TIMING_AVAILABLE: "Timing Data Available",
    START_ALIGNMENT: "Capture Start Alignment",
    PACKET_COUNT_MATCH: "Packet Count Match",
    RETIS_DATA_AVAILABLE: "Retis Data Available",
}

GOOD_ALIGNMENT_SECONDS = 1.0
ACCEPTABLE_ALIGNMENT_SECONDS = 5.0
LARGE_OFFSET_SECONDS = 10.0
SEQUENCE_SAMPLE_LIMIT = 20


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"
    SKIP = "SKIP"


@dataclass
class CheckResult:
    status: CheckStatus = CheckStatus.SKIP
    message: str = ""


def classify_alignment(skew: float) -> Tuple[CheckStatus, str]:
    offset = abs(skew)
    if offset < GOOD_ALIGNMENT_SECONDS:
        return CheckStatus.PASS, "good alignment"
    if offset < ACCEPTABLE_ALIGNMENT_SECONDS:
        return CheckStatus.PASS, "acceptable alignment"
    if offset < LARGE_OFFSET_SECONDS:
        return CheckStatus.WARN, "large offset, captures may have limited overlap"
    return CheckStatus.FAIL, "very large offset, captures may not overlap"


def roll_up(statuses: Iterable[CheckStatus]) -> CheckStatus:
    seen = set(statuses)
    if CheckStatus.FAIL in seen:
        return CheckStatus.FAIL
    if CheckStatus.WARN in seen:
        return CheckStatus.WARN
    return CheckStatus.PASS


@dataclass
class VerificationReport:
    output_dir: Path
    checks: Dict[str, CheckResult] = field(default_factory=lambda: {name: CheckResult() for name in CHECK_NAMES})
    facts: Dict[str, object] = field(default_factory=dict)
    sections: List[Tuple[str, List[str]]] = field(default_factory=list)

    def set(self, name: str, status: CheckStatus, message: str = "") -> None:
        self.checks[name] = CheckResult(status, message)

    def section(self, title: str) -> List[str]:
        lines: List[str] = []
        self.sections.append((title, lines))
        return lines

    def count(self, status: CheckStatus) -> int:
        return sum(1 for check in self.checks.values() if check.status == status)

    @property
    def overall(self) -> CheckStatus:
        return roll_up(check.status for check in self.checks.values())

    @property
    def exit_code(self) -> int:
        return 1 if self.overall == CheckStatus.FAIL else 0


class CaptureVerifier:
    """Post-hoc checks over one ``diag-<timestamp>`` output directory."""

    def __init__(
        self,
        output_dir: Path,
        retis_image: str = "quay.io/retis/retis",
        default_probe: str = ICV_PROBE,
        extractor: Optional[RetisExtractor] = None,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.retis_image = retis_image
        self.default_probe = default_probe or ICV_PROBE
        self.extractor = extractor or RetisExtractor(retis_image)

    def _file(self, name: str) -> Path:
        return self.output_dir / name

    def verify(self) -> VerificationReport:
        if not self.output_dir.is_dir():
            raise FileNotFoundError(f"Directory not found: {self.output_dir}")
        LOGGER.info("Verifying output_dir=%s", self.output_dir)
        report = VerificationReport(self.output_dir)
        self._check_files(report)
        self._check_timing(report)
        node1 = self._analyze_pcap(report, "node1-esp.pcap", "Node1")
        node2 = self._analyze_pcap(report, "node2-esp.pcap", "Node2")
        self._check_alignment(report, node1, node2)
        self._check_packets(report, node1, node2)
        self._check_retis(report, node1, node2)
        self._manual_commands(report)
        LOGGER.info(
            "Verification finished overall=%s checks=%s",
            report.overall.value,
            {name: check.status.value for name, check in report.checks.items()},
        )
        return report

    def _check_files(self, report: VerificationReport) -> None:
        lines = report.section("Available Capture Files")
        found = 0
        for name in REQUIRED_FILES + OPTIONAL_FILES:
            path = self._file(name)
            if path.is_file():
                size = path.stat().st_size
                marker = "✓" if size > 0 else "!"
                lines.append(f"  {marker} {name} ({human_size(size)})")
                if name in REQUIRED_FILES and size > 0:
                    found += 1
            else:
                lines.append(f"  ✗ {name} (not found)")
        report.facts["required_files_found"] = found
        if found == len(REQUIRED_FILES):
            report.set(FILES_PRESENT, CheckStatus.PASS, "all required files present")
        else:
            report.set(FILES_PRESENT, CheckStatus.FAIL, f"{found}/{len(REQUIRED_FILES)} required files present and non-empty")

    def _check_timing(self, report: VerificationReport) -> None:
        lines = report.section("Capture Start/End Times")
        sync_path = self._file("sync-time.txt")
        if sync_path.is_file():
            sync_time = sync_path.read_text(encoding="utf-8", errors="replace").strip() or "N/A"
            report.facts["sync_time"] = sync_time
            lines.append(f"  Script sync time: {sync_time}")
        for label, name in (("Node1", "node1-timing.txt"), ("Node2", "node2-timing.txt"), ("Retis", "retis-timing.txt")):
            path = self._file(name)
            if not path.is_file():
                continue
            timing = read_timing_file(path)
            report.facts[f"{label.lower()}_start"] = timing.get("START")
            report.facts[f"{label.lower()}_end"] = timing.get("END")
            lines.append(f"  {label} START: {timing.get('START', 'N/A')}")
            lines.append(f"  {label} END:   {timing.get('END', 'N/A')}")
        if self._file("node1-timing.txt").is_file() and self._file("node2-timing.txt").is_file():
            report.set(TIMING_AVAILABLE, CheckStatus.PASS, "both node timing files found")
        else:
            report.set(TIMING_AVAILABLE, CheckStatus.FAIL, "node timing file missing")

    def _analyze_pcap(self, report: VerificationReport, name: str, label: str) -> Optional[PcapSummary]:
        if not report.sections or report.sections[-1][0] != "PCAP Packet Timestamps":
            report.section("PCAP Packet Timestamps")
        lines = report.sections[-1][1]
        path = self._file(name)
        if not path.is_file():
            lines.append(f"  {label}: file not found")
            return None
        summary = summarize_pcap(path)
        if summary is None or not summary.has_packets:
            lines.append(f"  {label}: no packets captured")
            return summary
        report.facts[f"{label.lower()}_packets"] = summary.packet_count
        lines.append(f"  {label}:")
        lines.append(f"    Packets: {summary.packet_count}")
        lines.append(f"    First:   epoch {summary.first_epoch:.6f}")
        lines.append(f"    Last:    epoch {summary.last_epoch:.6f}")
        return summary

    def _check_alignment(
        self, report: VerificationReport, node1: Optional[PcapSummary], node2: Optional[PcapSummary]
    ) -> None:
        lines = report.section("Capture Start Alignment")
        lines.append("  Note: this measures when each capture STARTED, not NTP clock accuracy.")
        if node1 is None or node2 is None or node1.first_epoch is None or node2.first_epoch is None:
            lines.append("  Cannot calculate - missing pcap data")
            report.set(START_ALIGNMENT, CheckStatus.SKIP, "missing pcap data")
            return
        skew = node2.first_epoch - node1.first_epoch
        status, label = classify_alignment(skew)
        report.facts["skew_seconds"] = skew
        lines.append("  First packet timestamp difference (Node2 - Node1):")
        lines.append(f"    Difference: {skew:.6f}s ({int(skew * 1000)}ms)")
        lines.append(f"    {status.value}: {label}")
        lines.append("  To verify actual NTP sync, run on nodes: chronyc tracking | grep 'System time'")
        report.set(START_ALIGNMENT, status, f"{skew:+.3f}s {label}")

    def _check_packets(
        self, report: VerificationReport, node1: Optional[PcapSummary], node2: Optional[PcapSummary]
    ) -> None:
        if node1 is None or node2 is None or not node1.has_packets or not node2.has_packets:
            report.set(PACKET_COUNT_MATCH, CheckStatus.SKIP, "both pcaps must contain packets")
            return
        lines = report.section("ESP Packet Correlation (by SPI + Sequence)")
        report.facts["node1_spis"] = node1.spis
        report.facts["node2_spis"] = node2.spis
        lines.append(f"  SPIs found in Node1: {' '.join(node1.spis)}")
        lines.append(f"  SPIs found in Node2: {' '.join(node2.spis)}")
        for label, summary in (("Node1", node1), ("Node2", node2)):
            lines.append(f"  Sample packets from {label} (first {len(summary.samples)}):")
            for record in summary.samples:
                lines.append(
                    f"    Time: {record.relative_time:8.6f}s | {record.src} -> {record.dst} | SPI: {record.spi_hex} | Seq: {record.seq}"
                )

        report.facts["node1_esp"] = node1.esp_count
        report.facts["node2_esp"] = node2.esp_count
        report.facts["missing_packets"] = node1.esp_count - node2.esp_count
        missing = sorted(node1.esp_pairs - node2.esp_pairs)
        extra = sorted(node2.esp_pairs - node1.esp_pairs)
        report.facts["missing_sequences"] = missing
        report.facts["unexpected_sequences"] = extra

        lines.append("  ESP packet counts:")
        lines.append(f"    Node1: {node1.esp_count} packets")
        lines.append(f"    Node2: {node2.esp_count} packets")
        if missing:
            shown = ", ".join(f"{spi:#010x}/{seq}" for spi, seq in missing[:SEQUENCE_SAMPLE_LIMIT])
            lines.append(f"    In Node1 but not Node2 ({len(missing)}): {shown}")
        if extra:
            shown = ", ".join(f"{spi:#010x}/{seq}" for spi, seq in extra[:SEQUENCE_SAMPLE_LIMIT])
            lines.append(f"    In Node2 but not Node1 ({len(extra)}): {shown}")

        diff = node1.esp_count - node2.esp_count
        if diff > 0:
            message = f"Node1 has {diff} more packets than Node2"
        elif diff < 0:
            message = f"Node2 has {-diff} more packets than Node1"
        else:
            lines.append("    Packet counts match")
            report.set(PACKET_COUNT_MATCH, CheckStatus.PASS, "packet counts match")
            return
        lines.append(f"    {message}")
        report.set(PACKET_COUNT_MATCH, CheckStatus.WARN, message)

    def _retis_probe(self) -> str:
        probe = read_timing_file(self._file("retis-timing.txt")).get("PROBE", "")
        return probe or self.default_probe

    def _check_retis(
        self, report: VerificationReport, node1: Optional[PcapSummary], node2: Optional[PcapSummary]
    ) -> None:
        data_path = self._file(TRACE_DATA)
        if not data_path.is_file():
            report.set(RETIS_DATA_AVAILABLE, CheckStatus.SKIP, "no retis data")
            return

        lines = report.section("Retis Data Analysis")
        probe = self._retis_probe()
        base = probe_base(probe)
        report.facts["retis_size"] = data_path.stat().st_size
        report.facts["retis_probe"] = probe
        lines.append(f"  Retis data file size: {human_size(data_path.stat().st_size)}")
        lines.append(f"  Retis probe used: {probe}")
        log_path = self._file("retis-output.log")
        if log_path.is_file():
            lines.append("  Retis output log (last 10 lines):")
            tail = log_path.read_text(encoding="utf-8", errors="replace").splitlines()[-10:]
            lines.extend(f"    {line}" for line in tail)

        lines = report.section("Retis PCAP Correlation")
        manual = self.extractor.manual_command(self.output_dir, probe)
        lines.append(f"  Image: {self.retis_image}")
        lines.append(f"  Probe: {base}")
        if not self.extractor.available():
            lines.append("  podman not available - skipping Retis pcap generation")
            lines.append(f"  Run manually: {manual}")
            report.set(RETIS_DATA_AVAILABLE, CheckStatus.PASS, "retis data present; extraction skipped (podman not available)")
            return

        extraction = self.extractor.extract(self.output_dir, probe)
        if not extraction.produced:
            lines.append("  Could not generate pcap from Retis data")
            if extraction.output:
                lines.append(f"  Output: {extraction.output}")
            lines.append(f"  Run manually to debug: {manual}")
            report.set(RETIS_DATA_AVAILABLE, CheckStatus.WARN, "retis pcap extraction produced nothing")
            return

        extracted = summarize_pcap(extraction.output_path)
        extracted_count = extracted.packet_count if extracted else 0
        report.facts["retis_extracted"] = extracted_count
        lines.append(f"  Generated {EXTRACTED_PCAP}, packets: {extracted_count}")
        node1_count = node1.esp_count if node1 else 0
        node2_count = node2.esp_count if node2 else 0

        if extracted and node1 and node2:
            dropped = node1.esp_pairs - node2.esp_pairs
            confirmed = extracted.esp_pairs & dropped
            report.facts["retis_confirmed_drops"] = len(confirmed)
            report.facts["retis_unmatched"] = len(extracted.esp_pairs - dropped)
            lines.append(f"  Retis ESP sequences matching Node1-not-Node2: {len(confirmed)}/{len(extracted.esp_pairs)}")

        if is_test_probe(base):
            lines.append("  TEST MODE: retis captured all received packets")
            if extracted_count == 0:
                report.set(RETIS_DATA_AVAILABLE, CheckStatus.WARN, "no packets in retis pcap (unexpected in test mode)")
            elif extracted_count >= node2_count:
                report.set(RETIS_DATA_AVAILABLE, CheckStatus.PASS, f"retis captured {extracted_count} >= {node2_count} tcpdump packets")
            else:
                report.set(RETIS_DATA_AVAILABLE, CheckStatus.WARN, f"retis captured fewer packets ({extracted_count}) than tcpdump ({node2_count})")
            return

        missing = node1_count - node2_count
        report.facts["missing_packets"] = missing
        lines.append("  PRODUCTION MODE: retis captured dropped packets only")
        lines.append(f"    Node1 sent: {node1_count} | Node2 received: {node2_count} | Missing: {missing} | Retis: {extracted_count}")
        lines.append("    (the missing count is a heuristic; congestion and capture edges also lose packets)")
        if extracted_count == 0 and missing > 0:
            report.set(RETIS_DATA_AVAILABLE, CheckStatus.WARN, "drops are missing data despite Retis reporting zero")
        elif extracted_count == 0:
            report.set(RETIS_DATA_AVAILABLE, CheckStatus.PASS, "no ICV failures observed")
        elif extracted_count <= missing:
            report.set(RETIS_DATA_AVAILABLE, CheckStatus.PASS, f"retis captured {extracted_count} dropped packets (within {missing} missing)")
        else:
            report.set(
                RETIS_DATA_AVAILABLE,
                CheckStatus.WARN,
                f"retis reported {extracted_count} drops but only {max(missing, 0)} packets are missing (heuristic mismatch)",
            )

    def _manual_commands(self, report: VerificationReport) -> None:
        d = self.output_dir
        lines = report.section("Manual Correlation Commands")
        lines.extend(
            [
                "# Find specific ESP sequence in both captures:",
                "SEQ=<sequence_number>",
                f'tshark -r {d}/node1-esp.pcap -Y "esp.sequence == $SEQ" -T fields -e frame.time -e esp.spi -e esp.sequence',
                f'tshark -r {d}/node2-esp.pcap -Y "esp.sequence == $SEQ" -T fields -e frame.time -e esp.spi -e esp.sequence',
                "",
                "# Export ESP sequence numbers for diff analysis:",
                f"tshark -r {d}/node1-esp.pcap -Y 'esp' -T fields -e esp.spi -e esp.sequence | sort > /tmp/node1-seq.txt",
                f"tshark -r {d}/node2-esp.pcap -Y 'esp' -T fields -e esp.spi -e esp.sequence | sort > /tmp/node2-seq.txt",
                "comm -23 /tmp/node1-seq.txt /tmp/node2-seq.txt  # In Node1 but not Node2",
                "comm -13 /tmp/node1-seq.txt /tmp/node2-seq.txt  # In Node2 but not Node1",
            ]
        )
        if self._file(EXTRACTED_PCAP).is_file():
            lines.extend(
                [
                    "",
                    "# Extract sequences from Retis pcap (dropped packets):",
                    f"tshark -r {d}/{EXTRACTED_PCAP} -Y 'esp' -T fields -e esp.spi -e esp.sequence | sort > /tmp/retis-seq.txt",
                ]
            )
        if self._file(TRACE_DATA).is_file():
            lines.extend(
                [
                    "",
                    f"podman run --rm -v {d}:/data:ro {self.retis_image} sort /data/{TRACE_DATA}",
                    f"podman run --rm -v {d}:/data:ro {self.retis_image} print /data/{TRACE_DATA}",
                ]
            )


def summary_banner(report: VerificationReport) -> str:
    failed = report.count(CheckStatus.FAIL)
    warnings = report.count(CheckStatus.WARN)
    if failed:
        return f"SOME CHECKS FAILED ({failed} failed, {warnings} warnings)"
    if warnings:
        return f"PASSED WITH WARNINGS ({warnings} warnings)"
    return "ALL CHECKS PASSED"


def render_report(report: VerificationReport) -> str:
    rule = "━" * 66
    out: List[str] = ["Capture Timestamp Verification", f"Analyzing: {report.output_dir}"]
    for title, lines in report.sections:
        out.extend(["", rule, title, rule, ""])
        out.extend(lines)
    out.extend(["", rule, "Verification Summary", rule, ""])
    for name in CHECK_NAMES:
        check = report.checks[name]
        title = f"{CHECK_TITLES[name]}:"
        out.append(f"  {title:<26}{check.status.value:<5} {check.message}".rstrip())
    out.extend(["", rule, f"  {summary_banner(report)}", rule, "", f"Output directory: {report.output_dir}"])
    return "\n".join(out)
