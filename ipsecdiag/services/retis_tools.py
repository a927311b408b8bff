from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List

from ipsecdiag.utils import run_subprocess

LOGGER = logging.getLogger(__name__)

EXTRACTED_PCAP = "retis-extracted.pcap"
TRACE_DATA = "retis_icv.data"
TEST_PROBE = "netif_receive_skb"


def probe_base(probe: str) -> str:
    return probe.split("/", 1)[0]


def is_test_probe(probe: str) -> bool:
    return TEST_PROBE in probe


@dataclass(frozen=True)
class ExtractionResult:
    ran: bool
    output_path: Path
    returncode: int = 0
    output: str = ""

    @property
    def produced(self) -> bool:
        if not self.ran or self.returncode != 0:
            return False
        return self.output_path.is_file() and self.output_path.stat().st_size > 0


class RetisExtractor:
    """Turns retis trace data into a pcap with the retis image (``retis pcap``)."""

    def __init__(self, image: str, runtime: str = "podman", timeout: float = 300.0) -> None:
        self.image = image
        self.runtime = runtime
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.runtime) is not None

    def command(self, output_dir: Path, probe: str) -> List[str]:
        return [
            self.runtime,
            "run",
            "--rm",
            "-v",
            f"{output_dir}:/data:rw",
            self.image,
            "pcap",
            "--probe",
            probe_base(probe),
            "-o",
            f"/data/{EXTRACTED_PCAP}",
            f"/data/{TRACE_DATA}",
        ]

    def manual_command(self, output_dir: Path, probe: str) -> str:
        return " ".join(self.command(output_dir, probe))

    def extract(self, output_dir: Path, probe: str) -> ExtractionResult:
        target = output_dir / EXTRACTED_PCAP
        if not self.available():
            LOGGER.info("Container runtime not available runtime=%s", self.runtime, extra={"category": "RETIS"})
            return ExtractionResult(False, target)
        # A pcap left by an earlier run must not pass for this run's output.
        if target.exists():
            LOGGER.info("Removing stale retis pcap path=%s", target, extra={"category": "RETIS"})
            target.unlink()
        cmd = self.command(output_dir, probe)
        LOGGER.info("Extracting retis pcap cmd=%s", cmd, extra={"category": "RETIS"})
        try:
            proc = run_subprocess(cmd, check=False, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Retis extraction timed out timeout=%s", self.timeout, extra={"category": "RETIS"})
            return ExtractionResult(True, target, 124, "extraction timed out")
        LOGGER.info(
            "Retis extraction finished rc=%s produced=%s",
            proc.returncode,
            target.is_file(),
            extra={"category": "RETIS"},
        )
        output = "\n".join(part.strip() for part in (proc.stdout, proc.stderr) if part and part.strip())
        return ExtractionResult(True, target, proc.returncode, output)
