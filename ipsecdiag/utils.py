from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger(__name__)


class MissingBinaryError(RuntimeError):
    pass


def ensure_binaries(required: list[str]) -> None:
    LOGGER.debug("Checking required binaries=%s", required, extra={"category": "CONFIG"})
    missing = [binary for binary in required if shutil.which(binary) is None]
    if missing:
        LOGGER.error("Missing required binaries=%s", missing, extra={"category": "ERRORS"})
        raise MissingBinaryError("Missing required binaries in PATH: " + ", ".join(missing))
    LOGGER.info("All required binaries available=%s", required, extra={"category": "CONFIG"})


def run_subprocess(
    cmd: list[str],
    check: bool = True,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    LOGGER.debug("Executing subprocess cmd=%s check=%s timeout=%s", cmd, check, timeout, extra={"category": "PERF"})
    proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    LOGGER.debug(
        "Subprocess completed cmd=%s returncode=%s stdout_len=%s stderr_len=%s",
        cmd,
        proc.returncode,
        len(proc.stdout or ""),
        len(proc.stderr or ""),
        extra={"category": "PERF"},
    )
    if check and proc.returncode != 0:
        LOGGER.error("Subprocess failed cmd=%s returncode=%s stderr=%s", cmd, proc.returncode, (proc.stderr or "")[:500], extra={"category": "ERRORS"})
        raise RuntimeError(f"Command failed: {' '.join(cmd)}\n{proc.stderr}")
    return proc


def ensure_dir(path: Path) -> Path:
    LOGGER.debug("Ensuring directory exists path=%s", path, extra={"category": "FILES"})
    path.mkdir(parents=True, exist_ok=True)
    return path


def human_size(num_bytes: int) -> str:
    """Render a byte count the way ``ls -lh``/``du -h`` would (1024 based)."""
    value = float(max(0, int(num_bytes)))
    for unit in ("B", "K", "M", "G"):
        if value < 1024 or unit == "G":
            if unit == "B":
                return f"{int(value)}{unit}"
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}G"
