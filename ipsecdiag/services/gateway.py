from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional

LOGGER = logging.getLogger(__name__)

BANNER_PREFIXES = ("Starting pod", "Removing debug", "To use host")
DEFAULT_COMMAND_TIMEOUT = 600.0
INTERNAL_IP_JSONPATH = '{.status.addresses[?(@.type=="InternalIP")].address}'


def strip_banner(text: str) -> str:
    """Drop the lines the debug-pod wrapper prints around every remote command."""
    kept = [line for line in (text or "").splitlines() if not line.startswith(BANNER_PREFIXES)]
    return "\n".join(kept)


@dataclass(frozen=True)
class GatewayResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        return strip_banner(self.output)


class RemoteProcess:
    """Supervised handle for one long-running remote command (one local process group)."""

    def __init__(self, proc: subprocess.Popen, label: str, log_file: Optional[IO[bytes]] = None) -> None:
        self._proc = proc
        self._log_file = log_file
        self.label = label
        self.started_monotonic = time.monotonic()

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def poll(self) -> Optional[int]:
        returncode = self._proc.poll()
        if returncode is not None:
            self._close_log()
        return returncode

    def done(self) -> bool:
        return self.poll() is not None

    def _signal_group(self, sig: int) -> None:
        if self._proc.poll() is not None:
            return
        try:
            os.killpg(self._proc.pid, sig)
        except (ProcessLookupError, PermissionError, OSError) as exc:
            LOGGER.debug("killpg failed label=%s pid=%s sig=%s error=%s", self.label, self._proc.pid, sig, exc, extra={"category": "CAPTURE"})
            try:
                self._proc.send_signal(sig)
            except OSError:
                return

    def terminate(self) -> None:
        LOGGER.info("Sending SIGTERM label=%s pid=%s", self.label, self._proc.pid, extra={"category": "CAPTURE"})
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        LOGGER.warning("Sending SIGKILL label=%s pid=%s", self.label, self._proc.pid, extra={"category": "CAPTURE"})
        self._signal_group(signal.SIGKILL)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            returncode = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._close_log()
        return returncode

    def stop(self, grace_seconds: float = 2.0) -> Optional[int]:
        """SIGTERM the process group, then SIGKILL if it is still alive after the grace period."""
        if self.done():
            return self.returncode
        self.terminate()
        returncode = self.wait(timeout=max(0.1, float(grace_seconds)))
        if returncode is not None:
            return returncode
        self.kill()
        return self.wait(timeout=5.0)

    def _close_log(self) -> None:
        if self._log_file is not None and not self._log_file.closed:
            self._log_file.close()


class ClusterGateway:
    """
    Runs shell scripts on cluster nodes through ``<cli> debug node/<node>``.

    Every remote command runs as host root (``chroot /host``). Output is returned
    as text with the debug-pod banner still present; callers use ``strip_banner``
    or the transfer markers to isolate what they need.
    """

    def __init__(
        self,
        cli: str = "oc",
        namespace: str = "default",
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.cli = cli
        self.namespace = namespace
        self.command_timeout = command_timeout

    def debug_argv(self, node: str, script: str) -> List[str]:
        return [
            self.cli,
            "debug",
            f"node/{node}",
            f"--to-namespace={self.namespace}",
            "--",
            "chroot",
            "/host",
            "bash",
            "-c",
            script,
        ]

    def _run_local(self, argv: List[str], timeout: Optional[float]) -> GatewayResult:
        try:
            proc = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            LOGGER.error("Cluster CLI not found cli=%s", argv[0], extra={"category": "ERRORS"})
            return GatewayResult(127, f"{argv[0]}: command not found")
        except subprocess.TimeoutExpired as exc:
            LOGGER.warning("Gateway command timed out argv0=%s timeout=%s", argv[0], timeout, extra={"category": "CLUSTER"})
            partial = exc.output if isinstance(exc.output, str) else (exc.output or b"").decode("utf-8", "replace")
            return GatewayResult(124, partial + f"\ncommand timed out after {timeout}s")
        return GatewayResult(proc.returncode, proc.stdout or "")

    def check_connectivity(self) -> bool:
        result = self._run_local([self.cli, "whoami"], timeout=60)
        LOGGER.info("Connectivity check rc=%s user=%s", result.returncode, result.output.strip()[:120], extra={"category": "CLUSTER"})
        return result.ok

    def server(self) -> str:
        result = self._run_local([self.cli, "whoami", "--show-server"], timeout=60)
        return result.output.strip() if result.ok and result.output.strip() else "unknown"

    def node_internal_ip(self, node: str) -> Optional[str]:
        result = self._run_local(
            [self.cli, "get", "node", node, "-o", f"jsonpath={INTERNAL_IP_JSONPATH}"],
            timeout=60,
        )
        address = result.output.strip().split()[0] if result.ok and result.output.strip() else ""
        LOGGER.info("Resolved node ip node=%s ip=%s rc=%s", node, address or "-", result.returncode, extra={"category": "CLUSTER"})
        return address or None

    def run(self, node: str, script: str, timeout: Optional[float] = None) -> GatewayResult:
        started = time.monotonic()
        result = self._run_local(self.debug_argv(node, script), timeout=timeout or self.command_timeout)
        LOGGER.debug(
            "Gateway run node=%s rc=%s output_len=%s elapsed=%.2fs",
            node,
            result.returncode,
            len(result.output),
            time.monotonic() - started,
            extra={"category": "PERF"},
        )
        return result

    def spawn(self, node: str, script: str, log_path: Path, label: str = "") -> RemoteProcess:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = log_path.open("wb")
        try:
            proc = subprocess.Popen(
                self.debug_argv(node, script),
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError:
            log_file.close()
            raise
        LOGGER.info("Spawned remote job label=%s node=%s pid=%s log=%s", label or node, node, proc.pid, log_path, extra={"category": "CAPTURE"})
        return RemoteProcess(proc, label or node, log_file)
