from __future__ import annotations

import base64
import binascii
import logging
import posixpath
import shlex
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from ipsecdiag.services.gateway import ClusterGateway

LOGGER = logging.getLogger(__name__)

PAYLOAD_BEGIN = "__IPSECDIAG_PAYLOAD_BEGIN__"
PAYLOAD_END = "__IPSECDIAG_PAYLOAD_END__"
NOT_FOUND = "__IPSECDIAG_NOT_FOUND__"
DEPLOYED = "__IPSECDIAG_DEPLOYED__"

PCAP_MAGICS: Tuple[bytes, ...] = (
    bytes.fromhex("a1b2c3d4"),
    bytes.fromhex("d4c3b2a1"),
    bytes.fromhex("a1b23c4d"),
    bytes.fromhex("4d3cb2a1"),
    bytes.fromhex("0a0d0d0a"),
)

FOUND = "found"
EMPTY = "empty"
MISSING = "not_found"
INVALID = "invalid"
FAILED = "failed"


class TransferError(RuntimeError):
    pass


@dataclass(frozen=True)
class FetchResult:
    status: str
    data: bytes = b""
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.status == FOUND


def render_deploy_command(text: str, remote_path: str) -> str:
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    parent = posixpath.dirname(remote_path) or "/"
    return (
        f"mkdir -p {shlex.quote(parent)}"
        f" && printf '%s' {shlex.quote(encoded)} | base64 -d > {shlex.quote(remote_path)}"
        f" && chmod +x {shlex.quote(remote_path)}"
        f" && echo {DEPLOYED}"
    )


def render_fetch_command(remote_path: str) -> str:
    path = shlex.quote(remote_path)
    return (
        f"if [ -f {path} ]; then echo {PAYLOAD_BEGIN}; base64 {path}; echo {PAYLOAD_END};"
        f" else echo {NOT_FOUND}; fi"
    )


def parse_fetch_output(output: str, magic: Optional[Iterable[bytes]] = None) -> FetchResult:
    """
    Decode the payload framed by the begin/end markers.

    Everything outside the markers (debug-pod banner, warnings) is discarded.
    """
    lines = [line.strip() for line in (output or "").splitlines()]
    if NOT_FOUND in lines and PAYLOAD_BEGIN not in lines:
        return FetchResult(MISSING)
    try:
        begin = lines.index(PAYLOAD_BEGIN)
        end = lines.index(PAYLOAD_END, begin + 1)
    except ValueError:
        return FetchResult(FAILED, detail="payload markers not found")

    body = "".join("".join(lines[begin + 1 : end]).split())
    try:
        data = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        return FetchResult(FAILED, detail=f"base64 decode failed: {exc}")

    if not data:
        return FetchResult(EMPTY)
    if magic is not None:
        prefixes = tuple(magic)
        if prefixes and not data.startswith(prefixes):
            return FetchResult(INVALID, data, detail=f"unexpected magic {data[:4].hex()}")
    return FetchResult(FOUND, data)


class TransferCodec:
    """Moves scripts to and artifacts from nodes as base64 text through the gateway."""

    def __init__(self, gateway: ClusterGateway) -> None:
        self.gateway = gateway

    def deploy(self, node: str, text: str, remote_path: str) -> None:
        result = self.gateway.run(node, render_deploy_command(text, remote_path))
        if not result.ok or DEPLOYED not in result.output:
            LOGGER.error(
                "Deploy failed node=%s path=%s rc=%s output=%s",
                node,
                remote_path,
                result.returncode,
                result.text[-500:],
                extra={"category": "TRANSFER"},
            )
            raise TransferError(f"Failed to deploy {remote_path} to {node} (rc={result.returncode})")
        LOGGER.info("Deployed node=%s path=%s bytes=%s", node, remote_path, len(text), extra={"category": "TRANSFER"})

    def fetch(self, node: str, remote_path: str, magic: Optional[Iterable[bytes]] = None) -> FetchResult:
        result = self.gateway.run(node, render_fetch_command(remote_path))
        parsed = parse_fetch_output(result.output, magic=magic)
        if parsed.status == FAILED and not result.ok:
            parsed = FetchResult(FAILED, detail=f"rc={result.returncode} {result.text[-300:]}")
        LOGGER.info(
            "Fetch node=%s path=%s status=%s bytes=%s detail=%s",
            node,
            remote_path,
            parsed.status,
            len(parsed.data),
            parsed.detail or "-",
            extra={"category": "TRANSFER"},
        )
        return parsed

    def remove(self, node: str, paths: Iterable[str]) -> bool:
        targets = " ".join(shlex.quote(p) for p in paths)
        if not targets:
            return True
        result = self.gateway.run(node, f"rm -rf {targets}")
        if not result.ok:
            LOGGER.warning("Remote removal failed node=%s paths=%s rc=%s", node, targets, result.returncode, extra={"category": "TRANSFER"})
        return result.ok
