from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from ipsecdiag.progress import PHASE_XFRM, emit_progress, emit_warning
from ipsecdiag.services.gateway import ClusterGateway
from ipsecdiag.services.job_specs import render_state_dump_script, split_state_dump
from ipsecdiag.services.session import short_node_name
from ipsecdiag.utils import ensure_dir

LOGGER = logging.getLogger(__name__)


class XfrmStateDumper:
    """Reads SA and policy tables (``ip xfrm ... show/count``) from nodes through the gateway."""

    def __init__(self, gateway: ClusterGateway) -> None:
        self.gateway = gateway

    def dump(self, node: str, label: str = "") -> Optional[str]:
        short = short_node_name(node)
        suffix = f" ({label})" if label else ""
        emit_progress(f"Dumping XFRM from {short}{suffix}...", phase=PHASE_XFRM)
        result = self.gateway.run(node, render_state_dump_script())
        if not result.ok:
            LOGGER.warning("XFRM dump failed node=%s label=%s rc=%s", node, label or "-", result.returncode, extra={"category": "XFRM"})
            emit_warning(f"XFRM dump failed on {short}{suffix}", phase=PHASE_XFRM)
            return None
        return result.text

    def dump_to_files(self, node: str, output_dir: Path, timestamp: str) -> List[Path]:
        """Write one file per table, ``xfrm_state_<ts>.txt`` and friends, under a per-node directory."""
        text = self.dump(node)
        if text is None:
            return []
        node_dir = ensure_dir(output_dir / short_node_name(node))
        written: List[Path] = []
        for stem, body in split_state_dump(text).items():
            target = node_dir / f"{stem}_{timestamp}.txt"
            target.write_text(body, encoding="utf-8")
            written.append(target)
        LOGGER.info("XFRM tables saved node=%s files=%s dir=%s", node, len(written), node_dir, extra={"category": "XFRM"})
        return written
