from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict

LOGGER = logging.getLogger(__name__)


def _parse_env_line(line: str) -> tuple[str, str] | None:
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("export "):
        text = text[len("export ") :].strip()
    if "=" not in text:
        return None
    key, value = text.split("=", 1)
    key = key.strip()
    value = value.strip()
    if not key:
        return None
    if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
        value = value[1:-1]
    elif " #" in value:
        # Trailing shell comment on an unquoted value.
        value = value.split(" #", 1)[0].rstrip()
    return key, value


def read_env_file(path: Path) -> Dict[str, str]:
    """Parse a shell-style KEY=VALUE file (``capture-config.env``) without touching os.environ."""
    if not path.exists():
        return {}
    values: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_env_line(raw_line)
        if not parsed:
            continue
        key, value = parsed
        values[key] = value
    LOGGER.info("Loaded env file path=%s keys=%s", path, len(values), extra={"category": "CONFIG"})
    return values
