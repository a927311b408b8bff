from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ipsecdiag.env_loader import read_env_file

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("capture-config.env")
DEFAULT_FILTER = "host {NODE1_IP} and host {NODE2_IP} and esp"
ICV_PROBE = "xfrm_audit_state_icvfail/stack"
DEFAULT_RETIS_COLLECTORS = "skb,skb-tracking,skb-drop,ct,dev,ns"

# Environment / env-file variable name -> settings field.
ENV_FIELDS: Dict[str, str] = {
    "NODE1_NAME": "node1",
    "NODE2_NAME": "node2",
    "INTERFACE": "interface",
    "DURATION": "duration",
    "PACKET_COUNT": "packet_count",
    "NO_PACKET_LIMIT": "no_packet_limit",
    "LOCAL_OUTPUT": "output",
    "FILTER": "capture_filter",
    "TCPDUMP_EXTRA": "tcpdump_extra",
    "RETIS_IMAGE": "retis_image",
    "RETIS_PROBE": "retis_probe",
    "RETIS_COLLECTORS": "retis_collectors",
    "SKIP_RETIS": "skip_retis",
    "RETIS_NODE": "retis_node",
    "MONITOR_ICV": "monitor_icv",
    "ICV_THRESHOLD": "icv_threshold",
    "ICV_MODE": "icv_mode",
    "ICV_SAMPLE_INTERVAL": "icv_sample_interval",
    "CLUSTER_CLI": "cluster_cli",
    "DEBUG_NAMESPACE": "debug_namespace",
    "REMOTE_BASE": "remote_base",
    "SETTLE_SECONDS": "settle_seconds",
    "KILL_GRACE_SECONDS": "kill_grace_seconds",
}


class DiagnosticsSettings(BaseModel):
    """Immutable run configuration, resolved once at startup."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    node1: str = "worker1.example.com"
    node2: str = "worker2.example.com"
    interface: str = "br-ex"
    duration: int = 30
    packet_count: Optional[int] = 1000
    no_packet_limit: bool = False
    output: Path = Field(default_factory=lambda: Path("~/ipsec-captures").expanduser())
    capture_filter: str = DEFAULT_FILTER
    tcpdump_extra: str = ""
    retis_image: str = "quay.io/retis/retis"
    retis_probe: str = ICV_PROBE
    retis_collectors: str = DEFAULT_RETIS_COLLECTORS
    skip_retis: bool = False
    retis_node: Optional[str] = None
    monitor_icv: bool = False
    icv_threshold: int = 3
    icv_mode: str = "cumulative"
    icv_sample_interval: int = 10
    cluster_cli: str = "oc"
    debug_namespace: str = "default"
    remote_base: str = "/tmp"
    settle_seconds: float = 10.0
    kill_grace_seconds: float = 2.0

    @field_validator("output", mode="before")
    @classmethod
    def normalize_output(cls, value: object) -> Path:
        text = str(value or "").strip()
        if not text:
            raise ValueError("Output directory must not be empty")
        return Path(text).expanduser()

    @field_validator("retis_node", mode="before")
    @classmethod
    def normalize_retis_node(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("packet_count", mode="before")
    @classmethod
    def normalize_packet_count(cls, value: object) -> Optional[int]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value  # type: ignore[return-value]

    @field_validator("node1", "node2", "interface", "cluster_cli", "remote_base")
    @classmethod
    def require_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("Value must not be empty")
        return text

    @field_validator("duration", "icv_threshold", "icv_sample_interval")
    @classmethod
    def require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be greater than zero")
        return value

    @field_validator("icv_mode")
    @classmethod
    def validate_icv_mode(cls, value: str) -> str:
        mode = value.strip().lower()
        if mode not in {"cumulative", "session"}:
            raise ValueError("icv_mode must be 'cumulative' or 'session'")
        return mode

    @model_validator(mode="after")
    def apply_packet_limit(self) -> "DiagnosticsSettings":
        if self.no_packet_limit:
            # Frozen model: bypass the setattr guard once during validation.
            object.__setattr__(self, "packet_count", None)
        elif self.packet_count is not None and self.packet_count <= 0:
            raise ValueError("packet_count must be greater than zero")
        if self.retis_node is None:
            object.__setattr__(self, "retis_node", self.node2)
        return self

    @property
    def effective_retis_node(self) -> str:
        return self.retis_node or self.node2


def _normalize_file_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    field_names = set(DiagnosticsSettings.model_fields.keys())
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).strip()
        if name in ENV_FIELDS:
            normalized[ENV_FIELDS[name]] = value
        elif name.lower().replace("-", "_") in field_names:
            normalized[name.lower().replace("-", "_")] = value
        else:
            LOGGER.warning("Ignoring unknown config key=%s", name, extra={"category": "CONFIG"})
    return normalized


def load_config_file(config_path: Path) -> Dict[str, Any]:
    """Read a config file (YAML or KEY=VALUE) into settings-field keyed values."""
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    if config_path.suffix.lower() in {".yaml", ".yml"}:
        try:
            parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in config file: {exc}") from exc
        if parsed is None:
            parsed = {}
        if not isinstance(parsed, dict):
            raise ValueError("Configuration root must be a YAML object")
        return _normalize_file_keys(parsed)

    return _normalize_file_keys(read_env_file(config_path))


def default_config_path(environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    env = os.environ if environ is None else environ
    explicit = (env.get("IPSECDIAG_CONFIG") or "").strip()
    if explicit:
        return Path(explicit).expanduser()
    if DEFAULT_CONFIG_FILE.exists():
        return DEFAULT_CONFIG_FILE
    return None


def resolve_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> DiagnosticsSettings:
    """
    Resolve settings with precedence: default < config file < environment < CLI overrides.

    ``overrides`` values of None mean "flag not given" and are skipped.
    """
    env = os.environ if environ is None else environ
    merged: Dict[str, Any] = {}

    if config_path is not None:
        merged.update(load_config_file(config_path))

    for env_name, field_name in ENV_FIELDS.items():
        if env_name in env:
            merged[field_name] = env[env_name]

    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value

    try:
        settings = DiagnosticsSettings.model_validate(merged)
    except ValidationError as exc:
        LOGGER.error("Settings validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc

    LOGGER.info(
        "Settings resolved node1=%s node2=%s retis_node=%s duration=%s packet_count=%s skip_retis=%s monitor_icv=%s",
        settings.node1,
        settings.node2,
        settings.retis_node,
        settings.duration,
        settings.packet_count,
        settings.skip_retis,
        settings.monitor_icv,
        extra={"category": "CONFIG"},
    )
    return settings
