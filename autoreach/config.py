"""
AutoReach - Configuration

Every tunable of the engine with its default. `load_config` reads the YAML
layout documented in config/example.yaml; unknown keys are ignored.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
)

# Container-safe chromium flags; the sandbox stays enabled.
DEFAULT_BROWSER_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-plugins",
    "--no-first-run",
    "--disable-default-apps",
    "--disable-background-timer-throttling",
]

CONSENT_ACTIONS = [
    "desktop-app-connection",
    "form-automation",
    "screenshot-capture",
    "browser-control",
    "data-access",
]

CONSENT_PERMISSIONS = ["read", "write", "execute", "control", "monitor"]


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class BrowserConfig(_Section):
    max_instances: int = Field(3, ge=1)
    max_tabs_per_instance: int = Field(10, ge=1)
    idle_timeout_s: float = Field(30 * 60, gt=0)
    cleanup_interval_s: float = Field(5 * 60, gt=0)
    viewport_width: int = 1366
    viewport_height: int = 768
    user_agent: str = DEFAULT_USER_AGENT
    args: List[str] = Field(default_factory=lambda: list(DEFAULT_BROWSER_ARGS))
    headless: bool = True
    navigation_timeout_ms: int = Field(30000, gt=0)
    driver_call_timeout_s: float = Field(60.0, gt=0)


class ClassifierConfig(_Section):
    min_confidence: int = Field(30, ge=0, le=100)
    max_link_checks: int = Field(8, ge=0)
    max_footer_checks: int = Field(5, ge=0)
    probe_timeout_s: float = Field(3.0, gt=0)
    link_timeout_s: float = Field(5.0, gt=0)
    footer_timeout_s: float = Field(4.0, gt=0)
    fetch_timeout_s: float = Field(12.0, gt=0)
    probe_workers: int = Field(6, ge=1)
    excerpt_chars: int = Field(2000, ge=100)
    respect_robots: bool = True
    classifier_endpoint: Optional[str] = None
    classifier_timeout_s: float = Field(15.0, gt=0)


class DefenseConfig(_Section):
    auto_wait_s: float = Field(15.0, ge=0)
    manual_wait_s: float = Field(30.0, ge=0)
    poll_interval_s: float = Field(1.0, gt=0)


class ConsentConfig(_Section):
    request_expiry_minutes: float = Field(10, gt=0)
    grant_expiry_minutes: float = Field(30, gt=0)
    max_pending_requests: int = Field(5, ge=1)
    allowed_actions: List[str] = Field(default_factory=lambda: list(CONSENT_ACTIONS))
    allowed_permissions: List[str] = Field(default_factory=lambda: list(CONSENT_PERMISSIONS))
    log_activity: bool = True
    max_activity_entries: int = Field(10000, ge=1)
    cleanup_interval_s: float = Field(5 * 60, gt=0)


class OriginConfig(_Section):
    allowed_origins: List[str] = Field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3000",
    ])
    allowed_protocols: List[str] = Field(default_factory=lambda: ["http", "https"])
    allowed_ports: List[int] = Field(default_factory=lambda: [3000, 3001, 3002, 3003, 3004, 3005])
    strict_mode: bool = True
    log_violations: bool = True
    max_violations: int = Field(1000, ge=1)


class MonitorConfig(_Section):
    health_check_interval_s: float = Field(30.0, gt=0)
    connection_timeout_s: float = Field(5 * 60, gt=0)
    latency_threshold_ms: float = Field(1000.0, gt=0)
    packet_loss_threshold_pct: float = Field(5.0, ge=0)
    error_threshold: int = Field(10, ge=0)
    alert_retention_days: float = Field(7, gt=0)
    health_history_hours: float = Field(24, gt=0)
    enable_health_checks: bool = True
    enable_alerts: bool = True


class OpsConfig(_Section):
    ops_log: Optional[str] = None
    ops_stdout: bool = False


class ServerConfig(_Section):
    host: str = "127.0.0.1"
    port: int = 8765


class EngineConfig(_Section):
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    defense: DefenseConfig = Field(default_factory=DefenseConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    origin: OriginConfig = Field(default_factory=OriginConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    ops: OpsConfig = Field(default_factory=OpsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def parse_config(data: Any) -> EngineConfig:
    """Build an EngineConfig from an already-loaded mapping."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid config: {e}") from e


def load_config(path: Path | str) -> EngineConfig:
    config_path = Path(path)
    if not config_path.exists() or not config_path.is_file():
        raise ConfigError(f"config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}: {e}") from e
    return parse_config(data)
