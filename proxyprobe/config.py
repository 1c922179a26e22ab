"""
ProxyProbe - Configuration Management
Centralized configuration for the proxy, the tool API and the probe transport.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List


logger = logging.getLogger(__name__)

# Base paths
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
LOGS_DIR = PROJECT_ROOT / "logs"
DATA_DIR = PROJECT_ROOT / "data"

# Persistence files
CONFIG_FILE = DATA_DIR / "config.json"

# Mandatory pacing between probes (seconds)
PROBE_DELAY_S = 0.1
REPLAY_DELAY_S = 0.2


@dataclass
class ProxyConfig:
    """Proxy (mitmproxy) configuration."""
    host: str = "127.0.0.1"
    port: int = 8080
    log_traffic: bool = True
    # Domains whose traffic is never logged
    exclude_domains: List[str] = field(default_factory=lambda: [
        "*.google.com",
        "*.googleapis.com",
        "*.gstatic.com",
    ])


@dataclass
class APIConfig:
    """Tool API configuration."""
    host: str = "127.0.0.1"
    port: int = 3000
    api_key: str = "mcp-dev-key"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class TransportConfig:
    """Outbound probe transport (httpx) configuration."""
    timeout_s: float = 30.0
    verify_tls: bool = False
    user_agent: str = "ProxyProbe/1.0"


@dataclass
class AppConfig:
    """Overall application configuration."""
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    api: APIConfig = field(default_factory=APIConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    allowed_targets: List[str] = field(default_factory=list)


def ensure_dirs():
    """Create all required directories."""
    for d in [LOGS_DIR, DATA_DIR]:
        d.mkdir(parents=True, exist_ok=True)


# ── User Config Persistence ───────────────────────────────────────

def load_user_config(path: Path = CONFIG_FILE) -> dict:
    """Load user config overrides (ports, allowed targets, ...)."""
    if not path.exists():
        return {}
    try:
        with open(path, 'r') as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError) as e:
        logger.warning("[Config] Error loading %s: %s", path, e)
        return {}


def save_user_config(config: dict, path: Path = CONFIG_FILE):
    """Save user config overrides, merged over what is already stored."""
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = load_user_config(path)
    existing.update(config)
    try:
        with open(path, 'w') as f:
            json.dump(existing, f, indent=2)
    except OSError as e:
        logger.error("[Config] Error saving config: %s", e)


def _split_targets(raw: str) -> List[str]:
    return [t.strip() for t in raw.split(",") if t.strip()]


def get_config(path: Path = CONFIG_FILE) -> AppConfig:
    """Get the current configuration: defaults, then persisted overrides, then env."""
    cfg = AppConfig()

    user_cfg = load_user_config(path)
    if 'proxy_port' in user_cfg:
        cfg.proxy.port = int(user_cfg['proxy_port'])
    if 'api_port' in user_cfg:
        cfg.api.port = int(user_cfg['api_port'])
    if isinstance(user_cfg.get('allowed_targets'), list):
        cfg.allowed_targets = [str(t) for t in user_cfg['allowed_targets']]

    env = os.environ
    if env.get("PROXYPROBE_API_KEY"):
        cfg.api.api_key = env["PROXYPROBE_API_KEY"]
    if env.get("PROXYPROBE_API_PORT"):
        cfg.api.port = int(env["PROXYPROBE_API_PORT"])
    if env.get("PROXYPROBE_PROXY_PORT"):
        cfg.proxy.port = int(env["PROXYPROBE_PROXY_PORT"])
    if env.get("PROXYPROBE_ALLOWED_TARGETS"):
        cfg.allowed_targets = _split_targets(env["PROXYPROBE_ALLOWED_TARGETS"])

    return cfg
