# ============================================================================
# pentrelay/base/config.py
# Gateway Configuration Management
# ============================================================================
#
# PURPOSE:
# Defines every tunable of the relay gateway in one place: where it listens,
# how long SSH connects may take, how often heartbeats run, where the
# reasoning service lives and which commands the agent may propose.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: one immutable section per concern
# 2. Environment variables: every field can be set via RELAY_* variables
# 3. Singleton: get_config() builds the config once; set_config() swaps it (tests)
#
# ============================================================================

from __future__ import annotations

import ipaddress
import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_tuple(name: str, default: tuple) -> tuple:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


# ============================================================================
# Reasoning Service Configuration
# ============================================================================
# The agent bridge POSTs {"question": ...} to this endpoint unless the browser
# supplies its own endpoint in the start_pentest frame.

@dataclass(frozen=True)
class AIConfig:
    # Fallback prediction endpoint (Flowise-style)
    endpoint: str = "http://localhost:3000/api/v1/prediction/default"

    # Seconds to wait for one reasoning round-trip
    request_timeout: float = 120.0

    # Prompt template used when the client does not pick one
    default_template: str = "default-pentest"


# ============================================================================
# Access Control Configuration
# ============================================================================

@dataclass(frozen=True)
class SecurityConfig:
    # Shared secret for websocket/API clients when auth is required
    api_token: str = field(default_factory=lambda: secrets.token_urlsafe(32))

    # Browser origins allowed to open the websocket (":*" matches any port)
    allowed_origins: tuple = ("http://127.0.0.1:*", "http://localhost:*")

    # Require the token even when bound to loopback
    require_auth: bool = False


# ============================================================================
# Remote Access (SSH) Configuration
# ============================================================================

@dataclass(frozen=True)
class SSHConfig:
    # Upper bound for TCP connect + banner + authentication (seconds)
    connect_timeout: float = 20.0

    # Pseudo-terminal settings for interactive shells
    term: str = "xterm"
    default_cols: int = 80
    default_rows: int = 24

    # Probe the transport before handing a cached channel back out
    probe_before_reuse: bool = True

    # Bytes read per recv() call on remote streams
    read_chunk_size: int = 4096

    # Idle wait between polls of a remote stream with nothing ready (seconds)
    poll_interval: float = 0.05

    # How often an idle connection is checked for a transport the remote dropped (seconds)
    watch_interval: float = 5.0


# ============================================================================
# Heartbeat Configuration
# ============================================================================

@dataclass(frozen=True)
class LivenessConfig:
    # Seconds between liveness-ping rounds
    interval_seconds: float = 30.0

    # Consecutive silent intervals tolerated before a session is evicted
    max_missed: int = 2


# ============================================================================
# Command Policy Configuration
# ============================================================================
# Advisory filter for agent-proposed commands. Matching is naive
# case-insensitive substring/prefix matching on the raw text.

@dataclass(frozen=True)
class PolicyConfig:
    allowed_tools: tuple = (
        "nmap", "masscan", "whois", "dig", "nslookup", "host",
        "nikto", "dirb", "gobuster", "ffuf", "wfuzz", "whatweb",
        "wpscan", "sqlmap", "xsser", "zap-cli", "curl", "wget",
        "sslscan", "testssl", "enum4linux", "smbclient", "hydra",
        "searchsploit", "msfconsole", "openvas", "gvm-cli",
        "linpeas", "winpeas", "ping", "traceroute",
    )
    blocked_patterns: tuple = (
        "rm -rf", "rm -fr", "rm -r /", "rm --recursive",
        "mkfs", "dd if=", "of=/dev/", "> /dev/sd", "> /dev/nvme",
        "chmod -r 777", "chmod 777 /", "chown -r", "chmod -r",
        ":(){", "shred ",
    )


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Optional rotating log file; console only when None
    file_path: Optional[Path] = None
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass
class RelayConfig:
    ai: AIConfig = field(default_factory=AIConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    log: LogConfig = field(default_factory=LogConfig)

    debug: bool = False

    # 127.0.0.1 = loopback only; 0.0.0.0 exposes the gateway to the network
    api_host: str = "127.0.0.1"
    api_port: int = 3001

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Build a RelayConfig from RELAY_* environment variables."""
        ai = AIConfig(
            endpoint=os.getenv("RELAY_AI_ENDPOINT", AIConfig.endpoint),
            request_timeout=float(os.getenv("RELAY_AI_TIMEOUT", "120")),
            default_template=os.getenv("RELAY_AI_TEMPLATE", "default-pentest"),
        )

        token = os.getenv("RELAY_API_TOKEN") or secrets.token_urlsafe(32)
        security = SecurityConfig(
            api_token=token,
            allowed_origins=_env_tuple("RELAY_ALLOWED_ORIGINS", SecurityConfig.allowed_origins),
            require_auth=_env_bool("RELAY_REQUIRE_AUTH", "false"),
        )

        ssh = SSHConfig(
            connect_timeout=float(os.getenv("RELAY_SSH_CONNECT_TIMEOUT", "20")),
            term=os.getenv("RELAY_SSH_TERM", "xterm"),
            default_cols=int(os.getenv("RELAY_SSH_COLS", "80")),
            default_rows=int(os.getenv("RELAY_SSH_ROWS", "24")),
            probe_before_reuse=_env_bool("RELAY_SSH_PROBE_BEFORE_REUSE", "true"),
            watch_interval=float(os.getenv("RELAY_SSH_WATCH_INTERVAL", "5")),
        )

        liveness = LivenessConfig(
            interval_seconds=float(os.getenv("RELAY_HEARTBEAT_INTERVAL", "30")),
            max_missed=int(os.getenv("RELAY_HEARTBEAT_MAX_MISSED", "2")),
        )

        policy = PolicyConfig(
            allowed_tools=_env_tuple("RELAY_ALLOWED_TOOLS", PolicyConfig.allowed_tools),
            blocked_patterns=_env_tuple("RELAY_BLOCKED_PATTERNS", PolicyConfig.blocked_patterns),
        )

        log_file = os.getenv("RELAY_LOG_FILE")
        log = LogConfig(
            level=os.getenv("RELAY_LOG_LEVEL", "INFO"),
            file_path=Path(log_file) if log_file else None,
        )

        # PORT is honoured for PaaS-style deployments
        port = os.getenv("RELAY_API_PORT") or os.getenv("PORT") or "3001"

        return cls(
            ai=ai,
            security=security,
            ssh=ssh,
            liveness=liveness,
            policy=policy,
            log=log,
            debug=_env_bool("RELAY_DEBUG", "false"),
            api_host=os.getenv("RELAY_API_HOST", "127.0.0.1"),
            api_port=int(port),
        )


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[RelayConfig] = None


def get_config() -> RelayConfig:
    """
    Get the global configuration instance.

    Returns:
        The shared RelayConfig (built from the environment on first call)
    """
    global _config
    if _config is None:
        _config = RelayConfig.from_env()
    return _config


def set_config(config: Optional[RelayConfig]) -> None:
    """
    Replace the global configuration (mainly used for testing).

    Passing None forces the next get_config() to re-read the environment.
    """
    global _config
    _config = config


def is_network_exposed(host: str) -> bool:
    """True when `host` is not a loopback address."""
    if host in ("localhost", ""):
        return False
    try:
        return not ipaddress.ip_address(host).is_loopback
    except ValueError:
        # Hostnames other than localhost are treated as exposed
        return True


def setup_logging(config: Optional[RelayConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Sets up console logging plus an optional rotating file handler.
    Call this once at application startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_path is not None:
        from logging.handlers import RotatingFileHandler
        cfg.log.file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.log.file_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
    # paramiko's transport logger is chatty at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)
