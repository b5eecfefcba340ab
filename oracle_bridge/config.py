"""
Bridge Configuration

All configurable parameters for the oracle bridge, read from the
environment (and a .env file, if present).
"""

import logging
import math
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import load_dotenv

from .normalizer import DEFAULT_EVENT_SIGNATURE, EventKind


class ConfigError(ValueError):
    """Fatal configuration problem; the bridge does not start."""


@dataclass
class BridgeConfig:
    """Configuration for BridgeEngine."""

    # ========== Push Source ==========
    # Push feed URL (required)
    ws_url: str = ""

    # Origin header on the handshake; the upstream gateway rejects
    # connections without one
    ws_origin: Optional[str] = None

    # Send eth_subscribe('logs') for the tracked oracles on every open
    ws_subscribe_logs: bool = False

    # Fixed delay before reconnecting after a close (seconds)
    reconnect_delay: float = 5.0

    # Liveness log interval (seconds)
    heartbeat_interval: float = 60.0

    # ========== Poll Backstop ==========
    # JSON-RPC URL (None = backstop disabled)
    http_url: Optional[str] = None

    # Delay between poll iterations (seconds)
    poll_interval: float = 3.0

    # Positions replayed behind the head at startup
    poll_safety_margin: int = 10

    # ========== Tracked Sources ==========
    # Chain name; push frames tagged with a different chain are dropped
    chain: str = "base"

    # Oracle contract addresses; push frames naming another oracle are dropped
    oracles: List[str] = field(default_factory=list)

    # Human-readable event signatures
    event_signatures: List[str] = field(
        default_factory=lambda: [DEFAULT_EVENT_SIGNATURE]
    )

    # source_id for push price frames that carry none
    feed_id: str = "ws"

    # ========== Delivery ==========
    # Webhook receiver URL (required)
    webhook_url: str = ""

    # Shared HMAC secret (None = unsigned)
    webhook_secret: Optional[str] = field(default=None, repr=False)

    # POST timeout (seconds)
    webhook_timeout: float = 10.0

    # Rollup window (seconds, 0 = immediate)
    rollup_window: float = 0.0

    # ========== Dedup ==========
    # Seen-set size that triggers a full clear
    seen_set_cap: int = 5000

    # ========== Logging ==========
    log_level: str = "INFO"

    def event_kinds(self) -> List[EventKind]:
        """Parse event_signatures. Raises ConfigError on a bad signature."""
        kinds = []
        for signature in self.event_signatures:
            try:
                kinds.append(EventKind.parse(signature))
            except ValueError as e:
                raise ConfigError(str(e)) from e
        return kinds

    def validate(self):
        if not self.ws_url:
            raise ConfigError("WS_URL is required")
        if not self.webhook_url:
            raise ConfigError("WEBHOOK_URL is required")
        for name in ('reconnect_delay', 'heartbeat_interval', 'poll_interval',
                     'webhook_timeout', 'rollup_window', 'poll_safety_margin'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0")
        if self.seen_set_cap <= 0:
            raise ConfigError("seen_set_cap must be > 0")
        if self.heartbeat_interval == 0 or self.poll_interval == 0:
            raise ConfigError("heartbeat_interval and poll_interval must be > 0")
        if not self.event_signatures:
            raise ConfigError("EVENT_SIGNATURES must name at least one event")
        if self.log_level not in ('CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'):
            raise ConfigError(f"Unknown LOG_LEVEL: {self.log_level}")
        self.event_kinds()


def _split(raw: Optional[str], sep: str) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(sep) if part.strip()]


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if not math.isfinite(value):
        raise ConfigError(f"{name} must be finite, got {raw!r}")
    return value


def _flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes')


def load_config(
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[str] = None,
    logger: logging.Logger = None,
) -> BridgeConfig:
    """
    Build a validated BridgeConfig.

    Args:
        env: Variables to read (default: os.environ after loading .env)
        dotenv_path: Explicit .env path (default: search from cwd)
        logger: Optional logger

    Raises:
        ConfigError: Missing required URL or bad value
    """
    logger = logger or logging.getLogger(__name__)
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    signatures = _split(env.get('EVENT_SIGNATURES'), ';') or [DEFAULT_EVENT_SIGNATURE]

    config = BridgeConfig(
        ws_url=(env.get('WS_URL') or '').strip(),
        ws_origin=(env.get('WS_ORIGIN') or '').strip() or None,
        ws_subscribe_logs=_flag(env, 'WS_SUBSCRIBE_LOGS'),
        reconnect_delay=_number(env, 'RECONNECT_DELAY_SEC', 5.0, float),
        heartbeat_interval=_number(env, 'HEARTBEAT_INTERVAL_SEC', 60.0, float),
        http_url=(env.get('HTTP_URL') or '').strip() or None,
        poll_interval=_number(env, 'POLL_INTERVAL_SEC', 3.0, float),
        poll_safety_margin=_number(env, 'POLL_SAFETY_MARGIN', 10, int),
        chain=(env.get('CHAIN') or 'base').strip().lower(),
        oracles=[a.lower() for a in _split(env.get('ORACLES'), ',')],
        event_signatures=signatures,
        feed_id=(env.get('FEED_ID') or 'ws').strip(),
        webhook_url=(env.get('WEBHOOK_URL') or '').strip(),
        webhook_secret=env.get('WEBHOOK_SECRET') or None,
        webhook_timeout=_number(env, 'WEBHOOK_TIMEOUT_SEC', 10.0, float),
        rollup_window=_number(env, 'ROLLUP_WINDOW_SEC', 0.0, float),
        seen_set_cap=_number(env, 'SEEN_SET_CAP', 5000, int),
        log_level=(env.get('LOG_LEVEL') or 'INFO').strip().upper(),
    )
    config.validate()

    if config.ws_origin is None:
        logger.warning("WS_ORIGIN not set; the upstream gateway may reject the handshake")
    return config
