"""
Oracle Bridge

Relays price/oracle events from a push socket and a block-log poll
backstop to a signed webhook, deduplicated and batched.

Components:
- ConnectionSupervisor: push socket lifecycle and reconnect debounce
- LogPoller: range-query backstop with a high-water mark
- EventNormalizer: raw frames / log entries -> Update
- DedupFilter: bounded seen-set shared by both paths
- RollupBuffer / RollupScheduler: ordered buffer, immediate or windowed flush
- WebhookDelivery: HMAC-signed POST, failed batches re-queued at the front
- BridgeEngine: owns all of the above and the single processing loop
"""

from .config import BridgeConfig, ConfigError, load_config
from .dedup import DedupFilter, SeenSet
from .delivery import AiohttpSender, WebhookDelivery, build_payload, sign_payload
from .engine import BridgeEngine
from .mock_source import MockEventSource, make_log
from .normalizer import EventKind, EventNormalizer
from .poller import LogPoller
from .rollup import RollupBuffer, RollupScheduler
from .source import EventSource, JsonRpcEventSource, RpcError
from .supervisor import ConnectionSupervisor
from .timers import LoopTimers, ManualTimers
from .types import (
    BridgeStats,
    ConnectionState,
    IngestEvent,
    NormalizedEvent,
    Update,
)

__all__ = [
    'AiohttpSender',
    'BridgeConfig',
    'BridgeEngine',
    'BridgeStats',
    'ConfigError',
    'ConnectionState',
    'ConnectionSupervisor',
    'DedupFilter',
    'EventKind',
    'EventNormalizer',
    'EventSource',
    'IngestEvent',
    'JsonRpcEventSource',
    'LogPoller',
    'LoopTimers',
    'ManualTimers',
    'MockEventSource',
    'NormalizedEvent',
    'RollupBuffer',
    'RollupScheduler',
    'RpcError',
    'SeenSet',
    'Update',
    'WebhookDelivery',
    'build_payload',
    'load_config',
    'make_log',
    'sign_payload',
]
