"""
核心模块
"""
from .errors import (
    TunnelManagerError, ValidationError, ParseError, NetworkError,
    TunnelStartError, ConnectionFailedError, ConflictError
)
from .server import Protocol, ServerRecord, TransportSettings, ProbeState, UsageStats
from .group import ServerGroup
from .outbound import OutboundConfig
from .protocol_handler import ProtocolHandler, ProtocolRegistry, default_registry
from .config_assembler import ConfigAssembler, RoutingPolicy, TunnelConfig, CaptureInterface
from .ping_probe import PingProbe, ProbeConfig, ProbeResult
from .selection import SelectionController, TunnelState
from .store import ServerStore, MemoryStore, JsonFileStore
from .reconciler import UpdateReconciler, Backoff
from .routing_rules import RoutingRuleStore, RoutingRuleset
from .scheduler import IntervalScheduler
from .tunnel_engine import TunnelEngine, XrayProcessEngine

__all__ = [
    'TunnelManagerError',
    'ValidationError',
    'ParseError',
    'NetworkError',
    'TunnelStartError',
    'ConnectionFailedError',
    'ConflictError',
    'Protocol',
    'ServerRecord',
    'TransportSettings',
    'ProbeState',
    'UsageStats',
    'ServerGroup',
    'OutboundConfig',
    'ProtocolHandler',
    'ProtocolRegistry',
    'default_registry',
    'ConfigAssembler',
    'RoutingPolicy',
    'TunnelConfig',
    'CaptureInterface',
    'PingProbe',
    'ProbeConfig',
    'ProbeResult',
    'SelectionController',
    'TunnelState',
    'ServerStore',
    'MemoryStore',
    'JsonFileStore',
    'UpdateReconciler',
    'Backoff',
    'RoutingRuleStore',
    'RoutingRuleset',
    'IntervalScheduler',
    'TunnelEngine',
    'XrayProcessEngine'
]
