"""
协议处理器模块
"""
from .vmess_protocol import VMessHandler
from .vless_protocol import VLessHandler
from .trojan_protocol import TrojanHandler
from .shadowsocks_protocol import ShadowsocksHandler
from .hysteria_protocol import HysteriaHandler
from .reality_protocol import RealityHandler
from .xhttp_protocol import XHttpHandler

ALL_HANDLERS = (
    VMessHandler, VLessHandler, TrojanHandler, ShadowsocksHandler,
    HysteriaHandler, RealityHandler, XHttpHandler,
)

__all__ = [
    'VMessHandler', 'VLessHandler', 'TrojanHandler', 'ShadowsocksHandler',
    'HysteriaHandler', 'RealityHandler', 'XHttpHandler', 'ALL_HANDLERS'
]
