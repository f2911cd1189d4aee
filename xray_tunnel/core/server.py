"""
ServerRecord 数据模型 - 代理服务器记录

记录由两部分组成：所有协议共享的核心字段，以及按协议区分的设置变体。
协议枚举是封闭的，设置变体必须与协议一致。
"""
import time
import uuid as uuid_lib
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ValidationError


class Protocol(Enum):
    """支持的代理协议"""
    VMESS = "vmess"
    VLESS = "vless"
    TROJAN = "trojan"
    SHADOWSOCKS = "shadowsocks"
    HYSTERIA = "hysteria"
    REALITY = "reality"
    XHTTP = "xhttp"

    @classmethod
    def from_value(cls, value: Union[str, "Protocol"]) -> "Protocol":
        """
        根据名称获取协议枚举

        Raises:
            ValidationError: 未知协议
        """
        if isinstance(value, Protocol):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError("protocol", f"Unsupported protocol: {value}")


# Shadowsocks 支持的加密方式
SUPPORTED_CIPHERS = (
    "aes-128-gcm",
    "aes-256-gcm",
    "chacha20-poly1305",
    "chacha20-ietf-poly1305",
    "xchacha20-poly1305",
    "xchacha20-ietf-poly1305",
    "2022-blake3-aes-128-gcm",
    "2022-blake3-aes-256-gcm",
    "2022-blake3-chacha20-poly1305",
    "none",
    "plain",
)

# Hysteria 传输模式
HYSTERIA_MODES = ("udp", "wechat-video", "faketcp")

# 未探测过的延迟哨兵值
NEVER_PROBED = 0


@dataclass
class VMessSettings:
    """VMess协议设置"""
    uuid: str = ""
    alter_id: int = 0
    security: str = "auto"


@dataclass
class VLessSettings:
    """VLESS协议设置"""
    uuid: str = ""
    flow: str = ""
    encryption: str = "none"


@dataclass
class TrojanSettings:
    """Trojan协议设置"""
    password: str = ""
    fallback_uuid: str = ""  # 没有密码时使用的备用标识


@dataclass
class ShadowsocksSettings:
    """Shadowsocks协议设置"""
    method: str = "chacha20-poly1305"
    password: str = ""


@dataclass
class HysteriaSettings:
    """Hysteria协议设置"""
    auth: str = ""
    up_mbps: int = 100
    down_mbps: int = 100
    mode: str = "udp"  # udp / wechat-video / faketcp
    obfs: str = ""
    recv_window_conn: int = 0
    recv_window: int = 0
    disable_mtu_discovery: bool = False


@dataclass
class RealitySettings:
    """REALITY协议设置（基于VLESS）"""
    uuid: str = ""
    public_key: str = ""
    short_id: str = ""
    spider_x: str = ""
    flow: str = "xtls-rprx-vision"


@dataclass
class XHttpSettings:
    """XHTTP协议设置"""
    uuid: str = ""
    mode: str = "auto"


ProtocolSettings = Union[
    VMessSettings, VLessSettings, TrojanSettings, ShadowsocksSettings,
    HysteriaSettings, RealitySettings, XHttpSettings
]

SETTINGS_TYPES: Dict[Protocol, type] = {
    Protocol.VMESS: VMessSettings,
    Protocol.VLESS: VLessSettings,
    Protocol.TROJAN: TrojanSettings,
    Protocol.SHADOWSOCKS: ShadowsocksSettings,
    Protocol.HYSTERIA: HysteriaSettings,
    Protocol.REALITY: RealitySettings,
    Protocol.XHTTP: XHttpSettings,
}


@dataclass
class TransportSettings:
    """传输层设置"""
    network: str = "tcp"      # tcp / ws / grpc / h2 / httpupgrade / kcp / quic / xhttp
    security: str = ""        # "" / none / tls / reality
    sni: str = ""
    host: str = ""
    path: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    alpn: List[str] = field(default_factory=list)
    fingerprint: str = ""
    allow_insecure: bool = False
    service_name: str = ""
    grpc_multi_mode: bool = False
    header_type: str = "none"
    mux_enabled: bool = False
    mux_concurrency: int = 8

    @property
    def tls_enabled(self) -> bool:
        return self.security == "tls"


@dataclass
class RoutingOverrides:
    """单个服务器的路由覆盖设置"""
    bypass_domains: List[str] = field(default_factory=list)
    block_domains: List[str] = field(default_factory=list)
    bypass_ips: List[str] = field(default_factory=list)
    block_ips: List[str] = field(default_factory=list)
    dns_servers: List[str] = field(default_factory=list)


@dataclass
class ProbeState:
    """延迟探测状态"""
    ping: int = NEVER_PROBED        # 平滑后的延迟(ms)，0表示从未探测
    sample_count: int = 0
    unreachable: bool = False
    consecutive_failures: int = 0
    last_probe_at: Optional[float] = None
    last_success_at: Optional[float] = None

    @property
    def is_probed(self) -> bool:
        return self.ping != NEVER_PROBED

    @property
    def is_usable(self) -> bool:
        """可参与选择：已探测且可达"""
        return self.is_probed and not self.unreachable


@dataclass
class UsageStats:
    """流量使用统计"""
    bytes_up: int = 0
    bytes_down: int = 0
    connection_count: int = 0
    last_connected_at: Optional[float] = None

    def add_traffic(self, up: int, down: int) -> None:
        self.bytes_up += max(0, up)
        self.bytes_down += max(0, down)

    @property
    def total_bytes(self) -> int:
        return self.bytes_up + self.bytes_down


def generate_id() -> str:
    return uuid_lib.uuid4().hex


@dataclass
class ServerRecord:
    """代理服务器记录"""
    name: str
    protocol: Protocol
    address: str
    port: int
    settings: Optional[ProtocolSettings] = None
    transport: TransportSettings = field(default_factory=TransportSettings)
    routing: RoutingOverrides = field(default_factory=RoutingOverrides)
    probe: ProbeState = field(default_factory=ProbeState)
    usage: UsageStats = field(default_factory=UsageStats)
    id: str = field(default_factory=generate_id)
    group_id: Optional[str] = None
    subscription_key: Optional[str] = None
    favorite: bool = False
    note: str = ""
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.protocol = Protocol.from_value(self.protocol)
        settings_type = SETTINGS_TYPES[self.protocol]
        if self.settings is None:
            self.settings = settings_type()
        elif not isinstance(self.settings, settings_type):
            raise ValidationError(
                "settings",
                f"{type(self.settings).__name__} does not match protocol {self.protocol.value}"
            )
        if isinstance(self.port, str):
            try:
                self.port = int(self.port)
            except ValueError:
                raise ValidationError("port", f"Invalid port: {self.port}")
        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ValidationError("port", f"Port out of range: {self.port}")

    def identity_key(self) -> Union[str, Tuple[str, str, int]]:
        """
        订阅对账使用的身份标识

        有显式订阅键时使用订阅键，否则使用 (协议, 地址, 端口)。
        """
        if self.subscription_key:
            return self.subscription_key
        return (self.protocol.value, self.address.strip().lower(), self.port)

    @property
    def display_name(self) -> str:
        return self.name or f"{self.address}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（用于持久化）"""
        data = asdict(self)
        data['protocol'] = self.protocol.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerRecord":
        """从字典创建记录"""
        protocol = Protocol.from_value(data['protocol'])
        settings_type = SETTINGS_TYPES[protocol]
        return cls(
            id=data.get('id') or generate_id(),
            name=data.get('name', ''),
            protocol=protocol,
            address=data['address'],
            port=data['port'],
            settings=settings_type(**(data.get('settings') or {})),
            transport=TransportSettings(**(data.get('transport') or {})),
            routing=RoutingOverrides(**(data.get('routing') or {})),
            probe=ProbeState(**(data.get('probe') or {})),
            usage=UsageStats(**(data.get('usage') or {})),
            group_id=data.get('group_id'),
            subscription_key=data.get('subscription_key'),
            favorite=data.get('favorite', False),
            note=data.get('note', ''),
            created_at=data.get('created_at') or time.time(),
        )
