"""
协议处理器基础接口和注册表

每个协议处理器负责三件事：
  - synthesize: 服务器记录 -> 出站配置
  - parse_uri: 分享链接 -> 服务器记录
  - generate_uri: 服务器记录 -> 分享链接
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from .errors import ParseError, ValidationError
from .outbound import OutboundConfig
from .server import Protocol, ServerRecord

PRIMARY_TAG = "proxy"


class ProtocolHandler(ABC):
    """协议处理器基础接口"""

    # 子类覆盖
    protocol: Protocol
    wire_protocol: str = ""
    default_port: int = 443
    requires_tls: bool = False
    transports: Tuple[str, ...] = ("tcp",)

    @abstractmethod
    def get_supported_schemes(self) -> List[str]:
        """
        获取支持的URL scheme列表

        Returns:
            scheme列表，如['vmess://']
        """
        pass

    @abstractmethod
    def validate(self, record: ServerRecord) -> None:
        """
        校验记录是否具备合成所需的字段

        Raises:
            ValidationError: 缺少或无效的字段
        """
        pass

    @abstractmethod
    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        """根据已校验的记录构建出站配置"""
        pass

    @abstractmethod
    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析分享链接

        Raises:
            ParseError: 链接格式错误
        """
        pass

    @abstractmethod
    def generate_uri(self, record: ServerRecord) -> str:
        """生成分享链接"""
        pass

    @abstractmethod
    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        """
        该协议认为必要的字段及其取值

        分享链接往返后这些字段必须保持一致。
        """
        pass

    def synthesize(self, record: ServerRecord, tag: str = PRIMARY_TAG) -> OutboundConfig:
        """
        合成出站配置

        Args:
            record: 服务器记录
            tag: 出站标签

        Returns:
            OutboundConfig

        Raises:
            ValidationError: 记录协议不匹配或缺少必要字段
        """
        if record.protocol != self.protocol:
            raise ValidationError(
                "protocol",
                f"{type(self).__name__} cannot synthesize {record.protocol.value}"
            )
        if not record.address or not record.address.strip():
            raise ValidationError("address")
        if self.transports and record.transport.network not in self.transports:
            raise ValidationError(
                "network",
                f"Transport {record.transport.network} not supported by {self.protocol.value}"
            )
        self.validate(record)
        return self.build_outbound(record, tag)

    def can_parse(self, uri: str) -> bool:
        uri = uri.strip()
        return any(uri.lower().startswith(scheme) for scheme in self.get_supported_schemes())

    def _ensure_scheme(self, uri: str) -> str:
        uri = uri.strip()
        if not self.can_parse(uri):
            raise ParseError(f"Not a {self.protocol.value} link", uri)
        return uri


class ProtocolRegistry:
    """协议处理器注册表"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._handlers: Dict[Protocol, ProtocolHandler] = {}
        self._scheme_to_handler: List[Tuple[str, ProtocolHandler]] = []

    def register(self, handler: ProtocolHandler) -> None:
        """
        注册协议处理器

        Args:
            handler: 协议处理器实例
        """
        self._handlers[handler.protocol] = handler
        for scheme in handler.get_supported_schemes():
            self._scheme_to_handler.append((scheme, handler))
        # 长scheme优先匹配，例如 vless+reality:// 优先于 vless://
        self._scheme_to_handler.sort(key=lambda item: len(item[0]), reverse=True)

    def verify_complete(self) -> None:
        """
        检查每个协议都有对应的处理器

        Raises:
            ValidationError: 存在未注册处理器的协议
        """
        missing = [p.value for p in Protocol if p not in self._handlers]
        if missing:
            raise ValidationError("protocol", f"No handler registered for: {', '.join(missing)}")

    def get(self, protocol) -> ProtocolHandler:
        """
        根据协议获取处理器

        Raises:
            ValidationError: 未知协议或未注册
        """
        protocol = Protocol.from_value(protocol)
        handler = self._handlers.get(protocol)
        if handler is None:
            raise ValidationError("protocol", f"No handler registered for {protocol.value}")
        return handler

    def get_by_uri(self, uri: str) -> Optional[ProtocolHandler]:
        """
        根据链接识别处理器

        Returns:
            处理器，无法识别返回None
        """
        uri = uri.strip()
        lowered = uri.lower()
        # vless://...security=reality 按REALITY处理
        if lowered.startswith("vless://") and self._is_reality_link(uri):
            handler = self._handlers.get(Protocol.REALITY)
            if handler is not None:
                return handler
        for scheme, handler in self._scheme_to_handler:
            if lowered.startswith(scheme):
                return handler
        return None

    @staticmethod
    def _is_reality_link(uri: str) -> bool:
        """只看查询参数中的 security，忽略备注和其他参数值"""
        from .protocols.link_utils import split_share_link

        try:
            link = split_share_link(uri, default_port=443)
        except ParseError:
            return False
        return link.get("security").lower() == "reality"

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        自动识别协议并解析链接

        Raises:
            ParseError: 不支持的scheme或链接格式错误
        """
        handler = self.get_by_uri(uri)
        if handler is None:
            raise ParseError("Unsupported link scheme", uri.strip()[:64])
        return handler.parse_uri(uri)

    def synthesize(self, record: ServerRecord, tag: str = PRIMARY_TAG) -> OutboundConfig:
        return self.get(record.protocol).synthesize(record, tag)

    def generate_uri(self, record: ServerRecord) -> str:
        return self.get(record.protocol).generate_uri(record)

    def get_supported_protocols(self) -> List[str]:
        return [p.value for p in self._handlers]

    def get_supported_schemes(self) -> List[str]:
        return [scheme for scheme, _ in self._scheme_to_handler]


def default_registry() -> ProtocolRegistry:
    """创建注册了全部协议处理器的注册表"""
    from .protocols import ALL_HANDLERS

    registry = ProtocolRegistry()
    for handler_cls in ALL_HANDLERS:
        registry.register(handler_cls())
    registry.verify_complete()
    return registry
