"""
Trojan协议处理器
"""
from typing import Dict, List

from ..errors import ParseError, ValidationError
from ..outbound import OutboundConfig
from ..protocol_handler import ProtocolHandler
from ..server import Protocol, ServerRecord, TrojanSettings
from .link_utils import (
    build_link, build_mux, build_stream_settings, split_share_link,
    transport_from_link, transport_to_params
)


class TrojanHandler(ProtocolHandler):
    """Trojan协议处理器（必须使用TLS）"""

    protocol = Protocol.TROJAN
    wire_protocol = "trojan"
    default_port = 443
    requires_tls = True
    transports = ("tcp", "ws", "grpc", "h2", "httpupgrade")

    def get_supported_schemes(self) -> List[str]:
        return ["trojan://"]

    @staticmethod
    def effective_password(record: ServerRecord) -> str:
        """密码为空时使用备用标识"""
        settings: TrojanSettings = record.settings
        return settings.password or settings.fallback_uuid

    def validate(self, record: ServerRecord) -> None:
        if not self.effective_password(record):
            raise ValidationError("password")
        if record.transport.security not in ("", "tls"):
            raise ValidationError("security", "Trojan requires TLS")

    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        return OutboundConfig(
            tag=tag,
            protocol=self.wire_protocol,
            settings={
                "servers": [{
                    "address": record.address,
                    "port": record.port,
                    "password": self.effective_password(record),
                    "level": 0,
                }]
            },
            stream_settings=build_stream_settings(record.transport, record.address, force_tls=True),
            mux=build_mux(record.transport),
        )

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析Trojan链接

        Trojan链接格式: trojan://password@server:port?params#remark
        """
        uri = self._ensure_scheme(uri)
        link = split_share_link(uri, default_port=self.default_port)
        if not link.userinfo.strip():
            raise ParseError("Missing password", uri[:64])

        transport = transport_from_link(link, default_security="tls")
        # 安全类型（Trojan始终使用TLS）
        transport.security = "tls"
        try:
            return ServerRecord(
                name=link.name or f"{link.address}:{link.port}",
                protocol=self.protocol,
                address=link.address,
                port=link.port,
                settings=TrojanSettings(password=link.userinfo),
                transport=transport,
            )
        except ValidationError as e:
            raise ParseError(str(e), uri[:64])

    def generate_uri(self, record: ServerRecord) -> str:
        params = transport_to_params(record.transport)
        params["security"] = "tls"
        return build_link("trojan", self.effective_password(record), record.address,
                          record.port, params, record.name)

    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        return {
            "address": record.address,
            "port": record.port,
            "password": self.effective_password(record),
            "network": record.transport.network,
        }
