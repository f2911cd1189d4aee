"""
Shadowsocks协议处理器
"""
import base64
from typing import Dict, List

from ..errors import ParseError, ValidationError
from ..outbound import OutboundConfig
from ..protocol_handler import ProtocolHandler
from ..server import SUPPORTED_CIPHERS, Protocol, ServerRecord, ShadowsocksSettings
from .link_utils import b64decode_padded, build_link, split_host_port, split_share_link


class ShadowsocksHandler(ProtocolHandler):
    """Shadowsocks协议处理器（不使用TLS）"""

    protocol = Protocol.SHADOWSOCKS
    wire_protocol = "shadowsocks"
    default_port = 8388
    transports = ("tcp",)

    def get_supported_schemes(self) -> List[str]:
        return ["ss://"]

    def validate(self, record: ServerRecord) -> None:
        settings: ShadowsocksSettings = record.settings
        if not settings.method:
            raise ValidationError("method")
        if settings.method.lower() not in SUPPORTED_CIPHERS:
            raise ValidationError("method", f"Unsupported cipher: {settings.method}")
        if not settings.password:
            raise ValidationError("password")

    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        settings: ShadowsocksSettings = record.settings
        return OutboundConfig(
            tag=tag,
            protocol=self.wire_protocol,
            settings={
                "servers": [{
                    "address": record.address,
                    "port": record.port,
                    "method": settings.method.lower(),
                    "password": settings.password,
                    "level": 0,
                }]
            },
            stream_settings={"network": "tcp", "security": "none"},
        )

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析Shadowsocks链接

        支持的格式:
          ss://method:password@server:port#remark
          ss://base64(method:password)@server:port#remark
          ss://base64(method:password@server:port)#remark
        """
        uri = self._ensure_scheme(uri)
        main_part = uri[len("ss://"):].split("#", 1)[0].split("?", 1)[0]

        if "@" in main_part:
            link = split_share_link(uri, default_port=self.default_port)
            userinfo = link.userinfo
            address, port, name = link.address, link.port, link.name
        else:
            # 整体Base64编码的旧格式
            decoded = b64decode_padded(main_part)
            if "@" not in decoded:
                raise ParseError("Missing credentials", uri[:64])
            userinfo, server_part = decoded.rsplit("@", 1)
            address, port = split_host_port(server_part, self.default_port, uri)
            name = split_share_link(uri, default_port=self.default_port,
                                    require_userinfo=False).name

        if ":" not in userinfo:
            userinfo = b64decode_padded(userinfo)
        if ":" not in userinfo:
            raise ParseError("Invalid method:password pair", uri[:64])
        method, password = userinfo.split(":", 1)
        if not method or not password:
            raise ParseError("Missing method or password", uri[:64])

        try:
            return ServerRecord(
                name=name or f"{address}:{port}",
                protocol=self.protocol,
                address=address,
                port=port,
                settings=ShadowsocksSettings(method=method.lower(), password=password),
            )
        except ValidationError as e:
            raise ParseError(str(e), uri[:64])

    def generate_uri(self, record: ServerRecord) -> str:
        """使用SIP002格式生成链接"""
        settings: ShadowsocksSettings = record.settings
        if not settings.method or not settings.password:
            raise ValidationError("password", "Method and password are required for Shadowsocks")
        auth_part = base64.urlsafe_b64encode(
            f"{settings.method}:{settings.password}".encode('utf-8')
        ).decode('utf-8').rstrip("=")
        # build_link会对userinfo做百分号编码，base64url字符不受影响
        return build_link("ss", auth_part, record.address, record.port, {}, record.name)

    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        return {
            "address": record.address,
            "port": record.port,
            "method": record.settings.method,
            "password": record.settings.password,
        }
