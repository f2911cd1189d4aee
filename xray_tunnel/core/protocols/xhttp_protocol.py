"""
XHTTP协议处理器（VLESS + XHTTP传输）
"""
from typing import Dict, List

from ..errors import ParseError, ValidationError
from ..outbound import OutboundConfig
from ..protocol_handler import ProtocolHandler
from ..server import Protocol, ServerRecord, TransportSettings, XHttpSettings
from .link_utils import (
    build_link, build_mux, build_stream_settings, format_headers,
    normalized_security, parse_headers, split_list, split_share_link
)
from .vmess_protocol import check_uuid

DEFAULT_PATH = "/"
DEFAULT_ALPN = ["h2", "http/1.1"]


class XHttpHandler(ProtocolHandler):
    """XHTTP协议处理器"""

    protocol = Protocol.XHTTP
    wire_protocol = "vless"
    default_port = 80
    transports = ("xhttp",)

    def get_supported_schemes(self) -> List[str]:
        return ["xhttp://"]

    def validate(self, record: ServerRecord) -> None:
        check_uuid(record.settings.uuid)
        if record.transport.security not in ("", "none", "tls"):
            raise ValidationError("security", f"Unsupported xhttp security: {record.transport.security}")

    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        settings: XHttpSettings = record.settings
        transport = record.transport

        stream = build_stream_settings(transport, record.address)
        stream["xhttpSettings"]["mode"] = settings.mode or "auto"
        if transport.tls_enabled and not transport.alpn:
            stream["tlsSettings"]["alpn"] = list(DEFAULT_ALPN)

        return OutboundConfig(
            tag=tag,
            protocol=self.wire_protocol,
            settings={
                "vnext": [{
                    "address": record.address,
                    "port": record.port,
                    "users": [{"id": settings.uuid, "encryption": "none", "level": 0}],
                }]
            },
            stream_settings=stream,
            mux=build_mux(transport),
        )

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析XHTTP链接

        格式: xhttp://uuid@host:port?path=&security=tls|none&sni=&fp=&alpn=&host=&headers=&allowInsecure=
        """
        uri = self._ensure_scheme(uri)
        link = split_share_link(uri, default_port=self.default_port)

        security = link.get("security").lower()
        if security not in ("tls", "none"):
            security = "tls" if link.port == 443 else "none"

        transport = TransportSettings(
            network="xhttp",
            security=security,
            sni=link.get("sni"),
            host=link.get("host"),
            path=link.get("path") or DEFAULT_PATH,
            headers=parse_headers(link.get("headers")),
            alpn=split_list(link.get("alpn")),
            fingerprint=link.get("fp"),
            allow_insecure=link.get_bool("allowInsecure") or link.get_bool("allowinsecure"),
        )
        try:
            return ServerRecord(
                name=link.name or f"{link.address}:{link.port}",
                protocol=self.protocol,
                address=link.address,
                port=link.port,
                settings=XHttpSettings(uuid=link.userinfo.strip(), mode=link.get("mode") or "auto"),
                transport=transport,
            )
        except ValidationError as e:
            raise ParseError(str(e), uri[:64])

    def generate_uri(self, record: ServerRecord) -> str:
        transport = record.transport
        params = {
            "path": transport.path or DEFAULT_PATH,
            "security": normalized_security(transport) or "none",
            "sni": transport.sni,
            "fp": transport.fingerprint,
            "alpn": ",".join(transport.alpn),
            "host": transport.host,
            "headers": format_headers(transport.headers),
            "mode": record.settings.mode if record.settings.mode != "auto" else "",
            "allowInsecure": "1" if transport.allow_insecure else "",
        }
        return build_link("xhttp", record.settings.uuid, record.address, record.port,
                          params, record.name)

    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        return {
            "address": record.address,
            "port": record.port,
            "uuid": record.settings.uuid,
            "path": record.transport.path or DEFAULT_PATH,
            "security": normalized_security(record.transport) or "none",
        }
