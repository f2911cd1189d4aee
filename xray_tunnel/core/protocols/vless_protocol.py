"""
VLESS协议处理器
"""
from typing import Dict, List

from ..errors import ParseError, ValidationError
from ..outbound import OutboundConfig
from ..protocol_handler import ProtocolHandler
from ..server import Protocol, ServerRecord, VLessSettings
from .link_utils import (
    build_link, build_mux, build_stream_settings, normalized_security,
    split_share_link, transport_from_link, transport_to_params
)
from .vmess_protocol import check_uuid


class VLessHandler(ProtocolHandler):
    """VLESS协议处理器"""

    protocol = Protocol.VLESS
    wire_protocol = "vless"
    default_port = 443
    transports = ("tcp", "ws", "grpc", "h2", "httpupgrade", "kcp", "quic")

    def get_supported_schemes(self) -> List[str]:
        return ["vless://"]

    def validate(self, record: ServerRecord) -> None:
        check_uuid(record.settings.uuid)
        if record.transport.security == "reality":
            raise ValidationError("security", "REALITY servers must use the reality protocol")

    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        settings: VLessSettings = record.settings
        user = {
            "id": settings.uuid,
            "encryption": settings.encryption or "none",
            "level": 0,
        }
        if settings.flow:
            user["flow"] = settings.flow
        return OutboundConfig(
            tag=tag,
            protocol=self.wire_protocol,
            settings={
                "vnext": [{
                    "address": record.address,
                    "port": record.port,
                    "users": [user],
                }]
            },
            stream_settings=build_stream_settings(record.transport, record.address),
            mux=build_mux(record.transport),
        )

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析VLESS链接

        VLESS链接格式: vless://uuid@server:port?params#remark
        """
        uri = self._ensure_scheme(uri)
        link = split_share_link(uri, default_port=self.default_port)
        try:
            return ServerRecord(
                name=link.name or f"{link.address}:{link.port}",
                protocol=self.protocol,
                address=link.address,
                port=link.port,
                settings=VLessSettings(
                    uuid=link.userinfo.strip(),
                    flow=link.get("flow"),
                    encryption=link.get("encryption", "none") or "none",
                ),
                transport=transport_from_link(link),
            )
        except ValidationError as e:
            raise ParseError(str(e), uri[:64])

    def generate_uri(self, record: ServerRecord) -> str:
        params = transport_to_params(record.transport)
        params["flow"] = record.settings.flow
        if record.settings.encryption and record.settings.encryption != "none":
            params["encryption"] = record.settings.encryption
        return build_link("vless", record.settings.uuid, record.address, record.port,
                          params, record.name)

    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        return {
            "address": record.address,
            "port": record.port,
            "uuid": record.settings.uuid,
            "flow": record.settings.flow,
            "network": record.transport.network,
            "security": normalized_security(record.transport),
        }
