"""
REALITY协议处理器（VLESS + REALITY安全层）
"""
from typing import Dict, List

from ..errors import ParseError, ValidationError
from ..outbound import OutboundConfig
from ..protocol_handler import ProtocolHandler
from ..server import Protocol, RealitySettings, ServerRecord
from .link_utils import (
    build_link, build_mux, build_stream_settings, split_share_link,
    transport_from_link, transport_to_params
)
from .vmess_protocol import check_uuid

DEFAULT_FLOW = "xtls-rprx-vision"
DEFAULT_FINGERPRINT = "chrome"


def effective_flow(flow: str, network: str) -> str:
    """flow只适用于tcp传输；tcp上未指定时使用 xtls-rprx-vision"""
    if flow:
        return flow
    return DEFAULT_FLOW if network == "tcp" else ""


class RealityHandler(ProtocolHandler):
    """REALITY协议处理器"""

    protocol = Protocol.REALITY
    wire_protocol = "vless"
    default_port = 443
    transports = ("tcp", "grpc", "h2", "xhttp")

    def get_supported_schemes(self) -> List[str]:
        return ["reality://", "vless+reality://"]

    def validate(self, record: ServerRecord) -> None:
        settings: RealitySettings = record.settings
        check_uuid(settings.uuid)
        if not settings.public_key:
            raise ValidationError("public_key")

    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        settings: RealitySettings = record.settings
        transport = record.transport

        stream = build_stream_settings(transport, record.address)
        stream["security"] = "reality"
        stream.pop("tlsSettings", None)
        stream["realitySettings"] = {
            "show": False,
            "fingerprint": transport.fingerprint or DEFAULT_FINGERPRINT,
            "serverName": transport.sni or record.address,
            "publicKey": settings.public_key,
            "shortId": settings.short_id,
            "spiderX": settings.spider_x,
        }

        user = {"id": settings.uuid, "encryption": "none", "level": 0}
        # flow只适用于tcp传输
        if transport.network == "tcp":
            user["flow"] = effective_flow(settings.flow, "tcp")
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
            stream_settings=stream,
            mux=build_mux(transport),
        )

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析REALITY链接

        支持 reality://、vless+reality:// 以及 vless://...?security=reality
        参数: pbk(公钥) sid(短ID) spx(spiderX) fp sni flow type
        """
        uri = uri.strip()
        if not (self.can_parse(uri) or uri.lower().startswith("vless://")):
            raise ParseError("Not a reality link", uri[:64])
        link = split_share_link(uri, default_port=self.default_port)

        public_key = link.get("pbk")
        if not public_key:
            raise ParseError("Missing public key (pbk)", uri[:64])

        transport = transport_from_link(link, default_security="reality")
        transport.security = "reality"
        transport.fingerprint = transport.fingerprint or DEFAULT_FINGERPRINT
        try:
            return ServerRecord(
                name=link.name or f"{link.address}:{link.port}",
                protocol=self.protocol,
                address=link.address,
                port=link.port,
                settings=RealitySettings(
                    uuid=link.userinfo.strip(),
                    public_key=public_key,
                    short_id=link.get("sid"),
                    spider_x=link.get("spx"),
                    flow=effective_flow(link.get("flow"), transport.network),
                ),
                transport=transport,
            )
        except ValidationError as e:
            raise ParseError(str(e), uri[:64])

    def generate_uri(self, record: ServerRecord) -> str:
        settings: RealitySettings = record.settings
        params = transport_to_params(record.transport)
        params.update({
            "security": "reality",
            "pbk": settings.public_key,
            "sid": settings.short_id,
            "spx": settings.spider_x,
            "flow": settings.flow,
        })
        return build_link("vless", settings.uuid, record.address, record.port,
                          params, record.name)

    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        settings: RealitySettings = record.settings
        return {
            "address": record.address,
            "port": record.port,
            "uuid": settings.uuid,
            "public_key": settings.public_key,
            "short_id": settings.short_id,
            "flow": effective_flow(settings.flow, record.transport.network),
            "network": record.transport.network,
        }
