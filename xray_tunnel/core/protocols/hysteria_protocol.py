"""
Hysteria协议处理器（基于UDP）
"""
import logging
from typing import Any, Dict, List

from ..errors import ParseError, ValidationError
from ..outbound import OutboundConfig
from ..protocol_handler import ProtocolHandler
from ..server import (
    HYSTERIA_MODES, HysteriaSettings, Protocol, ServerRecord, TransportSettings
)
from .link_utils import build_link, split_list, split_share_link

DEFAULT_MBPS = 100


class HysteriaHandler(ProtocolHandler):
    """Hysteria协议处理器，TLS由协议内部处理"""

    protocol = Protocol.HYSTERIA
    wire_protocol = "hysteria"
    default_port = 443
    transports = ()

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def get_supported_schemes(self) -> List[str]:
        return ["hysteria://"]

    def validate(self, record: ServerRecord) -> None:
        settings: HysteriaSettings = record.settings
        if not settings.auth:
            raise ValidationError("auth")
        if settings.mode not in HYSTERIA_MODES:
            raise ValidationError("mode", f"Unsupported hysteria protocol: {settings.mode}")
        if settings.up_mbps < 1:
            raise ValidationError("up_mbps")
        if settings.down_mbps < 1:
            raise ValidationError("down_mbps")

    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        settings: HysteriaSettings = record.settings
        transport = record.transport

        tls_config: Dict[str, Any] = {
            "enabled": True,
            "server_name": transport.sni or record.address,
        }
        if transport.allow_insecure:
            tls_config["insecure"] = True
        if transport.alpn:
            tls_config["alpn"] = list(transport.alpn)

        hysteria_settings: Dict[str, Any] = {
            "server": {"address": record.address, "port": record.port},
            "protocol": settings.mode,
            "auth_str": settings.auth,
            "up_mbps": settings.up_mbps,
            "down_mbps": settings.down_mbps,
            "tls": tls_config,
        }
        if settings.obfs:
            hysteria_settings["obfs"] = settings.obfs
        if settings.recv_window_conn:
            hysteria_settings["recv_window_conn"] = settings.recv_window_conn
        if settings.recv_window:
            hysteria_settings["recv_window"] = settings.recv_window
        if settings.disable_mtu_discovery:
            hysteria_settings["disable_mtu_discovery"] = True

        return OutboundConfig(tag=tag, protocol=self.wire_protocol, settings=hysteria_settings)

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析Hysteria链接

        格式: hysteria://host:port?protocol=udp&auth=pass&peer=sni&insecure=1&upmbps=20&downmbps=100&obfs=xplus
        """
        uri = self._ensure_scheme(uri)
        link = split_share_link(uri, default_port=self.default_port, require_userinfo=False)

        mode = link.get("protocol", "udp") or "udp"
        if mode not in HYSTERIA_MODES:
            self.logger.warning(f"Unsupported hysteria protocol in link: {mode}, using udp")
            mode = "udp"

        auth = link.get("auth") or link.get("auth_str") or link.userinfo
        if not auth:
            raise ParseError("Missing auth", uri[:64])

        settings = HysteriaSettings(
            auth=auth,
            up_mbps=max(1, link.get_int("upmbps", DEFAULT_MBPS)),
            down_mbps=max(1, link.get_int("downmbps", DEFAULT_MBPS)),
            mode=mode,
            obfs=link.get("obfs"),
            recv_window_conn=link.get_int("recv_window_conn"),
            recv_window=link.get_int("recv_window"),
            disable_mtu_discovery=link.get_bool("disable_mtu_discovery"),
        )
        transport = TransportSettings(
            network="udp",
            security="tls",
            sni=link.get("peer") or link.get("sni"),
            alpn=split_list(link.get("alpn")),
            allow_insecure=link.get_bool("insecure"),
        )
        try:
            return ServerRecord(
                name=link.name or f"{link.address}:{link.port}",
                protocol=self.protocol,
                address=link.address,
                port=link.port,
                settings=settings,
                transport=transport,
            )
        except ValidationError as e:
            raise ParseError(str(e), uri[:64])

    def generate_uri(self, record: ServerRecord) -> str:
        settings: HysteriaSettings = record.settings
        transport = record.transport
        params: Dict[str, Any] = {
            "protocol": settings.mode if settings.mode != "udp" else "",
            "auth": settings.auth,
            "peer": transport.sni if transport.sni != record.address else "",
            "insecure": "1" if transport.allow_insecure else "",
            "upmbps": settings.up_mbps if settings.up_mbps != DEFAULT_MBPS else "",
            "downmbps": settings.down_mbps if settings.down_mbps != DEFAULT_MBPS else "",
            "obfs": settings.obfs,
            "alpn": ",".join(transport.alpn),
            "recv_window_conn": settings.recv_window_conn or "",
            "recv_window": settings.recv_window or "",
            "disable_mtu_discovery": "1" if settings.disable_mtu_discovery else "",
        }
        return build_link("hysteria", "", record.address, record.port, params, record.name)

    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        settings: HysteriaSettings = record.settings
        return {
            "address": record.address,
            "port": record.port,
            "auth": settings.auth,
            "mode": settings.mode,
            "up_mbps": settings.up_mbps,
            "down_mbps": settings.down_mbps,
        }
