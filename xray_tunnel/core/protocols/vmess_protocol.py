"""
VMess协议处理器
"""
import base64
import json
import re
from typing import Any, Dict, List

from ..errors import ParseError, ValidationError
from ..outbound import OutboundConfig
from ..protocol_handler import ProtocolHandler
from ..server import Protocol, ServerRecord, TransportSettings, VMessSettings
from .link_utils import (
    SUPPORTED_NETWORKS, b64decode_padded, build_mux, build_stream_settings,
    normalized_security, split_list
)

UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def text_field(config: Dict[str, Any], key: str, default: str = "") -> str:
    """读取字符串字段；部分客户端把数字或列表写进JSON"""
    value = config.get(key, default)
    if value is None:
        return default
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    if isinstance(value, dict):
        raise ParseError(f"Field {key} must be a string")
    return str(value)


def check_uuid(value: str) -> None:
    """
    校验UUID格式

    Raises:
        ValidationError: 缺少或格式错误
    """
    if not value or not UUID_PATTERN.match(value.strip()):
        raise ValidationError("uuid", f"Invalid uuid: {value!r}")


class VMessHandler(ProtocolHandler):
    """VMess协议处理器"""

    protocol = Protocol.VMESS
    wire_protocol = "vmess"
    default_port = 443
    transports = ("tcp", "ws", "grpc", "h2", "httpupgrade", "kcp", "quic")

    def get_supported_schemes(self) -> List[str]:
        return ["vmess://"]

    def validate(self, record: ServerRecord) -> None:
        check_uuid(record.settings.uuid)
        if record.settings.alter_id < 0:
            raise ValidationError("alter_id")

    def build_outbound(self, record: ServerRecord, tag: str) -> OutboundConfig:
        settings: VMessSettings = record.settings
        return OutboundConfig(
            tag=tag,
            protocol=self.wire_protocol,
            settings={
                "vnext": [{
                    "address": record.address,
                    "port": record.port,
                    "users": [{
                        "id": settings.uuid,
                        "alterId": settings.alter_id,
                        "security": settings.security or "auto",
                        "level": 0,
                    }],
                }]
            },
            stream_settings=build_stream_settings(record.transport, record.address),
            mux=build_mux(record.transport),
        )

    def parse_uri(self, uri: str) -> ServerRecord:
        """
        解析VMess链接

        VMess链接格式: vmess://base64(json_config)
        """
        uri = self._ensure_scheme(uri)
        json_str = b64decode_padded(uri[len("vmess://"):])

        try:
            config = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid vmess JSON: {e}", uri[:64])
        if not isinstance(config, dict):
            raise ParseError("vmess payload is not an object", uri[:64])

        try:
            return self._record_from_json(config)
        except ParseError as e:
            raise ParseError(str(e), uri[:64])
        except ValidationError as e:
            raise ParseError(str(e), uri[:64])
        except (TypeError, ValueError, AttributeError) as e:
            raise ParseError(f"Malformed vmess field: {e}", uri[:64])

    def _record_from_json(self, config: Dict[str, Any]) -> ServerRecord:
        address = text_field(config, 'add').strip()
        if not address:
            raise ParseError("Missing address")
        try:
            port = int(config.get('port', self.default_port))
            alter_id = int(config.get('aid', 0) or 0)
        except (TypeError, ValueError):
            raise ParseError("Invalid port or alterId")

        network = (text_field(config, 'net', 'tcp') or 'tcp').lower()
        if network not in SUPPORTED_NETWORKS:
            network = 'tcp'
        security = text_field(config, 'tls').lower()
        if security not in ('', 'none', 'tls'):
            security = ''
        path = text_field(config, 'path')

        transport = TransportSettings(
            network=network,
            security=security,
            sni=text_field(config, 'sni'),
            host=text_field(config, 'host'),
            path=path,
            alpn=split_list(text_field(config, 'alpn')),
            fingerprint=text_field(config, 'fp'),
            service_name=text_field(config, 'serviceName') or (path if network == 'grpc' else ''),
            grpc_multi_mode=text_field(config, 'mode') == 'multi',
            header_type=text_field(config, 'type', 'none') or 'none',
            allow_insecure=text_field(config, 'allowInsecure').lower() in ('1', 'true'),
        )

        return ServerRecord(
            name=text_field(config, 'ps').strip() or f"{address}:{port}",
            protocol=self.protocol,
            address=address,
            port=port,
            settings=VMessSettings(
                uuid=text_field(config, 'id').strip(),
                alter_id=alter_id,
                security=text_field(config, 'scy', 'auto') or 'auto',
            ),
            transport=transport,
        )

    def generate_uri(self, record: ServerRecord) -> str:
        settings: VMessSettings = record.settings
        transport = record.transport
        config: Dict[str, Any] = {
            "v": "2",
            "ps": record.name,
            "add": record.address,
            "port": str(record.port),
            "id": settings.uuid,
            "aid": str(settings.alter_id),
            "scy": settings.security if settings.security != "auto" else "",
            "net": transport.network,
            "type": transport.header_type if transport.header_type != "none" else "",
            "host": transport.host,
            "path": transport.path,
            "tls": transport.security if transport.security != "none" else "",
            "sni": transport.sni,
            "alpn": ",".join(transport.alpn),
            "fp": transport.fingerprint,
        }
        if transport.network == 'grpc':
            config["serviceName"] = transport.service_name
            config["mode"] = "multi" if transport.grpc_multi_mode else ""
        if transport.allow_insecure:
            config["allowInsecure"] = "1"

        # 移除空值
        config = {k: v for k, v in config.items() if v}

        json_str = json.dumps(config, separators=(',', ':'), ensure_ascii=False)
        base64_str = base64.b64encode(json_str.encode('utf-8')).decode('utf-8')
        return f"vmess://{base64_str}"

    def required_fields(self, record: ServerRecord) -> Dict[str, object]:
        return {
            "address": record.address,
            "port": record.port,
            "uuid": record.settings.uuid,
            "alter_id": record.settings.alter_id,
            "network": record.transport.network,
            "security": normalized_security(record.transport),
        }
