"""
分享链接和传输层配置的公共工具函数
"""
import base64
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import ParseError
from ..server import TransportSettings

SUPPORTED_NETWORKS = ("tcp", "ws", "grpc", "h2", "httpupgrade", "kcp", "quic", "xhttp")


@dataclass
class ShareLink:
    """拆分后的分享链接"""
    userinfo: str
    address: str
    port: int
    params: Dict[str, str]
    name: str

    def get(self, key: str, default: str = "") -> str:
        return self.params.get(key, default)

    def get_bool(self, key: str) -> bool:
        return self.params.get(key, "").lower() in ("1", "true", "yes")

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.params.get(key, "")
        try:
            return int(value)
        except ValueError:
            return default


def split_share_link(uri: str, default_port: Optional[int] = None,
                     require_userinfo: bool = True) -> ShareLink:
    """
    拆分 scheme://userinfo@host:port?query#name 格式的链接

    Args:
        uri: 分享链接
        default_port: 缺少端口时使用的默认端口
        require_userinfo: 是否必须包含 userinfo@

    Returns:
        ShareLink

    Raises:
        ParseError: 链接格式错误
    """
    uri = uri.strip()
    if "://" not in uri:
        raise ParseError("Missing scheme", uri)
    content = uri.split("://", 1)[1]

    # 处理备注
    if "#" in content:
        content, name = content.rsplit("#", 1)
        name = urllib.parse.unquote(name)
    else:
        name = ""

    # 处理参数
    if "?" in content:
        content, query_string = content.split("?", 1)
    else:
        query_string = ""
    content = content.rstrip("/")

    # 解析认证部分
    if "@" in content:
        userinfo, server_part = content.rsplit("@", 1)
        userinfo = urllib.parse.unquote(userinfo)
    elif require_userinfo:
        raise ParseError("Missing credentials", uri)
    else:
        userinfo, server_part = "", content

    address, port = split_host_port(server_part, default_port, uri)

    params = urllib.parse.parse_qs(query_string, keep_blank_values=True)
    flat = {k: v[0] for k, v in params.items() if v}
    return ShareLink(userinfo=userinfo, address=address, port=port, params=flat, name=name)


def split_host_port(server_part: str, default_port: Optional[int], uri: str = ""):
    """解析 host:port，支持 [IPv6]:port"""
    try:
        if server_part.startswith("["):
            bracket_end = server_part.rfind("]")
            if bracket_end == -1:
                raise ParseError("Unterminated IPv6 address", uri)
            address = server_part[1:bracket_end]
            port_part = server_part[bracket_end + 1:]
            if port_part.startswith(":"):
                port = int(port_part[1:])
            elif not port_part and default_port:
                port = default_port
            else:
                raise ParseError("Missing port", uri)
        elif ":" in server_part:
            address, port_str = server_part.rsplit(":", 1)
            port = int(port_str)
        elif default_port:
            address, port = server_part, default_port
        else:
            raise ParseError("Missing port", uri)
    except ValueError:
        raise ParseError("Invalid port", uri)

    if not address:
        raise ParseError("Missing address", uri)
    if not (1 <= port <= 65535):
        raise ParseError(f"Port out of range: {port}", uri)
    return address, port


def format_host(address: str) -> str:
    """IPv6地址加方括号"""
    if ":" in address and not address.startswith("["):
        return f"[{address}]"
    return address


def build_link(scheme: str, userinfo: str, address: str, port: int,
               params: Dict[str, Any], name: str) -> str:
    """
    组装分享链接（忽略空参数）

    Args:
        scheme: 如 "vless"
        userinfo: @之前的认证部分，可为空
        address: 服务器地址
        port: 端口
        params: 查询参数
        name: 备注

    Returns:
        分享链接字符串
    """
    link = f"{scheme}://"
    if userinfo:
        link += urllib.parse.quote(userinfo, safe="") + "@"
    link += f"{format_host(address)}:{port}"
    query = {k: str(v) for k, v in params.items() if v not in (None, "", False)}
    if query:
        link += "?" + urllib.parse.urlencode(query, quote_via=urllib.parse.quote)
    if name:
        link += "#" + urllib.parse.quote(name, safe="")
    return link


def b64decode_padded(content: str) -> str:
    """Base64解码（兼容缺少padding和URL安全字符）"""
    content = content.strip()
    missing_padding = len(content) % 4
    if missing_padding:
        content += '=' * (4 - missing_padding)
    try:
        return base64.urlsafe_b64decode(
            content.replace('+', '-').replace('/', '_')
        ).decode('utf-8')
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError(f"Invalid base64 content: {e}", content[:64])


def normalized_security(transport: TransportSettings) -> str:
    """"none" 与空字符串含义相同"""
    return "" if transport.security == "none" else transport.security


def split_list(value: str, sep: str = ",") -> list:
    return [item.strip() for item in value.split(sep) if item.strip()]


def parse_headers(value: str) -> Dict[str, str]:
    """解析 "k:v;k:v" 格式的头部"""
    headers = {}
    for item in value.split(";"):
        if ":" in item:
            key, val = item.split(":", 1)
            if key.strip():
                headers[key.strip()] = val.strip()
    return headers


def format_headers(headers: Dict[str, str]) -> str:
    return ";".join(f"{k}:{v}" for k, v in headers.items())


def transport_from_link(link: ShareLink, default_security: str = "") -> TransportSettings:
    """从通用查询参数构建传输层设置（vless/trojan/reality共用）"""
    network = link.get("type", "tcp").lower() or "tcp"
    if network not in SUPPORTED_NETWORKS:
        network = "tcp"
    security = link.get("security", default_security).lower()
    if security not in ("", "none", "tls", "reality"):
        security = default_security
    return TransportSettings(
        network=network,
        security=security,
        sni=link.get("sni") or link.get("peer"),
        host=link.get("host"),
        path=link.get("path"),
        alpn=split_list(link.get("alpn")),
        fingerprint=link.get("fp"),
        allow_insecure=link.get_bool("allowInsecure") or link.get_bool("insecure"),
        service_name=link.get("serviceName"),
        grpc_multi_mode=link.get("mode") == "multi",
        header_type=link.get("headerType", "none") or "none",
    )


def transport_to_params(transport: TransportSettings) -> Dict[str, Any]:
    """传输层设置转为查询参数"""
    params: Dict[str, Any] = {
        "type": transport.network,
        "security": transport.security,
        "sni": transport.sni,
        "fp": transport.fingerprint,
        "alpn": ",".join(transport.alpn),
        "host": transport.host,
        "path": transport.path,
    }
    if transport.network == "grpc":
        params["serviceName"] = transport.service_name
        params["mode"] = "multi" if transport.grpc_multi_mode else "gun"
    if transport.header_type and transport.header_type != "none":
        params["headerType"] = transport.header_type
    if transport.allow_insecure:
        params["allowInsecure"] = "1"
    return params


def build_tls_settings(transport: TransportSettings, address: str) -> Dict[str, Any]:
    """构建tlsSettings"""
    tls_settings: Dict[str, Any] = {"serverName": transport.sni or address}
    if transport.alpn:
        tls_settings["alpn"] = list(transport.alpn)
    if transport.fingerprint:
        tls_settings["fingerprint"] = transport.fingerprint
    if transport.allow_insecure:
        tls_settings["allowInsecure"] = True
    return tls_settings


def build_stream_settings(transport: TransportSettings, address: str,
                          force_tls: bool = False) -> Dict[str, Any]:
    """
    构建streamSettings

    Args:
        transport: 传输层设置
        address: 服务器地址（SNI缺省值）
        force_tls: 强制启用TLS（如Trojan）

    Returns:
        streamSettings字典
    """
    network = transport.network or "tcp"
    security = "tls" if force_tls else (transport.security or "none")
    if security == "":
        security = "none"
    stream: Dict[str, Any] = {"network": network, "security": security}

    if security == "tls":
        stream["tlsSettings"] = build_tls_settings(transport, address)

    # 网络传输设置
    if network == "ws":
        ws_settings: Dict[str, Any] = {"path": transport.path or "/"}
        headers = dict(transport.headers)
        if transport.host:
            headers["Host"] = transport.host
        if headers:
            ws_settings["headers"] = headers
        stream["wsSettings"] = ws_settings
    elif network == "h2":
        h2_settings: Dict[str, Any] = {"path": transport.path or "/"}
        if transport.host:
            h2_settings["host"] = split_list(transport.host)
        stream["httpSettings"] = h2_settings
    elif network == "grpc":
        stream["grpcSettings"] = {
            "serviceName": transport.service_name,
            "multiMode": transport.grpc_multi_mode,
        }
    elif network == "httpupgrade":
        upgrade_settings: Dict[str, Any] = {"path": transport.path or "/"}
        if transport.host:
            upgrade_settings["host"] = transport.host
        stream["httpupgradeSettings"] = upgrade_settings
    elif network == "xhttp":
        xhttp_settings: Dict[str, Any] = {"path": transport.path or "/"}
        if transport.host:
            xhttp_settings["host"] = transport.host
        if transport.headers:
            xhttp_settings["headers"] = dict(transport.headers)
        stream["xhttpSettings"] = xhttp_settings
    elif network == "tcp" and transport.header_type == "http":
        stream["tcpSettings"] = {
            "header": {
                "type": "http",
                "request": {
                    "path": [transport.path or "/"],
                    "headers": {"Host": split_list(transport.host)} if transport.host else {},
                },
            }
        }
    return stream


def build_mux(transport: TransportSettings) -> Optional[Dict[str, Any]]:
    if not transport.mux_enabled:
        return None
    return {"enabled": True, "concurrency": transport.mux_concurrency}
