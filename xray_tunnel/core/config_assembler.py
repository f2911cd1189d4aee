"""
配置组装器 - 由服务器记录和路由策略生成完整的 Xray 配置

出站顺序固定为 [proxy, direct, block]；路由规则按
[直连域名, 直连IP, 屏蔽域名, 屏蔽IP, 默认代理] 排列，先匹配者生效。
"""
import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .outbound import OutboundConfig
from .protocol_handler import PRIMARY_TAG, ProtocolRegistry, default_registry
from .routing_rules import RoutingRuleset
from .server import ServerRecord

DIRECT_TAG = "direct"
BLOCK_TAG = "block"
CAPTURE_TAG = "capture-in"
DEFAULT_FALLBACK_DNS = ("8.8.8.8", "1.1.1.1")

# 只能由引擎解析的外部规则引用
_EXTERNAL_PREFIXES = ("geosite:", "geoip:", "ext:")


@dataclass
class CaptureInterface:
    """本地流量捕获入口描述"""
    protocol: str = "socks"   # socks / http / dokodemo-door
    listen: str = "127.0.0.1"
    port: int = 10808
    sniffing: bool = True
    udp: bool = True

    def to_inbound(self) -> Dict[str, Any]:
        inbound: Dict[str, Any] = {
            "tag": CAPTURE_TAG,
            "listen": self.listen,
            "port": self.port,
            "protocol": self.protocol,
        }
        if self.protocol == "socks":
            inbound["settings"] = {"auth": "noauth", "udp": self.udp}
        elif self.protocol == "dokodemo-door":
            inbound["settings"] = {"network": "tcp,udp" if self.udp else "tcp", "followRedirect": True}
        else:
            inbound["settings"] = {}
        if self.sniffing:
            inbound["sniffing"] = {"enabled": True, "destOverride": ["http", "tls"]}
        return inbound


@dataclass
class RoutingPolicy:
    """全局路由策略"""
    log_level: str = "warning"
    domain_strategy: str = "AsIs"
    fallback_dns: List[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_DNS))
    bypass_domains: List[str] = field(default_factory=list)
    block_domains: List[str] = field(default_factory=list)
    bypass_ips: List[str] = field(default_factory=list)
    block_ips: List[str] = field(default_factory=list)
    ruleset: Optional[RoutingRuleset] = None
    capture: CaptureInterface = field(default_factory=CaptureInterface)


@dataclass
class RoutingRule:
    """单条路由规则"""
    name: str
    outbound_tag: str
    domains: List[str] = field(default_factory=list)
    ips: List[str] = field(default_factory=list)
    catch_all: bool = False

    def to_dict(self) -> Dict[str, Any]:
        rule: Dict[str, Any] = {"type": "field", "outboundTag": self.outbound_tag}
        if self.domains:
            rule["domain"] = list(self.domains)
        if self.ips:
            rule["ip"] = list(self.ips)
        if self.catch_all:
            rule["network"] = "tcp,udp"
        return rule

    def matches(self, domain: Optional[str] = None, ip: Optional[str] = None) -> bool:
        if self.catch_all:
            return True
        if domain and any(match_domain(pattern, domain) for pattern in self.domains):
            return True
        if ip and any(match_ip(pattern, ip) for pattern in self.ips):
            return True
        return False


def match_domain(pattern: str, domain: str) -> bool:
    """
    按 Xray 的域名匹配语义判断

    Args:
        pattern: 规则（纯字符串子串匹配，domain:/full:/regexp:/keyword: 前缀）
        domain: 目标域名

    Returns:
        是否匹配；geosite/ext 引用在本地永远不匹配
    """
    domain = domain.lower().rstrip(".")
    pattern = pattern.strip()
    if pattern.startswith(_EXTERNAL_PREFIXES):
        return False
    if pattern.startswith("domain:"):
        suffix = pattern[len("domain:"):].lower()
        return domain == suffix or domain.endswith("." + suffix)
    if pattern.startswith("full:"):
        return domain == pattern[len("full:"):].lower()
    if pattern.startswith("regexp:"):
        try:
            return re.search(pattern[len("regexp:"):], domain) is not None
        except re.error:
            return False
    if pattern.startswith("keyword:"):
        return pattern[len("keyword:"):].lower() in domain
    return pattern.lower() in domain


def match_ip(pattern: str, ip: str) -> bool:
    """判断IP是否落在规则（单个IP或CIDR）内"""
    pattern = pattern.strip()
    if pattern.startswith(_EXTERNAL_PREFIXES):
        return False
    try:
        network = ipaddress.ip_network(pattern, strict=False)
        return ipaddress.ip_address(ip) in network
    except ValueError:
        return False


def merge_unique(*lists: Iterable[str]) -> List[str]:
    """合并多个列表，去重并保持首次出现的顺序"""
    seen = set()
    merged = []
    for items in lists:
        for item in items:
            item = item.strip()
            if item and item not in seen:
                seen.add(item)
                merged.append(item)
    return merged


@dataclass
class TunnelConfig:
    """完整的隧道配置"""
    server_id: str
    outbounds: List[OutboundConfig]
    rules: List[RoutingRule]
    dns_servers: List[str]
    inbounds: List[Dict[str, Any]] = field(default_factory=list)
    log_level: str = "warning"
    domain_strategy: str = "AsIs"
    asset_dir: Optional[str] = None
    ruleset_version: Optional[str] = None

    @property
    def primary(self) -> OutboundConfig:
        return self.outbounds[0]

    def route(self, domain: Optional[str] = None, ip: Optional[str] = None) -> str:
        """
        按先匹配者生效的语义解析目标的出站标签

        Args:
            domain: 目标域名
            ip: 目标IP

        Returns:
            出站标签
        """
        for rule in self.rules:
            if rule.matches(domain=domain, ip=ip):
                return rule.outbound_tag
        return PRIMARY_TAG

    def to_dict(self) -> Dict[str, Any]:
        """转换为 Xray JSON 配置"""
        return {
            "log": {"loglevel": self.log_level},
            "dns": {"servers": list(self.dns_servers)},
            "inbounds": [dict(inbound) for inbound in self.inbounds],
            "outbounds": [outbound.to_dict() for outbound in self.outbounds],
            "routing": {
                "domainStrategy": self.domain_strategy,
                "rules": [rule.to_dict() for rule in self.rules],
            },
        }


class ConfigAssembler:
    """配置组装器"""

    def __init__(self, registry: Optional[ProtocolRegistry] = None):
        self.registry = registry or default_registry()
        self.logger = logging.getLogger(__name__)

    def assemble(self, record: ServerRecord, policy: Optional[RoutingPolicy] = None) -> TunnelConfig:
        """
        组装完整配置

        Args:
            record: 服务器记录
            policy: 路由策略

        Returns:
            TunnelConfig

        Raises:
            ValidationError: 服务器记录无法合成出站配置
        """
        policy = policy or RoutingPolicy()
        primary = self.registry.synthesize(record, PRIMARY_TAG)
        direct = OutboundConfig(tag=DIRECT_TAG, protocol="freedom", settings={})
        block = OutboundConfig(tag=BLOCK_TAG, protocol="blackhole", settings={})

        ruleset = policy.ruleset
        bypass_domains = merge_unique(
            record.routing.bypass_domains, policy.bypass_domains,
            ruleset.bypass_domains if ruleset else []
        )
        bypass_ips = merge_unique(
            record.routing.bypass_ips, policy.bypass_ips,
            ruleset.bypass_ips if ruleset else []
        )
        block_domains = merge_unique(
            record.routing.block_domains, policy.block_domains,
            ruleset.block_domains if ruleset else []
        )
        block_ips = merge_unique(
            record.routing.block_ips, policy.block_ips,
            ruleset.block_ips if ruleset else []
        )

        rules: List[RoutingRule] = []
        if bypass_domains:
            rules.append(RoutingRule("bypass-domain", DIRECT_TAG, domains=bypass_domains))
        if bypass_ips:
            rules.append(RoutingRule("bypass-ip", DIRECT_TAG, ips=bypass_ips))
        if block_domains:
            rules.append(RoutingRule("block-domain", BLOCK_TAG, domains=block_domains))
        if block_ips:
            rules.append(RoutingRule("block-ip", BLOCK_TAG, ips=block_ips))
        rules.append(RoutingRule("default", PRIMARY_TAG, catch_all=True))

        dns_servers = merge_unique(record.routing.dns_servers) or list(policy.fallback_dns)

        config = TunnelConfig(
            server_id=record.id,
            outbounds=[primary, direct, block],
            rules=rules,
            dns_servers=dns_servers,
            inbounds=[policy.capture.to_inbound()],
            log_level=policy.log_level,
            domain_strategy=policy.domain_strategy,
            asset_dir=ruleset.directory if ruleset else None,
            ruleset_version=ruleset.version if ruleset else None,
        )
        self.logger.debug(f"Assembled config for {record.display_name} with {len(rules)} rules")
        return config


def save_config(config: TunnelConfig, filepath: str) -> None:
    """
    保存配置到文件

    Args:
        config: 隧道配置
        filepath: 文件路径
    """
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)


def load_config(filepath: str) -> dict:
    """
    从文件加载配置

    Args:
        filepath: 文件路径

    Returns:
        配置字典
    """
    with open(filepath, "r", encoding="utf-8") as f:
        return json.load(f)
