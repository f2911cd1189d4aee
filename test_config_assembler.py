#!/usr/bin/env python3
"""
配置组装测试 - 出站顺序、路由规则顺序和DNS回退
"""
import json
import os
import tempfile

import pytest

from xray_tunnel.core.config_assembler import (
    BLOCK_TAG, DIRECT_TAG, CaptureInterface, ConfigAssembler, RoutingPolicy,
    load_config, match_domain, match_ip, save_config
)
from xray_tunnel.core.errors import ValidationError
from xray_tunnel.core.protocol_handler import PRIMARY_TAG
from xray_tunnel.core.routing_rules import RoutingRuleset
from xray_tunnel.core.server import (
    Protocol, RoutingOverrides, ServerRecord, VLessSettings, VMessSettings
)

UUID = "12345678-abcd-1234-abcd-123456789abc"


def make_record(**kwargs) -> ServerRecord:
    params = dict(
        name="server-1", protocol=Protocol.VLESS, address="vl.example.com", port=443,
        settings=VLessSettings(uuid=UUID),
    )
    params.update(kwargs)
    return ServerRecord(**params)


def test_outbounds_are_proxy_direct_block():
    config = ConfigAssembler().assemble(make_record())
    tags = [o.tag for o in config.outbounds]
    assert tags == [PRIMARY_TAG, DIRECT_TAG, BLOCK_TAG]
    assert config.outbounds[1].protocol == "freedom"
    assert config.outbounds[2].protocol == "blackhole"
    assert config.primary.protocol == "vless"


def test_bypass_domain_routes_direct():
    """绕过域名走直连，其他流量走代理"""
    policy = RoutingPolicy(bypass_domains=["example.com"])
    config = ConfigAssembler().assemble(make_record(), policy)

    assert config.route(domain="example.com") == DIRECT_TAG
    assert config.route(domain="www.example.com") == DIRECT_TAG
    assert config.route(domain="other.org") == PRIMARY_TAG
    assert config.route() == PRIMARY_TAG


def test_rule_order_and_first_match_wins():
    """规则顺序：绕过 -> 拦截 -> 默认代理；同时命中时先匹配者生效"""
    policy = RoutingPolicy(
        bypass_domains=["domain:shared.com"],
        block_domains=["shared.com", "ads.net"],
        bypass_ips=["10.0.0.0/8"],
        block_ips=["10.1.2.3"],
    )
    config = ConfigAssembler().assemble(make_record(), policy)

    names = [rule.name for rule in config.rules]
    assert names == ["bypass-domain", "bypass-ip", "block-domain", "block-ip", "default"]
    assert config.rules[-1].catch_all

    assert config.route(domain="cdn.shared.com") == DIRECT_TAG
    assert config.route(domain="tracker.ads.net") == BLOCK_TAG
    assert config.route(ip="10.1.2.3") == DIRECT_TAG
    assert config.route(ip="192.168.1.1") == PRIMARY_TAG

    rules = config.to_dict()["routing"]["rules"]
    assert rules[-1] == {"type": "field", "outboundTag": PRIMARY_TAG, "network": "tcp,udp"}


def test_only_default_rule_without_lists():
    config = ConfigAssembler().assemble(make_record(), RoutingPolicy())
    assert [rule.name for rule in config.rules] == ["default"]


def test_dns_fallback_and_override():
    """记录没有DNS覆盖时使用回退DNS"""
    assembler = ConfigAssembler()
    config = assembler.assemble(make_record())
    assert config.dns_servers == ["8.8.8.8", "1.1.1.1"]

    record = make_record(routing=RoutingOverrides(dns_servers=["9.9.9.9"]))
    assert assembler.assemble(record).dns_servers == ["9.9.9.9"]

    policy = RoutingPolicy(fallback_dns=["223.5.5.5"])
    assert assembler.assemble(make_record(), policy).dns_servers == ["223.5.5.5"]


def test_record_overrides_merge_with_policy_and_ruleset():
    ruleset = RoutingRuleset(
        version="v1", update_time=100, directory="/tmp/rules", files=["geosite.dat"],
        bypass_domains=["ext:geosite-iran.dat:ir"], block_domains=["geosite:category-ads-all"],
    )
    record = make_record(routing=RoutingOverrides(bypass_domains=["intranet.local", "example.com"]))
    policy = RoutingPolicy(bypass_domains=["example.com"], ruleset=ruleset)
    config = ConfigAssembler().assemble(record, policy)

    bypass = config.rules[0]
    assert bypass.domains == ["intranet.local", "example.com", "ext:geosite-iran.dat:ir"]
    assert config.asset_dir == "/tmp/rules"
    assert config.ruleset_version == "v1"
    # 外部规则文件引用在本地不参与匹配
    assert config.route(domain="ir") == PRIMARY_TAG


def test_invalid_record_fails_assembly():
    record = make_record(protocol=Protocol.VMESS, settings=VMessSettings(uuid=""))
    with pytest.raises(ValidationError):
        ConfigAssembler().assemble(record)


def test_capture_inbound():
    policy = RoutingPolicy(capture=CaptureInterface(protocol="http", port=8080))
    data = ConfigAssembler().assemble(make_record(), policy).to_dict()
    assert data["inbounds"][0]["protocol"] == "http"
    assert data["inbounds"][0]["port"] == 8080
    assert data["outbounds"][0]["tag"] == PRIMARY_TAG


def test_domain_and_ip_matching():
    assert match_domain("full:a.com", "a.com")
    assert not match_domain("full:a.com", "b.a.com")
    assert match_domain("keyword:goog", "www.google.com")
    assert match_domain("regexp:^api\\.", "api.example.com")
    assert not match_domain("geosite:google", "google.com")
    assert match_ip("192.168.0.0/16", "192.168.3.4")
    assert not match_ip("geoip:private", "192.168.3.4")
    assert not match_ip("10.0.0.0/8", "not-an-ip")


def test_save_and_load_config():
    config = ConfigAssembler().assemble(make_record(), RoutingPolicy(block_domains=["ads.com"]))
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "config.json")
        save_config(config, path)
        loaded = load_config(path)
    assert loaded == json.loads(json.dumps(config.to_dict()))
    assert loaded["dns"]["servers"] == ["8.8.8.8", "1.1.1.1"]
