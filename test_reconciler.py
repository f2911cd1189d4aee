#!/usr/bin/env python3
"""
更新对账测试 - 订阅差异合并、失败退避、过期标记和路由规则原子更新
"""
import asyncio
import base64
import hashlib
import json
import os
import tempfile

import pytest

from xray_tunnel.core.errors import NetworkError, ParseError, ValidationError
from xray_tunnel.core.group import ServerGroup
from xray_tunnel.core.reconciler import Backoff, UpdateReconciler, compute_diff
from xray_tunnel.core.routing_rules import (
    MANIFEST_FILE, RoutingRuleFetcher, RoutingRuleStore, parse_manifest
)
from xray_tunnel.core.server import Protocol, ProbeState, ServerRecord, TrojanSettings
from xray_tunnel.core.store import MemoryStore
from xray_tunnel.core.subscription import SubscriptionFetcher, encode_to_base64


def trojan_link(name: str, host: str, password: str = "pw") -> str:
    return f"trojan://{password}@{host}:443?security=tls&type=tcp#{name}"


class FakeSubscriptionFetcher(SubscriptionFetcher):
    """按顺序返回预设内容（异常实例会被抛出）"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def fetch(self, url, user_agent="", auth=None, timeout=30.0):
        self.calls.append((url, user_agent, auth))
        await asyncio.sleep(0)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeRuleFetcher(RoutingRuleFetcher):
    def __init__(self, files):
        self.files = dict(files)
        self.requested = []

    async def fetch(self, name):
        self.requested.append(name)
        if name not in self.files:
            raise NetworkError(f"404 {name}")
        return self.files[name]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def no_jitter_backoff():
    return Backoff(base=60, cap=3600, jitter=0.0)


def setup_group(store, url="https://example.com/sub", **kwargs):
    return store.add_group(ServerGroup(name="provider", subscription_url=url,
                                       auto_update=True, **kwargs))


def test_backoff_growth_and_cap():
    backoff = Backoff(base=60, cap=600, jitter=0.0)
    assert [backoff.delay(n) for n in range(1, 6)] == [60, 120, 240, 480, 600]
    assert backoff.delay(0) == 0

    jittered = Backoff(base=100, cap=1000, jitter=0.5, rng=lambda low, high: low)
    assert jittered.delay(1) == 50


def test_compute_diff_preserves_identity():
    existing_a = ServerRecord(name="A", protocol=Protocol.TROJAN, address="a.com", port=443,
                              settings=TrojanSettings(password="pw"), group_id="g",
                              probe=ProbeState(ping=80, sample_count=3), favorite=True)
    existing_b = ServerRecord(name="B", protocol=Protocol.TROJAN, address="b.com", port=443,
                              settings=TrojanSettings(password="pw"), group_id="g")
    incoming_a = ServerRecord(name="A renamed", protocol=Protocol.TROJAN, address="A.COM", port=443,
                              settings=TrojanSettings(password="new"))
    incoming_c = ServerRecord(name="C", protocol=Protocol.TROJAN, address="c.com", port=443,
                              settings=TrojanSettings(password="pw"))

    diff = compute_diff([existing_a, existing_b], [incoming_a, incoming_c, incoming_a], "g")

    assert [r.name for r in diff.added] == ["C"]
    assert [r.name for r in diff.removed] == ["B"]
    assert len(diff.updated) == 1
    assert diff.duplicates == 1

    merged = diff.updated[0]
    assert merged.id == existing_a.id
    assert merged.probe.ping == 80
    assert merged.favorite
    assert merged.settings.password == "new"
    assert merged.name == "A renamed"
    assert all(r.group_id == "g" for r in diff.records)


def test_refresh_replaces_group_records():
    """{A, B} -> {A, C}: A 保留 id 和延迟，B 删除，C 新增"""
    async def run_test():
        store = MemoryStore()
        group = setup_group(store)
        first = encode_to_base64([trojan_link("A", "a.com"), trojan_link("B", "b.com")])
        second = encode_to_base64([trojan_link("A", "a.com"), trojan_link("C", "c.com"),
                                   "vmess://garbage"])
        fetcher = FakeSubscriptionFetcher([first, second])
        clock = FakeClock()
        reconciler = UpdateReconciler(store, fetcher, backoff=no_jitter_backoff(), clock=clock)

        result = await reconciler.refresh_group(group.id)
        assert result.success
        assert result.diff.summary()['added'] == 2
        a_before = next(r for r in store.servers_in_group(group.id) if r.name == "A")
        store.update_probe_states({a_before.id: ProbeState(ping=90, sample_count=2)})

        clock.now += 10
        result = await reconciler.refresh_group(group.id)
        assert result.success
        assert result.skipped == 1
        assert result.diff.summary() == {'added': 1, 'removed': 1, 'updated': 0, 'unchanged': 1}

        servers = {r.name: r for r in store.servers_in_group(group.id)}
        assert set(servers) == {"A", "C"}
        assert servers["A"].id == a_before.id
        assert servers["A"].probe.ping == 90

        stored_group = store.get_group(group.id)
        assert stored_group.last_updated == clock.now
        assert stored_group.server_count == 2
        assert fetcher.calls[0][1] == "MarFaNet-Co-Client"

    asyncio.run(run_test())


def test_fetch_failures_back_off_and_mark_stale():
    """失败时保留旧记录，按退避安排重试，连续失败后标记过期"""
    async def run_test():
        store = MemoryStore()
        group = setup_group(store)
        fetcher = FakeSubscriptionFetcher([
            trojan_link("A", "a.com"),
            NetworkError("HTTP error: 503"),
        ])
        clock = FakeClock()
        reconciler = UpdateReconciler(store, fetcher, backoff=no_jitter_backoff(),
                                      stale_after_failures=3, clock=clock)

        assert (await reconciler.refresh_group(group.id)).success

        delays = []
        for _ in range(3):
            result = await reconciler.refresh_group(group.id)
            assert not result.success
            delays.append(result.next_attempt_at - clock.now)

        assert delays == [60, 120, 240]
        stored = store.get_group(group.id)
        assert stored.consecutive_failures == 3
        assert stored.stale
        assert "503" in stored.last_error
        assert [r.name for r in store.servers_in_group(group.id)] == ["A"]

        # 退避窗口内不会被定时刷新选中
        assert not stored.is_due(clock.now + 1)
        assert await reconciler.refresh_due_groups(clock.now + 1) == []
        assert stored.is_due(clock.now + 241)

    asyncio.run(run_test())


def test_empty_subscription_counts_as_failure():
    async def run_test():
        store = MemoryStore()
        group = setup_group(store)
        reconciler = UpdateReconciler(store, FakeSubscriptionFetcher(["not a link at all"]),
                                      backoff=no_jitter_backoff(), clock=FakeClock())
        result = await reconciler.refresh_group(group.id)
        assert not result.success
        assert store.get_group(group.id).consecutive_failures == 1

    asyncio.run(run_test())


def test_concurrent_refresh_joins_in_flight_run():
    async def run_test():
        store = MemoryStore()
        group = setup_group(store)
        fetcher = FakeSubscriptionFetcher([trojan_link("A", "a.com")])
        reconciler = UpdateReconciler(store, fetcher, clock=FakeClock())

        results = await asyncio.gather(*(reconciler.refresh_group(group.id) for _ in range(3)))
        assert len(fetcher.calls) == 1
        assert all(r is results[0] for r in results)

    asyncio.run(run_test())


def test_odd_vmess_entry_is_skipped_not_fatal():
    """单条 vmess 字段类型异常只跳过该条，不影响整组刷新"""
    async def run_test():
        store = MemoryStore()
        group = setup_group(store)
        odd = json.dumps({"add": "v.com", "port": 443, "id": "x", "alpn": ["h2"], "host": {"a": 1}})
        vmess = "vmess://" + base64.b64encode(odd.encode("utf-8")).decode("utf-8")
        content = encode_to_base64([trojan_link("B", "b.com"), vmess])
        reconciler = UpdateReconciler(store, FakeSubscriptionFetcher([content]),
                                      backoff=no_jitter_backoff(), clock=FakeClock())

        result = await reconciler.refresh_group(group.id)
        assert result.success
        assert result.skipped == 1
        assert [r.name for r in store.servers_in_group(group.id)] == ["B"]

    asyncio.run(run_test())


class SlowFetcher(SubscriptionFetcher):
    def __init__(self, content, delay=0.3):
        self.content = content
        self.delay = delay
        self.finished = False

    async def fetch(self, url, user_agent="", auth=None, timeout=30.0):
        await asyncio.sleep(self.delay)
        self.finished = True
        return self.content


def test_cancel_all_stops_in_flight_refresh():
    """取消后获取不会继续完成，也不会写入分组"""
    async def run_test():
        store = MemoryStore()
        group = setup_group(store)
        fetcher = SlowFetcher(trojan_link("A", "a.com"))
        reconciler = UpdateReconciler(store, fetcher, clock=FakeClock())

        pending = asyncio.ensure_future(reconciler.refresh_group(group.id))
        await asyncio.sleep(0.05)
        assert await reconciler.cancel_all() == 1
        with pytest.raises(asyncio.CancelledError):
            await pending

        await asyncio.sleep(0.35)
        assert not fetcher.finished
        assert store.servers_in_group(group.id) == []
        assert store.get_group(group.id).last_updated == group.last_updated
        assert await reconciler.cancel_all() == 0

    asyncio.run(run_test())


def test_refresh_unknown_group_raises():
    async def run_test():
        store = MemoryStore()
        manual = store.add_group(ServerGroup(name="manual"))
        reconciler = UpdateReconciler(store, FakeSubscriptionFetcher([""]))
        with pytest.raises(ValidationError):
            await reconciler.refresh_group("missing")
        with pytest.raises(ValidationError):
            await reconciler.refresh_group(manual.id)

    asyncio.run(run_test())


def test_basic_auth_is_passed_to_fetcher():
    async def run_test():
        store = MemoryStore()
        group = setup_group(store, auth_username="user", auth_password="secret",
                            user_agent="custom-agent")
        fetcher = FakeSubscriptionFetcher([trojan_link("A", "a.com")])
        await UpdateReconciler(store, fetcher, clock=FakeClock()).refresh_group(group.id)
        assert fetcher.calls[0] == ("https://example.com/sub", "custom-agent", ("user", "secret"))

    asyncio.run(run_test())


# 路由规则

ROUTING_FILES = ["geoip-iran.dat", "geosite-iran.dat"]


def make_rule_files(update_time: int, version: str, corrupt: bool = False):
    files = {name: f"{name}-{version}".encode() for name in ROUTING_FILES}
    manifest = {
        "version": version,
        "update_time": update_time,
        "checksums": {name: hashlib.sha256(data).hexdigest() for name, data in files.items()},
    }
    if corrupt:
        files["geosite-iran.dat"] = b"tampered"
    files[MANIFEST_FILE] = json.dumps(manifest).encode()
    return files


def test_parse_manifest_requires_version():
    with pytest.raises(ParseError):
        parse_manifest(b'{"update_time": 5}')
    manifest = parse_manifest(b'{"version": "v1", "update_time": "5"}')
    assert manifest.update_time == 5


def test_routing_refresh_installs_and_skips_when_current():
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            rule_store = RoutingRuleStore(temp_dir)
            fetcher = FakeRuleFetcher(make_rule_files(100, "v1"))
            reconciler = UpdateReconciler(
                MemoryStore(), FakeSubscriptionFetcher([""]), rule_store=rule_store,
                rule_fetcher=fetcher, routing_files=ROUTING_FILES, clock=FakeClock(),
            )

            result = await reconciler.refresh_routing()
            assert result.success and result.updated
            current = rule_store.current
            assert current.version == "v1"
            assert current.bypass_domains == ["ext:geosite-iran.dat:ir"]
            assert current.bypass_ips == ["ext:geoip-iran.dat:ir"]
            with open(current.file_path("geoip-iran.dat"), 'rb') as f:
                assert f.read() == b"geoip-iran.dat-v1"

            # 同一版本不会重复下载规则文件
            fetcher.requested.clear()
            result = await reconciler.refresh_routing()
            assert result.success and not result.updated
            assert fetcher.requested == [MANIFEST_FILE]

            # 重新加载得到同一版本
            reloaded = RoutingRuleStore(temp_dir)
            assert reloaded.load().version == "v1"

    asyncio.run(run_test())


def test_routing_checksum_failure_keeps_previous_ruleset():
    """校验失败时保留旧规则集，失败计数加一"""
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            rule_store = RoutingRuleStore(temp_dir)
            fetcher = FakeRuleFetcher(make_rule_files(100, "v1"))
            clock = FakeClock()
            reconciler = UpdateReconciler(
                MemoryStore(), FakeSubscriptionFetcher([""]), rule_store=rule_store,
                rule_fetcher=fetcher, routing_files=ROUTING_FILES,
                backoff=no_jitter_backoff(), clock=clock,
            )
            assert (await reconciler.refresh_routing()).updated
            previous_dir = rule_store.current.directory

            fetcher.files = make_rule_files(200, "v2", corrupt=True)
            result = await reconciler.refresh_routing()

            assert not result.success
            assert "Checksum mismatch" in result.error
            assert rule_store.current.version == "v1"
            assert rule_store.current.directory == previous_dir
            assert os.path.isdir(previous_dir)
            assert reconciler.routing_failures == 1
            assert reconciler.routing_next_attempt_at == clock.now + 60
            assert not reconciler.routing_due()
            assert RoutingRuleStore(temp_dir).load().version == "v1"

            # 修复后成功更新并重置失败计数
            fetcher.files = make_rule_files(200, "v2")
            clock.now += 61
            result = await reconciler.refresh_routing()
            assert result.updated
            assert rule_store.current.version == "v2"
            assert reconciler.routing_failures == 0

    asyncio.run(run_test())


def test_routing_missing_file_fails():
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            files = make_rule_files(100, "v1")
            del files["geoip-iran.dat"]
            reconciler = UpdateReconciler(
                MemoryStore(), FakeSubscriptionFetcher([""]),
                rule_store=RoutingRuleStore(temp_dir), rule_fetcher=FakeRuleFetcher(files),
                routing_files=ROUTING_FILES, clock=FakeClock(),
            )
            result = await reconciler.refresh_routing()
            assert not result.success
            assert result.ruleset is None

    asyncio.run(run_test())
