#!/usr/bin/env python3
"""
隧道服务集成测试 - 探测后自动连接、订阅刷新触发探测、导入导出和关闭
"""
import asyncio
import os
import tempfile
from unittest.mock import Mock

import pytest

from xray_tunnel.core.errors import ValidationError
from xray_tunnel.core.group import ServerGroup
from xray_tunnel.core.ping_probe import PingProbe, ProbeResult
from xray_tunnel.core.selection import TunnelState
from xray_tunnel.core.server import Protocol, ServerRecord, TrojanSettings
from xray_tunnel.core.service import JOB_ROUTING, TunnelService
from xray_tunnel.core.store import MemoryStore
from xray_tunnel.core.subscription import SubscriptionFetcher
from xray_tunnel.utils.settings import SettingsManager

LATENCIES = {"fast.example.com": 40, "slow.example.com": 400}


async def fake_probe(address, port, timeout):
    latency = LATENCIES.get(address)
    if latency is None:
        return ProbeResult(address=address, port=port, unreachable=True, error="timeout")
    return ProbeResult(address=address, port=port, latency=latency)


class StaticFetcher(SubscriptionFetcher):
    def __init__(self, content):
        self.content = content

    async def fetch(self, url, user_agent="", auth=None, timeout=30.0):
        return self.content


def make_engine():
    engine = Mock()
    engine.is_running.return_value = False
    engine.started = []

    def start(config, capture=None):
        engine.started.append(config.server_id)
        engine.is_running.return_value = True

    engine.start.side_effect = start
    return engine


def make_service(temp_dir, store=None, fetcher=None):
    settings = SettingsManager(os.path.join(temp_dir, "settings.json"))
    settings.update({"routing_enabled": False, "min_ping_threshold_ms": 50}, auto_save=False)
    engine = make_engine()
    service = TunnelService(
        store=store or MemoryStore(),
        engine=engine,
        settings=settings,
        fetcher=fetcher or StaticFetcher(""),
        probe=PingProbe(probe_func=fake_probe),
    )
    return service, engine


def add_server(store, name, group_id=None):
    return store.add_server(ServerRecord(
        name=name, protocol=Protocol.TROJAN, address=f"{name}.example.com", port=443,
        settings=TrojanSettings(password="pw"), group_id=group_id,
    ))


def test_ping_sweep_connects_to_fastest():
    """第一次探测后自动连接到最快的服务器并记录使用情况"""
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MemoryStore()
            add_server(store, "slow")
            fast = add_server(store, "fast")
            dead = add_server(store, "dead")
            service, engine = make_service(temp_dir, store)

            sweep = await service.run_ping_sweep()
            assert sweep.probe.total == 3
            assert sweep.probe.reachable == 2
            assert sweep.decision.switched
            assert service.controller.active_server_id == fast.id
            assert engine.started == [fast.id]

            assert store.get_server(fast.id).probe.ping == 40
            assert store.get_server(dead.id).probe.consecutive_failures == 1
            assert store.get_server(fast.id).usage.connection_count == 1
            assert service.settings.last_server_id == fast.id

            # 再次探测不会切换
            sweep = await service.run_ping_sweep()
            assert not sweep.decision.switch
            assert engine.started == [fast.id]

            await service.shutdown()

    asyncio.run(run_test())


def test_subscription_change_triggers_sweep():
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MemoryStore()
            group = store.add_group(ServerGroup(name="provider", auto_update=True,
                                                subscription_url="https://example.com/sub"))
            content = "\n".join([
                "trojan://pw@fast.example.com:443?security=tls#fast",
                "trojan://pw@slow.example.com:443?security=tls#slow",
            ])
            service, engine = make_service(temp_dir, store, StaticFetcher(content))

            results = await service.run_subscription_refresh()
            assert len(results) == 1 and results[0].success
            assert len(store.servers_in_group(group.id)) == 2
            assert service.controller.state == TunnelState.CONNECTED
            assert store.get_server(service.controller.active_server_id).name == "fast"

            # 未到期的分组不会再次刷新
            assert await service.run_subscription_refresh() == []
            await service.shutdown()

    asyncio.run(run_test())


def test_import_and_export_links():
    with tempfile.TemporaryDirectory() as temp_dir:
        service, _ = make_service(temp_dir)
        text = "\n".join([
            "# exported servers",
            "trojan://secret@a.example.com:443?security=tls#a",
            "",
            "vless://not-valid",
            "ss://YWVzLTI1Ni1nY206cGFzcw@b.example.com:8388#b",
        ])
        added, errors = service.import_links(text)
        assert [r.name for r in added] == ["a", "b"]
        assert len(errors) == 1

        links = service.export_links()
        assert len(links) == 2
        assert links[0].startswith("trojan://secret@a.example.com:443")
        assert links[1].startswith("ss://")

        group = service.store.add_group(ServerGroup(name="manual"))
        service.import_links("trojan://pw@c.example.com:443#c", group.id)
        assert [l.split("#")[-1] for l in service.export_links(group.id)] == ["c"]


def test_connect_unknown_server():
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            service, engine = make_service(temp_dir)
            with pytest.raises(ValidationError):
                await service.connect("missing")
            engine.start.assert_not_called()

    asyncio.run(run_test())


def test_manual_connect_and_shutdown():
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MemoryStore()
            slow = add_server(store, "slow")
            service, engine = make_service(temp_dir, store)
            assert not service.scheduler.get_job(JOB_ROUTING).enabled

            assert await service.connect(slow.id)
            assert service.get_status()['tunnel']['active_server_id'] == slow.id

            # 手动断开后探测不会自动重连
            await service.disconnect()
            sweep = await service.run_ping_sweep()
            assert not sweep.decision.switch
            assert service.controller.state == TunnelState.DISCONNECTED

            await service.shutdown()
            assert not service.scheduler.is_running("ping_sweep")
            assert engine.stop.called

    asyncio.run(run_test())


def test_routing_refresh_without_rule_store():
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            service, _ = make_service(temp_dir)
            result = await service.run_routing_refresh()
            assert not result.success
            assert result.error == "routing updates not configured"

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


def test_shutdown_cancels_in_flight_subscription_refresh():
    """关闭服务时进行中的订阅获取被取消，分组不被写入"""
    async def run_test():
        with tempfile.TemporaryDirectory() as temp_dir:
            store = MemoryStore()
            group = store.add_group(ServerGroup(name="provider", auto_update=True,
                                                subscription_url="https://example.com/sub"))
            fetcher = SlowFetcher("trojan://pw@fast.example.com:443?security=tls#fast")
            service, engine = make_service(temp_dir, store, fetcher)

            refresh = asyncio.ensure_future(service.reconciler.refresh_group(group.id))
            await asyncio.sleep(0.05)
            await service.shutdown()
            await asyncio.gather(refresh, return_exceptions=True)
            assert refresh.cancelled()

            await asyncio.sleep(0.35)
            assert not fetcher.finished
            assert store.servers_in_group(group.id) == []
            assert store.get_group(group.id).last_updated is None
            engine.start.assert_not_called()

    asyncio.run(run_test())
