#!/usr/bin/env python3
"""
选择控制器测试 - 延迟平滑、滞回切换、回滚和状态机
"""
import asyncio
import time
from unittest.mock import Mock

import pytest

from xray_tunnel.core.errors import ConnectionFailedError, TunnelStartError, ValidationError
from xray_tunnel.core.ping_probe import ProbeResult
from xray_tunnel.core.selection import (
    SelectionController, TunnelState, apply_probe_result, pick_candidate, should_switch, smooth
)
from xray_tunnel.core.server import Protocol, ServerRecord, VLessSettings

UUID = "12345678-abcd-1234-abcd-123456789abc"


def make_server(name: str, ping: int = 0, unreachable: bool = False) -> ServerRecord:
    record = ServerRecord(
        name=name, protocol=Protocol.VLESS, address=f"{name}.example.com", port=443,
        settings=VLessSettings(uuid=UUID), id=name,
    )
    record.probe.ping = ping
    record.probe.sample_count = 1 if ping else 0
    record.probe.unreachable = unreachable
    return record


def make_engine(fail_on=None):
    """模拟隧道引擎，fail_on 中的服务器启动失败"""
    fail_on = set(fail_on or [])
    engine = Mock()
    engine.is_running.return_value = False
    started = []

    def start(config, capture=None):
        if config.server_id in fail_on:
            raise TunnelStartError(f"engine rejected {config.server_id}")
        started.append(config.server_id)
        engine.is_running.return_value = True

    engine.start.side_effect = start
    engine.started = started
    return engine


def test_smoothing():
    """第一次测量直接采用，之后按 0.7/0.3 加权并四舍五入"""
    assert smooth(0, 0, 120) == 120
    assert smooth(100, 1, 50) == 65
    assert smooth(100, 5, 50) == 65
    # 0.7*101 + 0.3*100 = 100.7
    assert smooth(100, 1, 101) == 101


def test_apply_probe_result():
    record = make_server("a")
    apply_probe_result(record, ProbeResult(address="a", port=443, latency=100), now=10.0)
    assert record.probe.ping == 100
    assert record.probe.sample_count == 1

    apply_probe_result(record, ProbeResult(address="a", port=443, latency=50), now=20.0)
    assert record.probe.ping == 65
    assert record.probe.last_success_at == 20.0

    # 失败只标记不可达，不覆盖延迟
    for i in range(3):
        apply_probe_result(record, ProbeResult(address="a", port=443, unreachable=True), now=30.0 + i)
    assert record.probe.unreachable
    assert record.probe.ping == 65
    assert record.probe.consecutive_failures == 3
    assert pick_candidate([record]) is None


def test_pick_candidate_excludes_unprobed_and_unreachable():
    servers = [
        make_server("never"),
        make_server("down", ping=10, unreachable=True),
        make_server("slow", ping=200),
        make_server("fast", ping=80),
    ]
    assert pick_candidate(servers).id == "fast"
    assert pick_candidate([make_server("x")]) is None

    # 延迟相同时按名称排序
    tie = [make_server("b", ping=50), make_server("a", ping=50)]
    assert pick_candidate(tie).id == "a"


def test_hysteresis():
    active = make_server("active", ping=100)
    assert not should_switch(make_server("c", ping=95), active, True, 10)
    assert should_switch(make_server("c", ping=80), active, True, 10)
    # 差值等于阈值时不切换
    assert not should_switch(make_server("c", ping=90), active, True, 10)
    assert not should_switch(make_server("c", ping=10), active, False, 10)
    assert should_switch(make_server("c", ping=500), None, True, 10)
    assert should_switch(make_server("c", ping=500), make_server("dead", 50, True), True, 10)


def test_evaluate_switches_only_past_threshold():
    async def run_test():
        engine = make_engine()
        controller = SelectionController(engine, min_ping_threshold_ms=10)
        a = make_server("a", ping=100)
        b = make_server("b", ping=95)

        assert await controller.connect(a)
        decision = await controller.evaluate([a, b])
        assert not decision.switch
        assert controller.active_server_id == "a"

        b.probe.ping = 80
        decision = await controller.evaluate([a, b])
        assert decision.switch and decision.switched
        assert controller.active_server_id == "b"
        assert controller.state == TunnelState.CONNECTED
        assert engine.started == ["a", "b"]
        assert controller.get_status()['switch_count'] == 1

    asyncio.run(run_test())


def test_state_transitions_during_switch():
    async def run_test():
        controller = SelectionController(make_engine())
        states = []
        controller.add_state_callback(lambda state, server_id: states.append((state, server_id)))

        await controller.connect(make_server("a", ping=100))
        await controller.connect(make_server("b", ping=50))
        await controller.disconnect()

        assert [s for s, _ in states] == [
            TunnelState.CONNECTING, TunnelState.CONNECTED,
            TunnelState.SWITCHING, TunnelState.CONNECTING, TunnelState.CONNECTED,
            TunnelState.DISCONNECTED,
        ]
        assert states[4] == (TunnelState.CONNECTED, "b")

    asyncio.run(run_test())


def test_failed_switch_rolls_back():
    async def run_test():
        engine = make_engine(fail_on={"b"})
        controller = SelectionController(engine, min_ping_threshold_ms=10)
        a = make_server("a", ping=100)
        b = make_server("b", ping=20)

        await controller.connect(a)
        decision = await controller.evaluate([a, b])

        assert decision.switch
        assert not decision.switched
        assert decision.rolled_back
        assert controller.active_server_id == "a"
        assert controller.state == TunnelState.CONNECTED
        assert engine.started == ["a", "a"]

    asyncio.run(run_test())


def test_failed_rollback_disconnects():
    async def run_test():
        engine = make_engine()
        controller = SelectionController(engine, min_ping_threshold_ms=10)
        a = make_server("a", ping=100)
        b = make_server("b", ping=20)
        await controller.connect(a)

        # 之后所有启动都失败
        engine.start.side_effect = TunnelStartError("xray crashed")
        with pytest.raises(ConnectionFailedError):
            await controller.evaluate([a, b])

        assert controller.state == TunnelState.DISCONNECTED
        assert controller.active_server_id is None

    asyncio.run(run_test())


def test_first_connect_failure_raises():
    async def run_test():
        controller = SelectionController(make_engine(fail_on={"a"}))
        with pytest.raises(ConnectionFailedError):
            await controller.connect(make_server("a", ping=10))
        assert controller.state == TunnelState.DISCONNECTED

    asyncio.run(run_test())


def test_invalid_record_leaves_state_unchanged():
    async def run_test():
        engine = make_engine()
        controller = SelectionController(engine)
        await controller.connect(make_server("a", ping=100))

        broken = make_server("broken", ping=5)
        broken.settings.uuid = ""
        with pytest.raises(ValidationError):
            await controller.connect(broken)

        assert controller.state == TunnelState.CONNECTED
        assert controller.active_server_id == "a"
        assert engine.started == ["a"]

    asyncio.run(run_test())


def test_disconnect_suppresses_auto_connect():
    async def run_test():
        engine = make_engine()
        controller = SelectionController(engine)
        servers = [make_server("a", ping=100), make_server("b", ping=30)]

        # 从未连接过时，评估会自动连接到最佳服务器
        decision = await controller.evaluate(servers)
        assert decision.switched
        assert controller.active_server_id == "b"

        await controller.disconnect()
        engine.stop.assert_called_once()

        decision = await controller.evaluate(servers)
        assert not decision.switch
        assert controller.state == TunnelState.DISCONNECTED

    asyncio.run(run_test())


def test_unreachable_active_triggers_switch():
    """当前服务器连续失败后会被替换"""
    async def run_test():
        controller = SelectionController(make_engine(), min_ping_threshold_ms=300)
        a = make_server("a", ping=100)
        b = make_server("b", ping=90)
        await controller.connect(a)

        for i in range(3):
            apply_probe_result(a, ProbeResult(address="a", port=443, unreachable=True), now=float(i))
        decision = await controller.evaluate([a, b])
        assert decision.switched
        assert controller.active_server_id == "b"

    asyncio.run(run_test())


def test_auto_switch_disabled():
    async def run_test():
        controller = SelectionController(make_engine(), auto_switch_enabled=False)
        a = make_server("a", ping=900)
        await controller.connect(a)
        decision = await controller.evaluate([a, make_server("b", ping=10)])
        assert not decision.switch
        assert decision.reason == "auto switch disabled"

    asyncio.run(run_test())


def test_concurrent_switches_are_serialized():
    """同一时刻最多只有一次切换在进行"""
    async def run_test():
        engine = make_engine()
        controller = SelectionController(engine)
        active = 0
        max_active = 0
        original = engine.start.side_effect

        def slow_start(config, capture=None):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            time.sleep(0.02)
            original(config, capture)
            active -= 1

        engine.start.side_effect = slow_start
        servers = [make_server(name, ping=10 * (i + 1)) for i, name in enumerate("abcd")]
        await asyncio.gather(*(controller.connect(s) for s in servers))
        assert max_active == 1
        assert len(engine.started) == 4

    asyncio.run(run_test())
