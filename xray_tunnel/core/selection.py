"""
选择控制器 - 延迟平滑、最佳服务器选择与带滞回的自动切换

隧道状态机:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> SWITCHING -> CONNECTING -> CONNECTED
    任意状态 -> DISCONNECTED（停止或无法恢复的失败）

所有状态转换都在同一把 asyncio.Lock 内完成，同一时刻最多只有一次切换。
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config_assembler import CaptureInterface, ConfigAssembler, RoutingPolicy, TunnelConfig
from .error_handler import ErrorCategory, handle_error
from .errors import ConnectionFailedError, TunnelStartError
from .ping_probe import ProbeResult
from .server import ServerRecord
from .tunnel_engine import TunnelEngine

SMOOTHING_WEIGHT = 0.7
DEFAULT_MIN_PING_THRESHOLD = 300  # ms


class TunnelState(Enum):
    """隧道状态"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SWITCHING = "switching"


def smooth(previous: int, count: int, measured: int, weight: float = SMOOTHING_WEIGHT) -> int:
    """
    指数加权平滑

    第一次测量直接采用测量值；之后为 weight*测量值 + (1-weight)*旧值，四舍五入。
    权重不随样本数变化。

    Args:
        previous: 旧的平滑值
        count: 已有样本数
        measured: 新测量值(ms)
        weight: 新测量值权重

    Returns:
        新的平滑值
    """
    if count == 0:
        return measured
    value = weight * measured + (1 - weight) * previous
    # 四舍五入（0.5向上），避免银行家舍入
    return int(value + 0.5)


def apply_probe_result(record: ServerRecord, result: ProbeResult, now: Optional[float] = None) -> None:
    """
    把一次探测结果写入服务器记录的探测状态

    失败只设置不可达标记，不会把延迟写成0。
    """
    now = time.time() if now is None else now
    state = record.probe
    state.last_probe_at = now
    if result.is_successful():
        state.ping = max(1, smooth(state.ping, state.sample_count, result.latency))
        state.sample_count += 1
        state.unreachable = False
        state.consecutive_failures = 0
        state.last_success_at = now
    else:
        state.unreachable = True
        state.consecutive_failures += 1


def pick_candidate(records: Iterable[ServerRecord]) -> Optional[ServerRecord]:
    """
    选出候选服务器：排除不可达和从未探测的记录，按 (平滑延迟, 名称) 取最小

    Returns:
        候选记录，没有可用记录时返回None
    """
    usable = [r for r in records if r.probe.is_usable]
    if not usable:
        return None
    return min(usable, key=lambda r: (r.probe.ping, r.name))


def should_switch(candidate: Optional[ServerRecord], active: Optional[ServerRecord],
                  auto_switch_enabled: bool, threshold: int) -> bool:
    """
    滞回判断：仅当候选比当前服务器快出阈值以上时才切换

    当前服务器为空、不可达或未探测时视为没有可用的当前服务器。
    """
    if not auto_switch_enabled or candidate is None:
        return False
    if active is not None and candidate.id == active.id:
        return False
    if active is None or not active.probe.is_usable:
        return True
    return active.probe.ping - candidate.probe.ping > threshold


@dataclass
class SwitchDecision:
    """一轮评估的结果"""
    candidate_id: Optional[str]
    active_id: Optional[str]
    switch: bool
    reason: str
    switched: bool = False
    rolled_back: bool = False


StateCallback = Callable[[TunnelState, Optional[str]], None]


class SelectionController:
    """
    选择控制器

    唯一可以修改活动隧道的组件。
    """

    def __init__(self,
                 engine: TunnelEngine,
                 assembler: Optional[ConfigAssembler] = None,
                 policy_provider: Optional[Callable[[], RoutingPolicy]] = None,
                 auto_switch_enabled: bool = True,
                 min_ping_threshold_ms: int = DEFAULT_MIN_PING_THRESHOLD,
                 capture: Optional[CaptureInterface] = None):
        """
        初始化选择控制器

        Args:
            engine: 隧道引擎
            assembler: 配置组装器
            policy_provider: 返回当前路由策略的函数
            auto_switch_enabled: 是否启用自动切换
            min_ping_threshold_ms: 切换所需的最小延迟改善(ms)
            capture: 本地捕获入口
        """
        self.engine = engine
        self.assembler = assembler or ConfigAssembler()
        self.policy_provider = policy_provider or RoutingPolicy
        self.auto_switch_enabled = auto_switch_enabled
        self.min_ping_threshold_ms = min_ping_threshold_ms
        self.capture = capture
        self.logger = logging.getLogger(__name__)

        self._lock = asyncio.Lock()
        self._state = TunnelState.DISCONNECTED
        self._active: Optional[ServerRecord] = None
        self._active_config: Optional[TunnelConfig] = None
        self._user_stopped = False
        self._state_callbacks: List[StateCallback] = []
        self._switch_count = 0
        self._last_switch_at: Optional[float] = None

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def active_server_id(self) -> Optional[str]:
        return self._active.id if self._active else None

    @property
    def active_record(self) -> Optional[ServerRecord]:
        return self._active

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def add_state_callback(self, callback: StateCallback) -> None:
        """添加状态变化回调"""
        if callback not in self._state_callbacks:
            self._state_callbacks.append(callback)

    def remove_state_callback(self, callback: StateCallback) -> None:
        """移除状态变化回调"""
        if callback in self._state_callbacks:
            self._state_callbacks.remove(callback)

    def _set_state(self, state: TunnelState) -> None:
        if state == self._state:
            return
        self.logger.debug(f"Tunnel state {self._state.value} -> {state.value}")
        self._state = state
        server_id = self.active_server_id
        for callback in self._state_callbacks:
            try:
                callback(state, server_id)
            except Exception as e:
                self.logger.error(f"Error in state callback: {e}")

    async def connect(self, record: ServerRecord) -> bool:
        """
        连接到指定服务器（用户手动选择）

        Returns:
            True表示已连接到该服务器，False表示失败后回滚到了之前的服务器

        Raises:
            ValidationError: 服务器记录无法合成配置
            ConnectionFailedError: 启动失败且无法回滚
        """
        async with self._lock:
            self._user_stopped = False
            return await self._activate(record)

    async def switch_to(self, record: ServerRecord) -> bool:
        """切换到指定服务器，语义同 connect"""
        return await self.connect(record)

    async def disconnect(self) -> None:
        """断开隧道"""
        async with self._lock:
            self._user_stopped = True
            await self._teardown()

    async def reapply(self, record: Optional[ServerRecord] = None) -> bool:
        """
        使用最新的路由策略重新组装并应用当前服务器的配置

        Args:
            record: 当前服务器的最新记录（可选）

        Returns:
            是否重新应用成功；未连接时返回False
        """
        async with self._lock:
            if self._active is None or self._state != TunnelState.CONNECTED:
                return False
            if record is not None and record.id != self._active.id:
                return False
            return await self._activate(record or self._active)

    async def evaluate(self, records: Iterable[ServerRecord]) -> SwitchDecision:
        """
        一轮完整探测结束后评估是否切换

        Args:
            records: 最新的服务器记录（已包含本轮探测结果）

        Returns:
            SwitchDecision
        """
        records = list(records)
        async with self._lock:
            candidate = pick_candidate(records)
            active = None
            if self._active is not None:
                active = next((r for r in records if r.id == self._active.id), None)

            decision = SwitchDecision(
                candidate_id=candidate.id if candidate else None,
                active_id=self.active_server_id,
                switch=False,
                reason="",
            )

            if self._user_stopped:
                decision.reason = "tunnel stopped by user"
                return decision
            if candidate is None:
                decision.reason = "no reachable server"
                return decision

            decision.switch = should_switch(
                candidate, active, self.auto_switch_enabled, self.min_ping_threshold_ms
            )
            if not decision.switch:
                decision.reason = self._explain_no_switch(candidate, active)
                return decision

            if active is None:
                decision.reason = "no usable active server"
            elif not active.probe.is_usable:
                decision.reason = "active server unreachable"
            else:
                decision.reason = (f"{candidate.display_name} ({candidate.probe.ping}ms) beats "
                                   f"{active.display_name} ({active.probe.ping}ms)")
            self.logger.info(f"Switching to better server: {decision.reason}")

            # 启动失败且无法回滚时抛出 ConnectionFailedError
            decision.switched = await self._activate(candidate)
            decision.rolled_back = not decision.switched
            return decision

    def _explain_no_switch(self, candidate: ServerRecord, active: Optional[ServerRecord]) -> str:
        if not self.auto_switch_enabled:
            return "auto switch disabled"
        if active is not None and candidate.id == active.id:
            return "active server is already the best"
        return (f"improvement below threshold ({self.min_ping_threshold_ms}ms)")

    async def _activate(self, record: ServerRecord) -> bool:
        """
        在持有锁的情况下启动指定服务器

        Returns:
            True表示成功，False表示失败但已回滚到之前的配置

        Raises:
            ValidationError: 配置合成失败（隧道状态不变）
            ConnectionFailedError: 启动失败且回滚失败
        """
        policy = self.policy_provider()
        config = self.assembler.assemble(record, policy)

        previous: Optional[Tuple[ServerRecord, TunnelConfig]] = None
        if self._active is not None and self._active_config is not None:
            previous = (self._active, self._active_config)
            self._set_state(TunnelState.SWITCHING)
        self._set_state(TunnelState.CONNECTING)

        try:
            await self._start_engine(config)
        except TunnelStartError as e:
            handle_error(
                category=ErrorCategory.TUNNEL,
                code="tunnel_start_failed",
                details=str(e),
                context={'server_id': record.id, 'server': record.display_name}
            )
            if previous is not None and await self._rollback(*previous):
                return False
            self._active = None
            self._active_config = None
            self._set_state(TunnelState.DISCONNECTED)
            handle_error(
                category=ErrorCategory.TUNNEL,
                code="tunnel_connection_failed",
                context={'server_id': record.id}
            )
            raise ConnectionFailedError(f"Failed to connect to {record.display_name}: {e}")
        except asyncio.CancelledError:
            self._active = None
            self._active_config = None
            self._set_state(TunnelState.DISCONNECTED)
            raise

        if previous is None or previous[0].id != record.id:
            if previous is not None:
                self._switch_count += 1
                self._last_switch_at = time.time()
            record.usage.connection_count += 1
            record.usage.last_connected_at = time.time()
        self._active = record
        self._active_config = config
        self._set_state(TunnelState.CONNECTED)
        self.logger.info(f"Connected to {record.display_name} ({record.address}:{record.port})")
        return True

    async def _rollback(self, record: ServerRecord, config: TunnelConfig) -> bool:
        """回滚到之前的服务器（仅尝试一次）"""
        self.logger.warning(f"Rolling back to {record.display_name}")
        try:
            await self._start_engine(config)
        except TunnelStartError as e:
            self.logger.error(f"Rollback to {record.display_name} failed: {e}")
            return False
        self._active = record
        self._active_config = config
        self._set_state(TunnelState.CONNECTED)
        return True

    async def _start_engine(self, config: TunnelConfig) -> None:
        try:
            await asyncio.to_thread(self.engine.start, config, self.capture)
        except TunnelStartError:
            raise
        except Exception as e:
            raise TunnelStartError(f"{type(e).__name__}: {e}")

    async def _teardown(self) -> None:
        if self._active is not None or self.engine.is_running():
            try:
                await asyncio.to_thread(self.engine.stop)
            except Exception as e:
                handle_error(
                    category=ErrorCategory.TUNNEL,
                    code="tunnel_stop_failed",
                    message="Failed to stop tunnel engine",
                    exception=e
                )
        self._active = None
        self._active_config = None
        self._set_state(TunnelState.DISCONNECTED)

    async def shutdown(self) -> None:
        """关闭隧道（服务退出时使用）"""
        await self.disconnect()

    def get_status(self) -> Dict[str, object]:
        """获取状态信息"""
        return {
            'state': self._state.value,
            'active_server_id': self.active_server_id,
            'active_server_name': self._active.display_name if self._active else None,
            'auto_switch_enabled': self.auto_switch_enabled,
            'min_ping_threshold_ms': self.min_ping_threshold_ms,
            'switch_count': self._switch_count,
            'last_switch_at': self._last_switch_at,
        }
