"""
隧道服务 - 组装各组件并提供触发接口

周期任务:
    ping_sweep            探测全部服务器后评估是否切换
    subscription_refresh  刷新到期的订阅分组
    routing_refresh       刷新路由规则，成功后重新应用到当前隧道
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..utils.settings import SettingsManager
from .config_assembler import CaptureInterface, ConfigAssembler, RoutingPolicy
from .error_handler import ErrorCategory, global_error_handler, handle_exception
from .errors import ConnectionFailedError, ParseError, ValidationError
from .ping_probe import BatchProbeResult, PingProbe, ProbeConfig
from .protocol_handler import ProtocolRegistry, default_registry
from .reconciler import Backoff, RefreshResult, RoutingRefreshResult, UpdateReconciler
from .routing_rules import AiohttpRoutingRuleFetcher, RoutingRuleFetcher, RoutingRuleStore
from .scheduler import IntervalScheduler
from .selection import SelectionController, SwitchDecision, TunnelState, apply_probe_result
from .server import ServerRecord
from .store import ServerStore
from .subscription import AiohttpSubscriptionFetcher, SubscriptionFetcher
from .tunnel_engine import TunnelEngine

JOB_PING = "ping_sweep"
JOB_SUBSCRIPTION = "subscription_refresh"
JOB_ROUTING = "routing_refresh"


@dataclass
class SweepResult:
    """一轮探测的结果"""
    probe: BatchProbeResult
    decision: Optional[SwitchDecision] = None
    error: Optional[str] = None


class TunnelService:
    """隧道服务"""

    def __init__(self,
                 store: ServerStore,
                 engine: TunnelEngine,
                 settings: Optional[SettingsManager] = None,
                 fetcher: Optional[SubscriptionFetcher] = None,
                 rule_fetcher: Optional[RoutingRuleFetcher] = None,
                 rule_store: Optional[RoutingRuleStore] = None,
                 registry: Optional[ProtocolRegistry] = None,
                 probe: Optional[PingProbe] = None,
                 clock: Callable[[], float] = time.time):
        """
        初始化隧道服务

        Args:
            store: 服务器存储
            engine: 隧道引擎
            settings: 设置管理器
            fetcher: 订阅获取器
            rule_fetcher: 路由规则获取器
            rule_store: 本地路由规则存储
            registry: 协议注册表
            probe: 延迟探测器
            clock: 时间函数
        """
        self.logger = logging.getLogger(__name__)
        self.settings = settings or SettingsManager()
        self.store = store
        self.engine = engine
        self.clock = clock
        self.registry = registry or default_registry()

        routing_enabled = self.settings.get("routing_enabled", True)
        if rule_store is None and routing_enabled:
            rule_store = RoutingRuleStore(self.settings.get("routing_dir", "config/routing"))
        if rule_fetcher is None and routing_enabled:
            rule_fetcher = AiohttpRoutingRuleFetcher(self.settings.get("routing_base_url"))
        self.rule_store = rule_store

        self.probe = probe or PingProbe(ProbeConfig(
            max_concurrent=self.settings.probe_max_concurrent,
            timeout=self.settings.probe_timeout,
            retry_count=int(self.settings.get("probe_retry_count", 0)),
        ))
        self.assembler = ConfigAssembler(self.registry)
        self.capture = CaptureInterface(
            protocol=self.settings.get("capture_protocol", "socks"),
            listen=self.settings.get("capture_listen", "127.0.0.1"),
            port=int(self.settings.get("capture_port", 10808)),
        )
        self.controller = SelectionController(
            engine=engine,
            assembler=self.assembler,
            policy_provider=self.build_policy,
            auto_switch_enabled=self.settings.auto_switch_enabled,
            min_ping_threshold_ms=self.settings.min_ping_threshold_ms,
            capture=self.capture,
        )
        self.controller.add_state_callback(self._on_state_change)

        self.reconciler = UpdateReconciler(
            store=store,
            fetcher=fetcher or AiohttpSubscriptionFetcher(),
            registry=self.registry,
            rule_store=rule_store,
            rule_fetcher=rule_fetcher,
            routing_files=self.settings.routing_files,
            backoff=Backoff(
                base=float(self.settings.get("backoff_base", 60.0)),
                cap=float(self.settings.get("backoff_cap", 6 * 60 * 60)),
            ),
            stale_after_failures=int(self.settings.get("stale_after_failures", 3)),
            fetch_timeout=float(self.settings.get("subscription_timeout", 30.0)),
            clock=clock,
        )

        self.scheduler = IntervalScheduler()
        self.scheduler.add_job(JOB_PING, self._ping_sweep, self.settings.ping_interval,
                               initial_delay=0)
        self.scheduler.add_job(JOB_SUBSCRIPTION, self._subscription_refresh,
                               self.settings.subscription_check_interval, initial_delay=0)
        self.scheduler.add_job(JOB_ROUTING, self._routing_refresh,
                               self.settings.routing_update_interval,
                               enabled=rule_store is not None)
        self._started = False

    # 路由策略
    def build_policy(self) -> RoutingPolicy:
        """根据设置和当前规则集生成路由策略"""
        return RoutingPolicy(
            log_level=self.settings.get("log_level", "warning"),
            fallback_dns=self.settings.fallback_dns,
            bypass_domains=list(self.settings.get("bypass_domains", [])),
            block_domains=list(self.settings.get("block_domains", [])),
            bypass_ips=list(self.settings.get("bypass_ips", [])),
            block_ips=list(self.settings.get("block_ips", [])),
            ruleset=self.rule_store.current if self.rule_store else None,
            capture=self.capture,
        )

    def _on_state_change(self, state: TunnelState, server_id: Optional[str]) -> None:
        if state == TunnelState.CONNECTED and server_id:
            self.settings.set("last_server_id", server_id)

    # 触发接口（可重复触发，正在运行时等待当前结果）
    async def run_ping_sweep(self) -> Optional[SweepResult]:
        return await self.scheduler.trigger(JOB_PING)

    async def run_subscription_refresh(self) -> Optional[List[RefreshResult]]:
        return await self.scheduler.trigger(JOB_SUBSCRIPTION)

    async def run_routing_refresh(self) -> Optional[RoutingRefreshResult]:
        return await self.scheduler.trigger(JOB_ROUTING)

    # 任务实现
    async def _ping_sweep(self) -> SweepResult:
        records = self.store.list_servers()
        targets = [(r.id, r.address, r.port) for r in records]
        batch = await self.probe.probe_many(targets)

        now = self.clock()
        states = {}
        for record in records:
            result = batch.results.get(record.id)
            if result is None:
                continue
            apply_probe_result(record, result, now)
            states[record.id] = record.probe
        self.store.update_probe_states(states)

        # 全部探测完成后才做切换决策
        sweep = SweepResult(probe=batch)
        try:
            sweep.decision = await self.controller.evaluate(self.store.list_servers())
            if sweep.decision.switched:
                self._save_usage()
        except ConnectionFailedError as e:
            sweep.error = str(e)
        except ValidationError as e:
            handle_exception(ErrorCategory.VALIDATION, e)
            sweep.error = str(e)
        return sweep

    async def _subscription_refresh(self) -> List[RefreshResult]:
        results = await self.reconciler.refresh_due_groups()
        changed = any(r.success and r.diff and r.diff.has_changes for r in results)
        if changed and self.controller.auto_switch_enabled:
            await self.scheduler.trigger(JOB_PING)
        return results

    async def refresh_group(self, group_id: str) -> RefreshResult:
        """手动刷新指定分组（忽略间隔和退避）"""
        result = await self.reconciler.refresh_group(group_id)
        if result.success and result.diff and result.diff.has_changes and self.controller.auto_switch_enabled:
            await self.scheduler.trigger(JOB_PING)
        return result

    async def _routing_refresh(self, force: bool = False) -> RoutingRefreshResult:
        if not force and not self.reconciler.routing_due():
            return RoutingRefreshResult(success=False, error=self.reconciler.routing_last_error,
                                        reason="waiting for retry backoff")
        result = await self.reconciler.refresh_routing(force=force)
        if result.updated:
            await self._reapply_active()
        return result

    async def _reapply_active(self) -> None:
        server_id = self.controller.active_server_id
        if server_id is None:
            return
        record = self.store.get_server(server_id)
        try:
            await self.controller.reapply(record)
        except ConnectionFailedError as e:
            self.logger.error(f"Tunnel lost while applying new routing rules: {e}")

    # 手动操作
    async def connect(self, server_id: str) -> bool:
        """
        连接到指定服务器

        Raises:
            ValidationError: 服务器不存在或配置无效
            ConnectionFailedError: 启动失败且无法回滚
        """
        record = self.store.get_server(server_id)
        if record is None:
            raise ValidationError("server_id", f"Unknown server: {server_id}")
        connected = await self.controller.connect(record)
        if connected:
            self._save_usage()
        return connected

    def _save_usage(self) -> None:
        active = self.controller.active_record
        stored = self.store.get_server(active.id) if active else None
        if stored is None:
            return
        stored.usage = active.usage
        self.store.update_server(stored)

    async def connect_best(self) -> Optional[SwitchDecision]:
        """连接到当前最快的服务器"""
        best = next((r for r in self.store.servers_by_ping() if r.probe.is_usable), None)
        if best is None:
            return None
        await self.connect(best.id)
        return SwitchDecision(candidate_id=best.id, active_id=best.id, switch=True,
                              reason="manual best-server connect", switched=True)

    async def disconnect(self) -> None:
        await self.controller.disconnect()

    def import_links(self, text: str, group_id: Optional[str] = None) -> Tuple[List[ServerRecord], List[ParseError]]:
        """
        导入分享链接（每行一个），无效链接跳过

        Returns:
            (导入的记录, 解析错误)
        """
        added = []
        errors = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                record = self.registry.parse_uri(line)
            except ParseError as e:
                errors.append(e)
                continue
            record.group_id = group_id
            added.append(self.store.add_server(record))
        self.logger.info(f"Imported {len(added)} server(s), skipped {len(errors)}")
        return added, errors

    def export_links(self, group_id: Optional[str] = None) -> List[str]:
        """导出分享链接"""
        records = self.store.servers_in_group(group_id) if group_id else self.store.list_servers()
        links = []
        for record in records:
            try:
                links.append(self.registry.generate_uri(record))
            except ValidationError as e:
                self.logger.warning(f"Cannot export {record.display_name}: {e}")
        return links

    # 生命周期
    async def start(self, reconnect_last: bool = False) -> None:
        """
        启动服务：加载本地规则集并启动周期任务

        Args:
            reconnect_last: 是否重新连接上次使用的服务器
        """
        if self._started:
            return
        if self.rule_store is not None:
            self.rule_store.load()
        self._started = True
        self.scheduler.start()
        self.logger.info("Tunnel service started")

        last_id = self.settings.last_server_id
        if reconnect_last and last_id and self.store.get_server(last_id):
            try:
                await self.connect(last_id)
            except (ConnectionFailedError, ValidationError) as e:
                self.logger.warning(f"Could not reconnect to last server: {e}")

    async def shutdown(self) -> None:
        """停止所有周期任务（取消进行中的探测和获取）并关闭隧道"""
        await self.scheduler.stop()
        await self.reconciler.cancel_all()
        await self.controller.shutdown()
        self._started = False
        self.logger.info("Tunnel service stopped")

    def get_status(self) -> Dict[str, object]:
        """获取服务状态"""
        return {
            'tunnel': self.controller.get_status(),
            'jobs': self.scheduler.get_status(),
            'routing': self.reconciler.get_routing_status(),
            'servers': len(self.store.list_servers()),
            'groups': len(self.store.list_groups()),
            'probe': self.probe.get_statistics(),
            'errors': global_error_handler.get_error_statistics(),
        }
