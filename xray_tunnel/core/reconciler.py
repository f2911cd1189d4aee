"""
更新对账器 - 订阅刷新与路由规则刷新

订阅刷新按身份标识对比新旧记录，匹配到的记录保留 id、探测状态、
使用统计和用户标记，然后一次性原子替换分组内的记录。
获取或解析失败时记录不变，失败计数加一并按指数退避安排下次重试。
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from .error_handler import ErrorCategory, handle_error
from .errors import NetworkError, ParseError, ValidationError
from .group import ServerGroup
from .protocol_handler import ProtocolRegistry, default_registry
from .routing_rules import (
    DEFAULT_ROUTING_FILES, MANIFEST_FILE, RoutingRuleFetcher, RoutingRuleStore,
    RoutingRuleset, parse_manifest, validate_files
)
from .server import ServerRecord
from .store import ServerStore
from .subscription import (
    DEFAULT_TIMEOUT, ParsedSubscription, SubscriptionFetcher, decode_content, parse_entries
)

DEFAULT_STALE_AFTER = 3


class Backoff:
    """带抖动的指数退避：min(cap, base * 2^(n-1))"""

    def __init__(self, base: float = 60.0, cap: float = 6 * 60 * 60, jitter: float = 0.2,
                 rng: Optional[Callable[[float, float], float]] = None):
        self.base = base
        self.cap = cap
        self.jitter = min(max(jitter, 0.0), 1.0)
        self._uniform = rng or random.uniform

    def delay(self, failures: int) -> float:
        """
        第 failures 次连续失败后的等待时间（秒）

        Args:
            failures: 连续失败次数（>=1）
        """
        if failures <= 0:
            return 0.0
        delay = min(self.cap, self.base * (2 ** (failures - 1)))
        if self.jitter:
            delay *= self._uniform(1.0 - self.jitter, 1.0)
        return delay


@dataclass
class SubscriptionDiff:
    """订阅对账结果"""
    added: List[ServerRecord] = field(default_factory=list)
    removed: List[ServerRecord] = field(default_factory=list)
    updated: List[ServerRecord] = field(default_factory=list)
    unchanged: List[ServerRecord] = field(default_factory=list)
    duplicates: int = 0

    @property
    def records(self) -> List[ServerRecord]:
        """对账后分组内的全部记录"""
        return self.added + self.updated + self.unchanged

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.updated)

    def summary(self) -> Dict[str, int]:
        return {
            'added': len(self.added),
            'removed': len(self.removed),
            'updated': len(self.updated),
            'unchanged': len(self.unchanged),
        }


@dataclass
class RefreshResult:
    """单个分组的刷新结果"""
    group_id: str
    success: bool
    diff: Optional[SubscriptionDiff] = None
    skipped: int = 0
    error: Optional[str] = None
    stale: bool = False
    next_attempt_at: Optional[float] = None


@dataclass
class RoutingRefreshResult:
    """路由规则刷新结果"""
    success: bool
    updated: bool = False
    ruleset: Optional[RoutingRuleset] = None
    error: Optional[str] = None
    reason: str = ""


def _protocol_fields(record: ServerRecord):
    return (record.name, record.protocol, record.address, record.port,
            record.settings, record.transport, record.subscription_key)


def compute_diff(existing: Sequence[ServerRecord], incoming: Sequence[ServerRecord],
                 group_id: str) -> SubscriptionDiff:
    """
    按身份标识对比分组内现有记录与新解析的记录

    Args:
        existing: 分组内现有记录
        incoming: 新解析的记录
        group_id: 分组ID

    Returns:
        SubscriptionDiff；匹配到的记录沿用现有 id、探测状态、使用统计和用户标记
    """
    diff = SubscriptionDiff()
    index = {}
    for record in existing:
        index.setdefault(record.identity_key(), record)

    seen = set()
    for parsed in incoming:
        key = parsed.identity_key()
        if key in seen:
            diff.duplicates += 1
            continue
        seen.add(key)

        current = index.get(key)
        if current is None:
            diff.added.append(replace(parsed, group_id=group_id))
            continue

        merged = replace(
            current,
            name=parsed.name,
            protocol=parsed.protocol,
            address=parsed.address,
            port=parsed.port,
            settings=parsed.settings,
            transport=parsed.transport,
            subscription_key=parsed.subscription_key,
            group_id=group_id,
        )
        if _protocol_fields(merged) == _protocol_fields(current):
            diff.unchanged.append(merged)
        else:
            diff.updated.append(merged)

    diff.removed = [r for key, r in index.items() if key not in seen]
    return diff


class UpdateReconciler:
    """更新对账器"""

    def __init__(self,
                 store: ServerStore,
                 fetcher: SubscriptionFetcher,
                 registry: Optional[ProtocolRegistry] = None,
                 rule_store: Optional[RoutingRuleStore] = None,
                 rule_fetcher: Optional[RoutingRuleFetcher] = None,
                 routing_files: Sequence[str] = DEFAULT_ROUTING_FILES,
                 backoff: Optional[Backoff] = None,
                 stale_after_failures: int = DEFAULT_STALE_AFTER,
                 fetch_timeout: float = DEFAULT_TIMEOUT,
                 clock: Callable[[], float] = time.time):
        """
        初始化对账器

        Args:
            store: 服务器存储
            fetcher: 订阅获取器
            registry: 协议注册表
            rule_store: 本地路由规则存储
            rule_fetcher: 路由规则获取器
            routing_files: 需要下载的规则文件
            backoff: 退避策略
            stale_after_failures: 连续失败多少次后标记为过期
            fetch_timeout: 订阅请求超时（秒）
            clock: 时间函数
        """
        self.store = store
        self.fetcher = fetcher
        self.registry = registry or default_registry()
        self.rule_store = rule_store
        self.rule_fetcher = rule_fetcher
        self.routing_files = list(routing_files)
        self.backoff = backoff or Backoff()
        self.stale_after_failures = max(1, stale_after_failures)
        self.fetch_timeout = fetch_timeout
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._in_flight: Dict[str, asyncio.Task] = {}

        # 路由规则更新状态
        self.routing_failures = 0
        self.routing_last_error: Optional[str] = None
        self.routing_next_attempt_at: Optional[float] = None
        self.routing_last_checked: Optional[float] = None

    async def refresh_group(self, group_id: str) -> RefreshResult:
        """
        刷新单个订阅分组；同一分组正在刷新时等待并返回该次结果

        Raises:
            ValidationError: 分组不存在或不是订阅分组
        """
        task = self._in_flight.get(group_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh_group(group_id))
            self._in_flight[group_id] = task
            task.add_done_callback(lambda _t, gid=group_id: self._in_flight.pop(gid, None))
        return await asyncio.shield(task)

    async def cancel_all(self) -> int:
        """
        取消所有进行中的分组刷新并等待其结束（服务关闭时使用）

        Returns:
            被取消的刷新数量
        """
        tasks = [task for task in self._in_flight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info(f"Cancelled {len(tasks)} in-flight subscription refresh(es)")
        self._in_flight.clear()
        return len(tasks)

    async def _refresh_group(self, group_id: str) -> RefreshResult:
        group = self.store.get_group(group_id)
        if group is None:
            raise ValidationError("group_id", f"Unknown group: {group_id}")
        if not group.subscription_url:
            raise ValidationError("subscription_url", f"Group {group.name} has no subscription")

        self.logger.info(f"Refreshing subscription group {group.name}")
        auth = (group.auth_username, group.auth_password or "") if group.auth_username else None
        try:
            content = await self.fetcher.fetch(
                group.subscription_url, group.user_agent, auth, self.fetch_timeout
            )
            parsed = parse_entries(decode_content(content), self.registry)
            if not parsed.records:
                raise ParseError(
                    f"Subscription contains no valid servers ({parsed.skipped} skipped)",
                    group.subscription_url
                )
        except (NetworkError, ParseError) as e:
            return self._record_failure(group_id, e)

        self._report_skipped(group, parsed)
        return self._apply(group_id, parsed)

    def _report_skipped(self, group: ServerGroup, parsed: ParsedSubscription) -> None:
        if not parsed.errors:
            return
        handle_error(
            category=ErrorCategory.SUBSCRIPTION,
            code="subscription_entry_skipped",
            message=f"Skipped {parsed.skipped} invalid entries in {group.name}",
            details="; ".join(str(e) for e in parsed.errors[:5]),
            context={'group_id': group.id}
        )

    def _apply(self, group_id: str, parsed: ParsedSubscription) -> RefreshResult:
        """计算差异并原子替换（中间没有await）"""
        group = self.store.get_group(group_id)
        if group is None:
            return RefreshResult(group_id=group_id, success=False, error="group deleted during refresh")

        diff = compute_diff(self.store.servers_in_group(group_id), parsed.records, group_id)
        self.store.replace_group_records(group_id, diff.records)

        now = self.clock()
        group.last_updated = now
        group.last_success_at = now
        group.consecutive_failures = 0
        group.last_error = None
        group.stale = False
        group.next_attempt_at = None
        group.server_count = len(diff.records)
        self.store.update_group(group)

        self.logger.info(f"Subscription {group.name} refreshed: {diff.summary()}")
        return RefreshResult(group_id=group_id, success=True, diff=diff, skipped=parsed.skipped)

    def _record_failure(self, group_id: str, error: Exception) -> RefreshResult:
        group = self.store.get_group(group_id)
        if group is None:
            return RefreshResult(group_id=group_id, success=False, error=str(error))

        now = self.clock()
        group.consecutive_failures += 1
        group.last_error = str(error)
        group.next_attempt_at = now + self.backoff.delay(group.consecutive_failures)
        became_stale = not group.stale and group.consecutive_failures >= self.stale_after_failures
        if group.consecutive_failures >= self.stale_after_failures:
            group.stale = True
        self.store.update_group(group)

        handle_error(
            category=ErrorCategory.SUBSCRIPTION,
            code="subscription_fetch_failed",
            details=str(error),
            context={'group_id': group_id, 'failures': group.consecutive_failures}
        )
        if became_stale:
            handle_error(
                category=ErrorCategory.SUBSCRIPTION,
                code="subscription_stale",
                context={'group_id': group_id, 'group': group.name}
            )
        return RefreshResult(
            group_id=group_id,
            success=False,
            error=str(error),
            stale=group.stale,
            next_attempt_at=group.next_attempt_at,
        )

    async def refresh_due_groups(self, now: Optional[float] = None) -> List[RefreshResult]:
        """
        刷新所有到期的自动更新分组

        Args:
            now: 当前时间戳

        Returns:
            每个分组的刷新结果
        """
        now = self.clock() if now is None else now
        due = [g for g in self.store.auto_update_groups() if g.is_due(now)]
        if not due:
            return []
        results = await asyncio.gather(*(self.refresh_group(g.id) for g in due))
        return list(results)

    async def refresh_all(self) -> List[RefreshResult]:
        """立即刷新所有订阅分组（忽略间隔和退避）"""
        groups = [g for g in self.store.list_groups() if g.is_subscription]
        results = await asyncio.gather(*(self.refresh_group(g.id) for g in groups))
        return list(results)

    def routing_due(self, now: Optional[float] = None) -> bool:
        """路由规则是否不在退避窗口内"""
        now = self.clock() if now is None else now
        return self.routing_next_attempt_at is None or now >= self.routing_next_attempt_at

    async def refresh_routing(self, force: bool = False) -> RoutingRefreshResult:
        """
        刷新路由规则：获取 manifest 和规则文件，校验后原子替换

        远程 update_time 不比本地新时跳过（force 为 True 时除外）；
        任何失败都保留上一版本规则集。

        Returns:
            RoutingRefreshResult
        """
        if self.rule_store is None or self.rule_fetcher is None:
            return RoutingRefreshResult(success=False, error="routing updates not configured")

        self.routing_last_checked = self.clock()
        try:
            manifest = parse_manifest(await self.rule_fetcher.fetch(MANIFEST_FILE))
            current = self.rule_store.current
            if not force and current is not None and manifest.update_time <= current.update_time:
                self._routing_success()
                return RoutingRefreshResult(success=True, updated=False, ruleset=current,
                                            reason="already up to date")

            contents = await asyncio.gather(*(self.rule_fetcher.fetch(name) for name in self.routing_files))
            files = dict(zip(self.routing_files, contents))
            validate_files(manifest, files, self.routing_files)
            ruleset = await asyncio.to_thread(self.rule_store.install, manifest, files)
        except (NetworkError, ParseError, ValidationError, OSError) as e:
            self.routing_failures += 1
            self.routing_last_error = str(e)
            self.routing_next_attempt_at = self.clock() + self.backoff.delay(self.routing_failures)
            handle_error(
                category=ErrorCategory.ROUTING,
                code="routing_update_failed",
                details=str(e),
                context={'failures': self.routing_failures}
            )
            return RoutingRefreshResult(success=False, ruleset=self.rule_store.current, error=str(e))

        self._routing_success()
        return RoutingRefreshResult(success=True, updated=True, ruleset=ruleset,
                                    reason=f"updated to {ruleset.version}")

    def _routing_success(self) -> None:
        self.routing_failures = 0
        self.routing_last_error = None
        self.routing_next_attempt_at = None

    def get_routing_status(self) -> Dict[str, object]:
        current = self.rule_store.current if self.rule_store else None
        return {
            'version': current.version if current else None,
            'update_time': current.update_time if current else None,
            'failures': self.routing_failures,
            'last_error': self.routing_last_error,
            'next_attempt_at': self.routing_next_attempt_at,
            'last_checked': self.routing_last_checked,
        }
