"""
延迟探测器 - 基于TCP连接的并发延迟测试

单次探测永远不会抛出异常：超时或连接失败以 unreachable 结果返回。
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .error_handler import ErrorCategory, handle_error


@dataclass
class ProbeConfig:
    """探测配置"""
    max_concurrent: int = 20  # 最大并发数
    timeout: float = 5.0      # 超时时间（秒）
    retry_count: int = 0      # 重试次数
    retry_delay: float = 0.5  # 重试延迟（秒）


@dataclass
class ProbeResult:
    """单次探测结果"""
    address: str
    port: int
    latency: Optional[int] = None  # 延迟(ms)，不可达时为None
    unreachable: bool = False
    error: Optional[str] = None
    attempts: int = 1
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now()

    def is_successful(self) -> bool:
        """是否探测成功"""
        return not self.unreachable and self.latency is not None


@dataclass
class BatchProbeResult:
    """一轮探测的汇总结果"""
    results: Dict[str, ProbeResult] = field(default_factory=dict)
    total: int = 0
    reachable: int = 0
    unreachable: int = 0
    duration: float = 0.0

    def update_statistics(self):
        """更新统计信息"""
        self.total = len(self.results)
        self.reachable = len([r for r in self.results.values() if r.is_successful()])
        self.unreachable = self.total - self.reachable


async def probe(address: str, port: int, timeout: float) -> ProbeResult:
    """
    测量到 address:port 的TCP连接延迟

    Args:
        address: 目标地址
        port: 目标端口
        timeout: 超时时间（秒）

    Returns:
        ProbeResult，延迟被限制在 [1, timeout_ms] 范围内
    """
    timeout_ms = max(1, int(timeout * 1000))
    start_time = time.monotonic()
    try:
        future = asyncio.open_connection(address, port)
        reader, writer = await asyncio.wait_for(future, timeout=timeout)
    except asyncio.TimeoutError:
        return ProbeResult(address=address, port=port, unreachable=True,
                           error=f"Connection timeout after {timeout}s")
    except (OSError, ValueError) as e:
        return ProbeResult(address=address, port=port, unreachable=True,
                           error=f"Connection error: {e}")

    elapsed_ms = int((time.monotonic() - start_time) * 1000)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    latency = max(1, min(elapsed_ms, timeout_ms))
    return ProbeResult(address=address, port=port, latency=latency)


class PingProbe:
    """并发延迟探测器"""

    def __init__(self, config: Optional[ProbeConfig] = None,
                 probe_func: Optional[Callable] = None):
        """
        初始化探测器

        Args:
            config: 探测配置
            probe_func: 单次探测函数（默认TCP连接探测）
        """
        self.config = config or ProbeConfig()
        self.logger = logging.getLogger(__name__)
        self._probe_func = probe_func or probe

        # 统计信息
        self._total_probes_run = 0
        self._total_successful = 0
        self._total_failed = 0

    async def probe_one(self, address: str, port: int) -> ProbeResult:
        """探测单个目标（含重试）"""
        result = ProbeResult(address=address, port=port, unreachable=True)
        for attempt in range(self.config.retry_count + 1):
            result = await self._probe_func(address, port, self.config.timeout)
            result.attempts = attempt + 1
            if result.is_successful():
                break
            # 如果不是最后一次尝试，等待重试延迟
            if attempt < self.config.retry_count:
                await asyncio.sleep(self.config.retry_delay)
        return result

    async def probe_many(
        self,
        targets: List[Tuple[str, str, int]],
        result_callback: Optional[Callable[[str, ProbeResult], None]] = None
    ) -> BatchProbeResult:
        """
        并发探测多个目标，全部完成后返回

        Args:
            targets: (key, address, port) 列表
            result_callback: 单个结果回调函数

        Returns:
            BatchProbeResult，以 key 索引
        """
        batch = BatchProbeResult()
        start_time = time.monotonic()
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent))

        async def probe_single(key: str, address: str, port: int) -> ProbeResult:
            async with semaphore:
                result = await self.probe_one(address, port)
            if result_callback:
                try:
                    result_callback(key, result)
                except Exception as e:
                    self.logger.error(f"Error in probe result callback: {e}")
            return result

        tasks = [probe_single(key, address, port) for key, address, port in targets]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for (key, address, port), result in zip(targets, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                handle_error(
                    category=ErrorCategory.LATENCY_TEST,
                    code="latency_test_probe_error",
                    message=f"Probe failed unexpectedly for {address}:{port}",
                    details=str(result),
                    context={'key': key}
                )
                result = ProbeResult(address=address, port=port, unreachable=True, error=str(result))
            batch.results[key] = result

        batch.duration = time.monotonic() - start_time
        batch.update_statistics()

        self._total_probes_run += batch.total
        self._total_successful += batch.reachable
        self._total_failed += batch.unreachable
        self.logger.info(f"Probe sweep finished: {batch.reachable}/{batch.total} reachable "
                         f"in {batch.duration:.2f}s")
        return batch

    def get_statistics(self) -> Dict[str, float]:
        """获取探测统计信息"""
        return {
            'total_probes_run': self._total_probes_run,
            'total_successful': self._total_successful,
            'total_failed': self._total_failed,
            'success_rate': (
                self._total_successful / self._total_probes_run * 100
                if self._total_probes_run > 0 else 0
            ),
        }
