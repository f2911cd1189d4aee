"""
错误处理和报告机制

非致命错误（单条订阅解析失败、探测异常、规则更新失败等）统一记录到这里，
服务状态中会附带最近错误的统计。
"""
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple


class ErrorSeverity(Enum):
    """错误严重程度"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """错误类别"""
    PROTOCOL_PARSING = "protocol_parsing"
    VALIDATION = "validation"
    LATENCY_TEST = "latency_test"
    SUBSCRIPTION = "subscription"
    ROUTING = "routing"
    TUNNEL = "tunnel"
    STORE = "store"
    SCHEDULER = "scheduler"
    UNKNOWN = "unknown"


# 错误代码 -> (严重程度, 默认消息)
ERROR_DEFINITIONS: Dict[str, Tuple[ErrorSeverity, str]] = {
    'protocol_parsing_invalid_link': (ErrorSeverity.WARNING, '无效的分享链接'),
    'protocol_parsing_parseerror': (ErrorSeverity.WARNING, '分享链接解析失败'),
    'validation_validationerror': (ErrorSeverity.ERROR, '服务器配置缺少必要字段'),
    'latency_test_probe_error': (ErrorSeverity.WARNING, '延迟探测异常'),
    'subscription_fetch_failed': (ErrorSeverity.WARNING, '订阅获取失败，稍后将自动重试'),
    'subscription_empty': (ErrorSeverity.WARNING, '订阅中没有有效的服务器'),
    'subscription_stale': (ErrorSeverity.ERROR, '订阅多次更新失败，已标记为过期'),
    'subscription_entry_skipped': (ErrorSeverity.INFO, '已跳过无法解析的订阅条目'),
    'routing_update_failed': (ErrorSeverity.WARNING, '路由规则更新失败，继续使用上一版本'),
    'tunnel_start_failed': (ErrorSeverity.ERROR, '隧道启动失败'),
    'tunnel_connection_failed': (ErrorSeverity.CRITICAL, '切换失败且无法回滚，隧道已断开'),
    'tunnel_stop_failed': (ErrorSeverity.WARNING, '隧道进程停止失败'),
    'store_file_corrupted': (ErrorSeverity.ERROR, '数据文件已损坏'),
    'scheduler_job_failed': (ErrorSeverity.ERROR, '定时任务执行失败'),
}

UNKNOWN_ERROR = (ErrorSeverity.ERROR, "未知错误")

LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class ErrorInfo:
    """一条已记录的错误"""
    category: ErrorCategory
    severity: ErrorSeverity
    code: str
    message: str
    details: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category.value,
            'severity': self.severity.value,
            'code': self.code,
            'message': self.message,
            'details': self.details,
            'context': self.context,
            'timestamp': self.timestamp.isoformat(),
        }


class ErrorHandler:
    """记录非致命错误：写日志、保留最近的记录并通知按类别注册的回调"""

    def __init__(self, max_history: int = 200):
        self.logger = logging.getLogger(__name__)
        self._history: Deque[ErrorInfo] = deque(maxlen=max_history)
        self._callbacks: Dict[ErrorCategory, List[Callable[[ErrorInfo], None]]] = {}

    def register_error_callback(self, category: ErrorCategory,
                                callback: Callable[[ErrorInfo], None]) -> None:
        self._callbacks.setdefault(category, []).append(callback)

    def handle_error(self,
                     category: ErrorCategory,
                     code: str,
                     message: Optional[str] = None,
                     details: Optional[str] = None,
                     context: Optional[Dict[str, Any]] = None,
                     exception: Optional[BaseException] = None) -> ErrorInfo:
        """
        记录一条错误

        Args:
            category: 错误类别
            code: 错误代码，已定义的代码决定严重程度和默认消息
            message: 覆盖默认消息
            details: 详细信息
            context: 相关对象标识，如 group_id
            exception: 触发错误的异常

        Returns:
            错误信息对象
        """
        severity, default_message = ERROR_DEFINITIONS.get(code, UNKNOWN_ERROR)
        if exception is not None:
            exception_text = f"{type(exception).__name__}: {exception}"
            details = f"{details}; {exception_text}" if details else exception_text

        info = ErrorInfo(
            category=category,
            severity=severity,
            code=code,
            message=message or default_message,
            details=details,
            context=context,
        )

        log_message = f"[{category.value}] {code}: {info.message}"
        if details:
            log_message += f" | {details}"
        self.logger.log(LOG_LEVELS[severity], log_message,
                        exc_info=exception if self.logger.isEnabledFor(logging.DEBUG) else None)

        self._history.append(info)
        for callback in self._callbacks.get(category, []):
            try:
                callback(info)
            except Exception as e:
                self.logger.error(f"Error callback for {category.value} failed: {e}")
        return info

    def handle_exception(self,
                         category: ErrorCategory,
                         exception: BaseException,
                         context: Optional[Dict[str, Any]] = None) -> ErrorInfo:
        """以异常类型生成错误代码（如 validation_validationerror）并记录"""
        exception_type = type(exception).__name__
        return self.handle_error(
            category=category,
            code=f"{category.value}_{exception_type.lower()}",
            message=f"{exception_type}: {exception}",
            context=context,
            exception=exception,
        )

    def recent_errors(self, category: Optional[ErrorCategory] = None,
                      limit: Optional[int] = None) -> List[ErrorInfo]:
        """最近的错误（旧的在前）"""
        errors = [e for e in self._history if category is None or e.category == category]
        return errors[-limit:] if limit else errors

    def get_error_statistics(self) -> Dict[str, Any]:
        """按类别统计最近的错误，并附带最后一条"""
        last = self._history[-1] if self._history else None
        return {
            'total_errors': len(self._history),
            'by_category': dict(Counter(e.category.value for e in self._history)),
            'last_error': last.to_dict() if last else None,
        }


# 全局错误处理器实例
global_error_handler = ErrorHandler()


def handle_error(category: ErrorCategory,
                 code: str,
                 message: Optional[str] = None,
                 details: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None,
                 exception: Optional[BaseException] = None) -> ErrorInfo:
    """全局错误处理函数"""
    return global_error_handler.handle_error(category, code, message, details, context, exception)


def handle_exception(category: ErrorCategory,
                     exception: BaseException,
                     context: Optional[Dict[str, Any]] = None) -> ErrorInfo:
    """全局异常处理函数"""
    return global_error_handler.handle_exception(category, exception, context)
