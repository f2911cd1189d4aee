"""
异常类型定义
"""
from typing import Optional


class TunnelManagerError(Exception):
    """所有隧道管理错误的基类"""
    pass


class ValidationError(TunnelManagerError):
    """服务器记录缺少必要字段或字段取值无效"""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Missing or invalid field: {field}")


class ParseError(TunnelManagerError):
    """单条分享链接或订阅条目格式错误"""

    def __init__(self, message: str, entry: str = ""):
        self.entry = entry
        super().__init__(message)


class NetworkError(TunnelManagerError):
    """订阅/规则获取或探测过程中的网络错误"""
    pass


class TunnelStartError(TunnelManagerError):
    """隧道引擎拒绝配置或启动失败"""
    pass


class ConnectionFailedError(TunnelStartError):
    """切换失败且回滚也失败，隧道已断开"""
    pass


class ConflictError(TunnelManagerError):
    """违反唯一性约束（例如重复的分组名称）"""
    pass
