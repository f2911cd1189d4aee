"""
ServerGroup 数据模型 - 服务器分组（手动分组或订阅分组）
"""
import time
import uuid as uuid_lib
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

DEFAULT_UPDATE_INTERVAL = 24 * 60 * 60  # 秒
DEFAULT_USER_AGENT = "MarFaNet-Co-Client"


@dataclass
class ServerGroup:
    """服务器分组"""
    name: str
    subscription_url: Optional[str] = None
    auto_update: bool = False
    update_interval: int = DEFAULT_UPDATE_INTERVAL
    user_agent: str = DEFAULT_USER_AGENT
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None
    id: str = field(default_factory=lambda: uuid_lib.uuid4().hex)
    display_order: int = 0

    # 更新状态
    last_updated: Optional[float] = None
    last_success_at: Optional[float] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    stale: bool = False
    next_attempt_at: Optional[float] = None
    server_count: int = 0

    @property
    def is_subscription(self) -> bool:
        return bool(self.subscription_url)

    def is_due(self, now: Optional[float] = None) -> bool:
        """
        判断分组是否需要更新

        Args:
            now: 当前时间戳

        Returns:
            已启用自动更新、间隔已到且不在退避窗口内时返回True
        """
        if not (self.is_subscription and self.auto_update):
            return False
        now = time.time() if now is None else now
        if self.next_attempt_at is not None and now < self.next_attempt_at:
            return False
        if self.consecutive_failures > 0 and self.next_attempt_at is not None:
            # 退避窗口已过，允许重试
            return True
        if self.last_updated is None:
            return True
        return now - self.last_updated >= self.update_interval

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerGroup":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)
