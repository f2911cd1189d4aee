"""
设置管理器 - 用户配置持久化
"""
import json
import logging
import os
from typing import Any, Dict, List

from ..core.routing_rules import DEFAULT_BASE_URL, DEFAULT_ROUTING_FILES


class SettingsManager:
    """用户设置管理器"""

    DEFAULT_SETTINGS = {
        # 自动切换
        "auto_switch_enabled": True,
        "min_ping_threshold_ms": 300,
        # 周期任务间隔（秒）
        "ping_interval": 10 * 60,
        "subscription_check_interval": 30 * 60,
        "routing_update_interval": 24 * 60 * 60,
        # 延迟探测
        "probe_timeout": 5.0,
        "probe_max_concurrent": 20,
        "probe_retry_count": 0,
        # 失败重试
        "backoff_base": 60.0,
        "backoff_cap": 6 * 60 * 60,
        "stale_after_failures": 3,
        "subscription_timeout": 30.0,
        # 路由规则
        "routing_enabled": True,
        "routing_base_url": DEFAULT_BASE_URL,
        "routing_files": list(DEFAULT_ROUTING_FILES),
        "routing_dir": "config/routing",
        "bypass_domains": [],
        "block_domains": [],
        "bypass_ips": [],
        "block_ips": [],
        "fallback_dns": ["8.8.8.8", "1.1.1.1"],
        # 隧道引擎
        "xray_path": "xray",
        "runtime_config_path": "config/tunnel.json",
        "log_level": "warning",
        "capture_protocol": "socks",
        "capture_listen": "127.0.0.1",
        "capture_port": 10808,
        # 存储
        "store_path": "config/servers.json",
        "last_server_id": None,
    }

    def __init__(self, config_path: str = "config/settings.json"):
        """
        初始化设置管理器

        Args:
            config_path: 配置文件路径
        """
        self.config_path = config_path
        self._settings: Dict[str, Any] = {}
        self._loaded = False
        self.logger = logging.getLogger(__name__)

    def _ensure_directory(self) -> None:
        """确保配置目录存在"""
        directory = os.path.dirname(self.config_path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

    def _defaults(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.DEFAULT_SETTINGS))

    def load(self) -> Dict[str, Any]:
        """
        加载设置

        Returns:
            设置字典
        """
        self._settings = self._defaults()
        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    # 合并默认设置和加载的设置
                    self._settings.update(loaded)
                else:
                    self.logger.warning(f"Settings file {self.config_path} is not an object, using defaults")
            except json.JSONDecodeError:
                # 配置文件损坏，使用默认值
                self.logger.warning(f"Settings file {self.config_path} is corrupted, using defaults")
            except OSError as e:
                self.logger.error(f"Failed to read settings: {e}")

        self._loaded = True
        return self._settings.copy()

    def save(self) -> bool:
        """
        保存设置

        Returns:
            是否保存成功
        """
        try:
            self._ensure_directory()
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self._settings, f, indent=2, ensure_ascii=False)
            return True
        except OSError as e:
            self.logger.error(f"Failed to save settings: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取设置项

        Args:
            key: 设置键
            default: 默认值

        Returns:
            设置值
        """
        if not self._loaded:
            self.load()
        return self._settings.get(key, default)

    def set(self, key: str, value: Any, auto_save: bool = True) -> None:
        """
        设置配置项

        Args:
            key: 设置键
            value: 设置值
            auto_save: 是否自动保存
        """
        if not self._loaded:
            self.load()
        self._settings[key] = value
        if auto_save:
            self.save()

    def get_all(self) -> Dict[str, Any]:
        """获取所有设置"""
        if not self._loaded:
            self.load()
        return self._settings.copy()

    def reset_to_defaults(self) -> None:
        """重置为默认设置"""
        self._settings = self._defaults()
        self._loaded = True
        self.save()

    def update(self, settings: Dict[str, Any], auto_save: bool = True) -> None:
        """
        批量更新设置

        Args:
            settings: 设置字典
            auto_save: 是否自动保存
        """
        if not self._loaded:
            self.load()
        self._settings.update(settings)
        if auto_save:
            self.save()

    # 便捷属性访问
    @property
    def auto_switch_enabled(self) -> bool:
        return bool(self.get("auto_switch_enabled", True))

    @auto_switch_enabled.setter
    def auto_switch_enabled(self, value: bool):
        self.set("auto_switch_enabled", bool(value))

    @property
    def min_ping_threshold_ms(self) -> int:
        return int(self.get("min_ping_threshold_ms", 300))

    @min_ping_threshold_ms.setter
    def min_ping_threshold_ms(self, value: int):
        self.set("min_ping_threshold_ms", int(value))

    @property
    def ping_interval(self) -> float:
        return float(self.get("ping_interval", 600))

    @property
    def subscription_check_interval(self) -> float:
        return float(self.get("subscription_check_interval", 1800))

    @property
    def routing_update_interval(self) -> float:
        return float(self.get("routing_update_interval", 86400))

    @property
    def probe_timeout(self) -> float:
        return float(self.get("probe_timeout", 5.0))

    @property
    def probe_max_concurrent(self) -> int:
        return int(self.get("probe_max_concurrent", 20))

    @property
    def routing_files(self) -> List[str]:
        return list(self.get("routing_files", list(DEFAULT_ROUTING_FILES)))

    @property
    def fallback_dns(self) -> List[str]:
        return list(self.get("fallback_dns", ["8.8.8.8", "1.1.1.1"]))

    @property
    def last_server_id(self):
        return self.get("last_server_id")

    @last_server_id.setter
    def last_server_id(self, value):
        self.set("last_server_id", value)
