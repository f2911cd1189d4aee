"""
工具模块
"""
from .settings import SettingsManager
from .log_config import setup_logging

__all__ = ['SettingsManager', 'setup_logging']
