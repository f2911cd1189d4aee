"""
日志配置

通过环境变量控制日志级别：
- LOG_LEVEL: DEBUG / INFO / WARNING / ERROR / CRITICAL
- DEBUG: 设置为 "1" 或 "true" 时使用 DEBUG 级别
"""
import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_logging_configured = False


def parse_level(value: Optional[str], default: int = logging.INFO) -> int:
    """把级别名称转换为 logging 常量"""
    if not value:
        return default
    return _LEVELS.get(value.upper().strip(), default)


def get_log_level() -> int:
    """
    从环境变量获取日志级别

    优先使用 LOG_LEVEL，其次是 DEBUG 标志。
    """
    level_str = os.environ.get("LOG_LEVEL", "").strip()
    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        level_str = "DEBUG" if debug_flag in ("1", "true", "yes", "on") else DEFAULT_LOG_LEVEL
    return parse_level(level_str)


def setup_logging(level: Optional[int] = None, detailed: bool = False,
                  force: bool = False) -> logging.Logger:
    """
    配置全局日志（只配置一次，除非 force）

    Args:
        level: 日志级别，None 表示从环境变量获取
        detailed: 是否包含文件名和行号
        force: 是否强制重新配置

    Returns:
        xray_tunnel 包的 logger
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger("xray_tunnel")

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if detailed else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    # aiohttp 的日志较多
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))

    _logging_configured = True
    logger = logging.getLogger("xray_tunnel")
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger
