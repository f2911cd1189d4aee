"""
订阅获取与解析 - 获取订阅内容并逐条解析为服务器记录
"""
import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import aiohttp

from .errors import NetworkError, ParseError, ValidationError
from .group import DEFAULT_USER_AGENT
from .protocol_handler import ProtocolRegistry
from .server import ServerRecord

DEFAULT_TIMEOUT = 30.0

logger = logging.getLogger(__name__)


class SubscriptionFetcher(ABC):
    """订阅获取接口"""

    @abstractmethod
    async def fetch(self, url: str, user_agent: str = DEFAULT_USER_AGENT,
                    auth: Optional[Tuple[str, str]] = None,
                    timeout: float = DEFAULT_TIMEOUT) -> str:
        """
        获取订阅原始内容

        Raises:
            NetworkError: 获取失败
        """
        pass


class AiohttpSubscriptionFetcher(SubscriptionFetcher):
    """基于 aiohttp 的订阅获取器"""

    async def fetch(self, url: str, user_agent: str = DEFAULT_USER_AGENT,
                    auth: Optional[Tuple[str, str]] = None,
                    timeout: float = DEFAULT_TIMEOUT) -> str:
        """
        异步获取订阅内容

        Args:
            url: 订阅链接
            user_agent: User-Agent 头
            auth: (用户名, 密码) 基本认证
            timeout: 请求超时时间（秒）

        Returns:
            原始订阅内容字符串

        Raises:
            NetworkError: 获取失败时抛出
        """
        if not url or not url.startswith(('http://', 'https://')):
            raise NetworkError(f"Invalid subscription url: {url!r}")

        headers = {'User-Agent': user_agent or DEFAULT_USER_AGENT}
        basic_auth = aiohttp.BasicAuth(auth[0], auth[1] or "") if auth and auth[0] else None

        try:
            client_timeout = aiohttp.ClientTimeout(total=timeout)
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url, headers=headers, auth=basic_auth) as response:
                    if response.status != 200:
                        raise NetworkError(f"HTTP error: {response.status}")
                    return await response.text()
        except asyncio.TimeoutError:
            raise NetworkError(f"Subscription request timed out after {timeout}s")
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error: {e}")


def decode_content(content: str) -> List[str]:
    """
    解码订阅内容（支持 Base64 封装或按行的纯文本）

    Args:
        content: 原始内容

    Returns:
        非空条目列表
    """
    content = content.strip()
    if not content:
        return []

    # 纯文本链接列表
    if "://" in content:
        return [line.strip() for line in content.splitlines() if line.strip()]

    # 尝试 Base64 解码
    compact = "".join(content.split())
    missing_padding = len(compact) % 4
    if missing_padding:
        compact += '=' * (4 - missing_padding)
    try:
        decoded = base64.b64decode(compact.replace('-', '+').replace('_', '/')).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError):
        return [line.strip() for line in content.splitlines() if line.strip()]
    return [line.strip() for line in decoded.splitlines() if line.strip()]


@dataclass
class ParsedSubscription:
    """订阅解析结果"""
    records: List[ServerRecord] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.errors)


def parse_entries(entries: List[str], registry: ProtocolRegistry) -> ParsedSubscription:
    """
    逐条解析订阅条目，单条失败不影响其他条目

    Args:
        entries: 条目列表
        registry: 协议注册表

    Returns:
        ParsedSubscription
    """
    result = ParsedSubscription()
    for entry in entries:
        if entry.startswith("#"):
            continue
        try:
            record = registry.parse_uri(entry)
        except ParseError as e:
            logger.debug(f"Skipping subscription entry: {e}")
            result.errors.append(e)
            continue
        except ValidationError as e:
            result.errors.append(ParseError(str(e), entry[:64]))
            continue
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Malformed subscription entry {entry[:32]}: {type(e).__name__}: {e}")
            result.errors.append(ParseError(f"Malformed entry: {e}", entry[:64]))
            continue
        result.records.append(record)
    return result


def encode_to_base64(links: List[str]) -> str:
    """
    将链接列表编码为 Base64

    Args:
        links: 链接列表

    Returns:
        Base64 编码的字符串
    """
    content = '\n'.join(links)
    return base64.b64encode(content.encode('utf-8')).decode('utf-8')
