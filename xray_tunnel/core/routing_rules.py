"""
路由规则集管理 - 获取、校验并原子替换路由规则文件

规则集由 manifest.json 和若干 .dat 文件组成。新规则集先写入暂存目录，
校验通过后通过原子替换指针文件生效；任何一步失败都保留上一版本。
"""
import asyncio
import hashlib
import json
import logging
import os
import shutil
import threading
import time
import uuid as uuid_lib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp

from .errors import NetworkError, ParseError, ValidationError

DEFAULT_BASE_URL = "https://raw.githubusercontent.com/Chocolate4U/Iran-v2ray-rules/master/"
MANIFEST_FILE = "manifest.json"
DEFAULT_ROUTING_FILES = (
    "geoip-iran.dat",
    "geosite-iran.dat",
    "geoip.dat",
    "geosite.dat",
    "iran.dat",
    "geoip-lite.dat",
    "geosite-lite.dat",
)
POINTER_FILE = "current.json"


@dataclass
class RoutingRuleset:
    """一个已校验的路由规则集版本"""
    version: str
    update_time: int
    directory: str
    files: List[str] = field(default_factory=list)
    bypass_domains: List[str] = field(default_factory=list)
    block_domains: List[str] = field(default_factory=list)
    bypass_ips: List[str] = field(default_factory=list)
    block_ips: List[str] = field(default_factory=list)
    installed_at: Optional[float] = None

    def file_path(self, name: str) -> str:
        return os.path.join(self.directory, name)

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "update_time": self.update_time,
            "files": list(self.files),
            "bypass_domains": list(self.bypass_domains),
            "block_domains": list(self.block_domains),
            "bypass_ips": list(self.bypass_ips),
            "block_ips": list(self.block_ips),
            "installed_at": self.installed_at,
        }


@dataclass
class RoutingManifest:
    """远程 manifest.json 内容"""
    version: str
    update_time: int
    checksums: Dict[str, str] = field(default_factory=dict)
    rules: Dict[str, List[str]] = field(default_factory=dict)
    raw: bytes = b""


def parse_manifest(content: bytes) -> RoutingManifest:
    """
    解析 manifest.json

    Args:
        content: 原始字节

    Returns:
        RoutingManifest

    Raises:
        ParseError: 格式错误或缺少 version / update_time
    """
    try:
        data = json.loads(content.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"Invalid routing manifest: {e}", MANIFEST_FILE)
    if not isinstance(data, dict):
        raise ParseError("Routing manifest is not an object", MANIFEST_FILE)

    version = str(data.get("version", "")).strip()
    try:
        update_time = int(data.get("update_time", 0))
    except (TypeError, ValueError):
        update_time = 0
    if not version or update_time <= 0:
        raise ParseError("Routing manifest missing version or update_time", MANIFEST_FILE)

    checksums = data.get("checksums") or data.get("sha256") or {}
    if not isinstance(checksums, dict):
        raise ParseError("Routing manifest checksums must be an object", MANIFEST_FILE)

    rules = data.get("rules") or {}
    if not isinstance(rules, dict):
        raise ParseError("Routing manifest rules must be an object", MANIFEST_FILE)
    clean_rules = {}
    for key in ("bypass_domains", "block_domains", "bypass_ips", "block_ips"):
        value = rules.get(key, [])
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ParseError(f"Routing manifest rule list {key} is invalid", MANIFEST_FILE)
        clean_rules[key] = value

    return RoutingManifest(
        version=version,
        update_time=update_time,
        checksums={str(k): str(v).lower() for k, v in checksums.items()},
        rules=clean_rules,
        raw=content,
    )


def validate_files(manifest: RoutingManifest, files: Dict[str, bytes],
                   required: List[str]) -> None:
    """
    校验下载的规则文件

    Raises:
        ValidationError: 缺少文件、文件为空或校验和不匹配
    """
    for name in required:
        content = files.get(name)
        if not content:
            raise ValidationError(name, f"Routing file {name} is missing or empty")
        expected = manifest.checksums.get(name)
        if expected and hashlib.sha256(content).hexdigest() != expected:
            raise ValidationError(name, f"Checksum mismatch for routing file {name}")


def default_rules(files: List[str]) -> Dict[str, List[str]]:
    """manifest 未声明规则时，根据已有的伊朗规则文件生成直连规则"""
    rules: Dict[str, List[str]] = {
        "bypass_domains": [], "block_domains": [], "bypass_ips": [], "block_ips": []
    }
    if "geosite-iran.dat" in files:
        rules["bypass_domains"].append("ext:geosite-iran.dat:ir")
        rules["block_domains"].append("ext:geosite-iran.dat:category-ads-all")
    if "geoip-iran.dat" in files:
        rules["bypass_ips"].append("ext:geoip-iran.dat:ir")
    return rules


class RoutingRuleStore:
    """
    本地路由规则集存储

    目录结构:
        <directory>/versions/<update_time>-<id>/   每个版本的文件
        <directory>/current.json                   指向当前版本（原子替换）
    """

    def __init__(self, directory: str, keep_versions: int = 2):
        self.directory = directory
        self.keep_versions = max(1, keep_versions)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._current: Optional[RoutingRuleset] = None

    @property
    def current(self) -> Optional[RoutingRuleset]:
        with self._lock:
            return self._current

    @property
    def versions_dir(self) -> str:
        return os.path.join(self.directory, "versions")

    def load(self) -> Optional[RoutingRuleset]:
        """
        从磁盘加载当前规则集

        Returns:
            当前规则集，不存在或已损坏返回None
        """
        pointer = os.path.join(self.directory, POINTER_FILE)
        if not os.path.exists(pointer):
            return None
        try:
            with open(pointer, 'r', encoding='utf-8') as f:
                data = json.load(f)
            ruleset = RoutingRuleset(
                version=data["version"],
                update_time=int(data["update_time"]),
                directory=os.path.join(self.versions_dir, data["dirname"]),
                files=list(data.get("files", [])),
                bypass_domains=list(data.get("bypass_domains", [])),
                block_domains=list(data.get("block_domains", [])),
                bypass_ips=list(data.get("bypass_ips", [])),
                block_ips=list(data.get("block_ips", [])),
                installed_at=data.get("installed_at"),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.error(f"Failed to load routing ruleset pointer: {e}")
            return None
        if not os.path.isdir(ruleset.directory):
            self.logger.error(f"Routing ruleset directory missing: {ruleset.directory}")
            return None
        with self._lock:
            self._current = ruleset
        return ruleset

    def install(self, manifest: RoutingManifest, files: Dict[str, bytes]) -> RoutingRuleset:
        """
        安装新规则集（写入暂存目录后原子切换）

        Args:
            manifest: 已解析的 manifest
            files: 文件名 -> 内容（调用方已校验）

        Returns:
            新的当前规则集

        Raises:
            OSError: 写入失败（此时当前规则集保持不变）
        """
        os.makedirs(self.versions_dir, exist_ok=True)
        dirname = f"{manifest.update_time}-{uuid_lib.uuid4().hex[:8]}"
        staging = os.path.join(self.directory, f".staging-{dirname}")
        final_dir = os.path.join(self.versions_dir, dirname)

        try:
            os.makedirs(staging)
            for name, content in files.items():
                with open(os.path.join(staging, name), 'wb') as f:
                    f.write(content)
            with open(os.path.join(staging, MANIFEST_FILE), 'wb') as f:
                f.write(manifest.raw)
            os.replace(staging, final_dir)
        except OSError:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        rules = manifest.rules if any(manifest.rules.values()) else default_rules(list(files))
        ruleset = RoutingRuleset(
            version=manifest.version,
            update_time=manifest.update_time,
            directory=final_dir,
            files=sorted(files),
            bypass_domains=rules.get("bypass_domains", []),
            block_domains=rules.get("block_domains", []),
            bypass_ips=rules.get("bypass_ips", []),
            block_ips=rules.get("block_ips", []),
            installed_at=time.time(),
        )

        pointer_data = ruleset.to_dict()
        pointer_data["dirname"] = dirname
        pointer = os.path.join(self.directory, POINTER_FILE)
        tmp_pointer = pointer + ".tmp"
        try:
            with open(tmp_pointer, 'w', encoding='utf-8') as f:
                json.dump(pointer_data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_pointer, pointer)
        except OSError:
            shutil.rmtree(final_dir, ignore_errors=True)
            raise

        with self._lock:
            self._current = ruleset
        self.logger.info(f"Routing rules updated to version {ruleset.version} "
                         f"(update_time={ruleset.update_time})")
        self._prune(keep=dirname)
        return ruleset

    def _prune(self, keep: str) -> None:
        """删除旧版本，保留最近的若干个"""
        try:
            entries = sorted(os.listdir(self.versions_dir), reverse=True)
        except OSError:
            return
        old = [e for e in entries if e != keep][self.keep_versions - 1:]
        for entry in old:
            shutil.rmtree(os.path.join(self.versions_dir, entry), ignore_errors=True)


class RoutingRuleFetcher(ABC):
    """路由规则文件获取接口"""

    @abstractmethod
    async def fetch(self, name: str) -> bytes:
        """
        获取单个文件

        Raises:
            NetworkError: 获取失败
        """
        pass


class AiohttpRoutingRuleFetcher(RoutingRuleFetcher):
    """通过 aiohttp 从固定上游地址获取规则文件"""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 30.0,
                 user_agent: str = "MarFaNet-Co-Client"):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout
        self.user_agent = user_agent

    async def fetch(self, name: str) -> bytes:
        url = self.base_url + name
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers={'User-Agent': self.user_agent}) as response:
                    if response.status != 200:
                        raise NetworkError(f"HTTP {response.status} fetching {url}")
                    return await response.read()
        except asyncio.TimeoutError:
            raise NetworkError(f"Timed out fetching {url}")
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error fetching {url}: {e}")
