"""
隧道引擎 - 引擎接口与基于 Xray 进程的实现
"""
import json
import logging
import os
import subprocess
import threading
import time
from collections import deque
from abc import ABC, abstractmethod
from enum import Enum
from typing import IO, List, Optional

import psutil

from .config_assembler import CaptureInterface, TunnelConfig
from .errors import TunnelStartError


class ServiceStatus(Enum):
    """引擎状态枚举"""
    STOPPED = "stopped"
    RUNNING = "running"
    STARTING = "starting"
    ERROR = "error"


class TunnelEngine(ABC):
    """隧道引擎接口"""

    @abstractmethod
    def start(self, config: TunnelConfig, capture: Optional[CaptureInterface] = None) -> None:
        """
        使用给定配置启动隧道（如已运行则替换）

        Raises:
            TunnelStartError: 引擎拒绝配置或启动失败
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """停止隧道"""
        pass

    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    def version(self) -> str:
        pass


STDERR_TAIL_LINES = 50


class XrayProcessEngine(TunnelEngine):
    """Xray 进程管理器"""

    def __init__(self, xray_path: str = "xray", config_path: str = "config/tunnel.json",
                 startup_wait: float = 0.5):
        """
        初始化引擎

        Args:
            xray_path: xray 可执行文件路径
            config_path: 运行时配置文件路径
            startup_wait: 启动后检查进程存活前的等待时间（秒）
        """
        self.xray_path = xray_path
        self.config_path = config_path
        self.startup_wait = startup_wait
        self._process: Optional[subprocess.Popen] = None
        self._status = ServiceStatus.STOPPED
        self._error_message = ""
        self._capture: Optional[CaptureInterface] = None
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self.logger = logging.getLogger(__name__)

    @property
    def status(self) -> ServiceStatus:
        """获取引擎状态"""
        self._update_status()
        return self._status

    @property
    def error_message(self) -> str:
        return self._error_message

    def _update_status(self) -> None:
        """更新引擎状态"""
        if self._status == ServiceStatus.ERROR:
            return

        if self._process is None:
            self._status = ServiceStatus.STOPPED
        elif self._process.poll() is None and self._is_pid_alive(self._process.pid):
            self._status = ServiceStatus.RUNNING
        else:
            self._status = ServiceStatus.STOPPED
            self._process = None

    @staticmethod
    def _is_pid_alive(pid: int) -> bool:
        """通过 psutil 确认进程确实存活（排除僵尸进程）"""
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def is_running(self) -> bool:
        return self.status == ServiceStatus.RUNNING

    def write_config(self, config: TunnelConfig) -> str:
        """写入运行时配置文件，返回路径"""
        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.config_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.config_path)
        return self.config_path

    def start(self, config: TunnelConfig, capture: Optional[CaptureInterface] = None) -> None:
        """
        启动 Xray 进程

        Raises:
            TunnelStartError: 可执行文件不存在、配置写入失败或进程立即退出
        """
        if self._status == ServiceStatus.ERROR:
            self._status = ServiceStatus.STOPPED
            self._error_message = ""

        if self._process is not None:
            self.stop()

        try:
            self.write_config(config)
        except OSError as e:
            self._fail(f"Cannot write config {self.config_path}: {e}")

        env = os.environ.copy()
        if config.asset_dir:
            env["XRAY_LOCATION_ASSET"] = config.asset_dir

        self.kill_stale_processes()
        self._status = ServiceStatus.STARTING
        self._capture = capture

        try:
            self._process = subprocess.Popen(
                [self.xray_path, "run", "-c", self.config_path],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            self._process = None
            self._fail(f"Cannot execute {self.xray_path}: {e}")

        # 等待一小段时间检查是否启动成功
        time.sleep(self.startup_wait)

        if self._process.poll() is not None:
            stderr = self._process.stderr.read().decode('utf-8', errors='ignore') if self._process.stderr else ""
            self._process = None
            self._fail(stderr.strip() or "Xray exited during startup")

        self._status = ServiceStatus.RUNNING
        self._error_message = ""
        self._start_stderr_reader(self._process)
        self.logger.info(f"Xray started (pid={self._process.pid}) for server {config.server_id}")

    def _start_stderr_reader(self, process: subprocess.Popen) -> None:
        """后台持续读取 stderr，避免管道写满阻塞 Xray"""
        if process.stderr is None:
            return
        self._stderr_tail.clear()
        reader = threading.Thread(target=self._drain_stderr, args=(process.stderr,),
                                  name="xray-stderr", daemon=True)
        reader.start()

    def _drain_stderr(self, stream: IO[bytes]) -> None:
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="ignore").rstrip()
                if line:
                    self._stderr_tail.append(line)
                    self.logger.debug(f"xray: {line}")
        except (OSError, ValueError) as e:
            self.logger.debug(f"Stopped reading xray stderr: {e}")

    def recent_output(self) -> List[str]:
        """最近的 Xray stderr 输出"""
        return list(self._stderr_tail)

    def _fail(self, message: str) -> None:
        self._error_message = message
        self._status = ServiceStatus.ERROR
        self.logger.error(f"Xray start failed: {message}")
        raise TunnelStartError(message)

    def stop(self) -> None:
        """停止 Xray 进程"""
        process = self._process
        self._process = None
        if process is not None and process.poll() is None:
            try:
                process.terminate()
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                # 强制杀死
                process.kill()
                process.wait(timeout=5)
            self.logger.info("Xray stopped")
        self._status = ServiceStatus.STOPPED
        self._capture = None

    def find_stale_processes(self) -> List[psutil.Process]:
        """查找使用同一配置文件的遗留 xray 进程"""
        stale = []
        config_path = os.path.abspath(self.config_path)
        own_pid = self._process.pid if self._process else None
        for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
            try:
                name = (proc.info.get('name') or '').lower()
                cmdline = proc.info.get('cmdline') or []
                if 'xray' not in name or proc.info['pid'] == own_pid:
                    continue
                if any(os.path.abspath(arg) == config_path for arg in cmdline[1:]):
                    stale.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return stale

    def kill_stale_processes(self) -> int:
        """结束遗留的 xray 进程，返回结束的数量"""
        killed = 0
        for proc in self.find_stale_processes():
            try:
                proc.terminate()
                proc.wait(timeout=3)
                killed += 1
            except psutil.TimeoutExpired:
                proc.kill()
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if killed:
            self.logger.warning(f"Terminated {killed} stale xray process(es)")
        return killed

    def version(self) -> str:
        """获取 Xray 版本号"""
        try:
            result = subprocess.run(
                [self.xray_path, "version"],
                capture_output=True, text=True, timeout=5
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"Cannot query xray version: {e}")
            return "unknown"
        first_line = (result.stdout or "").strip().splitlines()
        if not first_line:
            return "unknown"
        parts = first_line[0].split()
        return parts[1] if len(parts) > 1 else parts[0]
