"""
服务器存储 - 服务器记录和分组的持久化接口及实现

存储以显式句柄的形式传给各组件，不使用全局实例。
读取接口返回副本，调用方修改后需通过 update_* 写回。
"""
import copy
import json
import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .error_handler import ErrorCategory, handle_error
from .errors import ConflictError, ValidationError
from .group import ServerGroup
from .server import ProbeState, ServerRecord

STORE_FORMAT_VERSION = 1


class ServerStore(ABC):
    """存储接口"""

    # 服务器记录
    @abstractmethod
    def add_server(self, record: ServerRecord) -> ServerRecord:
        pass

    @abstractmethod
    def get_server(self, server_id: str) -> Optional[ServerRecord]:
        pass

    @abstractmethod
    def update_server(self, record: ServerRecord) -> None:
        pass

    @abstractmethod
    def delete_server(self, server_id: str) -> bool:
        pass

    @abstractmethod
    def list_servers(self) -> List[ServerRecord]:
        pass

    @abstractmethod
    def servers_in_group(self, group_id: str) -> List[ServerRecord]:
        pass

    @abstractmethod
    def update_probe_states(self, states: Dict[str, ProbeState]) -> int:
        """批量写入探测状态，返回更新的记录数"""
        pass

    @abstractmethod
    def replace_group_records(self, group_id: str, records: List[ServerRecord]) -> None:
        """原子地用给定记录替换分组内的全部记录"""
        pass

    # 分组
    @abstractmethod
    def add_group(self, group: ServerGroup) -> ServerGroup:
        pass

    @abstractmethod
    def get_group(self, group_id: str) -> Optional[ServerGroup]:
        pass

    @abstractmethod
    def update_group(self, group: ServerGroup) -> None:
        pass

    @abstractmethod
    def delete_group(self, group_id: str) -> bool:
        """删除分组及其全部记录"""
        pass

    @abstractmethod
    def list_groups(self) -> List[ServerGroup]:
        pass

    def servers_by_ping(self) -> List[ServerRecord]:
        """
        按平滑延迟排序的服务器列表

        可用的记录按延迟升序在前，未探测的其次，不可达的最后。
        """
        def sort_key(record: ServerRecord):
            if record.probe.is_usable:
                return (0, record.probe.ping, record.name)
            if not record.probe.is_probed and not record.probe.unreachable:
                return (1, 0, record.name)
            return (2, 0, record.name)
        return sorted(self.list_servers(), key=sort_key)

    def auto_update_groups(self) -> List[ServerGroup]:
        """启用了自动更新的订阅分组"""
        return [g for g in self.list_groups() if g.is_subscription and g.auto_update]

    def favorite_servers(self) -> List[ServerRecord]:
        return [r for r in self.list_servers() if r.favorite]


class MemoryStore(ServerStore):
    """内存存储"""

    def __init__(self):
        self._lock = threading.RLock()
        self._servers: Dict[str, ServerRecord] = {}
        self._groups: Dict[str, ServerGroup] = {}
        self.logger = logging.getLogger(__name__)

    def _changed(self) -> None:
        """数据变更后的钩子（持久化实现覆盖）"""
        pass

    def _check_group_ref(self, record: ServerRecord) -> None:
        if record.group_id is not None and record.group_id not in self._groups:
            raise ValidationError("group_id", f"Unknown group: {record.group_id}")

    def add_server(self, record: ServerRecord) -> ServerRecord:
        with self._lock:
            if record.id in self._servers:
                raise ConflictError(f"Server id already exists: {record.id}")
            self._check_group_ref(record)
            self._servers[record.id] = copy.deepcopy(record)
            self._refresh_group_count(record.group_id)
            self._changed()
            return copy.deepcopy(record)

    def get_server(self, server_id: str) -> Optional[ServerRecord]:
        with self._lock:
            record = self._servers.get(server_id)
            return copy.deepcopy(record) if record else None

    def update_server(self, record: ServerRecord) -> None:
        with self._lock:
            if record.id not in self._servers:
                raise KeyError(record.id)
            self._check_group_ref(record)
            old_group = self._servers[record.id].group_id
            self._servers[record.id] = copy.deepcopy(record)
            self._refresh_group_count(old_group)
            self._refresh_group_count(record.group_id)
            self._changed()

    def delete_server(self, server_id: str) -> bool:
        with self._lock:
            record = self._servers.pop(server_id, None)
            if record is None:
                return False
            self._refresh_group_count(record.group_id)
            self._changed()
            return True

    def list_servers(self) -> List[ServerRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._servers.values()]

    def servers_in_group(self, group_id: str) -> List[ServerRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._servers.values() if r.group_id == group_id]

    def update_probe_states(self, states: Dict[str, ProbeState]) -> int:
        updated = 0
        with self._lock:
            for server_id, state in states.items():
                record = self._servers.get(server_id)
                # 探测期间被删除的记录直接忽略
                if record is None:
                    continue
                record.probe = copy.deepcopy(state)
                updated += 1
            if updated:
                self._changed()
        return updated

    def replace_group_records(self, group_id: str, records: List[ServerRecord]) -> None:
        with self._lock:
            if group_id not in self._groups:
                raise ValidationError("group_id", f"Unknown group: {group_id}")
            new_servers = {k: v for k, v in self._servers.items() if v.group_id != group_id}
            for record in records:
                if record.group_id != group_id:
                    raise ValidationError("group_id", f"Record {record.id} does not belong to {group_id}")
                if record.id in new_servers:
                    raise ConflictError(f"Server id already exists: {record.id}")
                new_servers[record.id] = copy.deepcopy(record)
            # 全部校验通过后一次性替换
            self._servers = new_servers
            self._refresh_group_count(group_id)
            self._changed()

    def add_group(self, group: ServerGroup) -> ServerGroup:
        with self._lock:
            self._check_group_name(group)
            if group.id in self._groups:
                raise ConflictError(f"Group id already exists: {group.id}")
            self._groups[group.id] = copy.deepcopy(group)
            self._changed()
            return copy.deepcopy(group)

    def _check_group_name(self, group: ServerGroup) -> None:
        name = group.name.strip().lower()
        if not name:
            raise ValidationError("name", "Group name cannot be empty")
        for existing in self._groups.values():
            if existing.id != group.id and existing.name.strip().lower() == name:
                raise ConflictError(f"Group name already exists: {group.name}")

    def get_group(self, group_id: str) -> Optional[ServerGroup]:
        with self._lock:
            group = self._groups.get(group_id)
            return copy.deepcopy(group) if group else None

    def update_group(self, group: ServerGroup) -> None:
        with self._lock:
            if group.id not in self._groups:
                raise KeyError(group.id)
            self._check_group_name(group)
            self._groups[group.id] = copy.deepcopy(group)
            self._refresh_group_count(group.id)
            self._changed()

    def delete_group(self, group_id: str) -> bool:
        with self._lock:
            if self._groups.pop(group_id, None) is None:
                return False
            self._servers = {k: v for k, v in self._servers.items() if v.group_id != group_id}
            self._changed()
            return True

    def list_groups(self) -> List[ServerGroup]:
        with self._lock:
            groups = [copy.deepcopy(g) for g in self._groups.values()]
        return sorted(groups, key=lambda g: (g.display_order, g.name))

    def _refresh_group_count(self, group_id: Optional[str]) -> None:
        if group_id is None or group_id not in self._groups:
            return
        self._groups[group_id].server_count = len(
            [r for r in self._servers.values() if r.group_id == group_id]
        )

    def to_dict(self) -> Dict:
        with self._lock:
            return {
                'version': STORE_FORMAT_VERSION,
                'groups': [g.to_dict() for g in self._groups.values()],
                'servers': [r.to_dict() for r in self._servers.values()],
            }

    def load_dict(self, data: Dict) -> None:
        groups = {}
        servers = {}
        for item in data.get('groups', []):
            group = ServerGroup.from_dict(item)
            groups[group.id] = group
        for item in data.get('servers', []):
            record = ServerRecord.from_dict(item)
            servers[record.id] = record
        with self._lock:
            self._groups = groups
            self._servers = servers


class JsonFileStore(MemoryStore):
    """JSON 文件存储，写入前保留一份 .backup 副本"""

    def __init__(self, path: str = "config/servers.json"):
        super().__init__()
        self.path = Path(path)
        self.backup_path = self.path.with_suffix(self.path.suffix + ".backup")
        self._loading = False
        self.load()

    def load(self) -> bool:
        """
        从文件加载数据，主文件损坏时尝试备份

        Returns:
            是否加载到了数据
        """
        for candidate in (self.path, self.backup_path):
            if not candidate.exists():
                continue
            try:
                with open(candidate, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                self._loading = True
                try:
                    self.load_dict(data)
                finally:
                    self._loading = False
            except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
                handle_error(
                    category=ErrorCategory.STORE,
                    code="store_file_corrupted",
                    details=str(e),
                    context={'path': str(candidate)}
                )
                continue
            if candidate == self.backup_path:
                self.logger.warning("Main store file missing/corrupted, restored from backup")
            return True
        return False

    def _changed(self) -> None:
        if not self._loading:
            self.save()

    def save(self) -> None:
        """原子写入：先写临时文件再替换"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()
        if self.path.exists():
            shutil.copy2(self.path, self.backup_path)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)
