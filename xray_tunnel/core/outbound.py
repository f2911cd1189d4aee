"""
OutboundConfig - 协议合成结果
"""
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class OutboundConfig:
    """
    隧道引擎的出站配置

    只能由协议合成器生成；修改需先修改服务器记录再重新合成。
    """
    tag: str
    protocol: str
    settings: Dict[str, Any] = field(default_factory=dict)
    stream_settings: Optional[Dict[str, Any]] = None
    mux: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """转换为Xray outbound字典（深拷贝）"""
        outbound: Dict[str, Any] = {
            "tag": self.tag,
            "protocol": self.protocol,
            "settings": copy.deepcopy(self.settings),
        }
        if self.stream_settings:
            outbound["streamSettings"] = copy.deepcopy(self.stream_settings)
        if self.mux:
            outbound["mux"] = copy.deepcopy(self.mux)
        return outbound
