"""
解析结果缓存
按内容哈希缓存单个角色 / 场景 / 分镜的解析结果，避免对相同输入重复调用模型。
容量满时淘汰最久未使用的条目，超过 TTL 的条目在读取时失效。
"""
import copy
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

logger = logging.getLogger(__name__)

class ParseCache:

    def __init__(self, max_size: int = 50, ttl_ms: int = 60 * 60 * 1000):
        if max_size <= 0:
            raise ValueError(f"max_size must be > 0, got {max_size}")
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()

    @classmethod
    def from_config(cls, full_config: dict) -> Optional["ParseCache"]:
        """根据 'cache' 段创建，未启用时返回 None"""
        section = full_config.get("cache") or {}
        if not section.get("enabled", True):
            return None
        return cls(
            max_size=int(section.get("max_size", 50)),
            ttl_ms=int(section.get("ttl", 60 * 60 * 1000)),
        )

    @staticmethod
    def make_key(*parts: str) -> str:
        payload = "\x1f".join(parts)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[Any]:
        """返回缓存值的副本；未命中或已过期时返回 None"""
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if (time.monotonic() - stored_at) * 1000 > self.ttl_ms:
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return copy.deepcopy(value)

    def set(self, key: str, value: Any):
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (time.monotonic(), copy.deepcopy(value))
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"解析缓存已满，淘汰条目 {evicted[:8]}")

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
