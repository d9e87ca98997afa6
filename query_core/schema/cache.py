"""编译后 schema 的有界缓存。

容量策略是整体清空：写入新键时如果已满，先清空整个缓存再插入。
因此容量为 N 时，写入第 N+1 个不同 schema 后缓存里只剩 1 条。
"""

import threading
from typing import Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class SchemaCache(Generic[T]):
    """指纹 -> 编译结果 的映射，由单个 SchemaValidator 独占持有。

    读操作不加锁（dict 单次查找是原子的，且清空时是整体替换引用），
    写操作在锁内完成，保证读者看到的始终是一致的映射。
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"cache capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._entries: Dict[str, T] = {}
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, fingerprint: str) -> Tuple[Optional[T], bool]:
        entries = self._entries
        if fingerprint in entries:
            return entries[fingerprint], True
        return None, False

    def put(self, fingerprint: str, schema: T) -> None:
        with self._lock:
            # 并发首次编译同一个 schema 时，后到者只覆盖自己的条目，不触发清空
            if fingerprint not in self._entries and len(self._entries) >= self._capacity:
                self._entries = {}
            self._entries[fingerprint] = schema

    def size(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries = {}
