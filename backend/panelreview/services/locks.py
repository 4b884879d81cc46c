"""按图片加锁 - 保证同一图片的迭代序号分配串行执行"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict


class ImageLockRegistry:
    """管理每张图片的 asyncio.Lock，不同图片之间互不阻塞"""

    def __init__(self) -> None:
        # image_id -> lock
        self._locks: Dict[int, asyncio.Lock] = {}
        # image_id -> 正在等待或持有锁的协程数
        self._waiters: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, image_id: int) -> AsyncIterator[None]:
        """持有指定图片的锁，最后一个使用者退出时回收锁对象"""
        lock = self._locks.setdefault(image_id, asyncio.Lock())
        self._waiters[image_id] = self._waiters.get(image_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[image_id] - 1
            if remaining:
                self._waiters[image_id] = remaining
            else:
                self._waiters.pop(image_id, None)
                self._locks.pop(image_id, None)

    def is_locked(self, image_id: int) -> bool:
        lock = self._locks.get(image_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
