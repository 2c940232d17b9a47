from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Iterator


class KeyedLocks:
    """
    进程内按 key 加锁（例如每个稿件一把锁）。

    中文注释:
    - 只保证单进程内串行；跨进程的正确性依赖仓储层的条件更新（status 作为 expected_state）。
    - 锁对象按需创建，不回收（key 数量与稿件数同阶，可接受）。
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, Lock] = {}

    def _get(self, key: str) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._get(str(key))
        with lock:
            yield


# Shared by assignment selection and review submission: both mutate a manuscript's assignments.
manuscript_locks = KeyedLocks()
