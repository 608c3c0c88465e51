"""
Per-key locks for serializing work on a single switch
"""
import threading
from contextlib import contextmanager
from typing import Dict


class KeyedLock:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            yield

    def discard(self, key: str):
        with self._guard:
            self._locks.pop(key, None)
