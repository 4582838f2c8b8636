# storage/kv_store.py

"""
Key-value store backends

The store only deals in strings. ``compare_and_swap`` is the one primitive the
job repository needs for conditional writes.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Protocol

from bulkops.utils.file_handler import key_from_filename, read_text, remove_file, safe_filename, write_text_atomic

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal external key-value store contract."""

    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    async def put(self, key: str, value: str) -> None:
        """Unconditionally store ``value``."""

    async def delete(self, key: str) -> None:
        """Remove ``key``; deleting a missing key is not an error."""

    async def compare_and_swap(self, key: str, expected: Optional[str], value: str) -> bool:
        """Store ``value`` only if the current value equals ``expected`` (None = absent)."""


class InMemoryKeyValueStore:
    """Process-local store, used for development and tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def compare_and_swap(self, key: str, expected: Optional[str], value: str) -> bool:
        async with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = value
            return True

    def keys(self):
        return list(self._data.keys())


class JsonFileKeyValueStore:
    """One JSON file per key under ``base_dir``.

    Conditional writes are atomic for writers inside this process only: two
    server processes sharing ``base_dir`` can both win a compare-and-swap.
    """

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info(f"JsonFileKeyValueStore using directory: {self.base_dir}")

    def _path(self, key: str) -> Path:
        return self.base_dir / safe_filename(key)

    def keys(self):
        return sorted(key_from_filename(p.name) for p in self.base_dir.glob("*.json"))

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(read_text, self._path(key))

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            await asyncio.to_thread(write_text_atomic, self._path(key), value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            removed = await asyncio.to_thread(remove_file, self._path(key))
        if removed:
            logger.debug(f"Deleted key {key}")

    async def compare_and_swap(self, key: str, expected: Optional[str], value: str) -> bool:
        path = self._path(key)
        async with self._lock:
            current = await asyncio.to_thread(read_text, path)
            if current != expected:
                return False
            await asyncio.to_thread(write_text_atomic, path, value)
            return True


def build_store(backend: str, store_dir: str) -> KeyValueStore:
    """Build the store configured by ``BULKOPS_STORE_BACKEND``

    The ``file`` backend only guards conditional writes within one process.
    Run a single server worker with it, or ticks from different workers can
    overwrite each other.
    """
    backend = (backend or "memory").lower()
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "file":
        logger.warning(
            "File store compare-and-swap is only atomic within one process; "
            "run a single server worker with BULKOPS_STORE_BACKEND=file"
        )
        return JsonFileKeyValueStore(store_dir)
    raise ValueError(f"Unknown store backend: {backend}")
