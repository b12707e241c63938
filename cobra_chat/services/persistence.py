"""
Hierarchical key-value persistence used by every service.
Paths look like ``embeddings/<user>/<entry>``. No multi-key transactions are
offered: ``update`` writes several children, each independently.
"""
import asyncio
import copy
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from cobra_chat.utils.errors import StorageError
from cobra_chat.utils.logger import logger

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushIdGenerator:
    """20-char keys that sort by creation time (8 time chars + 12 random chars)."""

    def __init__(self):
        self._last_ts = 0
        self._last_random: List[int] = []

    def __call__(self) -> str:
        now = int(time.time() * 1000)
        if now == self._last_ts and self._last_random:
            # Same millisecond: bump the random suffix so ordering holds
            i = 11
            while i >= 0 and self._last_random[i] == 63:
                self._last_random[i] = 0
                i -= 1
            if i >= 0:
                self._last_random[i] += 1
        else:
            self._last_random = [secrets.randbelow(64) for _ in range(12)]
        self._last_ts = now

        ts_chars = []
        for _ in range(8):
            ts_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        return "".join(reversed(ts_chars)) + "".join(PUSH_CHARS[i] for i in self._last_random)


def split_path(path: str) -> List[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise StorageError("Path cannot be empty")
    return parts


def join_path(parts: Iterable[str]) -> str:
    return "/".join(parts)


def dig(value: Any, parts: List[str]) -> Any:
    """Walks into nested dicts; None when any segment is missing."""
    for part in parts:
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def put(root: Any, parts: List[str], value: Any) -> Any:
    """Returns ``root`` with ``value`` placed at ``parts`` (None removes it)."""
    if not parts:
        return copy.deepcopy(value)
    if not isinstance(root, dict):
        root = {}
    head, rest = parts[0], parts[1:]
    child = put(root.get(head), rest, value)
    if child is None or child == {}:
        root.pop(head, None)
    else:
        root[head] = child
    return root


def assemble_rows(parts: List[str], rows: List[Dict[str, Any]]) -> Any:
    """Rebuilds the value at ``parts`` from stored ``{path, value}`` rows.

    Rows may sit above the path (an ancestor written as a whole), on it, or
    below it. Deeper rows always postdate shallower ones because ``set``
    clears everything underneath, so they are overlaid shallowest first.
    """
    depth = len(parts)
    result: Any = None
    for row in sorted(rows, key=lambda r: len(split_path(r["path"]))):
        row_parts = split_path(row["path"])
        if len(row_parts) <= depth:
            if row_parts != parts[:len(row_parts)]:
                continue
            result = put(result, [], dig(row["value"], parts[len(row_parts):]))
        else:
            if row_parts[:depth] != parts:
                continue
            result = put(result, row_parts[depth:], row["value"])
    return result if result != {} else None


class KeyValueStore(ABC):
    """Async hierarchical store: get, set, update, remove and push."""

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Returns the value at ``path`` or None."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replaces the value at ``path``; None removes it."""

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        """Writes each child of ``path``. A None value deletes that child."""
        for key, value in fields.items():
            child = f"{path}/{key}"
            if value is None:
                await self.remove(child)
            else:
                await self.set(child, value)

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Deletes ``path`` and everything below it."""

    @abstractmethod
    async def push(self, path: str) -> str:
        """Generates a new unique child key under ``path`` and returns it."""


class InMemoryStore(KeyValueStore):
    """Nested-dict store for development and tests.

    Every call yields to the event loop once, like a remote call would, so
    interleavings between concurrent tasks match production.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._root: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._new_id = PushIdGenerator()

    async def get(self, path: str) -> Any:
        await asyncio.sleep(0)
        return copy.deepcopy(dig(self._root, split_path(path)))

    async def set(self, path: str, value: Any) -> None:
        await asyncio.sleep(0)
        self._root = put(self._root, split_path(path), value) or {}

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        base = split_path(path)
        for key, value in fields.items():
            self._root = put(self._root, base + split_path(key), value) or {}

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    async def push(self, path: str) -> str:
        split_path(path)
        await asyncio.sleep(0)
        return self._new_id()

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._root)


class SupabaseStore(KeyValueStore):
    """
    Stores one row per written path in a ``kv_store(path text primary key, value jsonb)``
    table. Reads reassemble the tree from ancestor, exact and descendant rows.
    The supabase client is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, url: str, key: str, table: str = "kv_store", client=None):
        if client is None:
            from supabase import create_client
            client = create_client(url, key)
            logger.info("Supabase client initialized.")
        self.client = client
        self.table = table
        self._new_id = PushIdGenerator()

    async def get(self, path: str) -> Any:
        parts = split_path(path)
        rows = await self._run(self._related_rows, parts)
        return assemble_rows(parts, rows)

    async def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        await self._run(self._set_sync, parts, value)

    async def remove(self, path: str) -> None:
        await self._run(self._set_sync, split_path(path), None)

    async def push(self, path: str) -> str:
        split_path(path)
        return self._new_id()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Supabase error: {str(e)}")
            raise StorageError(str(e)) from e

    def _related_rows(self, parts: List[str]) -> List[Dict[str, Any]]:
        path = join_path(parts)
        table = self.client.table(self.table)
        rows = list(table.select("path,value").eq("path", path).execute().data or [])

        below = table.select("path,value").like("path", f"{path}/%").execute().data or []
        # LIKE treats "_" as a wildcard, and push ids contain it
        rows.extend(r for r in below if r["path"].startswith(f"{path}/"))

        ancestors = [join_path(parts[:i]) for i in range(1, len(parts))]
        if ancestors:
            rows.extend(table.select("path,value").in_("path", ancestors).execute().data or [])
        return rows

    def _set_sync(self, parts: List[str], value: Any) -> None:
        path = join_path(parts)
        table = self.client.table(self.table)
        table.delete().eq("path", path).execute()
        below = [
            r["path"]
            for r in table.select("path").like("path", f"{path}/%").execute().data or []
            if r["path"].startswith(f"{path}/")
        ]
        if below:
            table.delete().in_("path", below).execute()

        # Strip the subtree from any ancestor row that embeds it
        ancestors = [join_path(parts[:i]) for i in range(1, len(parts))]
        if ancestors:
            for row in table.select("path,value").in_("path", ancestors).execute().data or []:
                rel = parts[len(split_path(row["path"])):]
                if dig(row["value"], rel) is not None:
                    trimmed = put(copy.deepcopy(row["value"]), rel, None)
                    table.upsert({"path": row["path"], "value": trimmed or {}}).execute()

        if value is not None:
            table.upsert({"path": path, "value": value}).execute()
