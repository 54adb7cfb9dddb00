"""Persistent record store: record values plus an ordered index of their ids.

Two layers live here. A key-value backend only knows strings under keys
(``MemoryBackend`` for tests and throwaway sessions, ``FileBackend`` for one
atomically written file per key). ``RecordStore`` puts records on top of it
under ``time_record_<id>`` keys and keeps the id index under
``time_records_index``, updating it with every put and delete.

Every store operation is a coroutine. Backend and (de)serialization failures
surface as ``StoreUnavailable``.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from urllib.parse import quote, unquote

from pydantic import ValidationError

from tt.common.logger import log
from tt.core.errors import StoreUnavailable
from tt.core.record import Record

RECORDS_PREFIX = "time_record_"
RECORDS_INDEX_KEY = "time_records_index"


#region === Key-value backends ===

class KeyValueBackend:
    """String key-value storage. Subclasses implement the four coroutines."""

    async def get_item(self, key):
        raise NotImplementedError

    async def set_item(self, key, value):
        raise NotImplementedError

    async def remove_item(self, key):
        raise NotImplementedError

    async def keys(self):
        raise NotImplementedError


class MemoryBackend(KeyValueBackend):

    def __init__(self):
        self.items = {}

    async def get_item(self, key):
        return self.items.get(key)

    async def set_item(self, key, value):
        self.items[key] = value

    async def remove_item(self, key):
        self.items.pop(key, None)

    async def keys(self):
        return list(self.items)


class FileBackend(KeyValueBackend):
    """One ``<key>.json`` file per key in a single directory.

    Writes go to a temp file that is fsynced and then renamed over the target,
    so a crash leaves either the old value or the new one, never half of each.
    Blocking file I/O runs in a worker thread.
    """

    SUFFIX = ".json"

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key):
        return self.directory / f"{quote(key, safe='')}{self.SUFFIX}"

    def _read(self, key):
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    # Each write gets its own temp file, so two writes of the same key in flight never share one.
    def _write(self, key, value):
        target = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except BaseException:
            try: os.unlink(tmp)
            except OSError: pass
            raise

    def _remove(self, key):
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def _keys(self):
        return sorted(unquote(p.name[:-len(self.SUFFIX)]) for p in self.directory.glob(f"*{self.SUFFIX}"))

    async def get_item(self, key):
        return await asyncio.to_thread(self._read, key)

    async def set_item(self, key, value):
        await asyncio.to_thread(self._write, key, value)

    async def remove_item(self, key):
        await asyncio.to_thread(self._remove, key)

    async def keys(self):
        return await asyncio.to_thread(self._keys)

#endregion === Key-value backends ===


def record_key(record_id):
    return f"{RECORDS_PREFIX}{record_id}"


class RecordStore:

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend
        self._index_lock = asyncio.Lock()

    # Backend calls go through here so any I/O failure comes out as StoreUnavailable.
    async def _call(self, what, coro):
        try:
            return await coro
        except OSError as e:
            raise StoreUnavailable(f"Backend failed to {what}: {e}") from e

    #region === Index ===

    async def _read_index(self):
        raw = await self._call("read the index", self.backend.get_item(RECORDS_INDEX_KEY))
        if raw is None:
            return None
        try:
            ids = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreUnavailable(f"Malformed record index: {e}") from e
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            raise StoreUnavailable("Malformed record index: expected a list of id strings")
        return list(dict.fromkeys(ids))

    async def _write_index(self, ids):
        await self._call("write the index", self.backend.set_item(RECORDS_INDEX_KEY, json.dumps(ids)))

    # Ensures the index exists before anything else trusts it. Idempotent. A missing index is created empty, or
    # rebuilt from the record keys still in the backend when there are any; an unreadable one is rebuilt the same way.
    async def initialize(self):
        async with self._index_lock:
            try:
                ids = await self._read_index()
            except StoreUnavailable:
                log.warning("Record index is unreadable, rebuilding it from stored record keys.", exc_info=True)
                ids = None
            if ids is not None:
                return
            keys = await self._call("list keys", self.backend.keys())
            rebuilt = [k[len(RECORDS_PREFIX):] for k in keys if k.startswith(RECORDS_PREFIX)]
            if rebuilt:
                log.warning(f"Rebuilt record index with {len(rebuilt)} id(s) found in the backend.")
            await self._write_index(rebuilt)

    async def list_ids(self):
        ids = await self._read_index()
        return ids if ids is not None else []

    #endregion === Index ===

    #region === Records ===

    async def get(self, record_id):
        raw = await self._call(f"read record '{record_id}'", self.backend.get_item(record_key(record_id)))
        if raw is None:
            return None
        try:
            return Record.from_dict(json.loads(raw))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise StoreUnavailable(f"Stored record '{record_id}' could not be parsed: {e}") from e

    # Value first, then the index. A crash in between leaves an unindexed value, which nothing will read.
    async def put(self, record_id, record: Record):
        if record.id != record_id:
            raise ValueError(f"Record id '{record.id}' does not match key id '{record_id}'")
        try:
            payload = json.dumps(record.to_dict())
        except (TypeError, ValueError) as e:
            raise StoreUnavailable(f"Record '{record_id}' could not be serialized: {e}") from e
        await self._call(f"write record '{record_id}'", self.backend.set_item(record_key(record_id), payload))
        async with self._index_lock:
            ids = await self.list_ids()
            if record_id not in ids:
                ids.append(record_id)
                await self._write_index(ids)
        return True

    # Index first, then the value, so an interrupted delete can only leave a value nothing points at.
    async def delete(self, record_id):
        async with self._index_lock:
            ids = await self.list_ids()
            if record_id in ids:
                ids.remove(record_id)
                await self._write_index(ids)
        await self._call(f"remove record '{record_id}'", self.backend.remove_item(record_key(record_id)))
        return True

    async def clear(self):
        async with self._index_lock:
            ids = await self.list_ids()
            for record_id in ids:
                await self._call(f"remove record '{record_id}'", self.backend.remove_item(record_key(record_id)))
            await self._call("remove the index", self.backend.remove_item(RECORDS_INDEX_KEY))
        return True

    #endregion === Records ===
