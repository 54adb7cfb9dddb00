import asyncio
from contextlib import AsyncExitStack, asynccontextmanager

from tt.common.logger import log
from tt.common.setup import PATHS
from tt.core.errors import BatchResult, StoreUnavailable
from tt.core.store import FileBackend, MemoryBackend, RecordStore


# Builds the default store for the configured backend.
def build_store(backend="file"):
    if backend == "memory":
        return RecordStore(MemoryBackend())
    return RecordStore(FileBackend(PATHS.store))


class RecordRepository:
    """Typed façade over a ``RecordStore``.

    This is the failure boundary: ``StoreUnavailable`` is caught here, logged,
    and turned into ``None`` (reads), ``False`` (writes) or a failed
    ``BatchResult`` (batches). In-memory state held by callers is never rolled
    back; reload if a consistent view is needed after a failure.
    """

    def __init__(self, provider: RecordStore | None = None):
        self._provider = provider if provider is not None else build_store()
        self._locks: dict[str, asyncio.Lock] = {}

    #region === Provider management ===

    def set_provider(self, provider: RecordStore):
        self._provider = provider
        log.info(f"Switched record store provider to {type(provider.backend).__name__}")

    def get_provider(self) -> RecordStore:
        return self._provider

    # One lock per root tree. Commands hold it across compute + persist so two of them can't interleave on the same
    # tree.
    def lock(self, root_id) -> asyncio.Lock:
        if root_id not in self._locks:
            self._locks[root_id] = asyncio.Lock()
        return self._locks[root_id]

    # Holds the locks of several root trees at once, for commands whose changes reach past their own tree. Locks are
    # taken in sorted id order so two such commands can't deadlock.
    @asynccontextmanager
    async def lock_roots(self, root_ids):
        async with AsyncExitStack() as stack:
            for root_id in sorted(set(root_ids), key=str):
                await stack.enter_async_context(self.lock(root_id))
            yield

    #endregion === Provider management ===

    async def initialize(self):
        try:
            await self._provider.initialize()
            log.info("Record store initialized.")
            return True
        except StoreUnavailable:
            log.warning("Failed to initialize the record store.", exc_info=True)
            return False

    #region === Single records ===

    async def load_record(self, record_id):
        try:
            return await self._provider.get(record_id)
        except StoreUnavailable:
            log.warning(f"Failed to load record '{record_id}'.", exc_info=True)
            return None

    async def save_record(self, record):
        try:
            await self._provider.put(record.id, record)
            log.debug(f"Saved record '{record.id}'")
            return True
        except StoreUnavailable:
            log.warning(f"Failed to save record '{record.id}'.", exc_info=True)
            return False

    # Deletes a record and everything stored beneath it, deepest first, so an interrupted delete never leaves children
    # whose parent is already gone. Deleting an id that isn't stored is a no-op.
    async def delete_record(self, record_id):
        try:
            doomed = await self._subtree_ids(record_id)
            for doomed_id in reversed(doomed):
                await self._provider.delete(doomed_id)
            log.info(f"Deleted record '{record_id}' and {len(doomed) - 1} descendant(s).")
            return True
        except StoreUnavailable:
            log.warning(f"Failed to delete record '{record_id}'.", exc_info=True)
            return False

    # Ids of a stored record and all its descendants, parents before children. Descendants come both from indexed
    # records pointing at the subtree and from the children nested inside the stored record itself.
    async def _subtree_ids(self, record_id):
        by_parent = {}
        for record in await self.load_records():
            by_parent.setdefault(record.parent_id, []).append(record.id)
        root = await self.load_record(record_id)
        if root is not None:
            for nested in root.walk():
                if nested.parent_id is not None:
                    siblings = by_parent.setdefault(nested.parent_id, [])
                    if nested.id not in siblings:
                        siblings.append(nested.id)

        ordered = [record_id]
        seen = {record_id}
        i = 0
        while i < len(ordered):
            for child_id in by_parent.get(ordered[i], []):
                if child_id not in seen:
                    seen.add(child_id)
                    ordered.append(child_id)
            i += 1
        return ordered

    #endregion === Single records ===

    #region === Collections ===

    # Every record the index points at. Ids whose value is missing or unreadable are skipped (and logged) rather than
    # failing the whole load.
    async def load_records(self):
        try:
            ids = await self._provider.list_ids()
        except StoreUnavailable:
            log.warning("Failed to read the record index, loading no records.", exc_info=True)
            return []
        records = []
        skipped = []
        for record_id in ids:
            try:
                record = await self._provider.get(record_id)
            except StoreUnavailable:
                log.warning(f"Skipping unreadable record '{record_id}'.", exc_info=True)
                record = None
            if record is None:
                skipped.append(record_id)
                continue
            records.append(record)
        if skipped:
            log.warning(f"Loaded {len(records)} record(s), skipped {len(skipped)} indexed id(s) with no usable value: {', '.join(skipped)}")
        else:
            log.info(f"Loaded {len(records)} record(s).")
        return records

    # Root records in index order. Display order is up to the caller.
    async def load_root_records(self):
        return [r for r in await self.load_records() if r.parent_id is None]

    async def load_child_records(self, parent_id):
        return [r for r in await self.load_records() if r.parent_id == parent_id]

    # Saves each record in turn. Not atomic: a failure part way through leaves the earlier records saved, and the
    # returned BatchResult says which ones made it.
    async def save_records(self, records):
        result = BatchResult()
        for record in records:
            if await self.save_record(record):
                result.saved.append(record.id)
            else:
                result.failed.append(record.id)
        if result.failed:
            log.warning(f"Batch save finished with {len(result.failed)} of {len(records)} record(s) failed: {', '.join(result.failed)}")
        return result

    async def clear_storage(self):
        try:
            await self._provider.clear()
            log.info("Cleared all stored records.")
            return True
        except StoreUnavailable:
            log.warning("Failed to clear the record store.", exc_info=True)
            return False

    #endregion === Collections ===
