"""Command/response service between a front end and the timer core.

A front end calls one of the ``Tracker`` coroutines, gets a ``CommandResult``
back, and re-reads whatever it displays (``root_records()``, ``live_times()``)
afterwards. Each command applies to the in-memory ``Forest`` and then persists
the records it touched, together with their ancestors since persisted records
embed their children.
"""

from tt.common.logger import log
from tt.core import config
from tt.core.errors import CommandResult, ErrorKind
from tt.core.repository import RecordRepository, build_store
from tt.core.timer_state import Forest, compute_live_time
from tt.util import now_ms


class Tracker:

    def __init__(self, repository=None, settings=None, clock=now_ms):
        self.settings = settings if settings is not None else config.load_settings()
        if repository is None:
            repository = RecordRepository(build_store(self.settings["store_backend"]))
        self.repository = repository
        self.clock = clock
        self.forest = Forest()

    #region === Loading ===

    # Initializes the store, loads every record and restores the ones left running according to the restore_policy
    # setting. Restored records are written back straight away so their folded base_time is durable.
    async def load(self):
        if not await self.repository.initialize():
            return CommandResult.failure(ErrorKind.STORE_UNAVAILABLE, "Record store could not be initialized")
        records = await self.repository.load_records()
        self.forest = Forest.from_records(records)
        now = self.clock()
        restored = self.forest.restore(now, self.settings["restore_policy"])
        log.info(f"Loaded forest of {len(self.forest)} record(s) with {len(self.forest.roots)} root(s), restored {len(restored)} running record(s).")
        if not restored:
            return CommandResult.success([])
        return await self._persist(restored, "Restored running records")

    #endregion === Loading ===

    #region === Reads ===

    def get(self, record_id):
        return self.forest.get(record_id)

    # Root records, newest first, the order the record list shows them in.
    def root_records(self):
        return sorted(self.forest.roots, key=lambda r: r.created_at, reverse=True)

    def live_time(self, record_id, now=None):
        record = self.forest.get(record_id)
        if record is None:
            return None
        return compute_live_time(record, self.clock() if now is None else now)

    def live_times(self, now=None):
        return self.forest.live_times(self.clock() if now is None else now)

    #endregion === Reads ===

    #region === Commands ===

    async def _persist(self, changed, what, record=None):
        to_save = self.forest.with_ancestors(changed)
        result = await self.repository.save_records(to_save)
        if not result:
            log.warning(f"{what}: {len(result.failed)} record(s) could not be saved, in-memory state kept as is.")
            return CommandResult.failure(result.error, f"{what}: failed to save {', '.join(result.failed)}", changed)
        return CommandResult.success(changed, record)

    def _not_found(self, record_id, what):
        log.warning(f"{what}: record '{record_id}' not found.")
        return CommandResult.failure(ErrorKind.NOT_FOUND, f"Record '{record_id}' not found")

    def _root_id(self, record_id):
        record = self.forest.get(record_id)
        return self.forest.root_of(record).id if record is not None else record_id

    async def add_record(self, label=None, parent_id=None, note=None):
        lock_id = self._root_id(parent_id) if parent_id is not None else None
        async with self.repository.lock(lock_id):
            record = self.forest.add(label=label, parent_id=parent_id, note=note)
            if record is None:
                return self._not_found(parent_id, "Add record")
            log.info(f"Added record '{record.id}' ('{record.label}') under '{parent_id}'")
            return await self._persist([record], "Add record", record)

    async def add_break(self, parent_id):
        return await self.add_record(label=self.settings["break_label"], parent_id=parent_id)

    # Root trees a toggle can change. Stopping stays inside the record's own tree. Starting reaches the root level,
    # where it stops whichever other root is running.
    def _toggle_roots(self, record_id):
        record = self.forest.get(record_id)
        if record is None:
            return {record_id}
        roots = {self.forest.root_of(record).id}
        if not record.is_running:
            roots.update(r.id for r in self.forest.roots if r.is_running)
        return roots

    async def toggle(self, record_id):
        while True:
            roots = self._toggle_roots(record_id)
            async with self.repository.lock_roots(roots):
                # Another command may have run while the locks were awaited. Retry if it widened the set.
                if not self._toggle_roots(record_id) <= roots:
                    continue
                changed = self.forest.toggle(record_id, self.clock())
                if changed is None:
                    return self._not_found(record_id, "Toggle")
                record = self.forest.get(record_id)
                log.info(f"Toggled record '{record_id}' {'on' if record.is_running else 'off'}, {len(changed)} record(s) changed")
                return await self._persist(changed, "Toggle", record)

    async def _update(self, record_id, what, apply):
        async with self.repository.lock(self._root_id(record_id)):
            record = apply()
            if record is None:
                return self._not_found(record_id, what)
            log.debug(f"{what} applied to record '{record_id}'")
            return await self._persist([record], what, record)

    async def rename(self, record_id, label):
        return await self._update(record_id, "Rename", lambda: self.forest.rename(record_id, label))

    async def annotate(self, record_id, note):
        return await self._update(record_id, "Annotate", lambda: self.forest.annotate(record_id, note))

    async def toggle_collapse(self, record_id):
        return await self._update(record_id, "Toggle collapse", lambda: self.forest.toggle_collapse(record_id))

    # Removes the record and its subtree from memory and from the store, then rewrites the parent chain so no stored
    # ancestor still embeds the deleted records.
    async def delete(self, record_id):
        async with self.repository.lock(self._root_id(record_id)):
            record = self.forest.get(record_id)
            if record is None:
                return self._not_found(record_id, "Delete")
            parent = self.forest.parent(record)
            removed = self.forest.remove(record_id)
            if not await self.repository.delete_record(record_id):
                return CommandResult.failure(ErrorKind.STORE_UNAVAILABLE, f"Failed to delete '{record_id}'", removed)
            if parent is not None:
                result = await self._persist([parent], "Delete", record)
                if not result:
                    return result
            log.info(f"Deleted record '{record_id}' with {len(removed) - 1} descendant(s)")
            return CommandResult.success(removed, record)

    async def clear(self):
        if not await self.repository.clear_storage():
            return CommandResult.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to clear storage")
        removed = list(self.forest)
        self.forest = Forest()
        await self.repository.initialize()
        return CommandResult.success(removed)

    #endregion === Commands ===
