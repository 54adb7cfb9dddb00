"""End-to-end tests for tt.core.tracker: commands, persistence and restarts."""

import asyncio
import os
import shutil
import tempfile
import unittest
from pathlib import Path

os.environ.setdefault("TT_DATA_DIR", tempfile.mkdtemp(prefix="tt-tests-"))

from tt.core import config
from tt.core.errors import ErrorKind
from tt.core.repository import RecordRepository
from tt.core.store import FileBackend, MemoryBackend, RecordStore, record_key

T0 = 1_700_000_000_000


class FakeClock:

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, millis):
        self.now += millis


class FailingBackend(MemoryBackend):

    def __init__(self):
        super().__init__()
        self.broken = False

    async def set_item(self, key, value):
        if self.broken:
            raise OSError("disk full")
        await super().set_item(key, value)


def make_tracker(backend=None, clock=None, **settings):
    from tt.core.tracker import Tracker
    merged = config.build_default_settings()
    merged.update(settings)
    repository = RecordRepository(RecordStore(backend if backend is not None else MemoryBackend()))
    return Tracker(repository=repository, settings=merged, clock=clock or FakeClock())


class TestTrackerCommands(unittest.IsolatedAsyncioTestCase):
    """Tests for Tracker commands over a memory store."""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.backend = FailingBackend()
        self.tracker = make_tracker(self.backend, self.clock)
        self.assertTrue(await self.tracker.load())

    async def test_add_persists_immediately(self):
        """An added record is in the store straight away."""
        result = await self.tracker.add_record("Work")
        self.assertTrue(result.ok)
        stored = await self.tracker.repository.load_record(result.record.id)
        self.assertEqual(stored.label, "Work")
        self.assertIsNone(stored.parent_id)

    async def test_add_child_rewrites_parent_chain(self):
        """Adding a child rewrites the parent so its nested children include it."""
        a = (await self.tracker.add_record("A")).record
        b = (await self.tracker.add_record("B", parent_id=a.id)).record
        stored_a = await self.tracker.repository.load_record(a.id)
        self.assertEqual([c.id for c in stored_a.children], [b.id])
        children = await self.tracker.repository.load_child_records(a.id)
        self.assertEqual([c.id for c in children], [b.id])

    async def test_add_break_uses_configured_label(self):
        """add_break() uses the break_label setting."""
        a = (await self.tracker.add_record("A")).record
        result = await self.tracker.add_break(a.id)
        self.assertEqual(result.record.label, "Break")
        self.assertEqual(result.record.parent_id, a.id)

    async def test_add_under_missing_parent(self):
        """Unknown parent → NOT_FOUND and nothing stored."""
        result = await self.tracker.add_record("B", parent_id="missing")
        self.assertFalse(result)
        self.assertEqual(result.error, ErrorKind.NOT_FOUND)
        self.assertEqual(await self.tracker.repository.load_records(), [])

    async def test_toggle_scenario_start_stop(self):
        """Start, wait 5s, stop → 5 seconds stored."""
        a = (await self.tracker.add_record("A")).record
        await self.tracker.toggle(a.id)
        self.clock.advance(5_000)
        self.assertEqual(self.tracker.live_time(a.id), 5)
        result = await self.tracker.toggle(a.id)
        self.assertTrue(result.ok)
        stored = await self.tracker.repository.load_record(a.id)
        self.assertEqual(stored.time, 5)
        self.assertFalse(stored.is_running)
        self.assertIsNone(stored.start_time)

    async def test_toggle_child_persists_running_chain(self):
        """Starting a child persists it and its running parent."""
        a = (await self.tracker.add_record("A")).record
        await self.tracker.toggle(a.id)
        b = (await self.tracker.add_record("B", parent_id=a.id)).record
        self.clock.advance(2_000)
        await self.tracker.toggle(b.id)
        stored_a = await self.tracker.repository.load_record(a.id)
        stored_b = await self.tracker.repository.load_record(b.id)
        self.assertTrue(stored_a.is_running)
        self.assertTrue(stored_b.is_running)
        self.assertEqual(stored_b.start_time, self.clock.now)
        self.assertTrue(stored_a.children[0].is_running)

    async def test_toggle_unknown_id(self):
        """Unknown id → NOT_FOUND, no record created."""
        result = await self.tracker.toggle("nope")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, ErrorKind.NOT_FOUND)
        self.assertIsNone(self.tracker.get("nope"))
        self.assertIsNone(self.tracker.live_time("nope"))

    async def test_store_failure_keeps_memory_state(self):
        """A failing store → STORE_UNAVAILABLE with memory state kept."""
        a = (await self.tracker.add_record("A")).record
        self.backend.broken = True
        result = await self.tracker.toggle(a.id)
        self.assertFalse(result.ok)
        self.assertEqual(result.error, ErrorKind.STORE_UNAVAILABLE)
        self.assertTrue(self.tracker.get(a.id).is_running)
        self.backend.broken = False
        stored = await self.tracker.repository.load_record(a.id)
        self.assertFalse(stored.is_running)

    async def test_field_edits_persist(self):
        """Rename, note and collapse reach the store."""
        a = (await self.tracker.add_record("A")).record
        await self.tracker.rename(a.id, "Renamed")
        await self.tracker.annotate(a.id, "note text")
        await self.tracker.toggle_collapse(a.id)
        stored = await self.tracker.repository.load_record(a.id)
        self.assertEqual(stored.label, "Renamed")
        self.assertEqual(stored.note, "note text")
        self.assertTrue(stored.is_collapsed)
        self.assertEqual((await self.tracker.rename("nope", "x")).error, ErrorKind.NOT_FOUND)

    async def test_delete_child_cascades_and_rewrites_parent(self):
        """Deleting a child removes its subtree and rewrites the parent."""
        a = (await self.tracker.add_record("A")).record
        b = (await self.tracker.add_record("B", parent_id=a.id)).record
        c = (await self.tracker.add_record("C", parent_id=b.id)).record
        result = await self.tracker.delete(b.id)
        self.assertEqual([r.id for r in result.changed], [b.id, c.id])
        self.assertEqual(await self.tracker.repository.get_provider().list_ids(), [a.id])
        stored_a = await self.tracker.repository.load_record(a.id)
        self.assertEqual(stored_a.children, [])
        self.assertNotIn(record_key(c.id), self.backend.items)

    async def test_delete_root(self):
        """Deleting a root empties memory and store; a second delete → NOT_FOUND."""
        a = (await self.tracker.add_record("A")).record
        await self.tracker.add_record("B", parent_id=a.id)
        self.assertTrue(await self.tracker.delete(a.id))
        self.assertEqual(await self.tracker.repository.load_records(), [])
        self.assertEqual(self.tracker.root_records(), [])
        self.assertEqual((await self.tracker.delete(a.id)).error, ErrorKind.NOT_FOUND)

    async def test_clear(self):
        """clear() removes every record from memory and store."""
        await self.tracker.add_record("A")
        await self.tracker.add_record("B")
        result = await self.tracker.clear()
        self.assertEqual(len(result.changed), 2)
        self.assertEqual(len(self.tracker.forest), 0)
        self.assertEqual(await self.tracker.repository.get_provider().list_ids(), [])

    async def test_live_times_do_not_write(self):
        """Reading live times never writes to the store."""
        a = (await self.tracker.add_record("A")).record
        await self.tracker.toggle(a.id)
        before = dict(self.backend.items)
        self.clock.advance(3_000)
        self.assertEqual(self.tracker.live_times()[a.id], 3)
        self.assertEqual(self.backend.items, before)


class TestTrackerRestart(unittest.IsolatedAsyncioTestCase):
    """Tests for what a new Tracker sees after the previous one stopped."""

    async def asyncSetUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store_dir = Path(self.tmpdir) / "store"

    async def asyncTearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def _first_session(self):
        clock = FakeClock()
        tracker = make_tracker(FileBackend(self.store_dir), clock)
        await tracker.load()
        a = (await tracker.add_record("A")).record
        b = (await tracker.add_record("B", parent_id=a.id)).record
        await tracker.toggle(b.id)
        return a, b

    async def test_running_records_resume_after_restart(self):
        """Records left running keep counting across a restart."""
        a, b = await self._first_session()
        clock = FakeClock(T0 + 90_500)
        tracker = make_tracker(FileBackend(self.store_dir), clock)
        self.assertTrue(await tracker.load())
        self.assertTrue(tracker.get(a.id).is_running)
        self.assertEqual(tracker.get(b.id).base_time, 90)
        self.assertEqual(tracker.live_time(b.id), 90)
        clock.advance(4_500)
        await tracker.toggle(b.id)
        self.assertEqual(tracker.get(b.id).time, 95)
        self.assertEqual(tracker.get(a.id).time, 95)
        self.assertFalse(tracker.get(a.id).is_running)

    async def test_restored_time_is_persisted(self):
        """Restored base times are written back on load."""
        a, b = await self._first_session()
        tracker = make_tracker(FileBackend(self.store_dir), FakeClock(T0 + 30_000))
        await tracker.load()
        stored = await tracker.repository.load_record(b.id)
        self.assertEqual(stored.base_time, 30)
        self.assertTrue(stored.is_running)

    async def test_pause_policy_stops_restored_records(self):
        """The pause policy stops restored records with time credited."""
        a, b = await self._first_session()
        tracker = make_tracker(FileBackend(self.store_dir), FakeClock(T0 + 60_000), restore_policy="pause")
        await tracker.load()
        self.assertFalse(tracker.get(b.id).is_running)
        self.assertEqual(tracker.get(b.id).time, 60)
        stored = await tracker.repository.load_record(a.id)
        self.assertFalse(stored.is_running)
        self.assertEqual(stored.time, 60)


class TestConcurrentToggles(unittest.IsolatedAsyncioTestCase):
    """Toggles dispatched together in different root trees, over the file backend."""

    async def asyncSetUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store_dir = Path(self.tmpdir) / "store"
        self.clock = FakeClock()
        self.tracker = make_tracker(FileBackend(self.store_dir), self.clock)
        await self.tracker.load()

    async def asyncTearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def test_toggles_in_two_trees_leave_disk_consistent(self):
        """Each toggle succeeds and the saved records match memory with at most one running root."""
        a = (await self.tracker.add_record("A")).record
        a1 = (await self.tracker.add_record("A1", parent_id=a.id)).record
        b = (await self.tracker.add_record("B")).record
        b1 = (await self.tracker.add_record("B1", parent_id=b.id)).record
        for _ in range(10):
            self.clock.advance(1_000)
            results = await asyncio.gather(self.tracker.toggle(a1.id), self.tracker.toggle(b1.id))
            for result in results:
                self.assertTrue(result.ok, result.message)

        stored = await RecordRepository(RecordStore(FileBackend(self.store_dir))).load_records()
        by_parent = {}
        for record in stored:
            by_parent.setdefault(record.parent_id, []).append(record)
        for group in by_parent.values():
            self.assertLessEqual(sum(1 for r in group if r.is_running), 1)
        for record in stored:
            live = self.tracker.get(record.id)
            self.assertEqual(record.is_running, live.is_running)
            self.assertEqual(record.base_time, live.base_time)
            self.assertEqual(record.start_time, live.start_time)

    async def test_toggle_waits_for_a_command_on_the_other_tree(self):
        """Starting in one tree waits while another command holds the running root's lock."""
        a = (await self.tracker.add_record("A")).record
        b = (await self.tracker.add_record("B")).record
        await self.tracker.toggle(a.id)
        async with self.tracker.repository.lock(a.id):
            pending = asyncio.ensure_future(self.tracker.toggle(b.id))
            await asyncio.sleep(0)
            self.assertFalse(pending.done())
            self.assertTrue(self.tracker.get(a.id).is_running)
            self.assertFalse(self.tracker.get(b.id).is_running)
        self.assertTrue((await pending).ok)
        self.assertFalse(self.tracker.get(a.id).is_running)
        self.assertTrue(self.tracker.get(b.id).is_running)


if __name__ == "__main__":
    unittest.main()
