from tt.common.logger import log
from tt.core.record import Record, new_record_id

RESTORE_POLICIES = ("resume", "pause")

#region === Single-record transitions ===

# Whole seconds between a startTime and now, both epoch milliseconds. A clock that went backwards credits nothing
# rather than taking time away.
def elapsed_seconds(start_time, now):
    return max(0, (now - start_time) // 1000)

# Returns how much time a record shows at `now`. Pure: this is what display refreshes call, it never touches the
# record itself.
def compute_live_time(record: Record, now: int) -> int:
    if record.is_running and record.start_time is not None:
        return record.base_time + elapsed_seconds(record.start_time, now)
    return record.base_time

# Start and stop for one record, with no regard for the rest of the tree.
def start_record(record: Record, now: int):
    if record.is_running:
        return False
    record.base_time = compute_live_time(record, now)
    record.time = record.base_time
    record.start_time = now
    record.is_running = True
    log.debug(f"Started record '{record.id}' at {now} from base {record.base_time}")
    return True
def stop_record(record: Record, now: int):
    if not record.is_running:
        return False
    elapsed = elapsed_seconds(record.start_time, now) if record.start_time is not None else 0
    record.base_time += elapsed
    record.time = record.base_time
    record.start_time = None
    record.is_running = False
    log.debug(f"Stopped record '{record.id}' at {now}, credited {elapsed}s for a total of {record.base_time}s")
    return True

# "Freezes" a running record's open interval into base_time without stopping it. The interval start moves forward by
# exactly the credited seconds, so the sub-second remainder keeps counting.
def freeze_record(record: Record, now: int):
    if not record.is_running or record.start_time is None:
        return False
    elapsed = elapsed_seconds(record.start_time, now)
    record.base_time += elapsed
    record.time = record.base_time
    record.start_time += elapsed * 1000
    return True

#endregion === Single-record transitions ===

# Ordered, de-duplicated collection of the records a command touched.
class _Changes:

    def __init__(self):
        self._records = {}

    def add(self, record):
        self._records.setdefault(record.id, record)

    @property
    def records(self):
        return list(self._records.values())


class Forest:
    """In-memory arena holding every record, indexed by id.

    Each record's ``children`` list holds the arena's own objects, so a command
    mutates the affected entries in place and walks only the chains it needs
    (siblings, ancestors, descendants) instead of rebuilding the tree.
    """

    def __init__(self):
        self._records: dict[str, Record] = {}
        self._roots: list[Record] = []

    #region === Building ===

    # Builds the arena from flat repository output. Each persisted record is authoritative for its own id; the nested
    # children copies inside it only fill in ids that have no entry of their own (whole-tree saves from older
    # versions). Records whose parent can't be found are left out and logged.
    @classmethod
    def from_records(cls, records):
        by_id = {}
        for record in records:
            if record.id in by_id:
                log.warning(f"Duplicate record id '{record.id}' while building forest, keeping the first one.")
                continue
            by_id[record.id] = record
        for record in list(by_id.values()):
            for nested in record.walk():
                if nested.id not in by_id:
                    log.info(f"Recovered record '{nested.id}' from nested children of '{record.id}'.")
                    by_id[nested.id] = nested

        child_order = {rid: [c.id for c in record.children] for rid, record in by_id.items()}
        for record in by_id.values():
            record.children = []

        forest = cls()
        attached = set()
        for record in by_id.values():
            if record.parent_id is None:
                forest._roots.append(record)
                attached.add(record.id)
        for rid, record in by_id.items():
            for child_id in child_order[rid]:
                child = by_id.get(child_id)
                if child is not None and child.parent_id == rid and child_id not in attached:
                    record.children.append(child)
                    attached.add(child_id)
        for record in by_id.values():
            if record.id in attached:
                continue
            parent = by_id.get(record.parent_id)
            if parent is not None:
                parent.children.append(record)
                attached.add(record.id)

        # Only what hangs off a root makes it in; this also drops parent cycles.
        for root in forest._roots:
            for record in root.walk():
                forest._records[record.id] = record
        skipped = [rid for rid in by_id if rid not in forest._records]
        if skipped:
            log.warning(f"Left {len(skipped)} unreachable record(s) out of the forest: {', '.join(skipped)}")
        return forest

    #endregion === Building ===

    #region === Lookups ===

    def __contains__(self, record_id):
        return record_id in self._records

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(list(self._records.values()))

    def get(self, record_id):
        return self._records.get(record_id)

    @property
    def roots(self):
        return list(self._roots)

    def parent(self, record):
        if record.parent_id is None:
            return None
        return self._records.get(record.parent_id)

    def siblings(self, record):
        parent = self.parent(record)
        group = parent.children if parent is not None else self._roots
        return [r for r in group if r.id != record.id]

    # Strict ancestors, nearest first.
    def ancestors(self, record):
        chain = []
        parent = self.parent(record)
        while parent is not None:
            chain.append(parent)
            parent = self.parent(parent)
        return chain

    # Strict descendants, depth-first.
    def descendants(self, record):
        return list(record.walk())[1:]

    def root_of(self, record):
        chain = self.ancestors(record)
        return chain[-1] if chain else record

    # The given records plus all of their ancestors, each once. Since a persisted record embeds its children, these
    # are the entries that must be rewritten after the given ones change.
    def with_ancestors(self, records):
        changes = _Changes()
        for record in records:
            changes.add(record)
            for ancestor in self.ancestors(record):
                changes.add(ancestor)
        return changes.records

    # Display values for every record at `now`. Read-only; this is what a periodic UI tick should call.
    def live_times(self, now):
        return {rid: compute_live_time(record, now) for rid, record in self._records.items()}

    #endregion === Lookups ===

    #region === Timer commands ===

    # Flips one record between running and stopped and propagates the change. Returns every record whose state
    # changed, or None when the id isn't in the forest.
    def toggle(self, record_id, now):
        record = self.get(record_id)
        if record is None:
            log.warning(f"Toggle requested for unknown record '{record_id}'")
            return None
        changes = _Changes()
        if record.is_running:
            self._stop_subtree(record, now, changes)
            self._settle_ancestors(record, now, changes)
        else:
            self._start(record, now, changes)
            for ancestor in self.ancestors(record):
                if ancestor.is_running:
                    freeze_record(ancestor, now)
                    changes.add(ancestor)
                else:
                    self._start(ancestor, now, changes)
        return changes.records

    def start(self, record_id, now):
        record = self.get(record_id)
        if record is None:
            return None
        if record.is_running:
            return []
        return self.toggle(record_id, now)

    def stop(self, record_id, now):
        record = self.get(record_id)
        if record is None:
            return None
        if not record.is_running:
            return []
        return self.toggle(record_id, now)

    # Stops any running sibling (and everything under it) before starting the record, so a sibling group never has
    # two running members.
    def _start(self, record, now, changes):
        for sibling in self.siblings(record):
            if sibling.is_running:
                self._stop_subtree(sibling, now, changes)
        start_record(record, now)
        changes.add(record)

    def _stop_subtree(self, record, now, changes):
        for node in record.walk():
            if stop_record(node, now):
                changes.add(node)

    # Walks up from a just-stopped record, stopping each ancestor that has nothing running underneath it anymore.
    def _settle_ancestors(self, record, now, changes):
        for ancestor in self.ancestors(record):
            if any(node.is_running for node in self.descendants(ancestor)):
                break
            if stop_record(ancestor, now):
                changes.add(ancestor)

    #endregion === Timer commands ===

    #region === Field commands ===

    # Creates a record under `parent_id` (or as a new root) and returns it, or None if the parent doesn't exist.
    def add(self, label=None, parent_id=None, note=None):
        parent = None
        if parent_id is not None:
            parent = self.get(parent_id)
            if parent is None:
                log.warning(f"Cannot add a child to unknown record '{parent_id}'")
                return None
        record_id = new_record_id()
        while record_id in self._records:
            record_id = new_record_id()
        record = Record(
            id=record_id,
            label=label if label else f"Recording {record_id}",
            parent_id=parent_id,
            note=note,
        )
        if parent is None:
            self._roots.append(record)
        else:
            parent.children.append(record)
        self._records[record.id] = record
        log.debug(f"Added record '{record.id}' under '{parent_id}'")
        return record

    def add_break(self, parent_id, label="Break"):
        return self.add(label=label, parent_id=parent_id)

    def rename(self, record_id, label):
        record = self.get(record_id)
        if record is None:
            return None
        record.label = label
        record.is_editing = False
        return record

    def annotate(self, record_id, note):
        record = self.get(record_id)
        if record is None:
            return None
        record.note = note
        record.is_editing_note = False
        return record

    def toggle_collapse(self, record_id):
        record = self.get(record_id)
        if record is None:
            return None
        record.is_collapsed = not record.is_collapsed
        return record

    def set_editing(self, record_id, editing=True, note=False):
        record = self.get(record_id)
        if record is None:
            return None
        if note:
            record.is_editing_note = editing
        else:
            record.is_editing = editing
        return record

    # Detaches a record from its parent (or the root list) and drops it along with its whole subtree. Returns the
    # removed records, the record itself first, or None if it isn't in the forest.
    def remove(self, record_id):
        record = self.get(record_id)
        if record is None:
            return None
        parent = self.parent(record)
        if parent is not None:
            parent.children = [c for c in parent.children if c.id != record_id]
        else:
            self._roots = [r for r in self._roots if r.id != record_id]
        removed = list(record.walk())
        for node in removed:
            self._records.pop(node.id, None)
        log.debug(f"Removed record '{record_id}' and {len(removed) - 1} descendant(s)")
        return removed

    #endregion === Field commands ===

    #region === Restoring ===

    # Called once after loading. Every record found running has its elapsed wall-clock gap folded into base_time
    # before anything else happens. With "resume" it keeps running on a fresh interval, with "pause" it stops. Saves
    # that break the run-state invariants (a running record under a stopped parent, two running siblings) are
    # repaired, keeping the most recently started sibling.
    def restore(self, now, policy="resume"):
        if policy not in RESTORE_POLICIES:
            raise ValueError(f"Unknown restore policy '{policy}', expected one of {RESTORE_POLICIES}")
        changes = _Changes()
        running = [r for r in self._records.values() if r.is_running]
        started = {r.id: r.start_time for r in running}
        for record in running:
            if policy == "pause":
                stop_record(record, now)
            else:
                freeze_record(record, now)
            changes.add(record)
        if policy == "pause":
            return changes.records

        for record in running:
            for ancestor in self.ancestors(record):
                if start_record(ancestor, now):
                    log.warning(f"Restored record '{ancestor.id}' was stopped above running '{record.id}', started it.")
                    changes.add(ancestor)

        # A group member ranks by the newest original start anywhere in its subtree, since an ancestor started just
        # above carries `now` as its own start.
        def newest_start(record):
            return max((started[node.id] for node in record.walk() if node.id in started), default=-1)

        groups = [self._roots]
        while groups:
            group = groups.pop(0)
            live = [r for r in group if r.is_running]
            if len(live) > 1:
                keep = max(live, key=newest_start)
                for record in live:
                    if record is not keep:
                        log.warning(f"Restored siblings '{keep.id}' and '{record.id}' were both running, stopped '{record.id}'.")
                        self._stop_subtree(record, now, changes)
            for record in group:
                if record.children:
                    groups.append(record.children)
        return changes.records

    #endregion === Restoring ===
