"""Text front end: ``python -m tt <command>``.

Every invocation loads the forest, applies at most one command through the
``Tracker`` and prints the tree with live times. It owns no timing logic.
"""

import argparse
import asyncio
import logging
import sys

from tt.common import logger
from tt.common.setup import PATHS
from tt.core import config
from tt.core.tracker import Tracker
from tt.util import format_date, format_time


def build_parser():
    parser = argparse.ArgumentParser(prog="tt", description="Nested activity timers that survive restarts.")
    parser.add_argument("--data-dir", help="Directory holding settings, logs and the record store.")
    parser.add_argument("--verbose", action="store_true", help="Echo the log to the console.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="Show every record tree with live times.")
    p = sub.add_parser("add", help="Add a root record, or a child with --parent.")
    p.add_argument("label", nargs="?")
    p.add_argument("--parent")
    p.add_argument("--note")
    p = sub.add_parser("break", help="Add a break record under a parent.")
    p.add_argument("parent")
    p = sub.add_parser("toggle", help="Start or stop a record.")
    p.add_argument("id")
    p = sub.add_parser("rename", help="Change a record's label.")
    p.add_argument("id")
    p.add_argument("label")
    p = sub.add_parser("note", help="Set a record's note.")
    p.add_argument("id")
    p.add_argument("text")
    p = sub.add_parser("collapse", help="Collapse or expand a record's children.")
    p.add_argument("id")
    p = sub.add_parser("delete", help="Delete a record and everything under it.")
    p.add_argument("id")
    sub.add_parser("clear", help="Delete every record.")
    return parser


# Renders one tree as indented lines. Collapsed records hide their children.
def render_tree(record, live_times, style="long", depth=0):
    marker = "+" if record.is_collapsed and record.children else "-"
    running = " (running)" if record.is_running else ""
    lines = [f"{'  ' * depth}{marker} {record.label} [{record.id}] {format_time(live_times.get(record.id, record.time), style)}{running}"]
    if record.note:
        lines.append(f"{'  ' * depth}    note: {record.note}")
    if not record.is_collapsed:
        for child in record.children:
            lines.extend(render_tree(child, live_times, style, depth + 1))
    return lines


def render_forest(tracker):
    roots = tracker.root_records()
    if not roots:
        return "No records. Add one to begin!"
    live_times = tracker.live_times()
    style = tracker.settings["time_format"]
    lines = []
    for root in roots:
        lines.append(f"{format_date(root.created_at)}")
        lines.extend(render_tree(root, live_times, style, depth=1))
    return "\n".join(lines)


async def dispatch(tracker, args):
    if args.command == "add":
        return await tracker.add_record(label=args.label, parent_id=args.parent, note=args.note)
    if args.command == "break":
        return await tracker.add_break(args.parent)
    if args.command == "toggle":
        return await tracker.toggle(args.id)
    if args.command == "rename":
        return await tracker.rename(args.id, args.label)
    if args.command == "note":
        return await tracker.annotate(args.id, args.text)
    if args.command == "collapse":
        return await tracker.toggle_collapse(args.id)
    if args.command == "delete":
        return await tracker.delete(args.id)
    if args.command == "clear":
        return await tracker.clear()
    return None


async def run_command(args):
    tracker = Tracker()
    loaded = await tracker.load()
    if not loaded:
        print(f"error: {loaded.message}", file=sys.stderr)
        return 1
    result = await dispatch(tracker, args)
    if result is not None and not result:
        print(f"error: {result.message}", file=sys.stderr)
        return 1
    print(render_forest(tracker))
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.data_dir:
        PATHS.relocate(args.data_dir)
    console = args.verbose or config.load_settings()["console_log"]
    if args.data_dir or console:
        logger.get_logger(level=logging.DEBUG, console=console, reset=True)
    return asyncio.run(run_command(args))
