#!/usr/bin/env python3
"""Command-line utility for Canvas Sync."""

import argparse
import getpass
import sys
from pathlib import Path

from canvas_sync.canvas_client import CanvasClient, AuthInvalidError
from canvas_sync.config import Config
from canvas_sync.engine import SyncEngine
from canvas_sync.logging_config import setup_logging
from canvas_sync.merger import ReconciliationMerger
from canvas_sync.models import Course


def _load_config(args) -> Config:
    return Config(Path(args.config_dir).expanduser() if args.config_dir else None)


def cmd_token(args):
    """Store the Canvas access token."""
    config = _load_config(args)

    if args.delete:
        config.delete_token()
        print("✓ Access token removed")
        return 0

    print("Generate an access token in Canvas under Account > Settings > New Access Token.")
    token = getpass.getpass("Access token: ")
    try:
        config.save_token(token)
    except ValueError as e:
        print(f"✗ {e}")
        return 1
    print("✓ Access token stored")
    return 0


def cmd_status(args):
    """Show sync status."""
    config = _load_config(args)

    print("Canvas Sync Status")
    print("=" * 40)
    print(f"Canvas URL: {config.root_url or '(not set)'}")
    print(f"Sync Directory: {config.sync_directory}")

    if config.load_token():
        print("Access Token: ✓ Stored")
    else:
        print("Access Token: ✗ Not stored")

    backend = config.state_backend()
    courses = [Course.from_dict(data) for data in backend.get_all_courses().values()]
    num_files = sum(len(course.files) for course in courses)
    num_conflicts = sum(len(course.conflicts) for course in courses)

    print(f"Courses Tracked: {len(courses)}")
    print(f"Files Tracked: {num_files}")
    print(f"Unresolved Conflicts: {num_conflicts}")
    print(f"Last Sync: {backend.get_metadata('last_synced') or 'Never'}")
    backend.close()

    return 0


def cmd_config(args):
    """Configure Canvas Sync."""
    config = _load_config(args)

    if args.list:
        print("Current Configuration:")
        print("=" * 40)
        for key, value in sorted(config.items().items()):
            print(f"{key} = {value if value != '' else '(not set)'}")
        return 0

    if args.set:
        status = 0
        for item in args.set:
            if '=' not in item:
                print(f"Error: Invalid format '{item}'. Use key=value")
                status = 1
                continue

            key, value = item.split('=', 1)
            try:
                config.set(key, value)
            except ValueError as e:
                print(f"✗ Invalid value for {key}: {e}")
                status = 1
                continue
            print(f"✓ Set {key} = {config.get(key)}")

        return status

    print("Use --list to view config or --set key=value to change config")
    return 0


def cmd_courses(args):
    """List tracked courses or select which ones are synced."""
    config = _load_config(args)
    backend = config.state_backend()
    state = backend.load()

    toggles = [(course_id, True) for course_id in args.enable or []]
    toggles += [(course_id, False) for course_id in args.disable or []]
    if toggles:
        for course_id, enabled in toggles:
            data = backend.get_course(str(course_id))
            if data is None:
                print(f"✗ Unknown course: {course_id}")
                continue
            data['sync'] = enabled
            backend.set_course(str(course_id), data)
            print(f"✓ {data.get('name')}: sync {'enabled' if enabled else 'disabled'}")
        backend.save(state)
        return 0

    courses = backend.get_all_courses()
    if not courses:
        print("No courses tracked yet. Run 'canvas-sync sync' first.")
        return 0
    for course_id, data in sorted(courses.items()):
        marker = '✓' if data.get('sync', True) else '✗'
        print(f"{marker} {course_id:>10s}  {data.get('name')}")
    return 0


def cmd_sync(args):
    """Run one sync."""
    config = _load_config(args)
    setup_logging(config.log_level, config.log_path)

    if not config.root_url:
        print("Error: Canvas URL not set. Run 'canvas-sync config --set root_url=...' first.")
        return 1
    token = config.load_token()
    if not token:
        print("Error: No access token. Run 'canvas-sync token' first.")
        return 1

    client = CanvasClient(config.root_url, token, page_size=config.page_size)
    backend = config.state_backend()
    engine = SyncEngine(client, backend, sync_directory=config.sync_directory,
                        max_workers=config.max_workers)

    try:
        report = engine.sync(download=args.download)
    except AuthInvalidError:
        print("✗ Canvas rejected the access token. Run 'canvas-sync token' to store a new one.")
        return 1
    finally:
        backend.close()

    if not report.completed:
        print("✗ Sync failed, see log for details")
        return 1

    print(f"Added: {report.added}  Updated: {report.updated}  Unchanged: {report.unchanged}  "
          f"Stale: {report.stale}  Downloaded: {report.downloaded}")
    for conflict in report.conflicts:
        print(f"! Conflict at {conflict.file_path}: {conflict.reason}")
    for failure in report.failures:
        print(f"✗ Failed {failure.kind} {failure.ref}: {failure.error}")

    return 0 if report.ok else 2


def cmd_conflicts(args):
    """List or resolve recorded path conflicts."""
    config = _load_config(args)
    backend = config.state_backend()
    state = backend.load()

    if args.accept and not args.resolve:
        print("Error: --accept needs --resolve PATH")
        return 1

    if args.resolve:
        merger = ReconciliationMerger()
        found = False
        for course_id, data in list(backend.get_all_courses().items()):
            course = Course.from_dict(data)
            if not any(c.file_path == args.resolve for c in course.conflicts):
                continue
            try:
                course = merger.resolve_conflict(course, args.resolve, accept_id=args.accept)
            except KeyError:
                print(f"✗ No conflict with incoming id {args.accept} at {args.resolve}")
                return 1
            backend.set_course(course_id, course.to_dict())
            found = True
        if not found:
            print(f"✗ No conflict recorded at {args.resolve}")
            return 1
        backend.save(state)
        if args.accept:
            print(f"✓ Kept {args.accept} at {args.resolve}")
        else:
            print(f"✓ Resolved conflicts at {args.resolve}")
        return 0

    total = 0
    for data in backend.get_all_courses().values():
        for conflict in Course.from_dict(data).conflicts:
            total += 1
            print(f"{conflict.file_path}")
            print(f"    {conflict.kind} {conflict.incoming_id} collides with {conflict.existing_id}: "
                  f"{conflict.reason}")
    if total == 0:
        print("No conflicts")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Canvas Sync - mirror Canvas course files to a local folder'
    )
    parser.add_argument('--config-dir', help='Configuration directory (default: ~/.config/canvas-sync)')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Token command
    token_parser = subparsers.add_parser('token', help='Store the Canvas access token')
    token_parser.add_argument('--delete', action='store_true', help='Remove the stored token')
    token_parser.set_defaults(func=cmd_token)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show sync status')
    status_parser.set_defaults(func=cmd_status)

    # Config command
    config_parser = subparsers.add_parser('config', help='Configure Canvas Sync')
    config_parser.add_argument('--list', action='store_true', help='List configuration')
    config_parser.add_argument('--set', nargs='+', help='Set config (key=value)')
    config_parser.set_defaults(func=cmd_config)

    # Courses command
    courses_parser = subparsers.add_parser('courses', help='List tracked courses')
    courses_parser.add_argument('--enable', nargs='+', metavar='ID', help='Sync these courses')
    courses_parser.add_argument('--disable', nargs='+', metavar='ID', help='Stop syncing these courses')
    courses_parser.set_defaults(func=cmd_courses)

    # Sync command
    sync_parser = subparsers.add_parser('sync', help='Run one sync')
    sync_parser.add_argument('--download', action='store_true', help='Also download new and updated files')
    sync_parser.set_defaults(func=cmd_sync)

    # Conflicts command
    conflicts_parser = subparsers.add_parser('conflicts', help='List path conflicts')
    conflicts_parser.add_argument('--resolve', metavar='PATH', help='Forget the conflicts at PATH')
    conflicts_parser.add_argument('--accept', metavar='ID',
                                  help='With --resolve, keep the incoming entity with this id at PATH')
    conflicts_parser.set_defaults(func=cmd_conflicts)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
