#!/usr/bin/env python3
"""
Inspect and maintain the combat ledger database.

Usage:
    # Recent encounters
    python tools/db_maintenance.py list --count 20

    # One encounter with every player's stats
    python tools/db_maintenance.py show 20261019143052123456-9f1c2ab0

    # Cached player profile
    python tools/db_maintenance.py player 12345

    # Keep only the newest 100 encounters
    python tools/db_maintenance.py cleanup --keep 100

    # Copy the database file / report its size
    python tools/db_maintenance.py backup backups/ledger.db
    python tools/db_maintenance.py size

The database is opened without crash recovery, so these commands are safe
to run while the ledger app is recording. `backup` checkpoints the
write-ahead log before copying, so the copy holds every committed encounter.
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from persistence import (
    Store, EncounterRepository, NotFoundError, StoreIOError, ValidationError,
    backup, size_in_bytes, size_in_mb, get_default_database_path,
)

logger = logging.getLogger(__name__)


def _format_duration(duration_ms: int) -> str:
    seconds = (duration_ms or 0) // 1000
    return f"{seconds // 60}:{seconds % 60:02d}"


def cmd_list(repo: EncounterRepository, args) -> int:
    summaries = repo.list_recent_encounters(args.count)
    if not summaries:
        print("No encounters recorded")
        return 0
    print(f"{'ENCOUNTER':<32} {'STARTED':<20} {'DURATION':>9} {'PLAYERS':>8}  STATE")
    for s in summaries:
        started = s.start_time.strftime('%Y-%m-%d %H:%M:%S') if s.start_time else '-'
        state = 'active' if s.is_active else 'closed'
        print(f"{s.encounter_id:<32} {started:<20} {_format_duration(s.duration_ms):>9} {s.player_count:>8}  {state}")
    return 0


def cmd_show(repo: EncounterRepository, args) -> int:
    data = repo.load_encounter(args.encounter_id)
    if args.json:
        print(json.dumps(data.to_dict(), indent=2))
        return 0

    print(f"Encounter {data.encounter_id} ({'active' if data.is_active else _format_duration(data.duration_ms)})")
    print(f"Total damage {data.total_damage:,}  total heal {data.total_heal:,}")
    for p in data.players:
        tag = ' [NPC]' if p.is_npc_data else ''
        print(f"  {p.name:<24}{tag:<6} dmg {p.total_attack_damage:>12,}  heal {p.total_heal:>10,}  "
              f"taken {p.total_taken_damage:>10,}  cp {p.combat_power}")
    return 0


def cmd_player(repo: EncounterRepository, args) -> int:
    player = repo.get_player(args.uid)
    if player is None:
        print(f"Player {args.uid} not cached")
        return 1
    print(json.dumps(player.to_dict(), indent=2))
    return 0


def cmd_cleanup(repo: EncounterRepository, args) -> int:
    deleted = repo.delete_old_encounters(args.keep)
    print(f"Deleted {deleted} encounter(s), kept up to {args.keep}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='Combat ledger database maintenance')
    parser.add_argument('--db', default=None, help='Database file (default: configured path)')
    parser.add_argument('-v', '--verbose', action='store_true')
    sub = parser.add_subparsers(dest='command', required=True)

    p_list = sub.add_parser('list', help='List recent encounters')
    p_list.add_argument('--count', type=int, default=50)

    p_show = sub.add_parser('show', help='Show one encounter')
    p_show.add_argument('encounter_id')
    p_show.add_argument('--json', action='store_true', help='Print raw JSON')

    p_player = sub.add_parser('player', help='Show a cached player profile')
    p_player.add_argument('uid', type=int)

    p_cleanup = sub.add_parser('cleanup', help='Delete all but the newest encounters')
    p_cleanup.add_argument('--keep', type=int, default=100)

    p_backup = sub.add_parser('backup', help='Copy the database file')
    p_backup.add_argument('dest', nargs='?', default=None,
                          help='Destination (default: <db>.<timestamp>.bak)')

    sub.add_parser('size', help='Report database file size')

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    db_path = args.db or get_default_database_path()

    try:
        if args.command == 'size':
            size = size_in_bytes(db_path)
            print(f"{db_path}: {size:,} bytes ({size_in_mb(db_path):.2f} MB)")
            return 0

        if args.command == 'backup':
            dest = args.dest or f"{db_path}.{datetime.now().strftime('%Y%m%d_%H%M%S')}.bak"
            backup(db_path, dest)
            print(f"Backed up {db_path} -> {dest}")
            return 0

        store = Store.initialize(db_path, recover=False)
        try:
            repo = EncounterRepository(store)
            handlers = {
                'list': cmd_list,
                'show': cmd_show,
                'player': cmd_player,
                'cleanup': cmd_cleanup,
            }
            return handlers[args.command](repo, args)
        finally:
            store.close()

    except NotFoundError as e:
        print(f"Not found: {e}", file=sys.stderr)
        return 1
    except ValidationError as e:
        print(f"Invalid argument: {e}", file=sys.stderr)
        return 2
    except StoreIOError as e:
        print(f"Database error: {e}", file=sys.stderr)
        return 3


if __name__ == '__main__':
    sys.exit(main())
